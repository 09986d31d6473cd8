"""End-to-end tests for the trap service wiring and shutdown."""

from __future__ import annotations

import threading
import time

import pytest

from ntptrap import codec
from ntptrap.lifecycle import GracefulRunner, TrapService, run
from ntptrap.listener import ListenerError
from ntptrap.state import ServiceState

from tests.conftest import get_test_logger
from tests.helpers import FakeGeoClient, RecordingNotifier, exchange

logger = get_test_logger(__name__)
logger.info("Starting tests for lifecycle module")


def test_request_to_delivered_alert(make_settings, notifier: RecordingNotifier) -> None:
    """A client request is answered and the enriched alert reaches the notifier."""
    service = TrapService(make_settings(), geo=FakeGeoClient(), notifier=notifier, poll_interval_s=0.05)
    service.start()
    try:
        reply = exchange(service.listener.address, codec.build_request(), timeout=2.0)
        assert reply is not None and reply[0] == 0x1C
        assert notifier.wait_for(1)
    finally:
        lingering = service.stop()

    assert lingering == []
    assert notifier.messages[0].startswith("NTP sync from client: 127.0.0.1")
    assert "City: Bucharest" in notifier.messages[0]
    assert service.listener.state is ServiceState.STOPPED
    assert service.dispatcher.state is ServiceState.STOPPED


def test_geolocation_outage_still_alerts(make_settings, notifier: RecordingNotifier) -> None:
    service = TrapService(make_settings(), geo=FakeGeoClient(fail=True), notifier=notifier, poll_interval_s=0.05)
    service.start()
    try:
        assert exchange(service.listener.address, codec.build_request(), timeout=2.0) is not None
        assert notifier.wait_for(1)
    finally:
        service.stop()
    assert notifier.messages == ["NTP sync from client: 127.0.0.1 (location unknown)"]


def test_invalid_traffic_produces_no_alert(make_settings, notifier: RecordingNotifier) -> None:
    service = TrapService(make_settings(), geo=FakeGeoClient(), notifier=notifier, poll_interval_s=0.05)
    service.start()
    try:
        assert exchange(service.listener.address, b"\x1b" * 10, timeout=0.3) is None
        assert exchange(service.listener.address, bytes([0x24]) + bytes(47), timeout=0.3) is None
        time.sleep(0.2)
    finally:
        service.stop()
    assert notifier.attempts == 0


def test_shutdown_is_bounded_by_grace_period(make_settings) -> None:
    """A notifier stuck in a call is abandoned once the grace period expires."""
    release = threading.Event()

    class StuckNotifier:
        def send(self, text: str) -> None:
            release.wait(5)

    service = TrapService(
        make_settings(grace_period_s=0.3),
        geo=FakeGeoClient(),
        notifier=StuckNotifier(),
        poll_interval_s=0.05,
    )
    service.start()
    try:
        exchange(service.listener.address, codec.build_request(), timeout=2.0)
        time.sleep(0.2)
        started = time.monotonic()
        lingering = service.stop()
        elapsed = time.monotonic() - started
    finally:
        release.set()

    assert elapsed < 1.5
    assert lingering == ["ntptrap-dispatcher"]


def test_stop_is_idempotent(make_settings, notifier: RecordingNotifier) -> None:
    service = TrapService(make_settings(), geo=FakeGeoClient(), notifier=notifier, poll_interval_s=0.05)
    service.start()
    service.stop()
    assert service.stop() == []
    assert service.stop_event.is_set()


def test_request_stop_sets_cancellation(make_settings, notifier: RecordingNotifier) -> None:
    service = TrapService(make_settings(), geo=FakeGeoClient(), notifier=notifier, poll_interval_s=0.05)
    service.start()
    try:
        assert service.wait(timeout=0.05) is False
        service.request_stop()
        assert service.wait(timeout=0.05) is True
    finally:
        service.stop()


def test_start_fails_fast_when_port_is_taken(make_settings, notifier: RecordingNotifier) -> None:
    first = TrapService(make_settings(), geo=FakeGeoClient(), notifier=notifier, poll_interval_s=0.05)
    first.start()
    try:
        port = first.listener.address[1]
        second = TrapService(make_settings(ntp_port=port), geo=FakeGeoClient(), notifier=notifier)
        with pytest.raises(ListenerError):
            second.start()
        assert second.runner.stop_event.is_set() is False
    finally:
        first.stop()


def test_runner_reports_lingering_threads() -> None:
    runner = GracefulRunner()
    block = threading.Event()
    runner.spawn(lambda: block.wait(2), name="sleepy")
    runner.spawn(runner.stop_event.wait, name="cooperative")
    try:
        assert runner.stop(grace_period_s=0.2) == ["sleepy"]
    finally:
        block.set()


def test_run_cleans_up_when_signal_setup_fails(make_settings, monkeypatch: pytest.MonkeyPatch) -> None:
    """Signal handlers can only be installed from the main thread."""
    started: list[TrapService] = []

    def refuse(self: TrapService) -> None:
        started.append(self)
        raise ValueError("signal only works in main thread")

    monkeypatch.setattr(TrapService, "install_signal_handlers", refuse)
    with pytest.raises(ValueError):
        run(make_settings(grace_period_s=1.0))

    service = started[0]
    assert service.stop_event.is_set()
    assert service.listener.state is ServiceState.STOPPED
    assert service.dispatcher.state is ServiceState.STOPPED
    with pytest.raises(ListenerError):
        service.listener.address
