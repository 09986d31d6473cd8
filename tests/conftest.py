"""Shared pytest configuration and fixtures for ntptrap."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator

import pytest

from ntptrap.dispatcher import NotificationQueue
from ntptrap.listener import RequestListener
from ntptrap.settings import Settings

from tests.helpers import FakeGeoClient, RecordingNotifier

LOGS_ROOT = Path(__file__).resolve().parents[1] / "logs" / "tests"
SESSION_LOG = LOGS_ROOT / "pytest.session.log"
_MODULE_HANDLERS: Dict[str, logging.Handler] = {}


def _initialise_logging() -> None:
    LOGS_ROOT.mkdir(parents=True, exist_ok=True)
    (LOGS_ROOT / ".gitkeep").touch(exist_ok=True)

    handler = logging.FileHandler(SESSION_LOG, mode="w", encoding="utf-8")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(logging.INFO)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)


def get_test_logger(module_name: str) -> logging.Logger:
    """Return a logger writing into ``logs/tests/<module>.log``."""
    normalised = module_name.replace("tests.", "")
    logger = logging.getLogger(f"tests.{normalised}")
    logger.setLevel(logging.INFO)
    if normalised not in _MODULE_HANDLERS:
        LOGS_ROOT.mkdir(parents=True, exist_ok=True)
        log_path = LOGS_ROOT / f"{normalised}.log"
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.addHandler(handler)
        _MODULE_HANDLERS[normalised] = handler
    return logger


@pytest.hookimpl(tryfirst=True)
def pytest_configure(config: pytest.Config) -> None:  # noqa: D401 - pytest hook
    _initialise_logging()


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Iterable[pytest.TestReport]:
    outcome = yield
    report = outcome.get_result()
    if report.outcome != "failed":
        return
    module = getattr(item, "module", None)
    module_name = getattr(module, "__name__", "tests")
    target = LOGS_ROOT / f"{module_name.split('.')[-1]}.log"
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("a", encoding="utf-8") as handle:
        handle.write("\n=== TEST FAILURE ===\n")
        handle.write(f"nodeid: {item.nodeid}\n")
        handle.write(f"phase: {report.when}\n")
        handle.write(str(report.longrepr))
        handle.write("\n")


@pytest.fixture(scope="session")
def project_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    def _factory(**overrides: object) -> Settings:
        values: Dict[str, object] = {
            "ntp_port": 0,
            "telegram_token": "123456:TEST-TOKEN",
            "telegram_chat_id": "-100200300",
            "bind_host": "127.0.0.1",
            "queue_capacity": 10,
            "grace_period_s": 2.0,
            "log_file": tmp_path / "ntptrap.log",
        }
        values.update(overrides)
        return Settings(**values)  # type: ignore[arg-type]

    return _factory


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def geo() -> FakeGeoClient:
    return FakeGeoClient()


@pytest.fixture
def alerts() -> NotificationQueue:
    return NotificationQueue(10)


@pytest.fixture
def running_listener(alerts: NotificationQueue, geo: FakeGeoClient) -> Iterator[RequestListener]:
    """Listener bound to an ephemeral loopback port, served from a background thread."""
    listener = RequestListener(0, alerts, geo, host="127.0.0.1", poll_interval_s=0.05)
    listener.bind()
    stop = threading.Event()
    thread = threading.Thread(target=listener.serve_forever, args=(stop,), daemon=True)
    thread.start()
    try:
        yield listener
    finally:
        stop.set()
        thread.join(timeout=2)


@pytest.fixture(autouse=True)
def clear_trap_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "NTP_PORT",
        "TELEGRAM_TOKEN",
        "TELEGRAM_CHAT_ID",
        "NTPTRAP_CONFIG",
        "QUEUE_CAPACITY",
        "SHUTDOWN_GRACE_S",
        "GEOIP_URL",
        "GEOIP_TIMEOUT_S",
        "LOG_FILE",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(key, raising=False)


__all__ = [
    "get_test_logger",
]
