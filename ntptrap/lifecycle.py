"""Wiring, cancellation and bounded shutdown for the trap service."""
from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any, Callable, List, Optional

from .dispatcher import Dispatcher, NotificationQueue, Notifier, TelegramNotifier
from .geoip import GeoIPClient
from .listener import GeoLookup, RequestListener
from .settings import Settings

LOGGER = logging.getLogger(__name__)


class GracefulRunner:
    """Utility to manage background threads with graceful shutdown."""

    def __init__(self, stop_event: Optional[threading.Event] = None) -> None:
        self._stop_event = stop_event or threading.Event()
        self._threads: list[threading.Thread] = []

    def spawn(self, target: Callable[..., None], *args: Any, name: Optional[str] = None) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()
        return thread

    def stop(self, grace_period_s: float = 2.0) -> List[str]:
        """Signal cancellation and join threads; return names of threads still alive."""
        self._stop_event.set()
        deadline = time.monotonic() + grace_period_s
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        return [thread.name for thread in self._threads if thread.is_alive()]

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event


class TrapService:
    """Lifecycle coordinator owning the socket, the queue and both loops."""

    def __init__(
        self,
        settings: Settings,
        *,
        geo: Optional[GeoLookup] = None,
        notifier: Optional[Notifier] = None,
        logger: Optional[logging.Logger] = None,
        poll_interval_s: float = 0.5,
    ) -> None:
        self.settings = settings
        self.logger = logger or LOGGER
        self.alerts = NotificationQueue(settings.queue_capacity)
        self.runner = GracefulRunner()
        if geo is None:
            geo = GeoIPClient(settings.geoip_url, timeout=settings.geoip_timeout_s)
        if notifier is None:
            notifier = TelegramNotifier(
                settings.telegram_token,
                settings.telegram_chat_id,
                base_url=settings.telegram_api_url,
            )
        self.listener = RequestListener(
            settings.ntp_port,
            self.alerts,
            geo,
            host=settings.bind_host,
            logger=self.logger.getChild("listener"),
            poll_interval_s=poll_interval_s,
        )
        self.dispatcher = Dispatcher(
            self.alerts,
            notifier,
            logger=self.logger.getChild("dispatcher"),
            poll_interval_s=poll_interval_s,
        )
        self._started = False
        self._stopped = False
        self._stop_lock = threading.Lock()

    @property
    def stop_event(self) -> threading.Event:
        return self.runner.stop_event

    def start(self) -> None:
        """Bind first (raises :class:`ListenerError`), then spawn both loops."""
        if self._started:
            return
        self.listener.bind()
        self.runner.spawn(self.dispatcher.run, self.stop_event, name="ntptrap-dispatcher")
        self.runner.spawn(self.listener.serve_forever, self.stop_event, name="ntptrap-listener")
        self._started = True
        self.logger.info("NTP trap started")

    def request_stop(self, *_: object) -> None:
        """Signal-safe: only sets the cancellation event."""
        self.stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.stop_event.wait(timeout)

    def stop(self) -> List[str]:
        with self._stop_lock:
            if self._stopped:
                return []
            self._stopped = True
        self.logger.info("Shutting down (grace period %.1fs)", self.settings.grace_period_s)
        lingering = self.runner.stop(self.settings.grace_period_s)
        if lingering:
            self.logger.warning("Abandoning tasks still running after grace period: %s", ", ".join(lingering))
        self.listener.close()
        self.logger.info("NTP trap stopped")
        return lingering

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.request_stop)
        signal.signal(signal.SIGTERM, self.request_stop)


def run(settings: Settings, *, logger: Optional[logging.Logger] = None) -> int:
    """Run until SIGINT/SIGTERM. Bind failures propagate to the caller."""
    service = TrapService(settings, logger=logger)
    service.start()
    try:
        service.install_signal_handlers()
        # Short waits keep the main thread responsive to signals on every platform.
        while not service.wait(timeout=1.0):
            pass
        service.logger.info("Termination requested, starting graceful shutdown")
    finally:
        service.stop()
    return 0


__all__ = ["GracefulRunner", "TrapService", "run"]
