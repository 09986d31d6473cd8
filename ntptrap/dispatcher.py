"""Bounded alert queue and the Telegram consumer draining it."""
from __future__ import annotations

import logging
import queue
import threading
from typing import Optional, Protocol

import requests

from .state import ServiceState

LOGGER = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class NotificationError(RuntimeError):
    """Raised when the messaging API does not accept a message."""


class Notifier(Protocol):
    def send(self, text: str) -> None:  # pragma: no cover - protocol
        ...


class NotificationQueue:
    """FIFO with fixed capacity; producers never block, overflow is dropped."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be greater than zero")
        self.capacity = capacity
        self._queue: "queue.Queue[str]" = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self._dropped = 0

    def offer(self, message: str) -> bool:
        """Enqueue ``message`` if there is room; return ``False`` when it was dropped."""
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            with self._lock:
                self._dropped += 1
            return False
        return True

    def take(self, timeout: Optional[float] = None) -> str:
        """Block until a message is available; raises :class:`queue.Empty` on timeout."""
        return self._queue.get(timeout=timeout)

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped


class TelegramNotifier:
    """Sends plain text through the Bot API ``sendMessage`` method."""

    def __init__(
        self,
        token: str,
        chat_id: str,
        *,
        base_url: str = TELEGRAM_API_URL,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
    ) -> None:
        if not token or not chat_id:
            raise ValueError("Telegram token and chat id are required")
        self._token = token
        self.chat_id = chat_id
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/bot{self._token}/sendMessage"

    def send(self, text: str) -> None:
        # requests percent-encodes query parameters, so free text from the
        # geolocation fields cannot break the URL.
        params = {"chat_id": self.chat_id, "text": text}
        try:
            response = self.session.get(self.endpoint, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            # Exception text may embed the URL; keep the token out of logs.
            detail = str(exc).replace(self._token, "***")
            raise NotificationError(f"Telegram request failed: {detail}") from None
        if response.status_code != 200:
            raise NotificationError(f"Telegram API returned HTTP {response.status_code}")


class Dispatcher:
    """Consumes the queue and forwards each alert exactly once."""

    def __init__(
        self,
        alerts: NotificationQueue,
        notifier: Notifier,
        *,
        logger: Optional[logging.Logger] = None,
        poll_interval_s: float = 0.5,
    ) -> None:
        self.alerts = alerts
        self.notifier = notifier
        self.logger = logger or LOGGER
        self.poll_interval_s = poll_interval_s
        self.sent = 0
        self.failed = 0
        self._state = ServiceState.STOPPED

    @property
    def state(self) -> ServiceState:
        return self._state

    def deliver(self, message: str) -> bool:
        try:
            self.notifier.send(message)
        except NotificationError as exc:
            self.failed += 1
            self.logger.warning("Alert delivery failed: %s", exc)
            return False
        except Exception:
            self.failed += 1
            self.logger.exception("Unexpected error while delivering alert")
            return False
        self.sent += 1
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Forward alerts until ``stop_event`` is set; pending messages are not drained."""
        self._state = ServiceState.RUNNING
        self.logger.info("Dispatcher started")
        try:
            while not stop_event.is_set():
                try:
                    message = self.alerts.take(timeout=self.poll_interval_s)
                except queue.Empty:
                    continue
                if stop_event.is_set():
                    break
                self.deliver(message)
        finally:
            self._state = ServiceState.STOPPING
            self.logger.info(
                "Stopping dispatcher (sent=%d failed=%d pending=%d)",
                self.sent,
                self.failed,
                self.alerts.qsize(),
            )
            self._state = ServiceState.STOPPED


__all__ = [
    "Dispatcher",
    "NotificationError",
    "NotificationQueue",
    "Notifier",
    "TelegramNotifier",
]
