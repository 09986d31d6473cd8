"""Centralised settings for the ntptrap sensor."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

import yaml
from dotenv import find_dotenv, load_dotenv

# Resolved against the working directory, not the install location.
LOG_DIR = Path("logs")
DEFAULT_LOG_FILE = LOG_DIR / "ntptrap.log"

DEFAULT_QUEUE_CAPACITY = 100
DEFAULT_GRACE_PERIOD_S = 2.0
DEFAULT_GEOIP_URL = "http://ip-api.com/json/"
DEFAULT_TELEGRAM_API_URL = "https://api.telegram.org"

REQUIRED_KEYS = ("NTP_PORT", "TELEGRAM_TOKEN", "TELEGRAM_CHAT_ID")


class ConfigurationError(RuntimeError):
    """Raised when the configuration is missing or invalid."""


@dataclass(slots=True)
class Settings:
    ntp_port: int
    telegram_token: str
    telegram_chat_id: str
    bind_host: str = ""
    queue_capacity: int = DEFAULT_QUEUE_CAPACITY
    grace_period_s: float = DEFAULT_GRACE_PERIOD_S
    geoip_url: str = DEFAULT_GEOIP_URL
    geoip_timeout_s: Optional[float] = None
    telegram_api_url: str = DEFAULT_TELEGRAM_API_URL
    log_level: str = "INFO"
    log_file: Path = DEFAULT_LOG_FILE

    def redacted(self) -> Dict[str, object]:
        """Return a printable view without the bot token."""
        return {
            "ntp_port": self.ntp_port,
            "bind_host": self.bind_host or "*",
            "telegram_chat_id": self.telegram_chat_id,
            "telegram_token": "***" if self.telegram_token else "",
            "queue_capacity": self.queue_capacity,
            "grace_period_s": self.grace_period_s,
            "geoip_url": self.geoip_url,
            "geoip_timeout_s": self.geoip_timeout_s,
            "log_file": str(self.log_file),
        }


def _load_file(path: Path) -> Dict[str, object]:
    if not path.exists():
        raise ConfigurationError(f"Configuration file {path} does not exist")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid configuration format: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")
    # YAML keys are accepted in either case; environment names are upper case.
    return {str(key).upper(): value for key, value in raw.items()}


def _as_int(values: Mapping[str, object], key: str, default: Optional[int] = None) -> int:
    raw = values.get(key)
    if raw is None or raw == "":
        if default is None:
            raise ConfigurationError(f"Missing configuration key: {key}")
        return default
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc


def _as_float(values: Mapping[str, object], key: str, default: Optional[float]) -> Optional[float]:
    raw = values.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


def _as_str(values: Mapping[str, object], key: str, default: str = "") -> str:
    raw = values.get(key)
    if raw is None:
        return default
    return str(raw).strip()


def load_settings(
    path: Optional[Path | str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    dotenv: bool = True,
) -> Settings:
    """Merge the optional YAML file, ``.env`` and the environment into :class:`Settings`."""
    if dotenv:
        load_dotenv(find_dotenv(usecwd=True))
    env = os.environ if environ is None else environ

    values: Dict[str, object] = {}
    config_path = path or env.get("NTPTRAP_CONFIG")
    if config_path:
        values.update(_load_file(Path(config_path)))
    values.update({key: value for key, value in env.items() if value != ""})

    missing = [key for key in REQUIRED_KEYS if not _as_str(values, key)]
    if missing:
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing)
        )

    port = _as_int(values, "NTP_PORT")
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"NTP_PORT out of range: {port}")
    capacity = _as_int(values, "QUEUE_CAPACITY", DEFAULT_QUEUE_CAPACITY)
    if capacity <= 0:
        raise ConfigurationError("QUEUE_CAPACITY must be greater than zero")
    grace = _as_float(values, "SHUTDOWN_GRACE_S", DEFAULT_GRACE_PERIOD_S)
    if grace is None or grace < 0:
        raise ConfigurationError("SHUTDOWN_GRACE_S must not be negative")

    log_file = _as_str(values, "LOG_FILE")
    return Settings(
        ntp_port=port,
        telegram_token=_as_str(values, "TELEGRAM_TOKEN"),
        telegram_chat_id=_as_str(values, "TELEGRAM_CHAT_ID"),
        bind_host=_as_str(values, "NTP_BIND_HOST"),
        queue_capacity=capacity,
        grace_period_s=grace,
        geoip_url=_as_str(values, "GEOIP_URL", DEFAULT_GEOIP_URL),
        geoip_timeout_s=_as_float(values, "GEOIP_TIMEOUT_S", None),
        telegram_api_url=_as_str(values, "TELEGRAM_API_URL", DEFAULT_TELEGRAM_API_URL).rstrip("/"),
        log_level=_as_str(values, "LOG_LEVEL", "INFO").upper(),
        log_file=Path(log_file) if log_file else DEFAULT_LOG_FILE,
    )


def _ensure_directories(paths: Iterable[Path]) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def setup_logging(level: int | str = logging.INFO, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure a rotating file logger plus console echo and return the service logger."""
    target = log_file or DEFAULT_LOG_FILE
    _ensure_directories((target.parent,))

    handler = RotatingFileHandler(
        target,
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    console_handler = logging.StreamHandler()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[handler, console_handler],
        force=True,
    )
    return logging.getLogger("ntptrap")
