"""UDP time-sync trap: answers NTP client requests and alerts the operator."""

__version__ = "0.3.0"

__all__ = [
    "alerts",
    "codec",
    "dispatcher",
    "geoip",
    "lifecycle",
    "listener",
    "probe",
    "settings",
    "state",
]
