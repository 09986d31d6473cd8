"""Run states shared by the listener and dispatcher loops."""
from __future__ import annotations

from enum import Enum


class ServiceState(str, Enum):
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


__all__ = ["ServiceState"]
