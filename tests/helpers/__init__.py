"""Shared helper utilities for the ntptrap test-suite."""

from .mocks import FakeGeoClient, FakeHttpResponse, FakeSession, RecordingNotifier, connection_error
from .net import exchange

__all__ = [
    "FakeGeoClient",
    "FakeHttpResponse",
    "FakeSession",
    "RecordingNotifier",
    "connection_error",
    "exchange",
]
