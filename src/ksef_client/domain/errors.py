"""
Error taxonomy for the KSeF integration core.

Raised kinds:
  - TransportError  → DNS/connect/TLS/reset/timeout, after retries are exhausted
  - ProtocolError   → any authentication-stage precondition failure, never retried
  - DataError       → malformed XML, invalid query or response shape

Returned-as-data kinds (never raised):
  - SERVER → HTTP 5xx payload after retries are exhausted
  - CLIENT → HTTP 4xx payload, never retried

The asymmetry between 5xx (data) and transport failures (exception) after
retry exhaustion is intentional. ``error_kind`` makes the data kinds
machine-distinguishable for the presentation layer.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class KsefError(Exception):
    """Base class for all errors raised by the KSeF core."""


class TransportError(KsefError):
    """The remote API could not be reached, even after retrying."""

    def __init__(self, message: str, method: str, path: str, attempts: int) -> None:
        super().__init__(message)
        self.method = method
        self.path = path
        self.attempts = attempts


class ProtocolError(KsefError):
    """An authentication stage failed; ``stage`` names the step."""

    def __init__(self, message: str, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class DataError(KsefError):
    """Invoice data or a query/response had an unusable shape."""


class ErrorKind(StrEnum):
    SERVER = "server"
    CLIENT = "client"
    RESPONSE = "response"


def error_kind(payload: Any) -> ErrorKind | None:
    """
    Classify a value returned by ``KsefClient.request``.

    Returns None for successful payloads (including XML strings and lists).
    """
    if not isinstance(payload, dict) or not payload.get("error"):
        return None
    status = payload.get("http_status")
    if isinstance(status, int) and status >= 500:
        return ErrorKind.SERVER
    if isinstance(status, int) and status >= 400:
        return ErrorKind.CLIENT
    return ErrorKind.RESPONSE
