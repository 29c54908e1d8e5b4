"""
Ports — Protocol-based interfaces between the core and its collaborators.

Each port is a Protocol (structural typing) so collaborators satisfy
the contract simply by implementing the methods — no inheritance.

  ApiLogSink     ← consumes one ApiLogEntry per logical HTTP call
  TokenSink      ← receives freshly redeemed tokens after authentication
  ApiRequester   ← what the Authentication Engine and Invoice Service need
                   from the HTTP client
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from ksef_client.domain.models import ApiLogEntry, JsonValue, TokenPair


@runtime_checkable
class ApiLogSink(Protocol):
    """Port: accept one sanitized audit entry."""

    def log_api(self, entry: ApiLogEntry) -> None: ...


@runtime_checkable
class TokenSink(Protocol):
    """
    Port: receive the token pair produced by a successful authentication.

    The HTTP client implements it so later calls pick up the new access
    token as their default bearer.
    """

    def update_tokens(self, tokens: TokenPair) -> None: ...


@runtime_checkable
class ApiRequester(Protocol):
    """
    Port: issue KSeF API calls.

    ``token`` follows the client's convention: omitted means "use the client
    default", ``None`` means "send no Authorization header".
    """

    def get(self, path: str, token: Any = ...) -> JsonValue: ...

    def post(self, path: str, body: JsonValue = None, token: Any = ...) -> JsonValue: ...

    def get_xml(self, path: str, token: Any = ...) -> JsonValue: ...
