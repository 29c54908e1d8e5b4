"""
HTTP adapter — resilient KSeF API client via httpx.

Adapter layer — implements the ApiRequester and TokenSink ports.

Per logical call:
  1. Build headers (Accept, Content-Type on writes, Bearer when a token applies)
  2. Send with tenacity retry on transport errors and HTTP 5xx
     (exponential backoff: base * 2**attempt, 4xx never retried)
  3. Parse the response into JSON data (error payloads are data, not exceptions)
  4. Record exactly one sanitized ApiLogEntry, even when the call raises

After retries are exhausted a persistent 5xx is returned as an annotated
payload, while a persistent transport failure raises TransportError.

Not safe for concurrent use of one instance from several threads.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Final

import httpx
import structlog
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from ksef_client.adapters.log_sanitizer import sanitize_body, sanitize_headers, sanitize_text
from ksef_client.config import NetworkSettings
from ksef_client.domain.errors import TransportError
from ksef_client.domain.models import ApiLogEntry, JsonValue, TokenPair
from ksef_client.domain.ports import ApiLogSink

log = structlog.get_logger()

BASE_PATH: Final = "/v2"
DEFAULT_HOST: Final = "api.ksef.mf.gov.pl"
DEFAULT_MAX_RETRIES: Final = 3
DEFAULT_OPEN_TIMEOUT: Final = 10
DEFAULT_READ_TIMEOUT: Final = 15
DEFAULT_WRITE_TIMEOUT: Final = 10
DEFAULT_RETRY_BACKOFF_BASE: Final = 0.2

JSON_CONTENT_TYPE: Final = "application/json"
XML_CONTENT_TYPE: Final = "application/xml"

RETRYABLE_EXCEPTIONS: Final = (httpx.TimeoutException, httpx.NetworkError)


class _UseDefault:
    """Marker for "use the client's default token" (distinct from None)."""

    def __repr__(self) -> str:
        return "USE_DEFAULT"


USE_DEFAULT: Final = _UseDefault()


def _is_server_error(response: httpx.Response) -> bool:
    return response.status_code >= 500


class KsefClient:
    """
    Synchronous KSeF API client with retry/backoff and audit logging.

    Implements the ApiRequester and TokenSink ports.
    ``sleep`` is injectable so tests can intercept backoff delays.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        *,
        api_log_sink: ApiLogSink | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        read_timeout: float = DEFAULT_READ_TIMEOUT,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        retry_backoff_base: float = DEFAULT_RETRY_BACKOFF_BASE,
        access_token: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.api_log_sink = api_log_sink
        self.max_retries = max(0, int(max_retries))
        self.open_timeout = open_timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.retry_backoff_base = retry_backoff_base
        self.access_token = access_token
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: NetworkSettings,
        *,
        api_log_sink: ApiLogSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> KsefClient:
        """Build a client from the network section of the application settings."""
        return cls(
            settings.host,
            api_log_sink=api_log_sink,
            max_retries=settings.max_retries,
            open_timeout=settings.open_timeout,
            read_timeout=settings.read_timeout,
            write_timeout=settings.write_timeout,
            retry_backoff_base=settings.retry_backoff_base,
            sleep=sleep,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.host}{BASE_PATH}"

    def update_tokens(self, tokens: TokenPair) -> None:
        """TokenSink: make the redeemed access token the default bearer."""
        self.access_token = tokens.access_token
        log.info("http.tokens_updated", valid_until=tokens.access_token_valid_until)

    # ─────────────────────── Public API ───────────────────────

    def get(self, path: str, token: str | None | _UseDefault = USE_DEFAULT) -> JsonValue:
        return self.request("GET", path, token=token)

    def post(
        self,
        path: str,
        body: JsonValue = None,
        token: str | None | _UseDefault = USE_DEFAULT,
    ) -> JsonValue:
        return self.request("POST", path, body=body if body is not None else {}, token=token)

    def get_xml(self, path: str, token: str | None | _UseDefault = USE_DEFAULT) -> JsonValue:
        """
        GET with ``Accept: application/xml``.

        Returns the raw XML body string on success; error responses are
        returned as annotated JSON payloads, exactly like ``request``.
        """
        return self.request("GET", path, token=token, accept=XML_CONTENT_TYPE)

    def request(
        self,
        method: str,
        path: str,
        body: JsonValue = None,
        token: str | None | _UseDefault = USE_DEFAULT,
        accept: str = JSON_CONTENT_TYPE,
    ) -> JsonValue:
        """
        Execute one logical API call with retries.

        ``token`` omitted → client default bearer; ``token=None`` → no
        Authorization header at all.
        """
        method = method.upper()
        resolved_token = self.access_token if isinstance(token, _UseDefault) else token
        headers = self._build_headers(method, resolved_token, accept)
        content = (
            json.dumps(body, ensure_ascii=False, separators=(",", ":"))
            if body is not None and method != "GET"
            else None
        )

        started_at = datetime.now(UTC)
        started = time.monotonic()
        response: httpx.Response | None = None
        error: str | None = None
        attempts = 0

        def send(client: httpx.Client) -> httpx.Response:
            nonlocal attempts, response
            attempts += 1
            response = client.request(
                method, f"{self.base_url}{path}", headers=headers, content=content
            )
            return response

        try:
            with httpx.Client(timeout=self._timeout()) as client:
                final = self._retrying(method, path)(send, client)
            if _is_server_error(final):
                error = f"HTTP {final.status_code}"
                log.warning(
                    "http.request.server_error",
                    method=method,
                    path=path,
                    status=final.status_code,
                    attempts=attempts,
                )
            if accept == XML_CONTENT_TYPE and final.is_success and final.text:
                return final.text
            return self._parse_response(final)
        except httpx.TransportError as exc:
            error = f"{type(exc).__name__}: {exc}"
            response = None
            log.error("http.request.failed", method=method, path=path, attempts=attempts, error=error)
            raise TransportError(
                f"{method} {path} failed after {attempts} attempt(s): {exc}",
                method=method,
                path=path,
                attempts=attempts,
            ) from exc
        finally:
            self._record(
                started_at=started_at,
                duration=time.monotonic() - started,
                method=method,
                path=path,
                headers=headers,
                request_body=content,
                response=response,
                error=error,
            )

    # ─────────────────────── Internals ───────────────────────

    def _timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.open_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
            pool=self.open_timeout,
        )

    def _retrying(self, method: str, path: str) -> Retrying:
        """
        Retry policy for one logical call.

        At most ``max_retries + 1`` attempts; the last outcome is handed back
        unchanged (a 5xx response is returned, a transport error re-raised).
        """

        def before_sleep(state: RetryCallState) -> None:
            outcome = state.outcome
            reason: str
            if outcome is not None and outcome.failed:
                reason = type(outcome.exception()).__name__
            elif outcome is not None:
                reason = f"HTTP {outcome.result().status_code}"
            else:
                reason = "unknown"
            log.warning(
                "http.request.retrying",
                method=method,
                path=path,
                attempt=state.attempt_number,
                delay=state.upcoming_sleep,
                reason=reason,
            )

        return Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_backoff_base, exp_base=2, min=0),
            retry=(
                retry_if_exception_type(RETRYABLE_EXCEPTIONS) | retry_if_result(_is_server_error)
            ),
            retry_error_callback=lambda state: state.outcome.result(),  # type: ignore[union-attr]
            before_sleep=before_sleep,
            sleep=self._sleep,
        )

    @staticmethod
    def _build_headers(method: str, token: str | None, accept: str) -> dict[str, str]:
        headers = {"Accept": accept}
        if method != "GET":
            headers["Content-Type"] = JSON_CONTENT_TYPE
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @staticmethod
    def _parse_response(response: httpx.Response) -> JsonValue:
        """
        Turn a response into JSON data.

        Non-2xx payloads are objects annotated with ``http_status`` and an
        ``error`` message (a server-supplied one is kept).
        """
        code = response.status_code
        payload: dict[str, JsonValue]
        if not response.content:
            payload = {"error": f"Empty response (HTTP {code})"}
        else:
            try:
                parsed: JsonValue = response.json()
            except ValueError:
                payload = {"error": f"Invalid JSON response (HTTP {code})", "body": response.text}
            else:
                if response.is_success:
                    return parsed
                payload = parsed if isinstance(parsed, dict) else {"body": parsed}
                if not payload.get("error"):
                    payload["error"] = f"HTTP {code}"

        if not response.is_success:
            payload["http_status"] = code
        return payload

    def _record(
        self,
        *,
        started_at: datetime,
        duration: float,
        method: str,
        path: str,
        headers: dict[str, str],
        request_body: str | None,
        response: httpx.Response | None,
        error: str | None,
    ) -> None:
        if self.api_log_sink is None:
            return

        response_body: Any = response.text if response is not None else error
        entry = ApiLogEntry(
            timestamp=started_at,
            method=method,
            path=path,
            status=response.status_code if response is not None else 0,
            duration=duration,
            request_headers=sanitize_headers(headers),
            request_body=sanitize_body(request_body),
            response_headers=sanitize_headers(dict(response.headers)) if response is not None else {},
            response_body=sanitize_body(response_body),
            error=sanitize_text(error) if error else None,
        )
        self.api_log_sink.log_api(entry)
