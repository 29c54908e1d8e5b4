"""
Log sanitizer — redaction of secrets before anything reaches an audit log.

Pure, stateless functions:
  - sanitize_headers(headers)  → per-header redaction
  - sanitize_body(body)        → recursive JSON redaction, text redaction otherwise
  - sanitize_text(text)        → pattern-based redaction of free text

Redaction is total and idempotent: running any function on its own output
returns the same value, and no bearer token or value under a sensitive key
survives verbatim.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping

from ksef_client.domain.models import JsonValue

REDACTED_VALUE = "[REDACTED]"

SENSITIVE_KEY_PATTERN = re.compile(
    r"(authorization|cookie|set-cookie|api[-_]?key|token|secret|password)", re.IGNORECASE
)

_BEARER_VALUE = re.compile(r"^(Bearer\s+).+$", re.IGNORECASE | re.DOTALL)
_BEARER_IN_TEXT = re.compile(r"(Bearer\s+)[^\s,;\"]+", re.IGNORECASE)
_KEY_VALUE_IN_TEXT = re.compile(
    r"((?:token|password|secret|api[-_]?key|authorization|cookie)\s*[=:]\s*)[^\s,;]+",
    re.IGNORECASE,
)
_QUOTED_KEY_VALUE_IN_TEXT = re.compile(
    r"(\"?(?:token|password|secret|api[-_]?key|authorization|cookie)\"?\s*:\s*\")([^\"]+)(\")",
    re.IGNORECASE,
)


def is_sensitive_key(key: object) -> bool:
    return SENSITIVE_KEY_PATTERN.search(str(key)) is not None


def sanitize_headers(headers: Mapping[str, object] | None) -> dict[str, str]:
    """
    Redact header values.

    A ``Bearer <token>`` value keeps its prefix and loses the token. Any other
    value under a sensitive header name is replaced entirely. Everything else
    goes through text redaction.
    """
    if not headers:
        return {}
    return {str(key): _sanitize_header_value(str(key), value) for key, value in headers.items()}


def _sanitize_header_value(key: str, value: object) -> str:
    text = "" if value is None else str(value)
    if _BEARER_VALUE.match(text):
        return _BEARER_VALUE.sub(rf"\g<1>{REDACTED_VALUE}", text)
    if is_sensitive_key(key):
        return REDACTED_VALUE
    return sanitize_text(text)


def sanitize_body(body: str | bytes | None) -> str | None:
    """
    Redact a request or response body.

    JSON-shaped content is parsed, redacted recursively and re-serialized
    compactly. Anything else, including JSON that fails to parse, goes
    through text redaction.
    """
    if body is None:
        return None
    content = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else str(body)
    if not content:
        return None

    if content.strip().startswith(("{", "[")):
        try:
            parsed = json.loads(content)
        except ValueError:
            return sanitize_text(content)
        return json.dumps(_redact_json(parsed), ensure_ascii=False, separators=(",", ":"))
    return sanitize_text(content)


def _redact_json(data: JsonValue) -> JsonValue:
    if isinstance(data, dict):
        redacted: dict[str, JsonValue] = {}
        for key, value in data.items():
            if is_sensitive_key(key) and not isinstance(value, (dict, list)):
                redacted[key] = REDACTED_VALUE
            else:
                redacted[key] = _redact_json(value)
        return redacted
    if isinstance(data, list):
        return [_redact_json(item) for item in data]
    if isinstance(data, str):
        return sanitize_text(data)
    return data


def sanitize_text(text: str) -> str:
    """Replace bearer tokens, ``key=value`` secrets and ``"key": "value"`` secrets."""
    redacted = _BEARER_IN_TEXT.sub(rf"\g<1>{REDACTED_VALUE}", text)
    redacted = _KEY_VALUE_IN_TEXT.sub(rf"\g<1>{REDACTED_VALUE}", redacted)
    return _QUOTED_KEY_VALUE_IN_TEXT.sub(rf"\g<1>{REDACTED_VALUE}\g<3>", redacted)
