"""
Unit tests for the log sanitizer — header, body and text redaction.

Test categories:
  - Headers: Bearer values keep their prefix, sensitive names fully redacted
  - JSON bodies: sensitive scalars redacted, containers recursed into
  - Text bodies: Bearer tokens, key=value and "key": "value" fragments
  - Properties: no secret survives, redaction is idempotent
"""

from __future__ import annotations

import json

import pytest

from ksef_client.adapters.log_sanitizer import (
    REDACTED_VALUE,
    is_sensitive_key,
    sanitize_body,
    sanitize_headers,
    sanitize_text,
)


class TestSanitizeHeaders:
    """Verify per-header redaction rules."""

    def test_bearer_value_keeps_prefix(self) -> None:
        """
        GIVEN an Authorization header "Bearer secret-token"
        WHEN sanitized
        THEN only the token is replaced.
        """
        result = sanitize_headers({"Authorization": "Bearer secret-token"})
        assert result == {"Authorization": "Bearer [REDACTED]"}

    def test_bearer_match_is_case_insensitive(self) -> None:
        result = sanitize_headers({"X-Forwarded-Auth": "bearer abc.def.ghi"})
        assert result["X-Forwarded-Auth"] == "bearer [REDACTED]"

    @pytest.mark.parametrize(
        "key",
        ["Cookie", "set-cookie", "X-Api-Key", "x_api_key", "ApiKey", "X-Auth-Token", "Client-Secret", "password"],
    )
    def test_sensitive_header_names_fully_redacted(self, key: str) -> None:
        """
        GIVEN a header whose name matches the sensitive-key pattern
        WHEN sanitized
        THEN the whole value is replaced.
        """
        assert sanitize_headers({key: "sid=very-secret; HttpOnly"}) == {key: REDACTED_VALUE}

    def test_plain_headers_pass_through(self) -> None:
        headers = {"Accept": "application/json", "X-Request-Id": "req-1"}
        assert sanitize_headers(headers) == headers

    def test_plain_header_value_still_text_redacted(self) -> None:
        """
        GIVEN a non-sensitive header carrying "token=abc" in its value
        WHEN sanitized
        THEN the embedded secret is replaced.
        """
        result = sanitize_headers({"X-Debug": "token=abc123"})
        assert result["X-Debug"] == f"token={REDACTED_VALUE}"

    def test_none_or_empty_headers_give_empty_dict(self) -> None:
        assert sanitize_headers(None) == {}
        assert sanitize_headers({}) == {}


class TestSanitizeJsonBody:
    """Verify recursive redaction of JSON-shaped bodies."""

    def test_redacts_sensitive_scalars(self) -> None:
        body = json.dumps({"username": "alice", "password": "secret", "apiKey": "key-123", "token": "t-1"})
        result = json.loads(sanitize_body(body) or "")
        assert result == {
            "username": "alice",
            "password": REDACTED_VALUE,
            "apiKey": REDACTED_VALUE,
            "token": REDACTED_VALUE,
        }

    def test_recurses_into_containers_under_sensitive_keys(self) -> None:
        """
        GIVEN a redeem response with accessToken/refreshToken objects
        WHEN sanitized
        THEN nested token values are redacted and validUntil survives.
        """
        body = json.dumps(
            {
                "accessToken": {"token": "secret", "validUntil": "tomorrow"},
                "refreshToken": {"token": "secret-refresh", "validUntil": "next-week"},
            }
        )
        result = json.loads(sanitize_body(body) or "")
        assert result["accessToken"] == {"token": REDACTED_VALUE, "validUntil": "tomorrow"}
        assert result["refreshToken"]["token"] == REDACTED_VALUE
        assert result["refreshToken"]["validUntil"] == "next-week"

    def test_redacts_encrypted_token(self) -> None:
        body = '{"challenge":"c-1","encryptedToken":"super-secret"}'
        result = json.loads(sanitize_body(body) or "")
        assert result == {"challenge": "c-1", "encryptedToken": REDACTED_VALUE}

    def test_redacts_inside_arrays(self) -> None:
        body = '[{"token":"a"},{"name":"x","secret":"b"}]'
        result = json.loads(sanitize_body(body) or "")
        assert result == [{"token": REDACTED_VALUE}, {"name": "x", "secret": REDACTED_VALUE}]

    def test_string_values_are_text_redacted(self) -> None:
        body = '{"message":"use Authorization: Bearer abc123 next time"}'
        result = sanitize_body(body) or ""
        assert "abc123" not in result

    def test_output_is_compact_json(self) -> None:
        assert sanitize_body('{ "a" : 1 }') == '{"a":1}'


class TestSanitizeTextBody:
    """Verify text redaction for non-JSON or unparsable bodies."""

    def test_bearer_in_plain_text(self) -> None:
        result = sanitize_body("Authorization: Bearer top-secret-token") or ""
        assert REDACTED_VALUE in result
        assert "top-secret-token" not in result

    def test_key_value_pairs(self) -> None:
        result = sanitize_body("user=alice&password=hunter2&api_key=k1") or ""
        assert "hunter2" not in result
        assert "k1" not in result
        assert "user=alice" in result

    def test_broken_json_falls_back_to_text(self) -> None:
        """
        GIVEN a truncated JSON body
        WHEN sanitized
        THEN "key": "value" fragments are still redacted.
        """
        result = sanitize_body('{"token": "abc", "other": ') or ""
        assert "abc" not in result
        assert f'"token": "{REDACTED_VALUE}"' in result

    def test_none_and_empty_give_none(self) -> None:
        assert sanitize_body(None) is None
        assert sanitize_body("") is None
        assert sanitize_body(b"") is None

    def test_bytes_are_decoded(self) -> None:
        assert sanitize_body(b"plain text") == "plain text"


class TestRedactionProperties:
    """No secret survives and a second pass changes nothing."""

    SECRET = "s3cr3t-VALUE-42"

    @pytest.mark.parametrize(
        "body",
        [
            '{"token":"s3cr3t-VALUE-42"}',
            '{"nested":{"password":"s3cr3t-VALUE-42"},"list":[{"apiKey":"s3cr3t-VALUE-42"}]}',
            '{"note":"Bearer s3cr3t-VALUE-42"}',
            "Bearer s3cr3t-VALUE-42",
            "secret=s3cr3t-VALUE-42",
            '"password": "s3cr3t-VALUE-42"',
        ],
    )
    def test_secret_never_survives(self, body: str) -> None:
        assert self.SECRET not in (sanitize_body(body) or "")

    @pytest.mark.parametrize("key", ["Authorization", "Cookie", "X-Api-Key", "Some-Token"])
    def test_header_secret_never_survives(self, key: str) -> None:
        for value in (self.SECRET, f"Bearer {self.SECRET}"):
            assert self.SECRET not in sanitize_headers({key: value})[key]

    @pytest.mark.parametrize(
        "body",
        [
            '{"accessToken":{"token":"a","validUntil":"b"},"x":[1,2,{"secret":null}]}',
            '[{"password":"p"},"Bearer zzz"]',
            '{"message":"Authorization: Bearer abc"}',
        ],
    )
    def test_json_redaction_is_idempotent(self, body: str) -> None:
        once = sanitize_body(body)
        assert sanitize_body(once) == once

    def test_text_redaction_is_idempotent(self) -> None:
        once = sanitize_text("Authorization: Bearer abc; token=xyz")
        assert sanitize_text(once) == once

    def test_headers_redaction_is_idempotent(self) -> None:
        once = sanitize_headers({"Authorization": "Bearer abc", "Cookie": "a=b"})
        assert sanitize_headers(once) == once


class TestSensitiveKeyPattern:
    @pytest.mark.parametrize(
        "key", ["authorization", "SET-COOKIE", "api-key", "api_key", "apikey", "accessToken", "clientSecret"]
    )
    def test_matches(self, key: str) -> None:
        assert is_sensitive_key(key)

    @pytest.mark.parametrize("key", ["validUntil", "referenceNumber", "challenge", "username"])
    def test_does_not_match(self, key: str) -> None:
        assert not is_sensitive_key(key)
