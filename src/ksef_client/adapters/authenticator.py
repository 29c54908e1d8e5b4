"""
Authentication adapter — KSeF token challenge/response flow.

Six strictly sequential steps, all through the injected ApiRequester:
  1. FetchCertificate  GET  /security/public-key-certificates
  2. ObtainChallenge   POST /auth/challenge                 (no bearer)
  3. Encrypt           RSA-OAEP(SHA-256) of "{token}|{timestamp_ms}", base64
  4. Submit            POST /auth/ksef-token                (no bearer)
  5. PollStatus        GET  /auth/{referenceNumber}         (bearer = auth token)
  6. Redeem            POST /auth/token/redeem              (bearer = auth token)

No retries at this layer: transport retries belong to the client. Every
failure, including a TransportError raised by the client, surfaces as a
ProtocolError carrying a stage-specific message.

Certificate handling uses cryptography (PyCA): DER loading, validity check,
RSA-OAEP encryption.
"""

from __future__ import annotations

import base64
import binascii
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, NoReturn

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from ksef_client.domain.errors import ProtocolError, TransportError
from ksef_client.domain.models import (
    ENCRYPTION_USAGE,
    AuthenticationTicket,
    Challenge,
    Credentials,
    EncryptionCertificate,
    JsonValue,
    TokenPair,
)
from ksef_client.domain.ports import ApiRequester, TokenSink

log = structlog.get_logger()

DEFAULT_POLL_ATTEMPTS = 10
DEFAULT_POLL_INTERVAL = 1.0

_STATUS_SUCCESS = 200
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _fail(stage: str, message: str, cause: BaseException | None = None) -> NoReturn:
    log.warning("auth.failed", stage=stage, reason=message)
    raise ProtocolError(message, stage=stage) from cause


def _error_of(response: JsonValue) -> JsonValue:
    """Return the error field of an object response, if any."""
    if isinstance(response, dict):
        return response.get("error")
    return None


def _nested(response: JsonValue, *keys: str) -> Any:
    value: Any = response
    for key in keys:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def parse_timestamp_ms(value: JsonValue) -> int:
    """
    Convert a challenge timestamp to epoch milliseconds.

    Accepts an integer (already milliseconds), a digit string, or an ISO-8601
    string. Raises ValueError when none of these apply.
    """
    if isinstance(value, bool):
        raise ValueError(f"unsupported timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return (parsed - _EPOCH) // timedelta(milliseconds=1)
    raise ValueError(f"unsupported timestamp: {value!r}")


def encrypt_token(certificate: EncryptionCertificate, secret: str, timestamp_ms: int) -> str:
    """Encrypt ``"{secret}|{timestamp_ms}"`` with RSA-OAEP (SHA-256 / MGF1-SHA-256)."""
    public_key = certificate.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise TypeError(f"expected an RSA public key, got {type(public_key).__name__}")
    ciphertext = public_key.encrypt(
        f"{secret}|{timestamp_ms}".encode(),
        padding.OAEP(
            mgf=padding.MGF1(algorithm=hashes.SHA256()),
            algorithm=hashes.SHA256(),
            label=None,
        ),
    )
    return base64.b64encode(ciphertext).decode("ascii")


class KsefAuthenticator:
    """
    Run the KSeF token authentication flow and return a TokenPair.

    ``token_sink`` is optional; when given, it receives the new tokens so the
    client picks them up for subsequent calls. ``sleep`` and ``clock`` are
    injectable for tests.
    """

    def __init__(
        self,
        client: ApiRequester,
        token_sink: TokenSink | None = None,
        poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._token_sink = token_sink
        self._poll_attempts = max(1, poll_attempts)
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    def authenticate(self, credentials: Credentials) -> TokenPair:
        """
        Execute all six steps for the given credentials.

        Raises ProtocolError on the first failing step; nothing after it is called.
        """
        log.info("auth.starting", nip=credentials.nip)

        certificate = self._fetch_certificate()
        challenge = self._obtain_challenge()
        encrypted_token = self._encrypt(certificate, credentials, challenge)
        ticket = self._submit(credentials, challenge, encrypted_token)
        self._wait_for_completion(ticket)
        tokens = self._redeem(ticket)

        if self._token_sink is not None:
            self._token_sink.update_tokens(tokens)

        log.info(
            "auth.completed",
            nip=credentials.nip,
            valid_until=tokens.access_token_valid_until,
            has_refresh_token=tokens.refresh_token is not None,
        )
        return tokens

    # ─────────────────────── Steps ───────────────────────

    def _call(self, stage: str, message: str, call: Callable[[], JsonValue]) -> JsonValue:
        try:
            return call()
        except TransportError as exc:
            _fail(stage, f"{message}: {exc}", exc)

    def _fetch_certificate(self) -> EncryptionCertificate:
        stage = "fetch_certificate"
        certs = self._call(
            stage,
            "Certificate fetch failed",
            lambda: self._client.get("/security/public-key-certificates", token=None),
        )
        if (error := _error_of(certs)) is not None:
            _fail(stage, f"Certificate fetch failed: {error}")
        if not isinstance(certs, list):
            _fail(stage, "Invalid certificate response")

        entry = next(
            (
                cert
                for cert in certs
                if isinstance(cert, dict)
                and isinstance(cert.get("usage"), list)
                and ENCRYPTION_USAGE in cert["usage"]
            ),
            None,
        )
        if entry is None:
            _fail(stage, "No encryption certificate found")

        try:
            der = base64.b64decode(str(entry.get("certificate") or ""), validate=True)
            parsed = x509.load_der_x509_certificate(der)
        except (binascii.Error, ValueError) as exc:
            _fail(stage, f"Invalid encryption certificate: {exc}", exc)

        certificate = EncryptionCertificate(
            certificate=parsed,
            usage=tuple(str(usage) for usage in entry["usage"]),
        )
        if certificate.is_expired(self._clock()):
            _fail(
                stage,
                f"Encryption certificate expired on {certificate.not_valid_after.isoformat()}",
            )

        log.info(
            "auth.certificate_selected",
            serial=hex(parsed.serial_number),
            not_valid_after=certificate.not_valid_after.isoformat(),
        )
        return certificate

    def _obtain_challenge(self) -> Challenge:
        stage = "obtain_challenge"
        response = self._call(
            stage, "Challenge failed", lambda: self._client.post("/auth/challenge", token=None)
        )
        if (error := _error_of(response)) is not None:
            _fail(stage, f"Challenge failed: {error}")
        if not isinstance(response, dict):
            _fail(stage, "Invalid challenge response")

        challenge = response.get("challenge")
        if not isinstance(challenge, str) or not challenge:
            _fail(stage, "Challenge response missing challenge")

        raw_timestamp = response.get("timestampMs")
        if raw_timestamp is None:
            raw_timestamp = response.get("timestamp")
        if raw_timestamp is None:
            _fail(stage, "Challenge response missing timestamp")

        try:
            timestamp_ms = parse_timestamp_ms(raw_timestamp)
        except ValueError as exc:
            _fail(stage, f"Invalid challenge timestamp: {raw_timestamp!r}", exc)

        log.info("auth.challenge_received", timestamp_ms=timestamp_ms)
        return Challenge(challenge=challenge, timestamp_ms=timestamp_ms)

    def _encrypt(
        self,
        certificate: EncryptionCertificate,
        credentials: Credentials,
        challenge: Challenge,
    ) -> str:
        try:
            return encrypt_token(certificate, credentials.token, challenge.timestamp_ms)
        except (TypeError, ValueError) as exc:
            _fail("encrypt", f"Token encryption failed: {exc}", exc)

    def _submit(
        self,
        credentials: Credentials,
        challenge: Challenge,
        encrypted_token: str,
    ) -> AuthenticationTicket:
        stage = "submit"
        body: JsonValue = {
            "contextIdentifier": {"type": "Nip", "value": credentials.nip},
            "challenge": challenge.challenge,
            "encryptedToken": encrypted_token,
        }
        response = self._call(
            stage, "Auth failed", lambda: self._client.post("/auth/ksef-token", body, token=None)
        )
        if (error := _error_of(response)) is not None:
            _fail(stage, f"Auth failed: {error}")

        auth_token = _nested(response, "authenticationToken", "token")
        if not isinstance(auth_token, str) or not auth_token:
            _fail(stage, "No auth token in response")
        reference_number = _nested(response, "referenceNumber")
        if not isinstance(reference_number, str) or not reference_number:
            _fail(stage, "No reference number in response")

        log.info("auth.submitted", reference_number=reference_number)
        return AuthenticationTicket(
            reference_number=reference_number,
            authentication_token=auth_token,
        )

    def _wait_for_completion(self, ticket: AuthenticationTicket) -> None:
        """
        Poll the authentication status.

        200 → done; 400..599 or an error field → terminal failure right away;
        anything else → sleep and poll again, up to ``poll_attempts`` times.
        """
        stage = "poll_status"
        path = f"/auth/{ticket.reference_number}"

        for attempt in range(1, self._poll_attempts + 1):
            response = self._call(
                stage,
                "Auth status check failed",
                lambda: self._client.get(path, token=ticket.authentication_token),
            )
            if (error := _error_of(response)) is not None:
                _fail(stage, f"Auth status check failed: {error}")

            code = _nested(response, "status", "code")
            if code == _STATUS_SUCCESS:
                return
            if isinstance(code, int) and 400 <= code <= 599:
                description = _nested(response, "status", "description")
                _fail(stage, f"Auth status check failed: status {code} {description or ''}".rstrip())

            log.info("auth.status_pending", reference_number=ticket.reference_number, attempt=attempt, code=code)
            if attempt < self._poll_attempts:
                self._sleep(self._poll_interval)

        _fail(stage, f"Auth status check failed: no result after {self._poll_attempts} attempts")

    def _redeem(self, ticket: AuthenticationTicket) -> TokenPair:
        stage = "redeem"
        response = self._call(
            stage,
            "Token redeem failed",
            lambda: self._client.post("/auth/token/redeem", {}, token=ticket.authentication_token),
        )
        if (error := _error_of(response)) is not None:
            _fail(stage, f"Token redeem failed: {error}")

        access = _nested(response, "accessToken")
        if not isinstance(access, dict) or not access.get("token"):
            _fail(stage, "No access token in response")

        refresh = _nested(response, "refreshToken")
        if not isinstance(refresh, dict):
            refresh = {}

        return TokenPair(
            access_token=str(access["token"]),
            access_token_valid_until=access.get("validUntil"),
            refresh_token=refresh.get("token"),
            refresh_token_valid_until=refresh.get("validUntil"),
        )
