"""
Shared test fixtures and helpers for the ksef-client test suite.

Provides generated RSA keys and X.509 certificates standing in for the
KSeF public-key certificate endpoint, plus a list-backed API log sink.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ksef_client.domain.models import ENCRYPTION_USAGE, ApiLogEntry

BASE_URL = "https://api.ksef.mf.gov.pl/v2"


def build_certificate(
    private_key: rsa.RSAPrivateKey,
    not_valid_after: datetime,
    not_valid_before: datetime | None = None,
) -> x509.Certificate:
    """Create a self-signed certificate for the given key and validity window."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "KSeF Test Token Encryption")])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_valid_before or not_valid_after - timedelta(days=730))
        .not_valid_after(not_valid_after)
        .sign(private_key, hashes.SHA256())
    )


def certificate_b64(certificate: x509.Certificate) -> str:
    return base64.b64encode(certificate.public_bytes(serialization.Encoding.DER)).decode("ascii")


def certificates_response(
    certificate: x509.Certificate, usage: tuple[str, ...] = (ENCRYPTION_USAGE,)
) -> list[dict[str, object]]:
    """Body of GET /security/public-key-certificates with one signing and one matching entry."""
    return [
        {"usage": ["KsefTokenSigning"], "certificate": "not-used"},
        {"usage": list(usage), "certificate": certificate_b64(certificate)},
    ]


class RecordingLogSink:
    """ApiLogSink collecting entries in a list."""

    def __init__(self) -> None:
        self.entries: list[ApiLogEntry] = []

    def log_api(self, entry: ApiLogEntry) -> None:
        self.entries.append(entry)


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    """One 2048-bit RSA key shared by the whole session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture()
def valid_certificate(rsa_private_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Certificate valid for another year."""
    return build_certificate(rsa_private_key, datetime.now(UTC) + timedelta(days=365))


@pytest.fixture()
def expired_certificate(rsa_private_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Certificate that expired yesterday."""
    return build_certificate(rsa_private_key, datetime.now(UTC) - timedelta(days=1))


@pytest.fixture()
def log_sink() -> RecordingLogSink:
    return RecordingLogSink()
