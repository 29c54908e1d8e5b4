"""
Domain models — immutable value objects for authentication, audit logs and invoices.

These are value objects with no behavior beyond self-validation and small
computed properties (expiry checks, success flags).
They are what the core hands to the presentation layer:
  - TokenPair      → result of the authentication flow
  - ApiLogEntry    → one audit record per logical HTTP call
  - InvoiceRecord  → canonical invoice view (XML-sourced or metadata-sourced)

All models are frozen dataclasses (immutable). Secrets are excluded from repr.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from cryptography import x509

type JsonValue = None | bool | int | float | str | list[JsonValue] | dict[str, JsonValue]

ENCRYPTION_USAGE = "KsefTokenEncryption"


@dataclass(frozen=True, slots=True)
class Credentials:
    """
    Taxpayer identity plus the pre-shared KSeF token.

    The NIP is normalized to digits only on construction, so "123-456-78-90"
    and "1234567890" are the same identity.
    """

    nip: str
    token: str = field(repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nip", re.sub(r"\D", "", str(self.nip or "")))
        if not self.nip:
            raise ValueError("nip is required")
        if not self.token:
            raise ValueError("token is required")


@dataclass(frozen=True, slots=True)
class Challenge:
    """Single-use server challenge bound to a timestamp in epoch milliseconds."""

    challenge: str
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class EncryptionCertificate:
    """
    The authority's public-key certificate used to encrypt the KSeF token.

    Only certificates whose usage list contains ``KsefTokenEncryption`` are
    selected, and they must still be valid at the moment of use.
    """

    certificate: x509.Certificate = field(repr=False)
    usage: tuple[str, ...] = ()

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    def is_expired(self, now: datetime) -> bool:
        return now >= self.not_valid_after

    def public_key(self) -> Any:
        return self.certificate.public_key()


@dataclass(frozen=True, slots=True)
class AuthenticationTicket:
    """Reference number and short-lived bearer used only to poll and redeem."""

    reference_number: str
    authentication_token: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class TokenPair:
    """
    Access and refresh tokens returned by a successful authentication.

    Owned by the caller once returned. Validity timestamps are kept as the
    ISO-8601 strings the authority sends.
    """

    access_token: str = field(repr=False)
    access_token_valid_until: str | None = None
    refresh_token: str | None = field(default=None, repr=False)
    refresh_token_valid_until: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """
        Whether the access token validity has passed.

        A missing or unparsable validity timestamp counts as not expired.
        """
        if not self.access_token_valid_until:
            return False
        try:
            valid_until = datetime.fromisoformat(self.access_token_valid_until)
        except ValueError:
            return False
        if valid_until.tzinfo is None:
            valid_until = valid_until.replace(tzinfo=UTC)
        return valid_until < (now or datetime.now(UTC))

    def is_active(self, now: datetime | None = None) -> bool:
        return bool(self.access_token) and not self.is_expired(now)


@dataclass(frozen=True, slots=True)
class ApiLogEntry:
    """
    Audit record for one logical HTTP call, regardless of retry count.

    Headers and bodies are already sanitized when the entry is built.
    ``status`` is 0 when no response was ever received.
    """

    timestamp: datetime
    method: str
    path: str
    status: int
    duration: float
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300


class DataSource(StrEnum):
    XML = "xml"
    JSON_FALLBACK = "json_fallback"


@dataclass(frozen=True, slots=True)
class Party:
    """Seller or buyer block of an invoice."""

    name: str | None = None
    nip: str | None = None
    address: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.name is None and self.nip is None and self.address is None


@dataclass(frozen=True, slots=True)
class InvoiceLineItem:
    """
    One invoice row.

    Amounts and quantities stay as text exactly as the document states them,
    so no floating-point rounding is ever introduced.
    """

    position: str | None = None
    description: str | None = None
    quantity: str | None = None
    unit: str | None = None
    unit_price: str | None = None
    net_amount: str | None = None
    vat_rate: str | None = None
    vat_amount: str | None = None
    gross_amount: str | None = None


@dataclass(frozen=True, slots=True)
class InvoiceRecord:
    """
    Canonical invoice view.

    XML-sourced records carry the full field set plus the raw document in
    ``xml``. Metadata-sourced records carry only what the query response
    contained and never carry ``xml``; callers check ``xml_loaded`` to decide
    whether full detail must still be fetched.
    """

    data_source: DataSource
    ksef_number: str | None = None
    invoice_number: str | None = None
    invoice_type: str | None = None
    issue_date: str | None = None
    invoicing_date: str | None = None
    payment_due_date: str | None = None
    payment_method: str | None = None
    net_amount: str | None = None
    vat_amount: str | None = None
    gross_amount: str | None = None
    currency: str | None = None
    seller: Party | None = None
    buyer: Party | None = None
    items: tuple[InvoiceLineItem, ...] = ()
    xml: str | None = field(default=None, repr=False)
    data: dict[str, JsonValue] = field(default_factory=dict, repr=False)

    @property
    def xml_loaded(self) -> bool:
        return bool(self.xml and self.xml.strip())
