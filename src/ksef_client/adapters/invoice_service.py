"""
Invoice service — looks invoices up through the client and normalizes them.

  find(ksef_number)      GET  /invoices/ksef/{id}      (Accept: application/xml)
                         → from_xml → InvoiceRecord (data_source = xml)
  find_all(query_body)   POST /invoices/query/metadata
                         → from_json_metadata per entry (data_source = json_fallback)

Error payloads returned by the client and unexpected response shapes are
raised as DataError.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import structlog

from ksef_client.adapters.http_client import USE_DEFAULT
from ksef_client.adapters.invoice_mapper import from_json_metadata, from_xml
from ksef_client.domain.errors import DataError
from ksef_client.domain.models import InvoiceRecord, JsonValue
from ksef_client.domain.ports import ApiRequester

log = structlog.get_logger()

SUBJECT_TYPES = {
    "seller": "Subject1",
    "buyer": "Subject2",
    "authorized": "SubjectAuthorized",
}

DEFAULT_WINDOW_DAYS = 30


def build_metadata_query(
    subject_type: str = "seller",
    now: datetime | None = None,
    days: int = DEFAULT_WINDOW_DAYS,
) -> dict[str, JsonValue]:
    """
    Build the metadata query body for invoices stored in the last ``days`` days.

    ``subject_type`` is one of seller, buyer, authorized (or the raw API value).
    """
    if subject_type in SUBJECT_TYPES:
        api_subject = SUBJECT_TYPES[subject_type]
    elif subject_type in SUBJECT_TYPES.values():
        api_subject = subject_type
    else:
        raise DataError(f"Unknown subject type: {subject_type!r}")
    if days < 1:
        raise DataError("days must be positive")

    to = now or datetime.now(UTC)
    return {
        "subjectType": api_subject,
        "dateRange": {
            "dateType": "PermanentStorage",
            "from": (to - timedelta(days=days)).isoformat(),
            "to": to.isoformat(),
        },
    }


def _raise_on_error(response: JsonValue) -> None:
    if isinstance(response, dict) and response.get("error"):
        raise DataError(str(response["error"]))


class InvoiceService:
    """
    Fetch invoices from KSeF and hand them to the normalizer.

    ``token`` follows the client convention; by default the client's current
    access token is used.
    """

    def __init__(self, client: ApiRequester, token: Any = USE_DEFAULT) -> None:
        self._client = client
        self._token = token

    def find(self, ksef_number: str) -> InvoiceRecord:
        """Download one invoice as XML and map it."""
        if not str(ksef_number or "").strip():
            raise DataError("ksef_number is required")

        path = f"/invoices/ksef/{quote(str(ksef_number), safe='')}"
        response = self._client.get_xml(path, token=self._token)
        _raise_on_error(response)
        if not isinstance(response, str):
            raise DataError("Invalid XML invoice response")

        record = from_xml(ksef_number, response)
        log.info("invoice.found", ksef_number=ksef_number, items=len(record.items))
        return record

    def find_all(self, query_body: Mapping[str, Any]) -> list[InvoiceRecord]:
        """Run a metadata query and map every returned entry."""
        if not isinstance(query_body, Mapping):
            raise DataError("query_body must be a mapping")

        response = self._client.post("/invoices/query/metadata", dict(query_body), token=self._token)
        _raise_on_error(response)
        if not isinstance(response, dict):
            raise DataError("Invalid invoice list response")

        raw_invoices = response.get("invoices")
        if raw_invoices is None:
            raw_invoices = []
        if not isinstance(raw_invoices, list):
            raise DataError("Invalid invoices payload")

        records = [from_json_metadata(entry) for entry in raw_invoices]
        log.info("invoice.listed", count=len(records), has_more=response.get("hasMore"))
        return records
