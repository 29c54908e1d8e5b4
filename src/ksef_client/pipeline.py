"""
Pipeline — authenticate, then list the invoices of the recent window.

  authenticate(credentials)
    → TokenPair (pushed into the client through its TokenSink)
      → build_metadata_query(subject_type, now, days)
        → find_all(query) → [InvoiceRecord]

Each stage raises on failure (ProtocolError, TransportError, DataError),
so later stages never run after an earlier one failed.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from ksef_client.adapters.authenticator import KsefAuthenticator
from ksef_client.adapters.invoice_service import (
    DEFAULT_WINDOW_DAYS,
    InvoiceService,
    build_metadata_query,
)
from ksef_client.domain.models import Credentials, InvoiceRecord

log = structlog.get_logger()


def sync_recent_invoices(
    authenticator: KsefAuthenticator,
    credentials: Credentials,
    invoice_service: InvoiceService,
    subject_type: str = "seller",
    days: int = DEFAULT_WINDOW_DAYS,
    now: datetime | None = None,
) -> list[InvoiceRecord]:
    """
    Run the full sync and return metadata-sourced invoice records.

    The authenticator must have been built with the client as its token sink,
    otherwise the metadata query goes out without the new access token.
    """
    authenticator.authenticate(credentials)
    query = build_metadata_query(subject_type, now=now, days=days)
    invoices = invoice_service.find_all(query)
    log.info("pipeline.complete", subject_type=subject_type, days=days, invoices=len(invoices))
    return invoices
