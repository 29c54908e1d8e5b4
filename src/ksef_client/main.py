"""
Application entry point — wires dependencies and runs one invoice sync.

Composition root: creates concrete adapters and injects them into the
pipeline. This is the ONLY place where concrete classes are instantiated
from settings; everything else receives its collaborators explicitly.

Responsibilities:
  1. Configure structlog
  2. Load and validate configuration from environment
  3. Create the log buffer, client, authenticator and invoice service
  4. Run the sync pipeline and report the outcome
"""

from __future__ import annotations

import logging
import sys

import structlog

from ksef_client import __version__
from ksef_client.adapters.api_log import ApiLogBuffer
from ksef_client.adapters.authenticator import KsefAuthenticator
from ksef_client.adapters.http_client import KsefClient
from ksef_client.adapters.invoice_service import InvoiceService
from ksef_client.config import AppSettings
from ksef_client.domain.errors import KsefError
from ksef_client.domain.models import Credentials
from ksef_client.pipeline import sync_recent_invoices


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


type _Components = tuple[ApiLogBuffer, KsefClient, KsefAuthenticator, InvoiceService]


def _create_components(settings: AppSettings) -> _Components:
    """
    Instantiate all concrete adapters from application settings.

    The client doubles as the authenticator's token sink, so the invoice
    service uses the redeemed access token without further wiring.
    """
    api_log = ApiLogBuffer(capacity=settings.api_log_capacity)
    client = KsefClient.from_settings(settings.network, api_log_sink=api_log)
    authenticator = KsefAuthenticator(
        client,
        token_sink=client,
        poll_attempts=settings.auth.poll_attempts,
        poll_interval=settings.auth.poll_interval,
    )
    invoice_service = InvoiceService(client)
    return api_log, client, authenticator, invoice_service


def main() -> None:
    """Wire dependencies and run one sync of recent invoices."""
    try:
        settings = AppSettings()
        credentials = Credentials(
            nip=settings.auth.nip,
            token=settings.auth.token.get_secret_value(),
        )
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        host=settings.network.host,
        log_level=settings.log_level,
        max_retries=settings.network.max_retries,
    )

    api_log, _client, authenticator, invoice_service = _create_components(settings)

    try:
        invoices = sync_recent_invoices(
            authenticator,
            credentials,
            invoice_service,
            subject_type=settings.subject_type,
            days=settings.invoice_window_days,
        )
    except KsefError as e:
        log.error("app.sync_failed", error=str(e), error_type=type(e).__name__, api_calls=len(api_log))
        sys.exit(1)

    for invoice in invoices:
        log.info(
            "app.invoice",
            ksef_number=invoice.ksef_number,
            invoice_number=invoice.invoice_number,
            issue_date=invoice.issue_date,
            gross_amount=invoice.gross_amount,
            currency=invoice.currency,
        )
    log.info("app.finished", invoices=len(invoices), api_calls=len(api_log))


if __name__ == "__main__":
    main()
