"""
ksef_client — KSeF (Polish national e-invoicing system) integration core.

Authenticates with the KSeF token challenge/response protocol, issues
resilient API calls with sanitized audit logging, and normalizes invoices
from FA or UBL XML documents and from JSON metadata.
"""

__version__ = "0.1.0"
