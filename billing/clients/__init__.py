"""Upstream HTTP clients"""

from .invoicing_client import InvoicingClient
from .legacy_client import LegacyBackendClient

__all__ = [
    "InvoicingClient",
    "LegacyBackendClient",
]
