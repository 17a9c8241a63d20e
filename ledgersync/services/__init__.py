"""
External Service Integrations

Usage:
    from ledgersync.services.xero import XeroClient, XeroOAuthService
"""
from .xero import XeroClient, XeroOAuthService, ContactSync, InvoiceSync, PaymentSync

__all__ = [
    'XeroClient',
    'XeroOAuthService',
    'ContactSync',
    'InvoiceSync',
    'PaymentSync',
]
