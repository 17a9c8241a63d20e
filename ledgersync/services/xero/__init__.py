"""
Xero Service Module

Provides the Xero API client, OAuth token lifecycle and the per-entity
sync operations.
"""
from .client import (
    XeroClient,
    XeroError,
    XeroApiError,
    XeroAuthError,
    XeroNotConnectedError,
    XeroRateLimitError,
    XeroServerError,
    iter_pages,
)
from .oauth import XeroOAuthService, StoredTokens, AuthResult, TokenRefreshResult
from .status import ConnectionStatusCache
from .contacts import ContactSync
from .invoices import InvoiceSync
from .payments import PaymentSync

__all__ = [
    'XeroClient',
    'XeroError',
    'XeroApiError',
    'XeroAuthError',
    'XeroNotConnectedError',
    'XeroRateLimitError',
    'XeroServerError',
    'iter_pages',
    'XeroOAuthService',
    'StoredTokens',
    'AuthResult',
    'TokenRefreshResult',
    'ConnectionStatusCache',
    'ContactSync',
    'InvoiceSync',
    'PaymentSync',
]
