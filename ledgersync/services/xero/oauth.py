"""
Xero OAuth Service

OAuth2 authorization-code flow, token storage and the refresh lifecycle.
Tokens live in the ``xero_integrations`` table; the newest active row is the
current connection.
"""
import logging
import secrets
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import requests

from ...config_manager import EnvConfig
from ...core.db import SessionLocal
from ...core.models import XeroIntegration, utcnow
from .client import XeroClient, XeroAuthError, XeroNotConnectedError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://login.xero.com/identity/connect/authorize"
TOKEN_URL = "https://identity.xero.com/connect/token"
CONNECTIONS_URL = "https://api.xero.com/connections"

DEFAULT_EXPIRES_IN = 1800
REFRESH_THRESHOLD_MINUTES = 20
CLIENT_MIN_VALIDITY_MINUTES = 5
HEALTH_REFRESH_WINDOW_MINUTES = 15

# Refresh errors that mean the grant is gone and the user must reconnect
PERMANENT_REFRESH_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}

CALLBACK_ERROR_MESSAGES = {
    "invalid_grant": "Authorization code expired or already used. Please reconnect to Xero.",
    "unauthorized_client": "This Xero app is not authorized. Check XERO_CLIENT_ID and XERO_CLIENT_SECRET.",
}


@dataclass
class StoredTokens:
    """Tokens of the current Xero connection."""
    access_token: str
    refresh_token: str
    expires_at: datetime
    tenant_id: str
    tenant_name: Optional[str] = None

    def minutes_until_expiry(self, now: Optional[datetime] = None) -> float:
        return (self.expires_at - (now or utcnow())).total_seconds() / 60


@dataclass
class AuthResult:
    success: bool
    tenant_id: Optional[str] = None
    tenant_name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TokenRefreshResult:
    success: bool
    refreshed: bool
    message: str
    next_refresh_in: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _oauth_error_code(response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("error")
    return None


class XeroOAuthService:
    """
    Xero OAuth2 token lifecycle.

    Features:
    - Consent URL and callback code exchange
    - Token persistence per tenant
    - Threshold-based refresh with permanent/transient error split
    - Connection health summary
    """

    def __init__(
        self,
        session_factory: Callable = SessionLocal,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        http: Optional[requests.Session] = None,
    ):
        if client_id is None:
            client_id, client_secret, redirect_uri, env_scopes = EnvConfig.get_xero_credentials()
            scopes = scopes or env_scopes
        self.session_factory = session_factory
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or EnvConfig.DEFAULT_SCOPES.split()
        self.http = http or requests.Session()

    # ------------------------------------------------------------------
    # Authorization code flow
    # ------------------------------------------------------------------

    def build_consent_url(self, state: Optional[str] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state or secrets.token_urlsafe(16),
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def handle_callback(self, code: str, user_id: Optional[str] = None) -> AuthResult:
        """Exchange an authorization code, pick the first tenant and store the tokens."""
        if not code:
            return AuthResult(success=False, error="Missing authorization code")

        try:
            response = self.http.post(
                TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                },
                auth=(self.client_id, self.client_secret),
                timeout=30,
            )
        except requests.RequestException as e:
            logger.error(f"Xero token exchange failed: {e}")
            return AuthResult(success=False, error=f"Token exchange failed: {e}")

        if response.status_code != 200:
            error_code = _oauth_error_code(response)
            logger.error(f"Xero token exchange returned {response.status_code}: {error_code}")
            message = CALLBACK_ERROR_MESSAGES.get(
                error_code, f"Token exchange failed with status {response.status_code}"
            )
            return AuthResult(success=False, error=message)

        token_set = response.json()
        access_token = token_set.get("access_token")
        refresh_token = token_set.get("refresh_token")
        if not access_token or not refresh_token:
            return AuthResult(success=False, error="Token response is missing access or refresh token")

        try:
            tenants = self._get_connections(access_token)
        except requests.RequestException as e:
            logger.error(f"Failed to fetch Xero connections: {e}")
            return AuthResult(success=False, error=f"Failed to fetch Xero organisations: {e}")
        if not tenants:
            return AuthResult(success=False, error="No Xero organisation was authorized")

        tenant = next((t for t in tenants if t.get("tenantType") == "ORGANISATION"), tenants[0])
        expires_in = int(token_set.get("expires_in") or DEFAULT_EXPIRES_IN)

        session = self.session_factory()
        try:
            integration = (
                session.query(XeroIntegration)
                .filter(XeroIntegration.tenant_id == tenant["tenantId"])
                .first()
            )
            if integration is None:
                integration = XeroIntegration(tenant_id=tenant["tenantId"], created_by_id=user_id)
                session.add(integration)
            integration.tenant_name = tenant.get("tenantName")
            integration.tenant_type = tenant.get("tenantType")
            integration.access_token = access_token
            integration.refresh_token = refresh_token
            integration.expires_at = utcnow() + timedelta(seconds=expires_in)
            integration.scopes = (token_set.get("scope") or " ".join(self.scopes)).split()
            integration.is_active = True
            integration.connected_at = utcnow()
            session.commit()
        finally:
            session.close()

        logger.info(f"Connected Xero organisation {tenant.get('tenantName')} ({tenant['tenantId']})")
        return AuthResult(success=True, tenant_id=tenant["tenantId"], tenant_name=tenant.get("tenantName"))

    def _get_connections(self, access_token: str) -> List[Dict[str, Any]]:
        response = self.http.get(
            CONNECTIONS_URL,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=30,
        )
        response.raise_for_status()
        return response.json() or []

    # ------------------------------------------------------------------
    # Token storage and refresh
    # ------------------------------------------------------------------

    def get_stored_tokens(self) -> Optional[StoredTokens]:
        session = self.session_factory()
        try:
            integration = (
                session.query(XeroIntegration)
                .filter(XeroIntegration.is_active.is_(True))
                .order_by(XeroIntegration.updated_at.desc())
                .first()
            )
            if integration is None:
                return None
            return StoredTokens(
                access_token=integration.access_token,
                refresh_token=integration.refresh_token,
                expires_at=integration.expires_at,
                tenant_id=integration.tenant_id,
                tenant_name=integration.tenant_name,
            )
        finally:
            session.close()

    def refresh_access_token(
        self,
        refresh_token: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[StoredTokens]:
        """
        Refresh the access token.

        A permanent failure (revoked grant, bad client) deactivates the
        integration so the user is asked to reconnect; transient failures
        leave it active for the next attempt. Returns None on failure.
        """
        if refresh_token is None or tenant_id is None:
            current = self.get_stored_tokens()
            if current is None:
                logger.warning("No Xero connection to refresh")
                return None
            refresh_token, tenant_id = current.refresh_token, current.tenant_id

        try:
            response = self.http.post(
                TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                auth=(self.client_id, self.client_secret),
                timeout=30,
            )
        except requests.RequestException as e:
            logger.warning(f"Transient error refreshing Xero token: {e}")
            return None

        if response.status_code != 200:
            error_code = _oauth_error_code(response)
            if error_code in PERMANENT_REFRESH_ERRORS:
                logger.error(f"Xero refresh token rejected ({error_code}); deactivating integration {tenant_id}")
                self._deactivate(tenant_id)
            else:
                logger.warning(f"Xero token refresh failed with status {response.status_code} ({error_code})")
            return None

        token_set = response.json()
        expires_in = int(token_set.get("expires_in") or DEFAULT_EXPIRES_IN)
        session = self.session_factory()
        try:
            integration = (
                session.query(XeroIntegration)
                .filter(XeroIntegration.tenant_id == tenant_id)
                .first()
            )
            if integration is None:
                logger.error(f"Xero integration {tenant_id} disappeared during refresh")
                return None
            integration.access_token = token_set["access_token"]
            # Xero rotates refresh tokens; keep the old one if none was returned
            integration.refresh_token = token_set.get("refresh_token") or refresh_token
            integration.expires_at = utcnow() + timedelta(seconds=expires_in)
            session.commit()
            logger.info(f"Refreshed Xero access token for {integration.tenant_name or tenant_id}")
            return StoredTokens(
                access_token=integration.access_token,
                refresh_token=integration.refresh_token,
                expires_at=integration.expires_at,
                tenant_id=integration.tenant_id,
                tenant_name=integration.tenant_name,
            )
        finally:
            session.close()

    def _deactivate(self, tenant_id: str):
        session = self.session_factory()
        try:
            session.query(XeroIntegration).filter(XeroIntegration.tenant_id == tenant_id).update(
                {XeroIntegration.is_active: False}
            )
            session.commit()
        finally:
            session.close()

    def ensure_tokens_fresh(self, min_validity_minutes: int = REFRESH_THRESHOLD_MINUTES) -> bool:
        """True when a token valid for at least ``min_validity_minutes`` is stored (refreshing if needed)."""
        tokens = self.get_stored_tokens()
        if tokens is None:
            return False
        if tokens.minutes_until_expiry() > min_validity_minutes:
            return True
        return self.refresh_access_token(tokens.refresh_token, tokens.tenant_id) is not None

    def proactive_refresh(self, threshold_minutes: int = REFRESH_THRESHOLD_MINUTES) -> TokenRefreshResult:
        tokens = self.get_stored_tokens()
        if tokens is None:
            return TokenRefreshResult(success=False, refreshed=False, message="No Xero connection", error="not_connected")

        remaining = tokens.minutes_until_expiry()
        if remaining > threshold_minutes:
            return TokenRefreshResult(
                success=True,
                refreshed=False,
                message=f"Token valid for {int(remaining)} more minutes",
                next_refresh_in=max(0, int(remaining - threshold_minutes)),
            )

        refreshed = self.refresh_access_token(tokens.refresh_token, tokens.tenant_id)
        if refreshed is None:
            return TokenRefreshResult(
                success=False,
                refreshed=False,
                message="Token refresh failed",
                error="refresh_failed",
            )
        remaining = refreshed.minutes_until_expiry()
        return TokenRefreshResult(
            success=True,
            refreshed=True,
            message="Token refreshed",
            next_refresh_in=max(0, int(remaining - threshold_minutes)),
        )

    def check_connection_health(self) -> Dict[str, Any]:
        tokens = self.get_stored_tokens()
        if tokens is None:
            return {
                "connected": False,
                "needs_refresh": False,
                "needs_reconnect": True,
                "message": "No Xero connection",
            }
        remaining = tokens.minutes_until_expiry()
        expired = remaining <= 0
        return {
            "connected": not expired,
            "tenant_id": tokens.tenant_id,
            "tenant_name": tokens.tenant_name,
            "expires_at": tokens.expires_at.isoformat(),
            "expires_in_minutes": max(0, int(remaining)),
            "needs_refresh": not expired and remaining <= HEALTH_REFRESH_WINDOW_MINUTES,
            "needs_reconnect": expired,
            "message": "Token expired" if expired else "Connected",
        }

    def disconnect(self) -> int:
        """Deactivate every stored integration; returns how many were active."""
        session = self.session_factory()
        try:
            count = (
                session.query(XeroIntegration)
                .filter(XeroIntegration.is_active.is_(True))
                .update({XeroIntegration.is_active: False})
            )
            session.commit()
            logger.info(f"Disconnected {count} Xero integration(s)")
            return count
        finally:
            session.close()

    def mark_synced(self, tenant_id: str):
        session = self.session_factory()
        try:
            session.query(XeroIntegration).filter(XeroIntegration.tenant_id == tenant_id).update(
                {XeroIntegration.last_sync_at: utcnow()}
            )
            session.commit()
        finally:
            session.close()

    # ------------------------------------------------------------------
    # API client
    # ------------------------------------------------------------------

    def create_client(self) -> XeroClient:
        """
        Build an API client for the current connection.

        Raises:
            XeroNotConnectedError: No active integration
            XeroAuthError: Token is about to expire and could not be refreshed
        """
        tokens = self.get_stored_tokens()
        if tokens is None:
            raise XeroNotConnectedError("Xero is not connected. Please connect to Xero first.")

        if tokens.minutes_until_expiry() <= CLIENT_MIN_VALIDITY_MINUTES:
            tokens = self.refresh_access_token(tokens.refresh_token, tokens.tenant_id)
            if tokens is None:
                raise XeroAuthError("Failed to refresh Xero token. Please reconnect to Xero.")

        def refresh_for_client() -> Optional[str]:
            refreshed = self.refresh_access_token()
            return refreshed.access_token if refreshed else None

        return XeroClient(tokens.access_token, tokens.tenant_id, token_refresher=refresh_for_client)

    def connection_status(self) -> Dict[str, Any]:
        """Live connection check used behind the status cache."""
        tokens = self.get_stored_tokens()
        if tokens is None:
            return {"connected": False, "reason": "no_tokens", "message": "No Xero connection"}

        try:
            client = self.create_client()
        except XeroAuthError as e:
            return {"connected": False, "reason": "refresh_failed", "needs_reconnect": True, "message": str(e)}
        except XeroNotConnectedError as e:
            return {"connected": False, "reason": "no_tokens", "message": str(e)}

        with client:
            organisations = client.get_organisations()
        organisation = organisations[0] if organisations else {}
        current = self.get_stored_tokens() or tokens
        return {
            "connected": True,
            "tenant_id": current.tenant_id,
            "tenant_name": current.tenant_name,
            "organisation_name": organisation.get("Name"),
            "base_currency": organisation.get("BaseCurrency"),
            "expires_at": current.expires_at.isoformat(),
            "message": "Connected",
        }
