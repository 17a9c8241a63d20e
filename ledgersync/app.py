"""
LedgerSync API - FastAPI Application

Keeps the local accounting database in step with Xero:
- OAuth2 connection and token lifecycle
- Two-way sync of contacts, invoices and payments
- Conflict review and resolution
- Reconciliation reports and the sync audit trail

Version: 1.0.0
"""

# ============================================================================
# IMPORTS
# ============================================================================

from fastapi import FastAPI, HTTPException, Depends, Query
from typing import Optional, Callable
import logging

from sqlalchemy.orm import Session

# Environment variables
from dotenv import load_dotenv
load_dotenv()  # Load .env file

from . import __version__
from .config_manager import SyncConfig, get_config_manager
from .core.db import get_db, get_session_factory, init_db
from .core import audit
from .services.xero import ConnectionStatusCache, ContactSync, InvoiceSync, PaymentSync, XeroOAuthService
from .services.xero.oauth import CALLBACK_ERROR_MESSAGES
from .sync import ConflictResolver, XeroSyncService, list_conflicts
from .utils import handle_errors
from .schemas import (
    ConnectResponse,
    TokenRefreshResponse,
    SyncRequest,
    SyncResponse,
    ContactSyncRequest,
    InvoiceSyncRequest,
    PaymentPushRequest,
    PaymentPullRequest,
    ConflictsResponse,
    ConflictResolveRequest,
)

# ============================================================================
# CONFIGURATION
# ============================================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="LedgerSync API",
    description="Bidirectional Xero accounting sync with conflict detection and resolution",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


def _build_status_cache() -> ConnectionStatusCache:
    settings = get_config_manager().sync_config
    return ConnectionStatusCache(
        ttl=settings.get_global_setting("status_cache_ttl_seconds", 120),
        negative_ttl=settings.get_global_setting("status_negative_ttl_seconds", 30),
        failure_ttl=settings.get_global_setting("status_failure_ttl_seconds", 60),
        min_interval=settings.get_global_setting("status_min_interval_seconds", 30),
    )


# Shared across requests; invalidated on connect, disconnect and refresh
STATUS_CACHE = _build_status_cache()


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_config() -> SyncConfig:
    """Sync configuration, reloaded so config.json edits apply without a restart."""
    manager = get_config_manager()
    manager.reload()
    return manager.sync_config


def get_oauth_service(session_factory: Callable = Depends(get_session_factory)) -> XeroOAuthService:
    return XeroOAuthService(session_factory=session_factory)


def get_status_cache() -> ConnectionStatusCache:
    return STATUS_CACHE


# ============================================================================
# DATABASE INITIALIZATION
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Initialize database tables on application startup."""
    try:
        logger.info("Initializing database tables...")
        init_db()
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")


# ============================================================================
# ROOT ENDPOINT
# ============================================================================

@app.get(
    "/",
    tags=["General"],
    summary="API Information",
    description="Get basic information about the LedgerSync API and available endpoints"
)
def read_root():
    """
    Root endpoint providing API information and endpoint discovery.

    Example:
        ```bash
        curl http://localhost:8000/
        ```
    """
    return {
        "message": "Welcome to the LedgerSync API",
        "version": __version__,
        "documentation": {
            "swagger_ui": "/docs",
            "redoc": "/redoc",
            "openapi_schema": "/openapi.json"
        },
        "endpoints": {
            "connect": "/api/xero/connect - Start the Xero OAuth flow",
            "connection_status": "/api/xero/connection-status - Cached connection check",
            "sync": "/api/xero/sync - Sync contacts, invoices and payments",
            "reconcile": "/api/xero/reconcile - Dry-run report of pending changes",
            "conflicts": "/api/xero/conflicts - Open sync conflicts",
            "logs": "/api/xero/logs - Sync audit trail",
            "dashboard": "/api/xero/sync-dashboard - Sync health summary"
        }
    }


# ============================================================================
# CONNECTION ENDPOINTS
# ============================================================================

@app.get(
    "/api/xero/connect",
    response_model=ConnectResponse,
    tags=["Connection"],
    summary="Xero Consent URL",
)
@handle_errors
def connect(oauth: XeroOAuthService = Depends(get_oauth_service)):
    """Return the Xero consent URL the user should be redirected to."""
    return {"auth_url": oauth.build_consent_url()}


@app.get(
    "/api/xero/callback",
    tags=["Connection"],
    summary="OAuth Callback",
    description="Exchange the authorization code returned by Xero and store the tokens"
)
@handle_errors
def callback(
    code: Optional[str] = None,
    error: Optional[str] = None,
    state: Optional[str] = None,
    user_id: Optional[str] = None,
    oauth: XeroOAuthService = Depends(get_oauth_service),
    cache: ConnectionStatusCache = Depends(get_status_cache),
):
    """
    Handle the redirect back from Xero.

    Raises:
        HTTPException: 400 if Xero reported an error or the code exchange failed
    """
    if error:
        raise HTTPException(status_code=400, detail=CALLBACK_ERROR_MESSAGES.get(error, f"Xero authorization failed: {error}"))

    result = oauth.handle_callback(code, user_id=user_id)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)

    cache.invalidate()
    return result.to_dict()


@app.get(
    "/api/xero/connection-status",
    tags=["Connection"],
    summary="Connection Status",
    description="Cached connection check; pass force=true to bypass the cache"
)
@handle_errors
def connection_status(
    force: bool = False,
    oauth: XeroOAuthService = Depends(get_oauth_service),
    cache: ConnectionStatusCache = Depends(get_status_cache),
):
    return cache.get_status(oauth.connection_status, force=force)


@app.get("/api/xero/health", tags=["Connection"], summary="Token Health")
@handle_errors
def connection_health(oauth: XeroOAuthService = Depends(get_oauth_service)):
    """Token expiry summary from the database; makes no Xero calls."""
    return oauth.check_connection_health()


@app.post(
    "/api/xero/token/refresh",
    response_model=TokenRefreshResponse,
    tags=["Connection"],
    summary="Proactive Token Refresh",
    description="Refresh the access token when it expires within the configured threshold"
)
@handle_errors
def refresh_token(
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
    cache: ConnectionStatusCache = Depends(get_status_cache),
):
    threshold = int(config.get_global_setting("token_refresh_minutes", 20))
    result = oauth.proactive_refresh(threshold_minutes=threshold)
    if result.refreshed or not result.success:
        cache.invalidate()
    return result.to_dict()


@app.post("/api/xero/disconnect", tags=["Connection"], summary="Disconnect Xero")
@handle_errors
def disconnect(
    oauth: XeroOAuthService = Depends(get_oauth_service),
    cache: ConnectionStatusCache = Depends(get_status_cache),
):
    count = oauth.disconnect()
    cache.invalidate()
    return {"success": True, "disconnected": count, "message": "Disconnected from Xero"}


# ============================================================================
# SYNC ENDPOINTS
# ============================================================================

@app.post(
    "/api/xero/sync",
    response_model=SyncResponse,
    tags=["Synchronization"],
    summary="Sync All Entities",
    description="Sync contacts, invoices and payments in dependency order"
)
@handle_errors
def sync_all(
    request: SyncRequest,
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    """
    Run every enabled sync step.

    Steps run in order contacts -> invoices -> payments. A failing step is
    reported in its result and does not stop the following steps.

    Example:
        ```bash
        curl -X POST http://localhost:8000/api/xero/sync -H 'Content-Type: application/json' \\
             -d '{"direction": "both", "dry_run": true}'
        ```
    """
    logger.info(f"Starting Xero sync (direction={request.direction}, dry_run={request.dry_run})")
    with oauth.create_client() as client:
        service = XeroSyncService(
            client=client,
            session_factory=session_factory,
            user_id=request.user_id,
            config=config,
            oauth=oauth,
        )
        return service.sync_all(
            direction=request.direction,
            dry_run=request.dry_run,
            force=request.force,
            entities=request.entities,
        )


@app.post("/api/xero/sync/contacts", tags=["Synchronization"], summary="Sync Contacts")
@handle_errors
def sync_contacts(
    request: ContactSyncRequest,
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    include_archived = request.include_archived
    if include_archived is None:
        include_archived = config.include_archived_contacts

    with oauth.create_client() as client:
        sync = ContactSync(client, session_factory=session_factory, user_id=request.user_id)
        response = {"direction": request.direction, "dry_run": request.dry_run}
        if request.direction in ("pull", "both"):
            response["pull"] = sync.pull_contacts(
                include_archived=include_archived, dry_run=request.dry_run, force=request.force
            )
        if request.direction in ("push", "both"):
            response["push"] = sync.push_contacts(
                entity_type=request.entity_type, ids=request.ids, dry_run=request.dry_run, force=request.force
            )
    response["success"] = all(response[part]["success"] for part in ("pull", "push") if part in response)
    return response


@app.post("/api/xero/sync/invoices", tags=["Synchronization"], summary="Sync Invoices")
@handle_errors
def sync_invoices(
    request: InvoiceSyncRequest,
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    with oauth.create_client() as client:
        sync = InvoiceSync(client, session_factory=session_factory, user_id=request.user_id, config=config)
        return sync.sync_invoices(
            direction=request.direction,
            dry_run=request.dry_run,
            force_refresh=request.force_refresh,
            modified_since=request.modified_since,
            invoice_ids=request.invoice_ids,
        )


@app.post("/api/xero/sync/payments/push", tags=["Synchronization"], summary="Push Payments")
@handle_errors
def push_payments(
    request: PaymentPushRequest,
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    with oauth.create_client() as client:
        sync = PaymentSync(client, session_factory=session_factory, user_id=request.user_id, config=config)
        return sync.push_payments(
            payment_ids=request.payment_ids,
            dry_run=request.dry_run,
            debug=request.debug,
            single_payment_id=request.single_payment_id,
        )


@app.post("/api/xero/sync/payments/pull", tags=["Synchronization"], summary="Pull Payments")
@handle_errors
def pull_payments(
    request: PaymentPullRequest,
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    with oauth.create_client() as client:
        sync = PaymentSync(client, session_factory=session_factory, user_id=request.user_id, config=config)
        return sync.pull_payments(modified_since=request.modified_since, dry_run=request.dry_run)


@app.get(
    "/api/xero/reconcile",
    tags=["Synchronization"],
    summary="Reconciliation Report",
    description="Dry run of every enabled step in both directions; nothing is written"
)
@handle_errors
def reconcile(
    entities: Optional[str] = Query(None, description="Comma separated entity types, e.g. contacts,invoices"),
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    selected = [e.strip() for e in entities.split(",") if e.strip()] if entities else None
    with oauth.create_client() as client:
        service = XeroSyncService(client=client, session_factory=session_factory, config=config)
        return service.reconcile(entities=selected)


# ============================================================================
# CONFLICT ENDPOINTS
# ============================================================================

@app.get("/api/xero/conflicts", response_model=ConflictsResponse, tags=["Conflicts"], summary="List Conflicts")
@handle_errors
def get_conflicts(entity_type: Optional[str] = None, db: Session = Depends(get_db)):
    conflicts = list_conflicts(db, entity_type=entity_type)
    return {"conflicts": conflicts, "total": len(conflicts)}


@app.post("/api/xero/conflicts/{conflict_id}/resolve", tags=["Conflicts"], summary="Resolve Conflict")
@handle_errors
def resolve(
    conflict_id: str,
    request: ConflictResolveRequest,
    session_factory: Callable = Depends(get_session_factory),
    oauth: XeroOAuthService = Depends(get_oauth_service),
    config: SyncConfig = Depends(get_config),
):
    """
    Resolve a conflict.

    Raises:
        HTTPException: 404 if the conflict does not exist
        HTTPException: 400 if it is already resolved or the resolution failed
        HTTPException: 401 if Xero must be contacted but is not connected
    """
    resolver = ConflictResolver(
        session_factory=session_factory,
        user_id=request.resolved_by,
        config=config,
        oauth=oauth,
    )
    try:
        return resolver.resolve(
            conflict_id,
            request.resolution,
            notes=request.notes,
            resolved_by=request.resolved_by,
            manual_data=request.manual_data,
        )
    finally:
        resolver.close()


# ============================================================================
# AUDIT ENDPOINTS
# ============================================================================

@app.get("/api/xero/logs", tags=["Audit"], summary="Sync Audit Log")
@handle_errors
def get_logs(
    limit: int = Query(50, ge=1, le=500),
    entity_type: Optional[str] = None,
    status: Optional[str] = None,
    correlation_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    logs = audit.recent_logs(db, limit=limit, entity_type=entity_type, status=status, correlation_id=correlation_id)
    return {"logs": logs, "total": len(logs)}


@app.get("/api/xero/sync-dashboard", tags=["Audit"], summary="Sync Dashboard")
@handle_errors
def sync_dashboard(
    db: Session = Depends(get_db),
    oauth: XeroOAuthService = Depends(get_oauth_service),
):
    """Synced/unsynced counts, open conflicts, recent errors and token health."""
    summary = audit.sync_summary(db)
    summary["connection"] = oauth.check_connection_health()
    return summary
