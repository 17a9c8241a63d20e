"""
Pydantic schemas for request/response models.

This module contains the data validation and serialization models used
by the LedgerSync API endpoints. Each schema provides:
- Type validation and coercion
- Documentation for OpenAPI/Swagger
- Example values for API docs
"""

from datetime import datetime
from typing import List, Dict, Optional, Any, Literal
from pydantic import BaseModel, Field


Direction = Literal["pull", "push", "both"]
Resolution = Literal["use_local", "use_remote", "use_xero", "manual"]


# ============================================================================
# CONNECTION SCHEMAS
# ============================================================================

class ConnectResponse(BaseModel):
    """Consent URL for connecting a Xero organisation."""
    auth_url: str = Field(
        ...,
        description="Xero consent URL to redirect the user to",
        example="https://login.xero.com/identity/connect/authorize?response_type=code&client_id=..."
    )


class TokenRefreshResponse(BaseModel):
    """Result of a proactive token refresh."""
    success: bool = Field(..., description="Whether a valid token is available", example=True)
    refreshed: bool = Field(..., description="Whether a refresh was performed", example=False)
    message: str = Field(..., description="Status message", example="Token valid for 25 more minutes")
    next_refresh_in: Optional[int] = Field(None, description="Minutes until the next refresh is due", example=5)
    error: Optional[str] = Field(None, description="Error code when the refresh failed", example=None)


# ============================================================================
# SYNC SCHEMAS
# ============================================================================

class SyncRequest(BaseModel):
    """Full sync across every enabled entity type."""
    direction: Direction = Field("both", description="Sync direction", example="both")
    dry_run: bool = Field(False, description="Report changes without writing", example=False)
    force: bool = Field(False, description="Overwrite unchanged or conflicting records", example=False)
    entities: Optional[List[Literal["contacts", "invoices", "payments"]]] = Field(
        None,
        description="Restrict the sync to these entity types",
        example=["contacts", "invoices"]
    )
    user_id: Optional[str] = Field(None, description="User recorded on audit rows", example=None)


class ContactSyncRequest(BaseModel):
    """Contact sync options."""
    direction: Direction = Field("both", description="Sync direction", example="pull")
    entity_type: Optional[Literal["CUSTOMER", "SUPPLIER"]] = Field(
        None, description="Push only customers or only suppliers", example="CUSTOMER"
    )
    ids: Optional[List[str]] = Field(None, description="Push only these local record ids")
    include_archived: Optional[bool] = Field(None, description="Also pull archived Xero contacts", example=False)
    dry_run: bool = Field(False, description="Report changes without writing", example=True)
    force: bool = Field(False, description="Overwrite unchanged or conflicting records", example=False)
    user_id: Optional[str] = Field(None, description="User recorded on audit rows")


class InvoiceSyncRequest(BaseModel):
    """Invoice sync options."""
    direction: Direction = Field("both", description="Sync direction", example="both")
    dry_run: bool = Field(False, description="Report changes without writing", example=True)
    force_refresh: bool = Field(False, description="Overwrite unchanged or conflicting invoices", example=False)
    modified_since: Optional[datetime] = Field(
        None, description="Only pull invoices updated in Xero since this time", example="2026-01-01T00:00:00"
    )
    invoice_ids: Optional[List[str]] = Field(None, description="Push only these local invoice ids")
    user_id: Optional[str] = Field(None, description="User recorded on audit rows")


class PaymentPushRequest(BaseModel):
    """Payment push options."""
    payment_ids: Optional[List[str]] = Field(None, description="Push only these local payment ids")
    single_payment_id: Optional[str] = Field(None, description="Push one payment, stopping on its first error")
    dry_run: bool = Field(False, description="Validate without posting to Xero", example=True)
    debug: bool = Field(False, description="Stop at the first failing payment", example=False)
    user_id: Optional[str] = Field(None, description="User recorded on audit rows")


class PaymentPullRequest(BaseModel):
    """Payment pull options."""
    modified_since: Optional[datetime] = Field(
        None, description="Only pull payments updated in Xero since this time", example="2026-01-01T00:00:00"
    )
    dry_run: bool = Field(False, description="Report changes without writing", example=True)
    user_id: Optional[str] = Field(None, description="User recorded on audit rows")


class SyncResultDetail(BaseModel):
    """Detailed result from a single sync step."""
    source: str = Field(..., description="Entity type", example="contacts")
    success: bool = Field(..., description="Whether the step succeeded", example=True)
    message: str = Field(..., description="Status message", example="Pulled contacts: 3 created, 1 updated, 12 skipped, 0 conflicts, 0 errors")
    details: Dict[str, Any] = Field(default_factory=dict, description="Per-direction stats, conflicts and errors")
    timestamp: str = Field(..., description="ISO 8601 timestamp", example="2026-01-14T10:30:00")


class SyncResponse(BaseModel):
    """Response model for a full sync."""
    timestamp: str = Field(..., description="Sync start timestamp", example="2026-01-14T10:30:00")
    direction: Direction = Field(..., description="Sync direction", example="both")
    dry_run: bool = Field(..., description="Whether this was a dry run", example=False)
    results: List[SyncResultDetail] = Field(..., description="Results from each step")
    overall_success: bool = Field(..., description="Whether every step succeeded", example=True)


# ============================================================================
# CONFLICT SCHEMAS
# ============================================================================

class ConflictInfo(BaseModel):
    """An open sync conflict."""
    id: str = Field(..., description="Sync state id")
    entity_type: str = Field(..., description="Entity type", example="CUSTOMER")
    entity_id: str = Field(..., description="Local record id")
    xero_id: Optional[str] = Field(None, description="Xero record id")
    status: str = Field(..., description="Sync state status", example="CONFLICT")
    conflict_type: Optional[str] = Field(None, description="Conflict type", example="BOTH_MODIFIED")
    direction: Optional[str] = Field(None, description="Direction that detected the conflict", example="pull")
    fields: List[str] = Field(default_factory=list, description="Shared fields that differ", example=["email", "phone"])
    local_data: Optional[Dict[str, Any]] = Field(None, description="Local values when the conflict was detected")
    xero_data: Optional[Dict[str, Any]] = Field(None, description="Xero values when the conflict was detected")
    detected_at: Optional[str] = Field(None, description="ISO 8601 detection time")
    recommendation: Optional[str] = Field(None, description="Suggested action", example="Manual review required")
    last_synced_at: Optional[str] = Field(None, description="Last successful sync of this record")


class ConflictsResponse(BaseModel):
    """Response model for listing conflicts."""
    conflicts: List[ConflictInfo] = Field(..., description="Open conflicts")
    total: int = Field(..., description="Number of open conflicts", example=2)


class ConflictResolveRequest(BaseModel):
    """How to resolve a conflict."""
    resolution: Resolution = Field(..., description="Resolution strategy", example="use_local")
    notes: Optional[str] = Field(None, description="Reason for the resolution", example="Customer confirmed new email")
    resolved_by: Optional[str] = Field(None, description="User resolving the conflict")
    manual_data: Optional[Dict[str, Any]] = Field(
        None,
        description="Field values to apply before pushing (manual resolution only)",
        example={"email": "accounts@example.com"}
    )
