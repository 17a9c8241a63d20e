"""
Conflict review and resolution.

A conflict is a sync state in status CONFLICT whose ``conflict_data`` holds
both sides of the record. Resolving it either forces one side over the
other or accepts a manual edit, then records a CONFLICT_RESOLVED audit row.
"""
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..core.db import SessionLocal
from ..core.models import Customer, CustomerInvoice, Supplier, XeroSyncState, utcnow
from ..core import audit
from ..services.xero import ContactSync, InvoiceSync, XeroOAuthService
from ..services.xero.mapping import CONTACT_SHARED_FIELDS, parse_xero_date

logger = logging.getLogger(__name__)

RESOLUTIONS = ("use_local", "use_remote", "use_xero", "manual")
CONTACT_ENTITIES = {"CUSTOMER": Customer, "SUPPLIER": Supplier}

# Manual edits accepted for customer invoices: request key -> column
INVOICE_MANUAL_FIELDS = {
    "invoice_number": "invoice_number",
    "issue_date": "issue_date",
    "due_date": "due_date",
    "currency": "currency",
    "reference": "description",
    "status": "status",
}


class ConflictNotFoundError(LookupError):
    pass


class ConflictAlreadyResolvedError(ValueError):
    pass


def conflict_to_dict(state: XeroSyncState) -> Dict[str, Any]:
    data = state.conflict_data or {}
    return {
        "id": state.id,
        "entity_type": state.entity_type,
        "entity_id": state.entity_id,
        "xero_id": state.xero_id,
        "status": state.status,
        "conflict_type": data.get("type"),
        "direction": data.get("direction"),
        "fields": data.get("fields", []),
        "local_data": data.get("local"),
        "xero_data": data.get("remote"),
        "detected_at": data.get("detected_at"),
        "recommendation": data.get("recommendation"),
        "last_synced_at": state.last_synced_at.isoformat() if state.last_synced_at else None,
    }


def list_conflicts(session, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
    query = session.query(XeroSyncState).filter(XeroSyncState.status == "CONFLICT")
    if entity_type:
        query = query.filter(XeroSyncState.entity_type == entity_type)
    return [conflict_to_dict(state) for state in query.order_by(XeroSyncState.updated_at.desc()).all()]


class ConflictResolver:
    """Resolve open sync conflicts."""

    def __init__(
        self,
        client=None,
        session_factory: Callable = SessionLocal,
        user_id: Optional[str] = None,
        config=None,
        oauth: Optional[XeroOAuthService] = None,
    ):
        self._client = client
        self.session_factory = session_factory
        self.user_id = user_id
        self.config = config
        self.oauth = oauth

    @property
    def client(self):
        if self._client is None:
            oauth = self.oauth or XeroOAuthService(session_factory=self.session_factory)
            self._client = oauth.create_client()
        return self._client

    def close(self):
        if self._client is not None:
            self._client.close()

    def resolve(
        self,
        state_id: str,
        resolution: str,
        notes: Optional[str] = None,
        resolved_by: Optional[str] = None,
        manual_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Resolve a conflict.

        Args:
            state_id: Sync state id of the conflict
            resolution: use_local, use_remote (alias use_xero) or manual
            notes: Free-text reason stored with the resolution
            resolved_by: User id recorded on the audit row
            manual_data: Field values to apply locally before pushing (manual only)

        Raises:
            ConflictNotFoundError: Unknown state id
            ConflictAlreadyResolvedError: State is not in CONFLICT
            ValueError: Invalid resolution or the forced sync failed
        """
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Invalid resolution: {resolution}. Expected one of {', '.join(RESOLUTIONS)}")
        if resolution == "use_xero":
            resolution = "use_remote"

        session = self.session_factory()
        try:
            state = session.get(XeroSyncState, state_id)
            if state is None:
                raise ConflictNotFoundError(f"Conflict not found: {state_id}")
            if state.status != "CONFLICT":
                raise ConflictAlreadyResolvedError(f"Conflict {state_id} is already resolved")
            entity_type = state.entity_type
            entity_id = state.entity_id
            xero_id = state.xero_id
            conflict = dict(state.conflict_data or {})
        finally:
            session.close()

        logger.info(f"Resolving {entity_type} conflict {state_id} with {resolution}")
        outcome: Optional[Dict[str, Any]] = None

        if resolution == "use_local":
            outcome = self._push(entity_type, entity_id)
        elif resolution == "use_remote":
            outcome = self._pull(entity_type, xero_id or conflict.get("xero_id"))
        elif manual_data:
            self._apply_manual(entity_type, entity_id, manual_data)
            outcome = self._push(entity_type, entity_id)

        if outcome is not None and outcome.get("errors"):
            raise ValueError(f"Conflict resolution failed: {outcome['errors'][0]['error']}")

        session = self.session_factory()
        try:
            state = session.get(XeroSyncState, state_id)
            if resolution == "manual" and not manual_data:
                # Accept both sides as they are
                state.last_local_hash = conflict.get("local_hash") or state.last_local_hash
                state.last_remote_hash = conflict.get("remote_hash") or state.last_remote_hash
                state.last_synced_at = utcnow()
            extra = dict(state.extra or {})
            if resolution == "manual" and not manual_data and conflict.get("local") is not None:
                extra["baseline"] = conflict["local"]
            extra["resolution"] = {
                "resolution": resolution,
                "notes": notes,
                "resolved_by": resolved_by,
                "resolved_at": utcnow().isoformat(),
                "fields": conflict.get("fields", []),
                "manual_data": manual_data,
            }
            state.extra = extra
            state.status = "ACTIVE"
            state.conflict_data = None

            audit.log_operation(
                session,
                str(uuid.uuid4()),
                entity_type,
                entity_id,
                "CONFLICT_RESOLVED",
                "local" if resolution != "use_remote" else "remote",
                xero_id=xero_id,
                before=conflict or None,
                after={"resolution": resolution, "notes": notes, "manual_data": manual_data},
                user_id=resolved_by or self.user_id,
            )
            session.commit()
        finally:
            session.close()

        return {
            "success": True,
            "conflict_id": state_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "resolution": resolution,
            "result": outcome,
        }

    def _push(self, entity_type: str, entity_id: str) -> Dict[str, Any]:
        if entity_type in CONTACT_ENTITIES:
            sync = ContactSync(self.client, session_factory=self.session_factory, user_id=self.user_id)
            return sync.push_contact(entity_type, entity_id, force=True)
        if entity_type == "CUSTOMER_INVOICE":
            sync = InvoiceSync(self.client, session_factory=self.session_factory, user_id=self.user_id, config=self.config)
            return sync.push_invoice_by_id(entity_id, force=True)
        raise ValueError(f"{entity_type} records cannot be pushed to Xero; resolve with use_remote")

    def _pull(self, entity_type: str, xero_id: Optional[str]) -> Dict[str, Any]:
        if not xero_id:
            raise ValueError("Conflict has no Xero id to pull from")
        if entity_type in CONTACT_ENTITIES:
            sync = ContactSync(self.client, session_factory=self.session_factory, user_id=self.user_id)
            return sync.pull_contact(xero_id, force=True)
        if entity_type in ("CUSTOMER_INVOICE", "SUPPLIER_INVOICE"):
            sync = InvoiceSync(self.client, session_factory=self.session_factory, user_id=self.user_id, config=self.config)
            return sync.pull_invoice(xero_id, force=True)
        raise ValueError(f"Unsupported entity type for conflict resolution: {entity_type}")

    def _apply_manual(self, entity_type: str, entity_id: str, manual_data: Dict[str, Any]):
        session = self.session_factory()
        try:
            if entity_type in CONTACT_ENTITIES:
                record = session.get(CONTACT_ENTITIES[entity_type], entity_id)
                allowed = {name: name for name in CONTACT_SHARED_FIELDS}
            elif entity_type == "CUSTOMER_INVOICE":
                record = session.get(CustomerInvoice, entity_id)
                allowed = INVOICE_MANUAL_FIELDS
            else:
                raise ValueError(f"Manual resolution is not supported for {entity_type}")
            if record is None:
                raise ValueError(f"{entity_type} not found: {entity_id}")

            unknown = sorted(set(manual_data) - set(allowed))
            if unknown:
                raise ValueError(f"Fields cannot be edited manually: {', '.join(unknown)}")
            for key, value in manual_data.items():
                if key in ("issue_date", "due_date"):
                    value = parse_xero_date(value)
                setattr(record, allowed[key], value)
            session.commit()
        finally:
            session.close()


def resolve_conflict(
    state_id: str,
    resolution: str,
    notes: Optional[str] = None,
    resolved_by: Optional[str] = None,
    manual_data: Optional[Dict[str, Any]] = None,
    client=None,
    session_factory: Callable = SessionLocal,
) -> Dict[str, Any]:
    """Convenience wrapper around :class:`ConflictResolver`."""
    resolver = ConflictResolver(client=client, session_factory=session_factory, user_id=resolved_by)
    return resolver.resolve(state_id, resolution, notes=notes, resolved_by=resolved_by, manual_data=manual_data)
