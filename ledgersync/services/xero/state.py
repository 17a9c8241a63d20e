"""
Sync state bookkeeping shared by the entity sync modules.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ...core.models import User, XeroSyncState, utcnow
from .mapping import calculate_hash, snapshot

logger = logging.getLogger(__name__)

SYSTEM_USER_EMAIL = "system@ledgersync.local"

CONFLICT_RECOMMENDATION = "Manual review required"


@dataclass
class SyncStats:
    """Counters for one entity sync run."""
    created: int = 0
    updated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.skipped + self.conflicts + self.errors

    def to_dict(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "conflicts": self.conflicts,
            "errors": self.errors,
        }


@dataclass
class EntitySyncResult:
    """Outcome of a pull or push for one entity type."""
    entity_type: str
    direction: str
    correlation_id: str
    dry_run: bool = False
    stats: SyncStats = field(default_factory=SyncStats)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""
    log_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return not self.errors and not self.conflicts

    def add_error(self, entity_id: Optional[str], message: str, **extra):
        self.stats.errors += 1
        self.errors.append({"entity_id": entity_id, "error": message, **extra})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "direction": self.direction,
            "correlation_id": self.correlation_id,
            "success": self.success,
            "dry_run": self.dry_run,
            "stats": self.stats.to_dict(),
            "conflicts": self.conflicts,
            "errors": self.errors,
            "message": self.message,
            "log_id": self.log_id,
        }


def get_sync_state(session, entity_type: str, entity_id: str) -> Optional[XeroSyncState]:
    return (
        session.query(XeroSyncState)
        .filter(XeroSyncState.entity_type == entity_type)
        .filter(XeroSyncState.entity_id == entity_id)
        .first()
    )


def save_sync_state(
    session,
    entity_type: str,
    entity_id: str,
    xero_id: Optional[str],
    baseline: Dict[str, Any],
    remote_hash: str,
    sync_origin: str,
    correlation_id: str,
    remote_modified=None,
) -> XeroSyncState:
    """
    Record the agreed state of a record pair after a successful pull or push.

    ``baseline`` is the shared-field snapshot both sides now agree on; its
    hash becomes the local baseline. Any open conflict on the pair is cleared.
    """
    state = get_sync_state(session, entity_type, entity_id)
    if state is None:
        state = XeroSyncState(entity_type=entity_type, entity_id=entity_id)
        session.add(state)

    now = utcnow()
    state.xero_id = xero_id
    state.last_local_hash = calculate_hash(baseline)
    state.last_remote_hash = remote_hash
    state.last_synced_at = now
    state.last_local_modified = now if sync_origin == "local" else state.last_local_modified
    state.last_remote_modified = remote_modified or state.last_remote_modified
    state.sync_origin = sync_origin
    state.correlation_id = correlation_id
    state.status = "ACTIVE"
    state.conflict_data = None
    extra = dict(state.extra or {})
    extra["baseline"] = snapshot(baseline)
    state.extra = extra
    return state


def mark_conflict(
    session,
    state: XeroSyncState,
    direction: str,
    fields: List[str],
    local: Dict[str, Any],
    remote: Dict[str, Any],
    local_hash: str,
    remote_hash: str,
    correlation_id: str,
    xero_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Flag a sync state as conflicted and return the stored conflict payload."""
    conflict = {
        "type": "BOTH_MODIFIED",
        "direction": direction,
        "fields": fields,
        "local": snapshot(local),
        "remote": snapshot(remote),
        "local_hash": local_hash,
        "remote_hash": remote_hash,
        "xero_id": xero_id or state.xero_id,
        "detected_at": utcnow().isoformat(),
        "recommendation": CONFLICT_RECOMMENDATION,
    }
    state.status = "CONFLICT"
    state.conflict_data = conflict
    state.correlation_id = correlation_id
    return conflict


def resolve_system_user_id(session) -> Optional[str]:
    """First SUPERADMIN, else a dedicated system user (created on demand)."""
    user = (
        session.query(User)
        .filter(User.role == "SUPERADMIN")
        .order_by(User.created_at)
        .first()
    )
    if user is None:
        user = session.query(User).filter(User.email == SYSTEM_USER_EMAIL).first()
    if user is None:
        logger.info("Creating system user for automated Xero writes")
        user = User(email=SYSTEM_USER_EMAIL, name="Xero Sync", role="SUPERADMIN")
        session.add(user)
        session.flush()
    return user.id
