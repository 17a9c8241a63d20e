"""
Sync audit trail.

Every change the sync engine makes is written to ``xero_sync_logs``. A batch
opens with a START row (``entity_id="BATCH"``) and is closed with SUCCESS or
ERROR once the run finishes; individual CREATE/UPDATE/CONFLICT rows share the
batch correlation id so a run can be replayed from the log.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from .models import (
    XeroSyncLog,
    XeroSyncState,
    Customer,
    Supplier,
    CustomerInvoice,
    SupplierInvoice,
    Payment,
    utcnow,
)

logger = logging.getLogger(__name__)

BATCH_ENTITY_ID = "BATCH"


def start_batch(
    session,
    correlation_id: str,
    entity_type: str,
    direction: str,
    details: Optional[Dict[str, Any]] = None,
    user_id: Optional[str] = None,
) -> Optional[str]:
    """Open a batch row and return its id (None if the row could not be written)."""
    try:
        log = XeroSyncLog(
            correlation_id=correlation_id,
            entity_type=entity_type,
            entity_id=BATCH_ENTITY_ID,
            operation="SYNC",
            direction=direction,
            status="START",
            details=details or {},
            user_id=user_id,
        )
        session.add(log)
        session.commit()
        return log.id
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Failed to open sync batch log for {entity_type}: {e}")
        return None


def finish_batch(
    session,
    log_id: Optional[str],
    status: str,
    processed: int = 0,
    succeeded: int = 0,
    failed: int = 0,
    details: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> None:
    """Close a batch row opened by :func:`start_batch`."""
    if not log_id:
        return
    try:
        log = session.get(XeroSyncLog, log_id)
        if log is None:
            logger.warning(f"Sync batch log {log_id} not found")
            return
        log.status = status
        log.records_processed = processed
        log.records_succeeded = succeeded
        log.records_failed = failed
        log.error_message = error_message
        log.completed_at = utcnow()
        if details is not None:
            log.details = details
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Failed to close sync batch log {log_id}: {e}")


def log_operation(
    session,
    correlation_id: str,
    entity_type: str,
    entity_id: str,
    operation: str,
    sync_origin: str,
    status: str = "SUCCESS",
    xero_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    change_hash: Optional[str] = None,
    user_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> XeroSyncLog:
    """Add a per-record audit row to the session; the caller commits it with the change."""
    log = XeroSyncLog(
        correlation_id=correlation_id,
        entity_type=entity_type,
        entity_id=entity_id,
        xero_id=xero_id,
        operation=operation,
        sync_origin=sync_origin,
        before_snapshot=before,
        after_snapshot=after,
        change_hash=change_hash,
        status=status,
        user_id=user_id,
        error_message=error_message,
    )
    session.add(log)
    return log


def log_to_dict(log: XeroSyncLog) -> Dict[str, Any]:
    return {
        "id": log.id,
        "correlation_id": log.correlation_id,
        "entity_type": log.entity_type,
        "entity_id": log.entity_id,
        "xero_id": log.xero_id,
        "operation": log.operation,
        "direction": log.direction,
        "sync_origin": log.sync_origin,
        "status": log.status,
        "error_message": log.error_message,
        "records_processed": log.records_processed,
        "records_succeeded": log.records_succeeded,
        "records_failed": log.records_failed,
        "details": log.details,
        "timestamp": log.timestamp.isoformat() if log.timestamp else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
    }


def recent_logs(
    session,
    limit: int = 50,
    entity_type: Optional[str] = None,
    status: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query = session.query(XeroSyncLog)
    if entity_type:
        query = query.filter(XeroSyncLog.entity_type == entity_type)
    if status:
        query = query.filter(XeroSyncLog.status == status)
    if correlation_id:
        query = query.filter(XeroSyncLog.correlation_id == correlation_id)
    logs = query.order_by(XeroSyncLog.timestamp.desc()).limit(limit).all()
    return [log_to_dict(log) for log in logs]


def _synced_counts(session, model) -> Dict[str, int]:
    total = session.query(func.count(model.id)).scalar() or 0
    synced = session.query(func.count(model.id)).filter(model.is_xero_synced.is_(True)).scalar() or 0
    return {"total": total, "synced": synced, "unsynced": total - synced}


def sync_summary(session) -> Dict[str, Any]:
    """
    Dashboard numbers: synced/unsynced counts per entity, open conflicts,
    the last finished batch and errors logged in the past 24 hours.
    """
    last_batch = (
        session.query(XeroSyncLog)
        .filter(XeroSyncLog.entity_id == BATCH_ENTITY_ID)
        .filter(XeroSyncLog.status.in_(["SUCCESS", "ERROR"]))
        .order_by(XeroSyncLog.timestamp.desc())
        .first()
    )
    since = utcnow() - timedelta(hours=24)
    recent_errors = (
        session.query(func.count(XeroSyncLog.id))
        .filter(XeroSyncLog.status == "ERROR")
        .filter(XeroSyncLog.timestamp >= since)
        .scalar()
        or 0
    )
    open_conflicts = (
        session.query(func.count(XeroSyncState.id))
        .filter(XeroSyncState.status == "CONFLICT")
        .scalar()
        or 0
    )

    return {
        "customers": _synced_counts(session, Customer),
        "suppliers": _synced_counts(session, Supplier),
        "customer_invoices": _synced_counts(session, CustomerInvoice),
        "supplier_invoices": _synced_counts(session, SupplierInvoice),
        "payments": _synced_counts(session, Payment),
        "open_conflicts": open_conflicts,
        "errors_last_24h": recent_errors,
        "last_batch": log_to_dict(last_batch) if last_batch else None,
    }
