"""
Sync orchestration and conflict resolution.
"""
from .service import XeroSyncService, SyncStepResult, sync_xero
from .conflicts import (
    ConflictResolver,
    ConflictNotFoundError,
    ConflictAlreadyResolvedError,
    list_conflicts,
    resolve_conflict,
)

__all__ = [
    'XeroSyncService',
    'SyncStepResult',
    'sync_xero',
    'ConflictResolver',
    'ConflictNotFoundError',
    'ConflictAlreadyResolvedError',
    'list_conflicts',
    'resolve_conflict',
]
