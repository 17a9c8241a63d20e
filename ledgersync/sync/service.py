"""
Unified Xero Sync Service

Orchestrates accounting synchronization in dependency order:
- Contacts (customers and suppliers)
- Invoices (need contacts)
- Payments (need invoices)
"""
import logging
from typing import Optional, Dict, List, Any, Callable
from datetime import datetime

from ..config_manager import SyncConfig, get_config_manager
from ..core.db import SessionLocal
from ..services.xero import ContactSync, InvoiceSync, PaymentSync, XeroOAuthService

logger = logging.getLogger(__name__)

DIRECTIONS = ("pull", "push", "both")


class SyncStepResult:
    """Result of one entity sync step."""

    def __init__(self, source: str, success: bool, message: str, details: Optional[Dict] = None):
        self.source = source
        self.success = success
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "success": self.success,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class XeroSyncService:
    """Service to synchronize contacts, invoices and payments with Xero."""

    def __init__(
        self,
        client=None,
        session_factory: Callable = SessionLocal,
        user_id: Optional[str] = None,
        config: Optional[SyncConfig] = None,
        oauth: Optional[XeroOAuthService] = None,
    ):
        if config is None:
            # Always reload config to pick up runtime edits to config.json
            manager = get_config_manager()
            manager.reload()
            config = manager.sync_config
        self.config = config
        self.session_factory = session_factory
        self.user_id = user_id
        self.oauth = oauth
        self._client = client
        self.results: List[SyncStepResult] = []

    @property
    def client(self):
        """API client, built from stored tokens on first use."""
        if self._client is None:
            oauth = self.oauth or XeroOAuthService(session_factory=self.session_factory)
            self._client = oauth.create_client()
        return self._client

    def sync_all(
        self,
        direction: str = "both",
        dry_run: bool = False,
        force: bool = False,
        entities: Optional[List[str]] = None,
        progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> Dict[str, Any]:
        """
        Sync every enabled entity type.

        Args:
            direction: pull, push or both
            dry_run: Report what would change without writing
            force: Overwrite unchanged/conflicting records
            entities: Restrict to these entity names (contacts, invoices, payments)

        Returns:
            Dict with sync results from each step
        """
        if direction not in DIRECTIONS:
            raise ValueError(f"Invalid sync direction: {direction}")
        logger.info(f"Starting Xero sync (direction={direction}, dry_run={dry_run}, force={force})")

        # Fail fast when not connected
        client = self.client

        def emit_progress(payload: Dict[str, Any]):
            if progress_callback:
                progress_callback(payload)

        step_table = {
            "contacts": ("Syncing contacts", self._sync_contacts),
            "invoices": ("Syncing invoices", self._sync_invoices),
            "payments": ("Syncing payments", self._sync_payments),
        }
        steps = []
        for name in self.config.enabled_entities():
            if entities and name not in entities:
                continue
            label, step_fn = step_table[name]
            steps.append((name, label, step_fn))
        for name in step_table:
            if name not in self.config.enabled_entities():
                logger.info(f"{name.capitalize()} sync disabled in configuration")

        total_steps = len(steps)
        if total_steps == 0:
            emit_progress({
                "event": "progress",
                "status": "running",
                "message": "No entity types enabled for sync",
                "progress": 100,
                "currentStep": 0,
                "totalSteps": 0,
                "source": None,
                "stage": "completed",
            })

        for idx, (source, label, step_fn) in enumerate(steps, start=1):
            base_progress = int(((idx - 1) / total_steps) * 100)
            done_progress = int((idx / total_steps) * 100)

            emit_progress({
                "event": "progress",
                "status": "running",
                "message": f"{label}...",
                "progress": max(1, base_progress),
                "currentStep": idx,
                "totalSteps": total_steps,
                "source": source,
                "stage": "start",
            })

            result = step_fn(client, direction=direction, dry_run=dry_run, force=force)
            self.results.append(result)

            emit_progress({
                "event": "progress",
                "status": "running",
                "message": result.message,
                "progress": done_progress,
                "currentStep": idx,
                "totalSteps": total_steps,
                "source": source,
                "stage": "completed" if result.success else "failed",
                "sourceSuccess": result.success,
            })

        summary = {
            "timestamp": datetime.now().isoformat(),
            "direction": direction,
            "dry_run": dry_run,
            "results": [r.to_dict() for r in self.results],
            "overall_success": all(r.success for r in self.results)
        }

        if not dry_run and self.oauth is not None and getattr(client, "tenant_id", None):
            self.oauth.mark_synced(client.tenant_id)

        logger.info(f"Xero sync completed. Overall success: {summary['overall_success']}")
        return summary

    def _sync_contacts(self, client, direction: str, dry_run: bool, force: bool) -> SyncStepResult:
        """Pull then push contacts."""
        try:
            sync = ContactSync(client, session_factory=self.session_factory, user_id=self.user_id)
            details: Dict[str, Any] = {}
            if direction in ("pull", "both"):
                details["pull"] = sync.pull_contacts(
                    include_archived=self.config.include_archived_contacts,
                    dry_run=dry_run,
                    force=force,
                )
            if direction in ("push", "both"):
                details["push"] = sync.push_contacts(dry_run=dry_run, force=force)

            success = all(part["success"] for part in details.values())
            return SyncStepResult(
                source="contacts",
                success=success,
                message=" | ".join(part["message"] for part in details.values()),
                details=details,
            )
        except Exception as e:
            logger.exception(f"Contact sync failed: {e}")
            return SyncStepResult(
                source="contacts",
                success=False,
                message=f"Contact sync failed: {str(e)}"
            )

    def _sync_invoices(self, client, direction: str, dry_run: bool, force: bool) -> SyncStepResult:
        try:
            sync = InvoiceSync(client, session_factory=self.session_factory, user_id=self.user_id, config=self.config)
            result = sync.sync_invoices(direction=direction, dry_run=dry_run, force_refresh=force)
            return SyncStepResult(
                source="invoices",
                success=result["success"],
                message=result["message"],
                details=result,
            )
        except Exception as e:
            logger.exception(f"Invoice sync failed: {e}")
            return SyncStepResult(
                source="invoices",
                success=False,
                message=f"Invoice sync failed: {str(e)}"
            )

    def _sync_payments(self, client, direction: str, dry_run: bool, force: bool) -> SyncStepResult:
        """Pull then push payments; ``force`` has no effect on payments."""
        try:
            sync = PaymentSync(client, session_factory=self.session_factory, user_id=self.user_id, config=self.config)
            details: Dict[str, Any] = {}
            if direction in ("pull", "both"):
                details["pull"] = sync.pull_payments(dry_run=dry_run)
            if direction in ("push", "both"):
                details["push"] = sync.push_payments(dry_run=dry_run)

            success = all(part["success"] for part in details.values())
            return SyncStepResult(
                source="payments",
                success=success,
                message=" | ".join(part["message"] for part in details.values()),
                details=details,
            )
        except Exception as e:
            logger.exception(f"Payment sync failed: {e}")
            return SyncStepResult(
                source="payments",
                success=False,
                message=f"Payment sync failed: {str(e)}"
            )

    def reconcile(self, entities: Optional[List[str]] = None) -> Dict[str, Any]:
        """
        Dry-run every enabled step in both directions and report what would change.

        Nothing is written: no records, no sync state, no conflicts, no audit rows.
        """
        summary = self.sync_all(direction="both", dry_run=True, entities=entities)
        report: Dict[str, Any] = {
            "timestamp": summary["timestamp"],
            "entities": {},
            "conflicts": [],
            "errors": [],
        }

        for step in summary["results"]:
            details = step["details"]
            if not details and not step["success"]:
                # step raised before producing a result
                report["errors"].append({"source": step["source"], "error": step["message"]})
            if step["source"] == "invoices":
                parts = {
                    "pull": details.get("pull", {}),
                    "supplier_pull": details.get("supplier_pull", {}),
                    "push": details.get("push", {}),
                }
                report["conflicts"].extend(details.get("conflicts", []))
                report["errors"].extend(details.get("errors", []))
            else:
                parts = {name: part.get("stats", {}) for name, part in details.items()}
                for part in details.values():
                    report["conflicts"].extend(part.get("conflicts", []))
                    report["errors"].extend(part.get("errors", []))

            report["entities"][step["source"]] = {
                "would_create": sum(p.get("created", 0) for p in parts.values()),
                "would_update": sum(p.get("updated", 0) for p in parts.values()),
                "unchanged": sum(p.get("skipped", 0) for p in parts.values()),
                "conflicts": sum(p.get("conflicts", 0) for p in parts.values()),
                "breakdown": parts,
                "message": step["message"],
            }

        report["in_sync"] = all(
            e["would_create"] == 0 and e["would_update"] == 0 and e["conflicts"] == 0
            for e in report["entities"].values()
        ) and not report["errors"]
        return report


def sync_xero(
    direction: str = "both",
    dry_run: bool = False,
    force: bool = False,
    entities: Optional[List[str]] = None,
    user_id: Optional[str] = None,
    progress_callback: Optional[Callable[[Dict[str, Any]], None]] = None
) -> Dict[str, Any]:
    """
    Convenience function to run a full Xero sync with the stored connection.

    Args:
        direction: pull, push or both
        dry_run: Report without writing

    Returns:
        Dict with sync results
    """
    oauth = XeroOAuthService()
    service = XeroSyncService(user_id=user_id, oauth=oauth)
    return service.sync_all(
        direction=direction,
        dry_run=dry_run,
        force=force,
        entities=entities,
        progress_callback=progress_callback,
    )
