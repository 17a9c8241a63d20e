"""
Xero Invoice Sync

Bidirectional invoice sync:
- pull ACCREC invoices into customer invoices and ACCPAY bills into supplier invoices
- push local customer invoices to Xero as ACCREC

Xero owns the money fields (subtotal, tax, totals, amount due/paid) and the
line-level tax/account coding; notes, project and quotation links are local.
"""
import functools
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_

from ...config_manager import SyncConfig, get_sync_config
from ...core.db import SessionLocal
from ...core.models import (
    Customer,
    CustomerInvoice,
    CustomerInvoiceItem,
    Supplier,
    SupplierInvoice,
    utcnow,
)
from ...core import audit
from .client import iter_pages
from .mapping import (
    INVOICE_SHARED_FIELDS,
    build_xero_invoice,
    calculate_hash,
    detect_conflicts,
    local_invoice_data,
    map_xero_invoice_status,
    map_xero_supplier_invoice_status,
    money,
    parse_xero_date,
    snapshot,
    values_equal,
    xero_invoice_data,
    xero_line_items,
)
from .state import (
    CONFLICT_RECOMMENDATION,
    EntitySyncResult,
    get_sync_state,
    mark_conflict,
    resolve_system_user_id,
    save_sync_state,
)

logger = logging.getLogger(__name__)

CUSTOMER_INVOICE = "CUSTOMER_INVOICE"
SUPPLIER_INVOICE = "SUPPLIER_INVOICE"

PAID_TOLERANCE = 0.01


def modified_since_filter(modified_since: Optional[datetime]) -> Optional[str]:
    if modified_since is None:
        return None
    return (
        f"UpdatedDateUTC>=DateTime({modified_since.year},"
        f"{modified_since.month:02d},{modified_since.day:02d})"
    )


def local_status_from_xero(invoice: Dict[str, Any]) -> str:
    """Xero status mapped locally, with part-paid authorised invoices as PARTIALLY_PAID."""
    status = map_xero_invoice_status(invoice.get("Status"))
    if status == "SENT" and money(invoice.get("AmountPaid")) > 0 and money(invoice.get("AmountDue")) > PAID_TOLERANCE:
        return "PARTIALLY_PAID"
    return status


class InvoiceSync:
    """
    Sync invoices between Xero and the local database.

    Features:
    - Paged pull with UpdatedDateUTC filter
    - Hash-based change detection against the last sync
    - BOTH_MODIFIED conflict reporting on shared fields
    - Dry runs that never write
    """

    def __init__(
        self,
        client,
        session_factory: Callable = SessionLocal,
        user_id: Optional[str] = None,
        config: Optional[SyncConfig] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.user_id = user_id
        self.config = config or get_sync_config()

    def sync_invoices(
        self,
        direction: str = "both",
        dry_run: bool = False,
        force_refresh: bool = False,
        modified_since: Optional[datetime] = None,
        invoice_ids: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Sync invoices.

        Args:
            direction: pull, push or both (pull runs first)
            dry_run: Report what would change without writing
            force_refresh: Overwrite even when unchanged or conflicting
            modified_since: Only pull invoices Xero updated on/after this date
            invoice_ids: Only push these local customer invoices

        Returns:
            Dictionary with pull/push stats, conflicts and errors
        """
        if direction not in ("pull", "push", "both"):
            raise ValueError(f"Invalid sync direction: {direction}")

        correlation_id = str(uuid.uuid4())
        pull = EntitySyncResult(CUSTOMER_INVOICE, "pull", correlation_id, dry_run=dry_run)
        bills = EntitySyncResult(SUPPLIER_INVOICE, "pull", correlation_id, dry_run=dry_run)
        push = EntitySyncResult(CUSTOMER_INVOICE, "push", correlation_id, dry_run=dry_run)
        logger.info(f"Starting invoice sync (direction={direction}, dry_run={dry_run}, force={force_refresh})")

        session = self.session_factory()
        log_id = None
        try:
            if not dry_run:
                log_id = audit.start_batch(
                    session, correlation_id, "INVOICE", direction,
                    {
                        "force_refresh": force_refresh,
                        "modified_since": modified_since.isoformat() if modified_since else None,
                        "invoice_ids": invoice_ids,
                    },
                    self.user_id,
                )

            if direction in ("pull", "both"):
                self._pull(session, pull, bills, dry_run, force_refresh, modified_since)
            if direction in ("push", "both"):
                self._push(session, push, dry_run, force_refresh, invoice_ids)

            results = [pull, bills, push]
            conflicts = [c for r in results for c in r.conflicts]
            errors = [e for r in results for e in r.errors]
            changed = sum(r.stats.created + r.stats.updated for r in results)

            if dry_run:
                message = f"DRY RUN: Would sync {changed} invoices ({len(conflicts)} conflicts detected)"
            else:
                message = (
                    f"Synced {changed} invoices: pulled {pull.stats.created + pull.stats.updated}, "
                    f"bills {bills.stats.created + bills.stats.updated}, "
                    f"pushed {push.stats.created + push.stats.updated}, "
                    f"{len(conflicts)} conflicts, {len(errors)} errors"
                )

            summary = {
                "success": not errors and not conflicts,
                "correlation_id": correlation_id,
                "direction": direction,
                "dry_run": dry_run,
                "message": message,
                "pull": pull.stats.to_dict(),
                "supplier_pull": bills.stats.to_dict(),
                "push": push.stats.to_dict(),
                "conflicts": conflicts,
                "errors": errors,
                "log_id": log_id,
            }

            if not dry_run:
                audit.finish_batch(
                    session, log_id, "SUCCESS" if not errors else "ERROR",
                    processed=sum(r.stats.processed for r in results),
                    succeeded=changed,
                    failed=len(errors),
                    details={"pull": summary["pull"], "supplier_pull": summary["supplier_pull"], "push": summary["push"]},
                    error_message="; ".join(e["error"] for e in errors[:5]) or None,
                )
        except Exception as e:
            session.rollback()
            logger.exception(f"Invoice sync failed: {e}")
            if not dry_run:
                audit.finish_batch(session, log_id, "ERROR", error_message=str(e))
            raise
        finally:
            session.close()

        logger.info(message)
        return summary

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def _pull(self, session, pull, bills, dry_run, force, modified_since):
        where = modified_since_filter(modified_since)
        page_size = self.config.invoice_page_size
        fetch = functools.partial(self.client.get_invoices, page_size=page_size)
        for invoice in iter_pages(fetch, page_size=page_size, where=where):
            invoice_id = invoice.get("InvoiceID")
            try:
                if not invoice_id or not (invoice.get("Contact") or {}).get("ContactID"):
                    pull.stats.skipped += 1
                    continue
                invoice_type = invoice.get("Type")
                if invoice_type == "ACCREC":
                    self.pull_customer_invoice(session, invoice, pull, dry_run, force)
                elif invoice_type == "ACCPAY":
                    self.pull_supplier_invoice(session, invoice, bills, dry_run, force)
                else:
                    pull.stats.skipped += 1
                    continue
                if not dry_run:
                    session.commit()
            except Exception as e:
                session.rollback()
                logger.exception(f"Failed to pull invoice {invoice_id}: {e}")
                target = bills if invoice.get("Type") == "ACCPAY" else pull
                target.add_error(invoice_id, str(e), invoice_number=invoice.get("InvoiceNumber"))

    def pull_customer_invoice(self, session, invoice: Dict[str, Any], result: EntitySyncResult, dry_run: bool, force: bool):
        invoice_id = invoice["InvoiceID"]
        contact_id = invoice["Contact"]["ContactID"]
        number = invoice.get("InvoiceNumber")

        customer = session.query(Customer).filter(Customer.xero_contact_id == contact_id).first()
        if customer is None:
            result.stats.skipped += 1
            result.errors.append({
                "entity_id": invoice_id,
                "invoice_number": number,
                "error": f"Customer {invoice['Contact'].get('Name') or contact_id} not synced; please sync contacts first",
            })
            return

        local = session.query(CustomerInvoice).filter(CustomerInvoice.xero_invoice_id == invoice_id).first()
        if local is None and number:
            local = (
                session.query(CustomerInvoice)
                .filter(CustomerInvoice.invoice_number == number)
                .filter(CustomerInvoice.customer_id == customer.id)
                .first()
            )

        remote = xero_invoice_data(invoice)
        remote_hash = calculate_hash(remote)

        if local is None:
            if dry_run:
                result.stats.created += 1
                return
            local = CustomerInvoice(
                invoice_number=number or invoice_id[:8],
                customer_id=customer.id,
                created_by_id=self.user_id or resolve_system_user_id(session),
            )
            session.add(local)
            self._apply_customer_invoice(local, invoice, remote, INVOICE_SHARED_FIELDS)
            session.flush()
            save_sync_state(
                session, CUSTOMER_INVOICE, local.id, invoice_id, local_invoice_data(local), remote_hash,
                "remote", result.correlation_id, parse_xero_date(invoice.get("UpdatedDateUTC")),
            )
            audit.log_operation(
                session, result.correlation_id, CUSTOMER_INVOICE, local.id, "CREATE", "remote",
                xero_id=invoice_id, after=snapshot(remote), change_hash=remote_hash, user_id=self.user_id,
            )
            result.stats.created += 1
            return

        state = get_sync_state(session, CUSTOMER_INVOICE, local.id)
        local_data = local_invoice_data(local)
        local_hash = calculate_hash(local_data)
        check = detect_conflicts(local_data, remote, state, INVOICE_SHARED_FIELDS, local_hash, remote_hash)

        if check.has_conflict and not force:
            conflict = {
                "entity_type": CUSTOMER_INVOICE,
                "entity_id": local.id,
                "xero_id": invoice_id,
                "invoice_number": local.invoice_number,
                "conflict_type": "BOTH_MODIFIED",
                "fields": check.conflict_fields,
                "local_data": snapshot(local_data),
                "xero_data": snapshot(remote),
                "recommendation": CONFLICT_RECOMMENDATION,
            }
            result.stats.conflicts += 1
            result.conflicts.append(conflict)
            if not dry_run:
                mark_conflict(
                    session, state, "pull", check.conflict_fields, local_data, remote,
                    local_hash, remote_hash, result.correlation_id, invoice_id,
                )
                audit.log_operation(
                    session, result.correlation_id, CUSTOMER_INVOICE, local.id, "CONFLICT", "remote",
                    status="WARNING", xero_id=invoice_id, before=snapshot(local_data), after=snapshot(remote),
                    change_hash=remote_hash, user_id=self.user_id,
                )
            return

        if state is not None and not check.remote_changed and not force:
            result.stats.skipped += 1
            return

        if dry_run:
            result.stats.updated += 1
            return

        fields = INVOICE_SHARED_FIELDS
        baseline = (state.extra or {}).get("baseline") if state is not None else None
        if check.local_changed and baseline and not force:
            # keep local edits to fields Xero did not touch
            fields = [name for name in INVOICE_SHARED_FIELDS if not values_equal(remote.get(name), baseline.get(name))]

        before = snapshot(local_data)
        self._apply_customer_invoice(local, invoice, remote, fields)
        session.flush()
        save_sync_state(
            session, CUSTOMER_INVOICE, local.id, invoice_id,
            {k: remote.get(k) for k in INVOICE_SHARED_FIELDS}, remote_hash,
            "remote", result.correlation_id, parse_xero_date(invoice.get("UpdatedDateUTC")),
        )
        audit.log_operation(
            session, result.correlation_id, CUSTOMER_INVOICE, local.id, "UPDATE", "remote",
            xero_id=invoice_id, before=before, after=snapshot(local_invoice_data(local)),
            change_hash=remote_hash, user_id=self.user_id,
        )
        result.stats.updated += 1

    def _apply_customer_invoice(self, local: CustomerInvoice, invoice: Dict[str, Any], remote: Dict[str, Any], fields: List[str]):
        """Write Xero values onto a customer invoice: Xero-owned always, shared ``fields`` only."""
        local.xero_invoice_id = invoice["InvoiceID"]
        local.subtotal = remote["subtotal"]
        local.tax_amount = remote["tax_amount"]
        local.total_amount = remote["total_amount"]
        local.amount_due = remote["amount_due"]
        local.amount_paid = remote["amount_paid"]
        local.paid_date = parse_xero_date(invoice.get("FullyPaidOnDate")) or local.paid_date

        if "invoice_number" in fields and remote.get("invoice_number"):
            local.invoice_number = remote["invoice_number"]
        if "status" in fields:
            local.status = local_status_from_xero(invoice)
        if "issue_date" in fields:
            local.issue_date = remote["issue_date"]
        if "due_date" in fields:
            local.due_date = remote["due_date"]
        if "currency" in fields:
            local.currency = remote["currency"]
        if "reference" in fields:
            local.description = remote["reference"]

        lines = xero_line_items(invoice)
        if "line_items" in fields:
            # Replace lines, carrying local-only details over by position
            previous = sorted(local.items, key=lambda i: i.order or 0)
            local.items = []
            for index, line in enumerate(lines):
                old = previous[index] if index < len(previous) else None
                local.items.append(CustomerInvoiceItem(
                    description=line["description"],
                    quantity=line["quantity"],
                    unit_price=line["unit_price"],
                    tax_rate=line["tax_rate"],
                    tax_type=line["tax_type"],
                    account_code=line["account_code"],
                    subtotal=line["subtotal"],
                    tax_amount=line["tax_amount"],
                    total_price=line["total_price"],
                    notes=old.notes if old else None,
                    category=old.category if old else None,
                    unit=old.unit if old else None,
                    order=index,
                ))
        else:
            self._apply_line_accounting(local, lines)

        local.is_xero_synced = True
        local.last_xero_sync = utcnow()

    @staticmethod
    def _apply_line_accounting(local: CustomerInvoice, lines: List[Dict[str, Any]]):
        """Copy Xero-owned line fields onto existing items, matched by position."""
        items = sorted(local.items, key=lambda i: i.order or 0)
        for item, line in zip(items, lines):
            item.tax_type = line["tax_type"]
            item.account_code = line["account_code"]
            item.tax_rate = line["tax_rate"]
            item.tax_amount = line["tax_amount"]
            item.subtotal = line["subtotal"]
            item.total_price = line["total_price"]

    def pull_supplier_invoice(self, session, invoice: Dict[str, Any], result: EntitySyncResult, dry_run: bool, force: bool):
        invoice_id = invoice["InvoiceID"]
        contact_id = invoice["Contact"]["ContactID"]
        number = invoice.get("InvoiceNumber") or invoice.get("Reference") or invoice_id[:8]

        supplier = session.query(Supplier).filter(Supplier.xero_contact_id == contact_id).first()
        if supplier is None:
            result.stats.skipped += 1
            result.errors.append({
                "entity_id": invoice_id,
                "invoice_number": number,
                "error": f"Supplier {invoice['Contact'].get('Name') or contact_id} not synced; please sync contacts first",
            })
            return

        local = session.query(SupplierInvoice).filter(SupplierInvoice.xero_invoice_id == invoice_id).first()
        if local is None:
            local = (
                session.query(SupplierInvoice)
                .filter(SupplierInvoice.invoice_number == number)
                .filter(SupplierInvoice.supplier_id == supplier.id)
                .first()
            )

        remote = xero_invoice_data(invoice)
        remote_hash = calculate_hash(remote)
        state = get_sync_state(session, SUPPLIER_INVOICE, local.id) if local is not None else None
        if local is not None and not force and state is not None and state.last_remote_hash == remote_hash:
            result.stats.skipped += 1
            return

        if dry_run:
            if local is None:
                result.stats.created += 1
            else:
                result.stats.updated += 1
            return

        operation = "UPDATE"
        before = None
        if local is None:
            operation = "CREATE"
            local = SupplierInvoice(
                supplier_id=supplier.id,
                created_by_id=self.user_id or resolve_system_user_id(session),
            )
            session.add(local)
        else:
            before = {"status": local.status, "total_amount": money(local.total_amount)}

        local.invoice_number = number
        local.xero_invoice_id = invoice_id
        local.status = map_xero_supplier_invoice_status(invoice.get("Status"))
        local.invoice_date = remote["issue_date"]
        local.due_date = remote["due_date"]
        local.paid_date = parse_xero_date(invoice.get("FullyPaidOnDate")) or local.paid_date
        local.currency = remote["currency"]
        local.description = local.description or invoice.get("Reference")
        local.subtotal = remote["subtotal"]
        local.tax_amount = remote["tax_amount"]
        local.total_amount = remote["total_amount"]
        local.is_xero_synced = True
        local.last_xero_sync = utcnow()
        session.flush()

        save_sync_state(
            session, SUPPLIER_INVOICE, local.id, invoice_id,
            {k: remote.get(k) for k in INVOICE_SHARED_FIELDS}, remote_hash,
            "remote", result.correlation_id, parse_xero_date(invoice.get("UpdatedDateUTC")),
        )
        audit.log_operation(
            session, result.correlation_id, SUPPLIER_INVOICE, local.id, operation, "remote",
            xero_id=invoice_id, before=before,
            after={"status": local.status, "total_amount": remote["total_amount"]},
            change_hash=remote_hash, user_id=self.user_id,
        )
        if operation == "CREATE":
            result.stats.created += 1
        else:
            result.stats.updated += 1

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def _push(self, session, result: EntitySyncResult, dry_run: bool, force: bool, invoice_ids: Optional[List[str]]):
        query = session.query(CustomerInvoice)
        if invoice_ids:
            query = query.filter(CustomerInvoice.id.in_(invoice_ids))
        else:
            query = query.filter(or_(
                CustomerInvoice.is_xero_synced.is_(False),
                CustomerInvoice.xero_invoice_id.is_(None),
                CustomerInvoice.last_xero_sync.is_(None),
                CustomerInvoice.updated_at > CustomerInvoice.last_xero_sync,
            ))

        for invoice in query.order_by(CustomerInvoice.created_at).all():
            try:
                self.push_invoice(session, invoice, result, dry_run, force)
                if not dry_run:
                    session.commit()
            except Exception as e:
                session.rollback()
                logger.exception(f"Failed to push invoice {invoice.invoice_number}: {e}")
                result.add_error(invoice.id, str(e), invoice_number=invoice.invoice_number)

    def push_invoice(self, session, invoice: CustomerInvoice, result: EntitySyncResult, dry_run: bool, force: bool):
        customer = invoice.customer
        if customer is None or not customer.xero_contact_id:
            result.stats.skipped += 1
            result.errors.append({
                "entity_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "error": f"Customer {customer.name if customer else invoice.customer_id} is not synced to Xero",
            })
            return

        local_data = local_invoice_data(invoice)
        local_hash = calculate_hash(local_data)
        state = get_sync_state(session, CUSTOMER_INVOICE, invoice.id)

        remote_invoice = None
        if invoice.xero_invoice_id:
            if not force and state is not None and state.last_local_hash == local_hash:
                result.stats.skipped += 1
                return
            remote_invoice = self.client.get_invoice(invoice.xero_invoice_id)
            if remote_invoice is None:
                logger.warning(f"Xero invoice {invoice.xero_invoice_id} not found; creating a new one")

        if remote_invoice is not None:
            remote = xero_invoice_data(remote_invoice)
            remote_hash = calculate_hash(remote)
            check = detect_conflicts(local_data, remote, state, INVOICE_SHARED_FIELDS, local_hash, remote_hash)
            if check.has_conflict and not force:
                result.stats.conflicts += 1
                result.conflicts.append({
                    "entity_type": CUSTOMER_INVOICE,
                    "entity_id": invoice.id,
                    "xero_id": invoice.xero_invoice_id,
                    "invoice_number": invoice.invoice_number,
                    "conflict_type": "BOTH_MODIFIED",
                    "fields": check.conflict_fields,
                    "local_data": snapshot(local_data),
                    "xero_data": snapshot(remote),
                    "recommendation": CONFLICT_RECOMMENDATION,
                })
                if not dry_run:
                    mark_conflict(
                        session, state, "push", check.conflict_fields, local_data, remote,
                        local_hash, remote_hash, result.correlation_id,
                    )
                    audit.log_operation(
                        session, result.correlation_id, CUSTOMER_INVOICE, invoice.id, "CONFLICT", "local",
                        status="WARNING", xero_id=invoice.xero_invoice_id, before=snapshot(remote),
                        after=snapshot(local_data), change_hash=local_hash, user_id=self.user_id,
                    )
                return
            if state is not None and not check.local_changed and not force:
                result.stats.skipped += 1
                return

        if dry_run:
            if remote_invoice is not None:
                result.stats.updated += 1
            else:
                result.stats.created += 1
            return

        payload = build_xero_invoice(
            invoice,
            customer.xero_contact_id,
            default_tax_type=self.config.default_tax_type,
            default_account_code=self.config.default_account_code,
        )
        if remote_invoice is not None:
            saved = self.client.update_invoice(invoice.xero_invoice_id, payload)
            operation = "UPDATE"
        else:
            payload.pop("InvoiceID", None)
            created = self.client.create_invoices([payload])
            saved = created[0] if created else None
            operation = "CREATE"
        if not saved or not saved.get("InvoiceID"):
            raise ValueError(f"Xero did not return an invoice for {invoice.invoice_number}")

        saved_data = xero_invoice_data(saved)
        invoice.xero_invoice_id = saved["InvoiceID"]
        invoice.subtotal = saved_data["subtotal"]
        invoice.tax_amount = saved_data["tax_amount"]
        invoice.total_amount = saved_data["total_amount"]
        invoice.amount_due = saved_data["amount_due"]
        invoice.amount_paid = saved_data["amount_paid"]
        self._apply_line_accounting(invoice, xero_line_items(saved))
        invoice.is_xero_synced = True
        invoice.last_xero_sync = utcnow()

        save_sync_state(
            session, CUSTOMER_INVOICE, invoice.id, invoice.xero_invoice_id, local_data,
            calculate_hash(saved_data), "local", result.correlation_id,
            parse_xero_date(saved.get("UpdatedDateUTC")),
        )
        audit.log_operation(
            session, result.correlation_id, CUSTOMER_INVOICE, invoice.id, operation, "local",
            xero_id=invoice.xero_invoice_id, before=snapshot(local_data), after=snapshot(saved_data),
            change_hash=local_hash, user_id=self.user_id,
        )
        if operation == "CREATE":
            result.stats.created += 1
        else:
            result.stats.updated += 1

    # ------------------------------------------------------------------
    # Single-record helpers for conflict resolution
    # ------------------------------------------------------------------

    def pull_invoice(self, xero_invoice_id: str, force: bool = True) -> Dict[str, Any]:
        invoice = self.client.get_invoice(xero_invoice_id)
        if invoice is None:
            raise ValueError(f"Xero invoice not found: {xero_invoice_id}")
        result = EntitySyncResult(CUSTOMER_INVOICE, "pull", str(uuid.uuid4()))
        session = self.session_factory()
        try:
            if invoice.get("Type") == "ACCPAY":
                self.pull_supplier_invoice(session, invoice, result, dry_run=False, force=force)
            else:
                self.pull_customer_invoice(session, invoice, result, dry_run=False, force=force)
            session.commit()
        finally:
            session.close()
        return result.to_dict()

    def push_invoice_by_id(self, invoice_id: str, force: bool = True) -> Dict[str, Any]:
        result = EntitySyncResult(CUSTOMER_INVOICE, "push", str(uuid.uuid4()))
        session = self.session_factory()
        try:
            invoice = session.get(CustomerInvoice, invoice_id)
            if invoice is None:
                raise ValueError(f"Customer invoice not found: {invoice_id}")
            self.push_invoice(session, invoice, result, dry_run=False, force=force)
            session.commit()
        finally:
            session.close()
        return result.to_dict()
