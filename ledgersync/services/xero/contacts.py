"""
Xero Contact Sync

Two-way sync between Xero contacts and local customers/suppliers.
"""
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func

from ...core.db import SessionLocal
from ...core.models import Customer, Supplier, utcnow
from ...core import audit
from .client import iter_pages
from .mapping import (
    CONTACT_SHARED_FIELDS,
    calculate_hash,
    contact_local_data,
    contact_remote_data,
    detect_conflicts,
    map_local_contact_to_xero,
    map_xero_contact,
    parse_xero_date,
    snapshot,
    values_equal,
)
from .state import (
    EntitySyncResult,
    get_sync_state,
    mark_conflict,
    resolve_system_user_id,
    save_sync_state,
)

logger = logging.getLogger(__name__)

ENTITY_TYPES = {Customer: "CUSTOMER", Supplier: "SUPPLIER"}
ENTITY_MODELS = {"CUSTOMER": Customer, "SUPPLIER": Supplier}

ACTIVE_FILTER = 'ContactStatus=="ACTIVE"'


def _shared_hash(data: Dict[str, Any]) -> str:
    return calculate_hash({k: data.get(k) for k in CONTACT_SHARED_FIELDS})


def _next_number(session, model, column, prefix: str) -> str:
    count = session.query(func.count(model.id)).scalar() or 0
    while True:
        count += 1
        candidate = f"{prefix}-{count:05d}"
        if not session.query(model.id).filter(column == candidate).first():
            return candidate


class ContactSync:
    """
    Sync Xero contacts with local customers and suppliers.

    Ownership:
    - shared fields (name, email, phone, address...) may conflict
    - tax number, AR/AP tax types and default currency are owned by Xero
    - notes, active flag, customer/supplier numbers and types stay local
    """

    def __init__(
        self,
        client,
        session_factory: Callable = SessionLocal,
        user_id: Optional[str] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.user_id = user_id

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull_contacts(
        self,
        include_archived: bool = False,
        dry_run: bool = False,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Pull contacts from Xero into customers/suppliers.

        Args:
            include_archived: Also pull archived contacts
            dry_run: Report what would change without writing
            force: Apply remote values even when unchanged or conflicting

        Returns:
            Dictionary with stats, conflicts and errors
        """
        result = EntitySyncResult("CONTACT", "pull", str(uuid.uuid4()), dry_run=dry_run)
        where = None if include_archived else ACTIVE_FILTER
        logger.info(f"Pulling Xero contacts (include_archived={include_archived}, dry_run={dry_run})")

        session = self.session_factory()
        try:
            if not dry_run:
                result.log_id = audit.start_batch(
                    session, result.correlation_id, "CONTACT", "pull",
                    {"include_archived": include_archived, "force": force}, self.user_id,
                )

            for contact in iter_pages(self.client.get_contacts, where=where, include_archived=include_archived):
                try:
                    self._pull_one(session, contact, result, dry_run, force)
                    if not dry_run:
                        session.commit()
                except Exception as e:
                    session.rollback()
                    logger.exception(f"Failed to pull contact {contact.get('ContactID')}: {e}")
                    result.add_error(contact.get("ContactID"), str(e), name=contact.get("Name"))

            result.message = self._summary("Pulled", result)
            if not dry_run:
                audit.finish_batch(
                    session, result.log_id, "SUCCESS" if not result.errors else "ERROR",
                    processed=result.stats.processed,
                    succeeded=result.stats.created + result.stats.updated,
                    failed=result.stats.errors,
                    details=result.stats.to_dict(),
                )
        finally:
            session.close()

        logger.info(result.message)
        return result.to_dict()

    def pull_contact(self, xero_contact_id: str, force: bool = False) -> Dict[str, Any]:
        """Pull a single contact; used when resolving conflicts in favour of Xero."""
        contact = self.client.get_contact(xero_contact_id)
        if contact is None:
            raise ValueError(f"Xero contact not found: {xero_contact_id}")
        result = EntitySyncResult("CONTACT", "pull", str(uuid.uuid4()))
        session = self.session_factory()
        try:
            self._pull_one(session, contact, result, dry_run=False, force=force)
            session.commit()
        finally:
            session.close()
        return result.to_dict()

    def _find_local(self, session, contact: Dict[str, Any]) -> Tuple[Optional[Any], Optional[str]]:
        xero_id = contact["ContactID"]
        for model in (Customer, Supplier):
            record = session.query(model).filter(model.xero_contact_id == xero_id).first()
            if record is not None:
                return record, ENTITY_TYPES[model]

        # Unlinked local record with the same name
        name = (contact.get("Name") or "").strip().lower()
        if name:
            preferred = (Customer, Supplier) if contact.get("IsCustomer") else (Supplier, Customer)
            for model in preferred:
                record = (
                    session.query(model)
                    .filter(model.xero_contact_id.is_(None))
                    .filter(func.lower(model.name) == name)
                    .first()
                )
                if record is not None:
                    return record, ENTITY_TYPES[model]
        return None, None

    def _apply_remote(self, record, mapped: Dict[str, Any], fields: List[str], contact: Dict[str, Any]):
        for name in fields:
            setattr(record, name, mapped.get(name))
        record.xero_contact_id = contact["ContactID"]
        record.xero_tax_number = mapped.get("tax_number")
        record.xero_ar_tax_type = mapped.get("ar_tax_type")
        record.xero_ap_tax_type = mapped.get("ap_tax_type")
        record.xero_default_currency = mapped.get("default_currency")
        record.xero_contact_status = contact.get("ContactStatus")
        record.xero_updated_at = parse_xero_date(contact.get("UpdatedDateUTC"))
        record.is_xero_synced = True
        record.last_xero_sync = utcnow()

    def _pull_one(self, session, contact: Dict[str, Any], result: EntitySyncResult, dry_run: bool, force: bool):
        xero_id = contact.get("ContactID")
        if not xero_id or not contact.get("Name"):
            result.stats.skipped += 1
            return

        mapped = map_xero_contact(contact)
        remote = contact_remote_data(contact)
        remote_hash = calculate_hash(remote)
        record, entity_type = self._find_local(session, contact)

        if record is None:
            if dry_run:
                result.stats.created += 1
                return
            model = Customer if contact.get("IsCustomer") else Supplier
            entity_type = ENTITY_TYPES[model]
            record = model(name=mapped["name"], is_active=contact.get("ContactStatus", "ACTIVE") == "ACTIVE")
            if model is Customer:
                record.customer_number = _next_number(session, Customer, Customer.customer_number, "CUST")
            else:
                record.supplier_number = _next_number(session, Supplier, Supplier.supplier_number, "SUP")
            record.created_by_id = self.user_id or resolve_system_user_id(session)
            self._apply_remote(record, mapped, CONTACT_SHARED_FIELDS, contact)
            session.add(record)
            session.flush()

            baseline = contact_local_data(record)
            save_sync_state(
                session, entity_type, record.id, xero_id, baseline, remote_hash, "remote",
                result.correlation_id, record.xero_updated_at,
            )
            audit.log_operation(
                session, result.correlation_id, entity_type, record.id, "CREATE", "remote",
                xero_id=xero_id, after=snapshot(mapped), change_hash=remote_hash, user_id=self.user_id,
            )
            result.stats.created += 1
            return

        state = get_sync_state(session, entity_type, record.id)
        if not force and state is not None and state.last_remote_hash == remote_hash and record.xero_contact_id:
            result.stats.skipped += 1
            return

        local = contact_local_data(record)
        local_hash = _shared_hash(local)
        check = detect_conflicts(local, remote, state, CONTACT_SHARED_FIELDS, local_hash, remote_hash)
        if check.has_conflict and not force:
            result.stats.conflicts += 1
            result.conflicts.append({
                "entity_type": entity_type,
                "entity_id": record.id,
                "xero_id": xero_id,
                "name": record.name,
                "fields": check.conflict_fields,
                "local_data": snapshot(local),
                "xero_data": snapshot(remote),
            })
            if not dry_run:
                mark_conflict(
                    session, state, "pull", check.conflict_fields, local, remote,
                    local_hash, remote_hash, result.correlation_id, xero_id,
                )
                audit.log_operation(
                    session, result.correlation_id, entity_type, record.id, "CONFLICT", "remote",
                    status="WARNING", xero_id=xero_id, before=snapshot(local), after=snapshot(remote),
                    change_hash=remote_hash, user_id=self.user_id,
                )
            return

        if dry_run:
            result.stats.updated += 1
            return

        # Only fields Xero moved are applied when the local side also changed
        baseline = (state.extra or {}).get("baseline") if state is not None else None
        fields = CONTACT_SHARED_FIELDS
        if check.local_changed and baseline and not force:
            fields = [name for name in CONTACT_SHARED_FIELDS if not values_equal(remote.get(name), baseline.get(name))]

        before = snapshot(local)
        self._apply_remote(record, mapped, fields, contact)
        save_sync_state(
            session, entity_type, record.id, xero_id,
            {k: remote.get(k) for k in CONTACT_SHARED_FIELDS}, remote_hash, "remote",
            result.correlation_id, record.xero_updated_at,
        )
        audit.log_operation(
            session, result.correlation_id, entity_type, record.id, "UPDATE", "remote",
            xero_id=xero_id, before=before, after=snapshot(contact_local_data(record)),
            change_hash=remote_hash, user_id=self.user_id,
        )
        result.stats.updated += 1

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push_contacts(
        self,
        entity_type: Optional[str] = None,
        ids: Optional[List[str]] = None,
        dry_run: bool = False,
        force: bool = False,
    ) -> Dict[str, Any]:
        """
        Push local customers/suppliers to Xero.

        Args:
            entity_type: CUSTOMER or SUPPLIER (default: both)
            ids: Only push these local ids
            dry_run: Report what would change without calling Xero
            force: Push even when unchanged or conflicting
        """
        result = EntitySyncResult("CONTACT", "push", str(uuid.uuid4()), dry_run=dry_run)
        models = [ENTITY_MODELS[entity_type]] if entity_type else [Customer, Supplier]
        logger.info(f"Pushing contacts to Xero (dry_run={dry_run}, force={force})")

        session = self.session_factory()
        try:
            if not dry_run:
                result.log_id = audit.start_batch(
                    session, result.correlation_id, "CONTACT", "push", {"ids": ids, "force": force}, self.user_id,
                )

            for model in models:
                query = session.query(model)
                if ids:
                    query = query.filter(model.id.in_(ids))
                else:
                    query = query.filter(model.is_active.is_(True))
                for record in query.order_by(model.created_at).all():
                    try:
                        self._push_one(session, record, ENTITY_TYPES[model], result, dry_run, force)
                        if not dry_run:
                            session.commit()
                    except Exception as e:
                        session.rollback()
                        logger.exception(f"Failed to push contact {record.id}: {e}")
                        result.add_error(record.id, str(e), name=record.name)

            result.message = self._summary("Pushed", result)
            if not dry_run:
                audit.finish_batch(
                    session, result.log_id, "SUCCESS" if not result.errors else "ERROR",
                    processed=result.stats.processed,
                    succeeded=result.stats.created + result.stats.updated,
                    failed=result.stats.errors,
                    details=result.stats.to_dict(),
                )
        finally:
            session.close()

        logger.info(result.message)
        return result.to_dict()

    def push_contact(self, entity_type: str, entity_id: str, force: bool = False) -> Dict[str, Any]:
        """Push a single customer or supplier; used when resolving conflicts locally."""
        model = ENTITY_MODELS[entity_type]
        result = EntitySyncResult("CONTACT", "push", str(uuid.uuid4()))
        session = self.session_factory()
        try:
            record = session.get(model, entity_id)
            if record is None:
                raise ValueError(f"{entity_type} not found: {entity_id}")
            self._push_one(session, record, entity_type, result, dry_run=False, force=force)
            session.commit()
        finally:
            session.close()
        return result.to_dict()

    def _push_one(self, session, record, entity_type: str, result: EntitySyncResult, dry_run: bool, force: bool):
        local = contact_local_data(record)
        local_hash = _shared_hash(local)
        state = get_sync_state(session, entity_type, record.id)

        if not force and record.xero_contact_id and state is not None and state.last_local_hash == local_hash:
            result.stats.skipped += 1
            return

        remote_contact = None
        if record.xero_contact_id:
            remote_contact = self.client.get_contact(record.xero_contact_id)
            if remote_contact is None:
                logger.warning(f"Xero contact {record.xero_contact_id} no longer exists; recreating")

        if remote_contact is not None:
            remote = contact_remote_data(remote_contact)
            remote_hash = calculate_hash(remote)
            check = detect_conflicts(local, remote, state, CONTACT_SHARED_FIELDS, local_hash, remote_hash)
            if check.has_conflict and not force:
                result.stats.conflicts += 1
                result.conflicts.append({
                    "entity_type": entity_type,
                    "entity_id": record.id,
                    "xero_id": record.xero_contact_id,
                    "name": record.name,
                    "fields": check.conflict_fields,
                    "local_data": snapshot(local),
                    "xero_data": snapshot(remote),
                })
                if not dry_run:
                    mark_conflict(
                        session, state, "push", check.conflict_fields, local, remote,
                        local_hash, remote_hash, result.correlation_id,
                    )
                    audit.log_operation(
                        session, result.correlation_id, entity_type, record.id, "CONFLICT", "local",
                        status="WARNING", xero_id=record.xero_contact_id, before=snapshot(remote),
                        after=snapshot(local), change_hash=local_hash, user_id=self.user_id,
                    )
                return

        if dry_run:
            if remote_contact is not None:
                result.stats.updated += 1
            else:
                result.stats.created += 1
            return

        payload = map_local_contact_to_xero(record)
        if remote_contact is not None:
            saved = self.client.update_contact(record.xero_contact_id, payload)
            operation = "UPDATE"
        else:
            payload.pop("ContactID", None)
            created = self.client.create_contacts([payload])
            saved = created[0] if created else None
            operation = "CREATE"
        if not saved or not saved.get("ContactID"):
            raise ValueError(f"Xero did not return a contact for {record.name}")

        mapped = map_xero_contact(saved)
        record.xero_contact_id = saved["ContactID"]
        record.xero_tax_number = mapped.get("tax_number") or record.xero_tax_number
        record.xero_default_currency = mapped.get("default_currency") or record.xero_default_currency
        record.xero_contact_status = saved.get("ContactStatus")
        record.xero_updated_at = parse_xero_date(saved.get("UpdatedDateUTC"))
        record.is_xero_synced = True
        record.last_xero_sync = utcnow()

        remote_hash = calculate_hash(contact_remote_data(saved))
        save_sync_state(
            session, entity_type, record.id, record.xero_contact_id, local, remote_hash, "local",
            result.correlation_id, record.xero_updated_at,
        )
        audit.log_operation(
            session, result.correlation_id, entity_type, record.id, operation, "local",
            xero_id=record.xero_contact_id, before=snapshot(local), after=snapshot(mapped),
            change_hash=local_hash, user_id=self.user_id,
        )
        if operation == "CREATE":
            result.stats.created += 1
        else:
            result.stats.updated += 1

    @staticmethod
    def _summary(verb: str, result: EntitySyncResult) -> str:
        stats = result.stats
        prefix = "DRY RUN: " if result.dry_run else ""
        return (
            f"{prefix}{verb} contacts: {stats.created} created, {stats.updated} updated, "
            f"{stats.skipped} skipped, {stats.conflicts} conflicts, {stats.errors} errors"
        )
