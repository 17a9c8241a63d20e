"""
Tests for listing and resolving sync conflicts.
"""
from datetime import datetime

import pytest

from ledgersync.core.models import CustomerInvoice, XeroSyncLog, XeroSyncState
from ledgersync.services.xero.contacts import ContactSync
from ledgersync.services.xero.invoices import InvoiceSync
from ledgersync.sync import (
    ConflictAlreadyResolvedError,
    ConflictNotFoundError,
    ConflictResolver,
    list_conflicts,
    resolve_conflict,
)
from tests.fakes import FakeXeroClient, xero_contact, xero_invoice


@pytest.fixture
def contact_conflict(session, session_factory, customer):
    """Customer email edited locally and in Xero since the last pull."""
    xero = FakeXeroClient(contacts=[xero_contact("c-1", "Acme Construction", email="accounts@acme.sg")])
    sync = ContactSync(xero, session_factory)
    sync.pull_contacts()

    session.refresh(customer)
    customer.email = "local@acme.sg"
    session.commit()
    xero.contacts["c-1"]["EmailAddress"] = "remote@acme.sg"
    sync.pull_contacts()

    state = session.query(XeroSyncState).filter(XeroSyncState.status == "CONFLICT").one()
    return xero, customer, state.id


def resolver(xero, session_factory, sync_config=None):
    return ConflictResolver(client=xero, session_factory=session_factory, config=sync_config)


def reload_state(session, state_id):
    session.expire_all()
    return session.get(XeroSyncState, state_id)


class TestListConflicts:

    def test_lists_open_conflicts(self, session, contact_conflict):
        _, customer, state_id = contact_conflict

        conflicts = list_conflicts(session)

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict["id"] == state_id
        assert conflict["entity_type"] == "CUSTOMER"
        assert conflict["entity_id"] == customer.id
        assert conflict["conflict_type"] == "BOTH_MODIFIED"
        assert conflict["fields"] == ["email"]
        assert conflict["local_data"]["email"] == "local@acme.sg"
        assert conflict["xero_data"]["email"] == "remote@acme.sg"
        assert conflict["recommendation"]

    def test_filter_by_entity_type(self, session, contact_conflict):
        assert list_conflicts(session, entity_type="SUPPLIER") == []
        assert len(list_conflicts(session, entity_type="CUSTOMER")) == 1


class TestResolveContactConflict:

    def test_use_local_pushes_local_values(self, session, session_factory, contact_conflict):
        xero, customer, state_id = contact_conflict

        result = resolver(xero, session_factory).resolve(state_id, "use_local", notes="Confirmed by phone", resolved_by="u-1")

        assert result["success"]
        assert result["resolution"] == "use_local"
        assert xero.contacts["c-1"]["EmailAddress"] == "local@acme.sg"
        state = reload_state(session, state_id)
        assert state.status == "ACTIVE"
        assert state.conflict_data is None
        assert state.extra["resolution"]["notes"] == "Confirmed by phone"
        assert state.extra["resolution"]["fields"] == ["email"]
        log = session.query(XeroSyncLog).filter(XeroSyncLog.operation == "CONFLICT_RESOLVED").one()
        assert log.user_id == "u-1"
        assert log.entity_id == customer.id

    def test_use_xero_pulls_remote_values(self, session, session_factory, contact_conflict):
        xero, customer, state_id = contact_conflict

        result = resolver(xero, session_factory).resolve(state_id, "use_xero")

        assert result["resolution"] == "use_remote"
        session.refresh(customer)
        assert customer.email == "remote@acme.sg"
        assert xero.calls_to("update_contact") == []
        assert reload_state(session, state_id).status == "ACTIVE"

    def test_manual_data_is_applied_and_pushed(self, session, session_factory, contact_conflict):
        xero, customer, state_id = contact_conflict

        resolver(xero, session_factory).resolve(state_id, "manual", manual_data={"email": "finance@acme.sg"})

        session.refresh(customer)
        assert customer.email == "finance@acme.sg"
        assert xero.contacts["c-1"]["EmailAddress"] == "finance@acme.sg"

    def test_manual_without_data_accepts_both_sides(self, session, session_factory, contact_conflict):
        xero, customer, state_id = contact_conflict

        resolver(xero, session_factory).resolve(state_id, "manual", notes="Both addresses are valid")

        session.refresh(customer)
        assert customer.email == "local@acme.sg"
        assert xero.contacts["c-1"]["EmailAddress"] == "remote@acme.sg"
        # the accepted pair no longer conflicts
        sync = ContactSync(xero, session_factory)
        assert sync.pull_contacts()["stats"]["skipped"] == 1
        assert sync.push_contacts(entity_type="CUSTOMER")["stats"]["skipped"] == 1

    def test_manual_rejects_unknown_fields(self, session, session_factory, contact_conflict):
        xero, _, state_id = contact_conflict
        with pytest.raises(ValueError, match="customer_number"):
            resolver(xero, session_factory).resolve(state_id, "manual", manual_data={"customer_number": "X"})
        assert reload_state(session, state_id).status == "CONFLICT"

    def test_already_resolved(self, session_factory, contact_conflict):
        xero, _, state_id = contact_conflict
        resolver(xero, session_factory).resolve(state_id, "use_xero")
        with pytest.raises(ConflictAlreadyResolvedError):
            resolver(xero, session_factory).resolve(state_id, "use_xero")

    def test_failed_push_keeps_conflict_open(self, session, session_factory, contact_conflict, monkeypatch):
        xero, _, state_id = contact_conflict
        monkeypatch.setattr(
            ContactSync, "push_contact",
            lambda self, entity_type, entity_id, force=False: {"errors": [{"error": "Xero said no"}]},
        )
        with pytest.raises(ValueError, match="Xero said no"):
            resolver(xero, session_factory).resolve(state_id, "use_local")
        assert reload_state(session, state_id).status == "CONFLICT"

    def test_convenience_wrapper(self, session, session_factory, contact_conflict):
        xero, customer, state_id = contact_conflict
        result = resolve_conflict(state_id, "use_remote", client=xero, session_factory=session_factory)
        assert result["success"]
        session.refresh(customer)
        assert customer.email == "remote@acme.sg"


class TestResolveErrors:

    def test_unknown_conflict(self, session_factory, xero):
        with pytest.raises(ConflictNotFoundError):
            resolver(xero, session_factory).resolve("missing", "use_local")

    def test_invalid_resolution(self, session_factory, xero):
        with pytest.raises(ValueError, match="Invalid resolution"):
            resolver(xero, session_factory).resolve("missing", "flip_a_coin")

    def test_supplier_invoices_cannot_be_pushed(self, session, session_factory, xero):
        state = XeroSyncState(
            entity_type="SUPPLIER_INVOICE", entity_id="bill-1", xero_id="b-1", status="CONFLICT",
            conflict_data={"type": "BOTH_MODIFIED", "fields": ["due_date"]},
        )
        session.add(state)
        session.commit()
        with pytest.raises(ValueError, match="cannot be pushed"):
            resolver(xero, session_factory).resolve(state.id, "use_local")


class TestResolveInvoiceConflict:

    @pytest.fixture
    def invoice_conflict(self, session, session_factory, sync_config, customer):
        customer.xero_contact_id = "c-1"
        session.commit()
        xero = FakeXeroClient(invoices=[xero_invoice("i-1", "INV-001", "c-1")])
        sync = InvoiceSync(xero, session_factory, config=sync_config)
        sync.sync_invoices(direction="pull")

        invoice = session.query(CustomerInvoice).one()
        invoice.description = "Block A"
        session.commit()
        xero.invoices["i-1"]["Reference"] = "Block B"
        sync.sync_invoices(direction="pull")

        state = session.query(XeroSyncState).filter(XeroSyncState.status == "CONFLICT").one()
        return xero, invoice, state.id

    def test_use_remote(self, session, session_factory, sync_config, invoice_conflict):
        xero, invoice, state_id = invoice_conflict
        resolver(xero, session_factory, sync_config).resolve(state_id, "use_remote")
        session.refresh(invoice)
        assert invoice.description == "Block B"

    def test_use_local(self, session, session_factory, sync_config, invoice_conflict):
        xero, invoice, state_id = invoice_conflict
        resolver(xero, session_factory, sync_config).resolve(state_id, "use_local")
        assert xero.invoices["i-1"]["Reference"] == "Block A"

    def test_manual_edit_maps_reference_to_description(self, session, session_factory, sync_config, invoice_conflict):
        xero, invoice, state_id = invoice_conflict
        resolver(xero, session_factory, sync_config).resolve(
            state_id, "manual", manual_data={"reference": "Block A/B", "due_date": "2026-04-15"},
        )
        session.refresh(invoice)
        assert invoice.description == "Block A/B"
        assert invoice.due_date == datetime(2026, 4, 15)
        assert xero.invoices["i-1"]["Reference"] == "Block A/B"
        assert xero.invoices["i-1"]["DueDate"] == "2026-04-15"
