"""
Tests for the sync orchestrator and reconciliation.
"""
import copy

import pytest

from ledgersync.config_manager import DEFAULT_CONFIG, SyncConfig
from ledgersync.core.models import Customer, CustomerInvoice, Payment, XeroSyncLog
from ledgersync.services.xero.client import XeroApiError, XeroNotConnectedError
from ledgersync.services.xero.oauth import XeroOAuthService
from ledgersync.sync import XeroSyncService
from tests.fakes import FakeXeroClient, xero_contact, xero_invoice


class RecordingOAuth:
    def __init__(self):
        self.synced = []

    def mark_synced(self, tenant_id):
        self.synced.append(tenant_id)


@pytest.fixture
def populated_xero():
    return FakeXeroClient(
        contacts=[xero_contact("c-1", "Acme Construction", email="accounts@acme.sg")],
        invoices=[xero_invoice("i-1", "INV-001", "c-1", amount_paid=500)],
        payments=[{
            "PaymentID": "p-1",
            "Date": "2026-03-10T00:00:00",
            "Amount": 500.0,
            "Status": "AUTHORISED",
            "PaymentType": "ACCRECPAYMENT",
            "Account": {"AccountID": "acc-bank", "Code": "090"},
            "Invoice": {"InvoiceID": "i-1", "InvoiceNumber": "INV-001", "Contact": {"ContactID": "c-1"}},
        }],
    )


def make_service(xero, session_factory, sync_config, **kwargs):
    return XeroSyncService(client=xero, session_factory=session_factory, config=sync_config, **kwargs)


class TestSyncAll:

    def test_full_sync_runs_in_dependency_order(self, session, session_factory, sync_config, populated_xero):
        events = []
        service = make_service(populated_xero, session_factory, sync_config)

        summary = service.sync_all(direction="both", progress_callback=events.append)

        assert summary["overall_success"], summary
        assert [r["source"] for r in summary["results"]] == ["contacts", "invoices", "payments"]
        assert session.query(Customer).count() == 1
        invoice = session.query(CustomerInvoice).one()
        assert invoice.status == "PARTIALLY_PAID"
        assert float(invoice.amount_paid) == 500.0
        assert session.query(Payment).count() == 1
        # nothing local was new, so nothing is written back
        assert populated_xero.calls_to("create_contacts") == []
        assert populated_xero.calls_to("create_invoices") == []
        assert populated_xero.calls_to("create_payments") == []

        assert len(events) == 6
        assert events[0]["stage"] == "start" and events[0]["source"] == "contacts"
        assert events[-1]["progress"] == 100
        assert events[-1]["stage"] == "completed"

    def test_pulled_payment_is_counted_once(self, session, session_factory, sync_config, populated_xero):
        summary = make_service(populated_xero, session_factory, sync_config).sync_all(direction="pull")

        assert summary["overall_success"], summary
        invoice = session.query(CustomerInvoice).one()
        assert float(invoice.total_amount) == 1090.0
        assert float(invoice.amount_paid) == 500.0
        assert float(invoice.amount_due) == 590.0
        assert float(invoice.amount_paid) + float(invoice.amount_due) == float(invoice.total_amount)
        assert invoice.status == "PARTIALLY_PAID"
        payment = session.query(Payment).one()
        assert payment.customer_invoice_id == invoice.id

    def test_second_run_changes_nothing(self, session_factory, sync_config, populated_xero):
        make_service(populated_xero, session_factory, sync_config).sync_all(direction="pull")

        summary = make_service(populated_xero, session_factory, sync_config).sync_all(direction="pull")

        contacts, invoices, payments = summary["results"]
        assert contacts["details"]["pull"]["stats"]["skipped"] == 1
        assert invoices["details"]["pull"]["skipped"] == 1
        assert payments["details"]["pull"]["stats"]["skipped"] == 1

    def test_entities_filter(self, session_factory, sync_config, populated_xero):
        summary = make_service(populated_xero, session_factory, sync_config).sync_all(
            direction="pull", entities=["contacts"],
        )
        assert [r["source"] for r in summary["results"]] == ["contacts"]
        assert populated_xero.calls_to("get_invoices") == []

    def test_disabled_entities_are_skipped(self, session_factory, populated_xero):
        data = copy.deepcopy(DEFAULT_CONFIG)
        data["entities"]["payments"]["enabled"] = False
        summary = make_service(populated_xero, session_factory, SyncConfig(data)).sync_all(direction="pull")
        assert [r["source"] for r in summary["results"]] == ["contacts", "invoices"]

    def test_failed_step_does_not_stop_later_steps(self, session_factory, sync_config, populated_xero):
        populated_xero.fail_with["get_contacts"] = XeroApiError(403, "Insufficient scope")

        summary = make_service(populated_xero, session_factory, sync_config).sync_all(direction="pull")

        contacts = summary["results"][0]
        assert not contacts["success"]
        assert contacts["message"] == "Contact sync failed: Insufficient scope"
        assert len(summary["results"]) == 3
        assert not summary["overall_success"]

    def test_invalid_direction(self, session_factory, sync_config, xero):
        with pytest.raises(ValueError):
            make_service(xero, session_factory, sync_config).sync_all(direction="sideways")

    def test_not_connected(self, session_factory, sync_config):
        oauth = XeroOAuthService(session_factory, client_id="id", client_secret="secret", redirect_uri="http://x")
        service = XeroSyncService(session_factory=session_factory, config=sync_config, oauth=oauth)
        with pytest.raises(XeroNotConnectedError):
            service.sync_all()

    def test_last_sync_is_recorded_on_the_connection(self, session_factory, sync_config, xero):
        oauth = RecordingOAuth()
        make_service(xero, session_factory, sync_config, oauth=oauth).sync_all(direction="pull")
        assert oauth.synced == ["tenant-1"]

    def test_dry_run_does_not_record_last_sync(self, session_factory, sync_config, xero):
        oauth = RecordingOAuth()
        make_service(xero, session_factory, sync_config, oauth=oauth).sync_all(dry_run=True)
        assert oauth.synced == []


class TestReconcile:

    def test_reports_pending_changes_without_writing(self, session, session_factory, sync_config, populated_xero):
        report = make_service(populated_xero, session_factory, sync_config).reconcile(entities=["contacts"])

        assert not report["in_sync"]
        assert report["entities"]["contacts"]["would_create"] == 1
        assert report["entities"]["contacts"]["breakdown"]["pull"]["created"] == 1
        assert session.query(Customer).count() == 0
        assert session.query(XeroSyncLog).count() == 0

    def test_unsynced_dependencies_are_reported_as_errors(self, session_factory, sync_config, populated_xero):
        report = make_service(populated_xero, session_factory, sync_config).reconcile(entities=["invoices"])
        assert not report["in_sync"]
        assert "sync contacts first" in report["errors"][0]["error"]

    def test_in_sync_after_full_sync(self, session_factory, sync_config, populated_xero):
        make_service(populated_xero, session_factory, sync_config).sync_all(direction="both")

        report = make_service(populated_xero, session_factory, sync_config).reconcile()

        assert report["in_sync"], report
        assert report["entities"]["invoices"]["unchanged"] >= 1
        assert report["conflicts"] == []
