"""
Unit tests for field mapping, change hashing and conflict detection.
"""
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

from ledgersync.services.xero.mapping import (
    CONTACT_LOCAL_OWNED,
    CONTACT_REMOTE_OWNED,
    CONTACT_SHARED_FIELDS,
    build_xero_invoice,
    calculate_hash,
    contact_remote_data,
    detect_conflicts,
    map_local_contact_to_xero,
    map_local_invoice_status,
    map_xero_contact,
    map_xero_invoice_status,
    map_xero_supplier_invoice_status,
    merge_with_ownership,
    money,
    parse_xero_date,
    xero_invoice_data,
    xero_line_items,
)
from tests.fakes import xero_contact, xero_invoice


def make_state(local_data, remote_hash, baseline=None):
    return SimpleNamespace(
        last_local_hash=calculate_hash({k: local_data.get(k) for k in CONTACT_SHARED_FIELDS}),
        last_remote_hash=remote_hash,
        extra={"baseline": baseline} if baseline is not None else None,
    )


class TestStatusMaps:

    def test_xero_statuses_map_to_local(self):
        assert map_xero_invoice_status("AUTHORISED") == "SENT"
        assert map_xero_invoice_status("voided") == "CANCELLED"
        assert map_xero_invoice_status(None) == "DRAFT"

    def test_local_statuses_map_to_xero(self):
        assert map_local_invoice_status("PARTIALLY_PAID") == "AUTHORISED"
        assert map_local_invoice_status("CANCELLED") == "VOIDED"
        assert map_local_invoice_status("UNKNOWN") == "DRAFT"

    def test_supplier_statuses(self):
        assert map_xero_supplier_invoice_status("AUTHORISED") == "APPROVED"
        assert map_xero_supplier_invoice_status("VOIDED") == "REJECTED"
        assert map_xero_supplier_invoice_status("") == "RECEIVED"


class TestValueHelpers:

    def test_parse_legacy_ms_date(self):
        assert parse_xero_date("/Date(1767225600000+0000)/") == datetime(2026, 1, 1)

    def test_parse_iso_date_with_offset_is_converted_to_utc(self):
        assert parse_xero_date("2026-03-01T08:00:00+08:00") == datetime(2026, 3, 1, 0, 0)

    def test_parse_garbage_is_none(self):
        assert parse_xero_date("not a date") is None
        assert parse_xero_date("") is None

    def test_money_rounds_half_up(self):
        assert money("10.005") == 10.01
        assert money(Decimal("3.3333")) == 3.33
        assert money(None) == 0.0

    def test_hash_ignores_key_order_and_numeric_representation(self):
        first = calculate_hash({"amount": Decimal("10.00"), "name": " Acme "})
        second = calculate_hash({"name": "Acme", "amount": 10.0})
        assert first == second

    def test_hash_uses_calendar_day_for_datetimes(self):
        first = calculate_hash({"issue_date": datetime(2026, 3, 1, 0, 0)})
        second = calculate_hash({"issue_date": datetime(2026, 3, 1, 17, 45)})
        assert first == second

    def test_hash_changes_with_values(self):
        assert calculate_hash({"email": "a@x.sg"}) != calculate_hash({"email": "b@x.sg"})


class TestContactMapping:

    def test_map_xero_contact(self):
        contact = xero_contact(
            "c-1", "Acme", email="a@acme.sg", phone="6123 4567", city="Singapore",
            TaxNumber="201912345K", ContactPersons=[{"FirstName": "Jane", "LastName": "Tan"}],
        )
        mapped = map_xero_contact(contact)
        assert mapped["name"] == "Acme"
        assert mapped["email"] == "a@acme.sg"
        assert mapped["phone"] == "6123 4567"
        assert mapped["address"] == "1 Main St"
        assert mapped["city"] == "Singapore"
        assert mapped["contact_person"] == "Jane Tan"
        assert mapped["tax_number"] == "201912345K"

    def test_customer_and_supplier_flags_are_not_hashed(self):
        as_customer = contact_remote_data(xero_contact("c-1", "Acme", is_customer=True))
        as_supplier = contact_remote_data(xero_contact("c-1", "Acme", is_customer=False))
        assert calculate_hash(as_customer) == calculate_hash(as_supplier)

    def test_shared_fields_exclude_contact_kind_and_owned_fields(self):
        assert "company_reg" in CONTACT_SHARED_FIELDS
        assert "is_customer" not in CONTACT_SHARED_FIELDS
        assert "is_supplier" not in CONTACT_SHARED_FIELDS
        assert not set(CONTACT_SHARED_FIELDS) & set(CONTACT_REMOTE_OWNED + CONTACT_LOCAL_OWNED)

    def test_local_contact_payload(self):
        record = SimpleNamespace(
            name="Acme", email="a@acme.sg", phone="6123", address="1 Main St", city="Singapore",
            state=None, country=None, postal_code="123456", contact_person="Jane Tan",
            company_reg=None, website=None, is_active=False, xero_contact_id="c-1",
        )
        payload = map_local_contact_to_xero(record)
        assert payload["ContactID"] == "c-1"
        assert payload["ContactStatus"] == "ARCHIVED"
        assert payload["Addresses"][0]["Country"] == "Singapore"
        assert payload["Phones"] == [{"PhoneType": "DEFAULT", "PhoneNumber": "6123"}]
        assert payload["ContactPersons"][0]["FirstName"] == "Jane"
        assert payload["ContactPersons"][0]["LastName"] == "Tan"


class TestInvoiceMapping:

    def test_line_items_derive_tax_rate(self):
        invoice = xero_invoice("i-1", "INV-1", "c-1", lines=[{"Description": "Works", "Quantity": 2, "UnitAmount": 50}])
        lines = xero_line_items(invoice)
        assert lines[0]["subtotal"] == 100.0
        assert lines[0]["tax_amount"] == 9.0
        assert lines[0]["tax_rate"] == 9.0
        assert lines[0]["total_price"] == 109.0

    def test_invoice_data_uses_comparable_status(self):
        data = xero_invoice_data(xero_invoice("i-1", "INV-1", "c-1", status="PAID"))
        # PAID locally is pushed back as AUTHORISED
        assert data["status"] == "AUTHORISED"
        assert data["issue_date"] == datetime(2026, 3, 1)
        assert data["total_amount"] == 1090.0

    def test_build_invoice_payload_uses_defaults(self):
        item = SimpleNamespace(description="Works", quantity=Decimal("2"), unit_price=Decimal("50"),
                               tax_type=None, account_code=None, order=0)
        invoice = SimpleNamespace(
            invoice_number="INV-9", issue_date=datetime(2026, 3, 1), due_date=None, currency=None,
            status="SENT", items=[item], description="Block A", xero_invoice_id=None,
        )
        payload = build_xero_invoice(invoice, "c-1", default_tax_type="OUTPUT2", default_account_code="200")
        assert payload["Type"] == "ACCREC"
        assert payload["Status"] == "AUTHORISED"
        assert payload["Date"] == "2026-03-01"
        assert payload["CurrencyCode"] == "SGD"
        assert payload["Reference"] == "Block A"
        assert payload["LineItems"][0] == {
            "Description": "Works", "Quantity": 2.0, "UnitAmount": 50.0, "TaxType": "OUTPUT2", "AccountCode": "200",
        }
        assert "InvoiceID" not in payload


class TestDetectConflicts:

    def setup_method(self):
        self.baseline = {name: None for name in CONTACT_SHARED_FIELDS}
        self.baseline.update({"name": "Acme", "email": "old@acme.sg", "phone": "111"})
        self.remote_base = dict(self.baseline)
        self.state = make_state(self.baseline, calculate_hash(self.remote_base), baseline=self.baseline)

    def test_no_state_means_no_conflict(self):
        check = detect_conflicts({"name": "A"}, {"name": "B"}, None, ["name"])
        assert not check.has_conflict

    def test_only_remote_changed(self):
        remote = {**self.remote_base, "email": "new@acme.sg"}
        check = detect_conflicts(self.baseline, remote, self.state, CONTACT_SHARED_FIELDS)
        assert check.remote_changed
        assert not check.local_changed
        assert not check.has_conflict

    def test_same_field_changed_differently_on_both_sides(self):
        local = {**self.baseline, "email": "local@acme.sg"}
        remote = {**self.remote_base, "email": "remote@acme.sg"}
        check = detect_conflicts(local, remote, self.state, CONTACT_SHARED_FIELDS)
        assert check.conflict_fields == ["email"]

    def test_different_fields_changed_is_not_a_conflict(self):
        local = {**self.baseline, "phone": "222"}
        remote = {**self.remote_base, "email": "remote@acme.sg"}
        check = detect_conflicts(local, remote, self.state, CONTACT_SHARED_FIELDS)
        assert check.local_changed and check.remote_changed
        assert not check.has_conflict

    def test_both_sides_made_the_same_edit(self):
        local = {**self.baseline, "email": "same@acme.sg"}
        remote = {**self.remote_base, "email": "same@acme.sg"}
        # remote hash also covers Xero-owned fields, so it differs even with equal shared values
        remote["tax_number"] = "T1"
        check = detect_conflicts(local, remote, self.state, CONTACT_SHARED_FIELDS)
        assert not check.has_conflict

    def test_without_baseline_any_differing_shared_field_conflicts(self):
        state = make_state(self.baseline, calculate_hash(self.remote_base))
        local = {**self.baseline, "phone": "222"}
        remote = {**self.remote_base, "email": "remote@acme.sg"}
        check = detect_conflicts(local, remote, state, CONTACT_SHARED_FIELDS)
        assert sorted(check.conflict_fields) == ["email", "phone"]


class TestMergeWithOwnership:

    def test_pull_keeps_local_owned_fields(self):
        merged = merge_with_ownership(
            {"name": "Local", "notes": "keep"}, {"name": "Remote", "notes": None, "tax_number": "T"},
            "pull", remote_owned=["tax_number"], local_owned=["notes"],
        )
        assert merged == {"name": "Remote", "notes": "keep", "tax_number": "T"}

    def test_push_keeps_remote_owned_fields(self):
        merged = merge_with_ownership(
            {"name": "Local", "tax_number": "L"}, {"name": "Remote", "tax_number": "T"},
            "push", remote_owned=["tax_number"], local_owned=["notes"],
        )
        assert merged == {"name": "Local", "tax_number": "T"}
