"""
Xero Field Mapping

Translation between local records and Xero payloads, change hashing and
field-ownership aware conflict detection.

Each entity has three groups of fields:
- shared: editable on both sides, the only fields that can conflict
- remote-owned: Xero is the source of truth (tax, totals); always taken from Xero on pull
- local-owned: never sent to Xero, never overwritten by a pull, never hashed
"""
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

# ============================================================================
# STATUS MAPS
# ============================================================================

XERO_TO_LOCAL_INVOICE_STATUS = {
    "DRAFT": "DRAFT",
    "SUBMITTED": "SENT",
    "AUTHORISED": "SENT",
    "PAID": "PAID",
    "VOIDED": "CANCELLED",
    "DELETED": "CANCELLED",
}

LOCAL_TO_XERO_INVOICE_STATUS = {
    "DRAFT": "DRAFT",
    "SENT": "AUTHORISED",
    "PAID": "AUTHORISED",
    "PARTIALLY_PAID": "AUTHORISED",
    "OVERDUE": "AUTHORISED",
    "CANCELLED": "VOIDED",
}

XERO_TO_SUPPLIER_INVOICE_STATUS = {
    "DRAFT": "DRAFT",
    "SUBMITTED": "RECEIVED",
    "AUTHORISED": "APPROVED",
    "PAID": "PAID",
    "VOIDED": "REJECTED",
}


def map_xero_invoice_status(status: Optional[str]) -> str:
    return XERO_TO_LOCAL_INVOICE_STATUS.get((status or "").upper(), "DRAFT")


def map_local_invoice_status(status: Optional[str]) -> str:
    return LOCAL_TO_XERO_INVOICE_STATUS.get((status or "").upper(), "DRAFT")


def map_xero_supplier_invoice_status(status: Optional[str]) -> str:
    return XERO_TO_SUPPLIER_INVOICE_STATUS.get((status or "").upper(), "RECEIVED")


# ============================================================================
# VALUE HELPERS
# ============================================================================

_MS_DATE = re.compile(r"/Date\((-?\d+)([+-]\d{4})?\)/")


def parse_xero_date(value: Any) -> Optional[datetime]:
    """
    Parse a Xero date into a naive UTC datetime.

    Xero returns either the legacy ``/Date(1700000000000+0000)/`` form or
    ISO-8601 strings (``2024-03-01T00:00:00``). Anything unparseable is None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    match = _MS_DATE.match(text)
    if match:
        millis = int(match.group(1))
        return datetime(1970, 1, 1) + timedelta(milliseconds=millis)

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_xero_date(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.strftime("%Y-%m-%d")


def money(value: Any) -> float:
    """Round a numeric value (Decimal, float, str, None) to 2 decimal places."""
    if value is None or value == "":
        return 0.0
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _normalize(value: Any) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (Decimal, float)):
        return f"{money(value):.2f}"
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, str):
        return value.strip()
    return value


def calculate_hash(data: Dict[str, Any]) -> str:
    """MD5 of the key-sorted JSON form of ``data`` (money as 2dp strings, dates as ISO days)."""
    payload = json.dumps(_normalize(data), sort_keys=True, default=str)
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def snapshot(data: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-safe copy of a mapped record for audit rows and conflict data."""
    return _normalize(data)


def values_equal(left: Any, right: Any) -> bool:
    return _normalize(left) == _normalize(right)


# ============================================================================
# CONFLICT DETECTION
# ============================================================================

@dataclass
class ConflictCheck:
    """Outcome of comparing a local and a remote record against their last sync."""
    local_changed: bool
    remote_changed: bool
    conflict_fields: List[str] = field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflict_fields)


def detect_conflicts(
    local: Dict[str, Any],
    remote: Dict[str, Any],
    state,
    shared_fields: Iterable[str],
    local_hash: Optional[str] = None,
    remote_hash: Optional[str] = None,
) -> ConflictCheck:
    """
    Decide whether a local/remote pair has diverged.

    Change on each side is decided by hash against the sync-state baseline.
    Without a baseline there is nothing to diverge from, so no conflict.
    When both sides changed, only shared fields whose values differ count;
    if the state also carries the field snapshot from the last sync, a field
    must additionally have moved on both sides (three-way comparison).
    """
    shared_fields = list(shared_fields)
    local_hash = local_hash or calculate_hash({k: local.get(k) for k in shared_fields})
    remote_hash = remote_hash or calculate_hash(remote)

    if state is None or not state.last_local_hash or not state.last_remote_hash:
        return ConflictCheck(local_changed=True, remote_changed=True)

    local_changed = local_hash != state.last_local_hash
    remote_changed = remote_hash != state.last_remote_hash
    if not (local_changed and remote_changed):
        return ConflictCheck(local_changed=local_changed, remote_changed=remote_changed)

    baseline = (state.extra or {}).get("baseline")
    conflict_fields = []
    for name in shared_fields:
        local_value = local.get(name)
        remote_value = remote.get(name)
        if values_equal(local_value, remote_value):
            continue
        if baseline is not None and name in baseline:
            base_value = baseline[name]
            if values_equal(local_value, base_value) or values_equal(remote_value, base_value):
                continue
        conflict_fields.append(name)

    return ConflictCheck(
        local_changed=True,
        remote_changed=True,
        conflict_fields=conflict_fields,
    )


def merge_with_ownership(
    local: Dict[str, Any],
    remote: Dict[str, Any],
    direction: str,
    remote_owned: Iterable[str],
    local_owned: Iterable[str],
) -> Dict[str, Any]:
    """
    Merge two mapped records.

    ``pull`` takes remote values except local-owned fields; ``push`` takes
    local values except remote-owned fields.
    """
    if direction == "pull":
        merged = dict(remote)
        for name in local_owned:
            if name in local:
                merged[name] = local[name]
        return merged
    merged = dict(local)
    for name in remote_owned:
        if name in remote:
            merged[name] = remote[name]
    return merged


# ============================================================================
# CONTACTS
# ============================================================================

CONTACT_SHARED_FIELDS = [
    "name",
    "email",
    "phone",
    "address",
    "city",
    "state",
    "country",
    "postal_code",
    "contact_person",
    "company_reg",
    "website",
]
CONTACT_REMOTE_OWNED = ["tax_number", "ar_tax_type", "ap_tax_type", "default_currency"]
CONTACT_LOCAL_OWNED = ["notes", "is_active", "number", "contact_type"]

DEFAULT_COUNTRY = "Singapore"


def _first_phone(phones: List[Dict[str, Any]]) -> Optional[str]:
    for phone_type in ("DEFAULT", "MOBILE"):
        for phone in phones or []:
            if phone.get("PhoneType") == phone_type and phone.get("PhoneNumber"):
                parts = [phone.get("PhoneCountryCode"), phone.get("PhoneAreaCode"), phone.get("PhoneNumber")]
                return " ".join(p for p in parts if p)
    return None


def _first_address(addresses: List[Dict[str, Any]]) -> Dict[str, Any]:
    for address_type in ("STREET", "POBOX"):
        for address in addresses or []:
            if address.get("AddressType") == address_type and (address.get("AddressLine1") or address.get("City")):
                return address
    return {}


def map_xero_contact(contact: Dict[str, Any]) -> Dict[str, Any]:
    """Map a Xero contact into local field names (shared plus Xero-owned)."""
    address = _first_address(contact.get("Addresses", []))
    lines = [address.get(f"AddressLine{i}") for i in range(1, 5)]
    persons = contact.get("ContactPersons") or []
    contact_person = None
    if persons:
        first = persons[0]
        contact_person = f"{first.get('FirstName', '')} {first.get('LastName', '')}".strip() or None

    return {
        "name": contact.get("Name"),
        "email": contact.get("EmailAddress") or None,
        "phone": _first_phone(contact.get("Phones", [])),
        "address": ", ".join(line for line in lines if line) or None,
        "city": address.get("City") or None,
        "state": address.get("Region") or None,
        "country": address.get("Country") or DEFAULT_COUNTRY,
        "postal_code": address.get("PostalCode") or None,
        "contact_person": contact_person,
        "company_reg": contact.get("CompanyNumber") or None,
        "website": contact.get("Website") or None,
        # Xero-owned
        "tax_number": contact.get("TaxNumber") or None,
        "ar_tax_type": contact.get("AccountsReceivableTaxType") or None,
        "ap_tax_type": contact.get("AccountsPayableTaxType") or None,
        "default_currency": contact.get("DefaultCurrency") or None,
    }


def contact_remote_data(contact: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in map_xero_contact(contact).items() if k in CONTACT_SHARED_FIELDS + CONTACT_REMOTE_OWNED}


def contact_local_data(record) -> Dict[str, Any]:
    """Shared fields of a Customer or Supplier row."""
    return {name: getattr(record, name, None) for name in CONTACT_SHARED_FIELDS}


def map_local_contact_to_xero(record) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "Name": record.name,
        "ContactStatus": "ACTIVE" if record.is_active is not False else "ARCHIVED",
    }
    if record.xero_contact_id:
        payload["ContactID"] = record.xero_contact_id
    if record.email:
        payload["EmailAddress"] = record.email
    if record.website:
        payload["Website"] = record.website
    if record.company_reg:
        payload["CompanyNumber"] = record.company_reg
    if record.address or record.city or record.postal_code:
        payload["Addresses"] = [{
            "AddressType": "STREET",
            "AddressLine1": record.address or "",
            "City": record.city or "",
            "Region": record.state or "",
            "PostalCode": record.postal_code or "",
            "Country": record.country or DEFAULT_COUNTRY,
        }]
    if record.phone:
        payload["Phones"] = [{"PhoneType": "DEFAULT", "PhoneNumber": record.phone}]
    if record.contact_person:
        first, _, last = record.contact_person.partition(" ")
        person = {"FirstName": first, "LastName": last, "IncludeInEmails": False}
        if record.email:
            person["EmailAddress"] = record.email
        payload["ContactPersons"] = [person]
    return payload


# ============================================================================
# INVOICES
# ============================================================================

INVOICE_SHARED_FIELDS = [
    "invoice_number",
    "status",
    "issue_date",
    "due_date",
    "currency",
    "reference",
    "line_items",
]
INVOICE_REMOTE_OWNED = ["subtotal", "tax_amount", "total_amount", "amount_due", "amount_paid", "line_accounting"]
INVOICE_LOCAL_OWNED = ["notes", "project_id", "quotation_id"]

LINE_SHARED_FIELDS = ["description", "quantity", "unit_price"]
LINE_REMOTE_OWNED = ["tax_type", "account_code", "tax_rate", "tax_amount", "subtotal", "total_price"]
LINE_LOCAL_OWNED = ["notes", "category", "unit"]


def comparable_invoice_status(local_status: Optional[str]) -> str:
    """Collapse a local invoice status onto the Xero status it is pushed as."""
    return map_local_invoice_status(local_status)


def xero_line_items(invoice: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Map Xero line items to local invoice item values, deriving tax_rate from amounts."""
    items = []
    for index, line in enumerate(invoice.get("LineItems") or []):
        subtotal = money(line.get("LineAmount"))
        tax_amount = money(line.get("TaxAmount"))
        tax_rate = round(tax_amount / subtotal * 100, 4) if subtotal else 0.0
        items.append({
            "description": line.get("Description") or "",
            "quantity": float(line.get("Quantity") or 1),
            "unit_price": money(line.get("UnitAmount")),
            "tax_type": line.get("TaxType"),
            "account_code": line.get("AccountCode"),
            "tax_rate": tax_rate,
            "tax_amount": tax_amount,
            "subtotal": subtotal,
            "total_price": money(subtotal + tax_amount),
            "order": index,
        })
    return items


def xero_invoice_data(invoice: Dict[str, Any]) -> Dict[str, Any]:
    """Comparable form of a Xero invoice: shared fields plus Xero-owned amounts."""
    lines = xero_line_items(invoice)
    return {
        "invoice_number": invoice.get("InvoiceNumber"),
        "status": comparable_invoice_status(map_xero_invoice_status(invoice.get("Status"))),
        "issue_date": parse_xero_date(invoice.get("DateString") or invoice.get("Date")),
        "due_date": parse_xero_date(invoice.get("DueDateString") or invoice.get("DueDate")),
        "currency": invoice.get("CurrencyCode") or "SGD",
        "reference": invoice.get("Reference") or None,
        "line_items": [{k: line[k] for k in LINE_SHARED_FIELDS} for line in lines],
        # Xero-owned
        "subtotal": money(invoice.get("SubTotal")),
        "tax_amount": money(invoice.get("TotalTax")),
        "total_amount": money(invoice.get("Total")),
        "amount_due": money(invoice.get("AmountDue")),
        "amount_paid": money(invoice.get("AmountPaid")),
        "line_accounting": [
            {k: line[k] for k in ("tax_type", "account_code", "tax_amount", "subtotal")} for line in lines
        ],
    }


def local_invoice_data(invoice) -> Dict[str, Any]:
    """Comparable (shared-field) form of a CustomerInvoice row."""
    return {
        "invoice_number": invoice.invoice_number,
        "status": comparable_invoice_status(invoice.status),
        "issue_date": invoice.issue_date,
        "due_date": invoice.due_date,
        "currency": invoice.currency or "SGD",
        "reference": invoice.description or None,
        "line_items": [
            {
                "description": item.description or "",
                "quantity": float(item.quantity or 0),
                "unit_price": money(item.unit_price),
            }
            for item in sorted(invoice.items, key=lambda i: i.order or 0)
        ],
    }


def local_invoice_hash(invoice) -> str:
    return calculate_hash(local_invoice_data(invoice))


def build_xero_invoice(
    invoice,
    contact_id: str,
    default_tax_type: str = "OUTPUT2",
    default_account_code: str = "200",
) -> Dict[str, Any]:
    """Build an ACCREC payload for a local customer invoice."""
    payload: Dict[str, Any] = {
        "Type": "ACCREC",
        "Contact": {"ContactID": contact_id},
        "InvoiceNumber": invoice.invoice_number,
        "Date": format_xero_date(invoice.issue_date),
        "DueDate": format_xero_date(invoice.due_date),
        "CurrencyCode": invoice.currency or "SGD",
        "Status": map_local_invoice_status(invoice.status),
        "LineAmountTypes": "Exclusive",
        "LineItems": [
            {
                "Description": item.description,
                "Quantity": float(item.quantity or 0),
                "UnitAmount": money(item.unit_price),
                "TaxType": item.tax_type or default_tax_type,
                "AccountCode": item.account_code or default_account_code,
            }
            for item in sorted(invoice.items, key=lambda i: i.order or 0)
        ],
    }
    if invoice.description:
        payload["Reference"] = invoice.description
    if invoice.xero_invoice_id:
        payload["InvoiceID"] = invoice.xero_invoice_id
    return payload
