"""
Xero Payment Sync

Push local customer payments to Xero (with pre-validation against the Xero
invoice and bank account) and pull Xero payments into local payments,
applying them to the matching customer or supplier invoice.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func

from ...config_manager import SyncConfig, get_sync_config
from ...core.db import SessionLocal
from ...core.models import (
    Customer,
    CustomerInvoice,
    Payment,
    Supplier,
    SupplierInvoice,
    utcnow,
)
from ...core import audit
from .client import XeroApiError, iter_pages
from .mapping import calculate_hash, format_xero_date, money, parse_xero_date
from .state import EntitySyncResult, resolve_system_user_id, save_sync_state

logger = logging.getLogger(__name__)

PAYMENT = "PAYMENT"
PAID_TOLERANCE = 0.01
SUPPLIER_PAYMENT_MARKERS = ("ACCPAY", "APCREDIT")
TARGET_DOCUMENTS = ("Invoice", "CreditNote", "Overpayment", "Prepayment")


def is_supplier_payment(payment: Dict[str, Any]) -> bool:
    payment_type = (payment.get("PaymentType") or "").upper()
    return any(marker in payment_type for marker in SUPPLIER_PAYMENT_MARKERS)


def validate_xero_payment(payment: Dict[str, Any]) -> Tuple[List[str], List[str]]:
    """Return (errors, warnings) for a payment pulled from Xero."""
    errors: List[str] = []
    warnings: List[str] = []

    if not payment.get("PaymentID"):
        errors.append("Missing PaymentID")
    if not payment.get("Date"):
        errors.append("Missing payment date")
    if money(payment.get("Amount")) <= 0:
        errors.append("Payment amount must be greater than zero")

    targets = [name for name in TARGET_DOCUMENTS if payment.get(name)]
    if not targets:
        errors.append("Payment is not linked to an invoice, credit note, overpayment or prepayment")
    elif len(targets) > 1:
        warnings.append(f"Payment is linked to multiple documents: {', '.join(targets)}")

    if (payment.get("Status") or "").upper() == "DELETED":
        errors.append("Payment is deleted in Xero")
    if not (payment.get("Account") or {}).get("AccountID"):
        warnings.append("Payment has no bank account")
    if not payment.get("PaymentType"):
        warnings.append("Payment has no payment type")
    return errors, warnings


def _set_paid(invoice, paid: float, paid_on: Optional[datetime] = None):
    total = money(invoice.total_amount)
    due = max(0.0, money(total - paid))
    invoice.amount_paid = paid
    invoice.amount_due = due
    if due <= PAID_TOLERANCE:
        invoice.status = "PAID"
        invoice.paid_date = paid_on or utcnow()
    else:
        invoice.status = "PARTIALLY_PAID"


def apply_payment_to_invoice(invoice, amount: float, paid_on: Optional[datetime] = None):
    """Add a payment to a customer invoice's paid/due amounts and status."""
    _set_paid(invoice, money(money(invoice.amount_paid) + amount), paid_on)


def settle_from_payments(session, invoice, paid_on: Optional[datetime] = None):
    """
    Recompute a Xero-linked customer invoice's paid/due amounts from its completed payments.

    The invoice pull already mirrors Xero's AmountPaid, so a pulled payment must not be
    added on top of it. The larger of the stored amount and the completed payment total wins.
    """
    recorded = session.query(func.coalesce(func.sum(Payment.amount), 0)).filter(
        Payment.customer_invoice_id == invoice.id,
        Payment.status == "COMPLETED",
    ).scalar()
    paid = max(money(invoice.amount_paid), money(recorded))
    _set_paid(invoice, paid, paid_on)


def next_payment_number(session) -> str:
    latest = (
        session.query(func.max(Payment.payment_number))
        .filter(Payment.payment_number.like("PAY-%"))
        .scalar()
    )
    sequence = 0
    if latest:
        try:
            sequence = int(latest.split("-", 1)[1])
        except ValueError:
            sequence = session.query(func.count(Payment.id)).scalar() or 0
    return f"PAY-{sequence + 1:06d}"


class PaymentSync:
    """
    Sync payments between Xero and the local database.

    Push validates each payment before calling Xero:
    - the invoice is in Xero (by id or resolvable by number)
    - amount is positive, in the invoice currency and within the amount due
    - the bank account exists, is a BANK account and is ACTIVE
    - the invoice is not DRAFT, DELETED or VOIDED
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
        self._accounts: Optional[Dict[str, Dict[str, Any]]] = None
        self._invoices_by_number: Dict[str, Optional[Dict[str, Any]]] = {}
        self._invoices_by_id: Dict[str, Optional[Dict[str, Any]]] = {}

    # ------------------------------------------------------------------
    # Cached lookups
    # ------------------------------------------------------------------

    def _get_accounts(self) -> Dict[str, Dict[str, Any]]:
        if self._accounts is None:
            self._accounts = {}
            for account in self.client.get_accounts():
                if account.get("AccountID"):
                    self._accounts[account["AccountID"]] = account
                if account.get("Code"):
                    self._accounts[f"code:{account['Code']}"] = account
        return self._accounts

    def _find_account(self, payment: Payment) -> Optional[Dict[str, Any]]:
        accounts = self._get_accounts()
        if payment.xero_bank_account_id:
            return accounts.get(payment.xero_bank_account_id)
        code = payment.xero_bank_account_code or self.config.get_global_setting("default_bank_account_code")
        if code:
            return accounts.get(f"code:{code}")
        return None

    def _find_xero_invoice(self, invoice: CustomerInvoice) -> Optional[Dict[str, Any]]:
        if invoice.xero_invoice_id:
            if invoice.xero_invoice_id not in self._invoices_by_id:
                self._invoices_by_id[invoice.xero_invoice_id] = self.client.get_invoice(invoice.xero_invoice_id)
            return self._invoices_by_id[invoice.xero_invoice_id]

        number = invoice.invoice_number
        if number not in self._invoices_by_number:
            matches = self.client.get_invoices(invoice_numbers=[number])
            match = next((m for m in matches if m.get("Type") == "ACCREC"), None)
            self._invoices_by_number[number] = match
        return self._invoices_by_number[number]

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def validate_payment(self, payment: Payment) -> Tuple[List[str], Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        """Return (errors, xero_invoice, bank_account) for a local payment."""
        errors: List[str] = []
        invoice = payment.customer_invoice
        if invoice is None:
            return ["Payment is not linked to a customer invoice"], None, None

        xero_invoice = self._find_xero_invoice(invoice)
        if xero_invoice is None:
            errors.append(f"Invoice {invoice.invoice_number} is not synced to Xero")

        amount = money(payment.amount)
        if amount <= 0:
            errors.append("Payment amount must be greater than zero")

        if xero_invoice is not None:
            invoice_currency = xero_invoice.get("CurrencyCode") or invoice.currency
            if (payment.currency or self.config.default_currency) != invoice_currency:
                errors.append(
                    f"Payment currency {payment.currency} does not match invoice currency {invoice_currency}"
                )
            amount_due = money(xero_invoice.get("AmountDue"))
            if amount > amount_due:
                errors.append(f"Payment amount {amount:.2f} exceeds amount due {amount_due:.2f}")
            status = (xero_invoice.get("Status") or "").upper()
            if status == "DRAFT":
                errors.append(f"Invoice {invoice.invoice_number} is DRAFT in Xero; approve it before adding payments")
            elif status in ("DELETED", "VOIDED"):
                errors.append(f"Invoice {invoice.invoice_number} is {status} in Xero")

        account = self._find_account(payment)
        if account is None:
            errors.append("Bank account not found in Xero")
        else:
            if account.get("Type") != "BANK":
                errors.append(f"Account {account.get('Code') or account.get('AccountID')} is not a BANK account")
            if account.get("Status") != "ACTIVE":
                errors.append(f"Account {account.get('Code') or account.get('AccountID')} is not ACTIVE")

        return errors, xero_invoice, account

    def push_payments(
        self,
        payment_ids: Optional[List[str]] = None,
        dry_run: bool = False,
        debug: bool = False,
        single_payment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Push unsynced customer payments to Xero.

        Args:
            payment_ids: Only push these payments
            dry_run: Validate only
            debug: Stop at the first failure
            single_payment_id: Push exactly one payment (implies debug)

        Returns:
            Dictionary with stats, per-payment errors and validated ids
        """
        result = EntitySyncResult(PAYMENT, "push", str(uuid.uuid4()), dry_run=dry_run)
        validated: List[str] = []
        if single_payment_id:
            payment_ids = [single_payment_id]
            debug = True

        session = self.session_factory()
        try:
            query = session.query(Payment).filter(Payment.customer_invoice_id.isnot(None))
            if payment_ids:
                query = query.filter(Payment.id.in_(payment_ids))
            else:
                query = query.filter(Payment.xero_payment_id.is_(None)).filter(Payment.status != "FAILED")
            payments = query.order_by(Payment.payment_date).all()
            logger.info(f"Pushing {len(payments)} payments to Xero (dry_run={dry_run}, debug={debug})")

            if not dry_run:
                result.log_id = audit.start_batch(
                    session, result.correlation_id, PAYMENT, "push",
                    {"payment_ids": payment_ids, "debug": debug}, self.user_id,
                )

            for payment in payments:
                if payment.xero_payment_id:
                    result.stats.skipped += 1
                    continue

                ok = self._push_one(session, payment, result, dry_run, validated)
                if not ok and debug:
                    logger.warning(f"Stopping payment push at {payment.payment_number} (debug mode)")
                    break

            if dry_run:
                result.message = (
                    f"DRY RUN: {len(validated)} payments valid, {result.stats.errors} failed validation"
                )
            else:
                result.message = (
                    f"Pushed {result.stats.created} payments, {result.stats.skipped} skipped, "
                    f"{result.stats.errors} errors"
                )
                audit.finish_batch(
                    session, result.log_id, "SUCCESS" if not result.errors else "ERROR",
                    processed=result.stats.processed,
                    succeeded=result.stats.created,
                    failed=result.stats.errors,
                    details=result.stats.to_dict(),
                )
        finally:
            session.close()

        logger.info(result.message)
        summary = result.to_dict()
        summary["validated"] = validated
        return summary

    def _push_one(self, session, payment: Payment, result: EntitySyncResult, dry_run: bool, validated: List[str]) -> bool:
        try:
            errors, xero_invoice, account = self.validate_payment(payment)
        except XeroApiError as e:
            logger.error(f"Xero lookup failed while validating {payment.payment_number}: {e.message}")
            result.add_error(payment.id, e.message, payment_number=payment.payment_number, xero=e.to_dict())
            return False

        if errors:
            result.add_error(payment.id, "; ".join(errors), payment_number=payment.payment_number, validation_errors=errors)
            return False

        validated.append(payment.id)
        if dry_run:
            return True

        payload = {
            "Invoice": {"InvoiceID": xero_invoice["InvoiceID"]},
            "Account": {"AccountID": account["AccountID"]},
            "Date": format_xero_date(payment.payment_date),
            "Amount": money(payment.amount),
            "Reference": payment.reference or payment.payment_number,
        }
        if payment.xero_currency_rate:
            payload["CurrencyRate"] = float(payment.xero_currency_rate)

        try:
            created = self.client.create_payments([payload])
            saved = created[0] if created else None
            if not saved or not saved.get("PaymentID"):
                raise ValueError(f"Xero did not return a payment for {payment.payment_number}")

            payment.xero_payment_id = saved["PaymentID"]
            payment.xero_invoice_id = xero_invoice["InvoiceID"]
            payment.xero_contact_id = (xero_invoice.get("Contact") or {}).get("ContactID")
            payment.xero_bank_account_id = account["AccountID"]
            payment.xero_bank_account_code = account.get("Code")
            payment.xero_payment_type = saved.get("PaymentType") or "ACCRECPAYMENT"
            payment.is_xero_synced = True
            payment.last_xero_sync = utcnow()
            if payment.customer_invoice and not payment.customer_invoice.xero_invoice_id:
                payment.customer_invoice.xero_invoice_id = xero_invoice["InvoiceID"]

            data = {"amount": money(payment.amount), "date": payment.payment_date, "invoice": xero_invoice["InvoiceID"]}
            save_sync_state(
                session, PAYMENT, payment.id, payment.xero_payment_id, data,
                calculate_hash(data), "local", result.correlation_id,
            )
            audit.log_operation(
                session, result.correlation_id, PAYMENT, payment.id, "CREATE", "local",
                xero_id=payment.xero_payment_id, after={**payload, "PaymentID": saved["PaymentID"]},
                change_hash=calculate_hash(data), user_id=self.user_id,
            )
            session.commit()
            result.stats.created += 1
            # amount due changed in Xero
            self._invoices_by_id.pop(xero_invoice["InvoiceID"], None)
            return True
        except XeroApiError as e:
            session.rollback()
            logger.error(f"Xero rejected payment {payment.payment_number}: {e.message}")
            result.add_error(payment.id, e.message, payment_number=payment.payment_number, xero=e.to_dict())
            return False
        except Exception as e:
            session.rollback()
            logger.exception(f"Failed to push payment {payment.payment_number}: {e}")
            result.add_error(payment.id, str(e), payment_number=payment.payment_number)
            return False

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    def pull_payments(self, modified_since: Optional[datetime] = None, dry_run: bool = False) -> Dict[str, Any]:
        """
        Pull payments from Xero.

        Existing payments (matched by Xero id) get their Xero fields refreshed
        and count as skipped; new ones are created and applied to their invoice.
        """
        result = EntitySyncResult(PAYMENT, "pull", str(uuid.uuid4()), dry_run=dry_run)
        warnings: List[Dict[str, Any]] = []
        where = None
        if modified_since is not None:
            where = (
                f"UpdatedDateUTC>=DateTime({modified_since.year},"
                f"{modified_since.month:02d},{modified_since.day:02d})"
            )

        session = self.session_factory()
        try:
            if not dry_run:
                result.log_id = audit.start_batch(session, result.correlation_id, PAYMENT, "pull", {}, self.user_id)

            for xero_payment in iter_pages(self.client.get_payments, where=where):
                payment_id = xero_payment.get("PaymentID")
                errors, payment_warnings = validate_xero_payment(xero_payment)
                if payment_warnings:
                    warnings.append({"entity_id": payment_id, "warnings": payment_warnings})
                if errors:
                    result.add_error(payment_id, "; ".join(errors), validation_errors=errors)
                    continue
                try:
                    self._pull_one(session, xero_payment, result, dry_run)
                    if not dry_run:
                        session.commit()
                except Exception as e:
                    session.rollback()
                    logger.exception(f"Failed to pull payment {payment_id}: {e}")
                    result.add_error(payment_id, str(e))

            prefix = "DRY RUN: " if dry_run else ""
            result.message = (
                f"{prefix}Pulled payments: {result.stats.created} created, {result.stats.skipped} existing, "
                f"{result.stats.errors} errors"
            )
            if not dry_run:
                audit.finish_batch(
                    session, result.log_id, "SUCCESS" if not result.errors else "ERROR",
                    processed=result.stats.processed,
                    succeeded=result.stats.created,
                    failed=result.stats.errors,
                    details={**result.stats.to_dict(), "warnings": len(warnings)},
                )
        finally:
            session.close()

        logger.info(result.message)
        summary = result.to_dict()
        summary["warnings"] = warnings
        return summary

    def _pull_one(self, session, xero_payment: Dict[str, Any], result: EntitySyncResult, dry_run: bool):
        payment_id = xero_payment["PaymentID"]
        xero_status = (xero_payment.get("Status") or "").upper()
        status = "FAILED" if xero_status in ("DELETED", "VOIDED") else "COMPLETED"
        account = xero_payment.get("Account") or {}

        existing = session.query(Payment).filter(Payment.xero_payment_id == payment_id).first()
        if existing is not None:
            if not dry_run:
                existing.status = status
                existing.xero_payment_type = xero_payment.get("PaymentType")
                existing.xero_bank_account_id = account.get("AccountID") or existing.xero_bank_account_id
                existing.xero_bank_account_code = account.get("Code") or existing.xero_bank_account_code
                existing.xero_currency_rate = xero_payment.get("CurrencyRate") or existing.xero_currency_rate
                existing.is_xero_synced = True
                existing.last_xero_sync = utcnow()
            result.stats.skipped += 1
            return

        xero_invoice = xero_payment.get("Invoice") or {}
        supplier_side = is_supplier_payment(xero_payment)
        invoice_model = SupplierInvoice if supplier_side else CustomerInvoice

        invoice = None
        if xero_invoice.get("InvoiceID"):
            invoice = session.query(invoice_model).filter(invoice_model.xero_invoice_id == xero_invoice["InvoiceID"]).first()
        if invoice is None and xero_invoice.get("InvoiceNumber"):
            invoice = session.query(invoice_model).filter(invoice_model.invoice_number == xero_invoice["InvoiceNumber"]).first()
        if invoice is None:
            result.add_error(
                payment_id,
                f"Invoice {xero_invoice.get('InvoiceNumber') or xero_invoice.get('InvoiceID')} not found locally",
            )
            return

        contact_id = (xero_invoice.get("Contact") or {}).get("ContactID")
        customer_id = supplier_id = None
        if supplier_side:
            supplier_id = invoice.supplier_id
            if supplier_id is None and contact_id:
                supplier = session.query(Supplier).filter(Supplier.xero_contact_id == contact_id).first()
                supplier_id = supplier.id if supplier else None
        else:
            customer_id = invoice.customer_id
            if customer_id is None and contact_id:
                customer = session.query(Customer).filter(Customer.xero_contact_id == contact_id).first()
                customer_id = customer.id if customer else None

        if dry_run:
            result.stats.created += 1
            return

        amount = money(xero_payment.get("Amount"))
        paid_on = parse_xero_date(xero_payment.get("Date"))
        payment = Payment(
            payment_number=next_payment_number(session),
            customer_invoice_id=None if supplier_side else invoice.id,
            supplier_invoice_id=invoice.id if supplier_side else None,
            customer_id=customer_id,
            supplier_id=supplier_id,
            amount=amount,
            currency=xero_invoice.get("CurrencyCode") or invoice.currency or self.config.default_currency,
            payment_method="BANK_TRANSFER",
            payment_date=paid_on,
            reference=xero_payment.get("Reference"),
            status=status,
            xero_payment_id=payment_id,
            xero_invoice_id=xero_invoice.get("InvoiceID"),
            xero_contact_id=contact_id,
            xero_payment_type=xero_payment.get("PaymentType"),
            xero_bank_account_id=account.get("AccountID"),
            xero_bank_account_code=account.get("Code"),
            xero_currency_rate=xero_payment.get("CurrencyRate"),
            is_xero_synced=True,
            last_xero_sync=utcnow(),
            created_by_id=self.user_id or resolve_system_user_id(session),
        )
        session.add(payment)
        session.flush()

        if status == "COMPLETED":
            if supplier_side:
                invoice.status = "PAID"
                invoice.paid_date = paid_on
            elif invoice.xero_invoice_id:
                settle_from_payments(session, invoice, paid_on)
            else:
                apply_payment_to_invoice(invoice, amount, paid_on)
            session.flush()

        data = {"amount": amount, "date": paid_on, "invoice": xero_invoice.get("InvoiceID")}
        save_sync_state(
            session, PAYMENT, payment.id, payment_id, data, calculate_hash(data), "remote",
            result.correlation_id, parse_xero_date(xero_payment.get("UpdatedDateUTC")),
        )
        audit.log_operation(
            session, result.correlation_id, PAYMENT, payment.id, "CREATE", "remote",
            xero_id=payment_id, after={"payment_number": payment.payment_number, "amount": amount, "status": status},
            change_hash=calculate_hash(data), user_id=self.user_id,
        )
        result.stats.created += 1
