import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, JSON, Text, UniqueConstraint, Boolean

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    role = Column(String(50), default='STAFF')  # SUPERADMIN, ADMIN, STAFF
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class ContactColumns:
    """Columns shared by customers and suppliers, including their Xero link."""
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    phone = Column(String(100))
    address = Column(Text)
    city = Column(String(100))
    state = Column(String(100))
    country = Column(String(100), default='Singapore')
    postal_code = Column(String(20))
    contact_person = Column(String(255))
    company_reg = Column(String(100))
    website = Column(String(255))
    notes = Column(Text)
    is_active = Column(Boolean, default=True)

    # Xero link
    xero_contact_id = Column(String(64), unique=True, index=True)
    xero_tax_number = Column(String(100))
    xero_ar_tax_type = Column(String(50))
    xero_ap_tax_type = Column(String(50))
    xero_default_currency = Column(String(3))
    xero_contact_status = Column(String(20))
    xero_updated_at = Column(DateTime)
    is_xero_synced = Column(Boolean, default=False)
    last_xero_sync = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Customer(ContactColumns, Base):
    __tablename__ = "customers"
    id = Column(String(36), primary_key=True, default=new_id)
    customer_number = Column(String(50), unique=True)
    customer_type = Column(String(50), default='COMPANY')  # COMPANY, INDIVIDUAL, GOVERNMENT
    created_by_id = Column(String(36), ForeignKey("users.id"))

    invoices = relationship("CustomerInvoice", back_populates="customer")


class Supplier(ContactColumns, Base):
    __tablename__ = "suppliers"
    id = Column(String(36), primary_key=True, default=new_id)
    supplier_number = Column(String(50), unique=True)
    supplier_type = Column(String(50), default='SUPPLIER')  # SUPPLIER, SUBCONTRACTOR, CONSULTANT
    created_by_id = Column(String(36), ForeignKey("users.id"))

    invoices = relationship("SupplierInvoice", back_populates="supplier")


class CustomerInvoice(Base):
    __tablename__ = "customer_invoices"
    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(String(100), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    project_id = Column(String(36))
    quotation_id = Column(String(36))
    description = Column(Text)
    notes = Column(Text)
    currency = Column(String(3), default='SGD')
    status = Column(String(20), default='DRAFT')  # DRAFT, SENT, PARTIALLY_PAID, PAID, OVERDUE, CANCELLED
    issue_date = Column(DateTime)
    due_date = Column(DateTime)
    paid_date = Column(DateTime)
    subtotal = Column(Numeric(14, 2), default=0)
    tax_amount = Column(Numeric(14, 2), default=0)
    total_amount = Column(Numeric(14, 2), default=0)
    amount_due = Column(Numeric(14, 2), default=0)
    amount_paid = Column(Numeric(14, 2), default=0)

    xero_invoice_id = Column(String(64), unique=True, index=True)
    is_xero_synced = Column(Boolean, default=False)
    last_xero_sync = Column(DateTime)

    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('invoice_number', 'customer_id', name='uq_invoice_number_customer'),
    )

    customer = relationship("Customer", back_populates="invoices")
    items = relationship(
        "CustomerInvoiceItem",
        back_populates="invoice",
        order_by="CustomerInvoiceItem.order",
        cascade="all, delete-orphan",
    )


class CustomerInvoiceItem(Base):
    __tablename__ = "customer_invoice_items"
    id = Column(String(36), primary_key=True, default=new_id)
    customer_invoice_id = Column(String(36), ForeignKey("customer_invoices.id"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    quantity = Column(Numeric(14, 4), default=1)
    unit_price = Column(Numeric(14, 2), default=0)
    tax_rate = Column(Numeric(7, 4), default=0)
    tax_type = Column(String(50))
    account_code = Column(String(20))
    subtotal = Column(Numeric(14, 2), default=0)
    tax_amount = Column(Numeric(14, 2), default=0)
    total_price = Column(Numeric(14, 2), default=0)
    # Local only
    notes = Column(Text)
    category = Column(String(50))
    unit = Column(String(20))
    order = Column(Integer, default=0)

    invoice = relationship("CustomerInvoice", back_populates="items")


class SupplierInvoice(Base):
    __tablename__ = "supplier_invoices"
    id = Column(String(36), primary_key=True, default=new_id)
    invoice_number = Column(String(100), nullable=False, index=True)
    supplier_id = Column(String(36), ForeignKey("suppliers.id"), nullable=False, index=True)
    project_id = Column(String(36))
    description = Column(Text)
    notes = Column(Text)
    currency = Column(String(3), default='SGD')
    status = Column(String(20), default='RECEIVED')  # DRAFT, RECEIVED, APPROVED, PAID, REJECTED
    invoice_date = Column(DateTime)
    due_date = Column(DateTime)
    paid_date = Column(DateTime)
    subtotal = Column(Numeric(14, 2), default=0)
    tax_amount = Column(Numeric(14, 2), default=0)
    total_amount = Column(Numeric(14, 2), default=0)

    xero_invoice_id = Column(String(64), unique=True, index=True)
    is_xero_synced = Column(Boolean, default=False)
    last_xero_sync = Column(DateTime)

    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    supplier = relationship("Supplier", back_populates="invoices")


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String(36), primary_key=True, default=new_id)
    payment_number = Column(String(20), unique=True, nullable=False)
    customer_invoice_id = Column(String(36), ForeignKey("customer_invoices.id"), index=True)
    supplier_invoice_id = Column(String(36), ForeignKey("supplier_invoices.id"), index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"))
    supplier_id = Column(String(36), ForeignKey("suppliers.id"))
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), default='SGD')
    payment_method = Column(String(30), default='BANK_TRANSFER')  # BANK_TRANSFER, CHEQUE, CASH, CREDIT_CARD, OTHER
    payment_date = Column(DateTime, nullable=False)
    reference = Column(String(255))
    notes = Column(Text)
    status = Column(String(20), default='PENDING')  # PENDING, COMPLETED, FAILED

    xero_payment_id = Column(String(64), unique=True, index=True)
    xero_invoice_id = Column(String(64))
    xero_contact_id = Column(String(64))
    xero_payment_type = Column(String(40))
    xero_bank_account_id = Column(String(64))
    xero_bank_account_code = Column(String(20))
    xero_currency_rate = Column(Numeric(14, 6))
    is_xero_synced = Column(Boolean, default=False)
    last_xero_sync = Column(DateTime)

    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    customer_invoice = relationship("CustomerInvoice")
    supplier_invoice = relationship("SupplierInvoice")


class XeroIntegration(Base):
    __tablename__ = "xero_integrations"
    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), unique=True, nullable=False)
    tenant_name = Column(String(255))
    tenant_type = Column(String(50))
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    scopes = Column(JSON, default=list)
    is_active = Column(Boolean, default=True, index=True)
    connected_at = Column(DateTime, default=utcnow)
    last_sync_at = Column(DateTime)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class XeroSyncState(Base):
    """Last agreed-upon hashes for one local record and its Xero twin."""
    __tablename__ = "xero_sync_states"
    id = Column(String(36), primary_key=True, default=new_id)
    entity_type = Column(String(30), nullable=False)  # CUSTOMER, SUPPLIER, CUSTOMER_INVOICE, SUPPLIER_INVOICE, PAYMENT
    entity_id = Column(String(36), nullable=False)
    xero_id = Column(String(64), index=True)
    last_local_hash = Column(String(32))
    last_remote_hash = Column(String(32))
    last_synced_at = Column(DateTime)
    last_local_modified = Column(DateTime)
    last_remote_modified = Column(DateTime)
    sync_origin = Column(String(10))  # local, remote
    correlation_id = Column(String(36))
    status = Column(String(20), default='ACTIVE', index=True)  # ACTIVE, CONFLICT
    conflict_data = Column(JSON)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('entity_type', 'entity_id', name='uq_sync_state_entity'),
    )


class XeroSyncLog(Base):
    __tablename__ = "xero_sync_logs"
    id = Column(String(36), primary_key=True, default=new_id)
    correlation_id = Column(String(36), index=True)
    entity_type = Column(String(30), nullable=False, index=True)
    entity_id = Column(String(64))
    xero_id = Column(String(64))
    operation = Column(String(30), nullable=False)  # SYNC, CREATE, UPDATE, CONFLICT, CONFLICT_RESOLVED
    direction = Column(String(10))  # pull, push, both
    sync_origin = Column(String(10))
    before_snapshot = Column(JSON)
    after_snapshot = Column(JSON)
    change_hash = Column(String(32))
    status = Column(String(20), nullable=False, index=True)  # START, SUCCESS, ERROR, WARNING
    error_message = Column(Text)
    details = Column(JSON)
    records_processed = Column(Integer, default=0)
    records_succeeded = Column(Integer, default=0)
    records_failed = Column(Integer, default=0)
    user_id = Column(String(36))
    timestamp = Column(DateTime, default=utcnow, index=True)
    completed_at = Column(DateTime)
