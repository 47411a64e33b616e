from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
Identity = BigInteger().with_variant(Integer, 'sqlite')
Money = Numeric(15, 2)


class Base(DeclarativeBase):
    pass


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=lambda members: [member.value for member in members])


class QuotationStatus(str, Enum):
    DRAFT = 'draft'
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    SENT = 'sent'
    ACCEPTED = 'accepted'
    COMPLETED = 'completed'


class PIStatus(str, Enum):
    DRAFT = 'draft'
    PENDING_APPROVAL = 'pending_approval'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    SUPERSEDED = 'superseded'


class ApprovalStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class DocumentType(str, Enum):
    QUOTATION = 'quotation'
    PROFORMA_INVOICE = 'proforma_invoice'
    PAYMENT = 'payment'


class Quotation(Base):
    __tablename__ = 'quotations'
    __table_args__ = (
        CheckConstraint('total_amount >= 0', name='quotations_total_non_negative_ck'),
        Index('ix_quotations_customer', 'customer_id'),
        Index('ix_quotations_status', 'status'),
    )

    id: Mapped[int] = mapped_column(Identity, primary_key=True)
    quotation_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    salesperson_id: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(Text)
    customer_name: Mapped[str | None] = mapped_column(Text)
    customer_business: Mapped[str | None] = mapped_column(Text)
    customer_phone: Mapped[str | None] = mapped_column(Text)
    customer_email: Mapped[str | None] = mapped_column(Text)
    customer_address: Mapped[str | None] = mapped_column(Text)
    customer_gst_no: Mapped[str | None] = mapped_column(Text)
    customer_state: Mapped[str | None] = mapped_column(Text)
    quotation_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date | None] = mapped_column(Date)
    status: Mapped[QuotationStatus] = mapped_column(
        _enum(QuotationStatus, 'quotation_status'),
        nullable=False,
        default=QuotationStatus.DRAFT,
        server_default='draft',
    )
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    discount_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal('0.00'))
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    verification_notes: Mapped[str | None] = mapped_column(Text)
    sent_to: Mapped[str | None] = mapped_column(Text)
    sent_via: Mapped[str | None] = mapped_column(String(32))
    customer_accepted_by: Mapped[str | None] = mapped_column(Text)
    submitted_for_verification_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sent_to_customer_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    customer_accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class QuotationItem(Base):
    __tablename__ = 'quotation_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='quotation_items_quantity_positive_ck'),
        Index('ix_quotation_items_quotation', 'quotation_id', 'item_order'),
    )

    id: Mapped[int] = mapped_column(Identity, primary_key=True)
    quotation_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('quotations.id', ondelete='CASCADE'), nullable=False)
    item_order: Mapped[int] = mapped_column(Integer, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    hsn_code: Mapped[str | None] = mapped_column(String(32))
    quantity: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default='Nos', server_default='Nos')
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    taxable_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)


class ProformaInvoice(Base):
    __tablename__ = 'proforma_invoices'
    __table_args__ = (
        UniqueConstraint('parent_pi_id', 'revision_no', name='proforma_invoices_parent_revision_uq'),
        CheckConstraint('total_amount >= 0', name='proforma_invoices_total_non_negative_ck'),
        Index(
            'ux_proforma_invoices_active_per_quotation',
            'quotation_id',
            unique=True,
            postgresql_where=text("status = 'approved'"),
            sqlite_where=text("status = 'approved'"),
        ),
        Index('ix_proforma_invoices_quotation', 'quotation_id'),
    )

    id: Mapped[int] = mapped_column(Identity, primary_key=True)
    pi_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    quotation_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('quotations.id'), nullable=False)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    parent_pi_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('proforma_invoices.id'))
    revision_no: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    amendment_detail: Mapped[dict | None] = mapped_column(JSON)
    status: Mapped[PIStatus] = mapped_column(
        _enum(PIStatus, 'pi_status'),
        nullable=False,
        default=PIStatus.DRAFT,
        server_default='draft',
    )
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    pi_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date | None] = mapped_column(Date)
    template: Mapped[str] = mapped_column(String(32), nullable=False, default='template1', server_default='template1')
    dispatch_mode: Mapped[str | None] = mapped_column(Text)
    transport_name: Mapped[str | None] = mapped_column(Text)
    vehicle_number: Mapped[str | None] = mapped_column(Text)
    transport_id: Mapped[str | None] = mapped_column(Text)
    lr_no: Mapped[str | None] = mapped_column(Text)
    courier_name: Mapped[str | None] = mapped_column(Text)
    consignment_no: Mapped[str | None] = mapped_column(Text)
    by_hand: Mapped[str | None] = mapped_column(Text)
    post_service: Mapped[str | None] = mapped_column(Text)
    carrier_name: Mapped[str | None] = mapped_column(Text)
    carrier_number: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(Text)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by: Mapped[str | None] = mapped_column(Text)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    superseded_by_pi_id: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def is_revision(self) -> bool:
        return self.parent_pi_id is not None


class PaymentInstallment(Base):
    __tablename__ = 'payment_installments'
    __table_args__ = (
        CheckConstraint('installment_amount > 0', name='payment_installments_amount_positive_ck'),
        CheckConstraint('applied_amount >= 0 AND overpaid_amount >= 0', name='payment_installments_split_ck'),
        Index('ix_payment_installments_quotation', 'quotation_id', 'installment_number'),
        Index('ix_payment_installments_customer', 'customer_id'),
    )

    id: Mapped[int] = mapped_column(Identity, primary_key=True)
    quotation_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('quotations.id'))
    lead_id: Mapped[int | None] = mapped_column(BigInteger)
    pi_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('proforma_invoices.id'))
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    customer_name: Mapped[str | None] = mapped_column(Text)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False)
    installment_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    applied_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    overpaid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    total_payable_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    paid_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    remaining_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    available_credit: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'))
    payment_method: Mapped[str | None] = mapped_column(String(32))
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_reference: Mapped[str] = mapped_column(Text, nullable=False)
    receipt_url: Mapped[str | None] = mapped_column(Text)
    remarks: Mapped[str | None] = mapped_column(Text)
    approval_status: Mapped[ApprovalStatus] = mapped_column(
        _enum(ApprovalStatus, 'approval_status'),
        nullable=False,
        default=ApprovalStatus.PENDING,
        server_default='pending',
    )
    approval_action_by: Mapped[str | None] = mapped_column(Text)
    approval_notes: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_refund: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_by: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CustomerCredit(Base):
    __tablename__ = 'customer_credits'

    id: Mapped[int] = mapped_column(Identity, primary_key=True)
    customer_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0.00'), server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ApprovalLog(Base):
    __tablename__ = 'approval_logs'
    __table_args__ = (Index('ix_approval_logs_document', 'document_type', 'document_id'),)

    id: Mapped[int] = mapped_column(Identity, primary_key=True)
    document_type: Mapped[DocumentType] = mapped_column(_enum(DocumentType, 'document_type'), nullable=False)
    document_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(32))
    to_status: Mapped[str | None] = mapped_column(String(32))
    performed_by: Mapped[str] = mapped_column(Text, nullable=False)
    performed_by_type: Mapped[str] = mapped_column(String(32), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DocumentSequence(Base):
    __tablename__ = 'document_sequences'

    prefix: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
