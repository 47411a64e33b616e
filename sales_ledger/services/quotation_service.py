from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import and_, delete, func, select
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor
from sales_ledger.config import settings
from sales_ledger.errors import DependencyError, InvalidStateError, NotFoundError, ValidationError
from sales_ledger.models import (
    ApprovalLog,
    ApprovalStatus,
    DocumentType,
    PaymentInstallment,
    ProformaInvoice,
    Quotation,
    QuotationItem,
    QuotationStatus,
)
from sales_ledger.schemas import QuotationCreate, QuotationItemIn, QuotationUpdate
from sales_ledger.services.audit_service import list_for_document, log_transition
from sales_ledger.services.lead_provider import LeadInfo
from sales_ledger.services.money_service import (
    ZERO,
    DocumentTotals,
    LineAmounts,
    compute_document_totals,
    compute_line,
    discount_from_rate,
    require_match,
    to_money,
)
from sales_ledger.services.notification_dispatchers import Notification
from sales_ledger.services.notification_service import queue_notification
from sales_ledger.services.numbering_service import next_quotation_number
from sales_ledger.services.provider_factory import get_lead_provider

EDITABLE_STATUSES = {QuotationStatus.DRAFT, QuotationStatus.PENDING, QuotationStatus.REJECTED}
BILLABLE_STATUSES = {
    QuotationStatus.APPROVED,
    QuotationStatus.SENT,
    QuotationStatus.ACCEPTED,
    QuotationStatus.COMPLETED,
}
COMPLETABLE_STATUSES = {QuotationStatus.APPROVED, QuotationStatus.SENT, QuotationStatus.ACCEPTED}

# Quotation header field -> lead attribute used when the caller leaves it blank.
LEAD_FIELD_MAP = {
    'customer_name': 'name',
    'customer_business': 'business',
    'customer_phone': 'phone',
    'customer_email': 'email',
    'customer_address': 'address',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_quotation(db: Session, quotation_id: int, *, lock: bool = False) -> Quotation:
    stmt = select(Quotation).where(Quotation.id == quotation_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    quotation = db.execute(stmt).scalar_one_or_none()
    if not quotation:
        raise NotFoundError('Quotation', quotation_id)
    return quotation


def list_items(db: Session, quotation_id: int) -> list[QuotationItem]:
    return db.execute(
        select(QuotationItem)
        .where(QuotationItem.quotation_id == quotation_id)
        .order_by(QuotationItem.item_order.asc(), QuotationItem.id.asc())
    ).scalars().all()


def get_quotation_with_items(db: Session, quotation_id: int) -> tuple[Quotation, list[QuotationItem]]:
    quotation = get_quotation(db, quotation_id)
    return quotation, list_items(db, quotation_id)


def list_quotations(
    db: Session,
    *,
    status: QuotationStatus | None = None,
    customer_id: int | None = None,
    created_by: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Quotation]:
    stmt = select(Quotation)
    if status is not None:
        stmt = stmt.where(Quotation.status == status)
    if customer_id is not None:
        stmt = stmt.where(Quotation.customer_id == customer_id)
    if created_by:
        stmt = stmt.where(Quotation.created_by == created_by)
    stmt = stmt.order_by(Quotation.id.desc()).limit(limit).offset(offset)
    return db.execute(stmt).scalars().all()


def get_complete_data(db: Session, quotation_id: int) -> dict:
    quotation, items = get_quotation_with_items(db, quotation_id)
    logs: list[ApprovalLog] = list_for_document(
        db,
        document_type=DocumentType.QUOTATION,
        document_id=quotation_id,
    )
    proforma_invoices = db.execute(
        select(ProformaInvoice).where(ProformaInvoice.quotation_id == quotation_id).order_by(ProformaInvoice.id.asc())
    ).scalars().all()
    payments = db.execute(
        select(PaymentInstallment)
        .where(PaymentInstallment.quotation_id == quotation_id)
        .order_by(PaymentInstallment.installment_number.asc())
    ).scalars().all()
    return {
        'quotation': quotation,
        'items': items,
        'approval_logs': logs,
        'proforma_invoices': proforma_invoices,
        'payments': payments,
    }


def counted_installments():
    """Rows that count towards a quotation's paid amount."""
    return and_(
        PaymentInstallment.approval_status == ApprovalStatus.APPROVED,
        PaymentInstallment.is_refund.is_(False),
    )


def paid_so_far(db: Session, quotation_id: int) -> Decimal:
    total = db.execute(
        select(func.coalesce(func.sum(PaymentInstallment.applied_amount), 0)).where(
            PaymentInstallment.quotation_id == quotation_id,
            counted_installments(),
        )
    ).scalar_one()
    return to_money(total)


def lookup_lead(customer_id: int) -> LeadInfo | None:
    try:
        return get_lead_provider().get_lead_or_null(customer_id)
    except DependencyError as exc:
        logger.warning(f'Lead lookup for customer {customer_id} failed: {exc.message}')
        return None


def _fill_customer_fields(quotation: Quotation, lead: LeadInfo | None) -> None:
    if not lead:
        return
    for field_name, lead_attr in LEAD_FIELD_MAP.items():
        if not getattr(quotation, field_name):
            setattr(quotation, field_name, getattr(lead, lead_attr))


def _price_items(items: list[QuotationItemIn]) -> list[tuple[QuotationItemIn, Decimal, LineAmounts]]:
    priced = []
    for index, item in enumerate(items):
        tax_rate = item.tax_rate if item.tax_rate is not None else Decimal(str(settings.default_tax_rate))
        line = compute_line(item.quantity, to_money(item.unit_price, field='unit_price'), tax_rate)
        require_match(f'items[{index}].taxable_amount', item.taxable_amount, line.taxable_amount)
        require_match(f'items[{index}].tax_amount', item.tax_amount, line.tax_amount)
        require_match(f'items[{index}].total_amount', item.total_amount, line.total_amount)
        priced.append((item, tax_rate, line))
    return priced


def _compute_totals(
    priced: list[tuple[QuotationItemIn, Decimal, LineAmounts]],
    *,
    discount_amount: Decimal | None,
    discount_rate: Decimal | None,
    supplied: QuotationCreate | QuotationUpdate,
) -> tuple[DocumentTotals, Decimal]:
    lines = [line for _, _, line in priced]
    subtotal = sum((line.taxable_amount for line in lines), ZERO)
    rate = discount_rate if discount_rate is not None else ZERO
    if discount_amount is not None:
        discount = to_money(discount_amount, field='discount_amount')
    else:
        discount = discount_from_rate(subtotal, rate)

    totals = compute_document_totals(lines, discount_amount=discount)
    require_match('subtotal', supplied.subtotal, totals.subtotal)
    require_match('tax_amount', supplied.tax_amount, totals.tax_amount)
    require_match('total_amount', supplied.total_amount, totals.total_amount)
    return totals, rate


def _insert_items(db: Session, quotation_id: int, priced: list[tuple[QuotationItemIn, Decimal, LineAmounts]]) -> None:
    for order, (item, tax_rate, line) in enumerate(priced, start=1):
        db.add(
            QuotationItem(
                quotation_id=quotation_id,
                item_order=order,
                product_name=item.product_name.strip(),
                description=item.description,
                hsn_code=item.hsn_code,
                quantity=item.quantity,
                unit=item.unit or 'Nos',
                unit_price=to_money(item.unit_price),
                tax_rate=tax_rate,
                taxable_amount=line.taxable_amount,
                tax_amount=line.tax_amount,
                total_amount=line.total_amount,
            )
        )


def _apply_totals(quotation: Quotation, totals: DocumentTotals, discount_rate: Decimal) -> None:
    quotation.subtotal = totals.subtotal
    quotation.tax_amount = totals.tax_amount
    quotation.discount_rate = discount_rate
    quotation.discount_amount = totals.discount_amount
    quotation.total_amount = totals.total_amount


def create_quotation(db: Session, *, actor: Actor, data: QuotationCreate) -> Quotation:
    priced = _price_items(data.items)
    totals, discount_rate = _compute_totals(
        priced,
        discount_amount=data.discount_amount,
        discount_rate=data.discount_rate,
        supplied=data,
    )

    quotation_date = data.quotation_date or date.today()
    valid_until = data.valid_until or quotation_date + timedelta(days=settings.quotation_validity_days)
    if valid_until < quotation_date:
        raise ValidationError('valid_until cannot be before quotation_date')

    quotation = Quotation(
        quotation_number=next_quotation_number(db),
        customer_id=data.customer_id,
        salesperson_id=actor.user_id,
        created_by=actor.email,
        customer_name=data.customer_name,
        customer_business=data.customer_business,
        customer_phone=data.customer_phone,
        customer_email=data.customer_email,
        customer_address=data.customer_address,
        customer_gst_no=data.customer_gst_no,
        customer_state=data.customer_state,
        quotation_date=quotation_date,
        valid_until=valid_until,
        status=QuotationStatus.DRAFT,
    )
    _apply_totals(quotation, totals, discount_rate)
    _fill_customer_fields(quotation, lookup_lead(data.customer_id))
    db.add(quotation)
    db.flush()

    _insert_items(db, quotation.id, priced)
    log_transition(
        db,
        document_type=DocumentType.QUOTATION,
        document_id=quotation.id,
        action='created',
        actor=actor,
        to_status=QuotationStatus.DRAFT,
        metadata={'total_amount': str(totals.total_amount), 'item_count': len(priced)},
    )
    db.flush()
    logger.info(f'Quotation {quotation.quotation_number} created by {actor.email} for {totals.total_amount}')
    return quotation


def update_quotation(db: Session, *, quotation_id: int, actor: Actor, data: QuotationUpdate) -> Quotation:
    quotation = get_quotation(db, quotation_id, lock=True)
    if quotation.status not in EDITABLE_STATUSES:
        raise InvalidStateError(
            f'Quotation in status {quotation.status.value} cannot be edited',
            details={'status': quotation.status.value},
        )

    priced = _price_items(data.items)
    discount_rate = data.discount_rate
    if data.discount_amount is None and discount_rate is None:
        discount_rate = quotation.discount_rate
    totals, discount_rate = _compute_totals(
        priced,
        discount_amount=data.discount_amount,
        discount_rate=discount_rate,
        supplied=data,
    )

    for field_name in (
        'customer_name',
        'customer_business',
        'customer_phone',
        'customer_email',
        'customer_address',
        'customer_gst_no',
        'customer_state',
        'quotation_date',
        'valid_until',
    ):
        value = getattr(data, field_name)
        if value is not None:
            setattr(quotation, field_name, value)
    if quotation.valid_until and quotation.valid_until < quotation.quotation_date:
        raise ValidationError('valid_until cannot be before quotation_date')

    db.execute(delete(QuotationItem).where(QuotationItem.quotation_id == quotation.id))
    _insert_items(db, quotation.id, priced)
    _apply_totals(quotation, totals, discount_rate)
    quotation.updated_by = actor.email
    quotation.updated_at = _now()

    log_transition(
        db,
        document_type=DocumentType.QUOTATION,
        document_id=quotation.id,
        action='updated',
        actor=actor,
        from_status=quotation.status,
        to_status=quotation.status,
        metadata={'total_amount': str(totals.total_amount), 'item_count': len(priced)},
    )
    db.flush()
    logger.info(f'Quotation {quotation.quotation_number} updated by {actor.email}')
    return quotation


def _require_status(quotation: Quotation, allowed: set[QuotationStatus], action: str) -> None:
    if quotation.status not in allowed:
        raise InvalidStateError(
            f'Cannot {action} quotation in status {quotation.status.value}',
            details={'status': quotation.status.value, 'allowed': sorted(s.value for s in allowed)},
        )


def _transition(
    db: Session,
    quotation: Quotation,
    *,
    to_status: QuotationStatus,
    action: str,
    actor: Actor,
    notes: str | None = None,
    metadata: dict | None = None,
) -> None:
    from_status = quotation.status
    quotation.status = to_status
    quotation.updated_by = actor.email
    quotation.updated_at = _now()
    log_transition(
        db,
        document_type=DocumentType.QUOTATION,
        document_id=quotation.id,
        action=action,
        actor=actor,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        metadata=metadata,
    )
    db.flush()
    logger.info(f'Quotation {quotation.quotation_number} {action} by {actor.email}: {from_status.value} -> {to_status.value}')


def submit_for_verification(db: Session, *, quotation_id: int, actor: Actor, notes: str | None = None) -> Quotation:
    quotation = get_quotation(db, quotation_id, lock=True)
    _require_status(quotation, {QuotationStatus.DRAFT, QuotationStatus.REJECTED}, 'submit')
    quotation.submitted_for_verification_at = _now()
    _transition(db, quotation, to_status=QuotationStatus.PENDING, action='submitted', actor=actor, notes=notes)
    queue_notification(
        db,
        Notification(
            type='quotation_submitted',
            title='Quotation awaiting verification',
            message=f'Quotation {quotation.quotation_number} was submitted by {actor.email}',
            reference_id=quotation.id,
        ),
        customer_id=quotation.customer_id,
    )
    return quotation


def approve_quotation(db: Session, *, quotation_id: int, actor: Actor, notes: str | None = None) -> Quotation:
    quotation = get_quotation(db, quotation_id, lock=True)
    _require_status(quotation, {QuotationStatus.PENDING}, 'approve')
    quotation.approved_at = _now()
    quotation.verification_notes = notes
    _transition(db, quotation, to_status=QuotationStatus.APPROVED, action='approved', actor=actor, notes=notes)
    queue_notification(
        db,
        Notification(
            type='quotation_approved',
            title='Quotation approved',
            message=f'Quotation {quotation.quotation_number} was approved',
            reference_id=quotation.id,
        ),
        recipients=[quotation.created_by],
    )
    return quotation


def reject_quotation(db: Session, *, quotation_id: int, actor: Actor, notes: str | None = None) -> Quotation:
    quotation = get_quotation(db, quotation_id, lock=True)
    _require_status(quotation, {QuotationStatus.PENDING}, 'reject')
    quotation.rejected_at = _now()
    quotation.verification_notes = notes
    _transition(db, quotation, to_status=QuotationStatus.REJECTED, action='rejected', actor=actor, notes=notes)
    queue_notification(
        db,
        Notification(
            type='quotation_rejected',
            title='Quotation rejected',
            message=f'Quotation {quotation.quotation_number} was rejected: {notes or "no reason given"}',
            reference_id=quotation.id,
        ),
        recipients=[quotation.created_by],
    )
    return quotation


def send_to_customer(
    db: Session,
    *,
    quotation_id: int,
    actor: Actor,
    sent_to: str | None = None,
    sent_via: str = 'email',
) -> Quotation:
    quotation = get_quotation(db, quotation_id, lock=True)
    _require_status(quotation, {QuotationStatus.APPROVED}, 'send')
    quotation.sent_to = sent_to or quotation.customer_email
    quotation.sent_via = sent_via or 'email'
    quotation.sent_to_customer_at = _now()
    _transition(
        db,
        quotation,
        to_status=QuotationStatus.SENT,
        action='sent',
        actor=actor,
        metadata={'sent_to': quotation.sent_to, 'sent_via': quotation.sent_via},
    )
    return quotation


def accept_by_customer(db: Session, *, quotation_id: int, actor: Actor, accepted_by: str | None = None) -> Quotation:
    quotation = get_quotation(db, quotation_id, lock=True)
    _require_status(quotation, {QuotationStatus.SENT}, 'accept')
    quotation.customer_accepted_by = accepted_by or quotation.customer_name
    quotation.customer_accepted_at = _now()
    _transition(db, quotation, to_status=QuotationStatus.ACCEPTED, action='accepted', actor=actor)
    queue_notification(
        db,
        Notification(
            type='quotation_accepted',
            title='Quotation accepted by customer',
            message=f'Quotation {quotation.quotation_number} was accepted',
            reference_id=quotation.id,
        ),
        recipients=[quotation.created_by],
        customer_id=quotation.customer_id,
    )
    return quotation


def mark_completed(db: Session, *, quotation: Quotation, actor: Actor, notes: str | None = None) -> bool:
    """Move a fully paid quotation to completed. Returns False when it already was."""
    if quotation.status == QuotationStatus.COMPLETED:
        return False
    _require_status(quotation, COMPLETABLE_STATUSES, 'complete')
    quotation.completed_at = _now()
    _transition(db, quotation, to_status=QuotationStatus.COMPLETED, action='completed', actor=actor, notes=notes)
    queue_notification(
        db,
        Notification(
            type='quotation_completed',
            title='Quotation fully paid',
            message=f'Quotation {quotation.quotation_number} is fully paid and completed',
            reference_id=quotation.id,
        ),
        recipients=[quotation.created_by],
        customer_id=quotation.customer_id,
    )
    return True


def delete_quotation(db: Session, *, quotation_id: int, actor: Actor) -> None:
    quotation = get_quotation(db, quotation_id, lock=True)
    _require_status(quotation, {QuotationStatus.DRAFT}, 'delete')
    db.execute(delete(QuotationItem).where(QuotationItem.quotation_id == quotation.id))
    log_transition(
        db,
        document_type=DocumentType.QUOTATION,
        document_id=quotation.id,
        action='deleted',
        actor=actor,
        from_status=quotation.status,
        metadata={'quotation_number': quotation.quotation_number},
    )
    db.delete(quotation)
    db.flush()
    logger.info(f'Quotation {quotation.quotation_number} deleted by {actor.email}')
