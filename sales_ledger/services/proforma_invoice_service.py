from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor
from sales_ledger.config import settings
from sales_ledger.errors import (
    ConcurrencyConflictError,
    ImmutableDocumentError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from sales_ledger.models import DocumentType, PIStatus, ProformaInvoice, Quotation, QuotationItem
from sales_ledger.schemas import PICreate, PIRevisionCreate, PIUpdate
from sales_ledger.services.audit_service import log_transition
from sales_ledger.services.money_service import (
    ZERO,
    LineAmounts,
    amounts_match,
    require_match,
    scale_line,
    to_money,
)
from sales_ledger.services.notification_dispatchers import Notification
from sales_ledger.services.notification_service import queue_notification
from sales_ledger.services.numbering_service import next_pi_number
from sales_ledger.services.quotation_service import BILLABLE_STATUSES, get_quotation, list_items, paid_so_far

OPEN_STATUSES = {PIStatus.DRAFT, PIStatus.PENDING_APPROVAL}
LOCKED_STATUSES = {PIStatus.APPROVED, PIStatus.SUPERSEDED}

DISPATCH_FIELDS = (
    'dispatch_mode',
    'transport_name',
    'vehicle_number',
    'transport_id',
    'lr_no',
    'courier_name',
    'consignment_no',
    'by_hand',
    'post_service',
    'carrier_name',
    'carrier_number',
)
CLONED_FIELDS = DISPATCH_FIELDS + ('pi_date', 'valid_until', 'template')


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_pi(db: Session, pi_id: int, *, lock: bool = False) -> ProformaInvoice:
    stmt = select(ProformaInvoice).where(ProformaInvoice.id == pi_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    pi = db.execute(stmt).scalar_one_or_none()
    if not pi:
        raise NotFoundError('Proforma invoice', pi_id)
    return pi


def list_for_quotation(db: Session, quotation_id: int) -> list[ProformaInvoice]:
    get_quotation(db, quotation_id)
    return db.execute(
        select(ProformaInvoice)
        .where(ProformaInvoice.quotation_id == quotation_id)
        .order_by(ProformaInvoice.id.asc())
    ).scalars().all()


def get_active_pi(db: Session, quotation_id: int) -> ProformaInvoice | None:
    rows = db.execute(
        select(ProformaInvoice).where(
            ProformaInvoice.quotation_id == quotation_id,
            ProformaInvoice.status == PIStatus.APPROVED,
        )
    ).scalars().all()
    if len(rows) > 1:
        logger.error(f'Quotation {quotation_id} has {len(rows)} approved proforma invoices')
        raise ConcurrencyConflictError(
            f'Quotation {quotation_id} has more than one active proforma invoice',
            details={'pi_ids': [row.id for row in rows]},
        )
    return rows[0] if rows else None


def revision_chain(db: Session, pi_id: int) -> list[ProformaInvoice]:
    """Return the PI lineage ordered root first."""
    chain: list[ProformaInvoice] = []
    seen: set[int] = set()
    current: ProformaInvoice | None = get_pi(db, pi_id)
    while current is not None:
        if current.id in seen:
            raise ConcurrencyConflictError(f'Proforma invoice {pi_id} has a cyclic revision chain')
        seen.add(current.id)
        chain.append(current)
        current = get_pi(db, current.parent_pi_id) if current.parent_pi_id else None
    chain.reverse()
    return chain


# ----- amendment replay -----


def _amendment_state(pi: ProformaInvoice | None) -> tuple[set[int], dict[int, Decimal]]:
    detail = (pi.amendment_detail if pi else None) or {}
    removed = {int(item_id) for item_id in detail.get('removed_item_ids', [])}
    reduced = {int(item_id): Decimal(str(quantity)) for item_id, quantity in detail.get('reduced_items', {}).items()}
    return removed, reduced


def _replay(items: list[QuotationItem], removed: set[int], reduced: dict[int, Decimal]) -> list[dict]:
    effective = []
    for item in items:
        if item.id in removed:
            continue
        line = LineAmounts(
            taxable_amount=to_money(item.taxable_amount),
            tax_amount=to_money(item.tax_amount),
            total_amount=to_money(item.total_amount),
        )
        quantity = item.quantity
        if item.id in reduced:
            quantity = reduced[item.id]
            line = scale_line(line, original_quantity=item.quantity, new_quantity=quantity)
        effective.append(
            {
                'item_id': item.id,
                'product_name': item.product_name,
                'quantity': quantity,
                'original_quantity': item.quantity,
                'unit_price': item.unit_price,
                'tax_rate': item.tax_rate,
                'taxable_amount': line.taxable_amount,
                'tax_amount': line.tax_amount,
                'total_amount': line.total_amount,
                'reduced': item.id in reduced,
            }
        )
    return effective


def effective_items(db: Session, pi: ProformaInvoice) -> list[dict]:
    removed, reduced = _amendment_state(pi)
    return _replay(list_items(db, pi.quotation_id), removed, reduced)


def _effective_totals(quotation: Quotation, effective: list[dict]) -> dict[str, Decimal]:
    subtotal = sum((row['taxable_amount'] for row in effective), ZERO)
    tax_amount = sum((row['tax_amount'] for row in effective), ZERO)
    discount = ZERO
    quotation_subtotal = to_money(quotation.subtotal)
    if quotation_subtotal > 0:
        discount = to_money(to_money(quotation.discount_amount) * subtotal / quotation_subtotal)
    return {
        'subtotal': subtotal,
        'tax_amount': tax_amount,
        'discount_amount': discount,
        'total_amount': subtotal + tax_amount - discount,
    }


# ----- creation -----


def _snapshot_totals(quotation: Quotation, data: PICreate) -> dict[str, Decimal]:
    quotation_total = to_money(quotation.total_amount)
    subtotal = to_money(data.subtotal if data.subtotal is not None else quotation.subtotal, field='subtotal')
    tax_amount = to_money(data.tax_amount if data.tax_amount is not None else quotation.tax_amount, field='tax_amount')
    discount = to_money(quotation.discount_amount)
    computed_total = subtotal + tax_amount - discount
    total = to_money(data.total_amount, field='total_amount') if data.total_amount is not None else computed_total

    if data.subtotal is not None or data.tax_amount is not None or data.total_amount is not None:
        if total <= 0:
            raise ValidationError('Proforma invoice total must be greater than zero')
        if total > quotation_total and not amounts_match(total, quotation_total):
            raise ValidationError(
                f'Proforma invoice total {total} exceeds quotation total {quotation_total}',
                details={'total_amount': str(total), 'quotation_total': str(quotation_total)},
            )
        require_match('total_amount', total, computed_total)
    return {'subtotal': subtotal, 'tax_amount': tax_amount, 'discount_amount': discount, 'total_amount': total}


def create_from_quotation(db: Session, *, quotation_id: int, actor: Actor, data: PICreate) -> ProformaInvoice:
    quotation = get_quotation(db, quotation_id, lock=True)
    if quotation.status not in BILLABLE_STATUSES:
        raise InvalidStateError(
            f'Cannot create a proforma invoice for a quotation in status {quotation.status.value}',
            details={'status': quotation.status.value},
        )
    active = get_active_pi(db, quotation.id)
    if active:
        raise InvalidStateError(
            f'Quotation {quotation.quotation_number} already has active proforma invoice {active.pi_number}; '
            'create a revision instead',
            details={'active_pi_id': active.id},
        )
    if not settings.allow_multiple_draft_pis:
        open_pi = db.execute(
            select(ProformaInvoice.id).where(
                ProformaInvoice.quotation_id == quotation.id,
                ProformaInvoice.status.in_(sorted(OPEN_STATUSES)),
            )
        ).scalars().first()
        if open_pi:
            raise InvalidStateError(
                f'Quotation {quotation.quotation_number} already has an open proforma invoice',
                details={'pi_id': open_pi},
            )

    totals = _snapshot_totals(quotation, data)
    pi_date = data.pi_date or date.today()
    valid_until = data.valid_until or pi_date + timedelta(days=settings.pi_validity_days)
    if valid_until < pi_date:
        raise ValidationError('valid_until cannot be before pi_date')

    pi = ProformaInvoice(
        pi_number=next_pi_number(db),
        quotation_id=quotation.id,
        customer_id=quotation.customer_id,
        revision_no=0,
        status=PIStatus.DRAFT,
        pi_date=pi_date,
        valid_until=valid_until,
        template=data.template or 'template1',
        notes=data.notes,
        created_by=actor.email,
        **totals,
        **{field_name: getattr(data, field_name) for field_name in DISPATCH_FIELDS},
    )
    db.add(pi)
    db.flush()
    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=pi.id,
        action='created',
        actor=actor,
        to_status=PIStatus.DRAFT,
        metadata={'quotation_id': quotation.id, 'total_amount': str(pi.total_amount)},
    )
    db.flush()
    logger.info(f'Proforma invoice {pi.pi_number} created from quotation {quotation.quotation_number}')
    return pi


def create_revised_pi(db: Session, *, parent_pi_id: int, actor: Actor, data: PIRevisionCreate) -> ProformaInvoice:
    unlocked = get_pi(db, parent_pi_id)
    quotation = get_quotation(db, unlocked.quotation_id, lock=True)
    parent = get_pi(db, parent_pi_id, lock=True)
    if parent.status != PIStatus.APPROVED:
        raise InvalidStateError(
            f'Only an approved proforma invoice can be revised; {parent.pi_number} is {parent.status.value}',
            details={'status': parent.status.value},
        )
    if not data.removed_item_ids and not data.reduced_items:
        raise ValidationError('A revision must remove or reduce at least one item')

    items = list_items(db, quotation.id)
    items_by_id = {item.id: item for item in items}
    parent_removed, parent_reduced = _amendment_state(parent)

    new_removed = set()
    for item_id in data.removed_item_ids:
        if item_id not in items_by_id:
            raise ValidationError(f'Item {item_id} does not belong to quotation {quotation.quotation_number}')
        if item_id in parent_removed:
            raise ValidationError(f'Item {item_id} was already removed')
        new_removed.add(item_id)

    reduced_changes = []
    new_reduced: dict[int, Decimal] = {}
    for reduced in data.reduced_items:
        item = items_by_id.get(reduced.item_id)
        if item is None:
            raise ValidationError(f'Item {reduced.item_id} does not belong to quotation {quotation.quotation_number}')
        if reduced.item_id in parent_removed:
            raise ValidationError(f'Item {reduced.item_id} was already removed')
        if reduced.item_id in new_removed:
            raise ValidationError(f'Item {reduced.item_id} cannot be both removed and reduced')
        if reduced.item_id in new_reduced:
            raise ValidationError(f'Item {reduced.item_id} is reduced more than once')
        current_quantity = parent_reduced.get(item.id, item.quantity)
        if reduced.quantity >= current_quantity:
            raise ValidationError(
                f'Reduced quantity for item {item.id} must be less than {current_quantity}',
                details={'item_id': item.id, 'current_quantity': str(current_quantity)},
            )
        new_reduced[item.id] = reduced.quantity
        reduced_changes.append(
            {'item_id': item.id, 'from_quantity': str(current_quantity), 'to_quantity': str(reduced.quantity)}
        )

    removed = parent_removed | new_removed
    reduced_state = {item_id: qty for item_id, qty in {**parent_reduced, **new_reduced}.items() if item_id not in removed}
    if len(removed) >= len(items):
        raise ValidationError('A revision must keep at least one item')

    effective = _replay(items, removed, reduced_state)
    totals = _effective_totals(quotation, effective)
    require_match('subtotal', data.subtotal, totals['subtotal'])
    require_match('tax_amount', data.tax_amount, totals['tax_amount'])
    require_match('total_amount', data.total_amount, totals['total_amount'])

    last_revision = db.execute(
        select(func.max(ProformaInvoice.revision_no)).where(ProformaInvoice.parent_pi_id == parent.id)
    ).scalar_one_or_none()

    revision = ProformaInvoice(
        pi_number=next_pi_number(db),
        quotation_id=quotation.id,
        customer_id=parent.customer_id,
        parent_pi_id=parent.id,
        revision_no=(last_revision or 0) + 1,
        amendment_detail={
            'removed_item_ids': sorted(removed),
            'reduced_items': {str(item_id): str(qty) for item_id, qty in sorted(reduced_state.items())},
            'changes': {'removed_item_ids': sorted(new_removed), 'reduced_items': reduced_changes},
        },
        status=PIStatus.DRAFT,
        notes=data.notes if data.notes is not None else parent.notes,
        created_by=actor.email,
        **totals,
        **{field_name: getattr(parent, field_name) for field_name in CLONED_FIELDS},
    )
    db.add(revision)
    db.flush()
    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=revision.id,
        action='revision_created',
        actor=actor,
        to_status=PIStatus.DRAFT,
        metadata={
            'parent_pi_id': parent.id,
            'revision_no': revision.revision_no,
            'total_amount': str(revision.total_amount),
        },
    )
    db.flush()
    logger.info(f'Revision {revision.pi_number} of {parent.pi_number} created with total {revision.total_amount}')
    return revision


# ----- workflow -----


def _require_revision(pi: ProformaInvoice, require_revision: bool) -> None:
    if require_revision and not pi.is_revision:
        raise ValidationError(f'Proforma invoice {pi.pi_number} is not a revision')


def _require_status(pi: ProformaInvoice, allowed: set[PIStatus], action: str) -> None:
    if pi.status not in allowed:
        raise InvalidStateError(
            f'Cannot {action} proforma invoice {pi.pi_number} in status {pi.status.value}',
            details={'status': pi.status.value, 'allowed': sorted(s.value for s in allowed)},
        )


def submit_pi(db: Session, *, pi_id: int, actor: Actor, require_revision: bool = False) -> ProformaInvoice:
    pi = get_pi(db, pi_id, lock=True)
    _require_revision(pi, require_revision)
    _require_status(pi, {PIStatus.DRAFT}, 'submit')
    pi.status = PIStatus.PENDING_APPROVAL
    pi.submitted_at = _now()
    pi.updated_by = actor.email
    pi.updated_at = _now()
    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=pi.id,
        action='submitted',
        actor=actor,
        from_status=PIStatus.DRAFT,
        to_status=PIStatus.PENDING_APPROVAL,
    )
    db.flush()
    queue_notification(
        db,
        Notification(
            type='pi_submitted',
            title='Proforma invoice awaiting approval',
            message=f'Proforma invoice {pi.pi_number} was submitted by {actor.email}',
            reference_id=pi.id,
        ),
        customer_id=pi.customer_id,
    )
    logger.info(f'Proforma invoice {pi.pi_number} submitted by {actor.email}')
    return pi


def approve_pi(db: Session, *, pi_id: int, actor: Actor, require_revision: bool = False) -> ProformaInvoice:
    unlocked = get_pi(db, pi_id)
    _require_revision(unlocked, require_revision)
    # Lock order: quotation, parent, child.
    quotation = get_quotation(db, unlocked.quotation_id, lock=True)
    parent = get_pi(db, unlocked.parent_pi_id, lock=True) if unlocked.parent_pi_id else None
    pi = get_pi(db, pi_id, lock=True)
    _require_status(pi, {PIStatus.PENDING_APPROVAL}, 'approve')

    active = get_active_pi(db, pi.quotation_id)
    if parent is not None:
        if parent.status != PIStatus.APPROVED:
            raise InvalidStateError(
                f'Parent proforma invoice {parent.pi_number} is {parent.status.value}; revision cannot be approved',
                details={'parent_pi_id': parent.id, 'parent_status': parent.status.value},
            )
        if active is not None and active.id != parent.id:
            raise InvalidStateError(f'Proforma invoice {active.pi_number} is already active')
        paid = paid_so_far(db, quotation.id)
        if paid > to_money(pi.total_amount):
            raise InvalidStateError(
                f'Revision {pi.pi_number} totals {to_money(pi.total_amount)} but {paid} is already paid '
                f'on quotation {quotation.quotation_number}',
                details={'pi_id': pi.id, 'total_amount': str(to_money(pi.total_amount)), 'total_paid': str(paid)},
            )
    elif active is not None:
        raise InvalidStateError(
            f'Proforma invoice {active.pi_number} is already active; approve a revision instead',
            details={'active_pi_id': active.id},
        )

    now = _now()
    if parent is not None:
        parent.status = PIStatus.SUPERSEDED
        parent.superseded_at = now
        parent.superseded_by_pi_id = pi.id
        parent.updated_at = now
        log_transition(
            db,
            document_type=DocumentType.PROFORMA_INVOICE,
            document_id=parent.id,
            action='superseded',
            actor=actor,
            from_status=PIStatus.APPROVED,
            to_status=PIStatus.SUPERSEDED,
            metadata={'superseded_by_pi_id': pi.id},
        )
        # The active-PI unique index needs the parent out of approved before the child enters it.
        db.flush()

    pi.status = PIStatus.APPROVED
    pi.approved_by = actor.email
    pi.approved_at = now
    pi.updated_by = actor.email
    pi.updated_at = now
    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=pi.id,
        action='approved',
        actor=actor,
        from_status=PIStatus.PENDING_APPROVAL,
        to_status=PIStatus.APPROVED,
        metadata={'parent_pi_id': parent.id} if parent is not None else None,
    )
    db.flush()
    queue_notification(
        db,
        Notification(
            type='pi_approved',
            title='Proforma invoice approved',
            message=f'Proforma invoice {pi.pi_number} was approved',
            reference_id=pi.id,
        ),
        recipients=[pi.created_by],
    )
    if parent is not None:
        logger.info(f'Proforma invoice {pi.pi_number} approved; {parent.pi_number} superseded')
    else:
        logger.info(f'Proforma invoice {pi.pi_number} approved')
    return pi


def reject_pi(
    db: Session,
    *,
    pi_id: int,
    actor: Actor,
    reason: str | None = None,
    require_revision: bool = False,
) -> ProformaInvoice:
    pi = get_pi(db, pi_id, lock=True)
    _require_revision(pi, require_revision)
    _require_status(pi, {PIStatus.PENDING_APPROVAL}, 'reject')
    now = _now()
    pi.status = PIStatus.REJECTED
    pi.rejected_by = actor.email
    pi.rejected_at = now
    pi.rejection_reason = reason
    pi.updated_by = actor.email
    pi.updated_at = now
    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=pi.id,
        action='rejected',
        actor=actor,
        from_status=PIStatus.PENDING_APPROVAL,
        to_status=PIStatus.REJECTED,
        notes=reason,
    )
    db.flush()
    queue_notification(
        db,
        Notification(
            type='pi_rejected',
            title='Proforma invoice rejected',
            message=f'Proforma invoice {pi.pi_number} was rejected: {reason or "no reason given"}',
            reference_id=pi.id,
        ),
        recipients=[pi.created_by],
    )
    logger.info(f'Proforma invoice {pi.pi_number} rejected by {actor.email}')
    return pi


def update_pi(db: Session, *, pi_id: int, actor: Actor, data: PIUpdate) -> ProformaInvoice:
    pi = get_pi(db, pi_id, lock=True)
    if pi.status in LOCKED_STATUSES:
        raise ImmutableDocumentError(
            f'Proforma invoice {pi.pi_number} is {pi.status.value} and can no longer be changed',
            details={'status': pi.status.value},
        )
    if pi.status not in OPEN_STATUSES:
        raise InvalidStateError(
            f'Proforma invoice {pi.pi_number} is {pi.status.value} and cannot be edited',
            details={'status': pi.status.value},
        )

    changes = data.model_dump(exclude_unset=True)
    if 'pi_date' in changes and changes['pi_date'] is None:
        del changes['pi_date']
    if 'template' in changes and not changes['template']:
        changes['template'] = 'template1'
    for field_name, value in changes.items():
        setattr(pi, field_name, value)
    if pi.valid_until and pi.valid_until < pi.pi_date:
        raise ValidationError('valid_until cannot be before pi_date')
    pi.updated_by = actor.email
    pi.updated_at = _now()

    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=pi.id,
        action='updated',
        actor=actor,
        from_status=pi.status,
        to_status=pi.status,
        metadata={'fields': sorted(changes)},
    )
    db.flush()
    return pi


def delete_pi(db: Session, *, pi_id: int, actor: Actor) -> None:
    pi = get_pi(db, pi_id, lock=True)
    _require_status(pi, {PIStatus.DRAFT}, 'delete')
    log_transition(
        db,
        document_type=DocumentType.PROFORMA_INVOICE,
        document_id=pi.id,
        action='deleted',
        actor=actor,
        from_status=pi.status,
        metadata={'pi_number': pi.pi_number, 'quotation_id': pi.quotation_id},
    )
    db.delete(pi)
    db.flush()
    logger.info(f'Proforma invoice {pi.pi_number} deleted by {actor.email}')
