from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor
from sales_ledger.errors import FeatureNotImplementedError, InvalidStateError, NotFoundError, ValidationError
from sales_ledger.models import ApprovalStatus, DocumentType, PaymentInstallment, PIStatus, ProformaInvoice, Quotation
from sales_ledger.services import credit_service
from sales_ledger.services.audit_service import log_transition
from sales_ledger.services.money_service import ZERO, to_money
from sales_ledger.services.notification_dispatchers import Notification
from sales_ledger.services.notification_service import queue_notification
from sales_ledger.services.proforma_invoice_service import get_active_pi, get_pi
from sales_ledger.services.quotation_service import (
    BILLABLE_STATUSES,
    counted_installments,
    get_quotation,
    lookup_lead,
    mark_completed,
    paid_so_far,
)


@dataclass
class LedgerPosition:
    payable: Decimal
    paid_before: Decimal
    applied: Decimal
    overpaid: Decimal
    active_pi: ProformaInvoice | None = None

    @property
    def remaining_before(self) -> Decimal:
        return self.payable - self.paid_before

    @property
    def paid_after(self) -> Decimal:
        return self.paid_before + self.applied

    @property
    def remaining_after(self) -> Decimal:
        return self.payable - self.paid_after


@dataclass
class InstallmentResult:
    payment: PaymentInstallment
    applied_to_quotation: Decimal
    overpaid_amount: Decimal
    total_payable_amount: Decimal
    total_paid: Decimal
    remaining: Decimal
    available_credit: Decimal
    installment_number: int
    quotation_completed: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def generate_payment_reference(now: datetime | None = None) -> str:
    moment = now or _now()
    return f'PAY-{int(moment.timestamp() * 1000)}-{secrets.randbelow(9000) + 1000}'


def check_balance(quotation: Quotation, paid: Decimal) -> Decimal:
    """Return the outstanding balance of a quotation, refusing a ledger that applied more than its total."""
    payable = to_money(quotation.total_amount)
    if paid > payable:
        logger.error(f'Quotation {quotation.quotation_number} has {paid} applied against a total of {payable}')
        raise InvalidStateError(
            f'Applied payments {paid} exceed the total {payable} of quotation {quotation.quotation_number}',
            details={'quotation_id': quotation.id, 'total_paid': str(paid), 'total_amount': str(payable)},
        )
    return payable - paid


def _position(db: Session, quotation: Quotation | None, amount: Decimal, *, apply: bool) -> LedgerPosition:
    if quotation is None:
        # Without a quotation there is nothing to settle; the whole amount becomes credit.
        return LedgerPosition(payable=ZERO, paid_before=ZERO, applied=ZERO, overpaid=amount if apply else ZERO)
    paid = paid_so_far(db, quotation.id)
    check_balance(quotation, paid)
    position = LedgerPosition(
        payable=to_money(quotation.total_amount),
        paid_before=paid,
        applied=ZERO,
        overpaid=ZERO,
        active_pi=get_active_pi(db, quotation.id),
    )
    if apply:
        position.applied = min(amount, position.remaining_before)
        position.overpaid = amount - position.applied
    return position


def _attributed_pi_id(
    db: Session,
    quotation: Quotation,
    pi_id: int | None,
    active: ProformaInvoice | None,
) -> int | None:
    if pi_id is None:
        return active.id if active is not None else None
    pi = get_pi(db, pi_id)
    if pi.quotation_id != quotation.id:
        raise ValidationError(f'Proforma invoice {pi.pi_number} does not belong to quotation {quotation.quotation_number}')
    if pi.status != PIStatus.APPROVED:
        raise ValidationError(
            f'Payments can only be attributed to the active proforma invoice; {pi.pi_number} is {pi.status.value}',
            details={'pi_id': pi.id, 'status': pi.status.value},
        )
    return pi.id


def _require_billable(quotation: Quotation) -> None:
    if quotation.status not in BILLABLE_STATUSES:
        raise InvalidStateError(
            f'Payments can only be recorded for approved quotations; {quotation.quotation_number} is '
            f'{quotation.status.value}',
            details={'status': quotation.status.value},
        )


def _next_installment_number(db: Session, *, quotation_id: int | None, lead_id: int | None) -> int:
    stmt = select(func.count(PaymentInstallment.id))
    if quotation_id is not None:
        stmt = stmt.where(PaymentInstallment.quotation_id == quotation_id)
    else:
        stmt = stmt.where(PaymentInstallment.lead_id == lead_id, PaymentInstallment.quotation_id.is_(None))
    return int(db.execute(stmt).scalar_one()) + 1


def _settle(
    db: Session,
    *,
    payment: PaymentInstallment,
    quotation: Quotation | None,
    position: LedgerPosition,
    actor: Actor,
    complete: bool = True,
) -> tuple[Decimal, bool]:
    """Route the overpayment to credit and complete the quotation once nothing remains."""
    if position.overpaid > 0:
        available_credit = credit_service.increment_balance(db, payment.customer_id, position.overpaid)
        logger.info(
            f'Overpayment {position.overpaid} on installment {payment.installment_number} '
            f'routed to credit of customer {payment.customer_id}'
        )
    else:
        available_credit = credit_service.get_balance(db, payment.customer_id)

    payment.applied_amount = position.applied
    payment.overpaid_amount = position.overpaid
    payment.total_payable_amount = position.payable
    payment.paid_amount = position.paid_after
    payment.remaining_amount = position.remaining_after
    payment.available_credit = available_credit

    completed = False
    if complete and quotation is not None and position.remaining_after == 0:
        completed = mark_completed(
            db,
            quotation=quotation,
            actor=actor,
            notes=f'Fully paid by installment {payment.installment_number}',
        )
    return available_credit, completed


def record_installment(
    db: Session,
    *,
    actor: Actor,
    amount: Decimal,
    quotation_id: int | None = None,
    lead_id: int | None = None,
    pi_id: int | None = None,
    payment_method: str | None = None,
    payment_date: date | None = None,
    payment_reference: str | None = None,
    receipt_url: str | None = None,
    remarks: str | None = None,
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED,
) -> InstallmentResult:
    amount = to_money(amount, field='installment_amount')
    if amount <= 0:
        raise ValidationError('Installment amount must be greater than zero')
    if quotation_id is None and lead_id is None:
        raise ValidationError('Either quotation_id or lead_id is required')
    if approval_status == ApprovalStatus.REJECTED:
        raise ValidationError('A new installment must be pending or approved')

    quotation: Quotation | None = None
    if quotation_id is not None:
        quotation = get_quotation(db, quotation_id, lock=True)
        _require_billable(quotation)
        if lead_id is not None and lead_id != quotation.customer_id:
            raise ValidationError(
                f'Lead {lead_id} does not match customer {quotation.customer_id} of quotation {quotation.quotation_number}'
            )
        customer_id = quotation.customer_id
        customer_name = quotation.customer_name
    else:
        if pi_id is not None:
            raise ValidationError('pi_id requires quotation_id')
        customer_id = lead_id
        lead = lookup_lead(lead_id)
        customer_name = lead.name if lead else None

    approved = approval_status == ApprovalStatus.APPROVED
    position = _position(db, quotation, amount, apply=approved)
    if quotation is not None:
        pi_id = _attributed_pi_id(db, quotation, pi_id, position.active_pi)

    installment_number = _next_installment_number(db, quotation_id=quotation_id, lead_id=lead_id)
    now = _now()
    payment = PaymentInstallment(
        quotation_id=quotation_id,
        lead_id=lead_id if lead_id is not None else customer_id,
        pi_id=pi_id,
        customer_id=customer_id,
        customer_name=customer_name,
        installment_number=installment_number,
        installment_amount=amount,
        payment_method=payment_method,
        payment_date=payment_date or date.today(),
        payment_reference=payment_reference or generate_payment_reference(now),
        receipt_url=receipt_url,
        remarks=remarks,
        approval_status=approval_status,
        approval_action_by=actor.email if approved else None,
        approved_at=now if approved else None,
        is_refund=False,
        created_by=actor.email,
    )
    db.add(payment)
    db.flush()

    available_credit, completed = _settle(
        db, payment=payment, quotation=quotation, position=position, actor=actor, complete=approved
    )
    log_transition(
        db,
        document_type=DocumentType.PAYMENT,
        document_id=payment.id,
        action='recorded',
        actor=actor,
        to_status=approval_status,
        metadata={
            'quotation_id': quotation_id,
            'installment_amount': str(amount),
            'applied_amount': str(position.applied),
            'overpaid_amount': str(position.overpaid),
        },
    )
    db.flush()

    if quotation is not None:
        queue_notification(
            db,
            Notification(
                type='payment_recorded',
                title='Payment installment recorded',
                message=(
                    f'Installment {installment_number} of {amount} recorded for quotation '
                    f'{quotation.quotation_number}; remaining {position.remaining_after}'
                ),
                reference_id=payment.id,
            ),
            recipients=[quotation.created_by],
        )
    logger.info(
        f'Installment {installment_number} of {amount} recorded for customer {customer_id} '
        f'(applied {position.applied}, overpaid {position.overpaid}, status {approval_status.value})'
    )
    return InstallmentResult(
        payment=payment,
        applied_to_quotation=position.applied,
        overpaid_amount=position.overpaid,
        total_payable_amount=position.payable,
        total_paid=position.paid_after,
        remaining=position.remaining_after,
        available_credit=available_credit,
        installment_number=installment_number,
        quotation_completed=completed,
    )


def update_approval_status(
    db: Session,
    *,
    payment_id: int,
    status: ApprovalStatus,
    actor: Actor,
    notes: str | None = None,
) -> PaymentInstallment:
    unlocked = get_payment(db, payment_id)
    quotation = get_quotation(db, unlocked.quotation_id, lock=True) if unlocked.quotation_id else None
    payment = get_payment(db, payment_id, lock=True)
    current = payment.approval_status

    if current == ApprovalStatus.APPROVED and status != ApprovalStatus.APPROVED:
        raise InvalidStateError(
            f'Installment {payment.payment_reference} is already approved and cannot move to {status.value}',
            details={'status': current.value},
        )
    if notes is not None:
        payment.approval_notes = notes
    if current == status:
        db.flush()
        return payment

    now = _now()
    if status == ApprovalStatus.APPROVED:
        if quotation is not None:
            _require_billable(quotation)
        position = _position(db, quotation, to_money(payment.installment_amount), apply=True)
        if quotation is not None and payment.pi_id is None and position.active_pi is not None:
            payment.pi_id = position.active_pi.id
        _settle(db, payment=payment, quotation=quotation, position=position, actor=actor)
        payment.approved_at = now

    payment.approval_status = status
    payment.approval_action_by = actor.email
    payment.updated_at = now
    log_transition(
        db,
        document_type=DocumentType.PAYMENT,
        document_id=payment.id,
        action=status.value,
        actor=actor,
        from_status=current,
        to_status=status,
        notes=notes,
        metadata={
            'applied_amount': str(to_money(payment.applied_amount)),
            'overpaid_amount': str(to_money(payment.overpaid_amount)),
        },
    )
    db.flush()
    queue_notification(
        db,
        Notification(
            type=f'payment_{status.value}',
            title=f'Payment {status.value}',
            message=f'Installment {payment.payment_reference} of {to_money(payment.installment_amount)} is {status.value}',
            reference_id=payment.id,
        ),
        recipients=[payment.created_by],
    )
    logger.info(f'Installment {payment.payment_reference} moved {current.value} -> {status.value} by {actor.email}')
    return payment


def approve_payment(db: Session, *, payment_id: int, actor: Actor, notes: str | None = None) -> PaymentInstallment:
    return update_approval_status(db, payment_id=payment_id, status=ApprovalStatus.APPROVED, actor=actor, notes=notes)


# ----- reads -----


def get_payment(db: Session, payment_id: int, *, lock: bool = False) -> PaymentInstallment:
    stmt = select(PaymentInstallment).where(PaymentInstallment.id == payment_id)
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    payment = db.execute(stmt).scalar_one_or_none()
    if not payment:
        raise NotFoundError('Payment', payment_id)
    return payment


def list_for_quotation(db: Session, quotation_id: int) -> list[PaymentInstallment]:
    get_quotation(db, quotation_id)
    return db.execute(
        select(PaymentInstallment)
        .where(PaymentInstallment.quotation_id == quotation_id)
        .order_by(PaymentInstallment.installment_number.asc(), PaymentInstallment.id.asc())
    ).scalars().all()


def list_for_customer(db: Session, customer_id: int) -> list[PaymentInstallment]:
    return db.execute(
        select(PaymentInstallment)
        .where(PaymentInstallment.customer_id == customer_id)
        .order_by(PaymentInstallment.payment_date.desc(), PaymentInstallment.id.desc())
    ).scalars().all()


def _status_label(total_paid: Decimal, remaining: Decimal, approved_count: int) -> str:
    if approved_count and remaining == 0:
        return 'paid'
    if total_paid > 0:
        return 'partial'
    return 'pending'


def quotation_summary(db: Session, quotation_id: int) -> dict:
    quotation = get_quotation(db, quotation_id)
    active = get_active_pi(db, quotation.id)
    total_paid, total_overpaid, approved_count, last_payment_date = db.execute(
        select(
            func.coalesce(func.sum(PaymentInstallment.applied_amount), 0),
            func.coalesce(func.sum(PaymentInstallment.overpaid_amount), 0),
            func.count(PaymentInstallment.id),
            func.max(PaymentInstallment.payment_date),
        ).where(PaymentInstallment.quotation_id == quotation.id, counted_installments())
    ).one()
    status_counts = dict(
        db.execute(
            select(PaymentInstallment.approval_status, func.count(PaymentInstallment.id))
            .where(PaymentInstallment.quotation_id == quotation.id)
            .group_by(PaymentInstallment.approval_status)
        ).all()
    )
    total_paid = to_money(total_paid)
    remaining = check_balance(quotation, total_paid)
    payable = to_money(quotation.total_amount)
    return {
        'quotation_id': quotation.id,
        'quotation_number': quotation.quotation_number,
        'quotation_status': quotation.status,
        'active_pi_id': active.id if active else None,
        'total_payable_amount': payable,
        'total_paid': total_paid,
        'total_overpaid': to_money(total_overpaid),
        'current_remaining': remaining,
        'total_installments': sum(status_counts.values()),
        'approved_installments': int(approved_count),
        'pending_installments': status_counts.get(ApprovalStatus.PENDING, 0),
        'last_payment_date': last_payment_date,
        'payment_status': _status_label(total_paid, remaining, int(approved_count)),
    }


def customer_summary(db: Session, customer_id: int) -> dict:
    total_paid, total_overpaid = db.execute(
        select(
            func.coalesce(func.sum(PaymentInstallment.applied_amount), 0),
            func.coalesce(func.sum(PaymentInstallment.overpaid_amount), 0),
        ).where(PaymentInstallment.customer_id == customer_id, counted_installments())
    ).one()
    total_installments = db.execute(
        select(func.count(PaymentInstallment.id)).where(PaymentInstallment.customer_id == customer_id)
    ).scalar_one()
    quotation_ids = db.execute(
        select(Quotation.id).where(Quotation.customer_id == customer_id).order_by(Quotation.id.asc())
    ).scalars().all()
    return {
        'customer_id': customer_id,
        'total_installments': int(total_installments),
        'total_paid': to_money(total_paid),
        'total_overpaid': to_money(total_overpaid),
        'current_credit': credit_service.get_balance(db, customer_id),
        'quotations': [quotation_summary(db, quotation_id) for quotation_id in quotation_ids],
    }


def credit_balance(db: Session, customer_id: int) -> dict:
    return {'customer_id': customer_id, 'balance': credit_service.get_balance(db, customer_id)}


# ----- not implemented -----


def update_installment(db: Session, *, payment_id: int, actor: Actor) -> None:
    raise FeatureNotImplementedError('Editing a recorded installment is not supported')


def delete_installment(db: Session, *, payment_id: int, actor: Actor) -> None:
    raise FeatureNotImplementedError('Deleting a recorded installment is not supported')


def refund_payment(db: Session, *, actor: Actor) -> None:
    raise FeatureNotImplementedError('Refunds are not implemented')


def transfer_credit(db: Session, *, actor: Actor) -> None:
    raise FeatureNotImplementedError('Credit transfers are not implemented')
