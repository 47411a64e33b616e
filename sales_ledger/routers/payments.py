from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor, Role, get_current_actor, require_role
from sales_ledger.db import get_db
from sales_ledger.schemas import (
    ApprovalUpdate,
    CreditOut,
    CustomerPaymentSummaryOut,
    InstallmentResultOut,
    NotesIn,
    PaymentCreate,
    PaymentOut,
    QuotationPaymentSummaryOut,
    envelope,
)
from sales_ledger.services.notification_service import commit_and_dispatch
from sales_ledger.services.payment_service import (
    approve_payment,
    credit_balance,
    customer_summary,
    delete_installment,
    get_payment,
    list_for_customer,
    list_for_quotation,
    quotation_summary,
    record_installment,
    refund_payment,
    transfer_credit,
    update_approval_status,
    update_installment,
)

router = APIRouter(prefix='/payments', tags=['payments'])
accounts_access = require_role(Role.ACCOUNTS, Role.DEPARTMENT_HEAD)


@router.post('', status_code=status.HTTP_201_CREATED)
def create(
    payload: PaymentCreate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    result = record_installment(
        db,
        actor=actor,
        amount=payload.installment_amount,
        quotation_id=payload.quotation_id,
        lead_id=payload.lead_id,
        pi_id=payload.pi_id,
        payment_method=payload.payment_method,
        payment_date=payload.payment_date,
        payment_reference=payload.payment_reference,
        receipt_url=payload.payment_receipt_url,
        remarks=payload.remarks,
        approval_status=payload.approval_status,
    )
    commit_and_dispatch(db)
    out = InstallmentResultOut(
        payment=PaymentOut.model_validate(result.payment),
        applied_to_quotation=result.applied_to_quotation,
        overpaid_amount=result.overpaid_amount,
        total_payable_amount=result.total_payable_amount,
        total_paid=result.total_paid,
        remaining=result.remaining,
        available_credit=result.available_credit,
        installment_number=result.installment_number,
        quotation_completed=result.quotation_completed,
    )
    return envelope(out, message='Payment recorded successfully')


@router.get('/quotation/{quotation_id}')
def index_for_quotation(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope([PaymentOut.model_validate(row) for row in list_for_quotation(db, quotation_id)])


@router.get('/customer/{customer_id}')
def index_for_customer(customer_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope([PaymentOut.model_validate(row) for row in list_for_customer(db, customer_id)])


@router.get('/summary/quotation/{quotation_id}')
def summary_for_quotation(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(QuotationPaymentSummaryOut(**quotation_summary(db, quotation_id)))


@router.get('/summary/customer/{customer_id}')
def summary_for_customer(customer_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(CustomerPaymentSummaryOut(**customer_summary(db, customer_id)))


@router.get('/credit/{customer_id}')
def credit(customer_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(CreditOut(**credit_balance(db, customer_id)))


@router.post('/refund')
def refund(actor: Actor = Depends(accounts_access), db: Session = Depends(get_db)):
    refund_payment(db, actor=actor)


@router.post('/transfer')
def transfer(actor: Actor = Depends(accounts_access), db: Session = Depends(get_db)):
    transfer_credit(db, actor=actor)


@router.get('/{payment_id}')
def detail(payment_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(PaymentOut.model_validate(get_payment(db, payment_id)))


@router.put('/{payment_id}/approval')
def set_approval(
    payment_id: int,
    payload: ApprovalUpdate,
    actor: Actor = Depends(accounts_access),
    db: Session = Depends(get_db),
):
    payment = update_approval_status(db, payment_id=payment_id, status=payload.status, actor=actor, notes=payload.notes)
    commit_and_dispatch(db)
    return envelope(PaymentOut.model_validate(payment), message=f'Payment {payload.status.value}')


@router.put('/{payment_id}/approve')
def approve(
    payment_id: int,
    payload: NotesIn | None = None,
    actor: Actor = Depends(accounts_access),
    db: Session = Depends(get_db),
):
    payment = approve_payment(db, payment_id=payment_id, actor=actor, notes=payload.notes if payload else None)
    commit_and_dispatch(db)
    return envelope(PaymentOut.model_validate(payment), message='Payment approved')


@router.put('/{payment_id}')
def update(payment_id: int, actor: Actor = Depends(accounts_access), db: Session = Depends(get_db)):
    update_installment(db, payment_id=payment_id, actor=actor)


@router.delete('/{payment_id}')
def delete(payment_id: int, actor: Actor = Depends(accounts_access), db: Session = Depends(get_db)):
    delete_installment(db, payment_id=payment_id, actor=actor)
