from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor, Role, get_current_actor, require_role
from sales_ledger.db import get_db
from sales_ledger.models import Quotation, QuotationStatus
from sales_ledger.schemas import (
    AcceptQuotationIn,
    ApprovalLogOut,
    NotesIn,
    PaymentOut,
    ProformaInvoiceOut,
    QuotationCompleteOut,
    QuotationCreate,
    QuotationItemOut,
    QuotationOut,
    QuotationPaymentSummaryOut,
    QuotationUpdate,
    SendQuotationIn,
    envelope,
)
from sales_ledger.services.notification_service import commit_and_dispatch
from sales_ledger.services.payment_service import quotation_summary
from sales_ledger.services.quotation_service import (
    accept_by_customer,
    approve_quotation,
    create_quotation,
    delete_quotation,
    get_complete_data,
    get_quotation,
    list_items,
    list_quotations,
    reject_quotation,
    send_to_customer,
    submit_for_verification,
    update_quotation,
)

router = APIRouter(prefix='/quotations', tags=['quotations'])
approver_access = require_role(Role.DEPARTMENT_HEAD)


def _quotation_out(db: Session, quotation: Quotation, *, with_items: bool = True) -> QuotationOut:
    out = QuotationOut.model_validate(quotation)
    if with_items:
        out.items = [QuotationItemOut.model_validate(item) for item in list_items(db, quotation.id)]
    return out


@router.post('', status_code=status.HTTP_201_CREATED)
def create(
    payload: QuotationCreate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    quotation = create_quotation(db, actor=actor, data=payload)
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation created successfully')


@router.get('')
def index(
    status_filter: QuotationStatus | None = Query(None, alias='status'),
    customer_id: int | None = None,
    created_by: str | None = None,
    limit: int = 100,
    offset: int = 0,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    rows = list_quotations(
        db,
        status=status_filter,
        customer_id=customer_id,
        created_by=created_by,
        limit=max(1, min(limit, 500)),
        offset=max(0, offset),
    )
    return envelope([_quotation_out(db, row, with_items=False) for row in rows])


@router.get('/{quotation_id}')
def detail(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(_quotation_out(db, get_quotation(db, quotation_id)))


@router.get('/{quotation_id}/complete')
def complete_data(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    data = get_complete_data(db, quotation_id)
    quotation_out = QuotationOut.model_validate(data['quotation'])
    quotation_out.items = [QuotationItemOut.model_validate(item) for item in data['items']]
    return envelope(
        QuotationCompleteOut(
            quotation=quotation_out,
            approval_logs=[ApprovalLogOut.model_validate(row) for row in data['approval_logs']],
            proforma_invoices=[ProformaInvoiceOut.model_validate(row) for row in data['proforma_invoices']],
            payments=[PaymentOut.model_validate(row) for row in data['payments']],
        )
    )


@router.get('/{quotation_id}/summary')
def payment_summary(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(QuotationPaymentSummaryOut(**quotation_summary(db, quotation_id)))


@router.put('/{quotation_id}')
def update(
    quotation_id: int,
    payload: QuotationUpdate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    quotation = update_quotation(db, quotation_id=quotation_id, actor=actor, data=payload)
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation updated successfully')


@router.delete('/{quotation_id}')
def delete(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    delete_quotation(db, quotation_id=quotation_id, actor=actor)
    commit_and_dispatch(db)
    return envelope(None, message='Quotation deleted successfully')


@router.post('/{quotation_id}/submit')
def submit(
    quotation_id: int,
    payload: NotesIn | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    quotation = submit_for_verification(db, quotation_id=quotation_id, actor=actor, notes=payload.notes if payload else None)
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation submitted for verification')


@router.post('/{quotation_id}/approve')
def approve(
    quotation_id: int,
    payload: NotesIn | None = None,
    actor: Actor = Depends(approver_access),
    db: Session = Depends(get_db),
):
    quotation = approve_quotation(db, quotation_id=quotation_id, actor=actor, notes=payload.notes if payload else None)
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation approved')


@router.post('/{quotation_id}/reject')
def reject(
    quotation_id: int,
    payload: NotesIn | None = None,
    actor: Actor = Depends(approver_access),
    db: Session = Depends(get_db),
):
    quotation = reject_quotation(db, quotation_id=quotation_id, actor=actor, notes=payload.notes if payload else None)
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation rejected')


@router.post('/{quotation_id}/send')
def send(
    quotation_id: int,
    payload: SendQuotationIn | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    payload = payload or SendQuotationIn()
    quotation = send_to_customer(
        db,
        quotation_id=quotation_id,
        actor=actor,
        sent_to=payload.sent_to,
        sent_via=payload.sent_via,
    )
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation sent to customer')


@router.post('/{quotation_id}/accept')
def accept(
    quotation_id: int,
    payload: AcceptQuotationIn | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    quotation = accept_by_customer(
        db,
        quotation_id=quotation_id,
        actor=actor,
        accepted_by=payload.accepted_by if payload else None,
    )
    commit_and_dispatch(db)
    return envelope(_quotation_out(db, quotation), message='Quotation accepted by customer')
