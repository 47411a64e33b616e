from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor, Role, get_current_actor, require_role
from sales_ledger.db import get_db
from sales_ledger.models import ProformaInvoice
from sales_ledger.schemas import (
    EffectiveItemOut,
    PICreate,
    PIRejectIn,
    PIRevisionCreate,
    PIUpdate,
    ProformaInvoiceOut,
    envelope,
)
from sales_ledger.services.notification_service import commit_and_dispatch
from sales_ledger.services.proforma_invoice_service import (
    approve_pi,
    create_from_quotation,
    create_revised_pi,
    delete_pi,
    effective_items,
    get_active_pi,
    get_pi,
    list_for_quotation,
    reject_pi,
    revision_chain,
    submit_pi,
    update_pi,
)
from sales_ledger.services.quotation_service import get_quotation

router = APIRouter(prefix='/proforma-invoices', tags=['proforma-invoices'])
approver_access = require_role(Role.DEPARTMENT_HEAD)


def _pi_out(db: Session, pi: ProformaInvoice, *, with_items: bool = False) -> ProformaInvoiceOut:
    out = ProformaInvoiceOut.model_validate(pi)
    if with_items:
        out.effective_items = [EffectiveItemOut.model_validate(row) for row in effective_items(db, pi)]
    return out


@router.post('/quotation/{quotation_id}', status_code=status.HTTP_201_CREATED)
def create(
    quotation_id: int,
    payload: PICreate | None = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    pi = create_from_quotation(db, quotation_id=quotation_id, actor=actor, data=payload or PICreate())
    commit_and_dispatch(db)
    return envelope(_pi_out(db, pi, with_items=True), message='Proforma invoice created successfully')


@router.get('/quotation/{quotation_id}')
def index_for_quotation(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope([_pi_out(db, pi) for pi in list_for_quotation(db, quotation_id)])


@router.get('/quotation/{quotation_id}/active')
def active_for_quotation(quotation_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    get_quotation(db, quotation_id)
    pi = get_active_pi(db, quotation_id)
    return envelope(_pi_out(db, pi, with_items=True) if pi else None)


@router.get('/{pi_id}')
def detail(pi_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope(_pi_out(db, get_pi(db, pi_id), with_items=True))


@router.get('/{pi_id}/chain')
def chain(pi_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return envelope([_pi_out(db, pi) for pi in revision_chain(db, pi_id)])


@router.put('/{pi_id}')
def update(
    pi_id: int,
    payload: PIUpdate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    pi = update_pi(db, pi_id=pi_id, actor=actor, data=payload)
    commit_and_dispatch(db)
    return envelope(_pi_out(db, pi), message='Proforma invoice updated successfully')


@router.delete('/{pi_id}')
def delete(pi_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    delete_pi(db, pi_id=pi_id, actor=actor)
    commit_and_dispatch(db)
    return envelope(None, message='Proforma invoice deleted successfully')


@router.post('/{parent_pi_id}/revised', status_code=status.HTTP_201_CREATED)
def create_revision(
    parent_pi_id: int,
    payload: PIRevisionCreate,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    pi = create_revised_pi(db, parent_pi_id=parent_pi_id, actor=actor, data=payload)
    commit_and_dispatch(db)
    return envelope(_pi_out(db, pi, with_items=True), message='Revised proforma invoice created successfully')


def _submit(db: Session, pi_id: int, actor: Actor, *, require_revision: bool):
    pi = submit_pi(db, pi_id=pi_id, actor=actor, require_revision=require_revision)
    commit_and_dispatch(db)
    return envelope(_pi_out(db, pi), message='Proforma invoice submitted for approval')


def _approve(db: Session, pi_id: int, actor: Actor, *, require_revision: bool):
    pi = approve_pi(db, pi_id=pi_id, actor=actor, require_revision=require_revision)
    commit_and_dispatch(db)
    return envelope(_pi_out(db, pi), message='Proforma invoice approved')


def _reject(db: Session, pi_id: int, actor: Actor, payload: PIRejectIn | None, *, require_revision: bool):
    pi = reject_pi(
        db,
        pi_id=pi_id,
        actor=actor,
        reason=payload.reason if payload else None,
        require_revision=require_revision,
    )
    commit_and_dispatch(db)
    return envelope(_pi_out(db, pi), message='Proforma invoice rejected')


@router.post('/{pi_id}/submit')
def submit(pi_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return _submit(db, pi_id, actor, require_revision=False)


@router.post('/{pi_id}/approve')
def approve(pi_id: int, actor: Actor = Depends(approver_access), db: Session = Depends(get_db)):
    return _approve(db, pi_id, actor, require_revision=False)


@router.post('/{pi_id}/reject')
def reject(
    pi_id: int,
    payload: PIRejectIn | None = None,
    actor: Actor = Depends(approver_access),
    db: Session = Depends(get_db),
):
    return _reject(db, pi_id, actor, payload, require_revision=False)


@router.post('/{pi_id}/submit-revised')
def submit_revised(pi_id: int, actor: Actor = Depends(get_current_actor), db: Session = Depends(get_db)):
    return _submit(db, pi_id, actor, require_revision=True)


@router.post('/{pi_id}/approve-revised')
def approve_revised(pi_id: int, actor: Actor = Depends(approver_access), db: Session = Depends(get_db)):
    return _approve(db, pi_id, actor, require_revision=True)


@router.post('/{pi_id}/reject-revised')
def reject_revised(
    pi_id: int,
    payload: PIRejectIn | None = None,
    actor: Actor = Depends(approver_access),
    db: Session = Depends(get_db),
):
    return _reject(db, pi_id, actor, payload, require_revision=True)
