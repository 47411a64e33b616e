from __future__ import annotations

from enum import Enum

from sqlalchemy import select
from sqlalchemy.orm import Session

from sales_ledger.auth import Actor
from sales_ledger.models import ApprovalLog, DocumentType


def _status_value(value: Enum | str | None) -> str | None:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)


def log_transition(
    db: Session,
    *,
    document_type: DocumentType,
    document_id: int,
    action: str,
    actor: Actor,
    from_status: Enum | str | None = None,
    to_status: Enum | str | None = None,
    notes: str | None = None,
    metadata: dict | None = None,
) -> ApprovalLog:
    entry = ApprovalLog(
        document_type=document_type,
        document_id=document_id,
        action=action,
        from_status=_status_value(from_status),
        to_status=_status_value(to_status),
        performed_by=actor.email,
        performed_by_type=actor.role.value,
        notes=notes,
        meta=metadata or {},
    )
    db.add(entry)
    return entry


def list_for_document(db: Session, *, document_type: DocumentType, document_id: int) -> list[ApprovalLog]:
    return db.execute(
        select(ApprovalLog)
        .where(ApprovalLog.document_type == document_type, ApprovalLog.document_id == document_id)
        .order_by(ApprovalLog.created_at.asc(), ApprovalLog.id.asc())
    ).scalars().all()
