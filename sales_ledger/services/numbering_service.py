from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from sales_ledger.db import dialect_insert
from sales_ledger.models import DocumentSequence


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def next_sequence(db: Session, prefix: str) -> int:
    stmt = dialect_insert(db, DocumentSequence).values(prefix=prefix, last_value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[DocumentSequence.prefix],
        set_={'last_value': DocumentSequence.last_value + 1, 'updated_at': func.now()},
    ).returning(DocumentSequence.last_value)
    return int(db.execute(stmt).scalar_one())


def quotation_prefix(when: datetime) -> str:
    return f'QT{when.year:04d}{when.month:02d}'


def pi_prefix(when: datetime) -> str:
    return f'PI-{when.year:04d}-{when.month:02d}'


def format_quotation_number(when: datetime, sequence: int) -> str:
    return f'{quotation_prefix(when)}{sequence:03d}'


def format_pi_number(when: datetime, sequence: int) -> str:
    return f'{pi_prefix(when)}-{sequence:04d}'


def next_quotation_number(db: Session, *, when: datetime | None = None) -> str:
    moment = when or _now()
    return format_quotation_number(moment, next_sequence(db, quotation_prefix(moment)))


def next_pi_number(db: Session, *, when: datetime | None = None) -> str:
    moment = when or _now()
    return format_pi_number(moment, next_sequence(db, pi_prefix(moment)))
