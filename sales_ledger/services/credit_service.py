from __future__ import annotations

from decimal import Decimal

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sales_ledger.db import dialect_insert
from sales_ledger.errors import ValidationError
from sales_ledger.models import CustomerCredit
from sales_ledger.services.money_service import ZERO, to_money


def get_credit(db: Session, customer_id: int) -> CustomerCredit | None:
    return db.execute(select(CustomerCredit).where(CustomerCredit.customer_id == customer_id)).scalar_one_or_none()


def get_balance(db: Session, customer_id: int) -> Decimal:
    balance = db.execute(
        select(CustomerCredit.balance).where(CustomerCredit.customer_id == customer_id)
    ).scalar_one_or_none()
    return to_money(balance) if balance is not None else ZERO


def ensure_for_customer(db: Session, customer_id: int) -> CustomerCredit:
    stmt = dialect_insert(db, CustomerCredit).values(customer_id=customer_id, balance=ZERO)
    db.execute(stmt.on_conflict_do_nothing(index_elements=[CustomerCredit.customer_id]))
    return db.execute(
        select(CustomerCredit).where(CustomerCredit.customer_id == customer_id).execution_options(populate_existing=True)
    ).scalar_one()


def increment_balance(db: Session, customer_id: int, delta: Decimal) -> Decimal:
    amount = to_money(delta, field='credit delta')
    if amount <= 0:
        raise ValidationError('Credit increment must be greater than zero')

    stmt = dialect_insert(db, CustomerCredit).values(customer_id=customer_id, balance=amount)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CustomerCredit.customer_id],
        set_={'balance': CustomerCredit.balance + stmt.excluded.balance, 'updated_at': func.now()},
    ).returning(CustomerCredit.balance)
    balance = to_money(db.execute(stmt).scalar_one())
    logger.info(f'Customer {customer_id} credit increased by {amount} to {balance}')
    return balance
