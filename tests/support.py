from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sales_ledger.auth import Actor, Role
from sales_ledger.models import Base, Quotation
from sales_ledger.schemas import QuotationCreate, QuotationItemIn
from sales_ledger.services.quotation_service import approve_quotation, create_quotation, submit_for_verification

SALES = Actor(email='rep@example.com', role=Role.SALESPERSON, user_id='u-100')
HEAD = Actor(email='head@example.com', role=Role.DEPARTMENT_HEAD, user_id='u-200')
ACCOUNTS = Actor(email='accounts@example.com', role=Role.ACCOUNTS, user_id='u-300')


def make_engine():
    return create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)


def item(name: str = 'Panel', *, quantity: str = '1', unit_price: str = '1000.00', tax_rate: str = '0') -> QuotationItemIn:
    return QuotationItemIn(
        product_name=name,
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price),
        tax_rate=Decimal(tax_rate),
    )


class DatabaseTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self.db = self.session_factory()

    def tearDown(self) -> None:
        self.db.close()
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()

    def make_quotation(
        self,
        *,
        items: list[QuotationItemIn] | None = None,
        customer_id: int = 1,
        approve: bool = True,
    ) -> Quotation:
        quotation = create_quotation(
            self.db,
            actor=SALES,
            data=QuotationCreate(customer_id=customer_id, items=items or [item()]),
        )
        if approve:
            submit_for_verification(self.db, quotation_id=quotation.id, actor=SALES)
            approve_quotation(self.db, quotation_id=quotation.id, actor=HEAD)
        self.db.commit()
        return quotation
