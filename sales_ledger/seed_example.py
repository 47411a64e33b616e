from decimal import Decimal

from sqlalchemy import select

from sales_ledger.auth import Actor, Role
from sales_ledger.db import SessionLocal, engine
from sales_ledger.models import Base, Quotation
from sales_ledger.schemas import QuotationCreate, QuotationItemIn
from sales_ledger.services.quotation_service import create_quotation

SEED_ACTOR = Actor(email='seed@example.com', role=Role.ADMIN, user_id='seed')


def seed() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        existing = db.execute(select(Quotation.id).where(Quotation.customer_id == 1)).scalars().first()
        if not existing:
            create_quotation(
                db,
                actor=SEED_ACTOR,
                data=QuotationCreate(
                    customer_id=1,
                    items=[
                        QuotationItemIn(
                            product_name='XLPE Cable 4C x 95 sq mm',
                            hsn_code='8544',
                            quantity=Decimal('100'),
                            unit='Mtr',
                            unit_price=Decimal('850.00'),
                        ),
                        QuotationItemIn(
                            product_name='Cable Termination Kit',
                            hsn_code='8547',
                            quantity=Decimal('4'),
                            unit_price=Decimal('2500.00'),
                            tax_rate=Decimal('12'),
                        ),
                    ],
                ),
            )
        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
