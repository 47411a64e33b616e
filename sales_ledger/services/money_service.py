from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from sales_ledger.config import settings
from sales_ledger.errors import ValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class LineAmounts:
    taxable_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def to_decimal(value: object, *, field: str = 'amount') -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f'Invalid {field}')
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f'Invalid {field}') from exc
    if not parsed.is_finite():
        raise ValidationError(f'Invalid {field}')
    return parsed


def to_money(value: object, *, field: str = 'amount') -> Decimal:
    if value is None:
        return ZERO
    return to_decimal(value, field=field).quantize(CENT, rounding=ROUND_HALF_UP)


def amounts_match(left: Decimal, right: Decimal, tolerance: Decimal | None = None) -> bool:
    limit = settings.money_tolerance if tolerance is None else tolerance
    return abs(to_money(left) - to_money(right)) <= limit


def require_match(label: str, supplied: object | None, computed: Decimal) -> None:
    if supplied is None:
        return
    supplied_money = to_money(supplied, field=label)
    if not amounts_match(supplied_money, computed):
        raise ValidationError(
            f'{label} {supplied_money} does not match computed {computed}',
            details={'field': label, 'supplied': str(supplied_money), 'computed': str(computed)},
        )


def compute_line(quantity: Decimal, unit_price: Decimal, tax_rate: Decimal) -> LineAmounts:
    if quantity <= 0:
        raise ValidationError('Item quantity must be greater than zero')
    if unit_price < 0:
        raise ValidationError('Item unit price cannot be negative')
    if tax_rate < 0 or tax_rate > HUNDRED:
        raise ValidationError('Item tax rate must be between 0 and 100')
    taxable = to_money(quantity * unit_price)
    tax = to_money(taxable * tax_rate / HUNDRED)
    return LineAmounts(taxable_amount=taxable, tax_amount=tax, total_amount=taxable + tax)


def scale_line(line: LineAmounts, *, original_quantity: Decimal, new_quantity: Decimal) -> LineAmounts:
    if original_quantity <= 0:
        raise ValidationError('Original quantity must be greater than zero')
    ratio = new_quantity / original_quantity
    taxable = to_money(line.taxable_amount * ratio)
    tax = to_money(line.tax_amount * ratio)
    return LineAmounts(taxable_amount=taxable, tax_amount=tax, total_amount=taxable + tax)


def compute_document_totals(lines: list[LineAmounts], *, discount_amount: Decimal = ZERO) -> DocumentTotals:
    subtotal = sum((line.taxable_amount for line in lines), ZERO)
    tax_amount = sum((line.tax_amount for line in lines), ZERO)
    discount = to_money(discount_amount, field='discount_amount')
    if discount < 0:
        raise ValidationError('Discount cannot be negative')
    if discount > subtotal + tax_amount:
        raise ValidationError('Discount cannot exceed the document amount')
    return DocumentTotals(
        subtotal=subtotal,
        tax_amount=tax_amount,
        discount_amount=discount,
        total_amount=subtotal + tax_amount - discount,
    )


def discount_from_rate(subtotal: Decimal, discount_rate: Decimal) -> Decimal:
    if discount_rate < 0 or discount_rate > HUNDRED:
        raise ValidationError('Discount rate must be between 0 and 100')
    return to_money(subtotal * discount_rate / HUNDRED)
