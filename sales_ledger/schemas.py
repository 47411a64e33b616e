from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from sales_ledger.models import ApprovalStatus, DocumentType, PIStatus, QuotationStatus
from sales_ledger.services.money_service import to_money

MoneyOut = Annotated[Decimal, AfterValidator(to_money)]


def envelope(data: Any = None, *, message: str | None = None) -> dict:
    body: dict = {'success': True, 'data': data}
    if message:
        body['message'] = message
    return body


# ----- requests -----


class QuotationItemIn(BaseModel):
    product_name: str = Field(..., min_length=1)
    description: str | None = None
    hsn_code: str | None = None
    quantity: Decimal = Field(..., gt=0)
    unit: str = 'Nos'
    unit_price: Decimal = Field(..., ge=0)
    tax_rate: Decimal | None = Field(None, ge=0, le=100)
    taxable_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    total_amount: Decimal | None = None


class CustomerFieldsIn(BaseModel):
    customer_name: str | None = None
    customer_business: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    customer_address: str | None = None
    customer_gst_no: str | None = None
    customer_state: str | None = None


class QuotationCreate(CustomerFieldsIn):
    customer_id: int
    quotation_date: date | None = None
    valid_until: date | None = None
    items: list[QuotationItemIn] = Field(..., min_length=1)
    discount_rate: Decimal | None = Field(None, ge=0, le=100)
    discount_amount: Decimal | None = Field(None, ge=0)
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total_amount: Decimal | None = None


class QuotationUpdate(CustomerFieldsIn):
    quotation_date: date | None = None
    valid_until: date | None = None
    items: list[QuotationItemIn] = Field(..., min_length=1)
    discount_rate: Decimal | None = Field(None, ge=0, le=100)
    discount_amount: Decimal | None = Field(None, ge=0)
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total_amount: Decimal | None = None


class NotesIn(BaseModel):
    notes: str | None = None


class SendQuotationIn(BaseModel):
    sent_to: str | None = None
    sent_via: str = 'email'


class AcceptQuotationIn(BaseModel):
    accepted_by: str | None = None


class DispatchFieldsIn(BaseModel):
    dispatch_mode: str | None = None
    transport_name: str | None = None
    vehicle_number: str | None = None
    transport_id: str | None = None
    lr_no: str | None = None
    courier_name: str | None = None
    consignment_no: str | None = None
    by_hand: str | None = None
    post_service: str | None = None
    carrier_name: str | None = None
    carrier_number: str | None = None


class PICreate(DispatchFieldsIn):
    pi_date: date | None = None
    valid_until: date | None = None
    template: str | None = None
    notes: str | None = None
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total_amount: Decimal | None = None


class ReducedItemIn(BaseModel):
    item_id: int
    quantity: Decimal = Field(..., gt=0)


class PIRevisionCreate(BaseModel):
    removed_item_ids: list[int] = Field(default_factory=list)
    reduced_items: list[ReducedItemIn] = Field(default_factory=list)
    subtotal: Decimal | None = None
    tax_amount: Decimal | None = None
    total_amount: Decimal | None = None
    notes: str | None = None


class PIUpdate(DispatchFieldsIn):
    model_config = ConfigDict(extra='forbid')

    pi_date: date | None = None
    valid_until: date | None = None
    template: str | None = None
    notes: str | None = None


class PIRejectIn(BaseModel):
    reason: str | None = None


class PaymentCreate(BaseModel):
    quotation_id: int | None = None
    lead_id: int | None = None
    pi_id: int | None = None
    installment_amount: Decimal
    payment_method: str | None = None
    payment_date: date | None = None
    payment_reference: str | None = None
    payment_receipt_url: str | None = None
    remarks: str | None = None
    approval_status: ApprovalStatus = ApprovalStatus.APPROVED


class ApprovalUpdate(BaseModel):
    status: ApprovalStatus
    notes: str | None = None


# ----- responses -----


class QuotationItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_order: int
    product_name: str
    description: str | None
    hsn_code: str | None
    quantity: Decimal
    unit: str
    unit_price: MoneyOut
    tax_rate: Decimal
    taxable_amount: MoneyOut
    tax_amount: MoneyOut
    total_amount: MoneyOut


class QuotationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quotation_number: str
    customer_id: int
    salesperson_id: str | None
    created_by: str
    customer_name: str | None
    customer_business: str | None
    customer_phone: str | None
    customer_email: str | None
    customer_address: str | None
    customer_gst_no: str | None
    customer_state: str | None
    quotation_date: date
    valid_until: date | None
    status: QuotationStatus
    subtotal: MoneyOut
    tax_amount: MoneyOut
    discount_rate: Decimal
    discount_amount: MoneyOut
    total_amount: MoneyOut
    verification_notes: str | None
    sent_to: str | None
    sent_via: str | None
    customer_accepted_by: str | None
    submitted_for_verification_at: datetime | None
    approved_at: datetime | None
    rejected_at: datetime | None
    sent_to_customer_at: datetime | None
    customer_accepted_at: datetime | None
    completed_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None
    items: list[QuotationItemOut] = Field(default_factory=list)


class EffectiveItemOut(BaseModel):
    item_id: int
    product_name: str
    quantity: Decimal
    original_quantity: Decimal
    unit_price: MoneyOut
    tax_rate: Decimal
    taxable_amount: MoneyOut
    tax_amount: MoneyOut
    total_amount: MoneyOut
    reduced: bool


class ProformaInvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pi_number: str
    quotation_id: int
    customer_id: int
    parent_pi_id: int | None
    revision_no: int
    is_revision: bool
    amendment_detail: dict | None
    status: PIStatus
    subtotal: MoneyOut
    tax_amount: MoneyOut
    discount_amount: MoneyOut
    total_amount: MoneyOut
    pi_date: date
    valid_until: date | None
    template: str
    dispatch_mode: str | None
    transport_name: str | None
    vehicle_number: str | None
    transport_id: str | None
    lr_no: str | None
    courier_name: str | None
    consignment_no: str | None
    by_hand: str | None
    post_service: str | None
    carrier_name: str | None
    carrier_number: str | None
    notes: str | None
    created_by: str
    submitted_at: datetime | None
    approved_by: str | None
    approved_at: datetime | None
    rejected_by: str | None
    rejected_at: datetime | None
    rejection_reason: str | None
    superseded_at: datetime | None
    superseded_by_pi_id: int | None
    created_at: datetime | None
    effective_items: list[EffectiveItemOut] | None = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    quotation_id: int | None
    lead_id: int | None
    pi_id: int | None
    customer_id: int
    customer_name: str | None
    installment_number: int
    installment_amount: MoneyOut
    applied_amount: MoneyOut
    overpaid_amount: MoneyOut
    total_payable_amount: MoneyOut
    paid_amount: MoneyOut
    remaining_amount: MoneyOut
    available_credit: MoneyOut
    payment_method: str | None
    payment_date: date
    payment_reference: str
    receipt_url: str | None
    remarks: str | None
    approval_status: ApprovalStatus
    approval_action_by: str | None
    approval_notes: str | None
    approved_at: datetime | None
    is_refund: bool
    created_by: str
    created_at: datetime | None


class InstallmentResultOut(BaseModel):
    payment: PaymentOut
    applied_to_quotation: MoneyOut
    overpaid_amount: MoneyOut
    total_payable_amount: MoneyOut
    total_paid: MoneyOut
    remaining: MoneyOut
    available_credit: MoneyOut
    installment_number: int
    quotation_completed: bool


class QuotationPaymentSummaryOut(BaseModel):
    quotation_id: int
    quotation_number: str
    quotation_status: QuotationStatus
    active_pi_id: int | None
    total_payable_amount: MoneyOut
    total_paid: MoneyOut
    total_overpaid: MoneyOut
    current_remaining: MoneyOut
    total_installments: int
    approved_installments: int
    pending_installments: int
    last_payment_date: date | None
    payment_status: str


class CustomerPaymentSummaryOut(BaseModel):
    customer_id: int
    total_installments: int
    total_paid: MoneyOut
    total_overpaid: MoneyOut
    current_credit: MoneyOut
    quotations: list[QuotationPaymentSummaryOut]


class CreditOut(BaseModel):
    customer_id: int
    balance: MoneyOut


class ApprovalLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    document_type: DocumentType
    document_id: int
    action: str
    from_status: str | None
    to_status: str | None
    performed_by: str
    performed_by_type: str
    notes: str | None
    created_at: datetime | None


class QuotationCompleteOut(BaseModel):
    quotation: QuotationOut
    approval_logs: list[ApprovalLogOut]
    proforma_invoices: list[ProformaInvoiceOut]
    payments: list[PaymentOut]
