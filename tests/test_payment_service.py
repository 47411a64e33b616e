from __future__ import annotations

import re
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

from sales_ledger.errors import FeatureNotImplementedError, InvalidStateError, NotFoundError, ValidationError
from sales_ledger.models import ApprovalStatus, PIStatus, QuotationStatus
from sales_ledger.schemas import PICreate, PIRevisionCreate
from sales_ledger.services.credit_service import get_balance
from sales_ledger.services.payment_service import (
    approve_payment,
    check_balance,
    credit_balance,
    customer_summary,
    generate_payment_reference,
    list_for_customer,
    list_for_quotation,
    quotation_summary,
    record_installment,
    refund_payment,
    update_approval_status,
)
from sales_ledger.services.proforma_invoice_service import (
    approve_pi,
    create_from_quotation,
    create_revised_pi,
    get_pi,
    submit_pi,
)
from sales_ledger.services.quotation_service import get_quotation, list_items
from tests.support import ACCOUNTS, HEAD, SALES, DatabaseTestCase, item

HALF_AMOUNT_PI = PICreate(subtotal=Decimal('500'), tax_amount=Decimal('0'), total_amount=Decimal('500'))


class PaymentReferenceTests(unittest.TestCase):
    def test_reference_format(self) -> None:
        reference = generate_payment_reference(datetime(2025, 1, 1, tzinfo=timezone.utc))
        self.assertRegex(reference, r'^PAY-1735689600000-\d{4}$')


class BalanceCheckTests(unittest.TestCase):
    def setUp(self) -> None:
        self.quotation = SimpleNamespace(id=7, quotation_number='QT202501001', total_amount=Decimal('500.00'))

    def test_outstanding_balance(self) -> None:
        self.assertEqual(check_balance(self.quotation, Decimal('200.00')), Decimal('300.00'))
        self.assertEqual(check_balance(self.quotation, Decimal('500.00')), Decimal('0.00'))

    def test_over_applied_ledger_fails(self) -> None:
        with self.assertRaises(InvalidStateError) as ctx:
            check_balance(self.quotation, Decimal('800.00'))
        self.assertEqual(ctx.exception.details['total_paid'], '800.00')


class InstallmentLedgerTests(DatabaseTestCase):
    def test_partial_then_full_payment_completes_quotation(self) -> None:
        quotation = self.make_quotation()

        first = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('400'))
        self.db.commit()
        self.assertEqual(first.applied_to_quotation, Decimal('400.00'))
        self.assertEqual(first.remaining, Decimal('600.00'))
        self.assertFalse(first.quotation_completed)
        self.assertEqual(get_quotation(self.db, quotation.id).status, QuotationStatus.APPROVED)

        second = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('600'))
        self.db.commit()
        self.assertEqual(second.remaining, Decimal('0.00'))
        self.assertEqual(second.total_paid, Decimal('1000.00'))
        self.assertTrue(second.quotation_completed)
        self.assertEqual(get_quotation(self.db, quotation.id).status, QuotationStatus.COMPLETED)
        self.assertEqual([row.installment_number for row in list_for_quotation(self.db, quotation.id)], [1, 2])

    def test_overpayment_goes_to_credit(self) -> None:
        quotation = self.make_quotation()
        record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('1000'))

        extra = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('250'))
        self.db.commit()
        self.assertEqual(extra.applied_to_quotation, Decimal('0.00'))
        self.assertEqual(extra.overpaid_amount, Decimal('250.00'))
        self.assertEqual(extra.available_credit, Decimal('250.00'))
        self.assertEqual(get_balance(self.db, quotation.customer_id), Decimal('250.00'))
        self.assertEqual(extra.payment.installment_number, 2)

    def test_single_payment_split_between_balance_and_credit(self) -> None:
        quotation = self.make_quotation()
        result = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('1200'))
        self.assertEqual(result.applied_to_quotation, Decimal('1000.00'))
        self.assertEqual(result.overpaid_amount, Decimal('200.00'))
        self.assertTrue(result.quotation_completed)
        self.assertEqual(result.payment.paid_amount, Decimal('1000.00'))
        self.assertEqual(result.payment.remaining_amount, Decimal('0.00'))

    def _approve_root(self, quotation, data: PICreate | None = None):
        root = create_from_quotation(self.db, quotation_id=quotation.id, actor=SALES, data=data or PICreate())
        submit_pi(self.db, pi_id=root.id, actor=SALES)
        approve_pi(self.db, pi_id=root.id, actor=HEAD)
        self.db.commit()
        return root

    def test_partial_pi_does_not_cap_quotation_balance(self) -> None:
        quotation = self.make_quotation()
        partial = self._approve_root(quotation, HALF_AMOUNT_PI)

        first = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('500'))
        self.db.commit()
        self.assertEqual(first.total_payable_amount, Decimal('1000.00'))
        self.assertEqual(first.remaining, Decimal('500.00'))
        self.assertFalse(first.quotation_completed)
        self.assertEqual(first.payment.pi_id, partial.id)

        second = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('500'))
        self.db.commit()
        self.assertEqual(second.applied_to_quotation, Decimal('500.00'))
        self.assertEqual(second.overpaid_amount, Decimal('0.00'))
        self.assertTrue(second.quotation_completed)
        self.assertEqual(get_balance(self.db, quotation.customer_id), Decimal('0.00'))

    def test_full_payment_against_partial_pi_is_not_credited(self) -> None:
        quotation = self.make_quotation()
        self._approve_root(quotation, HALF_AMOUNT_PI)

        result = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('1000'))
        self.db.commit()
        self.assertEqual(result.applied_to_quotation, Decimal('1000.00'))
        self.assertEqual(result.overpaid_amount, Decimal('0.00'))
        self.assertEqual(result.remaining, Decimal('0.00'))
        self.assertEqual(get_balance(self.db, quotation.customer_id), Decimal('0.00'))
        summary = quotation_summary(self.db, quotation.id)
        self.assertEqual(summary['total_paid'], Decimal('1000.00'))
        self.assertLessEqual(summary['total_paid'], summary['total_payable_amount'])

    def test_revision_below_paid_amount_cannot_be_approved(self) -> None:
        quotation = self.make_quotation(
            items=[
                item('Cable', quantity='1', unit_price='500', tax_rate='0'),
                item('Gland', quantity='1', unit_price='500', tax_rate='0'),
            ]
        )
        _, gland = list_items(self.db, quotation.id)
        root = self._approve_root(quotation)
        record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('800'))
        self.db.commit()

        revision = create_revised_pi(
            self.db,
            parent_pi_id=root.id,
            actor=SALES,
            data=PIRevisionCreate(removed_item_ids=[gland.id]),
        )
        submit_pi(self.db, pi_id=revision.id, actor=SALES)
        self.db.commit()
        with self.assertRaises(InvalidStateError) as ctx:
            approve_pi(self.db, pi_id=revision.id, actor=HEAD)
        self.assertEqual(ctx.exception.details['total_paid'], '800.00')
        self.db.rollback()

        self.assertEqual(get_pi(self.db, root.id).status, PIStatus.APPROVED)
        self.assertEqual(get_pi(self.db, revision.id).status, PIStatus.PENDING_APPROVAL)
        summary = quotation_summary(self.db, quotation.id)
        self.assertEqual(summary['total_paid'], Decimal('800.00'))
        self.assertEqual(summary['current_remaining'], Decimal('200.00'))

    def test_revision_keeps_quotation_total_as_balance(self) -> None:
        quotation = self.make_quotation(
            items=[
                item('Cable', quantity='10', unit_price='100', tax_rate='0'),
                item('Gland', quantity='5', unit_price='200', tax_rate='0'),
            ]
        )
        _, gland = list_items(self.db, quotation.id)
        root = self._approve_root(quotation)
        revision = create_revised_pi(
            self.db,
            parent_pi_id=root.id,
            actor=SALES,
            data=PIRevisionCreate(removed_item_ids=[gland.id]),
        )
        submit_pi(self.db, pi_id=revision.id, actor=SALES)
        approve_pi(self.db, pi_id=revision.id, actor=HEAD)
        self.db.commit()

        result = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('1500'))
        self.assertEqual(result.total_payable_amount, Decimal('2000.00'))
        self.assertEqual(result.applied_to_quotation, Decimal('1500.00'))
        self.assertEqual(result.overpaid_amount, Decimal('0.00'))
        self.assertEqual(result.payment.pi_id, revision.id)

        with self.assertRaises(ValidationError):
            record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, pi_id=root.id, amount=Decimal('10'))

    def test_payment_cannot_be_attributed_to_open_pi(self) -> None:
        quotation = self.make_quotation()
        draft = create_from_quotation(self.db, quotation_id=quotation.id, actor=SALES, data=PICreate())
        self.db.commit()
        with self.assertRaises(ValidationError) as ctx:
            record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, pi_id=draft.id, amount=Decimal('10'))
        self.assertEqual(ctx.exception.details['status'], 'draft')

    def test_pending_entry_does_not_move_balance_until_approved(self) -> None:
        quotation = self.make_quotation()
        pending = record_installment(
            self.db,
            actor=SALES,
            quotation_id=quotation.id,
            amount=Decimal('1100'),
            approval_status=ApprovalStatus.PENDING,
        )
        self.db.commit()
        self.assertEqual(pending.applied_to_quotation, Decimal('0.00'))
        self.assertEqual(pending.remaining, Decimal('1000.00'))
        self.assertEqual(quotation_summary(self.db, quotation.id)['total_paid'], Decimal('0.00'))

        payment = approve_payment(self.db, payment_id=pending.payment.id, actor=ACCOUNTS, notes='Bank statement matched')
        self.db.commit()
        self.assertEqual(payment.approval_status, ApprovalStatus.APPROVED)
        self.assertEqual(payment.applied_amount, Decimal('1000.00'))
        self.assertEqual(payment.overpaid_amount, Decimal('100.00'))
        self.assertEqual(payment.approval_notes, 'Bank statement matched')
        self.assertEqual(get_balance(self.db, quotation.customer_id), Decimal('100.00'))
        self.assertEqual(get_quotation(self.db, quotation.id).status, QuotationStatus.COMPLETED)

    def test_approval_state_machine(self) -> None:
        quotation = self.make_quotation()
        pending = record_installment(
            self.db,
            actor=SALES,
            quotation_id=quotation.id,
            amount=Decimal('100'),
            approval_status=ApprovalStatus.PENDING,
        )
        rejected = update_approval_status(
            self.db,
            payment_id=pending.payment.id,
            status=ApprovalStatus.REJECTED,
            actor=ACCOUNTS,
        )
        self.assertEqual(rejected.approval_status, ApprovalStatus.REJECTED)
        self.assertEqual(rejected.applied_amount, Decimal('0.00'))

        reopened = update_approval_status(
            self.db,
            payment_id=pending.payment.id,
            status=ApprovalStatus.PENDING,
            actor=ACCOUNTS,
        )
        self.assertEqual(reopened.approval_status, ApprovalStatus.PENDING)

        approve_payment(self.db, payment_id=pending.payment.id, actor=ACCOUNTS)
        with self.assertRaises(InvalidStateError):
            update_approval_status(
                self.db,
                payment_id=pending.payment.id,
                status=ApprovalStatus.REJECTED,
                actor=ACCOUNTS,
            )
        # Re-approving is a no-op on money.
        again = approve_payment(self.db, payment_id=pending.payment.id, actor=ACCOUNTS, notes='checked twice')
        self.assertEqual(again.applied_amount, Decimal('100.00'))
        self.assertEqual(quotation_summary(self.db, quotation.id)['total_paid'], Decimal('100.00'))

    def test_lead_only_payment_becomes_credit(self) -> None:
        result = record_installment(self.db, actor=ACCOUNTS, lead_id=2, amount=Decimal('300'))
        self.db.commit()
        self.assertEqual(result.overpaid_amount, Decimal('300.00'))
        self.assertEqual(result.payment.customer_id, 2)
        self.assertEqual(result.payment.customer_name, 'Narmada Power Works')
        self.assertEqual(credit_balance(self.db, 2)['balance'], Decimal('300.00'))
        self.assertEqual(len(list_for_customer(self.db, 2)), 1)

    def test_validation(self) -> None:
        quotation = self.make_quotation()
        with self.assertRaises(ValidationError):
            record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('0'))
        with self.assertRaises(ValidationError):
            record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('-5'))
        with self.assertRaises(ValidationError):
            record_installment(self.db, actor=ACCOUNTS, amount=Decimal('10'))
        with self.assertRaises(ValidationError):
            record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, lead_id=2, amount=Decimal('10'))
        with self.assertRaises(NotFoundError):
            record_installment(self.db, actor=ACCOUNTS, quotation_id=404, amount=Decimal('10'))

    def test_quotation_must_be_approved(self) -> None:
        draft = self.make_quotation(approve=False)
        with self.assertRaises(InvalidStateError):
            record_installment(self.db, actor=ACCOUNTS, quotation_id=draft.id, amount=Decimal('10'))

    def test_generated_reference_is_stored(self) -> None:
        quotation = self.make_quotation()
        result = record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('10'))
        self.assertTrue(re.match(r'^PAY-\d+-\d{4}$', result.payment.payment_reference))

    def test_refund_is_not_implemented(self) -> None:
        with self.assertRaises(FeatureNotImplementedError):
            refund_payment(self.db, actor=ACCOUNTS)


class SummaryTests(DatabaseTestCase):
    def test_quotation_summary_without_payments(self) -> None:
        quotation = self.make_quotation()
        summary = quotation_summary(self.db, quotation.id)
        self.assertEqual(summary['total_payable_amount'], Decimal('1000.00'))
        self.assertEqual(summary['current_remaining'], Decimal('1000.00'))
        self.assertEqual(summary['total_installments'], 0)
        self.assertEqual(summary['payment_status'], 'pending')
        self.assertIsNone(summary['last_payment_date'])

    def test_quotation_summary_counts(self) -> None:
        quotation = self.make_quotation()
        record_installment(self.db, actor=ACCOUNTS, quotation_id=quotation.id, amount=Decimal('300'))
        record_installment(
            self.db,
            actor=SALES,
            quotation_id=quotation.id,
            amount=Decimal('200'),
            approval_status=ApprovalStatus.PENDING,
        )
        self.db.commit()
        summary = quotation_summary(self.db, quotation.id)
        self.assertEqual(summary['total_paid'], Decimal('300.00'))
        self.assertEqual(summary['current_remaining'], Decimal('700.00'))
        self.assertEqual(summary['total_installments'], 2)
        self.assertEqual(summary['approved_installments'], 1)
        self.assertEqual(summary['pending_installments'], 1)
        self.assertEqual(summary['payment_status'], 'partial')

    def test_customer_summary(self) -> None:
        first = self.make_quotation(customer_id=1)
        second = self.make_quotation(customer_id=1)
        record_installment(self.db, actor=ACCOUNTS, quotation_id=first.id, amount=Decimal('1100'))
        record_installment(self.db, actor=ACCOUNTS, quotation_id=second.id, amount=Decimal('250'))
        self.db.commit()
        summary = customer_summary(self.db, 1)
        self.assertEqual(summary['total_installments'], 2)
        self.assertEqual(summary['total_paid'], Decimal('1250.00'))
        self.assertEqual(summary['total_overpaid'], Decimal('100.00'))
        self.assertEqual(summary['current_credit'], Decimal('100.00'))
        self.assertEqual([row['payment_status'] for row in summary['quotations']], ['paid', 'partial'])


if __name__ == '__main__':
    unittest.main()
