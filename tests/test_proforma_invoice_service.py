from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

from sales_ledger.errors import (
    ConcurrencyConflictError,
    ImmutableDocumentError,
    InvalidStateError,
    ValidationError,
)
from sales_ledger.models import DocumentType, PIStatus
from sales_ledger.schemas import PICreate, PIRevisionCreate, PIUpdate, ReducedItemIn
from sales_ledger.services.audit_service import list_for_document
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
from sales_ledger.services.quotation_service import list_items
from tests.support import HEAD, SALES, DatabaseTestCase, item


class ProformaInvoiceTestCase(DatabaseTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.quotation = self.make_quotation(
            items=[
                item('Cable', quantity='10', unit_price='100', tax_rate='18'),
                item('Gland', quantity='5', unit_price='200', tax_rate='18'),
            ]
        )
        self.cable, self.gland = list_items(self.db, self.quotation.id)

    def approved_root(self):
        pi = create_from_quotation(
            self.db,
            quotation_id=self.quotation.id,
            actor=SALES,
            data=PICreate(dispatch_mode='road', transport_name='VRL Logistics', vehicle_number='MP20 AB 1234'),
        )
        submit_pi(self.db, pi_id=pi.id, actor=SALES)
        approve_pi(self.db, pi_id=pi.id, actor=HEAD)
        self.db.commit()
        return pi


class CreateFromQuotationTests(ProformaInvoiceTestCase):
    def test_snapshots_quotation_totals(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        self.assertEqual(pi.status, PIStatus.DRAFT)
        self.assertEqual(pi.total_amount, Decimal('2360.00'))
        self.assertEqual(pi.revision_no, 0)
        self.assertFalse(pi.is_revision)
        self.assertEqual(pi.template, 'template1')
        self.assertTrue(pi.pi_number.startswith('PI-'))
        self.assertEqual(len(effective_items(self.db, pi)), 2)

    def test_override_totals_must_be_consistent(self) -> None:
        pi = create_from_quotation(
            self.db,
            quotation_id=self.quotation.id,
            actor=SALES,
            data=PICreate(subtotal=Decimal('1000'), tax_amount=Decimal('180'), total_amount=Decimal('1180')),
        )
        self.assertEqual(pi.total_amount, Decimal('1180.00'))

    def test_override_total_cannot_exceed_quotation(self) -> None:
        with self.assertRaises(ValidationError):
            create_from_quotation(
                self.db,
                quotation_id=self.quotation.id,
                actor=SALES,
                data=PICreate(subtotal=Decimal('3000'), tax_amount=Decimal('0'), total_amount=Decimal('3000')),
            )

    def test_override_total_must_be_positive(self) -> None:
        with self.assertRaises(ValidationError):
            create_from_quotation(
                self.db,
                quotation_id=self.quotation.id,
                actor=SALES,
                data=PICreate(subtotal=Decimal('0'), tax_amount=Decimal('0'), total_amount=Decimal('0')),
            )

    def test_requires_approved_quotation(self) -> None:
        draft = self.make_quotation(approve=False)
        with self.assertRaises(InvalidStateError):
            create_from_quotation(self.db, quotation_id=draft.id, actor=SALES, data=PICreate())

    def test_refuses_second_open_pi(self) -> None:
        create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        with self.assertRaises(InvalidStateError):
            create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())

    def test_refuses_new_root_when_active_pi_exists(self) -> None:
        self.approved_root()
        with self.assertRaises(InvalidStateError) as ctx:
            create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        self.assertIn('active_pi_id', ctx.exception.details)


class WorkflowTests(ProformaInvoiceTestCase):
    def test_root_approval_makes_it_active(self) -> None:
        pi = self.approved_root()
        self.assertEqual(get_active_pi(self.db, self.quotation.id).id, pi.id)
        self.assertEqual(get_active_pi(self.db, self.quotation.id).id, pi.id)
        self.assertEqual(pi.approved_by, HEAD.email)

    def test_reject_and_guards(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        with self.assertRaises(InvalidStateError):
            approve_pi(self.db, pi_id=pi.id, actor=HEAD)
        submit_pi(self.db, pi_id=pi.id, actor=SALES)
        reject_pi(self.db, pi_id=pi.id, actor=HEAD, reason='Wrong transport')
        self.assertEqual(pi.status, PIStatus.REJECTED)
        self.assertEqual(pi.rejection_reason, 'Wrong transport')
        self.assertIsNone(get_active_pi(self.db, self.quotation.id))

    def test_revised_endpoints_require_a_revision(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        with self.assertRaises(ValidationError):
            submit_pi(self.db, pi_id=pi.id, actor=SALES, require_revision=True)

    def test_get_active_pi_fails_loudly_on_duplicates(self) -> None:
        result = MagicMock()
        result.scalars.return_value.all.return_value = [SimpleNamespace(id=1), SimpleNamespace(id=2)]
        db = SimpleNamespace(execute=lambda _stmt: result)
        with self.assertRaises(ConcurrencyConflictError):
            get_active_pi(db, 10)


class RevisionTests(ProformaInvoiceTestCase):
    def test_revision_supersedes_parent_on_approval(self) -> None:
        parent = self.approved_root()
        revision = create_revised_pi(
            self.db,
            parent_pi_id=parent.id,
            actor=SALES,
            data=PIRevisionCreate(removed_item_ids=[self.gland.id]),
        )
        self.assertEqual(revision.parent_pi_id, parent.id)
        self.assertEqual(revision.revision_no, 1)
        self.assertEqual(revision.total_amount, Decimal('1180.00'))
        self.assertEqual(revision.transport_name, 'VRL Logistics')
        self.assertEqual(revision.status, PIStatus.DRAFT)
        self.assertEqual(parent.status, PIStatus.APPROVED)

        submit_pi(self.db, pi_id=revision.id, actor=SALES, require_revision=True)
        approve_pi(self.db, pi_id=revision.id, actor=HEAD, require_revision=True)
        self.db.commit()

        self.assertEqual(get_pi(self.db, parent.id).status, PIStatus.SUPERSEDED)
        self.assertEqual(get_pi(self.db, parent.id).superseded_by_pi_id, revision.id)
        self.assertEqual(get_pi(self.db, revision.id).status, PIStatus.APPROVED)
        self.assertEqual(get_active_pi(self.db, self.quotation.id).id, revision.id)

        parent_logs = list_for_document(self.db, document_type=DocumentType.PROFORMA_INVOICE, document_id=parent.id)
        self.assertEqual(parent_logs[-1].action, 'superseded')

    def test_reduction_scales_line_amounts(self) -> None:
        parent = self.approved_root()
        revision = create_revised_pi(
            self.db,
            parent_pi_id=parent.id,
            actor=SALES,
            data=PIRevisionCreate(
                reduced_items=[ReducedItemIn(item_id=self.cable.id, quantity=Decimal('4'))],
                total_amount=Decimal('1652.00'),
            ),
        )
        self.assertEqual(revision.subtotal, Decimal('1400.00'))
        self.assertEqual(revision.tax_amount, Decimal('252.00'))
        rows = {row['item_id']: row for row in effective_items(self.db, revision)}
        self.assertTrue(rows[self.cable.id]['reduced'])
        self.assertEqual(rows[self.cable.id]['total_amount'], Decimal('472.00'))
        self.assertEqual(rows[self.gland.id]['total_amount'], Decimal('1180.00'))

    def test_amendments_are_cumulative(self) -> None:
        parent = self.approved_root()
        first = create_revised_pi(
            self.db,
            parent_pi_id=parent.id,
            actor=SALES,
            data=PIRevisionCreate(removed_item_ids=[self.gland.id]),
        )
        submit_pi(self.db, pi_id=first.id, actor=SALES)
        approve_pi(self.db, pi_id=first.id, actor=HEAD)

        second = create_revised_pi(
            self.db,
            parent_pi_id=first.id,
            actor=SALES,
            data=PIRevisionCreate(reduced_items=[ReducedItemIn(item_id=self.cable.id, quantity=Decimal('4'))]),
        )
        self.assertEqual(second.amendment_detail['removed_item_ids'], [self.gland.id])
        self.assertEqual(second.amendment_detail['reduced_items'], {str(self.cable.id): '4'})
        self.assertEqual(second.total_amount, Decimal('472.00'))
        self.assertEqual([row['item_id'] for row in effective_items(self.db, second)], [self.cable.id])
        self.assertEqual([pi.id for pi in revision_chain(self.db, second.id)], [parent.id, first.id, second.id])

    def test_sibling_revision_cannot_be_approved_after_parent_superseded(self) -> None:
        parent = self.approved_root()
        first = create_revised_pi(
            self.db,
            parent_pi_id=parent.id,
            actor=SALES,
            data=PIRevisionCreate(removed_item_ids=[self.gland.id]),
        )
        second = create_revised_pi(
            self.db,
            parent_pi_id=parent.id,
            actor=SALES,
            data=PIRevisionCreate(reduced_items=[ReducedItemIn(item_id=self.gland.id, quantity=Decimal('1'))]),
        )
        self.assertEqual(second.revision_no, 2)
        submit_pi(self.db, pi_id=first.id, actor=SALES)
        submit_pi(self.db, pi_id=second.id, actor=SALES)
        approve_pi(self.db, pi_id=first.id, actor=HEAD)
        with self.assertRaises(InvalidStateError):
            approve_pi(self.db, pi_id=second.id, actor=HEAD)

    def test_rejecting_revision_leaves_parent_active(self) -> None:
        parent = self.approved_root()
        revision = create_revised_pi(
            self.db,
            parent_pi_id=parent.id,
            actor=SALES,
            data=PIRevisionCreate(removed_item_ids=[self.gland.id]),
        )
        submit_pi(self.db, pi_id=revision.id, actor=SALES)
        reject_pi(self.db, pi_id=revision.id, actor=HEAD, reason='Keep glands', require_revision=True)
        self.assertEqual(get_active_pi(self.db, self.quotation.id).id, parent.id)

    def test_revision_validation(self) -> None:
        parent = self.approved_root()
        cases = [
            PIRevisionCreate(),
            PIRevisionCreate(removed_item_ids=[9999]),
            PIRevisionCreate(removed_item_ids=[self.cable.id, self.gland.id]),
            PIRevisionCreate(reduced_items=[ReducedItemIn(item_id=self.cable.id, quantity=Decimal('10'))]),
            PIRevisionCreate(
                removed_item_ids=[self.cable.id],
                reduced_items=[ReducedItemIn(item_id=self.cable.id, quantity=Decimal('2'))],
            ),
            PIRevisionCreate(removed_item_ids=[self.gland.id], total_amount=Decimal('2360.00')),
        ]
        for data in cases:
            with self.subTest(data=data):
                with self.assertRaises(ValidationError):
                    create_revised_pi(self.db, parent_pi_id=parent.id, actor=SALES, data=data)

    def test_only_approved_pi_can_be_revised(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        with self.assertRaises(InvalidStateError):
            create_revised_pi(
                self.db,
                parent_pi_id=pi.id,
                actor=SALES,
                data=PIRevisionCreate(removed_item_ids=[self.gland.id]),
            )


class UpdateAndDeleteTests(ProformaInvoiceTestCase):
    def test_draft_accepts_dispatch_updates(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        update_pi(
            self.db,
            pi_id=pi.id,
            actor=SALES,
            data=PIUpdate(courier_name='Blue Dart', consignment_no='BD123', template='template2'),
        )
        self.assertEqual(pi.courier_name, 'Blue Dart')
        self.assertEqual(pi.template, 'template2')
        self.assertEqual(pi.total_amount, Decimal('2360.00'))

    def test_approved_pi_is_immutable(self) -> None:
        pi = self.approved_root()
        with self.assertRaises(ImmutableDocumentError):
            update_pi(self.db, pi_id=pi.id, actor=SALES, data=PIUpdate(notes='changed'))
        self.db.rollback()
        self.assertIsNone(get_pi(self.db, pi.id).notes)

    def test_rejected_pi_cannot_be_edited(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        submit_pi(self.db, pi_id=pi.id, actor=SALES)
        reject_pi(self.db, pi_id=pi.id, actor=HEAD)
        with self.assertRaises(InvalidStateError) as ctx:
            update_pi(self.db, pi_id=pi.id, actor=SALES, data=PIUpdate(pi_date=date(2025, 1, 1)))
        self.assertNotIsInstance(ctx.exception, ImmutableDocumentError)

    def test_delete_only_in_draft(self) -> None:
        pi = self.approved_root()
        with self.assertRaises(InvalidStateError):
            delete_pi(self.db, pi_id=pi.id, actor=SALES)

    def test_delete_draft(self) -> None:
        pi = create_from_quotation(self.db, quotation_id=self.quotation.id, actor=SALES, data=PICreate())
        delete_pi(self.db, pi_id=pi.id, actor=SALES)
        self.db.commit()
        self.assertEqual(list_for_quotation(self.db, self.quotation.id), [])


if __name__ == '__main__':
    unittest.main()
