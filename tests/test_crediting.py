#!/usr/bin/env python3
"""
Unit tests for exactly-once crediting and orphaned credit recovery.
"""

import unittest
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import select

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import OrderStatus, PayInCurrency
from purchase_service.crediting import CreditingEngine
from purchase_service.models import CreditRecord, Outbox
from purchase_fakes import PAYER, FlakyLedgerEngine, ServiceHarness, create_order, verified_sol_order


class CreditingTestCase(unittest.TestCase):

    def setUp(self):
        self.h = ServiceHarness()
        self.engine = CreditingEngine(self.h.session_factory, clock=self.h.clock)

    def tearDown(self):
        self.h.close()

    def records(self):
        with self.h.session_factory() as db:
            return db.execute(select(CreditRecord)).scalars().all()

    def events(self):
        with self.h.session_factory() as db:
            return db.execute(select(Outbox.payload).order_by(Outbox.id)).scalars().all()

    def balance(self, address=PAYER):
        return self.engine.balance(address).token_balance


class TestExactlyOnceCredit(CreditingTestCase):

    def test_verified_order_is_credited(self):
        order_id = verified_sol_order(self.h, "sig-a")
        result = self.engine.credit(order_id)

        self.assertTrue(result.applied)
        self.assertEqual(result.new_balance, 1000)
        self.assertEqual(self.h.service.verifier.load(order_id).status, OrderStatus.CREDITED)

        account = self.engine.balance(PAYER)
        self.assertEqual(account.total_earned, 1000)
        [record] = self.records()
        self.assertTrue(record.balance_applied)
        self.assertEqual(record.amount_credited, 1000)

    def test_second_credit_is_a_no_op(self):
        order_id = verified_sol_order(self.h, "sig-b")
        self.engine.credit(order_id)
        result = self.engine.credit(order_id)

        self.assertFalse(result.applied)
        self.assertEqual(result.new_balance, 1000)
        self.assertEqual(len(self.records()), 1)

    def test_unverified_order_not_credited(self):
        order = create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)
        result = self.engine.credit(order.order_id)
        self.assertFalse(result.applied)
        self.assertEqual(self.records(), [])
        self.assertEqual(self.balance(), 0)

    def test_unknown_order(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.engine.credit("ord_missing")
        self.assertEqual(ctx.exception.code, ErrorCodes.ORDER_NOT_FOUND)

    def test_concurrent_credits_apply_once(self):
        order_id = verified_sol_order(self.h, "sig-race")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: self.engine.credit(order_id), range(16)))

        self.assertEqual(sum(1 for r in results if r.applied), 1)
        self.assertEqual(len(self.records()), 1)
        self.assertEqual(self.balance(), 1000)

    def test_credits_accumulate_across_orders(self):
        first = verified_sol_order(self.h, "sig-1", tokens=1000)
        second = verified_sol_order(self.h, "sig-2", tokens=250)
        self.engine.credit(first)
        result = self.engine.credit(second)
        self.assertEqual(result.new_balance, 1250)

    def test_credit_event_published_with_balance_change(self):
        order_id = verified_sol_order(self.h, "sig-evt")
        self.engine.credit(order_id)
        self.assertIn('"type":"OrderCredited"', self.events()[-1])

    def test_unknown_address_reads_as_empty(self):
        account = self.engine.balance("nobody")
        self.assertEqual((account.token_balance, account.secondary_balance), (0, 0))


class TestOrphanedCredits(CreditingTestCase):

    def setUp(self):
        super().setUp()
        self.flaky = FlakyLedgerEngine(self.h.session_factory, clock=self.h.clock)
        self.order_id = verified_sol_order(self.h, "sig-orphan")
        self.result = self.flaky.credit(self.order_id)

    def test_split_failure_leaves_unapplied_record(self):
        self.assertFalse(self.result.applied)
        self.assertTrue(self.result.orphaned)

        [record] = self.records()
        self.assertFalse(record.balance_applied)
        self.assertEqual(self.balance(), 0)
        self.assertEqual(self.h.service.verifier.load(self.order_id).status, OrderStatus.VERIFIED)
        self.assertIn('"type":"CreditOrphaned"', self.events()[-1])

    def test_orphan_logged_as_error(self):
        with self.assertLogs("purchase_service.crediting", level="ERROR") as logs:
            FlakyLedgerEngine(self.h.session_factory, clock=self.h.clock).replay_orphan(self.result.record_id)
        self.assertIn("Split failure", logs.output[0])

    def test_orphan_listed_after_grace_period(self):
        self.assertEqual(self.engine.list_orphans(), [])
        self.h.clock.advance(31)
        orphans = self.engine.list_orphans()
        self.assertEqual([o.order_id for o in orphans], [self.order_id])

    def test_credit_again_never_claims_a_second_record(self):
        result = self.engine.credit(self.order_id)
        self.assertFalse(result.applied)
        self.assertEqual(len(self.records()), 1)
        self.assertEqual(self.balance(), 0)

    def test_replay_applies_balance_once(self):
        result = self.engine.replay_orphan(self.result.record_id)
        self.assertTrue(result.applied)
        self.assertEqual(result.new_balance, 1000)
        self.assertEqual(self.h.service.verifier.load(self.order_id).status, OrderStatus.CREDITED)

        again = self.engine.replay_orphan(self.result.record_id)
        self.assertFalse(again.applied)
        self.assertEqual(self.balance(), 1000)

        self.h.clock.advance(60)
        self.assertEqual(self.engine.list_orphans(), [])

    def test_replay_unknown_record(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.engine.replay_orphan(9999)
        self.assertEqual(ctx.exception.code, ErrorCodes.CREDIT_RECORD_NOT_FOUND)

    def test_reconciliation_queue_lists_orphan(self):
        self.h.clock.advance(31)
        queue = self.h.service.reconciliation_queue()
        self.assertEqual(queue.count, 1)
        self.assertEqual(queue.items[0].record_id, self.result.record_id)
        self.assertEqual(queue.items[0].amount_credited, 1000)

        replay = self.h.service.replay_orphan(self.result.record_id)
        self.assertEqual(replay["newBalance"], 1000)
        self.assertEqual(self.h.service.reconciliation_queue().count, 0)


if __name__ == "__main__":
    unittest.main()
