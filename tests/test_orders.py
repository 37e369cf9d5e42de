#!/usr/bin/env python3
"""
Unit tests for order creation and pay instructions.
"""

import base64
import unittest
from datetime import timedelta

from sqlalchemy import func, select

from common.error_handling import BusinessLogicError, ErrorCodes, ServiceError
from common.schemas import OrderStatus, PayInCurrency
from purchase_service.models import Outbox, PaymentOrder
from purchase_fakes import (
    PAYER, TON_PAYER, TON_TREASURY, TREASURY, USDC_MINT, ServiceHarness, create_order,
)


class OrderTestCase(unittest.TestCase):

    def setUp(self):
        self.h = ServiceHarness()

    def tearDown(self):
        self.h.close()

    def order_count(self):
        with self.h.session_factory() as db:
            return db.execute(select(func.count()).select_from(PaymentOrder)).scalar_one()

    def stored(self, order_id):
        return self.h.service.verifier.load(order_id)


class TestSolanaOrders(OrderTestCase):

    def test_native_order_carries_unsigned_transfer(self):
        order = create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)

        self.assertTrue(order.order_id.startswith("ord_"))
        self.assertEqual(order.status, OrderStatus.AWAITING_PROOF)
        self.assertEqual(order.pay_in_amount, 66666667)
        self.assertEqual(order.pay_in_display, "0.066666667")
        self.assertEqual(order.rate_used, 150.0)
        self.assertEqual(order.expires_at, self.h.clock() + timedelta(seconds=600))

        instructions = order.pay_instructions
        self.assertEqual(instructions["type"], "solana_transfer")
        self.assertEqual(instructions["recipient"], TREASURY)
        self.assertEqual(instructions["amount"], 66666667)
        self.assertTrue(instructions["paymentUrl"].startswith(f"solana:{TREASURY}?"))
        self.assertGreater(len(base64.b64decode(instructions["transaction"])), 0)

    def test_order_persisted_with_quote(self):
        order = create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)
        stored = self.stored(order.order_id)
        self.assertEqual(stored.payer_address, PAYER)
        self.assertEqual(stored.requested_token_amount, 1000)
        self.assertEqual(stored.computed_pay_in_amount, 66666667)
        self.assertIsNone(stored.proof)

    def test_order_created_event_staged(self):
        create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)
        with self.h.session_factory() as db:
            payloads = db.execute(select(Outbox.payload)).scalars().all()
        self.assertEqual(len(payloads), 1)
        self.assertIn('"type":"OrderCreated"', payloads[0])

    def test_missing_blockhash_still_returns_descriptor(self):
        self.h.solana.unavailable = True
        order = create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)
        self.assertEqual(order.status, OrderStatus.AWAITING_PROOF)
        self.assertIsNone(order.pay_instructions["transaction"])

    def test_stable_order_points_at_treasury_token_account(self):
        order = create_order(self.h, PayInCurrency.CHAIN_A_STABLE)
        instructions = order.pay_instructions
        self.assertEqual(instructions["type"], "spl_transfer")
        self.assertEqual(instructions["mint"], USDC_MINT)
        self.assertEqual(instructions["decimals"], 6)
        self.assertEqual(instructions["amount"], 10_000_000)
        self.assertNotEqual(instructions["recipientTokenAccount"], TREASURY)

    def test_invalid_payer_rejected_before_persisting(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            create_order(self.h, PayInCurrency.CHAIN_A_NATIVE, payer="not-a-wallet")
        self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)
        self.assertEqual(ctx.exception.field, "payer")
        self.assertEqual(self.order_count(), 0)

    def test_below_minimum_rejected_before_persisting(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            create_order(self.h, PayInCurrency.CHAIN_A_NATIVE, tokens=10)
        self.assertEqual(ctx.exception.code, ErrorCodes.BELOW_MINIMUM_PURCHASE)
        self.assertEqual(self.order_count(), 0)

    def test_above_maximum_rejected_before_persisting(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            create_order(self.h, PayInCurrency.CHAIN_A_NATIVE, tokens=10**16)
        self.assertEqual(ctx.exception.code, ErrorCodes.ABOVE_MAXIMUM_PURCHASE)
        self.assertEqual(self.order_count(), 0)

    def test_payer_required_for_wallet_rails(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            create_order(self.h, PayInCurrency.CHAIN_A_NATIVE, payer=None)
        self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)

    def test_each_order_gets_its_own_id(self):
        first = create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)
        second = create_order(self.h, PayInCurrency.CHAIN_A_NATIVE)
        self.assertNotEqual(first.order_id, second.order_id)
        self.assertEqual(self.order_count(), 2)


class TestMemoOrders(OrderTestCase):

    def test_deep_link_carries_order_id_as_comment(self):
        order = create_order(self.h, PayInCurrency.CHAIN_B_NATIVE, payer=TON_PAYER)
        instructions = order.pay_instructions
        self.assertEqual(instructions["type"], "ton_transfer")
        self.assertEqual(instructions["memo"], order.order_id)
        self.assertEqual(
            instructions["deepLink"],
            f"ton://transfer/{TON_TREASURY}?amount=2000000000&text={order.order_id}",
        )

    def test_memo_orders_live_longer(self):
        order = create_order(self.h, PayInCurrency.CHAIN_B_NATIVE, payer=TON_PAYER)
        self.assertEqual(order.expires_at, self.h.clock() + timedelta(seconds=86400))

    def test_solana_address_is_not_a_ton_payer(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            create_order(self.h, PayInCurrency.CHAIN_B_NATIVE, payer="short")
        self.assertEqual(ctx.exception.code, ErrorCodes.VALIDATION_ERROR)


class TestInvoiceOrders(OrderTestCase):

    def test_invoice_link_created_for_order(self):
        order = create_order(self.h, PayInCurrency.STARRED_INVOICE, payer=None, telegram_user_id=42)
        self.assertEqual(order.pay_instructions["type"], "stars_invoice")
        self.assertEqual(order.pay_instructions["stars"], 500)
        self.assertEqual(self.h.bot.invoices, [
            {"title": "1000 CHESS", "payload": order.order_id, "stars": 500},
        ])
        self.assertEqual(self.stored(order.order_id).payer_address, "tg_42")

    def test_invoice_payer_resolves_linked_wallet(self):
        self.h.service.wallet_links.link(42, PAYER, "alice")
        order = create_order(self.h, PayInCurrency.STARRED_INVOICE, payer=None, telegram_user_id=42)
        self.assertEqual(self.stored(order.order_id).payer_address, PAYER)

    def test_bot_failure_fails_the_order(self):
        self.h.bot.fail = True
        with self.assertRaises(ServiceError) as ctx:
            create_order(self.h, PayInCurrency.STARRED_INVOICE, payer=None, telegram_user_id=42)
        self.assertEqual(ctx.exception.code, ErrorCodes.EXTERNAL_SERVICE_ERROR)

        with self.h.session_factory() as db:
            order = db.execute(select(PaymentOrder)).scalar_one()
        self.assertEqual(order.status, OrderStatus.FAILED)
        self.assertEqual(order.failure_reason, "payment instructions unavailable")

    def test_bot_timeout_reported_as_timeout(self):
        self.h.bot.timeout = True
        with self.assertRaises(ServiceError) as ctx:
            create_order(self.h, PayInCurrency.STARRED_INVOICE, payer=None, telegram_user_id=42)
        self.assertEqual(ctx.exception.code, ErrorCodes.TIMEOUT_ERROR)


class TestUnsupportedCurrency(OrderTestCase):

    def test_unregistered_rail_rejected(self):
        del self.h.methods[PayInCurrency.CHAIN_B_NATIVE]
        with self.assertRaises(BusinessLogicError) as ctx:
            create_order(self.h, PayInCurrency.CHAIN_B_NATIVE, payer=TON_PAYER)
        self.assertEqual(ctx.exception.code, ErrorCodes.UNSUPPORTED_CURRENCY)
        self.assertEqual(self.order_count(), 0)


if __name__ == "__main__":
    unittest.main()
