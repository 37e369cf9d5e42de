#!/usr/bin/env python3
"""
Unit tests for the persisted messaging user -> wallet links.
"""

import unittest

from common.error_handling import BusinessLogicError, ErrorCodes
from purchase_service.wallet_links import WalletLinkStore
from purchase_fakes import OTHER_PAYER, PAYER, ServiceHarness


class TestWalletLinks(unittest.TestCase):

    def setUp(self):
        self.h = ServiceHarness()
        self.links = self.h.service.wallet_links

    def tearDown(self):
        self.h.close()

    def test_link_and_lookup(self):
        self.links.link(42, PAYER, "alice")
        link = self.links.get(42)
        self.assertEqual(link.wallet_address, PAYER)
        self.assertEqual(link.telegram_username, "alice")
        self.assertEqual(link.linked_at, self.h.clock())

    def test_relink_replaces_wallet(self):
        self.links.link(42, PAYER)
        self.h.clock.advance(60)
        self.links.link(42, OTHER_PAYER)
        link = self.links.get(42)
        self.assertEqual(link.wallet_address, OTHER_PAYER)
        self.assertEqual(self.links.resolve_address(42), OTHER_PAYER)

    def test_links_survive_a_restart(self):
        self.links.link(42, PAYER)
        fresh = WalletLinkStore(self.h.session_factory)
        self.assertEqual(fresh.get(42).wallet_address, PAYER)

    def test_missing_link(self):
        with self.assertRaises(BusinessLogicError) as ctx:
            self.links.get(7)
        self.assertEqual(ctx.exception.code, ErrorCodes.ACCOUNT_NOT_FOUND)

    def test_unlink(self):
        self.links.link(42, PAYER)
        self.assertTrue(self.links.unlink(42))
        self.assertFalse(self.links.unlink(42))
        self.assertEqual(self.links.resolve_address(42), "tg_42")


if __name__ == "__main__":
    unittest.main()
