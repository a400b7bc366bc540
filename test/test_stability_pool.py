"""
Unit tests for the Stability Pool.
"""

import os
import sys
import unittest

# Add the test directory to the path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from helpers import E18, units

from cdp_core.coll_surplus_pool import CollSurplusPool
from cdp_core.errors import InsufficientBalance, NotFound, ValidationError
from cdp_core.nusd_token import NusdToken
from cdp_core.stability_pool import StabilityPool


class TestStabilityPool(unittest.TestCase):
    def setUp(self):
        """Pool on its own; liquidations are driven through offset()."""
        self.nusd_token = NusdToken()
        self.coll_surplus_pool = CollSurplusPool()
        self.stability_pool = StabilityPool(self.nusd_token, self.coll_surplus_pool)

        self.alice = "alice"
        self.bob = "bob"
        self.nusd_token.mint(self.alice, units(1000))
        self.nusd_token.mint(self.bob, units(1000))

    def _offset(self, debt, coll, collateral_id="wnear"):
        # The liquidated trove's debt leaves the system with the burned nUSD
        self.stability_pool.offset(collateral_id, debt, coll)

    def test_deposit_and_withdraw(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))

        self.assertEqual(self.stability_pool.get_total_nusd_deposits(), units(100))
        self.assertEqual(self.nusd_token.balance_of(self.alice), units(900))
        self.assertEqual(self.nusd_token.balance_of(StabilityPool.ACCOUNT), units(100))

        remaining = self.stability_pool.withdraw_from_sp(self.alice, units(40))
        self.assertEqual(remaining, units(60))
        self.assertEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), units(60))
        self.assertEqual(self.nusd_token.balance_of(self.alice), units(940))

        self.stability_pool.withdraw_from_sp(self.alice, units(60))
        self.assertNotIn(self.alice, self.stability_pool.deposits)
        self.assertEqual(self.stability_pool.get_total_nusd_deposits(), 0)

    def test_deposit_and_withdraw_errors(self):
        with self.assertRaises(ValidationError):
            self.stability_pool.provide_to_sp(self.alice, 0)
        with self.assertRaises(InsufficientBalance):
            self.stability_pool.provide_to_sp(self.alice, units(1001))
        with self.assertRaises(NotFound):
            self.stability_pool.withdraw_from_sp(self.alice, units(1))

        self.stability_pool.provide_to_sp(self.alice, units(100))
        with self.assertRaises(InsufficientBalance):
            self.stability_pool.withdraw_from_sp(self.alice, units(101))

    def test_offset_shares_loss_and_gain_pro_rata(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))
        self.stability_pool.provide_to_sp(self.bob, units(300))

        self._offset(units(200), units(50))

        self.assertEqual(self.stability_pool.get_total_nusd_deposits(), units(200))
        self.assertEqual(self.nusd_token.total_supply, units(1800))
        self.assertAlmostEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), units(50), delta=10**3)
        self.assertAlmostEqual(self.stability_pool.get_compounded_nusd_deposit(self.bob), units(150), delta=10**3)

        self.assertEqual(self.stability_pool.get_depositor_coll_gain(self.alice, "wnear"), units("12.5"))
        self.assertEqual(self.stability_pool.get_depositor_coll_gain(self.bob, "wnear"), units("37.5"))

    def test_gains_are_tracked_per_collateral(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))
        self._offset(units(10), units(8), "wnear")
        self._offset(units(10), units(3), "wbtc")

        gains = self.stability_pool.get_depositor_coll_gains(self.alice)
        self.assertEqual(set(gains), {"wnear", "wbtc"})
        self.assertAlmostEqual(gains["wnear"], units(8), delta=10**3)
        self.assertAlmostEqual(gains["wbtc"], units(3), delta=10**3)

    def test_new_deposit_does_not_share_earlier_gains(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))
        self._offset(units(50), units(40))

        self.stability_pool.provide_to_sp(self.bob, units(50))
        self.assertEqual(self.stability_pool.get_depositor_coll_gain(self.bob, "wnear"), 0)
        self.assertAlmostEqual(self.stability_pool.get_compounded_nusd_deposit(self.bob), units(50), delta=1)

    def test_top_up_settles_gains(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))
        self._offset(units(50), units(40))

        self.stability_pool.provide_to_sp(self.alice, units(10))

        self.assertAlmostEqual(self.coll_surplus_pool.get_collateral(self.alice, "wnear"), units(40), delta=10**3)
        self.assertEqual(self.stability_pool.get_depositor_coll_gain(self.alice, "wnear"), 0)
        self.assertAlmostEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), units(60), delta=10**3)
        self.assertEqual(
            self.stability_pool.get_coll_balance("wnear") + self.coll_surplus_pool.get_coll_balance("wnear"),
            units(40),
        )

    def test_settle_keeps_principal(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))
        self._offset(units(20), units(16))

        gains = self.stability_pool.settle(self.alice)

        self.assertEqual(set(gains), {"wnear"})
        self.assertEqual(self.coll_surplus_pool.get_collateral(self.alice, "wnear"), gains["wnear"])
        self.assertAlmostEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), units(80), delta=10**3)
        self.assertEqual(self.stability_pool.settle(self.alice), {})

    def test_offset_emptying_pool_starts_new_epoch(self):
        self.stability_pool.provide_to_sp(self.alice, units(90))

        self._offset(units(90), units(95))

        self.assertEqual(self.stability_pool.current_epoch, 1)
        self.assertEqual(self.stability_pool.current_scale, 0)
        self.assertEqual(self.stability_pool.P, E18)
        self.assertEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), 0)
        self.assertAlmostEqual(self.stability_pool.get_depositor_coll_gain(self.alice, "wnear"), units(95), delta=10**3)

        # Deposits made in the new epoch start from scratch
        self.stability_pool.provide_to_sp(self.alice, units(10))
        self.assertEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), units(10))
        self.assertAlmostEqual(self.coll_surplus_pool.get_collateral(self.alice, "wnear"), units(95), delta=10**3)

    def test_offset_shrinking_product_changes_scale(self):
        self.stability_pool.provide_to_sp(self.alice, units(100))
        # Leaves 0.001 nUSD of the 100 in the pool
        self._offset(units(100) - 10**15, units(10))
        self.assertEqual(self.stability_pool.current_scale, 0)

        self.stability_pool.provide_to_sp(self.bob, units(100))
        self._offset(units(100), units(50))

        self.assertEqual(self.stability_pool.current_scale, 1)
        self.assertEqual(self.stability_pool.current_epoch, 0)
        self.assertGreaterEqual(self.stability_pool.P, 10**9)

        # Bob owns 100/100.001 of the 0.001 nUSD left
        self.assertAlmostEqual(self.stability_pool.get_compounded_nusd_deposit(self.bob), 999990000099999, delta=10**9)
        # Alice's remainder is below a billionth of her principal
        self.assertEqual(self.stability_pool.get_compounded_nusd_deposit(self.alice), 0)

        expected_gain = units(50) * units(100) // (units(100) + 10**15)
        self.assertAlmostEqual(self.stability_pool.get_depositor_coll_gain(self.bob, "wnear"), expected_gain, delta=10**6)

    def test_offset_larger_than_pool_is_rejected(self):
        self.stability_pool.provide_to_sp(self.alice, units(10))
        with self.assertRaises(ValueError):
            self._offset(units(11), units(1))

    def test_gain_never_exceeds_pool_balance(self):
        self.stability_pool.provide_to_sp(self.alice, units(3))
        self.stability_pool.provide_to_sp(self.bob, units(7))
        for _ in range(5):
            self._offset(units(1), 7)

        total_gain = sum(
            self.stability_pool.get_depositor_coll_gain(depositor, "wnear")
            for depositor in (self.alice, self.bob)
        )
        self.assertLessEqual(total_gain, self.stability_pool.get_coll_balance("wnear"))

        total_deposits = sum(
            self.stability_pool.get_compounded_nusd_deposit(depositor)
            for depositor in (self.alice, self.bob)
        )
        self.assertLessEqual(total_deposits, self.stability_pool.get_total_nusd_deposits())


if __name__ == '__main__':
    unittest.main()
