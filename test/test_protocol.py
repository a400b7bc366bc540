"""
Tests for the protocol surface: transfers, incoming transfer messages,
claims, system views and the market simulation.
"""

import os
import sys
import unittest

import matplotlib.pyplot as plt

# Add the test directory to the path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from helpers import FEE_SINK, ORACLE, OWNER, START_TIME, collateral, make_config, make_protocol, set_price, units

from cdp_core.config import ONE_DAY, Clock, CollateralConfig, ProtocolConfig, to_fixed
from cdp_core.errors import Busy, InsufficientBalance, NotFound, Unauthorized, ValidationError
from cdp_core.messages import DepositCollateralAction, RepayDebtAction, parse_transfer_message
from cdp_core.protocol import CDPProtocol
from cdp_core.transfers import TransferGateway, trove_key
from cdp_core.trove_manager import Status

REPAY_WNEAR = '{"action": "repay_debt", "collateral_id": "wnear"}'


class RejectingGateway(TransferGateway):
    def request_transfer(self, transfer):
        raise RuntimeError("token contract unavailable")


class TestTransfers(unittest.TestCase):
    def setUp(self):
        self.protocol = make_protocol(collateral("wnear"))
        set_price(self.protocol, "wnear", 200)
        self.protocol.open_trove("alice", "wnear", units(100), units(50))

    def test_failed_withdrawal_is_rolled_back(self):
        view = self.protocol.withdraw_collateral("alice", "wnear", units(30))
        transfer = view.pending_transfer

        self.assertEqual(view.coll, units(70))
        self.assertEqual(transfer.amount, units(30))
        self.assertEqual(self.protocol.gateway.last(), transfer)
        self.assertTrue(self.protocol.check_conservation())

        with self.assertRaises(Busy):
            self.protocol.borrow("alice", "wnear", units(1))

        self.assertFalse(self.protocol.on_transfer_complete(transfer.transfer_id, False))
        self.assertEqual(self.protocol.get_trove("alice", "wnear").coll, units(100))
        self.assertEqual(self.protocol.trove_manager.get_branch("wnear").total_stakes, units(100))
        self.assertTrue(self.protocol.check_conservation())

        # The trove is free again
        self.protocol.borrow("alice", "wnear", units(1))

    def test_resolve_is_idempotent(self):
        transfer = self.protocol.withdraw_collateral("alice", "wnear", units(30)).pending_transfer

        self.assertTrue(self.protocol.on_transfer_complete(transfer.transfer_id, True))
        self.assertTrue(self.protocol.on_transfer_complete(transfer.transfer_id, False))

        self.assertEqual(self.protocol.get_trove("alice", "wnear").coll, units(70))
        self.assertEqual(self.protocol.transfers.paid_out, {"wnear": units(30)})
        self.assertTrue(self.protocol.check_conservation())

        with self.assertRaises(NotFound):
            self.protocol.on_transfer_complete(999, True)

    def test_failed_close_reopens_trove(self):
        self.protocol.repay("alice", "wnear", units(50))
        transfer = self.protocol.close_trove("alice", "wnear").pending_transfer

        self.protocol.on_transfer_complete(transfer.transfer_id, False)

        view = self.protocol.get_trove("alice", "wnear")
        self.assertEqual(view.status, Status.ACTIVE)
        self.assertEqual(view.coll, units(100))
        self.assertEqual(view.debt, 0)
        self.assertTrue(self.protocol.check_conservation())

    def test_gateway_error_rolls_back_immediately(self):
        protocol = CDPProtocol(make_config(collateral("wnear")), clock=Clock(START_TIME), gateway=RejectingGateway())
        set_price(protocol, "wnear", 200)
        protocol.open_trove("alice", "wnear", units(100), units(50))

        with self.assertRaises(RuntimeError):
            protocol.withdraw_collateral("alice", "wnear", units(10))

        self.assertEqual(protocol.get_trove("alice", "wnear").coll, units(100))
        self.assertEqual(protocol.transfers.pending, {})
        self.assertFalse(protocol.reservations.is_reserved(trove_key("alice", "wnear")))
        self.assertTrue(protocol.check_conservation())


class TestIncomingTransfers(unittest.TestCase):
    def setUp(self):
        self.protocol = make_protocol(collateral("wnear"))
        set_price(self.protocol, "wnear", 200)

    def test_parse_transfer_message(self):
        self.assertEqual(parse_transfer_message(""), DepositCollateralAction(action="deposit_collateral"))
        self.assertEqual(parse_transfer_message(None).target_account, None)

        action = parse_transfer_message(REPAY_WNEAR)
        self.assertIsInstance(action, RepayDebtAction)
        self.assertEqual(action.collateral_id, "wnear")

        for msg in ("not json", '{"action": "borrow"}', '{"action": "repay_debt"}',
                    '{"action": "repay_debt", "collateral_id": "wnear", "amount": 1}',
                    '{"action": "deposit_collateral", "target_account": ""}'):
            with self.assertRaises(ValidationError):
                parse_transfer_message(msg)

    def test_collateral_deposit_opens_and_tops_up_trove(self):
        self.assertEqual(self.protocol.ft_on_transfer("wnear", "alice", units(100)), 0)
        trove = self.protocol.get_trove("alice", "wnear")
        self.assertEqual(trove.coll, units(100))
        self.assertEqual(trove.debt, 0)

        self.assertEqual(self.protocol.ft_on_transfer("wnear", "alice", units(50)), 0)
        self.assertEqual(self.protocol.get_trove("alice", "wnear").coll, units(150))
        self.assertEqual(self.protocol.collateral_received["wnear"], units(150))
        self.assertTrue(self.protocol.check_conservation())

    def test_collateral_deposit_for_target_account(self):
        msg = '{"action": "deposit_collateral", "target_account": "bob"}'
        self.assertEqual(self.protocol.ft_on_transfer("wnear", "alice", units(10), msg), 0)

        self.assertEqual(self.protocol.get_trove("bob", "wnear").coll, units(10))
        with self.assertRaises(NotFound):
            self.protocol.get_trove("alice", "wnear")

    def test_repay_debt_message(self):
        self.protocol.open_trove("alice", "wnear", units(100), units(50))

        self.assertEqual(self.protocol.ft_on_transfer("nusd", "alice", units(20), REPAY_WNEAR), 0)

        self.assertEqual(self.protocol.get_trove("alice", "wnear").debt, units(30))
        self.assertEqual(self.protocol.nusd_token.balance_of("alice"), units(30))
        self.assertTrue(self.protocol.check_conservation())

    def test_rejected_transfers_are_refunded(self):
        self.protocol.open_trove("alice", "wnear", units(100), units(50))

        rejected = [
            ("doge", "alice", ""),
            ("nusd", "alice", ""),
            ("wnear", "alice", "not json"),
            ("wnear", "alice", '{"action": "borrow"}'),
            ("wnear", "alice", REPAY_WNEAR),
            ("nusd", "bob", REPAY_WNEAR),
            ("nusd", "alice", '{"action": "repay_debt", "collateral_id": "doge"}'),
        ]
        for token_id, sender_id, msg in rejected:
            with self.assertLogs("cdp_core.protocol", level="WARNING"):
                self.assertEqual(self.protocol.ft_on_transfer(token_id, sender_id, units(10), msg), units(10))

        # More than the trove owes
        self.assertEqual(self.protocol.ft_on_transfer("nusd", "alice", units(51), REPAY_WNEAR), units(51))

        trove = self.protocol.get_trove("alice", "wnear")
        self.assertEqual(trove.coll, units(100))
        self.assertEqual(trove.debt, units(50))
        self.assertTrue(self.protocol.check_conservation())

    def test_deposit_into_busy_trove_is_refunded(self):
        self.protocol.open_trove("alice", "wnear", units(100), units(50))
        self.protocol.withdraw_collateral("alice", "wnear", units(10))

        self.assertEqual(self.protocol.ft_on_transfer("wnear", "alice", units(5)), units(5))
        self.assertEqual(self.protocol.get_trove("alice", "wnear").coll, units(90))


class TestClaims(unittest.TestCase):
    def setUp(self):
        """dora's pool deposit absorbs alice's liquidation: 95 wnear gain, 5 penalty."""
        self.protocol = make_protocol(collateral("wnear"))
        set_price(self.protocol, "wnear", 200)
        self.protocol.open_trove("dora", "wnear", units(300), units(200))
        self.protocol.deposit_to_pool("dora", units(200))
        self.protocol.open_trove("alice", "wnear", units(100), units(90))
        set_price(self.protocol, "wnear", 100)
        self.protocol.liquidate("wnear", ["alice"])

    def test_partial_and_full_claims(self):
        transfer = self.protocol.claim_collateral_reward("dora", "wnear", units(40))
        self.assertEqual(transfer.amount, units(40))
        self.assertEqual(self.protocol.get_claimable_collateral_reward("dora", "wnear"), units(55))

        with self.assertRaises(Busy):
            self.protocol.claim_collateral_reward("dora", "wnear")

        self.protocol.on_transfer_complete(transfer.transfer_id, True)
        transfer = self.protocol.claim_collateral_reward("dora", "wnear")
        self.assertEqual(transfer.amount, units(55))
        self.assertEqual(self.protocol.get_claimable_collateral_reward("dora", "wnear"), 0)
        self.assertTrue(self.protocol.check_conservation())

    def test_failed_claim_is_restored(self):
        transfer = self.protocol.claim_collateral_reward("dora", "wnear")
        self.protocol.on_transfer_complete(transfer.transfer_id, False)

        self.assertEqual(self.protocol.get_claimable_collateral_reward("dora", "wnear"), units(95))
        self.assertTrue(self.protocol.check_conservation())

    def test_claim_errors(self):
        with self.assertRaises(InsufficientBalance):
            self.protocol.claim_collateral_reward("dora", "wnear", units(96))
        with self.assertRaises(ValidationError):
            self.protocol.claim_collateral_reward("dora", "wnear", 0)
        with self.assertRaises(NotFound):
            self.protocol.claim_collateral_reward("nobody", "wnear")
        with self.assertRaises(NotFound):
            self.protocol.claim_collateral_reward("dora", "doge")

        # Nothing was settled by the failed attempts
        self.assertEqual(self.protocol.stability_pool.get_coll_balance("wnear"), units(95))

    def test_fee_sink_claims_penalty(self):
        transfer = self.protocol.claim_collateral_reward(FEE_SINK, "wnear")
        self.assertEqual(transfer.amount, units(5))


class TestProtocol(unittest.TestCase):
    def setUp(self):
        self.protocol = make_protocol(collateral("wnear"), collateral("wbtc", mcr="1.10", ccr="1.20"))
        set_price(self.protocol, "wnear", 200)

    def test_conservation_through_a_full_sequence(self):
        protocol = self.protocol
        set_price(protocol, "wbtc", 200)

        protocol.open_trove("dora", "wnear", units(400), units(200))
        protocol.deposit_to_pool("dora", units(150))
        protocol.open_trove("alice", "wnear", units(100), units(90))
        protocol.open_trove("bob", "wnear", units(100), units(50))
        protocol.open_trove("walt", "wbtc", units(100), units(100))
        protocol.ft_on_transfer("wbtc", "zed", units(20))
        self.assertTrue(protocol.check_conservation())

        set_price(protocol, "wnear", 100)
        protocol.liquidate_all("wnear")
        self.assertTrue(protocol.check_conservation())

        protocol.redeem("walt", "wnear", units(20))
        protocol.repay("bob", "wnear", units(10))
        protocol.withdraw_from_pool("dora", units(10))
        self.assertTrue(protocol.check_conservation())

        transfer = protocol.claim_collateral_reward("dora", "wnear")
        protocol.on_transfer_complete(transfer.transfer_id, True)
        transfer = protocol.close_trove("zed", "wbtc").pending_transfer
        protocol.on_transfer_complete(transfer.transfer_id, True)
        self.assertTrue(protocol.check_conservation())

        self.assertEqual(protocol.nusd_token.total_supply, protocol.get_total_debt())

    def test_system_state(self):
        self.protocol.open_trove("alice", "wnear", units(100), units(70))
        state = self.protocol.get_system_state()

        wnear = state["collaterals"]["wnear"]
        self.assertEqual(wnear["price"], 200)
        self.assertFalse(wnear["stale"])
        self.assertEqual(wnear["total_coll"], units(100))
        self.assertEqual(wnear["total_debt"], units(70))
        self.assertFalse(wnear["recovery_mode"])
        self.assertEqual(wnear["active_troves"], 1)

        # wbtc has no price yet
        wbtc = state["collaterals"]["wbtc"]
        self.assertIsNone(wbtc["price"])
        self.assertIsNone(wbtc["tcr"])
        self.assertTrue(wbtc["stale"])

        self.assertEqual(state["total_debt"], units(70))
        self.assertEqual(state["nusd_supply"], units(70))
        self.assertEqual(state["total_coll_value"], units(200))
        self.assertEqual(state["tcr"], units(200) * 10**18 // units(70))

        set_price(self.protocol, "wnear", 100)
        self.assertTrue(self.protocol.get_system_state()["collaterals"]["wnear"]["recovery_mode"])

    def test_views(self):
        self.assertEqual(self.protocol.list_collateral_tokens(), ["wbtc", "wnear"])
        self.assertEqual(self.protocol.get_price("wnear").price, 200)
        self.assertIsNone(self.protocol.get_price("wbtc"))
        self.assertEqual(self.protocol.get_collateral_config("wbtc").mcr, to_fixed("1.10"))
        with self.assertRaises(NotFound):
            self.protocol.get_collateral_config("doge")

        self.assertEqual(self.protocol.get_borrow_rate(), 0)
        self.assertEqual(self.protocol.get_redemption_rate(), to_fixed("0.005"))
        self.assertEqual(self.protocol.get_total_debt(), 0)
        self.assertEqual(self.protocol.get_stability_pool_balance(), 0)
        self.assertEqual(self.protocol.get_stability_pool_deposit("dora").deposit, 0)

    def test_submit_price_through_protocol(self):
        with self.assertRaises(Unauthorized):
            self.protocol.submit_price(OWNER, "wnear", 210)
        self.protocol.update_time(10)
        self.protocol.submit_price(ORACLE, "wnear", 210)
        self.assertEqual(self.protocol.get_price("wnear").price, 210)

    def test_apply_config(self):
        self.protocol.open_trove("alice", "wnear", units(10), 0)
        wbtc_only = make_config(collateral("wbtc"))

        with self.assertRaises(ValidationError):
            self.protocol.apply_config(wbtc_only)

        updated = self.protocol.config.with_collateral(collateral("weth", price_decimals=8))
        self.protocol.apply_config(updated)
        self.assertEqual(self.protocol.list_collateral_tokens(), ["wbtc", "weth", "wnear"])

    def test_config_validation(self):
        with self.assertRaises(ValidationError):
            collateral("wnear", mcr="1.05")
        with self.assertRaises(ValidationError):
            collateral("wnear", mcr="1.50", ccr="1.30")
        with self.assertRaises(ValidationError):
            CollateralConfig(collateral_id="wnear", mcr=to_fixed("1.3"), ccr=to_fixed("1.5"), price_decimals=19)
        with self.assertRaises(ValidationError):
            make_config(collateral("nusd"))
        with self.assertRaises(ValidationError):
            ProtocolConfig(owner_id=OWNER, oracle_id=ORACLE, collaterals={"wnear": collateral("wbtc")})
        with self.assertRaises(ValidationError):
            CDPProtocol({"owner_id": OWNER})

        config = ProtocolConfig(owner_id=OWNER, oracle_id=ORACLE)
        self.assertEqual(config.fee_sink_id, OWNER)

    def test_simulate_market_scenario(self):
        self.protocol.open_trove("dora", "wnear", units(1000), units(300))
        self.protocol.deposit_to_pool("dora", units(200))
        self.protocol.open_trove("alice", "wnear", units(100), units(120))
        self.protocol.open_trove("bob", "wnear", units(100), units(80))

        results = self.protocol.simulate_market_scenario(days=2, price_volatility=0.1, plot_results=False, seed=7)

        self.assertEqual(self.protocol.clock.now(), self.protocol.time_history[0] + 2 * ONE_DAY)
        self.assertEqual(self.protocol.time_history[-1], self.protocol.clock.now())
        self.assertEqual(set(results["final_prices"]), {"wnear"})
        self.assertGreater(results["final_prices"]["wnear"], 0)
        self.assertEqual(results["initial_troves"], 3)
        self.assertEqual(results["active_troves"] + results["liquidations"], 3)
        self.assertTrue(self.protocol.check_conservation())

    def test_simulation_needs_a_price(self):
        protocol = make_protocol(collateral("wnear"))
        with self.assertRaises(ValidationError):
            protocol.simulate_market_scenario(days=1, plot_results=False)

    def test_plot_history(self):
        self.protocol.open_trove("alice", "wnear", units(100), units(70))
        self.protocol.update_time(ONE_DAY)

        fig = self.protocol.plot_history(show=False)
        self.assertEqual(len(fig.axes), 5)
        plt.close(fig)


if __name__ == '__main__':
    unittest.main()
