"""
nUSD CDP Protocol.

This module wires the individual components into the complete engine and is
its public surface: price submission, trove operations, Stability Pool
operations, liquidation, redemption, incoming transfer notifications and
transfer outcomes. It also keeps a history of the system state and can run a
random market simulation on top of the engine.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np

from cdp_core.coll_surplus_pool import CollSurplusPool
from cdp_core.config import (
    DECIMAL_PRECISION,
    MAX_LIQUIDATION_BATCH,
    MAX_REDEMPTION_ITERATIONS,
    ONE_DAY,
    Clock,
    ProtocolConfig,
    require_amount,
)
from cdp_core.errors import CDPError, InsufficientBalance, NotFound, ValidationError
from cdp_core.fee_controller import FeeController, FeeKind
from cdp_core.liquidation import LiquidationEngine
from cdp_core.messages import RepayDebtAction, parse_transfer_message
from cdp_core.nusd_token import NusdToken
from cdp_core.redemption import RedemptionEngine
from cdp_core.risk_engine import RiskEngine
from cdp_core.stability_pool import StabilityPool
from cdp_core.transfers import (
    InMemoryTransferGateway,
    PendingTransfer,
    ReservationRegistry,
    TransferCoordinator,
    claim_key,
    trove_key,
)
from cdp_core.trove_manager import Status, TroveManager

logger = logging.getLogger(__name__)


@dataclass
class TroveView:
    """A trove as seen by its owner, pending redistribution included."""
    owner: str
    collateral_id: str
    coll: int
    debt: int
    status: Status
    icr: Optional[int] = None
    pending_transfer: Optional[PendingTransfer] = None


@dataclass
class PoolDepositView:
    depositor: str
    deposit: int
    coll_gains: dict
    pending_transfer: Optional[PendingTransfer] = None


class CDPProtocol:
    """
    Complete nUSD CDP engine.
    Combines all components and provides simulation capabilities.
    """

    def __init__(self, config, clock=None, gateway=None):
        if not isinstance(config, ProtocolConfig):
            raise ValidationError("config must be a ProtocolConfig")
        self.config = config
        self.clock = clock if clock is not None else Clock()

        self.nusd_token = NusdToken(config.stablecoin_id)
        self.reservations = ReservationRegistry()
        self.gateway = gateway if gateway is not None else InMemoryTransferGateway()
        self.transfers = TransferCoordinator(self.gateway, self.reservations)

        self.risk_engine = RiskEngine(self.clock)
        self.fee_controller = FeeController(self.clock)
        self.coll_surplus_pool = CollSurplusPool()
        self.stability_pool = StabilityPool(self.nusd_token, self.coll_surplus_pool)
        self.trove_manager = TroveManager(
            self.nusd_token,
            self.risk_engine,
            self.fee_controller,
            self.reservations,
            self.clock,
        )
        self.liquidation_engine = LiquidationEngine(
            self.trove_manager,
            self.stability_pool,
            self.coll_surplus_pool,
            self.risk_engine,
            self.reservations,
        )
        self.redemption_engine = RedemptionEngine(
            self.trove_manager,
            self.coll_surplus_pool,
            self.nusd_token,
            self.risk_engine,
            self.fee_controller,
            self.reservations,
        )

        # collateral_id -> collateral received from depositors
        self.collateral_received = {}

        # History tracking for simulations
        self.time_history = []
        self.price_history = {}
        self.total_coll_value_history = []
        self.total_debt_history = []
        self.stability_pool_history = []
        self.active_troves_history = []
        self.tcr_history = []
        self.base_rate_history = []
        self._update_history()

    def apply_config(self, config):
        """
        Replaces the configuration snapshot.

        Raises:
            ValidationError: If a class that still holds troves is dropped
        """
        if not isinstance(config, ProtocolConfig):
            raise ValidationError("config must be a ProtocolConfig")
        for collateral_id in self.trove_manager.branches:
            if not config.is_collateral(collateral_id) and self.trove_manager.active_troves(collateral_id):
                raise ValidationError(f"{collateral_id} still has active troves")
        self.config = config
        logger.info("Configuration replaced", extra={"collaterals": sorted(config.collaterals)})

    # --- Oracle ---

    def submit_price(self, caller, collateral_id, price, timestamp=None):
        """Accepts a price from the oracle; timestamp defaults to now."""
        if timestamp is None:
            timestamp = self.clock.now()
        return self.risk_engine.submit_price(self.config, caller, collateral_id, price, timestamp)

    # --- Troves ---

    def open_trove(self, owner, collateral_id, coll_in, requested_debt=0):
        """
        Opens a trove with collateral already received and mints requested_debt.

        Returns:
            TroveView of the new trove
        """
        self.trove_manager.open_trove(self.config, owner, collateral_id, coll_in, requested_debt)
        self._record_collateral_in(collateral_id, coll_in)
        self._update_history()
        return self.get_trove(owner, collateral_id)

    def adjust_trove(self, owner, collateral_id, coll_change=0, debt_change=0):
        """
        Adjusts a trove by signed collateral and debt changes.

        A collateral withdrawal is paid out through a two-phase transfer: the
        trove stays reserved until on_transfer_complete() is called, and the
        withdrawal is undone if the transfer fails.

        Returns:
            TroveView, with pending_transfer set for withdrawals
        """
        adjustment = self.trove_manager.adjust_trove(self.config, owner, collateral_id, coll_change, debt_change)
        if coll_change > 0:
            self._record_collateral_in(collateral_id, coll_change)

        transfer = None
        amount = adjustment.coll_withdrawn
        if amount > 0:
            transfer = self.transfers.begin(
                receiver_id=owner,
                token_id=collateral_id,
                amount=amount,
                reservation=trove_key(owner, collateral_id),
                rollback=lambda: self.trove_manager.restore_withdrawn_coll(owner, collateral_id, amount),
                memo="withdraw_collateral",
            )
        self._update_history()
        view = self.get_trove(owner, collateral_id)
        view.pending_transfer = transfer
        return view

    def borrow(self, owner, collateral_id, amount):
        return self.adjust_trove(owner, collateral_id, debt_change=amount)

    def repay(self, owner, collateral_id, amount):
        return self.adjust_trove(owner, collateral_id, debt_change=-amount)

    def withdraw_collateral(self, owner, collateral_id, amount):
        return self.adjust_trove(owner, collateral_id, coll_change=-amount)

    def close_trove(self, owner, collateral_id):
        """
        Closes a debt-free trove and starts paying out its collateral.

        The trove's storage is freed once the payout succeeds; on failure the
        trove is reopened with its collateral.
        """
        coll = self.trove_manager.close_trove(self.config, owner, collateral_id)

        transfer = None
        if coll > 0:
            transfer = self.transfers.begin(
                receiver_id=owner,
                token_id=collateral_id,
                amount=coll,
                reservation=trove_key(owner, collateral_id),
                rollback=lambda: self.trove_manager.reopen_closed_trove(owner, collateral_id, coll),
                on_success=lambda: self.trove_manager.release_closed_trove(owner, collateral_id),
                memo="close_trove",
            )
            view = self.get_trove(owner, collateral_id)
        else:
            view = self.get_trove(owner, collateral_id)
            self.trove_manager.release_closed_trove(owner, collateral_id)

        self._update_history()
        view.pending_transfer = transfer
        return view

    # --- Stability Pool ---

    def deposit_to_pool(self, depositor, amount):
        self.stability_pool.provide_to_sp(depositor, amount)
        self._update_history()
        return self.get_stability_pool_deposit(depositor)

    def withdraw_from_pool(self, depositor, amount):
        self.stability_pool.withdraw_from_sp(depositor, amount)
        self._update_history()
        return self.get_stability_pool_deposit(depositor)

    def claim_collateral_reward(self, account, collateral_id, amount=None):
        """
        Pays out claimable collateral of one class: Stability Pool gains,
        redemption proceeds and fee sink income.

        Args:
            account: Claiming account
            collateral_id: Collateral class
            amount: Amount to claim, or None for everything claimable

        Returns:
            The PendingTransfer of the payout

        Raises:
            NotFound: If nothing is claimable
            InsufficientBalance: If amount exceeds what is claimable
            Busy: If a previous claim of the same class is still pending
        """
        self.config.collateral(collateral_id)
        key = claim_key(account, collateral_id)
        self.reservations.require_free(key)

        available = self.get_claimable_collateral_reward(account, collateral_id)
        if available <= 0:
            raise NotFound(f"No {collateral_id} collateral available to claim for {account}")
        if amount is not None:
            require_amount("amount", amount)
            if amount > available:
                raise InsufficientBalance(f"Claim of {amount} exceeds claimable {available}")

        self.stability_pool.settle(account)
        claimed = self.coll_surplus_pool.claim_coll(account, collateral_id, amount)
        transfer = self.transfers.begin(
            receiver_id=account,
            token_id=collateral_id,
            amount=claimed,
            reservation=key,
            rollback=lambda: self.coll_surplus_pool.restore(account, collateral_id, claimed),
            memo="claim_collateral",
        )
        self._update_history()
        return transfer

    # --- Liquidation and redemption ---

    def liquidate(self, collateral_id, owners, max_count=MAX_LIQUIDATION_BATCH):
        batch = self.liquidation_engine.liquidate(self.config, collateral_id, owners, max_count)
        self._update_history()
        return batch

    def redeem(self, redeemer, collateral_id, amount, hint=None, max_iterations=MAX_REDEMPTION_ITERATIONS):
        result = self.redemption_engine.redeem(self.config, redeemer, collateral_id, amount, hint, max_iterations)
        self._update_history()
        return result

    def get_liquidatable_troves(self, collateral_id):
        """Owners of the troves liquidate() would currently act on, weakest first."""
        cfg = self.config.collateral(collateral_id)
        price = self.risk_engine.require_fresh_price(cfg)
        threshold = cfg.ccr if self.trove_manager.is_recovery_mode(cfg, price) else cfg.mcr

        candidates = []
        for owner in self.trove_manager.active_troves(collateral_id):
            latest = self.trove_manager.get_latest_trove_data(owner, collateral_id)
            if latest.entire_debt == 0:
                continue
            icr = self.risk_engine.ratio(cfg, latest.entire_coll, latest.entire_debt, price)
            if icr < threshold:
                candidates.append((icr, owner))
        return [owner for _, owner in sorted(candidates)]

    # --- External transfers ---

    def ft_on_transfer(self, token_id, sender_id, amount, msg=""):
        """
        Handles an incoming token transfer.

        Collateral tokens are deposited into the target's trove, opening a
        debt-free trove when there is none. nUSD with a repay_debt message
        repays the sender's trove; nUSD balances live in NusdToken, so the
        repayment is burned from the sender's balance.

        Returns:
            Amount to refund: 0 on success, the full amount on any rejection
        """
        try:
            require_amount("amount", amount)
            action = parse_transfer_message(msg)
            if isinstance(action, RepayDebtAction):
                if token_id != self.config.stablecoin_id:
                    raise ValidationError("repay_debt only accepts nUSD")
                self.trove_manager.adjust_trove(self.config, sender_id, action.collateral_id, 0, -amount)
            else:
                if not self.config.is_collateral(token_id):
                    raise ValidationError(f"{token_id} is not a registered collateral")
                self._deposit_collateral(action.target_account or sender_id, token_id, amount)
        except CDPError as exc:
            logger.warning(
                "Refunding incoming transfer",
                extra={"token_id": token_id, "sender_id": sender_id, "amount": amount, "error": exc.code, "reason": str(exc)},
            )
            return amount

        self._update_history()
        return 0

    def _deposit_collateral(self, account, collateral_id, amount):
        if self.trove_manager.get_trove_status(account, collateral_id) == Status.ACTIVE:
            self.trove_manager.adjust_trove(self.config, account, collateral_id, amount, 0)
        else:
            self.trove_manager.open_trove(self.config, account, collateral_id, amount, 0)
        self._record_collateral_in(collateral_id, amount)

    def on_transfer_complete(self, transfer_id, success):
        """Outcome of an outgoing transfer; see TransferCoordinator.resolve()."""
        outcome = self.transfers.resolve(transfer_id, success)
        self._update_history()
        return outcome

    def _record_collateral_in(self, collateral_id, amount):
        self.collateral_received[collateral_id] = self.collateral_received.get(collateral_id, 0) + amount

    # --- Views ---

    def get_trove(self, owner, collateral_id):
        """
        Returns a TroveView.

        Raises:
            NotFound: If no trove is stored for the key
        """
        trove = self.trove_manager.get_trove(owner, collateral_id)
        if trove is None:
            raise NotFound(f"No {collateral_id} trove for {owner}")

        latest = self.trove_manager.get_latest_trove_data(owner, collateral_id)
        icr = None
        record = self.risk_engine.get_price(collateral_id)
        if record is not None and trove.status == Status.ACTIVE:
            cfg = self.config.collateral(collateral_id)
            icr = self.risk_engine.ratio(cfg, latest.entire_coll, latest.entire_debt, record.price)
        return TroveView(
            owner=owner,
            collateral_id=collateral_id,
            coll=latest.entire_coll,
            debt=latest.entire_debt,
            status=trove.status,
            icr=icr,
        )

    def get_total_debt(self, collateral_id=None):
        """Debt of one class, or of the whole system."""
        if collateral_id is not None:
            return self.trove_manager.get_branch(collateral_id).get_entire_debt()
        return sum(branch.get_entire_debt() for branch in self.trove_manager.branches.values())

    def get_stability_pool_balance(self):
        return self.stability_pool.get_total_nusd_deposits()

    def get_stability_pool_deposit(self, depositor):
        return PoolDepositView(
            depositor=depositor,
            deposit=self.stability_pool.get_compounded_nusd_deposit(depositor),
            coll_gains=self.stability_pool.get_depositor_coll_gains(depositor),
        )

    def get_claimable_collateral_reward(self, account, collateral_id):
        """Settled claimable collateral plus unsettled Stability Pool gains."""
        return (
            self.coll_surplus_pool.get_collateral(account, collateral_id)
            + self.stability_pool.get_depositor_coll_gain(account, collateral_id)
        )

    def list_collateral_tokens(self):
        return sorted(self.config.collaterals)

    def get_collateral_config(self, collateral_id):
        return self.config.collateral(collateral_id)

    def get_price(self, collateral_id):
        return self.risk_engine.get_price(collateral_id)

    def get_base_rate(self):
        return self.fee_controller.decayed_base_rate(self.config.fees)

    def get_borrow_rate(self):
        return self.fee_controller.current_fee(self.config.fees, FeeKind.BORROW)

    def get_redemption_rate(self):
        return self.fee_controller.current_fee(self.config.fees, FeeKind.REDEMPTION)

    def get_system_state(self):
        """
        Returns the current state of the system.

        Returns:
            Dictionary with per class figures under 'collaterals' and system
            totals. Ratios are fixed point; classes without a price report
            None for value based figures.
        """
        collaterals = {}
        total_coll_value = 0
        total_priced_debt = 0
        for collateral_id in self.config.collaterals:
            cfg = self.config.collateral(collateral_id)
            branch = self.trove_manager.get_branch(collateral_id)
            record = self.risk_engine.get_price(collateral_id)

            total_coll = branch.get_entire_coll()
            total_debt = branch.get_entire_debt()
            tcr = None
            recovery_mode = None
            if record is not None:
                tcr = self.risk_engine.tcr(cfg, total_coll, total_debt, record.price)
                recovery_mode = tcr < cfg.ccr
                total_coll_value += cfg.value_of(total_coll, record.price)
                total_priced_debt += total_debt

            collaterals[collateral_id] = {
                'price': record.price if record is not None else None,
                'stale': self.risk_engine.is_stale(cfg),
                'active_coll': branch.active_pool.get_coll_balance(),
                'active_debt': branch.active_pool.get_debt(),
                'default_coll': branch.default_pool.get_coll_balance(),
                'default_debt': branch.default_pool.get_debt(),
                'stability_coll': self.stability_pool.get_coll_balance(collateral_id),
                'surplus_coll': self.coll_surplus_pool.get_coll_balance(collateral_id),
                'total_coll': total_coll,
                'total_debt': total_debt,
                'tcr': tcr,
                'recovery_mode': recovery_mode,
                'active_troves': len(self.trove_manager.active_troves(collateral_id)),
            }

        tcr = total_coll_value * DECIMAL_PRECISION // total_priced_debt if total_priced_debt > 0 else float('inf')
        return {
            'time': self.clock.now(),
            'collaterals': collaterals,
            'total_coll_value': total_coll_value,
            'total_debt': self.get_total_debt(),
            'nusd_supply': self.nusd_token.total_supply,
            'stability_nusd': self.stability_pool.get_total_nusd_deposits(),
            'base_rate': self.get_base_rate(),
            'tcr': tcr,
            'active_troves': sum(c['active_troves'] for c in collaterals.values()),
        }

    def check_conservation(self):
        """
        Reconciles debt and collateral across every pool.

        Returns:
            True

        Raises:
            ValueError: Describing the first mismatch found
        """
        system_debt = self.get_total_debt()
        if self.nusd_token.total_supply != system_debt:
            raise ValueError(f"nUSD supply {self.nusd_token.total_supply} != system debt {system_debt}")
        if self.nusd_token.total_supply != self.nusd_token.total_minted - self.nusd_token.total_burned:
            raise ValueError("nUSD supply does not match minted minus burned")
        if self.nusd_token.balance_of(StabilityPool.ACCOUNT) != self.stability_pool.get_total_nusd_deposits():
            raise ValueError("Stability pool nUSD balance does not match its deposits")

        for collateral_id, branch in self.trove_manager.branches.items():
            troves = [t for t in self.trove_manager.troves.values() if t.collateral_id == collateral_id and t.status == Status.ACTIVE]
            if branch.active_pool.get_debt() != sum(t.debt for t in troves):
                raise ValueError(f"{collateral_id} active pool debt does not match trove debts")
            if branch.active_pool.get_coll_balance() != sum(t.coll for t in troves):
                raise ValueError(f"{collateral_id} active pool collateral does not match trove collateral")
            if branch.total_stakes != sum(t.stake for t in troves):
                raise ValueError(f"{collateral_id} total stakes do not match trove stakes")

            held = (
                branch.get_entire_coll()
                + self.stability_pool.get_coll_balance(collateral_id)
                + self.coll_surplus_pool.get_coll_balance(collateral_id)
                + self.transfers.in_flight(collateral_id)
                + self.transfers.paid_out.get(collateral_id, 0)
            )
            received = self.collateral_received.get(collateral_id, 0)
            if held != received:
                raise ValueError(f"{collateral_id} collateral accounted {held} != received {received}")
        return True

    # --- Simulation ---

    def update_time(self, seconds):
        """
        Advances the simulation by the specified number of seconds.
        """
        self.clock.advance(seconds)
        self._update_history()

    def _update_history(self):
        """Updates history tracking for simulations."""
        state = self.get_system_state()

        self.time_history.append(state['time'])
        for collateral_id, figures in state['collaterals'].items():
            self.price_history.setdefault(collateral_id, []).append(figures['price'])
        self.total_coll_value_history.append(state['total_coll_value'])
        self.total_debt_history.append(state['total_debt'])
        self.stability_pool_history.append(state['stability_nusd'])
        self.active_troves_history.append(state['active_troves'])
        self.tcr_history.append(state['tcr'])
        self.base_rate_history.append(state['base_rate'])

    def _reset_history(self):
        self.time_history = []
        self.price_history = {}
        self.total_coll_value_history = []
        self.total_debt_history = []
        self.stability_pool_history = []
        self.active_troves_history = []
        self.tcr_history = []
        self.base_rate_history = []
        self._update_history()

    def liquidate_all(self, collateral_id, max_count=MAX_LIQUIDATION_BATCH):
        """
        Liquidates every liquidatable trove of a class, max_count at a time.

        Returns:
            List of LiquidationBatch, one per call
        """
        batches = []
        candidates = self.get_liquidatable_troves(collateral_id)
        while candidates:
            batch = self.liquidate(collateral_id, candidates, max_count)
            batches.append(batch)
            candidates = batch.remaining
        return batches

    def simulate_market_scenario(self, days, price_volatility=0.02, plot_results=True, seed=None):
        """
        Runs a simulation with random price movements over the specified period.

        Every hour each priced class moves by a log-normal step, the oracle
        submits the new prices and every liquidatable trove is liquidated.

        Args:
            days: Number of days to simulate
            price_volatility: Daily price volatility (standard deviation of log returns)
            plot_results: Whether to plot the results
            seed: Seed for the random generator

        Returns:
            Dictionary with simulation results
        """
        steps = days * 24  # hourly steps
        step_size = ONE_DAY // 24
        hourly_volatility = price_volatility / np.sqrt(24)
        rng = np.random.default_rng(seed)

        priced = [cid for cid in self.config.collaterals if self.risk_engine.get_price(cid) is not None]
        if not priced:
            raise ValidationError("At least one collateral class needs a price to simulate")

        self._reset_history()
        initial_troves = self.active_troves_history[0]
        log_returns = rng.normal(0, hourly_volatility, size=(steps, len(priced)))
        liquidations = 0

        for step in range(steps):
            self.clock.advance(step_size)
            for index, collateral_id in enumerate(priced):
                price = self.risk_engine.get_price(collateral_id).price
                new_price = max(1, int(price * np.exp(log_returns[step, index])))
                self.submit_price(self.config.oracle_id, collateral_id, new_price)

            for collateral_id in priced:
                for batch in self.liquidate_all(collateral_id):
                    liquidations += len(batch.liquidated)

            self._update_history()

        if plot_results:
            self.plot_history()

        final_state = self.get_system_state()
        return {
            'final_prices': {cid: final_state['collaterals'][cid]['price'] for cid in priced},
            'final_system_debt': final_state['total_debt'],
            'final_collateral_value': final_state['total_coll_value'],
            'final_stability_pool': final_state['stability_nusd'],
            'initial_troves': initial_troves,
            'active_troves': final_state['active_troves'],
            'liquidations': liquidations,
            'final_tcr': final_state['tcr'],
        }

    def plot_history(self, show=True):
        """Plots the recorded history; returns the matplotlib figure."""
        time_points = np.array(self.time_history) / ONE_DAY
        fig, axs = plt.subplots(5, 1, figsize=(12, 20), sharex=True)

        for collateral_id, prices in self.price_history.items():
            unit = 10 ** self.config.collateral(collateral_id).price_decimals
            values = [np.nan if p is None else p / unit for p in prices]
            axs[0].plot(time_points, values, label=collateral_id)
        axs[0].set_title('Collateral Prices')
        axs[0].set_ylabel('USD')
        axs[0].legend()

        axs[1].plot(time_points, np.array(self.total_debt_history, dtype=float) / DECIMAL_PRECISION)
        axs[1].set_title('Total System Debt')
        axs[1].set_ylabel('nUSD')

        axs[2].plot(time_points, np.array(self.stability_pool_history, dtype=float) / DECIMAL_PRECISION)
        axs[2].set_title('Stability Pool Deposits')
        axs[2].set_ylabel('nUSD')

        axs[3].plot(time_points, self.active_troves_history)
        axs[3].set_title('Active Troves')
        axs[3].set_ylabel('Count')

        tcr = [np.nan if value == float('inf') else value / DECIMAL_PRECISION for value in self.tcr_history]
        axs[4].plot(time_points, tcr)
        axs[4].set_title('Total Collateralization Ratio')
        axs[4].set_ylabel('Ratio')
        axs[4].set_xlabel('Days')

        plt.tight_layout()
        if show:
            plt.show()
        return fig
