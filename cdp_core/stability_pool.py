"""
Stability Pool for the nUSD CDP engine.

Holds nUSD deposited by Stability Pool depositors. When a trove is liquidated
the pool burns nUSD to cancel its debt and receives the trove's collateral in
exchange, shared pro rata between depositors.

Deposits are never updated one by one. A running product P tracks the
fraction of every deposit still remaining, and one running sum S per
collateral class tracks the collateral earned per unit deposited. P is
rescaled by SCALE_FACTOR (the scale) when it gets small, and reset to 1 when
a liquidation empties the pool (the epoch).
"""

import logging
from dataclasses import dataclass, field
from typing import Dict

from cdp_core.config import DECIMAL_PRECISION, SCALE_FACTOR, require_amount
from cdp_core.errors import InsufficientBalance, NotFound

logger = logging.getLogger(__name__)


@dataclass
class Deposit:
    """A depositor's nUSD principal as of their last pool operation."""
    initial_value: int


@dataclass
class Snapshots:
    """Pool state when the deposit was last updated."""
    P: int
    scale: int
    epoch: int
    S: Dict[str, int] = field(default_factory=dict)  # collateral_id -> S


class StabilityPool:
    """
    Pooled nUSD deposits absorbing liquidated debt across all collateral classes.
    """

    ACCOUNT = "stability_pool"

    def __init__(self, nusd_token, coll_surplus_pool):
        self.nusd_token = nusd_token
        self.coll_surplus_pool = coll_surplus_pool

        # Tracker for nUSD held in the pool
        self.total_nusd_deposits = 0

        # collateral_id -> collateral gained from liquidations, not yet settled
        self.coll_balance = {}

        self.deposits = {}  # depositor -> Deposit
        self.deposit_snapshots = {}  # depositor -> Snapshots

        self.P = DECIMAL_PRECISION
        self.current_scale = 0
        self.current_epoch = 0

        # collateral_id -> epoch -> scale -> S
        self.epoch_to_scale_to_sum = {}

        # Rounding remainders fed into the next offset
        self.last_coll_error_offset = {}  # collateral_id -> error
        self.last_nusd_loss_error_offset = 0

    def get_total_nusd_deposits(self):
        """Returns the total nUSD deposits in the Stability Pool."""
        return self.total_nusd_deposits

    def get_coll_balance(self, collateral_id):
        """Returns the unsettled collateral of a class held by the pool."""
        return self.coll_balance.get(collateral_id, 0)

    def _get_sum(self, collateral_id, epoch, scale):
        return self.epoch_to_scale_to_sum.get(collateral_id, {}).get(epoch, {}).get(scale, 0)

    def _add_to_sum(self, collateral_id, epoch, scale, amount):
        scale_to_sum = self.epoch_to_scale_to_sum.setdefault(collateral_id, {}).setdefault(epoch, {})
        scale_to_sum[scale] = scale_to_sum.get(scale, 0) + amount

    # --- Depositor operations ---

    def provide_to_sp(self, depositor, amount):
        """
        Deposits nUSD into the pool.

        Collateral gains of an existing deposit are settled into the
        depositor's claimable balance and the compounded deposit is folded into
        the new principal.

        Args:
            depositor: Account depositing
            amount: nUSD to deposit

        Returns:
            The new deposit value

        Raises:
            ValidationError: If amount is not positive
            InsufficientBalance: If the depositor holds less than amount
        """
        require_amount("amount", amount)
        if self.nusd_token.balance_of(depositor) < amount:
            raise InsufficientBalance(f"{depositor} does not hold {amount} nUSD")

        self._settle_coll_gains(depositor)
        compounded_deposit = self.get_compounded_nusd_deposit(depositor)

        self.nusd_token.send_to_pool(depositor, self.ACCOUNT, amount)
        self.total_nusd_deposits += amount

        new_deposit = compounded_deposit + amount
        self._update_deposit_and_snapshots(depositor, new_deposit)

        logger.info("Stability pool deposit", extra={"depositor": depositor, "amount": amount, "deposit": new_deposit})
        return new_deposit

    def withdraw_from_sp(self, depositor, amount):
        """
        Withdraws nUSD from the pool.

        Returns:
            The remaining deposit value

        Raises:
            NotFound: If the depositor has no deposit
            InsufficientBalance: If amount exceeds the compounded deposit
        """
        require_amount("amount", amount)
        if self.deposits.get(depositor) is None:
            raise NotFound(f"{depositor} has no stability pool deposit")

        compounded_deposit = self.get_compounded_nusd_deposit(depositor)
        if amount > compounded_deposit:
            raise InsufficientBalance(f"Withdrawal {amount} exceeds deposit {compounded_deposit}")

        self._settle_coll_gains(depositor)

        self.total_nusd_deposits -= amount
        self.nusd_token.return_from_pool(self.ACCOUNT, depositor, amount)

        new_deposit = compounded_deposit - amount
        self._update_deposit_and_snapshots(depositor, new_deposit)

        logger.info("Stability pool withdrawal", extra={"depositor": depositor, "amount": amount, "deposit": new_deposit})
        return new_deposit

    def settle(self, depositor):
        """
        Moves a depositor's collateral gains into their claimable balance and
        restarts the deposit from its compounded value. The principal is not
        otherwise touched.

        Returns:
            {collateral_id: gain} settled by this call
        """
        gains = self._settle_coll_gains(depositor)
        if depositor in self.deposits:
            self._update_deposit_and_snapshots(depositor, self.get_compounded_nusd_deposit(depositor))
        return gains

    def _settle_coll_gains(self, depositor):
        gains = self.get_depositor_coll_gains(depositor)
        for collateral_id, gain in gains.items():
            self.coll_balance[collateral_id] -= gain
            self.coll_surplus_pool.account_surplus(depositor, collateral_id, gain)
        return gains

    # --- Liquidation offset ---

    def offset(self, collateral_id, debt_to_offset, coll_to_add):
        """
        Cancels liquidated debt with pooled nUSD and takes the collateral.

        Args:
            collateral_id: Class of the liquidated trove
            debt_to_offset: Debt to cancel, at most the pool total
            coll_to_add: Collateral given to depositors in exchange

        Raises:
            ValueError: If the debt exceeds the pool deposits
        """
        if debt_to_offset == 0:
            return

        total_nusd = self.total_nusd_deposits
        if debt_to_offset > total_nusd:
            raise ValueError(f"Offset {debt_to_offset} exceeds stability pool deposits {total_nusd}")

        coll_gain_per_unit_staked, nusd_loss_per_unit_staked = self._compute_rewards_per_unit_staked(
            collateral_id, coll_to_add, debt_to_offset, total_nusd
        )
        self._update_reward_sum_and_product(collateral_id, coll_gain_per_unit_staked, nusd_loss_per_unit_staked)

        # Cancel the liquidated debt with the nUSD in the pool
        self.total_nusd_deposits -= debt_to_offset
        self.nusd_token.burn(self.ACCOUNT, debt_to_offset)
        self.coll_balance[collateral_id] = self.get_coll_balance(collateral_id) + coll_to_add

    def _compute_rewards_per_unit_staked(self, collateral_id, coll_to_add, debt_to_offset, total_nusd):
        coll_numerator = coll_to_add * DECIMAL_PRECISION + self.last_coll_error_offset.get(collateral_id, 0)

        if debt_to_offset == total_nusd:
            # The pool is emptied, every deposit loses everything
            nusd_loss_per_unit_staked = DECIMAL_PRECISION
            self.last_nusd_loss_error_offset = 0
        else:
            nusd_loss_numerator = debt_to_offset * DECIMAL_PRECISION - self.last_nusd_loss_error_offset
            # Round the loss up so compounded deposits never exceed the pool
            nusd_loss_per_unit_staked = nusd_loss_numerator // total_nusd + 1
            self.last_nusd_loss_error_offset = nusd_loss_per_unit_staked * total_nusd - nusd_loss_numerator

        coll_gain_per_unit_staked = coll_numerator // total_nusd
        self.last_coll_error_offset[collateral_id] = coll_numerator - coll_gain_per_unit_staked * total_nusd

        return coll_gain_per_unit_staked, nusd_loss_per_unit_staked

    def _update_reward_sum_and_product(self, collateral_id, coll_gain_per_unit_staked, nusd_loss_per_unit_staked):
        current_P = self.P
        new_product_factor = DECIMAL_PRECISION - nusd_loss_per_unit_staked

        marginal_coll_gain = coll_gain_per_unit_staked * current_P
        self._add_to_sum(collateral_id, self.current_epoch, self.current_scale, marginal_coll_gain)

        if new_product_factor == 0:
            self.current_epoch += 1
            self.current_scale = 0
            new_P = DECIMAL_PRECISION
            logger.info("Stability pool emptied", extra={"epoch": self.current_epoch})
        elif current_P * new_product_factor // DECIMAL_PRECISION < SCALE_FACTOR:
            new_P = current_P * new_product_factor * SCALE_FACTOR // DECIMAL_PRECISION
            self.current_scale += 1
            logger.debug("Stability pool scale changed", extra={"scale": self.current_scale})
        else:
            new_P = current_P * new_product_factor // DECIMAL_PRECISION

        if new_P <= 0:
            raise ValueError("P must never decrease to 0")
        self.P = new_P

    # --- Views ---

    def get_depositor_coll_gain(self, depositor, collateral_id):
        """
        Collateral of one class earned by a deposit since its snapshot.

        Gains made in the scale after the snapshot are divided by SCALE_FACTOR;
        anything later is negligible and ignored.
        """
        deposit = self.deposits.get(depositor)
        if deposit is None or deposit.initial_value == 0:
            return 0

        snapshots = self.deposit_snapshots[depositor]
        first_portion = self._get_sum(collateral_id, snapshots.epoch, snapshots.scale) - snapshots.S.get(collateral_id, 0)
        second_portion = self._get_sum(collateral_id, snapshots.epoch, snapshots.scale + 1) // SCALE_FACTOR

        coll_gain = deposit.initial_value * (first_portion + second_portion) // snapshots.P // DECIMAL_PRECISION
        return min(coll_gain, self.get_coll_balance(collateral_id))

    def get_depositor_coll_gains(self, depositor):
        """{collateral_id: gain} for every class with a positive gain."""
        gains = {}
        for collateral_id in self.epoch_to_scale_to_sum:
            gain = self.get_depositor_coll_gain(depositor, collateral_id)
            if gain > 0:
                gains[collateral_id] = gain
        return gains

    def get_compounded_nusd_deposit(self, depositor):
        """
        A deposit's current value after the liquidation losses since its snapshot.

        Zero once the pool has been emptied since the snapshot, or after more
        than one scale change.
        """
        deposit = self.deposits.get(depositor)
        if deposit is None or deposit.initial_value == 0:
            return 0

        snapshots = self.deposit_snapshots[depositor]
        if snapshots.epoch < self.current_epoch:
            return 0

        scale_diff = self.current_scale - snapshots.scale
        if scale_diff == 0:
            compounded_deposit = deposit.initial_value * self.P // snapshots.P
        elif scale_diff == 1:
            compounded_deposit = deposit.initial_value * self.P // snapshots.P // SCALE_FACTOR
        else:
            compounded_deposit = 0

        # Below a billionth of the principal the remainder is rounding noise
        if compounded_deposit < deposit.initial_value // 10**9:
            return 0
        return compounded_deposit

    def _update_deposit_and_snapshots(self, depositor, new_value):
        if new_value == 0:
            self.deposits.pop(depositor, None)
            self.deposit_snapshots.pop(depositor, None)
            return

        self.deposits[depositor] = Deposit(initial_value=new_value)
        self.deposit_snapshots[depositor] = Snapshots(
            P=self.P,
            scale=self.current_scale,
            epoch=self.current_epoch,
            S={
                collateral_id: self._get_sum(collateral_id, self.current_epoch, self.current_scale)
                for collateral_id in self.epoch_to_scale_to_sum
            },
        )
