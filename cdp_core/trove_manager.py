"""
Trove Manager for the nUSD CDP engine.

Owns every trove, keyed by (owner, collateral_id), and the per-class
redistribution state. Liquidations that cannot be offset by the Stability Pool
only bump two accumulators per class (L_coll and L_debt); each trove absorbs
its share the next time it is touched. Opening and adjusting enforce MCR, the
Recovery Mode rules and the class debt ceiling before anything is mutated.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from cdp_core.active_pool import ActivePool
from cdp_core.config import DECIMAL_PRECISION, require_amount
from cdp_core.default_pool import DefaultPool
from cdp_core.errors import InsufficientBalance, NotFound, UnsafeOperation, ValidationError
from cdp_core.transfers import trove_key

logger = logging.getLogger(__name__)


class Status(Enum):
    """Trove status."""
    NON_EXISTENT = 0
    ACTIVE = 1
    CLOSED_BY_OWNER = 2
    CLOSED_BY_LIQUIDATION = 3
    CLOSED_BY_REDEMPTION = 4


@dataclass
class Trove:
    """Recorded state of a trove, as of its last touch."""
    owner: str
    collateral_id: str
    coll: int = 0
    debt: int = 0
    stake: int = 0
    status: Status = Status.NON_EXISTENT
    last_update_time: int = 0


@dataclass
class RewardSnapshot:
    """L_coll and L_debt of the class when the trove was last touched."""
    coll: int = 0
    debt: int = 0


@dataclass
class LatestTroveData:
    """A trove's state including redistribution gains not yet absorbed."""
    entire_coll: int = 0
    entire_debt: int = 0
    redist_coll_gain: int = 0
    redist_debt_gain: int = 0
    recorded_coll: int = 0
    recorded_debt: int = 0


@dataclass
class CollateralBranch:
    """
    Per-class pools and redistribution accumulators.

    L_coll and L_debt are the collateral and debt owed per unit of stake by
    all redistributions so far. They never decrease.
    """
    collateral_id: str
    active_pool: ActivePool
    default_pool: DefaultPool
    L_coll: int = 0
    L_debt: int = 0
    last_coll_error_redistribution: int = 0
    last_debt_error_redistribution: int = 0
    total_stakes: int = 0
    # total_stakes and entire collateral right after the last liquidation
    total_stakes_snapshot: int = 0
    total_coll_snapshot: int = 0

    def get_entire_coll(self):
        return self.active_pool.get_coll_balance() + self.default_pool.get_coll_balance()

    def get_entire_debt(self):
        return self.active_pool.get_debt() + self.default_pool.get_debt()


@dataclass
class TroveAdjustment:
    """Outcome of adjust_trove()."""
    owner: str
    collateral_id: str
    coll_change: int
    debt_change: int
    borrow_fee: int
    coll: int
    debt: int

    @property
    def coll_withdrawn(self):
        return -self.coll_change if self.coll_change < 0 else 0


class TroveManager:
    """
    Trove ledger for all collateral classes.
    """

    def __init__(self, nusd_token, risk_engine, fee_controller, reservations, clock):
        self.nusd_token = nusd_token
        self.risk_engine = risk_engine
        self.fee_controller = fee_controller
        self.reservations = reservations
        self.clock = clock

        # collateral_id -> CollateralBranch
        self.branches = {}

        # (owner, collateral_id) -> Trove
        self.troves = {}

        # (owner, collateral_id) -> RewardSnapshot
        self.reward_snapshots = {}

    # --- Lookups ---

    def get_branch(self, collateral_id):
        """Returns the branch of a class, creating empty pools on first use."""
        branch = self.branches.get(collateral_id)
        if branch is None:
            default_pool = DefaultPool(collateral_id)
            active_pool = ActivePool(collateral_id, default_pool)
            default_pool.active_pool = active_pool
            branch = CollateralBranch(collateral_id, active_pool, default_pool)
            self.branches[collateral_id] = branch
        return branch

    def get_trove(self, owner, collateral_id):
        """Returns the stored Trove, or None."""
        return self.troves.get((owner, collateral_id))

    def get_trove_status(self, owner, collateral_id):
        trove = self.get_trove(owner, collateral_id)
        return trove.status if trove is not None else Status.NON_EXISTENT

    def active_troves(self, collateral_id):
        """Owners of the active troves of a class."""
        return [
            trove.owner for trove in self.troves.values()
            if trove.collateral_id == collateral_id and trove.status == Status.ACTIVE
        ]

    def _require_active_trove(self, owner, collateral_id):
        trove = self.get_trove(owner, collateral_id)
        if trove is None or trove.status != Status.ACTIVE:
            raise NotFound(f"No active {collateral_id} trove for {owner}")
        return trove

    # --- Redistribution gains ---

    def get_pending_coll_reward(self, owner, collateral_id):
        """Collateral owed to a trove by redistributions since its last touch."""
        trove = self.get_trove(owner, collateral_id)
        if trove is None or trove.status != Status.ACTIVE:
            return 0
        snapshot = self.reward_snapshots[(owner, collateral_id)]
        reward_per_unit_staked = self.get_branch(collateral_id).L_coll - snapshot.coll
        return trove.stake * reward_per_unit_staked // DECIMAL_PRECISION

    def get_pending_debt_reward(self, owner, collateral_id):
        """Debt owed by a trove from redistributions since its last touch."""
        trove = self.get_trove(owner, collateral_id)
        if trove is None or trove.status != Status.ACTIVE:
            return 0
        snapshot = self.reward_snapshots[(owner, collateral_id)]
        reward_per_unit_staked = self.get_branch(collateral_id).L_debt - snapshot.debt
        return trove.stake * reward_per_unit_staked // DECIMAL_PRECISION

    def get_latest_trove_data(self, owner, collateral_id):
        """
        Returns a trove's collateral and debt including pending redistribution
        gains. Non-active troves report zeros.
        """
        trove = self.get_trove(owner, collateral_id)
        if trove is None or trove.status != Status.ACTIVE:
            return LatestTroveData()

        default_pool = self.get_branch(collateral_id).default_pool
        coll_gain = min(self.get_pending_coll_reward(owner, collateral_id), default_pool.get_coll_balance())
        debt_gain = min(self.get_pending_debt_reward(owner, collateral_id), default_pool.get_debt())

        return LatestTroveData(
            entire_coll=trove.coll + coll_gain,
            entire_debt=trove.debt + debt_gain,
            redist_coll_gain=coll_gain,
            redist_debt_gain=debt_gain,
            recorded_coll=trove.coll,
            recorded_debt=trove.debt,
        )

    def apply_pending_rewards(self, owner, collateral_id):
        """
        Moves a trove's pending redistribution gains from the Default Pool into
        the trove and the Active Pool, then refreshes its reward snapshot.

        Returns:
            The LatestTroveData that was applied
        """
        trove = self._require_active_trove(owner, collateral_id)
        latest = self.get_latest_trove_data(owner, collateral_id)

        if latest.redist_coll_gain > 0 or latest.redist_debt_gain > 0:
            branch = self.get_branch(collateral_id)
            branch.default_pool.decrease_debt(latest.redist_debt_gain)
            branch.active_pool.increase_debt(latest.redist_debt_gain)
            branch.default_pool.send_coll_to_active_pool(latest.redist_coll_gain)

            trove.coll = latest.entire_coll
            trove.debt = latest.entire_debt

        self._update_trove_reward_snapshots(owner, collateral_id)
        return latest

    def _update_trove_reward_snapshots(self, owner, collateral_id):
        branch = self.get_branch(collateral_id)
        self.reward_snapshots[(owner, collateral_id)] = RewardSnapshot(coll=branch.L_coll, debt=branch.L_debt)

    def _compute_new_stake(self, branch, coll):
        """
        Stake for a given collateral amount.

        Before the first liquidation stake equals collateral. Afterwards it is
        scaled by total_stakes_snapshot / total_coll_snapshot so that a fresh
        stake weighs the same as the stake of a trove whose collateral still
        includes unapplied redistribution gains.
        """
        if branch.total_coll_snapshot == 0 or branch.total_stakes_snapshot == 0:
            return coll
        return coll * branch.total_stakes_snapshot // branch.total_coll_snapshot

    def _update_stake_and_total_stakes(self, trove, new_coll):
        """
        Recomputes a trove's stake and keeps total_stakes in sync.

        Returns:
            New stake value
        """
        branch = self.get_branch(trove.collateral_id)
        new_stake = self._compute_new_stake(branch, new_coll)
        branch.total_stakes = branch.total_stakes - trove.stake + new_stake
        trove.stake = new_stake
        return new_stake

    def update_system_snapshots(self, collateral_id):
        """Records total stakes and entire collateral after a liquidation."""
        branch = self.get_branch(collateral_id)
        branch.total_stakes_snapshot = branch.total_stakes
        branch.total_coll_snapshot = branch.get_entire_coll()

    def remove_stake(self, owner, collateral_id):
        trove = self._require_active_trove(owner, collateral_id)
        self.get_branch(collateral_id).total_stakes -= trove.stake
        trove.stake = 0

    def redistribute_debt_and_coll(self, collateral_id, debt, coll):
        """
        Spreads debt and collateral over every staked trove of the class in
        proportion to stake. Only the class accumulators are touched.

        Args:
            collateral_id: Collateral class
            debt: Debt to redistribute
            coll: Collateral to redistribute

        Raises:
            ValueError: If the class has no stake left to absorb the amounts
        """
        if debt == 0 and coll == 0:
            return

        branch = self.get_branch(collateral_id)
        if branch.total_stakes == 0:
            raise ValueError(f"No {collateral_id} troves left to absorb redistribution")

        branch.active_pool.decrease_debt(debt)
        branch.default_pool.increase_debt(debt)
        branch.active_pool.send_coll_to_default_pool(coll)

        # Carry the division remainders into the next redistribution
        coll_numerator = coll * DECIMAL_PRECISION + branch.last_coll_error_redistribution
        coll_reward_per_unit_staked = coll_numerator // branch.total_stakes
        branch.last_coll_error_redistribution = coll_numerator - coll_reward_per_unit_staked * branch.total_stakes

        debt_numerator = debt * DECIMAL_PRECISION + branch.last_debt_error_redistribution
        debt_reward_per_unit_staked = debt_numerator // branch.total_stakes
        branch.last_debt_error_redistribution = debt_numerator - debt_reward_per_unit_staked * branch.total_stakes

        branch.L_coll += coll_reward_per_unit_staked
        branch.L_debt += debt_reward_per_unit_staked

        logger.info(
            "Redistributed debt and collateral",
            extra={"collateral_id": collateral_id, "debt": debt, "coll": coll, "L_coll": branch.L_coll, "L_debt": branch.L_debt},
        )

    # --- Ratios ---

    def is_recovery_mode(self, cfg, price):
        branch = self.get_branch(cfg.collateral_id)
        return self.risk_engine.is_recovery_mode(cfg, branch.get_entire_coll(), branch.get_entire_debt(), price)

    def _require_within_debt_ceiling(self, cfg, debt_increase):
        if not cfg.debt_ceiling:
            return
        new_total = self.get_branch(cfg.collateral_id).get_entire_debt() + debt_increase
        if new_total > cfg.debt_ceiling:
            raise UnsafeOperation(
                f"{cfg.collateral_id} debt would reach {new_total}, above ceiling {cfg.debt_ceiling}"
            )

    # --- Owner operations ---

    def open_trove(self, config, owner, collateral_id, coll_in, requested_debt):
        """
        Opens a trove.

        A price is only needed when debt is requested; a trove with collateral
        and no debt is a plain collateral deposit.

        Args:
            config: ProtocolConfig snapshot
            owner: Trove owner
            collateral_id: Collateral class
            coll_in: Collateral already received for the trove
            requested_debt: nUSD the owner wants to receive

        Returns:
            The new Trove

        Raises:
            NotFound: If the class is not registered
            ValidationError: If the amounts are invalid or the trove is active
            Busy: If the trove is reserved by a pending transfer
            StalePrice: If debt is requested without a fresh price
            UnsafeOperation: If the ratio or the debt ceiling would be breached
        """
        cfg = config.collateral(collateral_id)
        require_amount("coll_in", coll_in)
        require_amount("requested_debt", requested_debt, allow_zero=True)
        self.reservations.require_free(trove_key(owner, collateral_id))
        if self.get_trove_status(owner, collateral_id) == Status.ACTIVE:
            raise ValidationError(f"{owner} already has an active {collateral_id} trove")

        fee = 0
        if requested_debt > 0:
            price = self.risk_engine.require_fresh_price(cfg)
            fee = self.fee_controller.borrow_fee(config.fees, requested_debt)
            self._require_within_debt_ceiling(cfg, requested_debt + fee)

            icr = self.risk_engine.ratio(cfg, coll_in, requested_debt + fee, price)
            if self.is_recovery_mode(cfg, price):
                if icr < cfg.ccr:
                    raise UnsafeOperation("In Recovery Mode new troves must have ICR >= CCR")
            elif icr < cfg.mcr:
                raise UnsafeOperation("ICR must be greater than or equal to MCR")

        debt = requested_debt + fee
        trove = Trove(
            owner=owner,
            collateral_id=collateral_id,
            coll=coll_in,
            debt=debt,
            status=Status.ACTIVE,
            last_update_time=self.clock.now(),
        )
        self.troves[(owner, collateral_id)] = trove
        self._update_trove_reward_snapshots(owner, collateral_id)
        self._update_stake_and_total_stakes(trove, coll_in)

        branch = self.get_branch(collateral_id)
        branch.active_pool.receive_coll(coll_in)
        branch.active_pool.increase_debt(debt)

        if requested_debt > 0:
            self.nusd_token.mint(owner, requested_debt)
            if fee > 0:
                self.nusd_token.mint(config.fee_sink_id, fee)
            self.fee_controller.record_volume(config.fees, requested_debt, self.nusd_token.total_supply)

        logger.info(
            "Trove opened",
            extra={"owner": owner, "collateral_id": collateral_id, "coll": coll_in, "debt": debt, "fee": fee},
        )
        return trove

    def adjust_trove(self, config, owner, collateral_id, coll_change, debt_change):
        """
        Changes a trove's collateral and/or debt by signed amounts.

        Pending redistribution is absorbed first. Borrowing pays the borrow fee,
        repaying burns nUSD from the owner. Top-ups and repayments need no
        price; withdrawals and new debt need a fresh one.

        Returns:
            TroveAdjustment describing the applied change

        Raises:
            ValidationError: If nothing changes or collateral would reach zero
            NotFound: If the trove is not active
            Busy: If the trove is reserved by a pending transfer
            InsufficientBalance: If withdrawing or repaying more than available
            StalePrice: If a price is needed and stale
            UnsafeOperation: If MCR, Recovery Mode rules or the ceiling are breached
        """
        cfg = config.collateral(collateral_id)
        require_amount("coll_change", coll_change, allow_zero=True, signed=True)
        require_amount("debt_change", debt_change, allow_zero=True, signed=True)
        if coll_change == 0 and debt_change == 0:
            raise ValidationError("Adjustment must change collateral or debt")
        self.reservations.require_free(trove_key(owner, collateral_id))
        trove = self._require_active_trove(owner, collateral_id)

        latest = self.get_latest_trove_data(owner, collateral_id)
        new_coll = latest.entire_coll + coll_change
        if new_coll < 0:
            raise InsufficientBalance(f"Cannot withdraw {-coll_change}, trove holds {latest.entire_coll}")
        if new_coll == 0:
            raise ValidationError("Withdrawing all collateral requires closing the trove")

        fee = 0
        repayment = 0
        if debt_change > 0:
            fee = self.fee_controller.borrow_fee(config.fees, debt_change)
            self._require_within_debt_ceiling(cfg, debt_change + fee)
        elif debt_change < 0:
            repayment = -debt_change
            if repayment > latest.entire_debt:
                raise InsufficientBalance(f"Repayment {repayment} exceeds trove debt {latest.entire_debt}")
            if self.nusd_token.balance_of(owner) < repayment:
                raise InsufficientBalance(f"{owner} does not hold {repayment} nUSD")
        new_debt = latest.entire_debt + debt_change + fee

        if coll_change < 0 or debt_change > 0:
            price = self.risk_engine.require_fresh_price(cfg)
            self._require_valid_adjustment(cfg, price, latest, new_coll, new_debt, debt_change > 0)

        branch = self.get_branch(collateral_id)
        self.apply_pending_rewards(owner, collateral_id)

        if coll_change > 0:
            branch.active_pool.receive_coll(coll_change)
        elif coll_change < 0:
            branch.active_pool.send_coll(-coll_change)

        if debt_change > 0:
            branch.active_pool.increase_debt(debt_change + fee)
            self.nusd_token.mint(owner, debt_change)
            if fee > 0:
                self.nusd_token.mint(config.fee_sink_id, fee)
        elif repayment > 0:
            self.nusd_token.burn(owner, repayment)
            branch.active_pool.decrease_debt(repayment)

        trove.coll = new_coll
        trove.debt = new_debt
        trove.last_update_time = self.clock.now()
        self._update_stake_and_total_stakes(trove, new_coll)

        if debt_change > 0:
            self.fee_controller.record_volume(config.fees, debt_change, self.nusd_token.total_supply)

        logger.info(
            "Trove adjusted",
            extra={"owner": owner, "collateral_id": collateral_id, "coll_change": coll_change, "debt_change": debt_change, "fee": fee},
        )
        return TroveAdjustment(
            owner=owner,
            collateral_id=collateral_id,
            coll_change=coll_change,
            debt_change=debt_change,
            borrow_fee=fee,
            coll=new_coll,
            debt=new_debt,
        )

    def _require_valid_adjustment(self, cfg, price, latest, new_coll, new_debt, is_debt_increase):
        if new_debt == 0:
            return
        new_icr = self.risk_engine.ratio(cfg, new_coll, new_debt, price)

        if self.is_recovery_mode(cfg, price):
            old_icr = self.risk_engine.ratio(cfg, latest.entire_coll, latest.entire_debt, price)
            if new_icr < old_icr:
                raise UnsafeOperation("In Recovery Mode an adjustment cannot decrease the ICR")
            if is_debt_increase and new_icr < cfg.ccr:
                raise UnsafeOperation("In Recovery Mode new debt requires ICR >= CCR")

        if new_icr < cfg.mcr:
            raise UnsafeOperation("An operation that would result in ICR < MCR is not permitted")

    def close_trove(self, config, owner, collateral_id):
        """
        Closes a debt-free trove and releases its collateral from the ledger.

        The trove keeps status CLOSED_BY_OWNER until the collateral payout
        resolves; release_closed_trove() then frees its storage.

        Returns:
            Collateral to pay out to the owner

        Raises:
            UnsafeOperation: If the trove still has debt after absorption
        """
        config.collateral(collateral_id)
        self.reservations.require_free(trove_key(owner, collateral_id))
        trove = self._require_active_trove(owner, collateral_id)

        latest = self.get_latest_trove_data(owner, collateral_id)
        if latest.entire_debt > 0:
            raise UnsafeOperation(f"Trove still owes {latest.entire_debt} nUSD, repay it before closing")

        self.apply_pending_rewards(owner, collateral_id)
        self.remove_stake(owner, collateral_id)

        coll = trove.coll
        self.get_branch(collateral_id).active_pool.send_coll(coll)
        self._close_trove(trove, Status.CLOSED_BY_OWNER)

        logger.info("Trove closed", extra={"owner": owner, "collateral_id": collateral_id, "coll": coll})
        return coll

    def _close_trove(self, trove, status):
        trove.coll = 0
        trove.debt = 0
        trove.stake = 0
        trove.status = status
        trove.last_update_time = self.clock.now()

    # --- Liquidation and redemption hooks ---

    def close_liquidated_trove(self, owner, collateral_id):
        """Zeroes a trove whose collateral and debt were moved out by a liquidation."""
        trove = self._require_active_trove(owner, collateral_id)
        self._close_trove(trove, Status.CLOSED_BY_LIQUIDATION)
        return trove

    def redeem_from_trove(self, owner, collateral_id, debt_amount, coll_amount):
        """
        Removes redeemed debt and collateral from a trove.

        A trove left with neither debt nor collateral is closed; a trove left
        with collateral only stays open for its owner to withdraw.
        """
        trove = self._require_active_trove(owner, collateral_id)
        self.apply_pending_rewards(owner, collateral_id)

        branch = self.get_branch(collateral_id)
        branch.active_pool.decrease_debt(debt_amount)
        branch.active_pool.send_coll(coll_amount)

        trove.debt -= debt_amount
        trove.coll -= coll_amount
        trove.last_update_time = self.clock.now()

        if trove.debt == 0 and trove.coll == 0:
            self.remove_stake(owner, collateral_id)
            self._close_trove(trove, Status.CLOSED_BY_REDEMPTION)
        else:
            self._update_stake_and_total_stakes(trove, trove.coll)
        return trove

    # --- Transfer outcomes ---

    def restore_withdrawn_coll(self, owner, collateral_id, amount):
        """Puts back collateral whose withdrawal transfer failed."""
        trove = self._require_active_trove(owner, collateral_id)
        self.apply_pending_rewards(owner, collateral_id)
        self.get_branch(collateral_id).active_pool.receive_coll(amount)
        trove.coll += amount
        self._update_stake_and_total_stakes(trove, trove.coll)

    def reopen_closed_trove(self, owner, collateral_id, coll):
        """Reactivates a trove whose closing payout failed."""
        trove = self.get_trove(owner, collateral_id)
        if trove is None or trove.status != Status.CLOSED_BY_OWNER:
            raise NotFound(f"No closed {collateral_id} trove for {owner}")
        trove.status = Status.ACTIVE
        trove.coll = coll
        trove.debt = 0
        self._update_trove_reward_snapshots(owner, collateral_id)
        self._update_stake_and_total_stakes(trove, coll)
        self.get_branch(collateral_id).active_pool.receive_coll(coll)

    def release_closed_trove(self, owner, collateral_id):
        """Frees the storage of a closed trove."""
        trove = self.get_trove(owner, collateral_id)
        if trove is not None and trove.status != Status.ACTIVE:
            del self.troves[(owner, collateral_id)]
            self.reward_snapshots.pop((owner, collateral_id), None)
