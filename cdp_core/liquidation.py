"""
Liquidation Engine for the nUSD CDP engine.

Liquidates undercollateralized troves of one class. The liquidation penalty
goes to the fee sink; the Stability Pool then offsets as much of the debt as
it can and takes a matching share of the remaining collateral; whatever the
pool could not absorb is redistributed over the other troves of the class.

Each call examines at most max_count candidates, in input order, and returns
the unexamined ones so the caller can continue in another call.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from cdp_core.config import require_amount
from cdp_core.errors import ValidationError
from cdp_core.transfers import trove_key
from cdp_core.trove_manager import Status

logger = logging.getLogger(__name__)


class SkipReason(Enum):
    NOT_FOUND = "not_found"
    BUSY = "busy"
    NO_DEBT = "no_debt"
    NOT_UNDERCOLLATERALIZED = "not_undercollateralized"
    NO_REDISTRIBUTION_TARGET = "no_redistribution_target"


@dataclass
class SkippedTrove:
    owner: str
    reason: SkipReason


@dataclass
class LiquidationValues:
    """How one trove's collateral and debt were split."""
    owner: str
    coll: int = 0
    debt: int = 0
    coll_penalty: int = 0
    debt_to_offset: int = 0
    coll_to_send_to_sp: int = 0
    debt_to_redistribute: int = 0
    coll_to_redistribute: int = 0


@dataclass
class LiquidationTotals:
    total_coll_in_sequence: int = 0
    total_debt_in_sequence: int = 0
    total_coll_penalty: int = 0
    total_debt_to_offset: int = 0
    total_coll_to_send_to_sp: int = 0
    total_debt_to_redistribute: int = 0
    total_coll_to_redistribute: int = 0

    def add(self, values):
        self.total_coll_in_sequence += values.coll
        self.total_debt_in_sequence += values.debt
        self.total_coll_penalty += values.coll_penalty
        self.total_debt_to_offset += values.debt_to_offset
        self.total_coll_to_send_to_sp += values.coll_to_send_to_sp
        self.total_debt_to_redistribute += values.debt_to_redistribute
        self.total_coll_to_redistribute += values.coll_to_redistribute


@dataclass
class LiquidationBatch:
    """
    Result of one liquidate() call.

    `remaining` holds the candidates not examined because max_count was
    reached; pass it to the next call to continue.
    """
    collateral_id: str
    liquidated: List[LiquidationValues] = field(default_factory=list)
    skipped: List[SkippedTrove] = field(default_factory=list)
    remaining: List[str] = field(default_factory=list)
    totals: LiquidationTotals = field(default_factory=LiquidationTotals)

    @property
    def processed(self):
        return len(self.liquidated) + len(self.skipped)

    @property
    def liquidated_owners(self):
        return [values.owner for values in self.liquidated]


class LiquidationEngine:
    """
    Bounded batch liquidation of one collateral class.
    """

    def __init__(self, trove_manager, stability_pool, coll_surplus_pool, risk_engine, reservations):
        self.trove_manager = trove_manager
        self.stability_pool = stability_pool
        self.coll_surplus_pool = coll_surplus_pool
        self.risk_engine = risk_engine
        self.reservations = reservations

    def liquidate(self, config, collateral_id, owners, max_count):
        """
        Liquidates the unsafe troves among `owners`.

        Args:
            config: ProtocolConfig snapshot
            collateral_id: Collateral class
            owners: Candidate trove owners, examined in order
            max_count: Maximum number of candidates examined by this call

        Returns:
            LiquidationBatch with liquidated and skipped troves and the
            continuation list

        Raises:
            NotFound: If the class is not registered
            ValidationError: If owners is empty or max_count is not positive
            StalePrice: If the class price is stale; nothing is liquidated
        """
        cfg = config.collateral(collateral_id)
        owners = list(owners)
        if not owners:
            raise ValidationError("At least one trove owner is required")
        require_amount("max_count", max_count)
        price = self.risk_engine.require_fresh_price(cfg)

        batch = LiquidationBatch(collateral_id=collateral_id, remaining=owners[max_count:])
        for owner in owners[:max_count]:
            reason = self._get_skip_reason(cfg, owner, price)
            if reason is not None:
                batch.skipped.append(SkippedTrove(owner, reason))
                logger.debug("Liquidation skipped", extra={"owner": owner, "collateral_id": collateral_id, "reason": reason.value})
                continue

            values = self._liquidate(config, cfg, owner)
            batch.liquidated.append(values)
            batch.totals.add(values)

        logger.info(
            "Liquidation batch finished",
            extra={
                "collateral_id": collateral_id,
                "liquidated": len(batch.liquidated),
                "skipped": len(batch.skipped),
                "remaining": len(batch.remaining),
            },
        )
        return batch

    def _get_skip_reason(self, cfg, owner, price):
        collateral_id = cfg.collateral_id
        if self.reservations.is_reserved(trove_key(owner, collateral_id)):
            return SkipReason.BUSY
        if self.trove_manager.get_trove_status(owner, collateral_id) != Status.ACTIVE:
            return SkipReason.NOT_FOUND

        latest = self.trove_manager.get_latest_trove_data(owner, collateral_id)
        if latest.entire_debt == 0:
            return SkipReason.NO_DEBT

        # Recovery Mode is re-evaluated per trove as earlier liquidations move the TCR
        threshold = cfg.ccr if self.trove_manager.is_recovery_mode(cfg, price) else cfg.mcr
        if self.risk_engine.ratio(cfg, latest.entire_coll, latest.entire_debt, price) >= threshold:
            return SkipReason.NOT_UNDERCOLLATERALIZED

        if latest.entire_debt > self.stability_pool.get_total_nusd_deposits():
            branch = self.trove_manager.get_branch(collateral_id)
            trove = self.trove_manager.get_trove(owner, collateral_id)
            if branch.total_stakes - trove.stake == 0:
                return SkipReason.NO_REDISTRIBUTION_TARGET
        return None

    def _get_offset_and_redistribution_vals(self, cfg, owner, coll, debt):
        values = LiquidationValues(owner=owner, coll=coll, debt=debt)
        values.coll_penalty = cfg.penalty_of(coll)
        coll_to_liquidate = coll - values.coll_penalty

        values.debt_to_offset = min(debt, self.stability_pool.get_total_nusd_deposits())
        values.coll_to_send_to_sp = coll_to_liquidate * values.debt_to_offset // debt
        values.debt_to_redistribute = debt - values.debt_to_offset
        values.coll_to_redistribute = coll_to_liquidate - values.coll_to_send_to_sp
        return values

    def _liquidate(self, config, cfg, owner):
        collateral_id = cfg.collateral_id
        trove_manager = self.trove_manager

        trove_manager.apply_pending_rewards(owner, collateral_id)
        trove = trove_manager.get_trove(owner, collateral_id)
        trove_manager.remove_stake(owner, collateral_id)

        values = self._get_offset_and_redistribution_vals(cfg, owner, trove.coll, trove.debt)
        active_pool = trove_manager.get_branch(collateral_id).active_pool

        if values.coll_penalty > 0:
            active_pool.send_coll(values.coll_penalty)
            self.coll_surplus_pool.account_surplus(config.fee_sink_id, collateral_id, values.coll_penalty)

        if values.debt_to_offset > 0:
            active_pool.decrease_debt(values.debt_to_offset)
            active_pool.send_coll(values.coll_to_send_to_sp)
            self.stability_pool.offset(collateral_id, values.debt_to_offset, values.coll_to_send_to_sp)

        trove_manager.redistribute_debt_and_coll(collateral_id, values.debt_to_redistribute, values.coll_to_redistribute)
        trove_manager.close_liquidated_trove(owner, collateral_id)
        trove_manager.update_system_snapshots(collateral_id)

        logger.info(
            "Trove liquidated",
            extra={
                "owner": owner,
                "collateral_id": collateral_id,
                "coll": values.coll,
                "debt": values.debt,
                "debt_offset": values.debt_to_offset,
                "debt_redistributed": values.debt_to_redistribute,
            },
        )
        return values
