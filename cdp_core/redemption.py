"""
Redemption Engine for the nUSD CDP engine.

Lets nUSD holders swap nUSD for collateral at oracle price. Redemptions walk
the troves of a class from the lowest collateral ratio upward, starting at a
caller supplied hint that is verified against the true ordering. The
collateral is credited to the redeemer's claimable balance, minus the
redemption fee which goes to the fee sink.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from cdp_core.config import DECIMAL_PRECISION, require_amount
from cdp_core.errors import InsufficientBalance, UnsafeOperation
from cdp_core.fee_controller import FeeKind
from cdp_core.sorted_troves import SortedTroves
from cdp_core.transfers import trove_key

logger = logging.getLogger(__name__)


@dataclass
class SingleRedemptionValues:
    """What one trove gave up to a redemption."""
    owner: str
    debt_lot: int
    coll_lot: int
    coll_fee: int


@dataclass
class RedemptionResult:
    """
    Result of one redeem() call.

    `next_hint` is the weakest redeemable trove after the call, the starting
    point for a follow-up redemption.
    """
    redeemer: str
    collateral_id: str
    requested: int
    redeemed: int = 0
    coll_drawn: int = 0
    coll_fee: int = 0
    redemption_rate: int = 0
    redemptions: List[SingleRedemptionValues] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    next_hint: Optional[str] = None

    @property
    def remaining(self):
        return self.requested - self.redeemed

    @property
    def coll_to_redeemer(self):
        return self.coll_drawn - self.coll_fee


class RedemptionEngine:
    """
    Bounded, ratio ordered redemption of one collateral class.
    """

    def __init__(self, trove_manager, coll_surplus_pool, nusd_token, risk_engine, fee_controller, reservations):
        self.trove_manager = trove_manager
        self.coll_surplus_pool = coll_surplus_pool
        self.nusd_token = nusd_token
        self.risk_engine = risk_engine
        self.fee_controller = fee_controller
        self.reservations = reservations

    def redeem(self, config, redeemer, collateral_id, amount, hint_owner, max_iterations):
        """
        Redeems nUSD for collateral of one class.

        Args:
            config: ProtocolConfig snapshot
            redeemer: Account burning nUSD
            collateral_id: Collateral class to redeem against
            amount: nUSD to redeem
            hint_owner: Owner of the weakest redeemable trove, or None to start
                at the weakest one found by the engine
            max_iterations: Maximum number of troves visited by this call

        Returns:
            RedemptionResult

        Raises:
            ValidationError: If amount or max_iterations are not positive
            InsufficientBalance: If the redeemer holds less than amount
            StalePrice: If the class price is stale
            BadHint: If the hint is not the weakest redeemable trove
            UnsafeOperation: If nothing could be redeemed
        """
        cfg = config.collateral(collateral_id)
        require_amount("amount", amount)
        require_amount("max_iterations", max_iterations)
        if self.nusd_token.balance_of(redeemer) < amount:
            raise InsufficientBalance(f"{redeemer} does not hold {amount} nUSD")
        price = self.risk_engine.require_fresh_price(cfg)

        sorted_troves = SortedTroves(self.trove_manager, collateral_id)
        if hint_owner is None:
            start = sorted_troves.first_redeemable_index(cfg, price)
            if start is None:
                raise UnsafeOperation(f"No redeemable {collateral_id} trove")
        else:
            start = sorted_troves.validate_first_redemption_hint(cfg, price, hint_owner)

        # Fee rate before this redemption bumps the base rate
        redemption_rate = self.fee_controller.current_fee(config.fees, FeeKind.REDEMPTION)
        total_system_debt = self.nusd_token.total_supply

        result = RedemptionResult(
            redeemer=redeemer,
            collateral_id=collateral_id,
            requested=amount,
            redemption_rate=redemption_rate,
        )
        remaining = amount
        iterations = 0
        for owner in sorted_troves.owners()[start:]:
            if remaining == 0 or iterations >= max_iterations:
                break
            iterations += 1

            if self.reservations.is_reserved(trove_key(owner, collateral_id)):
                result.skipped.append(owner)
                continue

            single = self._redeem_collateral_from_trove(cfg, owner, remaining, price, redemption_rate)
            if single is None:
                result.skipped.append(owner)
                continue

            self._apply_single_redemption(config, redeemer, collateral_id, single)
            result.redemptions.append(single)
            result.coll_drawn += single.coll_lot
            result.coll_fee += single.coll_fee
            remaining -= single.debt_lot

        result.redeemed = amount - remaining
        if result.redeemed == 0:
            raise UnsafeOperation(f"Unable to redeem any {collateral_id} debt")

        self.nusd_token.burn(redeemer, result.redeemed)
        self.fee_controller.record_volume(config.fees, result.redeemed, total_system_debt)

        next_troves = SortedTroves(self.trove_manager, collateral_id)
        next_index = next_troves.first_redeemable_index(cfg, price)
        result.next_hint = next_troves.owners()[next_index] if next_index is not None else None

        logger.info(
            "Redemption",
            extra={
                "redeemer": redeemer,
                "collateral_id": collateral_id,
                "redeemed": result.redeemed,
                "coll_drawn": result.coll_drawn,
                "coll_fee": result.coll_fee,
                "troves": len(result.redemptions),
            },
        )
        return result

    def _redeem_collateral_from_trove(self, cfg, owner, max_nusd_amount, price, redemption_rate):
        latest = self.trove_manager.get_latest_trove_data(owner, cfg.collateral_id)
        debt_lot = min(max_nusd_amount, latest.entire_debt)
        # Round down so a trove never hands out more than the lot is worth
        coll_lot = cfg.coll_for_value(debt_lot, price)
        if debt_lot == 0 or coll_lot == 0 or coll_lot > latest.entire_coll:
            return None

        coll_fee = coll_lot * redemption_rate // DECIMAL_PRECISION
        return SingleRedemptionValues(owner=owner, debt_lot=debt_lot, coll_lot=coll_lot, coll_fee=coll_fee)

    def _apply_single_redemption(self, config, redeemer, collateral_id, single):
        self.trove_manager.redeem_from_trove(single.owner, collateral_id, single.debt_lot, single.coll_lot)
        self.coll_surplus_pool.account_surplus(config.fee_sink_id, collateral_id, single.coll_fee)
        self.coll_surplus_pool.account_surplus(redeemer, collateral_id, single.coll_lot - single.coll_fee)
