"""
Fee Controller for the nUSD CDP engine.

A single base rate is shared by borrowing and redemption. It decays toward
zero with a fixed half-life, counted in whole minutes, and is bumped by every
borrow or redemption in proportion to the nUSD volume moved relative to the
total system debt.
"""

import logging
from decimal import Decimal, localcontext
from enum import Enum

from cdp_core.config import DECIMAL_PRECISION, ONE_MINUTE

logger = logging.getLogger(__name__)

# Exponents above this would take longer than 1000 years to matter
MAX_DECAY_MINUTES = 525_600_000


class FeeKind(Enum):
    BORROW = "borrow"
    REDEMPTION = "redemption"


def _dec_mul(x, y):
    """Fixed point multiplication, rounding half up."""
    return (x * y + DECIMAL_PRECISION // 2) // DECIMAL_PRECISION


def dec_pow(base, minutes):
    """
    Raises a fixed point `base` to an integer power by squaring.

    Args:
        base: Fixed point number, at most DECIMAL_PRECISION
        minutes: Non-negative exponent, capped at MAX_DECAY_MINUTES

    Returns:
        base ** minutes in fixed point
    """
    n = min(minutes, MAX_DECAY_MINUTES)
    if n == 0:
        return DECIMAL_PRECISION

    y = DECIMAL_PRECISION
    x = base
    while n > 1:
        if n % 2 == 0:
            x = _dec_mul(x, x)
            n //= 2
        else:
            y = _dec_mul(x, y)
            x = _dec_mul(x, x)
            n = (n - 1) // 2
    return _dec_mul(x, y)


def minute_decay_factor(half_life_seconds):
    """Per minute decay factor d such that d ** (half_life / 60) == 0.5."""
    with localcontext() as ctx:
        ctx.prec = 40
        exponent = Decimal(ONE_MINUTE) / Decimal(half_life_seconds)
        return int(Decimal("0.5") ** exponent * DECIMAL_PRECISION)


class FeeController:
    """
    Decaying base rate and the fees derived from it.
    """

    def __init__(self, clock):
        self.clock = clock
        self.base_rate = 0
        self.last_fee_operation_time = clock.now()

    def _minutes_passed_since_last_fee_op(self):
        return (self.clock.now() - self.last_fee_operation_time) // ONE_MINUTE

    def decayed_base_rate(self, fees):
        """Base rate after applying the decay of every whole minute elapsed."""
        minutes = self._minutes_passed_since_last_fee_op()
        factor = dec_pow(minute_decay_factor(fees.half_life_seconds), minutes)
        return self.base_rate * factor // DECIMAL_PRECISION

    def current_fee(self, fees, kind):
        """
        Fee rate for a borrow or a redemption right now.

        Returns:
            max(floor, decayed base rate) in fixed point, capped at
            max_borrow_fee for borrowing and at 100% for redemption
        """
        base = self.decayed_base_rate(fees)
        if kind == FeeKind.BORROW:
            return min(max(fees.borrow_fee_floor, base), fees.max_borrow_fee)
        return min(max(fees.redemption_fee_floor, base), DECIMAL_PRECISION)

    def borrow_fee(self, fees, amount):
        """Borrow fee in nUSD on `amount`, rounded down."""
        return amount * self.current_fee(fees, FeeKind.BORROW) // DECIMAL_PRECISION

    def record_volume(self, fees, amount, total_debt):
        """
        Bumps the base rate after `amount` nUSD was borrowed or redeemed.

        Args:
            fees: FeeConfig
            amount: nUSD volume of the operation
            total_debt: Total system debt the volume is measured against

        Returns:
            The new base rate
        """
        decayed = self.decayed_base_rate(fees)
        increment = 0
        if total_debt > 0:
            increment = amount * DECIMAL_PRECISION // total_debt // fees.beta
        new_base_rate = min(decayed + increment, DECIMAL_PRECISION)

        self.base_rate = new_base_rate
        self._update_last_fee_op_time()

        logger.debug("Base rate updated", extra={"base_rate": new_base_rate, "volume": amount})
        return new_base_rate

    def _update_last_fee_op_time(self):
        # Only whole minutes are consumed so sub-minute remainders keep decaying
        minutes = self._minutes_passed_since_last_fee_op()
        if minutes > 0:
            self.last_fee_operation_time += minutes * ONE_MINUTE
