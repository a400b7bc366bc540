"""
Risk Engine for the nUSD CDP engine.

Holds the latest oracle price of every collateral class and derives the
quantities every solvency decision depends on: individual collateral ratios,
the total collateral ratio (TCR) of a class and whether the class is in
Recovery Mode.
"""

import logging
from dataclasses import dataclass

from cdp_core.config import DECIMAL_PRECISION
from cdp_core.errors import StalePrice, Unauthorized, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class PriceRecord:
    """Latest accepted price of a collateral class."""
    price: int
    decimals: int
    timestamp: int


class RiskEngine:
    """
    Price store and ratio calculator.
    """

    def __init__(self, clock):
        self.clock = clock

        # collateral_id -> PriceRecord
        self.prices = {}

    def submit_price(self, config, caller, collateral_id, price, timestamp):
        """
        Records a new price pushed by the oracle.

        Args:
            config: ProtocolConfig snapshot
            caller: Identity submitting the price
            collateral_id: Collateral class the price is for
            price: Integer price with the class's price_decimals
            timestamp: Observation time in seconds

        Returns:
            The stored PriceRecord

        Raises:
            Unauthorized: If caller is not the configured oracle
            NotFound: If the class is not registered
            ValidationError: If the price is not positive, the timestamp lies in
                the future, or it does not increase over the previous one
        """
        if caller != config.oracle_id:
            raise Unauthorized(f"{caller} is not the oracle")
        cfg = config.collateral(collateral_id)
        if not isinstance(price, int) or price <= 0:
            raise ValidationError("Price must be a positive integer")
        if timestamp > self.clock.now():
            raise ValidationError("Price timestamp is in the future")

        previous = self.prices.get(collateral_id)
        if previous is not None and timestamp <= previous.timestamp:
            raise ValidationError(
                f"Price timestamp {timestamp} must be greater than {previous.timestamp}"
            )

        record = PriceRecord(price=price, decimals=cfg.price_decimals, timestamp=timestamp)
        self.prices[collateral_id] = record
        logger.info("Price accepted", extra={"collateral_id": collateral_id, "price": price, "timestamp": timestamp})
        return record

    def get_price(self, collateral_id):
        """Returns the latest PriceRecord of a class, or None."""
        return self.prices.get(collateral_id)

    def is_stale(self, cfg):
        """True when the class has no price or its price is older than the staleness bound."""
        record = self.prices.get(cfg.collateral_id)
        if record is None:
            return True
        return self.clock.now() - record.timestamp > cfg.staleness_bound

    def require_fresh_price(self, cfg):
        """
        Returns the current price of a class.

        Raises:
            StalePrice: If the class has no price or the price is stale
        """
        if self.is_stale(cfg):
            raise StalePrice(f"Price for {cfg.collateral_id} is missing or stale")
        return self.prices[cfg.collateral_id].price

    @staticmethod
    def ratio(cfg, coll, debt, price):
        """
        Collateral ratio as a fixed point number.

        Returns float('inf') when there is no debt.
        """
        if debt == 0:
            return float("inf")
        return cfg.value_of(coll, price) * DECIMAL_PRECISION // debt

    @staticmethod
    def nominal_ratio(coll, debt):
        """Price independent ratio used to order troves within a class."""
        if debt == 0:
            return float("inf")
        return coll * DECIMAL_PRECISION // debt

    def tcr(self, cfg, entire_coll, entire_debt, price):
        """Total collateral ratio of a class."""
        return self.ratio(cfg, entire_coll, entire_debt, price)

    def is_recovery_mode(self, cfg, entire_coll, entire_debt, price):
        """A class is in Recovery Mode while its TCR is below CCR."""
        return self.tcr(cfg, entire_coll, entire_debt, price) < cfg.ccr
