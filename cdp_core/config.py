"""
Protocol constants and configuration snapshots for the nUSD CDP engine.

Every core operation receives a ProtocolConfig. The snapshot is frozen: the
collateral registry builds a new one when governance changes a parameter and
hands it to CDPProtocol.apply_config(). The core never mutates it.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional

from cdp_core.errors import NotFound, ValidationError

# Fixed point precision shared by ratios, rates and accumulators
DECIMAL_PRECISION = 10**18
_100pct = DECIMAL_PRECISION

BPS_DENOMINATOR = 10_000

# Stability pool P is rescaled by this factor when it would drop below it
SCALE_FACTOR = 10**9

MAX_PRICE_DECIMALS = 18
MIN_MCR = 11 * DECIMAL_PRECISION // 10  # 110%

ONE_MINUTE = 60
ONE_DAY = 24 * 60 * 60
DEFAULT_STALENESS_BOUND = 3600

# Per call work bounds used when the caller does not pass one
MAX_LIQUIDATION_BATCH = 50
MAX_REDEMPTION_ITERATIONS = 50

# Fee defaults
BORROWING_FEE_FLOOR = DECIMAL_PRECISION // 200  # 0.5%
REDEMPTION_FEE_FLOOR = DECIMAL_PRECISION // 200  # 0.5%
MAX_BORROWING_FEE = DECIMAL_PRECISION // 20  # 5%
BASE_RATE_HALF_LIFE = 12 * 60 * 60  # 12 hours
REDEMPTION_BETA = 2


def to_fixed(value, precision=DECIMAL_PRECISION):
    """
    Converts a human readable number ("1.30", 1.5, 2) into fixed point.

    Goes through Decimal(str(value)) so 1.1 becomes exactly 1.1e18.
    """
    return int(Decimal(str(value)) * precision)


def to_units(value, decimals=18):
    """Converts a token amount into its smallest units."""
    return to_fixed(value, 10**decimals)


def require_amount(name, value, allow_zero=False, signed=False):
    """
    Checks that `value` is an integer amount.

    Raises:
        ValidationError: If value is not an int, is negative (unless signed),
            or is zero (unless allow_zero)
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer amount")
    if value < 0 and not signed:
        raise ValidationError(f"{name} must not be negative")
    if value == 0 and not allow_zero:
        raise ValidationError(f"{name} must be greater than zero")
    return value


@dataclass(frozen=True)
class CollateralConfig:
    """
    Parameters of one collateral class.

    mcr and ccr are fixed point ratios (1.30 -> 1.3e18). Prices for the class
    are integers with price_decimals decimals, so the value of coll units is
    coll * price // 10**price_decimals.
    """
    collateral_id: str
    mcr: int
    ccr: int
    price_decimals: int = 8
    debt_ceiling: int = 0  # 0 means no ceiling
    liquidation_penalty_bps: int = 500
    staleness_bound: int = DEFAULT_STALENESS_BOUND

    def __post_init__(self):
        if not self.collateral_id:
            raise ValidationError("Collateral id must not be empty")
        if self.mcr < MIN_MCR:
            raise ValidationError("MCR must be at least 110%")
        if self.ccr < self.mcr:
            raise ValidationError("CCR must be greater than or equal to MCR")
        if not 0 <= self.price_decimals <= MAX_PRICE_DECIMALS:
            raise ValidationError(f"Price decimals must be between 0 and {MAX_PRICE_DECIMALS}")
        if self.debt_ceiling < 0:
            raise ValidationError("Debt ceiling must not be negative")
        if not 0 <= self.liquidation_penalty_bps < BPS_DENOMINATOR:
            raise ValidationError("Liquidation penalty must be below 100%")
        if self.staleness_bound <= 0:
            raise ValidationError("Staleness bound must be positive")

    @property
    def price_unit(self):
        return 10**self.price_decimals

    def value_of(self, coll, price):
        """Stablecoin value of `coll` units at an integer `price`."""
        return coll * price // self.price_unit

    def coll_for_value(self, amount, price):
        """Collateral units worth `amount` nUSD, rounded down."""
        return amount * self.price_unit // price

    def penalty_of(self, coll):
        return coll * self.liquidation_penalty_bps // BPS_DENOMINATOR


@dataclass(frozen=True)
class FeeConfig:
    """Base rate and fee bounds shared by borrowing and redemption."""
    borrow_fee_floor: int = BORROWING_FEE_FLOOR
    redemption_fee_floor: int = REDEMPTION_FEE_FLOOR
    max_borrow_fee: int = MAX_BORROWING_FEE
    half_life_seconds: int = BASE_RATE_HALF_LIFE
    beta: int = REDEMPTION_BETA

    def __post_init__(self):
        for name in ("borrow_fee_floor", "redemption_fee_floor", "max_borrow_fee"):
            value = getattr(self, name)
            if not 0 <= value <= _100pct:
                raise ValidationError(f"{name} must be between 0 and 100%")
        if self.half_life_seconds < ONE_MINUTE:
            raise ValidationError("Half life must be at least one minute")
        if self.beta <= 0:
            raise ValidationError("Beta must be positive")


@dataclass(frozen=True)
class ProtocolConfig:
    """
    Immutable configuration snapshot passed into every core operation.

    Args:
        owner_id: Protocol owner, receives fees when fee_sink_id is unset
        oracle_id: The only identity allowed to submit prices
        stablecoin_id: Token id of nUSD for transfer notifications
        collaterals: collateral_id -> CollateralConfig
        fees: FeeConfig
        fee_sink_id: Receiver of borrow fees, redemption fees and penalties
    """
    owner_id: str
    oracle_id: str
    stablecoin_id: str = "nusd"
    collaterals: Mapping[str, CollateralConfig] = field(default_factory=dict)
    fees: FeeConfig = field(default_factory=FeeConfig)
    fee_sink_id: Optional[str] = None

    def __post_init__(self):
        if not self.owner_id or not self.oracle_id:
            raise ValidationError("Owner and oracle ids are required")
        for cid, cfg in self.collaterals.items():
            if cid != cfg.collateral_id:
                raise ValidationError(f"Collateral key {cid} does not match config id {cfg.collateral_id}")
        if self.stablecoin_id in self.collaterals:
            raise ValidationError("The stablecoin cannot be registered as collateral")
        object.__setattr__(self, "collaterals", MappingProxyType(dict(self.collaterals)))
        if self.fee_sink_id is None:
            object.__setattr__(self, "fee_sink_id", self.owner_id)

    def collateral(self, collateral_id):
        """
        Returns the CollateralConfig for a registered class.

        Raises:
            NotFound: If the class is not registered
        """
        try:
            return self.collaterals[collateral_id]
        except KeyError:
            raise NotFound(f"Collateral {collateral_id} is not registered") from None

    def is_collateral(self, token_id):
        return token_id in self.collaterals

    def with_collateral(self, collateral_config):
        """Returns a new snapshot with `collateral_config` added or replaced."""
        collaterals = dict(self.collaterals)
        collaterals[collateral_config.collateral_id] = collateral_config
        return replace(self, collaterals=collaterals)


class Clock:
    """Simulation clock in whole seconds."""

    def __init__(self, start=0):
        self.current_time = int(start)

    def now(self):
        return self.current_time

    def advance(self, seconds):
        if seconds < 0:
            raise ValueError("Time cannot move backwards")
        self.current_time += int(seconds)
        return self.current_time
