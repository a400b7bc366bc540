"""
nUSD multi-collateral CDP engine.

Troves, Stability Pool, liquidation, redemption and the fee controller of an
over-collateralized stablecoin, with integer fixed point accounting.
"""

from cdp_core.config import (
    DECIMAL_PRECISION,
    Clock,
    CollateralConfig,
    FeeConfig,
    ProtocolConfig,
    to_fixed,
    to_units,
)
from cdp_core.errors import (
    BadHint,
    Busy,
    CDPError,
    InsufficientBalance,
    NotFound,
    StalePrice,
    Unauthorized,
    UnsafeOperation,
    ValidationError,
)
from cdp_core.protocol import CDPProtocol

__all__ = [
    "DECIMAL_PRECISION",
    "BadHint",
    "Busy",
    "CDPError",
    "CDPProtocol",
    "Clock",
    "CollateralConfig",
    "FeeConfig",
    "InsufficientBalance",
    "NotFound",
    "ProtocolConfig",
    "StalePrice",
    "Unauthorized",
    "UnsafeOperation",
    "ValidationError",
    "to_fixed",
    "to_units",
]
