"""
Shared fixtures for the CDP engine tests.
"""

import os
import sys

# Add the repository root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from cdp_core.config import Clock, CollateralConfig, FeeConfig, ProtocolConfig, to_fixed, to_units
from cdp_core.protocol import CDPProtocol

E18 = 10**18

OWNER = "protocol_owner"
ORACLE = "oracle"
FEE_SINK = "fee_sink"

START_TIME = 1_700_000_000

NO_BORROW_FEES = FeeConfig(borrow_fee_floor=0, max_borrow_fee=0)


def units(value):
    """Token amount in smallest units (18 decimals)."""
    return to_units(value)


def collateral(collateral_id, mcr="1.30", ccr="1.50", price_decimals=2, **kwargs):
    return CollateralConfig(
        collateral_id=collateral_id,
        mcr=to_fixed(mcr),
        ccr=to_fixed(ccr),
        price_decimals=price_decimals,
        **kwargs,
    )


def make_config(*collaterals, fees=NO_BORROW_FEES):
    return ProtocolConfig(
        owner_id=OWNER,
        oracle_id=ORACLE,
        collaterals={cfg.collateral_id: cfg for cfg in collaterals},
        fees=fees,
        fee_sink_id=FEE_SINK,
    )


def make_protocol(*collaterals, fees=NO_BORROW_FEES):
    return CDPProtocol(make_config(*collaterals, fees=fees), clock=Clock(START_TIME))


def set_price(protocol, collateral_id, price, advance=60):
    """Moves the clock forward and submits a fresh price."""
    protocol.update_time(advance)
    return protocol.submit_price(ORACLE, collateral_id, price)
