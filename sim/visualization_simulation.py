"""
Visualization simulation for the nUSD CDP engine.

Opens troves in two collateral classes, funds the Stability Pool and runs a
30 day random market with plots.
"""

import logging
import os
import sys

import numpy as np

# Add the repository root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from cdp_core import CDPProtocol, Clock, CollateralConfig, FeeConfig, ProtocolConfig, to_fixed, to_units

ORACLE = "oracle"


def build_protocol():
    config = ProtocolConfig(
        owner_id="protocol_owner",
        oracle_id=ORACLE,
        collaterals={
            "wnear": CollateralConfig("wnear", mcr=to_fixed("1.30"), ccr=to_fixed("1.50"), price_decimals=4),
            "wbtc": CollateralConfig("wbtc", mcr=to_fixed("1.10"), ccr=to_fixed("1.20"), price_decimals=8),
        },
        fees=FeeConfig(),
    )
    protocol = CDPProtocol(config, clock=Clock(1_700_000_000))
    protocol.submit_price(ORACLE, "wnear", 50_000)  # 5.0000
    protocol.submit_price(ORACLE, "wbtc", 60_000 * 10**8)
    return protocol


def run_visualization_simulation(days=30, seed=42):
    protocol = build_protocol()
    rng = np.random.default_rng(seed)

    print("Creating initial troves...")
    for i in range(10):
        # Riskiest last so Recovery Mode never blocks an opening
        target_cr = 3.0 - i * 0.16
        coll = rng.uniform(1_000, 5_000)
        debt = coll * 5.0 / target_cr
        protocol.open_trove(f"user{i}", "wnear", to_units(round(coll, 4)), to_units(round(debt, 4)))
        print(f"wnear trove user{i}: {coll:.2f} wNEAR, {debt:.2f} nUSD, CR: {target_cr*100:.0f}%")

    for i in range(5):
        target_cr = 2.0 - i * 0.2
        coll = rng.uniform(0.5, 2.0)
        debt = coll * 60_000 / target_cr
        protocol.open_trove(f"btc_user{i}", "wbtc", to_units(round(coll, 4)), to_units(round(debt, 2)))
        print(f"wbtc trove btc_user{i}: {coll:.4f} wBTC, {debt:.2f} nUSD, CR: {target_cr*100:.0f}%")

    print("\nAdding to stability pool...")
    for depositor in ("user0", "user1", "btc_user0"):
        amount = protocol.nusd_token.balance_of(depositor) // 2
        protocol.deposit_to_pool(depositor, amount)
        print(f"{depositor} deposited {amount / 10**18:.2f} nUSD")

    print("\nRunning simulation with visualizations...")
    results = protocol.simulate_market_scenario(days, price_volatility=0.05, plot_results=True, seed=seed)

    print("\nSimulation Results:")
    for key, value in results.items():
        print(f"  {key}: {value}")

    protocol.check_conservation()
    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    run_visualization_simulation()
