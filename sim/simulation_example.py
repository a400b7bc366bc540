"""
Simulation Example for the nUSD CDP engine.

Walks through the main flows step by step: opening troves, a price drop
absorbed by the Stability Pool, a redistribution, a redemption and the
collateral claims that follow.
"""

import logging
import os
import sys

# Add the repository root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from cdp_core import CDPError, CDPProtocol, Clock, CollateralConfig, ProtocolConfig, to_fixed, to_units
from cdp_core.config import ONE_DAY

ORACLE = "oracle"
WAD = 10**18


def fmt(amount):
    return f"{amount / WAD:,.4f}"


def print_state(protocol):
    state = protocol.get_system_state()
    for collateral_id, figures in state["collaterals"].items():
        tcr = figures["tcr"]
        tcr_text = "n/a" if tcr is None or tcr == float("inf") else f"{tcr / WAD * 100:.1f}%"
        print(
            f"  {collateral_id}: coll {fmt(figures['total_coll'])}, debt {fmt(figures['total_debt'])}, "
            f"TCR {tcr_text}, recovery mode: {figures['recovery_mode']}, troves: {figures['active_troves']}"
        )
    print(f"  nUSD supply {fmt(state['nusd_supply'])}, stability pool {fmt(state['stability_nusd'])}")


def print_trove(protocol, owner, collateral_id="wnear"):
    try:
        view = protocol.get_trove(owner, collateral_id)
    except CDPError as e:
        print(f"  {owner}: {e}")
        return
    icr = "n/a" if view.icr is None or view.icr == float("inf") else f"{view.icr / WAD * 100:.1f}%"
    print(f"  {owner}: {fmt(view.coll)} coll, {fmt(view.debt)} debt, ICR {icr}, {view.status.name}")


def run_simulation():
    print("=== nUSD CDP walkthrough ===")

    config = ProtocolConfig(
        owner_id="protocol_owner",
        oracle_id=ORACLE,
        collaterals={"wnear": CollateralConfig("wnear", mcr=to_fixed("1.30"), ccr=to_fixed("1.50"), price_decimals=2)},
    )
    protocol = CDPProtocol(config, clock=Clock(1_700_000_000))

    print("\n--- Price 5.00 ---")
    protocol.submit_price(ORACLE, "wnear", 500)

    print("\n--- Opening troves ---")
    troves = {
        "alice": (1_000, 3_000),
        "bob": (1_000, 2_000),
        "carol": (2_000, 3_000),
        "dave": (4_000, 5_000),
    }
    for owner, (coll, debt) in troves.items():
        protocol.open_trove(owner, "wnear", to_units(coll), to_units(debt))
        print_trove(protocol, owner)
    print_state(protocol)

    print("\n--- dave deposits 2,000 nUSD into the Stability Pool ---")
    protocol.deposit_to_pool("dave", to_units(2_000))
    print_state(protocol)

    print("\n--- Price drops to 3.50 ---")
    protocol.update_time(600)
    protocol.submit_price(ORACLE, "wnear", 350)
    for owner in troves:
        print_trove(protocol, owner)
    print(f"  liquidatable: {protocol.get_liquidatable_troves('wnear')}")

    print("\n--- Liquidating ---")
    for batch in protocol.liquidate_all("wnear"):
        for values in batch.liquidated:
            print(
                f"  {values.owner}: offset {fmt(values.debt_to_offset)}, "
                f"redistributed {fmt(values.debt_to_redistribute)}, penalty {fmt(values.coll_penalty)}"
            )
        for skipped in batch.skipped:
            print(f"  {skipped.owner} skipped: {skipped.reason.value}")
    for owner in troves:
        print_trove(protocol, owner)
    deposit = protocol.get_stability_pool_deposit("dave")
    print(f"  dave's deposit: {fmt(deposit.deposit)} nUSD, gains {[(k, fmt(v)) for k, v in deposit.coll_gains.items()]}")
    print_state(protocol)

    print("\n--- A day later, carol redeems 500 nUSD ---")
    protocol.update_time(ONE_DAY)
    protocol.submit_price(ORACLE, "wnear", 350)
    print(f"  redemption rate: {protocol.get_redemption_rate() / WAD * 100:.3f}%")
    try:
        result = protocol.redeem("carol", "wnear", to_units(500))
        for single in result.redemptions:
            print(f"  from {single.owner}: {fmt(single.debt_lot)} nUSD for {fmt(single.coll_lot)} wNEAR")
        print(f"  carol receives {fmt(result.coll_to_redeemer)} wNEAR, fee {fmt(result.coll_fee)} wNEAR")
        print(f"  next hint: {result.next_hint}")
    except CDPError as e:
        print(f"  Redemption failed: {e}")
    print(f"  base rate now: {protocol.get_base_rate() / WAD * 100:.3f}%")

    print("\n--- Claiming collateral ---")
    for account in ("dave", "carol", config.fee_sink_id):
        available = protocol.get_claimable_collateral_reward(account, "wnear")
        if available == 0:
            continue
        transfer = protocol.claim_collateral_reward(account, "wnear")
        protocol.on_transfer_complete(transfer.transfer_id, True)
        print(f"  {account} claimed {fmt(transfer.amount)} wNEAR")

    print("\n--- Final system state ---")
    print_state(protocol)
    protocol.check_conservation()
    print("  conservation checks passed")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    run_simulation()
