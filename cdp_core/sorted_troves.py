"""
Ascending collateral ratio ordering of the troves of one class.

Within a class every trove is priced identically, so ordering by the nominal
ratio coll / debt is the same as ordering by ICR. Ties are broken by owner id.
The ordering is rebuilt from the ledger on demand, including pending
redistribution gains, so it never goes stale.
"""

from dataclasses import dataclass

from cdp_core.errors import BadHint


@dataclass(frozen=True)
class SortedEntry:
    nicr: int
    owner: str
    coll: int
    debt: int


class SortedTroves:
    """
    Debt-bearing active troves of a class, weakest first.
    """

    def __init__(self, trove_manager, collateral_id):
        self.trove_manager = trove_manager
        self.collateral_id = collateral_id
        self.entries = self._build()

    def _build(self):
        entries = []
        for owner in self.trove_manager.active_troves(self.collateral_id):
            latest = self.trove_manager.get_latest_trove_data(owner, self.collateral_id)
            if latest.entire_debt == 0:
                continue
            nicr = self.trove_manager.risk_engine.nominal_ratio(latest.entire_coll, latest.entire_debt)
            entries.append(SortedEntry(nicr, owner, latest.entire_coll, latest.entire_debt))
        entries.sort(key=lambda entry: (entry.nicr, entry.owner))
        return entries

    def owners(self):
        return [entry.owner for entry in self.entries]

    def index_of(self, owner):
        for index, entry in enumerate(self.entries):
            if entry.owner == owner:
                return index
        return None

    def first_redeemable_index(self, cfg, price):
        """Index of the first trove with ICR >= MCR, or None."""
        ratio = self.trove_manager.risk_engine.ratio
        for index, entry in enumerate(self.entries):
            if ratio(cfg, entry.coll, entry.debt, price) >= cfg.mcr:
                return index
        return None

    def validate_first_redemption_hint(self, cfg, price, hint_owner):
        """
        Checks that `hint_owner` is the weakest trove redemption may start at.

        A valid hint has ICR >= MCR and every trove ordered before it either
        has ICR < MCR (liquidation's business) or the same nominal ratio.

        Returns:
            The index of the hint in the ordering

        Raises:
            BadHint: If the hint is not a valid starting point
        """
        index = self.index_of(hint_owner)
        if index is None:
            raise BadHint(f"{hint_owner} has no debt-bearing {self.collateral_id} trove")

        ratio = self.trove_manager.risk_engine.ratio
        hint = self.entries[index]
        if ratio(cfg, hint.coll, hint.debt, price) < cfg.mcr:
            raise BadHint(f"Hint {hint_owner} is below MCR")

        for entry in self.entries[:index]:
            if entry.nicr < hint.nicr and ratio(cfg, entry.coll, entry.debt, price) >= cfg.mcr:
                raise BadHint(f"{entry.owner} has a lower collateral ratio than hint {hint_owner}")
        return index
