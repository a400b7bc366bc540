"""
Claimable collateral ledger.

Holds collateral owed to accounts but not yet paid out: Stability Pool gains
settled on deposit changes, redemption proceeds, and liquidation penalties and
redemption fees credited to the fee sink. Accounts claim it through a
two-phase transfer.
"""

import logging

from cdp_core.errors import InsufficientBalance, NotFound, ValidationError

logger = logging.getLogger(__name__)


class CollSurplusPool:
    """
    Claimable collateral keyed by (account, collateral_id).
    """

    def __init__(self):
        # collateral_id -> total claimable collateral of that class
        self.coll_balance = {}

        # (account, collateral_id) -> claimable amount
        self.balances = {}

    def get_coll_balance(self, collateral_id):
        """Returns the total claimable collateral of a class."""
        return self.coll_balance.get(collateral_id, 0)

    def get_collateral(self, account, collateral_id):
        """Returns the claimable collateral of one account."""
        return self.balances.get((account, collateral_id), 0)

    def account_surplus(self, account, collateral_id, amount):
        """Credits collateral to an account."""
        if amount < 0:
            raise ValueError(f"Invalid collateral amount: {amount}")
        if amount == 0:
            return
        key = (account, collateral_id)
        self.balances[key] = self.balances.get(key, 0) + amount
        self.coll_balance[collateral_id] = self.get_coll_balance(collateral_id) + amount

    def claim_coll(self, account, collateral_id, amount=None):
        """
        Debits claimable collateral for a payout.

        Args:
            account: Claiming account
            collateral_id: Collateral class
            amount: Amount to claim, or None for the whole balance

        Returns:
            The amount debited

        Raises:
            NotFound: If nothing is claimable
            ValidationError: If amount is not positive
            InsufficientBalance: If amount exceeds the claimable balance
        """
        claimable = self.get_collateral(account, collateral_id)
        if claimable <= 0:
            raise NotFound(f"No {collateral_id} collateral available to claim for {account}")
        if amount is None:
            amount = claimable
        if amount <= 0:
            raise ValidationError("Claim amount must be greater than zero")
        if amount > claimable:
            raise InsufficientBalance(f"Claim of {amount} exceeds claimable {claimable}")

        key = (account, collateral_id)
        remaining = claimable - amount
        if remaining:
            self.balances[key] = remaining
        else:
            del self.balances[key]
        self.coll_balance[collateral_id] -= amount

        logger.debug("Collateral claimed", extra={"account": account, "collateral_id": collateral_id, "amount": amount})
        return amount

    def restore(self, account, collateral_id, amount):
        """Puts back a claim whose payout failed."""
        self.account_surplus(account, collateral_id, amount)
