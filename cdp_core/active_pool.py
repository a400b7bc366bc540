"""
Active Pool of a collateral class.

Holds the collateral and the recorded nUSD debt of every active trove of one
class. When a trove is liquidated its collateral and debt leave the Active
Pool for the Stability Pool, the Default Pool, or both.
"""


class ActivePool:
    """
    Collateral and recorded debt of the active troves of one class.
    """

    def __init__(self, collateral_id, default_pool=None):
        self.collateral_id = collateral_id

        # Deposited collateral tracker
        self.coll_balance = 0

        # Sum of recorded trove debts
        self.debt = 0

        self.default_pool = default_pool

    def get_coll_balance(self):
        """Returns the collateral balance in the Active Pool."""
        return self.coll_balance

    def get_debt(self):
        """Returns the aggregate recorded debt of the active troves."""
        return self.debt

    def receive_coll(self, amount):
        """Receives collateral from a borrower or from the Default Pool."""
        if amount < 0:
            raise ValueError(f"Invalid collateral amount: {amount}")
        self.coll_balance += amount

    def send_coll(self, amount):
        """Sends collateral out (to a borrower, the Stability Pool or a claimant)."""
        if amount < 0 or amount > self.coll_balance:
            raise ValueError(f"Invalid collateral amount: {amount}")
        self.coll_balance -= amount

    def send_coll_to_default_pool(self, amount):
        """Moves collateral being redistributed to the Default Pool."""
        self.send_coll(amount)
        self.default_pool.receive_coll(amount)

    def increase_debt(self, amount):
        if amount < 0:
            raise ValueError(f"Invalid debt amount: {amount}")
        self.debt += amount

    def decrease_debt(self, amount):
        if amount < 0 or amount > self.debt:
            raise ValueError(f"Invalid debt amount: {amount}")
        self.debt -= amount
