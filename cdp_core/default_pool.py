"""
Default Pool of a collateral class.

Holds collateral and debt from liquidated troves that the Stability Pool could
not offset. The amounts are owed to the remaining troves of the class and move
back to the Active Pool as each trove absorbs its share.
"""


class DefaultPool:
    """
    Redistributed collateral and debt not yet absorbed by their troves.
    """

    def __init__(self, collateral_id, active_pool=None):
        self.collateral_id = collateral_id
        self.coll_balance = 0
        self.debt = 0
        self.active_pool = active_pool

    def get_coll_balance(self):
        """Returns the collateral balance in the Default Pool."""
        return self.coll_balance

    def get_debt(self):
        """Returns the nUSD debt in the Default Pool."""
        return self.debt

    def receive_coll(self, amount):
        """
        Receives collateral into the Default Pool.
        Called by the Active Pool when trove collateral is redistributed.
        """
        if amount < 0:
            raise ValueError(f"Invalid collateral amount: {amount}")
        self.coll_balance += amount

    def send_coll_to_active_pool(self, amount):
        """
        Sends collateral back to the Active Pool when a trove absorbs its
        pending redistribution.
        """
        if amount < 0 or amount > self.coll_balance:
            raise ValueError(f"Invalid collateral amount: {amount}")
        self.coll_balance -= amount
        self.active_pool.receive_coll(amount)

    def increase_debt(self, amount):
        if amount < 0:
            raise ValueError(f"Invalid debt amount: {amount}")
        self.debt += amount

    def decrease_debt(self, amount):
        if amount < 0 or amount > self.debt:
            raise ValueError(f"Invalid debt amount: {amount}")
        self.debt -= amount
