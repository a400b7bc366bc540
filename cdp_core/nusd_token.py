"""
nUSD token ledger.

Internal balances of the protocol stablecoin. Minting happens when troves
borrow, burning when debt is repaid, redeemed or absorbed by the Stability
Pool. total_supply always equals total_minted - total_burned.
"""

from cdp_core.errors import InsufficientBalance, ValidationError


class NusdToken:
    """
    Balances of the nUSD stablecoin held inside the protocol.
    """

    def __init__(self, token_id="nusd"):
        self.token_id = token_id

        # account -> balance
        self.balances = {}

        self.total_supply = 0
        self.total_minted = 0
        self.total_burned = 0

    def balance_of(self, account):
        """Returns the token balance of the given account."""
        return self.balances.get(account, 0)

    def transfer(self, sender, recipient, amount):
        """
        Transfers tokens from sender to recipient.

        Args:
            sender: Account sending the tokens
            recipient: Account receiving the tokens
            amount: Amount of tokens to transfer

        Raises:
            ValidationError: If amount is not positive
            InsufficientBalance: If sender holds less than amount
        """
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        sender_balance = self.balance_of(sender)
        if sender_balance < amount:
            raise InsufficientBalance(f"{sender} holds {sender_balance} nUSD, needs {amount}")

        self.balances[sender] = sender_balance - amount
        self.balances[recipient] = self.balance_of(recipient) + amount
        return True

    def mint(self, recipient, amount):
        """Mints new tokens to the recipient account."""
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        self.balances[recipient] = self.balance_of(recipient) + amount
        self.total_supply += amount
        self.total_minted += amount
        return True

    def burn(self, from_account, amount):
        """
        Burns tokens from the given account.

        Raises:
            InsufficientBalance: If the account holds less than amount
        """
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        from_balance = self.balance_of(from_account)
        if from_balance < amount:
            raise InsufficientBalance(f"{from_account} holds {from_balance} nUSD, needs {amount}")

        self.balances[from_account] = from_balance - amount
        self.total_supply -= amount
        self.total_burned += amount
        return True

    def send_to_pool(self, sender, pool, amount):
        """Moves tokens from a depositor into a pool account."""
        return self.transfer(sender, pool, amount)

    def return_from_pool(self, pool, recipient, amount):
        """Moves tokens from a pool account back to a depositor."""
        return self.transfer(pool, recipient, amount)
