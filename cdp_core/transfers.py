"""
Two-phase collateral transfers.

Collateral leaving the protocol goes through an external token collaborator
that answers asynchronously. Phase one commits the ledger mutation, reserves
the affected entry and hands a PendingTransfer to the gateway. Phase two is
resolve(): success releases the reservation, failure runs the rollback first.
While an entry is reserved every other mutating operation on it raises Busy.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple

from cdp_core.errors import Busy, NotFound

logger = logging.getLogger(__name__)


def trove_key(owner, collateral_id):
    return ("trove", owner, collateral_id)


def claim_key(account, collateral_id):
    return ("claim", account, collateral_id)


@dataclass
class PendingTransfer:
    """A collateral payout waiting for the gateway's answer."""
    transfer_id: int
    receiver_id: str
    token_id: str
    amount: int
    reservation: Tuple
    rollback: Callable[[], None] = field(repr=False)
    on_success: Optional[Callable[[], None]] = field(default=None, repr=False)
    memo: str = ""


class ReservationRegistry:
    """
    Entries reserved by pending transfers.
    """

    def __init__(self):
        # reservation key -> transfer_id
        self._reserved = {}

    def is_reserved(self, key):
        return key in self._reserved

    def require_free(self, key):
        """
        Raises:
            Busy: If the entry is reserved
        """
        if key in self._reserved:
            raise Busy(f"{key[0]} {key[1:]} is reserved by transfer {self._reserved[key]}")

    def reserve(self, key, transfer_id):
        self.require_free(key)
        self._reserved[key] = transfer_id

    def release(self, key):
        self._reserved.pop(key, None)


class TransferGateway:
    """Interface of the external token transfer collaborator."""

    def request_transfer(self, transfer):
        """
        Starts an outgoing transfer. Must return without waiting for the
        outcome; the outcome arrives later through CDPProtocol.on_transfer_complete().
        """
        raise NotImplementedError


class InMemoryTransferGateway(TransferGateway):
    """Gateway that only records requests. Used by simulations and tests."""

    def __init__(self):
        self.requests = []

    def request_transfer(self, transfer):
        self.requests.append(transfer)

    def last(self):
        return self.requests[-1] if self.requests else None


class TransferCoordinator:
    """
    Tracks pending transfers, their reservations and their rollbacks.
    """

    def __init__(self, gateway, reservations):
        self.gateway = gateway
        self.reservations = reservations

        # transfer_id -> PendingTransfer
        self.pending = {}

        # transfer_id -> bool outcome
        self.resolved = {}

        # token_id -> amount paid out by successful transfers
        self.paid_out = {}

        self._next_transfer_id = 1

    def begin(self, receiver_id, token_id, amount, reservation, rollback, on_success=None, memo=""):
        """
        Phase one. The caller has already committed the ledger mutation.

        Args:
            receiver_id: Account receiving the collateral
            token_id: Collateral token
            amount: Amount to send
            reservation: Key of the entry to hold until the outcome is known
            rollback: Callable restoring the ledger exactly if the transfer fails
            on_success: Optional callable run once the transfer succeeded
            memo: Free text carried to the gateway

        Returns:
            The PendingTransfer handed to the gateway
        """
        transfer = PendingTransfer(
            transfer_id=self._next_transfer_id,
            receiver_id=receiver_id,
            token_id=token_id,
            amount=amount,
            reservation=reservation,
            rollback=rollback,
            on_success=on_success,
            memo=memo,
        )
        self._next_transfer_id += 1

        self.reservations.reserve(reservation, transfer.transfer_id)
        self.pending[transfer.transfer_id] = transfer

        try:
            self.gateway.request_transfer(transfer)
        except Exception:
            logger.warning("Gateway rejected transfer, rolling back", extra={"transfer_id": transfer.transfer_id})
            del self.pending[transfer.transfer_id]
            self._finish(transfer, False)
            raise

        logger.info(
            "Transfer started",
            extra={"transfer_id": transfer.transfer_id, "receiver_id": receiver_id, "token_id": token_id, "amount": amount},
        )
        return transfer

    def resolve(self, transfer_id, success):
        """
        Phase two. Resolving an already resolved transfer does nothing.

        Returns:
            The outcome recorded for the transfer

        Raises:
            NotFound: If the transfer id was never issued
        """
        if transfer_id in self.resolved:
            logger.info("Transfer already resolved", extra={"transfer_id": transfer_id})
            return self.resolved[transfer_id]

        transfer = self.pending.pop(transfer_id, None)
        if transfer is None:
            raise NotFound(f"Unknown transfer {transfer_id}")

        self._finish(transfer, success)
        return success

    def _finish(self, transfer, success):
        if success:
            self.paid_out[transfer.token_id] = self.paid_out.get(transfer.token_id, 0) + transfer.amount
            if transfer.on_success is not None:
                transfer.on_success()
        else:
            transfer.rollback()
            logger.warning(
                "Transfer failed, ledger rolled back",
                extra={"transfer_id": transfer.transfer_id, "token_id": transfer.token_id, "amount": transfer.amount},
            )
        self.reservations.release(transfer.reservation)
        self.resolved[transfer.transfer_id] = success

    def in_flight(self, token_id):
        """Amount of `token_id` committed to transfers still pending."""
        return sum(t.amount for t in self.pending.values() if t.token_id == token_id)
