"""
Payloads carried alongside incoming token transfers.

    {"action": "deposit_collateral", "target_account": "<optional>"}
    {"action": "repay_debt", "collateral_id": "<class id>"}

An empty message means a collateral deposit for the sender.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel
from pydantic import ValidationError as PydanticValidationError

from cdp_core.errors import ValidationError


class DepositCollateralAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    action: Literal["deposit_collateral"]
    target_account: Optional[str] = Field(default=None, min_length=1)


class RepayDebtAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    action: Literal["repay_debt"]
    collateral_id: str = Field(min_length=1)


TransferAction = Annotated[Union[DepositCollateralAction, RepayDebtAction], Field(discriminator="action")]


class TransferMessage(RootModel[TransferAction]):
    """Discriminated union of the supported transfer actions."""


def parse_transfer_message(msg):
    """
    Parses a transfer payload.

    Args:
        msg: JSON text, possibly empty

    Returns:
        DepositCollateralAction or RepayDebtAction

    Raises:
        ValidationError: On malformed JSON, an unknown action or unexpected fields
    """
    if msg is None or not msg.strip():
        return DepositCollateralAction(action="deposit_collateral")
    try:
        return TransferMessage.model_validate_json(msg).root
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed transfer message: {exc.error_count()} error(s)") from exc
