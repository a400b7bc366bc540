"""
Error types raised by the CDP engine.

All errors subclass ValueError so callers that only care about "the protocol
rejected this" can keep catching ValueError. Every rejection happens before
any ledger mutation, or is undone by a transfer rollback.
"""


class CDPError(ValueError):
    """Base class for protocol rejections."""
    code = "cdp_error"


class ValidationError(CDPError):
    """Malformed or out-of-range input."""
    code = "validation_error"


class UnsafeOperation(CDPError):
    """The operation would breach MCR, CCR or the debt ceiling."""
    code = "unsafe_operation"


class StalePrice(CDPError):
    """Oracle data is missing or older than the staleness bound."""
    code = "stale_price"


class BadHint(CDPError):
    """The redemption hint is not the weakest trove of the class."""
    code = "bad_hint"


class InsufficientBalance(CDPError):
    code = "insufficient_balance"


class NotFound(CDPError):
    code = "not_found"


class Busy(CDPError):
    """The entry is reserved by a pending external transfer; retry later."""
    code = "busy"


class Unauthorized(CDPError):
    code = "unauthorized"
