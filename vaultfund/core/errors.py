"""
Error taxonomy for the funding engine.
Every error is raised before any state is written, so a failed call leaves
storage exactly as it found it.
"""


class VaultEngineError(Exception):
    """Base class for all engine errors."""
    error_type = "ENGINE_ERROR"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__
        self.context = context

    def to_dict(self):
        return {"error_type": self.error_type, "message": self.message}


class InvalidInput(VaultEngineError, ValueError):
    """Malformed or out-of-range argument."""
    error_type = "INVALID_INPUT"


class CapacityExceeded(VaultEngineError):
    """Deposit would push the vault past its target."""
    error_type = "CAPACITY_EXCEEDED"


class InvalidStateTransition(VaultEngineError):
    """Operation is not allowed in the current state."""
    error_type = "INVALID_STATE_TRANSITION"


class AlreadyScheduled(InvalidStateTransition):
    """Vault already has a repayment schedule."""
    error_type = "ALREADY_SCHEDULED"


class NotYetFunded(InvalidStateTransition):
    """Vault has not reached its funding target."""
    error_type = "NOT_YET_FUNDED"


class VaultNotAcceptingDeposits(InvalidStateTransition):
    """Vault is no longer in a funding state."""
    error_type = "VAULT_NOT_ACCEPTING_DEPOSITS"


class RoundAlreadyActive(InvalidStateTransition):
    """A lottery round is already in progress."""
    error_type = "ROUND_ALREADY_ACTIVE"


class RoundNotOpen(InvalidStateTransition):
    """Lottery round is not accepting this operation."""
    error_type = "ROUND_NOT_OPEN"


class AlreadyEntered(InvalidStateTransition):
    """Vault already entered this round."""
    error_type = "ALREADY_ENTERED"


class NoParticipants(InvalidStateTransition):
    """Round has no participants to select from."""
    error_type = "NO_PARTICIPANTS"


class ClaimTooEarly(InvalidStateTransition):
    """Claim was already recorded for the current period."""
    error_type = "CLAIM_TOO_EARLY"


class UnknownEntity(VaultEngineError, LookupError):
    """Referenced entity does not exist."""
    error_type = "UNKNOWN_ENTITY"


class UnknownVault(UnknownEntity):
    """Vault does not exist."""
    error_type = "UNKNOWN_VAULT"


class UnknownRound(UnknownEntity):
    """Lottery round does not exist."""
    error_type = "UNKNOWN_ROUND"


class UnknownSchedule(UnknownEntity):
    """Vault has no repayment schedule."""
    error_type = "UNKNOWN_SCHEDULE"


class StalePrecondition(VaultEngineError):
    """Precondition observed by a read call no longer holds."""
    error_type = "STALE_PRECONDITION"


# SQLite INTEGER columns are 64-bit signed
MAX_STORED_INT = 2 ** 63 - 1
MIN_STORED_INT = -(2 ** 63)


def require_int(value, name: str, minimum: int = MIN_STORED_INT, maximum: int = MAX_STORED_INT) -> int:
    """Validate an integer argument that will be persisted."""
    # bool is an int subclass; True must not pass as 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer, got {value!r}")
    if value < minimum or value > maximum:
        raise InvalidInput(f"{name} must be in [{minimum}, {maximum}], got {value}")
    return value


def require_amount(value, name: str = "amount") -> int:
    """Validate a positive fixed-point integer amount."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"{name} must be an integer in the smallest currency unit, got {value!r}")
    if value <= 0:
        raise InvalidInput(f"{name} must be positive, got {value}")
    if value > MAX_STORED_INT:
        raise InvalidInput(f"{name} exceeds the largest storable amount {MAX_STORED_INT}, got {value}")
    return value
