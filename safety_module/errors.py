"""
Error taxonomy for the safety module engines.

Every failing call raises one of these before any state is mutated.
"""
from typing import Optional


class SafetyModuleError(Exception):
    """Base class for all safety module errors."""
    pass


class ValidationError(SafetyModuleError):
    """Raised when an argument or configuration fails validation."""
    pass


class InsufficientBalanceError(ValidationError):
    """Raised when a holder cannot cover a transfer."""
    pass


class AuthorizationError(SafetyModuleError):
    """Raised when the caller lacks the required role or address."""
    pass


class TimingError(SafetyModuleError):
    """Raised when an operation is attempted outside its allowed window."""

    def __init__(self, message: str, deadline: Optional[int] = None):
        super().__init__(message)
        self.deadline = deadline


class CooldownNotElapsedError(TimingError):
    """Cooldown has not been started or has not finished yet."""
    pass


class UnstakeWindowExpiredError(TimingError):
    """The unstake window following the cooldown has closed."""
    pass


class AuctionExpiredError(TimingError):
    """The auction time limit has passed."""
    pass


class CapacityError(SafetyModuleError):
    """Raised when a bounded resource would be exceeded."""
    pass


class StateError(SafetyModuleError):
    """Raised when an operation is invalid in the current mode."""
    pass


class PausedError(StateError):
    """Raised when a paused component receives a state-changing call."""
    pass


class ReentrancyError(StateError):
    """Raised on a nested call into a guarded entry point."""
    pass
