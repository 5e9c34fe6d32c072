"""
Error taxonomy for SpartanBot.

Every failure that crosses a component boundary is one of these. Lower-level
exceptions are chained with ``raise ... from`` so the original cause survives.
"""


class SpartanBotError(Exception):
    """Base class for all SpartanBot errors."""


class ConfigurationError(SpartanBotError):
    """Missing credentials or environment configuration."""


class ValidationError(SpartanBotError):
    """Malformed caller input."""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.field = field


class UnsupportedProviderType(SpartanBotError):
    """No registered provider kind matches the requested type tag."""


class ProviderAuthorizationCheckFailed(SpartanBotError):
    """The provider raised while checking its credentials."""


class NoEligibleProvider(SpartanBotError):
    """No configured provider can satisfy a rental request."""


class UserCancelled(SpartanBotError):
    """The confirmation callback declined the proposed rental."""


class RentalExecutionError(SpartanBotError):
    """A provider failed while executing a rental.

    ``receipt`` holds whatever was already committed before the failure
    (None when nothing was rented).
    """

    def __init__(self, message: str, receipt=None):
        super().__init__(message)
        self.receipt = receipt


class RentalDelegationError(SpartanBotError):
    """A manual or automatic rental could not be completed by the AutoRenter."""

    def __init__(self, message: str, receipt=None):
        super().__init__(message)
        self.receipt = receipt


class PersistenceError(SpartanBotError):
    """Read or write failure on the storage medium."""


class MarketDataError(SpartanBotError):
    """An upstream market data call failed or returned unusable data."""


def describe(exc: BaseException) -> str:
    """Message with the chained cause appended, one level deep."""
    cause = exc.__cause__
    if cause is None:
        return str(exc)
    return f"{exc}\n{type(cause).__name__}: {cause}"
