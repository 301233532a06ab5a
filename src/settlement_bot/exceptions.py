"""Custom exceptions for the settlement bot.

Exchange, lifecycle and storage exceptions live here so that
low-level modules can raise them without importing each other.
"""


class BotError(Exception):
    """Base exception for all bot errors."""


class ExchangeUnavailableError(BotError):
    """Raised when an exchange call fails in transport.

    The state behind the call is unknown. Callers must not read this
    as "no data" (for example, no positions or no open orders).
    """


class InvalidTransitionError(BotError):
    """Raised when a position is moved along an edge its state machine forbids."""


class PositionNotFoundError(BotError):
    """Raised when a position id is not tracked by the manager."""


class RiskLimitExceeded(BotError):
    """Raised when a risk limit prevents opening a new position."""


class StoreNotConnectedError(BotError):
    """Raised when the settlement store is used before connect()."""
