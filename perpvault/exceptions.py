"""
PerpVault Exceptions

Custom exception classes for the venue. Every error rejects the whole
operation it was raised from; no partial effects are committed.
"""


class PerpVaultException(Exception):
    """Base exception for PerpVault."""
    pass


class AuthorizationError(PerpVaultException):
    """Caller lacks the capability required by the operation."""
    pass


class ConfigurationError(PerpVaultException):
    """Configuration parameters are invalid."""
    pass


class UnknownProductError(PerpVaultException):
    """Product does not exist or is not active."""
    pass


class PositionNotFoundError(PerpVaultException):
    """No open position for the given key."""
    pass


class InvalidAmountError(PerpVaultException):
    """Amount is zero, negative, or larger than what is held."""
    pass


class MarginOutOfBoundsError(PerpVaultException):
    """Margin, position size, or leverage outside the configured bounds."""
    pass


class ExposureExceededError(PerpVaultException):
    """Notional would exceed the configured max exposure or reserve."""
    pass


class StalePriceChangeError(PerpVaultException):
    """Oracle price has not moved past the minimum-change gate."""
    pass


class VaultCapExceededError(PerpVaultException):
    """Deposit would take the vault balance above its cap."""
    pass


class CooldownNotElapsedError(PerpVaultException):
    """Redeem attempted before the stake cooldown elapsed."""
    pass


class InsufficientVaultLiquidityError(PerpVaultException):
    """Vault cannot fund the requested payout or exposure."""
    pass


class PositionNotLiquidatableError(PerpVaultException):
    """None of the requested positions is below its liquidation threshold."""
    pass


class RewardPeriodNotFinishedError(PerpVaultException):
    """Reward duration changed while a period is still streaming."""
    pass


class RewardAmountOutOfBoundsError(PerpVaultException):
    """Reward too small to give a non-zero rate, or larger than the funded balance."""
    pass


class ArithmeticOverflowError(PerpVaultException):
    """Fixed-point result outside the representable range."""
    pass


class ReentrancyError(PerpVaultException):
    """Venue entered again while an operation is in flight."""
    pass


class ClockError(PerpVaultException):
    """Block timestamp moved backwards."""
    pass


class InsufficientBalanceError(PerpVaultException):
    """Asset ledger balance too low for a transfer."""
    pass
