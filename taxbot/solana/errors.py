"""
Exceptions raised by the reward cycle pipeline.
"""

from typing import List, Optional


class TaxBotError(Exception):
    """Base exception for reward bot errors."""
    pass


class ConfigError(TaxBotError):
    """Raised when configuration is missing or invalid."""
    pass


class KeyLoadError(TaxBotError):
    """Raised when the signing key cannot be loaded."""
    pass


class TransientRemoteError(TaxBotError):
    """Network failure or timeout talking to a remote service. Safe to retry."""
    pass


class SlippageExceeded(TaxBotError):
    """The venue could not fill the swap at or above the minimum output."""

    def __init__(self, message: str, min_out: Optional[int] = None):
        super().__init__(message)
        self.min_out = min_out


class InsufficientFunds(TaxBotError):
    """An account lacked the funds for an operation. Fatal for the cycle."""
    pass


class PartialBatchFailure(TaxBotError):
    """Some accounts in a harvest batch were not harvested."""

    def __init__(self, message: str, failed_accounts: List[str]):
        super().__init__(message)
        self.failed_accounts = list(failed_accounts)


class PersistenceError(TaxBotError):
    """Cycle state could not be durably recorded. Fatal for the process."""
    pass


class InvalidTransition(TaxBotError):
    """A cycle was asked to move to a status that is not ahead of its current one."""
    pass


class CycleCancelled(TaxBotError):
    """An operator cancelled the cycle before its swap was broadcast."""
    pass


class SwapAbandoned(TaxBotError):
    """The swap retry budget was exhausted."""
    pass


class HarvestIncomplete(TaxBotError):
    """Harvest attempts were exhausted with accounts still failing."""

    def __init__(self, message: str, failed_accounts: List[str], harvested_amount: int):
        super().__init__(message)
        self.failed_accounts = list(failed_accounts)
        self.harvested_amount = harvested_amount


class SwapNotLanded(TaxBotError):
    """A broadcast swap failed on chain or expired. The treasury was not debited."""
    pass
