"""
Solana side of the reward bot: tax harvesting, swaps and distribution.
"""

from taxbot.solana.distribution import Allocation, DistributionEngine, allocate
from taxbot.solana.fee_collector import FeeHarvestCoordinator
from taxbot.solana.models import Cycle, CycleStatus, HolderSnapshot, Payout, PayoutStatus, PendingSwap, RetryPolicy
from taxbot.solana.registry import AccountRegistry
from taxbot.solana.scheduler import CycleScheduler
from taxbot.solana.swap_executor import SwapExecutor, minimum_output

__all__ = [
    "AccountRegistry",
    "Allocation",
    "Cycle",
    "CycleScheduler",
    "CycleStatus",
    "DistributionEngine",
    "FeeHarvestCoordinator",
    "HolderSnapshot",
    "Payout",
    "PayoutStatus",
    "PendingSwap",
    "RetryPolicy",
    "SwapExecutor",
    "allocate",
    "minimum_output",
]
