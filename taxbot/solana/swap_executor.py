"""
Swap stage: converts the treasury's tax token balance into the reward token.
"""

import asyncio
import time
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from taxbot.solana.errors import (
    CycleCancelled,
    InsufficientFunds,
    SlippageExceeded,
    SwapAbandoned,
    SwapNotLanded,
    TransientRemoteError,
)
from taxbot.solana.models import Cycle, PendingSwap, RetryPolicy
from taxbot.solana.retry import call_with_retry, call_with_timeout
from taxbot.solana.swap_venue import SwapQuote, SwapVenue
from taxbot.solana.token_program import TaxTokenProgram

Checkpoint = Callable[[Cycle], Awaitable[None]]
CancelCheck = Callable[[Cycle], bool]

BPS_DENOMINATOR = Decimal(10000)


class SwapStatus(Enum):
    """Status of a swap attempt."""
    QUOTE_REQUESTED = "quote_requested"
    QUOTE_RECEIVED = "quote_received"
    EXECUTING = "executing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SwapAttempt:
    """Details of one quote-and-swap attempt."""
    attempt_number: int
    start_time: float
    end_time: Optional[float] = None
    status: SwapStatus = SwapStatus.QUOTE_REQUESTED
    expected_out: Optional[int] = None
    min_out: Optional[int] = None
    signature: Optional[str] = None
    error: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if self.start_time and self.end_time:
            return self.end_time - self.start_time
        return None


@dataclass
class SwapResult:
    """Outcome of the swap stage."""
    amount_in: int
    amount_out: int = 0
    signature: Optional[str] = None
    attempts: List[SwapAttempt] = field(default_factory=list)

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)


def minimum_output(expected_out: int, slippage_bps: int) -> int:
    """
    Minimum acceptable output for a quote, truncated to whole base units.

    Args:
        expected_out: Quoted output in base units
        slippage_bps: Slippage tolerance in basis points
    """
    tolerance = Decimal(slippage_bps) / BPS_DENOMINATOR
    return int((Decimal(expected_out) * (Decimal(1) - tolerance)).to_integral_value(rounding=ROUND_FLOOR))


class SwapExecutor:
    """
    Swaps harvested tax into the reward token with slippage and retry control.

    A slippage failure re-quotes and retries with a fresh minimum output until
    max_attempts quotes have been used. The signature of every swap is
    recorded on the cycle before broadcast, so a resumed cycle checks the
    chain instead of swapping twice.
    """

    def __init__(
        self,
        venue: SwapVenue,
        program: TaxTokenProgram,
        policy: RetryPolicy,
        slippage_bps: int = 50,
        max_attempts: int = 3,
        confirm_timeout: float = 90,
        poll_interval: float = 1.0
    ):
        """
        Initialize the swap executor.

        Args:
            venue: Swap venue
            program: Token program, for treasury balances
            policy: Retry policy for individual remote calls
            slippage_bps: Slippage tolerance in basis points
            max_attempts: Quotes to try before abandoning the swap
            confirm_timeout: Seconds per confirmation poll round
            poll_interval: Seconds between checks of a swap still in flight
        """
        self.venue = venue
        self.program = program
        self.policy = policy
        self.slippage_bps = slippage_bps
        self.max_attempts = max_attempts
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        # Confirmation polls for up to confirm_timeout on top of the per-call limit
        self._confirm_policy = policy.model_copy(update={
            "timeout": None if policy.timeout is None else policy.timeout + confirm_timeout
        })

        logger.info(f"SwapExecutor initialized with {slippage_bps} bps slippage, {max_attempts} attempts")

    def min_out_for(self, quote: SwapQuote) -> int:
        return minimum_output(quote.expected_out, self.slippage_bps)

    async def swap(self, amount_in: int, min_out: Optional[int] = None) -> int:
        """
        Swap amount_in outside of a cycle.

        Args:
            amount_in: Tax token base units to swap
            min_out: Minimum output; derived from a fresh quote when omitted

        Returns:
            Confirmed amount out
        """
        if min_out is None:
            quote = await call_with_retry(self.venue.quote, amount_in, policy=self.policy, op_name="quote")
            min_out = self.min_out_for(quote)
        return await self.venue.swap(amount_in, min_out, poll_interval=self.poll_interval)

    async def execute(
        self,
        cycle: Cycle,
        checkpoint: Optional[Checkpoint] = None,
        cancel_requested: Optional[CancelCheck] = None
    ) -> SwapResult:
        """
        Run the swap stage for a cycle.

        A recorded swap signature is settled against the chain before any
        new quote: a swap that landed is taken as the result, and a new swap
        is only built once the recorded one failed or expired unprocessed.

        Args:
            cycle: Cycle in Swapping status
            checkpoint: Async callable persisting the cycle
            cancel_requested: Returns True if an operator cancelled the cycle

        Returns:
            SwapResult with the confirmed amount out

        Raises:
            SwapAbandoned: If every attempt failed without a swap landing
            InsufficientFunds: If the treasury cannot fund the swap
            CycleCancelled: If cancelled before the swap was broadcast
        """
        async def _noop(_cycle):
            return None

        checkpoint = checkpoint or _noop

        if cycle.swapped_amount is not None:
            return SwapResult(amount_in=cycle.swap_amount_in or 0, amount_out=cycle.swapped_amount,
                              signature=cycle.swap_signature)

        if cycle.reward_balance_before is None:
            cycle.reward_balance_before = await call_with_retry(
                self.program.reward_balance, policy=self.policy, op_name="reward balance"
            )
            cycle.swap_amount_in = await call_with_retry(
                self.program.treasury_balance, policy=self.policy, op_name="treasury balance"
            )
            await checkpoint(cycle)

        result = SwapResult(amount_in=cycle.swap_amount_in or 0)

        if result.amount_in <= 0 and not (cycle.pending_swap and cycle.pending_swap.signature):
            logger.info(f"Nothing to swap for cycle {cycle.sequence}")
            return await self._settle(cycle, result, 0, checkpoint)

        retry_count = cycle.pending_swap.retry_count if cycle.pending_swap else 0

        while True:
            pending = cycle.pending_swap

            if pending and pending.signature:
                try:
                    amount_out = await self._await_broadcast(cycle)
                    if result.attempts:
                        result.attempts[-1].status = SwapStatus.SUCCESS
                    return await self._settle(cycle, result, amount_out, checkpoint)
                except (SlippageExceeded, SwapNotLanded) as e:
                    logger.warning(
                        f"Swap {pending.signature} for cycle {cycle.sequence} did not land: {str(e)}",
                        extra={"cycle": cycle.sequence, "signature": pending.signature, "error": str(e)}
                    )
                    if result.attempts:
                        result.attempts[-1].status = SwapStatus.FAILED
                        result.attempts[-1].error = str(e)
                    retry_count += 1
                    await self._release(cycle, retry_count, checkpoint)

            if retry_count >= self.max_attempts:
                break

            if cancel_requested and cancel_requested(cycle):
                cycle.pending_swap = None
                await checkpoint(cycle)
                raise CycleCancelled(f"Cycle {cycle.sequence} cancelled before swap")

            attempt = SwapAttempt(attempt_number=retry_count + 1, start_time=time.time())
            result.attempts.append(attempt)

            try:
                await self._attempt(cycle, attempt, retry_count, checkpoint)

            except SlippageExceeded as e:
                # Rejected in simulation, so nothing was broadcast
                attempt.status = SwapStatus.FAILED
                attempt.error = str(e)
                logger.warning(
                    f"Swap attempt {attempt.attempt_number} for cycle {cycle.sequence} exceeded slippage, re-quoting",
                    extra={"cycle": cycle.sequence, "min_out": attempt.min_out, "error": str(e)}
                )
                retry_count += 1
                await self._release(cycle, retry_count, checkpoint)

            except TransientRemoteError as e:
                attempt.error = str(e)
                if attempt.signature:
                    logger.warning(
                        f"Send of swap {attempt.signature} for cycle {cycle.sequence} failed, "
                        f"checking the chain: {str(e)}",
                        extra={"cycle": cycle.sequence}
                    )
                else:
                    attempt.status = SwapStatus.FAILED
                    logger.warning(
                        f"Swap attempt {attempt.attempt_number} for cycle {cycle.sequence} failed: {str(e)}",
                        extra={"cycle": cycle.sequence}
                    )
                    retry_count += 1
                    await self._release(cycle, retry_count, checkpoint)

            except InsufficientFunds:
                attempt.status = SwapStatus.FAILED
                cycle.pending_swap = None
                await checkpoint(cycle)
                raise

            finally:
                attempt.end_time = time.time()

        cycle.pending_swap = None
        await checkpoint(cycle)
        raise SwapAbandoned(
            f"Swap for cycle {cycle.sequence} abandoned after {self.max_attempts} attempts; funds remain in treasury"
        )

    async def _attempt(self, cycle: Cycle, attempt: SwapAttempt, retry_count: int, checkpoint: Checkpoint) -> None:
        """Quote, record and broadcast one swap."""
        quote = await call_with_retry(
            self.venue.quote, cycle.swap_amount_in, policy=self.policy, op_name="quote"
        )
        attempt.status = SwapStatus.QUOTE_RECEIVED
        attempt.expected_out = quote.expected_out
        attempt.min_out = self.min_out_for(quote)

        prepared = await call_with_retry(
            self.venue.prepare_swap, quote, attempt.min_out, policy=self.policy, op_name="prepare swap"
        )

        cycle.pending_swap = PendingSwap(
            amount_in=cycle.swap_amount_in,
            min_out=attempt.min_out,
            expected_out=quote.expected_out,
            quote_reference=quote.reference,
            retry_count=retry_count,
            signature=prepared.signature,
            last_valid_block_height=prepared.last_valid_block_height
        )
        await checkpoint(cycle)

        attempt.status = SwapStatus.EXECUTING
        attempt.signature = prepared.signature
        # A timed out send may still have been broadcast; the signature stays recorded
        await call_with_timeout(self.venue.send, prepared, timeout=self.policy.timeout, op_name="send swap")

    async def _await_broadcast(self, cycle: Cycle) -> int:
        """
        Wait for the recorded swap to land, fail, or expire.

        Returns:
            Its amount out once confirmed

        Raises:
            SlippageExceeded: If it landed and failed on minimum output
            SwapNotLanded: If it failed otherwise or expired unprocessed
        """
        pending = cycle.pending_swap
        logger.info(
            f"Verifying swap {pending.signature} recorded by cycle {cycle.sequence}",
            extra={"cycle": cycle.sequence, "signature": pending.signature}
        )

        lookups = 0
        while True:
            try:
                amount_out = await call_with_timeout(
                    self.venue.confirm_swap, pending.signature, pending.last_valid_block_height,
                    self.confirm_timeout, timeout=self._confirm_policy.timeout, op_name="confirm swap"
                )
                lookups = 0
            except TransientRemoteError as e:
                # Never re-quote while the outcome is unknown
                lookups += 1
                backoff = self.policy.delay_for(lookups)
                logger.warning(
                    f"Could not check swap {pending.signature}, retrying in {backoff:.1f} seconds: {str(e)}",
                    extra={"cycle": cycle.sequence, "signature": pending.signature}
                )
                await asyncio.sleep(backoff)
                continue

            if amount_out is not None:
                return amount_out

            logger.debug(f"Swap {pending.signature} still in flight", extra={"cycle": cycle.sequence})
            await asyncio.sleep(self.poll_interval)

    async def _release(self, cycle: Cycle, retry_count: int, checkpoint: Checkpoint) -> None:
        """Forget a swap that can no longer land and record the attempts used."""
        if cycle.pending_swap:
            cycle.pending_swap.signature = None
            cycle.pending_swap.last_valid_block_height = None
            cycle.pending_swap.retry_count = retry_count
            await checkpoint(cycle)

    async def _settle(self, cycle: Cycle, result: SwapResult, amount_out: int, checkpoint: Checkpoint) -> SwapResult:
        signature = cycle.pending_swap.signature if cycle.pending_swap else None

        cycle.swapped_amount = amount_out
        cycle.swap_signature = signature
        cycle.pending_swap = None
        await checkpoint(cycle)

        result.amount_out = amount_out
        result.signature = signature

        logger.info(
            f"Cycle {cycle.sequence} swapped {result.amount_in} for {amount_out}",
            extra={"cycle": cycle.sequence, "amount_in": result.amount_in,
                   "amount_out": amount_out, "signature": signature}
        )
        return result
