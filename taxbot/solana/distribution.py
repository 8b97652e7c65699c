"""
Proportional reward distribution.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from loguru import logger

from taxbot.solana.errors import InsufficientFunds, TransientRemoteError
from taxbot.solana.models import Cycle, HolderSnapshot, Payout, PayoutStatus, RetryPolicy
from taxbot.solana.retry import call_with_retry, call_with_timeout
from taxbot.solana.token_program import IN_FLIGHT_STATUSES, SignatureStatus, TaxTokenProgram

Checkpoint = Callable[[Cycle], Awaitable[None]]


@dataclass
class Allocation:
    """Integer split of a reward amount across holders."""
    payouts: List[Payout] = field(default_factory=list)
    remainder: int = 0
    skipped: List[str] = field(default_factory=list)

    @property
    def allocated(self) -> int:
        return sum(payout.amount for payout in self.payouts)


def allocate(holders: Mapping[str, int], total: int, amount: int, dust_threshold: int = 1) -> Allocation:
    """
    Split amount across holders in proportion to their balances.

    Each share is floor(balance * amount / total). Shares under the dust
    threshold (never less than one base unit) are skipped. Everything not
    paid out, truncation included, is returned as the remainder so that
    allocated + remainder == amount.

    Args:
        holders: Owner address to balance
        total: Sum of all balances
        amount: Reward base units to split
        dust_threshold: Smallest share worth transferring
    """
    if amount < 0:
        raise ValueError(f"Cannot distribute a negative amount: {amount}")

    allocation = Allocation()
    if total <= 0 or amount == 0:
        allocation.remainder = amount
        return allocation

    minimum = max(1, dust_threshold)
    for address in sorted(holders):
        share = holders[address] * amount // total
        if share < minimum:
            allocation.skipped.append(address)
            continue
        allocation.payouts.append(Payout(address=address, amount=share))

    allocation.remainder = amount - allocation.allocated
    return allocation


class DistributionEngine:
    """
    Computes holder payouts and delivers them as independent transfers.

    Payouts are sent concurrently through a bounded worker pool. A failed
    transfer never blocks the others; once its attempts are spent it is
    marked Failed and its amount stays in the treasury for the next cycle.
    """

    def __init__(
        self,
        program: TaxTokenProgram,
        policy: RetryPolicy,
        dust_threshold: int = 1,
        max_concurrent_transfers: int = 5,
        confirm_timeout: float = 60,
        poll_interval: float = 1.0,
        on_payout_failed: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None
    ):
        """
        Initialize the distribution engine.

        Args:
            program: Token program used for transfers
            policy: Attempts and backoff per payout
            dust_threshold: Smallest share worth transferring, in base units
            max_concurrent_transfers: Transfers in flight at once
            confirm_timeout: Seconds per confirmation poll round
            poll_interval: Seconds between checks of a transfer still in flight
            on_payout_failed: Async callback when a payout is given up
        """
        self.program = program
        self.policy = policy
        self.dust_threshold = dust_threshold
        self.max_concurrent_transfers = max_concurrent_transfers
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._status_policy = policy.model_copy(update={
            "timeout": None if policy.timeout is None else policy.timeout + confirm_timeout
        })
        self.on_payout_failed = on_payout_failed

        logger.info(
            f"DistributionEngine initialized (dust threshold {dust_threshold}, "
            f"{max_concurrent_transfers} concurrent transfers)"
        )

    def compute(self, snapshot: HolderSnapshot, amount: int) -> Allocation:
        return allocate(snapshot.holders, snapshot.total, amount, self.dust_threshold)

    async def distribute(
        self,
        cycle: Cycle,
        swapped_amount: int,
        snapshot: HolderSnapshot,
        checkpoint: Optional[Checkpoint] = None
    ) -> List[Payout]:
        """
        Pay holders their share of swapped_amount.

        Payouts are computed once per cycle and persisted before any transfer,
        so a resumed cycle only delivers what is still outstanding.

        Args:
            cycle: Cycle in Distributing status
            swapped_amount: Reward base units to distribute
            snapshot: Holder snapshot of the cycle
            checkpoint: Async callable persisting the cycle

        Returns:
            The cycle's payouts, each Confirmed or Failed
        """
        async def _noop(_cycle):
            return None

        checkpoint = checkpoint or _noop

        if cycle.distributable_amount is None:
            allocation = self.compute(snapshot, swapped_amount)
            cycle.distributable_amount = swapped_amount
            cycle.payouts = allocation.payouts
            cycle.remainder_amount = allocation.remainder
            await checkpoint(cycle)

            logger.info(
                f"Cycle {cycle.sequence} allocated {allocation.allocated} of {swapped_amount} "
                f"to {len(allocation.payouts)} holders",
                extra={
                    "cycle": cycle.sequence,
                    "payouts": len(allocation.payouts),
                    "skipped": len(allocation.skipped),
                    "remainder": allocation.remainder
                }
            )

        outstanding = [payout for payout in cycle.payouts if not payout.is_settled]
        semaphore = asyncio.Semaphore(self.max_concurrent_transfers)

        async def worker(payout: Payout):
            async with semaphore:
                await self._deliver(cycle, payout, checkpoint)

        await asyncio.gather(*(worker(payout) for payout in outstanding))

        cycle.failed_carry_amount = sum(
            payout.amount for payout in cycle.payouts if payout.status == PayoutStatus.FAILED
        )
        await checkpoint(cycle)

        confirmed = sum(1 for payout in cycle.payouts if payout.status == PayoutStatus.CONFIRMED)
        logger.info(
            f"Cycle {cycle.sequence} distribution finished: {confirmed}/{len(cycle.payouts)} confirmed, "
            f"{cycle.carried_amount} carried",
            extra={
                "cycle": cycle.sequence,
                "confirmed": confirmed,
                "failed": len(cycle.payouts) - confirmed,
                "remainder": cycle.remainder_amount,
                "failed_carry": cycle.failed_carry_amount
            }
        )

        return cycle.payouts

    async def _outcome(self, cycle: Cycle, payout: Payout) -> SignatureStatus:
        """
        Wait until the recorded transfer is final: confirmed, failed, or expired.

        Raises:
            TransientRemoteError: If the chain could not be read within the retry policy
        """
        while True:
            status = await call_with_retry(
                self.program.resolve, payout.signature, payout.last_valid_block_height, self.confirm_timeout,
                policy=self._status_policy, op_name="transfer status"
            )
            if status not in IN_FLIGHT_STATUSES:
                return status

            logger.debug(
                f"Transfer {payout.signature} to {payout.address} still in flight",
                extra={"cycle": cycle.sequence, "status": status.value}
            )
            await asyncio.sleep(self.poll_interval)

    async def _deliver(self, cycle: Cycle, payout: Payout, checkpoint: Checkpoint) -> None:
        """
        Send one payout, retrying until it confirms or its attempts are spent.

        A new transfer is only built once the previous one is known to have
        failed or expired, so a slow transfer is never duplicated.
        """
        error = payout.error

        try:
            while True:
                if payout.signature:
                    status = await self._outcome(cycle, payout)
                    if status == SignatureStatus.CONFIRMED:
                        await self._confirm(cycle, payout, checkpoint)
                        return
                    error = f"Transfer {payout.signature} {status.value}"
                    payout.signature = None
                    payout.last_valid_block_height = None

                if payout.attempts >= self.policy.max_attempts:
                    break

                if payout.attempts:
                    backoff = self.policy.delay_for(payout.attempts)
                    logger.warning(
                        f"Retrying payout to {payout.address} in {backoff:.1f} seconds "
                        f"(attempt {payout.attempts}/{self.policy.max_attempts})",
                        extra={"cycle": cycle.sequence, "address": payout.address, "error": error}
                    )
                    await asyncio.sleep(backoff)

                payout.attempts += 1
                try:
                    prepared = await call_with_timeout(
                        self.program.build_transfer, payout.address, payout.amount,
                        timeout=self.policy.timeout, op_name="build transfer"
                    )
                except TransientRemoteError as e:
                    error = str(e)
                    continue

                payout.signature = prepared.signature
                payout.last_valid_block_height = prepared.last_valid_block_height
                payout.status = PayoutStatus.SENT
                await checkpoint(cycle)

                try:
                    await call_with_timeout(
                        self.program.send, prepared, timeout=self.policy.timeout, op_name="send transfer"
                    )
                except InsufficientFunds:
                    # Rejected in simulation, so nothing was broadcast
                    payout.signature = None
                    payout.last_valid_block_height = None
                    raise
                except TransientRemoteError as e:
                    # The send may still have reached the cluster; settled on the next pass
                    error = str(e)

        except InsufficientFunds as e:
            error = str(e)

        except TransientRemoteError as e:
            # Outcome of the last transfer unknown; never resend blind
            error = str(e)

        payout.status = PayoutStatus.FAILED
        payout.error = error
        await checkpoint(cycle)

        logger.error(
            f"Payout of {payout.amount} to {payout.address} failed: {error}",
            extra={"cycle": cycle.sequence, "address": payout.address, "amount": payout.amount}
        )

        if self.on_payout_failed:
            await self.on_payout_failed({
                "cycle": cycle.sequence,
                "address": payout.address,
                "amount": payout.amount,
                "error": error,
                "timestamp": datetime.now().isoformat()
            })

    async def _confirm(self, cycle: Cycle, payout: Payout, checkpoint: Checkpoint) -> None:
        payout.status = PayoutStatus.CONFIRMED
        payout.error = None
        await checkpoint(cycle)
        logger.debug(
            f"Payout of {payout.amount} to {payout.address} confirmed",
            extra={"cycle": cycle.sequence, "signature": payout.signature}
        )
