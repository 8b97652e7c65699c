"""
Tax harvesting for the reward cycle.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence

from loguru import logger

from taxbot.solana.errors import HarvestIncomplete, PartialBatchFailure, TransientRemoteError
from taxbot.solana.models import Cycle, RetryPolicy
from taxbot.solana.registry import AccountRegistry
from taxbot.solana.retry import call_with_retry, call_with_timeout
from taxbot.solana.token_program import IN_FLIGHT_STATUSES, SignatureStatus, TaxTokenProgram

Checkpoint = Callable[[Cycle], Awaitable[None]]


async def _no_checkpoint(cycle: Cycle) -> None:
    return None


class FeeHarvestCoordinator:
    """
    Collects withheld transfer tax into the treasury.

    Harvest instructions go out in bounded batches; a withdraw then moves the
    mint's withheld pool into the treasury. The treasury balance before the
    first broadcast is persisted on the cycle, so a resumed harvest can tell
    whether an earlier attempt already moved the funds.
    """

    def __init__(
        self,
        program: TaxTokenProgram,
        registry: AccountRegistry,
        holder_source,
        policy: RetryPolicy,
        batch_size: int = 20,
        max_concurrent_batches: int = 4,
        confirm_timeout: float = 60,
        poll_interval: float = 1.0
    ):
        """
        Initialize the harvest coordinator.

        Args:
            program: Tax token program client
            registry: Holder registry to snapshot
            holder_source: Object with an async refresh(registry) returning token account rows
            policy: Retry policy for remote calls and failed-subset retries
            batch_size: Maximum accounts per harvest instruction
            max_concurrent_batches: Harvest batches in flight at once
            confirm_timeout: Seconds per withdraw confirmation poll round
            poll_interval: Seconds between checks of a withdraw still in flight
        """
        self.program = program
        self.registry = registry
        self.holder_source = holder_source
        self.policy = policy
        self.batch_size = batch_size
        self.max_concurrent_batches = max_concurrent_batches
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self._status_policy = policy.model_copy(update={
            "timeout": None if policy.timeout is None else policy.timeout + confirm_timeout
        })

        logger.info(f"FeeHarvestCoordinator initialized with batch size {batch_size}")

    async def harvest(self, cycle: Cycle, checkpoint: Optional[Checkpoint] = None) -> int:
        """
        Harvest and withdraw withheld tax for a cycle.

        Args:
            cycle: Cycle in Harvesting status
            checkpoint: Async callable persisting the cycle

        Returns:
            Tax token amount moved into the treasury by this cycle

        Raises:
            HarvestIncomplete: If some accounts still failed after every attempt
        """
        checkpoint = checkpoint or _no_checkpoint

        if cycle.harvested_amount is not None:
            logger.info(f"Cycle {cycle.sequence} already harvested {cycle.harvested_amount}")
            return cycle.harvested_amount

        rows = await call_with_retry(
            self.holder_source.refresh, self.registry, policy=self.policy, op_name="holder refresh"
        )
        if cycle.snapshot is None:
            cycle.snapshot = self.registry.snapshot(cycle.sequence)
            await checkpoint(cycle)

        if cycle.treasury_balance_before is None:
            cycle.treasury_balance_before = await self._treasury_balance()
            await checkpoint(cycle)
        elif cycle.withdraw_signature is None:
            observed = await self._observed_prior_harvest(cycle)
            if observed is not None:
                cycle.harvested_amount = observed
                await checkpoint(cycle)
                return observed

        withheld: List[str] = []
        # A recorded withdraw means the batches already ran; it is settled before anything is re-sent
        if cycle.withdraw_signature is None:
            token_accounts = [row[0] for row in rows]
            withheld = await call_with_retry(
                self.program.list_withheld_accounts, token_accounts,
                policy=self.policy, op_name="withheld account scan"
            )
            cycle.harvest_failed_accounts = await self._harvest_accounts(withheld)

        await self._withdraw(cycle, checkpoint)

        after = await self._treasury_balance()
        cycle.harvested_amount = after - cycle.treasury_balance_before
        failed = cycle.harvest_failed_accounts
        await checkpoint(cycle)

        logger.info(
            f"Cycle {cycle.sequence} harvested {cycle.harvested_amount} ({len(failed)} accounts failed)",
            extra={
                "cycle": cycle.sequence,
                "harvested": cycle.harvested_amount,
                "accounts": len(withheld),
                "failed_accounts": len(failed),
                "withdraw_signature": cycle.withdraw_signature
            }
        )

        if failed:
            raise HarvestIncomplete(
                f"{len(failed)} accounts could not be harvested",
                failed_accounts=failed,
                harvested_amount=cycle.harvested_amount
            )

        return cycle.harvested_amount

    async def _treasury_balance(self) -> int:
        return await call_with_retry(
            self.program.treasury_balance, policy=self.policy, op_name="treasury balance"
        )

    async def _observed_prior_harvest(self, cycle: Cycle) -> Optional[int]:
        """Amount an earlier attempt already moved into the treasury, if any."""
        current = await self._treasury_balance()
        delta = current - cycle.treasury_balance_before

        if delta > 0:
            logger.info(
                f"Treasury already up {delta} for cycle {cycle.sequence}, skipping harvest",
                extra={"cycle": cycle.sequence, "delta": delta}
            )
            return delta
        return None

    async def _withdraw(self, cycle: Cycle, checkpoint: Checkpoint) -> None:
        """
        Move the mint's withheld pool into the treasury.

        The withdraw signature is recorded before broadcast. A recorded
        withdraw is waited on until it confirms, fails or expires; only then
        is a new one sent.

        Raises:
            TransientRemoteError: If no withdraw confirmed within the retry policy
        """
        attempts = 0

        while True:
            if cycle.withdraw_signature:
                status = await self._withdraw_outcome(cycle)
                if status == SignatureStatus.CONFIRMED:
                    return

                logger.warning(
                    f"Withdraw {cycle.withdraw_signature} for cycle {cycle.sequence} {status.value}",
                    extra={"cycle": cycle.sequence, "status": status.value}
                )
                cycle.withdraw_signature = None
                cycle.withdraw_last_valid_block_height = None
                await checkpoint(cycle)

            if attempts >= self.policy.max_attempts:
                raise TransientRemoteError(
                    f"Withdraw for cycle {cycle.sequence} did not land after {attempts} attempts"
                )
            if attempts:
                await asyncio.sleep(self.policy.delay_for(attempts))
            attempts += 1

            prepared = await call_with_retry(
                self.program.prepare_withdraw, policy=self.policy, op_name="prepare withdraw"
            )
            cycle.withdraw_signature = prepared.signature
            cycle.withdraw_last_valid_block_height = prepared.last_valid_block_height
            await checkpoint(cycle)

            try:
                await call_with_timeout(
                    self.program.send, prepared, timeout=self.policy.timeout, op_name="send withdraw"
                )
            except TransientRemoteError as e:
                logger.warning(f"Send of withdraw {prepared.signature} failed, checking the chain: {str(e)}")

    async def _withdraw_outcome(self, cycle: Cycle) -> SignatureStatus:
        while True:
            status = await call_with_retry(
                self.program.resolve, cycle.withdraw_signature, cycle.withdraw_last_valid_block_height,
                self.confirm_timeout, policy=self._status_policy, op_name="withdraw status"
            )
            if status not in IN_FLIGHT_STATUSES:
                return status
            await asyncio.sleep(self.poll_interval)

    async def _harvest_accounts(self, accounts: Sequence[str]) -> List[str]:
        """
        Harvest accounts in batches, retrying only the accounts that failed.

        Returns:
            Accounts still failing after the last attempt
        """
        pending = list(accounts)
        attempt = 0
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)

        while pending and attempt < self.policy.max_attempts:
            attempt += 1
            batches = [pending[i:i + self.batch_size] for i in range(0, len(pending), self.batch_size)]

            results = await asyncio.gather(*(self._harvest_batch(batch, semaphore) for batch in batches))
            pending = [account for failed in results for account in failed]

            if pending and attempt < self.policy.max_attempts:
                backoff = self.policy.delay_for(attempt)
                logger.warning(
                    f"Retrying harvest of {len(pending)} accounts in {backoff:.1f} seconds "
                    f"(attempt {attempt}/{self.policy.max_attempts})",
                    extra={"failed_accounts": len(pending), "retry_count": attempt, "backoff": backoff}
                )
                await asyncio.sleep(backoff)

        return pending

    async def _harvest_batch(self, batch: List[str], semaphore: asyncio.Semaphore) -> List[str]:
        async with semaphore:
            try:
                result = await call_with_timeout(
                    self.program.harvest_withheld, batch,
                    timeout=self.policy.timeout, op_name="harvest batch"
                )
            except PartialBatchFailure as e:
                logger.warning(f"Harvest batch partially failed: {str(e)}")
                return e.failed_accounts
            except TransientRemoteError as e:
                logger.warning(f"Harvest batch of {len(batch)} accounts failed: {str(e)}")
                return list(batch)

        return list(result.failed)
