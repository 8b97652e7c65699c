"""
Scheduler for reward cycles.
"""

import asyncio
from datetime import datetime
from typing import Callable, List, Optional, Set

from loguru import logger

from taxbot.events.event_system import (
    CancelAcknowledgedEvent,
    CycleCommittedEvent,
    CycleFailedEvent,
    CycleStartedEvent,
    EventSystem,
)
from taxbot.solana.distribution import DistributionEngine
from taxbot.solana.errors import PersistenceError, TaxBotError
from taxbot.solana.fee_collector import FeeHarvestCoordinator
from taxbot.solana.models import Cycle, CycleStatus, PayoutStatus
from taxbot.solana.swap_executor import SwapExecutor
from taxbot.storage.cycle_store import CycleStore

# Statuses in which the swap has not been broadcast yet
_CANCELLABLE = (CycleStatus.PENDING, CycleStatus.HARVESTING, CycleStatus.SWAPPING)


class CycleScheduler:
    """
    Runs one harvest, swap and distribute cycle per interval.

    At most one cycle is in flight. Every stage boundary is persisted through
    the cycle store, so a restarted process resumes unfinished cycles from
    their last completed stage instead of starting over.
    """

    def __init__(
        self,
        harvester: FeeHarvestCoordinator,
        swapper: SwapExecutor,
        distributor: DistributionEngine,
        store: CycleStore,
        interval: float = 3600,
        max_cycle_duration: float = 1800,
        event_system: Optional[EventSystem] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the scheduler.

        Args:
            harvester: Harvest stage
            swapper: Swap stage
            distributor: Distribution stage
            store: Durable cycle store
            interval: Seconds between cycle starts
            max_cycle_duration: Seconds a cycle may run before it is failed
            event_system: Receives operator events
            clock: Current time source
        """
        self.harvester = harvester
        self.swapper = swapper
        self.distributor = distributor
        self.store = store
        self.interval = interval
        self.max_cycle_duration = max_cycle_duration
        self.event_system = event_system or EventSystem()
        self.clock = clock

        self._task: Optional[asyncio.Task] = None
        self._current: Optional[Cycle] = None
        self._last_start: Optional[datetime] = None
        self._cancelled: Set[int] = set()
        self._stop_event: Optional[asyncio.Event] = None

        logger.info(f"CycleScheduler initialized with {interval}s interval, {max_cycle_duration}s max duration")

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current(self) -> Optional[Cycle]:
        return self._current

    async def _checkpoint(self, cycle: Cycle) -> None:
        self.store.save(cycle)

    def _cancel_requested(self, cycle: Cycle) -> bool:
        return cycle.sequence in self._cancelled

    async def recover(self) -> List[Cycle]:
        """
        Resume every unfinished cycle, oldest first, each to completion.

        Returns:
            The resumed cycles in their final state
        """
        resumed = []
        for cycle in self.store.unfinished():
            if self.store.is_cancel_requested(cycle.sequence):
                self.store.clear_cancel(cycle.sequence)
                await self._request_cancel(cycle)

            logger.info(
                f"Resuming cycle {cycle.sequence} from {cycle.status.value}",
                extra={"cycle": cycle.sequence, "status": cycle.status.value}
            )
            await self._supervise(cycle)
            resumed.append(cycle)

        latest = self.store.latest()
        if latest is not None:
            self._last_start = latest.started_at

        if resumed:
            logger.info(f"Recovered {len(resumed)} unfinished cycles")
        return resumed

    async def tick(self, now: Optional[datetime] = None) -> Optional[Cycle]:
        """
        Start a cycle if none is in flight and the interval has elapsed.

        Also picks up operator retry and cancel requests left in the store.

        Args:
            now: Current time, defaults to the scheduler clock

        Returns:
            The started cycle, or None
        """
        now = now or self.clock()
        self._reap()

        if self._current and self.store.is_cancel_requested(self._current.sequence):
            self.store.clear_cancel(self._current.sequence)
            await self.cancel(self._current.sequence)

        # Markers stay in place until a retry can actually start
        if not self.in_flight:
            for sequence in self.store.retry_requests():
                self.store.clear_retry(sequence)
                started = await self.retry(sequence, now)
                if started:
                    return started

        if self.in_flight:
            return None

        if self._last_start is not None and (now - self._last_start).total_seconds() < self.interval:
            return None

        return await self.start_cycle(now)

    async def start_cycle(self, now: Optional[datetime] = None, retry_of: Optional[int] = None) -> Cycle:
        """Create, persist and launch a new cycle."""
        if self.in_flight:
            raise TaxBotError(f"Cycle {self._current.sequence} is still in flight")

        now = now or self.clock()
        cycle = Cycle(sequence=self.store.next_sequence(), started_at=now, retry_of=retry_of)
        self.store.save(cycle)
        self._last_start = now

        logger.info(
            f"Starting cycle {cycle.sequence}" + (f" (retry of {retry_of})" if retry_of else ""),
            extra={"cycle": cycle.sequence, "retry_of": retry_of}
        )
        await self.event_system.publish(CycleStartedEvent(cycle.sequence, retry_of))

        self._current = cycle
        self._task = asyncio.create_task(self._supervise(cycle))
        return cycle

    async def wait_idle(self) -> None:
        """Wait for the in-flight cycle, if any, to finish."""
        if self._task is not None:
            await asyncio.wait({self._task})
        self._reap()

    async def run_once(self) -> Cycle:
        """Start one cycle now and wait for it to finish."""
        cycle = await self.start_cycle()
        await self.wait_idle()
        return cycle

    def _reap(self) -> None:
        """Forget a finished task, re-raising a fatal error from it."""
        if self._task is None or not self._task.done():
            return

        task, self._task = self._task, None
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def _supervise(self, cycle: Cycle) -> None:
        self._current = cycle
        try:
            await asyncio.wait_for(self.run_cycle(cycle), timeout=self.max_cycle_duration)
        except asyncio.TimeoutError:
            await self._fail(cycle, f"exceeded max cycle duration of {self.max_cycle_duration}s")
        finally:
            self._current = None
            self._cancelled.discard(cycle.sequence)

    async def run_cycle(self, cycle: Cycle) -> Cycle:
        """
        Drive a cycle through its remaining stages.

        Stage failures mark the cycle Failed. A PersistenceError propagates,
        since the process cannot continue without durable state.
        """
        try:
            if cycle.status == CycleStatus.PENDING:
                await self._advance(cycle, CycleStatus.HARVESTING)

            if cycle.status == CycleStatus.HARVESTING:
                await self.harvester.harvest(cycle, self._checkpoint)
                await self._advance(cycle, CycleStatus.SWAPPING)

            if cycle.status == CycleStatus.SWAPPING:
                await self.swapper.execute(cycle, self._checkpoint, cancel_requested=self._cancel_requested)
                await self._advance(cycle, CycleStatus.DISTRIBUTING)

            if cycle.status == CycleStatus.DISTRIBUTING:
                distributable = (cycle.reward_balance_before or 0) + cycle.swapped_amount
                await self.distributor.distribute(cycle, distributable, cycle.snapshot, self._checkpoint)
                await self._advance(cycle, CycleStatus.COMMITTED)
                await self._committed(cycle)

        except PersistenceError:
            logger.critical(f"Cannot persist cycle {cycle.sequence}, stopping")
            raise

        except TaxBotError as e:
            await self._fail(cycle, str(e))

        except Exception as e:
            logger.exception(f"Unexpected error in cycle {cycle.sequence}")
            await self._fail(cycle, f"unexpected error: {str(e)}")

        return cycle

    async def _advance(self, cycle: Cycle, status: CycleStatus) -> None:
        cycle.advance(status)
        self.store.save(cycle)
        logger.debug(f"Cycle {cycle.sequence} is {status.value}")

    async def _committed(self, cycle: Cycle) -> None:
        confirmed = sum(1 for payout in cycle.payouts if payout.status == PayoutStatus.CONFIRMED)
        failed = len(cycle.payouts) - confirmed

        logger.info(
            f"Cycle {cycle.sequence} committed",
            extra={
                "cycle": cycle.sequence,
                "swapped_amount": cycle.swapped_amount,
                "confirmed": confirmed,
                "failed": failed,
                "carried_amount": cycle.carried_amount
            }
        )
        await self.event_system.publish(CycleCommittedEvent(
            sequence=cycle.sequence,
            swapped_amount=cycle.swapped_amount,
            confirmed=confirmed,
            failed=failed,
            carried_amount=cycle.carried_amount
        ))

    async def _fail(self, cycle: Cycle, reason: str) -> None:
        if cycle.is_terminal:
            return

        stage = cycle.status.value
        cycle.fail(reason)
        self.store.save(cycle)

        logger.error(
            f"Cycle {cycle.sequence} failed during {stage}: {reason}",
            extra={"cycle": cycle.sequence, "stage": stage}
        )
        await self.event_system.publish(CycleFailedEvent(cycle.sequence, reason, stage))

    async def retry(self, sequence: int, now: Optional[datetime] = None) -> Optional[Cycle]:
        """
        Start a fresh cycle for a Failed one.

        The failed cycle itself is never re-entered; the new cycle records it
        in retry_of and swaps whatever the treasury holds.

        Returns:
            The new cycle, or None if the request was refused
        """
        original = self.store.load(sequence)
        if original is None or original.status != CycleStatus.FAILED:
            logger.warning(f"Retry of cycle {sequence} refused: not a failed cycle")
            return None

        if self.in_flight:
            logger.warning(f"Retry of cycle {sequence} refused: cycle {self._current.sequence} is in flight")
            return None

        return await self.start_cycle(now, retry_of=sequence)

    async def cancel(self, sequence: int) -> bool:
        """
        Cancel a cycle whose swap has not been broadcast.

        A later request is only acknowledged.

        Returns:
            True if the cycle will stop before its swap
        """
        if self._current and self._current.sequence == sequence:
            cycle = self._current
        else:
            cycle = self.store.load(sequence)

        if cycle is None or cycle.is_terminal:
            logger.warning(f"Cancel of cycle {sequence} ignored: no unfinished cycle")
            return False

        return await self._request_cancel(cycle)

    async def _request_cancel(self, cycle: Cycle) -> bool:
        broadcast = (cycle.pending_swap is not None and cycle.pending_swap.signature is not None) \
            or cycle.swapped_amount is not None

        if cycle.status in _CANCELLABLE and not broadcast:
            self._cancelled.add(cycle.sequence)
            logger.info(f"Cycle {cycle.sequence} will be cancelled before its swap")
            return True

        logger.info(
            f"Cancel of cycle {cycle.sequence} acknowledged; swap already broadcast, cycle continues",
            extra={"cycle": cycle.sequence, "status": cycle.status.value}
        )
        await self.event_system.publish(CancelAcknowledgedEvent(cycle.sequence, cycle.status.value))
        return False

    async def run_forever(self, poll_seconds: float = 10) -> None:
        """Tick every poll_seconds until stop() is called."""
        self._stop_event = asyncio.Event()
        logger.info(f"Scheduler running, polling every {poll_seconds}s")

        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                pass

        await self.wait_idle()
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop run_forever after the in-flight cycle finishes."""
        if self._stop_event is not None:
            self._stop_event.set()
