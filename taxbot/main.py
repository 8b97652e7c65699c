#!/usr/bin/env python
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from loguru import logger
from solana.rpc.async_api import AsyncClient

from taxbot.config import Settings, load_settings
from taxbot.events.event_system import Event, EventSystem, PayoutFailedEvent
from taxbot.solana.distribution import DistributionEngine
from taxbot.solana.errors import TaxBotError
from taxbot.solana.fee_collector import FeeHarvestCoordinator
from taxbot.solana.holders import HeliusHolderSource
from taxbot.solana.keys import load_keypair
from taxbot.solana.models import RetryPolicy
from taxbot.solana.registry import AccountRegistry
from taxbot.solana.scheduler import CycleScheduler
from taxbot.solana.swap_executor import SwapExecutor
from taxbot.solana.swap_venue import JupiterSwapVenue
from taxbot.solana.token_program import SolanaTaxTokenProgram
from taxbot.storage.cycle_store import CycleStore


def setup_logging(level: str = "INFO"):
    """Configure structured logging with loguru."""
    logger.remove()  # Remove default handler
    logger.add(
        "logs/taxbot_{time}.log",
        rotation="1 day",
        retention="14 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message} | {extra}",
        serialize=True,  # JSON formatting for structured logs
    )

    # Also send logs to stdout
    logger.add(
        lambda msg: print(msg, end=""),
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}"
    )

    # Redirect httpx and solana loggers to loguru
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)


class InterceptHandler(logging.Handler):
    """Intercept standard logging and redirect to loguru."""
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


async def alert_handler(event: Event):
    """Surface failures to the operator."""
    logger.critical(f"Operator alert: {event.event_type}", extra=event.data)


def build_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max(1, settings.max_retries),
        base_delay=settings.retry_base_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
        timeout=settings.call_timeout,
    )


async def build_scheduler(settings: Settings, event_system: EventSystem):
    """
    Wire the cycle components from settings.

    Returns:
        Tuple of (scheduler, rpc client); the caller closes the client
    """
    payer = load_keypair(settings.admin_private_key, settings.payer_secret_key_path)
    client = AsyncClient(settings.rpc_url)
    policy = build_policy(settings)

    program = SolanaTaxTokenProgram(
        client=client,
        payer=payer,
        tax_program_id=settings.tax_program_id,
        token_mint=settings.token_mint,
        reward_mint=settings.reward_token_mint,
        treasury_account=settings.treasury_account,
    )

    registry = AccountRegistry(excluded=settings.excluded_holders)
    registry.exclude(str(payer.pubkey()))

    holder_source = HeliusHolderSource(
        rpc_url=settings.helius_rpc or settings.rpc_url,
        mint=settings.token_mint,
        timeout=int(settings.call_timeout),
    )

    venue = JupiterSwapVenue(
        client=client,
        payer=payer,
        program=program,
        input_mint=settings.token_mint,
        output_mint=settings.reward_token_mint,
        api_url=settings.jupiter_api_url,
        dexes=settings.swap_dexes,
        timeout=int(settings.call_timeout),
    )

    async def on_payout_failed(info):
        await event_system.publish(PayoutFailedEvent(
            sequence=info["cycle"], address=info["address"], amount=info["amount"], error=info["error"]
        ))

    scheduler = CycleScheduler(
        harvester=FeeHarvestCoordinator(
            program, registry, holder_source, policy, batch_size=settings.harvest_batch_size
        ),
        swapper=SwapExecutor(
            venue, program, policy,
            slippage_bps=settings.slippage_bps,
            max_attempts=settings.max_swap_attempts,
        ),
        distributor=DistributionEngine(
            program, policy,
            dust_threshold=settings.dust_threshold,
            max_concurrent_transfers=settings.max_concurrent_transfers,
            on_payout_failed=on_payout_failed,
        ),
        store=CycleStore(settings.state_dir),
        interval=settings.interval,
        max_cycle_duration=settings.max_cycle_duration,
        event_system=event_system,
    )
    return scheduler, client


async def run(settings: Settings, once: bool = False):
    """Recover unfinished cycles, then run one cycle or loop forever."""
    event_system = EventSystem()
    for event_type in ("cycle_failed", "payout_failed", "cancel_acknowledged"):
        await event_system.subscribe(event_type, alert_handler)
    await event_system.start()

    scheduler, client = await build_scheduler(settings, event_system)
    try:
        await scheduler.recover()
        if once:
            cycle = await scheduler.run_once()
            logger.info(f"Cycle {cycle.sequence} finished {cycle.status.value}")
        else:
            await scheduler.run_forever(settings.poll_interval)
    finally:
        scheduler.stop()
        await event_system.stop()
        await client.close()


def print_status(store: CycleStore, limit: int = 10):
    cycles = store.load_all()[-limit:]
    if not cycles:
        print("No cycles recorded")
        return

    for cycle in cycles:
        line = (
            f"#{cycle.sequence:<5} {cycle.status.value:<13} started {cycle.started_at:%Y-%m-%d %H:%M:%S}"
            f"  harvested={cycle.harvested_amount}  swapped={cycle.swapped_amount}"
            f"  payouts={len(cycle.payouts)}  carried={cycle.carried_amount}"
        )
        if cycle.retry_of:
            line += f"  retry_of={cycle.retry_of}"
        if cycle.failure_reason:
            line += f"  reason={cycle.failure_reason}"
        print(line)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="taxbot", description="Tax token reward distribution bot")
    commands = parser.add_subparsers(dest="command")

    commands.add_parser("run", help="Recover unfinished cycles, then run on the configured interval")
    commands.add_parser("once", help="Recover unfinished cycles, then run a single cycle")

    status = commands.add_parser("status", help="Show recent cycles")
    status.add_argument("--limit", type=int, default=10)

    cancel = commands.add_parser("cancel", help="Cancel a cycle before its swap is broadcast")
    cancel.add_argument("sequence", type=int)

    retry = commands.add_parser("retry", help="Start a fresh cycle for a failed one")
    retry.add_argument("sequence", type=int)

    args = parser.parse_args(argv)
    args.command = args.command or "run"
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        settings = load_settings()
    except TaxBotError as e:
        print(f"Configuration error: {str(e)}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level)

    try:
        store = CycleStore(settings.state_dir)

        if args.command == "status":
            print_status(store, args.limit)
        elif args.command == "cancel":
            store.request_cancel(args.sequence)
        elif args.command == "retry":
            store.request_retry(args.sequence)
        else:
            logger.info("Starting tax token reward bot")
            asyncio.run(run(settings, once=args.command == "once"))

    except TaxBotError as e:
        logger.critical(f"Stopping: {str(e)}")
        return 1

    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")

    return 0


if __name__ == '__main__':
    sys.exit(main())
