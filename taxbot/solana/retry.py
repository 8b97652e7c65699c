"""
Timeout and retry wrapper for remote calls.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from loguru import logger

from taxbot.solana.errors import TransientRemoteError
from taxbot.solana.models import RetryPolicy


async def call_with_timeout(
    func: Callable[..., Awaitable[Any]],
    *args,
    timeout: Optional[float] = None,
    op_name: str = "remote call",
    **kwargs
) -> Any:
    """
    Await a remote call, converting a timeout into a TransientRemoteError.

    Args:
        func: Coroutine function to call
        timeout: Seconds to wait, or None for no limit
        op_name: Name used in log messages and errors
    """
    try:
        return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise TransientRemoteError(f"{op_name} timed out after {timeout}s") from e


async def call_with_retry(
    func: Callable[..., Awaitable[Any]],
    *args,
    policy: RetryPolicy,
    op_name: str = "remote call",
    retry_on: Tuple[Type[BaseException], ...] = (TransientRemoteError,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs
) -> Any:
    """
    Call func with a per-attempt timeout, retrying retryable errors with backoff.

    Errors not listed in retry_on propagate immediately.

    Args:
        func: Coroutine function to call
        policy: Attempt budget, backoff and timeout
        op_name: Name used in log messages
        retry_on: Exception types that trigger a retry
        sleep: Sleep function, replaceable in tests

    Returns:
        Result of func

    Raises:
        The last retryable error once the attempt budget is spent
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call_with_timeout(
                func, *args, timeout=policy.timeout, op_name=op_name, **kwargs
            )
        except retry_on as e:
            if attempt >= policy.max_attempts:
                logger.error(
                    f"{op_name} failed after {attempt} attempts: {str(e)}",
                    extra={"op": op_name, "attempts": attempt}
                )
                raise

            backoff = policy.delay_for(attempt)
            logger.warning(
                f"Retrying {op_name} in {backoff:.1f} seconds (attempt {attempt}/{policy.max_attempts})",
                extra={"op": op_name, "retry_count": attempt, "backoff": backoff, "error": str(e)}
            )
            await sleep(backoff)
