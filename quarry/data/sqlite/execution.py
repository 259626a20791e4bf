"""
Execution wrapper shared by every operation.

Layering, outermost first: retry( timeout( transaction( operation ))).

- transaction: the operation runs inside ``DatabaseManager.transaction()`` unless the
  options turn it off; a failure rolls back everything the attempt wrote.
- timeout: the caller gets ``TimedOut`` once the deadline passes. The operation itself is
  shielded and keeps running to completion in the background; its outcome is only logged.
- retry: mutating operations may be re-attempted with fixed or exponential backoff.
  ``NonRetryableError`` and ``ValueError`` are never retried and surface unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set, TypeVar

import backoff
import opentelemetry.trace

from quarry.config import ExecutionOptions, RetryPolicy
from quarry.data.sqlite.manager import DatabaseManager
from quarry.errors import NonRetryableError, RetryExhausted, TimedOut

logger = logging.getLogger(__name__)
tracer = opentelemetry.trace.get_tracer(__name__)

T = TypeVar("T")

# Strong references to operations that outlived their caller's timeout.
_background: Set[asyncio.Future] = set()


def is_permanent(error: BaseException) -> bool:
    return isinstance(error, (NonRetryableError, ValueError))


def _reap(task: asyncio.Future) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Operation failed after its caller timed out: %r", error)


def _wait_strategy(policy: RetryPolicy):
    delay = policy.delay_ms / 1000
    if policy.backoff == "exponential":
        return backoff.expo, {"base": 2, "factor": delay}
    return backoff.constant, {"interval": delay}


async def _with_timeout(
    name: str, timeout_ms: Optional[float], op: Callable[[], Awaitable[T]]
) -> T:
    if timeout_ms is None:
        return await op()

    task = asyncio.ensure_future(op())
    _background.add(task)
    task.add_done_callback(_reap)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise TimedOut(name, timeout_ms) from None


async def execute_operation(
    name: str,
    op: Callable[[], Awaitable[T]],
    manager: DatabaseManager,
    options: Optional[ExecutionOptions] = None,
    *,
    mutating: bool = True,
    empty: Optional[Callable[[], Any]] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> T:
    """
    Run ``op`` under the transaction, timeout and retry settings in ``options``.

    ``empty`` builds the zero-effect result returned when a retry policy with
    ``on_error="ignore"`` gives up.
    """
    options = options or ExecutionOptions()

    async def transactional() -> T:
        if not options.transaction:
            return await op()
        async with manager.transaction():
            return await op()

    async def attempt() -> T:
        return await _with_timeout(name, options.timeout_ms, transactional)

    with tracer.start_as_current_span(name, attributes=attributes) as span:
        span.set_attribute("quarry.transaction", options.transaction)
        if options.timeout_ms is not None:
            span.set_attribute("quarry.timeout_ms", options.timeout_ms)

        policy = options.retry
        if policy is None or not mutating:
            return await attempt()

        span.set_attribute("quarry.retry.attempts", policy.attempts)
        wait_gen, wait_kwargs = _wait_strategy(policy)

        def on_backoff(details):
            logger.info(
                "%s attempt %d failed, retrying in %.3fs",
                name,
                details["tries"],
                details["wait"],
            )

        retrying = backoff.on_exception(
            wait_gen,
            Exception,
            max_tries=policy.attempts,
            jitter=None,
            giveup=is_permanent,
            on_backoff=on_backoff,
            logger=None,
            **wait_kwargs,
        )(attempt)

        try:
            return await retrying()
        except Exception as e:
            if is_permanent(e):
                raise
            span.record_exception(e)
            if policy.on_error == "ignore":
                logger.warning(
                    "%s gave up after %d attempt(s), ignoring: %r",
                    name,
                    policy.attempts,
                    e,
                )
                return empty() if empty is not None else None
            raise RetryExhausted(name, policy.attempts, e) from e
