"""Bounded exponential backoff around a fallible async operation.

Attempt 0 is the first try; ``max_retries`` further attempts follow, each
preceded by a delay of ``base_delay * 2 ** (n - 1)``. There is no ceiling on
the delay, callers cap the total through ``max_retries``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from switchboard.constants import RETRY_BASE_DELAY

from .errors import InvalidDescriptor, OperationCancelled, UnsupportedTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NON_RETRYABLE = (InvalidDescriptor, UnsupportedTransport, OperationCancelled)


def default_retry_on(error: BaseException) -> bool:
    return not isinstance(error, _NON_RETRYABLE)


async def run_cancellable(
    awaitable: Awaitable[T], cancel: Optional[asyncio.Event]
) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first.

    On cancellation the inner task is cancelled and awaited, so whatever it
    acquired gets released, then OperationCancelled is raised.
    """
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelled("Operation cancelled")

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise
    if task.done():
        waiter.cancel()
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Cancelled operation raised while unwinding", exc_info=True)
    raise OperationCancelled("Operation cancelled")


class RetryPolicy:
    def __init__(
        self,
        base_delay: float = RETRY_BASE_DELAY,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.base_delay = base_delay
        self._sleep = sleep
        self._logger = log or logger

    def delay_for(self, attempt: int) -> float:
        """Delay before ``attempt`` (1-based retries; attempt 0 has none)."""
        if attempt <= 0:
            return 0.0
        return self.base_delay * (2 ** (attempt - 1))

    async def run(
        self,
        operation: Callable[[int], Awaitable[T]],
        max_retries: int,
        *,
        cancel: Optional[asyncio.Event] = None,
        retry_on: Callable[[BaseException], bool] = default_retry_on,
        label: str = "operation",
    ) -> T:
        """Run ``operation(attempt)`` up to ``max_retries + 1`` times.

        The final failure is re-raised unchanged. Cancellation always wins over
        retrying and surfaces as OperationCancelled.
        """
        attempt = 0
        while True:
            try:
                return await run_cancellable(operation(attempt), cancel)
            except OperationCancelled:
                self._logger.info("%s cancelled on attempt %d", label, attempt + 1)
                raise
            except Exception as e:
                if attempt >= max_retries or not retry_on(e):
                    self._logger.error(
                        "%s failed on attempt %d/%d: %s",
                        label,
                        attempt + 1,
                        max_retries + 1,
                        e,
                        extra={"attempt": attempt + 1},
                    )
                    raise

                attempt += 1
                delay = self.delay_for(attempt)
                self._logger.warning(
                    "%s attempt %d/%d failed: %s. Retrying in %.3fs",
                    label,
                    attempt,
                    max_retries + 1,
                    e,
                    delay,
                    extra={"attempt": attempt, "delay": delay},
                )
                try:
                    await run_cancellable(self._sleep(delay), cancel)
                except OperationCancelled:
                    self._logger.info(
                        "%s cancelled while waiting to retry", label
                    )
                    raise
