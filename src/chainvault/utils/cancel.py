"""Cancellation tokens for network operations.

A token is a plain ``asyncio.Event``: whoever triggered the operation sets it
to abort. In-flight requests are cancelled and OperationCancelled is raised,
so no partial state is committed by the caller.
"""

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Optional, TypeVar

from chainvault.errors import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

CancelToken = asyncio.Event


def raise_if_cancelled(cancel: Optional[CancelToken]) -> None:
    """Raise OperationCancelled if the token is already set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("Operation cancelled")


async def run_cancellable(awaitable: Awaitable[T], cancel: Optional[CancelToken] = None) -> T:
    """Await *awaitable*, aborting it as soon as *cancel* is set.

    Raises:
        OperationCancelled: If the token fired before the awaitable finished
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
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise

    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    logger.debug("In-flight operation aborted by cancellation token")
    raise OperationCancelled("Operation cancelled")


async def sleep_cancellable(delay: float, cancel: Optional[CancelToken] = None) -> None:
    """Sleep for *delay* seconds unless the token fires first."""
    if cancel is None:
        await asyncio.sleep(delay)
        return

    raise_if_cancelled(cancel)
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise OperationCancelled("Operation cancelled")
