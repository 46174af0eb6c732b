"""Async utilities for running the blocking sync protocol from async hosts."""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Git fetch/push are the only slow, blocking steps of a sync; agent
    runtimes that drive tbd from an event loop call through here.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        result = await run_sync(store.sync, SyncDirection.BOTH)
    """
    logger.debug("Dispatching %s to worker thread", getattr(func, "__name__", func))
    return await asyncio.to_thread(func, *args, **kwargs)
