"""
Tests for async_utils module.

Covers run_sync and the async sync entry point built on it.
"""

import threading

from tbd_core.core.async_utils import run_sync


def _sync_add(a: int, b: int) -> int:
    """Simple sync function for testing."""
    return a + b


async def test_run_sync_calls_function():
    """run_sync delegates to asyncio.to_thread with correct args."""
    result = await run_sync(_sync_add, 3, 4)
    assert result == 7


async def test_run_sync_passes_kwargs():
    """run_sync forwards keyword arguments."""

    def _kw_func(*, name: str) -> str:
        return f"hello {name}"

    result = await run_sync(_kw_func, name="world")
    assert result == "hello world"


async def test_run_sync_uses_worker_thread():
    """The function does not run on the event loop's thread."""
    caller = threading.get_ident()
    worker = await run_sync(threading.get_ident)
    assert worker != caller


async def test_run_sync_propagates_exceptions():
    """Exceptions raised in the worker reach the awaiting caller."""

    def _boom():
        raise RuntimeError("boom")

    try:
        await run_sync(_boom)
    except RuntimeError as exc:
        assert str(exc) == "boom"
    else:
        raise AssertionError("expected RuntimeError")
