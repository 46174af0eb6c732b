"""Helpers shared by the store facade and the sync protocol."""

from .async_utils import run_sync

__all__ = ["run_sync"]
