"""Git-native, offline-first entity store and sync engine."""

__version__ = "0.4.0"

from .api import TbdStore

__all__ = ["TbdStore", "__version__"]
