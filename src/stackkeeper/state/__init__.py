"""State management module."""

from .store import FileStateStore, StateStore, split_key

__all__ = [
    "FileStateStore",
    "StateStore",
    "split_key",
]
