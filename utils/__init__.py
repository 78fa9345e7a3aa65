"""Shared helpers."""

from .locks import KeyedLocks

__all__ = ["KeyedLocks"]
