"""Pairing allow-store implementations."""

from padbridge.pairing.store import AllowStore, JsonAllowStore, MemoryAllowStore

__all__ = ["AllowStore", "JsonAllowStore", "MemoryAllowStore"]
