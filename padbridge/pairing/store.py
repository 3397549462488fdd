"""Pairing allow-store: sender ids approved out of band for a channel."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Protocol

from loguru import logger

from padbridge.channels.normalize import normalize_allow_entry
from padbridge.utils.atomic_io import AtomicJsonFile


class AllowStore(Protocol):
    async def read_allow_from(self, channel: str) -> list[str]: ...


class MemoryAllowStore:
    """In-process store; handy for tests and single-run setups."""

    def __init__(self, entries: dict[str, list[str]] | None = None) -> None:
        self._entries = {k: [normalize_allow_entry(v) for v in vs] for k, vs in (entries or {}).items()}

    async def read_allow_from(self, channel: str) -> list[str]:
        return list(self._entries.get(channel, []))

    async def approve(self, channel: str, sender_id: str) -> bool:
        entry = normalize_allow_entry(sender_id)
        current = self._entries.setdefault(channel, [])
        if not entry or entry in current:
            return False
        current.append(entry)
        return True

    async def revoke(self, channel: str, sender_id: str) -> bool:
        entry = normalize_allow_entry(sender_id)
        current = self._entries.get(channel, [])
        if entry not in current:
            return False
        current.remove(entry)
        return True


class JsonAllowStore:
    """Allow-store persisted as ``{channel: [ids]}`` in a JSON file."""

    def __init__(self, path: Path) -> None:
        self._file = AtomicJsonFile(path)

    @property
    def path(self) -> Path:
        return self._file.path

    def _load(self) -> dict[str, list[str]]:
        data = self._file.read(default={})
        if not isinstance(data, dict):
            raise ValueError(f"allow-store {self.path} is not a JSON object")
        return {str(k): [str(v) for v in vs] for k, vs in data.items() if isinstance(vs, list)}

    async def read_allow_from(self, channel: str) -> list[str]:
        data = await asyncio.to_thread(self._load)
        return [normalize_allow_entry(v) for v in data.get(channel, [])]

    async def approve(self, channel: str, sender_id: str) -> bool:
        """Add *sender_id*; ``False`` if it was already approved."""
        entry = normalize_allow_entry(sender_id)
        if not entry:
            raise ValueError("sender id is required")
        async with self._file.lock:
            data = self._load()
            current = [normalize_allow_entry(v) for v in data.get(channel, [])]
            if entry in current:
                return False
            data[channel] = current + [entry]
            self._file.write(data)
        logger.info(f"Pairing approved: {channel}:{entry}")
        return True

    async def revoke(self, channel: str, sender_id: str) -> bool:
        """Remove *sender_id*; ``False`` if it was not approved."""
        entry = normalize_allow_entry(sender_id)
        async with self._file.lock:
            data = self._load()
            current = [normalize_allow_entry(v) for v in data.get(channel, [])]
            if entry not in current:
                return False
            data[channel] = [v for v in current if v != entry]
            self._file.write(data)
        logger.info(f"Pairing revoked: {channel}:{entry}")
        return True


def default_allow_store_path(state_dir: Path) -> Path:
    return state_dir / "pairing" / "allow-from.json"
