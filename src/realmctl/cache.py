"""Process-wide registry of per-realm database and process handles."""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field

from .database import Connection, DatabaseSettings
from .process import WorkerProcess


@dataclass
class RealmManager:
    """The one characters connection and worker process owned by a realm."""

    full_name: str
    characters: Connection
    worldserver: WorkerProcess
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InstanceCache:
    """Create at most one :class:`RealmManager` per fully-qualified realm name.

    Entries are never evicted: every status query, command and start for a
    realm observes the same process handle for the lifetime of the cache.
    """

    def __init__(self, characters: DatabaseSettings) -> None:
        self._characters = characters
        self._managers: dict[str, RealmManager] = {}
        self._mutex = threading.Lock()

    def manager_for(self, full_name: str) -> RealmManager:
        """Return the manager for *full_name*, constructing it on first use."""
        with self._mutex:
            manager = self._managers.get(full_name)
            if manager is None:
                manager = RealmManager(
                    full_name=full_name,
                    characters=Connection(
                        self._characters.for_suffix(full_name),
                        f"characters ({full_name})",
                    ),
                    worldserver=WorkerProcess(f"realm/{full_name}"),
                )
                self._managers[full_name] = manager
            return manager

    def managers(self) -> list[RealmManager]:
        """Return a snapshot of every manager created so far."""
        with self._mutex:
            return list(self._managers.values())

    def running(self) -> list[RealmManager]:
        """Return the managers whose worker process is currently running."""
        return [manager for manager in self.managers() if manager.worldserver.is_running()]

    async def aclose(self) -> None:
        """Dispose of every database engine held by the cache."""
        for manager in self.managers():
            await manager.characters.close()


__all__ = ["InstanceCache", "RealmManager"]
