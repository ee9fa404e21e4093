"""Numeric realm ID allocation.

Each realm stores its ID as a decimal number in its ``realm_id`` marker file.
A realm without a marker receives the smallest positive integer no other
realm of the fleet currently uses; the marker is written before the ID is
handed out so the value stays stable for as long as the file exists.
"""
from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from .errors import ConfigIntegrityError
from .locking import LockManager
from .realm import Realm


class RealmIdError(ConfigIntegrityError):
    """Raised when a realm ID marker is unreadable or corrupt."""


@dataclass
class RealmIdAllocator:
    """Assign and persist fleet-unique realm IDs."""

    fleet: Callable[[], Iterable[Realm]]
    locks: LockManager | None = None
    _mutex: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def has_id(self, realm: Realm) -> bool:
        """Return whether *realm* already has a persisted ID."""
        return realm.paths.realm_id.exists()

    def get_id(self, realm: Realm) -> int:
        """Return the persisted ID of *realm*, allocating one when missing."""
        if self.has_id(realm):
            return _read_marker(realm)
        with self._mutex:
            if self.locks is None:
                return self._allocate(realm)
            with self.locks.id_allocation():
                return self._allocate(realm)

    def used_ids(self) -> set[int]:
        """Return the IDs currently assigned across the fleet."""
        return {_read_marker(realm) for realm in self.fleet() if self.has_id(realm)}

    def _allocate(self, realm: Realm) -> int:
        # Another caller may have allocated while we waited for the lock.
        if self.has_id(realm):
            return _read_marker(realm)
        used = self.used_ids()
        candidate = 1
        while candidate in used:
            candidate += 1
        marker = realm.paths.realm_id
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(f"{candidate}", encoding="utf-8")
        return candidate


def _read_marker(realm: Realm) -> int:
    marker = realm.paths.realm_id
    try:
        content = marker.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise RealmIdError(f"Cannot read realm ID marker {marker}: {exc}") from exc
    if not (content.isascii() and content.isdigit()) or int(content) < 1:
        raise RealmIdError(
            f"Realm ID marker {marker} for '{realm.full_name}' is corrupt: {content!r}."
        )
    return int(content)


__all__ = ["RealmIdAllocator", "RealmIdError"]
