"""Instance cache tests."""
from __future__ import annotations

import asyncio
import threading

from realmctl.cache import InstanceCache
from realmctl.database import DatabaseSettings

SETTINGS = DatabaseSettings(
    driver="sqlite+aiosqlite",
    host="",
    port=0,
    user="",
    password="",
    name="/tmp/characters",
)


def test_same_name_returns_identical_handles() -> None:
    """Repeated lookups observe the same process and connection objects."""
    cache = InstanceCache(SETTINGS)

    first = cache.manager_for("default.alpha")
    second = cache.manager_for("default.alpha")

    assert first is second
    assert first.worldserver is second.worldserver
    assert first.characters is second.characters


def test_distinct_names_never_share_handles() -> None:
    """Different realms get independent handles and databases."""
    cache = InstanceCache(SETTINGS)

    alpha = cache.manager_for("default.alpha")
    beta = cache.manager_for("extra.alpha")

    assert alpha.worldserver is not beta.worldserver
    assert alpha.characters is not beta.characters
    assert alpha.characters.settings.name == "/tmp/characters_default_alpha"
    assert beta.characters.settings.name == "/tmp/characters_extra_alpha"
    assert {manager.full_name for manager in cache.managers()} == {"default.alpha", "extra.alpha"}


def test_concurrent_lookups_create_one_manager() -> None:
    """Threads racing on a new name all receive the same manager."""
    cache = InstanceCache(SETTINGS)
    seen: list[object] = []
    barrier = threading.Barrier(8)

    def lookup() -> None:
        barrier.wait()
        seen.append(cache.manager_for("default.alpha"))

    threads = [threading.Thread(target=lookup) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len({id(manager) for manager in seen}) == 1
    assert len(cache.managers()) == 1


def test_running_is_empty_until_a_worker_starts() -> None:
    """No manager reports running before its process is spawned."""
    cache = InstanceCache(SETTINGS)
    cache.manager_for("default.alpha")

    assert cache.running() == []
    asyncio.run(cache.aclose())
