"""Realm lifecycle tests with SQLite databases and a stand-in worldserver."""
from __future__ import annotations

import asyncio
import json
import threading
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import pytest
from sqlalchemy import select

from realmctl.conffile import patch_value, read_typed, read_value
from realmctl.database import DatabaseError
from realmctl.datasets import Dataset
from realmctl.errors import ConfigIntegrityError, UserInputError
from realmctl.modules import UnknownIdentifierError
from realmctl.process import ProcessState
from realmctl.runtime import RuntimeContext
from realmctl.schema import realmlist

if TYPE_CHECKING:
    from conftest import Fleet

T = TypeVar("T")


def _run(runtime: RuntimeContext, factory: Callable[[], Awaitable[T]]) -> T:
    async def runner() -> T:
        try:
            return await factory()
        finally:
            for manager in runtime.cache.running():
                await manager.worldserver.terminate()
            await runtime.aclose()

    return asyncio.run(runner())


def _steps(fleet: Fleet, command: str) -> list[list[str]]:
    log = fleet.root / "logs" / "operations.jsonl"
    records = [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]
    return [
        [step["name"] for step in record["steps"]]
        for record in records
        if record["command"] == command
    ]


async def _wait_for(path: Path, text: str) -> None:
    for _ in range(200):
        if path.exists() and text in path.read_text(encoding="utf-8"):
            return
        await asyncio.sleep(0.05)
    raise AssertionError(f"{text!r} never appeared in {path}")


def test_create_realm_writes_config_files(runtime: RuntimeContext, fleet: Fleet) -> None:
    """Creating a realm seeds realm.conf and the worldserver configuration."""
    realm = runtime.lifecycle.create("default", "alpha", "Alpha Realm")

    assert realm.full_name == "default.alpha"
    assert read_typed(realm.paths.config, "Realm.Name", str) == "Alpha Realm"
    assert read_typed(realm.paths.config, "Realm.Port", int) == 8085
    assert realm.paths.worldserver_conf.exists()
    assert realm.paths.worldserver_conf_dist.exists()
    assert runtime.registry.get_realm("default.alpha")["status"] == "configured"  # type: ignore[index]
    assert _steps(fleet, "create realm") == [["config.initialize", "registry.update"]]


def test_create_realm_defaults_display_name(runtime: RuntimeContext) -> None:
    """Without a display name the realm's directory name is shown."""
    realm = runtime.lifecycle.create("default", "beta")

    assert realm.read_config().name == "beta"


def test_create_duplicate_or_unknown_module_fails(runtime: RuntimeContext) -> None:
    """Duplicates and unknown modules are user errors."""
    runtime.lifecycle.create("default", "alpha")

    with pytest.raises(UserInputError, match="already exists"):
        runtime.lifecycle.create("default", "alpha")
    with pytest.raises(UnknownIdentifierError):
        runtime.lifecycle.create("missing", "alpha")


def test_create_without_build_leaves_no_directory(runtime: RuntimeContext, fleet: Fleet) -> None:
    """A failed initialisation removes the half-created realm directory."""
    (fleet.build_dir / "worldserver.conf.dist").unlink()

    with pytest.raises(ConfigIntegrityError, match=r"worldserver\.conf\.dist"):
        runtime.lifecycle.create("default", "alpha")

    assert not (fleet.modules_root / "default" / "realms" / "alpha").exists()


def test_initialize_keeps_operator_edits(runtime: RuntimeContext) -> None:
    """Re-initialising refreshes the .dist template but not the live config."""
    realm = runtime.lifecycle.create("default", "alpha")
    patch_value(realm.paths.worldserver_conf, "WorldServerPort", 9999)
    realm.paths.worldserver_conf_dist.write_text("stale\n", encoding="utf-8")

    runtime.lifecycle.initialize(realm)

    assert read_value(realm.paths.worldserver_conf, "WorldServerPort") == "9999"
    assert "LoginDatabaseInfo" in realm.paths.worldserver_conf_dist.read_text(encoding="utf-8")


@pytest.mark.mutation_timeout
def test_start_provisions_patches_and_spawns(runtime: RuntimeContext, fleet: Fleet) -> None:
    """Start connects, provisions, patches and launches, in that order."""
    realm = runtime.lifecycle.create("default", "alpha")
    patch_value(realm.paths.config, "Realm.Port", 8090)
    lifecycle = runtime.lifecycle

    async def scenario() -> dict[str, object]:
        manager = await lifecycle.start(realm)
        assert manager.worldserver.state is ProcessState.RUNNING
        assert lifecycle.is_running(realm)
        await _wait_for(realm.paths.root / "worker.args", "-c")
        characters = await manager.characters.table_names()
        dataset = lifecycle.dataset_for(realm)
        world = await dataset.world.table_names()
        auth = await runtime.auth.table_names()
        return {"characters": characters, "world": world, "auth": auth}

    tables = _run(runtime, scenario)

    assert tables["characters"] == ["characters"]
    assert tables["world"] == ["creature_template"]
    assert {"account", "account_access", "realmlist"} <= set(tables["auth"])  # type: ignore[arg-type]

    conf = realm.paths.worldserver_conf
    assert read_value(conf, "RealmID") == "1"
    assert read_value(conf, "WorldServerPort") == "8090"
    assert read_value(conf, "Updates.EnableDatabases") == "0"
    assert read_value(conf, "HotSwap.Enabled") == "1"
    assert read_value(conf, "HotSwap.EnableReCompiler") == "0"
    character_info = read_typed(conf, "CharacterDatabaseInfo", str)
    assert str(character_info).endswith(f"{fleet.db_dir / 'characters'}_default_alpha")
    data_dir = fleet.modules_root / "default" / "datasets" / "default"
    assert read_typed(conf, "DataDir", str) == str(data_dir.resolve())
    assert (realm.paths.root / "worker.args").read_text(encoding="utf-8") == f"-c{conf.resolve()}"

    assert (realm.paths.root / "extra.conf").exists()
    assert (realm.paths.root / "extra.conf.dist").exists()
    assert not (realm.paths.root / "authserver.conf.dist").exists()
    assert (data_dir / "modules.txt").read_text(encoding="utf-8") == "default\nextra\n"
    assert all((data_dir / name).is_dir() for name in ("dbc", "maps", "vmaps", "mmaps"))

    state = runtime.registry.get_realm("default.alpha")
    assert state is not None
    assert state["last_build_type"] == "RelWithDebInfo"
    assert state["status"] == "running"
    assert _steps(fleet, "start realm") == [
        [
            "connect",
            "dataset.databases",
            "dataset.client_data",
            "dataset.modules",
            "config.copy",
            "config.patch",
            "process.spawn",
        ]
    ]


def test_provisioning_failure_prevents_spawn(
    runtime: RuntimeContext,
    fleet: Fleet,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failure while provisioning aborts before any process is launched."""
    realm = runtime.lifecycle.create("default", "alpha")

    async def broken_setup(self: Dataset, kind: str, auth: object) -> list[str]:
        raise DatabaseError("world database unreachable")

    monkeypatch.setattr(Dataset, "setup_databases", broken_setup)

    with pytest.raises(DatabaseError, match="unreachable"):
        _run(runtime, lambda: runtime.lifecycle.start(realm))

    assert not runtime.lifecycle.is_running(realm)
    assert runtime.lifecycle.manager(realm).worldserver.state is ProcessState.NOT_STARTED
    assert not (realm.paths.root / "worker.args").exists()
    state = runtime.registry.get_realm("default.alpha")
    assert state is not None
    assert state["status"] == "failed"
    assert "unreachable" in state["last_error"]
    assert _steps(fleet, "start realm") == [["connect"]]


def test_missing_build_type_is_an_integrity_error(runtime: RuntimeContext) -> None:
    """Starting with a build that is not installed fails before spawning."""
    realm = runtime.lifecycle.create("default", "alpha")

    with pytest.raises(ConfigIntegrityError, match="Release"):
        _run(runtime, lambda: runtime.lifecycle.start(realm, "Release"))

    assert not runtime.lifecycle.is_running(realm)


@pytest.mark.mutation_timeout
def test_graceful_stop_sends_shutdown_and_waits(runtime: RuntimeContext) -> None:
    """A graceful stop asks the worker to shut down and waits for it."""
    realm = runtime.lifecycle.create("default", "alpha")
    lifecycle = runtime.lifecycle

    async def scenario() -> tuple[bool, bool, bool]:
        await lifecycle.start(realm)
        sent = await lifecycle.send_command(realm, "account onlinelist")
        stopped = await lifecycle.stop(realm, delay=5)
        again = await lifecycle.stop(realm)
        return sent, stopped, again

    sent, stopped, again = _run(runtime, scenario)

    assert (sent, stopped, again) == (True, True, False)
    received = (realm.paths.root / "worker.log").read_text(encoding="utf-8").splitlines()
    assert received == ["account onlinelist", "server shutdown force 5"]
    worker = lifecycle.manager(realm).worldserver
    assert worker.state is ProcessState.STOPPED
    assert worker.returncode == 0
    assert runtime.registry.get_realm("default.alpha")["status"] == "stopped"  # type: ignore[index]


@pytest.mark.mutation_timeout
def test_start_waits_for_the_global_lock_without_blocking_the_loop(runtime: RuntimeContext) -> None:
    """Another holder of the global lock delays a start but not the event loop."""
    realm = runtime.lifecycle.create("default", "alpha")
    lifecycle = runtime.lifecycle
    held = threading.Event()
    release = threading.Event()

    def hold_global_lock() -> None:
        with runtime.locks.global_lock():
            held.set()
            release.wait(5)

    holder = threading.Thread(target=hold_global_lock)
    holder.start()
    assert held.wait(5)

    async def scenario() -> tuple[float, bool]:
        starting = asyncio.create_task(lifecycle.start(realm))
        began = time.monotonic()
        for _ in range(10):
            await asyncio.sleep(0.01)
        ticked = time.monotonic() - began
        release.set()
        await starting
        return ticked, await lifecycle.stop(realm, force=True)

    try:
        ticked, stopped = _run(runtime, scenario)
    finally:
        release.set()
        holder.join()

    assert ticked < 1.0
    assert stopped is True
    assert runtime.registry.get_realm("default.alpha")["status"] == "stopped"  # type: ignore[index]


@pytest.mark.mutation_timeout
def test_forced_stop_terminates(runtime: RuntimeContext) -> None:
    """A forced stop terminates the process without a shutdown command."""
    realm = runtime.lifecycle.create("default", "alpha")
    lifecycle = runtime.lifecycle

    async def scenario() -> bool:
        await lifecycle.start(realm)
        return await lifecycle.stop(realm, force=True)

    assert _run(runtime, scenario) is True
    assert not (realm.paths.root / "worker.log").exists()
    assert lifecycle.manager(realm).worldserver.state is ProcessState.STOPPED


def test_stop_and_send_on_idle_realm_are_noops(runtime: RuntimeContext) -> None:
    """Idle realms ignore stop and send requests without raising."""
    realm = runtime.lifecycle.create("default", "alpha")

    async def scenario() -> tuple[bool, bool]:
        return (
            await runtime.lifecycle.stop(realm),
            await runtime.lifecycle.send_command(realm, "hello"),
        )

    assert _run(runtime, scenario) == (False, False)


def test_sync_realmlist_writes_one_row_per_realm(runtime: RuntimeContext) -> None:
    """The auth realm list mirrors the realms on disk, flags included."""
    alpha = runtime.lifecycle.create("default", "alpha", "Alpha")
    runtime.lifecycle.create("extra", "beta", "Beta")
    patch_value(alpha.paths.config, "Realm.Offline", True)
    patch_value(alpha.paths.config, "Realm.Recommended", True)
    lifecycle = runtime.lifecycle

    async def scenario() -> list[dict[str, object]]:
        await lifecycle.sync_realmlist(runtime.index.all_realms())
        # A second sync replaces rather than duplicates.
        await lifecycle.sync_realmlist(runtime.index.all_realms())
        return await runtime.auth.fetch_all(select(realmlist).order_by(realmlist.c.id))

    rows = _run(runtime, scenario)

    assert [(row["id"], row["name"], row["flag"], row["gamebuild"]) for row in rows] == [
        (1, "Alpha", 0x22, 12340),
        (2, "Beta", 0, 12340),
    ]
    assert lifecycle.realmlist_sql(alpha).startswith("INSERT INTO realmlist VALUES (1,'Alpha',")
