"""Realm lifecycle orchestration.

Starting a realm walks a fixed sequence and never spawns the worker unless
every earlier stage succeeded::

    connect -> provision dataset -> copy/patch worldserver.conf -> spawn

Stopping is either graceful (a shutdown command on the worker's control
channel, then wait for exit) or forced (terminate the OS process). Stopping a
realm that is not running is a no-op.
"""
from __future__ import annotations

import asyncio
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import astuple, dataclass
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import delete, insert

from .cache import InstanceCache, RealmManager
from .conffile import generate_if_missing, patch_value, read_typed
from .config import AppConfig
from .database import Connection
from .datasets import Dataset, DatasetCache
from .errors import ConfigIntegrityError, RealmctlError, UserInputError
from .ids import RealmIdAllocator
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .modules import ModuleIndex
from .realm import (
    REALM_CONFIG_DESCRIPTION,
    REALM_CONFIG_TITLE,
    REALM_FIELDS,
    REALM_NAME_FIELD,
    Realm,
    RealmConfig,
)
from .schema import REALMLIST_COLUMNS, realmlist
from .state import StateRegistry
from .templates import TemplateEngine

CONF_DIST_SUFFIX = ".conf.dist"
SKIPPED_DIST_SUFFIX = "authserver.conf.dist"
SHUTDOWN_COMMAND = "server shutdown force {delay}"
WORKER_TOGGLES: tuple[tuple[str, int], ...] = (
    ("Updates.EnableDatabases", 0),
    ("Updates.AutoSetup", 0),
    ("Updates.Redundancy", 0),
    ("HotSwap.Enabled", 1),
    ("HotSwap.EnableReCompiler", 0),
)


@dataclass(frozen=True)
class RealmlistRecord:
    """One row of the auth server's ``realmlist`` table."""

    id: int
    name: str
    address: str
    local_address: str
    local_subnet_mask: str
    port: int
    icon: int
    flag: int
    timezone: int
    allowed_security_level: int
    population: int
    game_build: int

    def as_row(self) -> dict[str, object]:
        """Return the record keyed by ``realmlist`` column names."""
        return dict(zip(REALMLIST_COLUMNS, astuple(self), strict=True))

    def to_sql(self) -> str:
        """Render the positional ``INSERT INTO realmlist`` statement."""
        rendered = ",".join(_sql_literal(value) for value in astuple(self))
        return f"INSERT INTO realmlist VALUES ({rendered});"


class RealmLifecycle:
    """Create, start, stop and talk to realms."""

    def __init__(
        self,
        *,
        config: AppConfig,
        index: ModuleIndex,
        cache: InstanceCache,
        ids: RealmIdAllocator,
        datasets: DatasetCache,
        auth: Connection,
        registry: StateRegistry,
        templates: TemplateEngine,
        logger: StructuredLogger,
        locks: LockManager,
    ) -> None:
        self.config = config
        self.index = index
        self.cache = cache
        self.ids = ids
        self.datasets = datasets
        self.auth = auth
        self.registry = registry
        self.templates = templates
        self.logger = logger
        self.locks = locks

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def manager(self, realm: Realm) -> RealmManager:
        """Return the cached process/connection handles for *realm*."""
        return self.cache.manager_for(realm.full_name)

    def is_running(self, realm: Realm) -> bool:
        """Return whether the realm's worker process is running."""
        return self.manager(realm).worldserver.is_running()

    def dataset_for(self, realm: Realm, realm_config: RealmConfig | None = None) -> Dataset:
        """Return the dataset referenced by the realm's configuration."""
        realm_config = realm_config or realm.read_config()
        module, name = self.index.get_dataset(realm_config.dataset)
        return self.datasets.get(module, name)

    def build_dir(self, dataset: Dataset, build_type: str) -> Path:
        """Return the directory holding the worker binary for *build_type*."""
        return dataset.core_dir() / build_type

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def initialize(self, realm: Realm) -> Realm:
        """Seed the realm's config files without overwriting existing ones."""
        realm.paths.root.mkdir(parents=True, exist_ok=True)
        generate_if_missing(
            realm.paths.config,
            REALM_FIELDS,
            templates=self.templates,
            title=REALM_CONFIG_TITLE,
            description=REALM_CONFIG_DESCRIPTION,
            values={REALM_NAME_FIELD: realm.name},
        )
        if not read_typed(realm.paths.config, REALM_NAME_FIELD, str, ""):
            patch_value(realm.paths.config, REALM_NAME_FIELD, realm.name)

        dataset = self.dataset_for(realm)
        dist = self.build_dir(dataset, self.config.realms.default_build_type) / (
            realm.paths.worldserver_conf_dist.name
        )
        if not dist.is_file():
            raise ConfigIntegrityError(
                f"Missing {dist.name} for build {self.config.realms.default_build_type} "
                f"at {dist.parent}."
            )
        shutil.copyfile(dist, realm.paths.worldserver_conf_dist)
        if not realm.paths.worldserver_conf.exists():
            shutil.copyfile(realm.paths.worldserver_conf_dist, realm.paths.worldserver_conf)
        return realm

    def create(self, module_id: str, name: str, display_name: str | None = None) -> Realm:
        """Create and initialise a new realm under *module_id*."""
        module = self.index.get_module(module_id)
        self.index.assert_unused(module, name)
        realm = Realm(module, name)
        with self.logger.operation(
            "create realm",
            args={"module": module_id, "name": name, "display_name": display_name},
            target={"kind": "realm", "name": realm.full_name},
        ) as op, self.locks.mutate_realms([realm.full_name]) as bundle:
            op.set_lock_wait_ms(bundle.wait_ms)
            self.index.assert_unused(module, name)
            created_root = not realm.paths.root.exists()
            try:
                self.initialize(realm)
                patch_value(realm.paths.config, REALM_NAME_FIELD, display_name or name)
            except (RealmctlError, OSError):
                if created_root:
                    shutil.rmtree(realm.paths.root, ignore_errors=True)
                raise
            op.add_step("config.initialize", detail=str(realm.paths.config))
            self.registry.update_realm(
                realm.full_name, {"status": "configured", "created_at": _now()}
            )
            op.add_step("registry.update")
            op.success(f"Created realm {realm.full_name}.", changed=1)
        return realm

    def copy_worker_configs(self, realm: Realm, build_dir: Path) -> list[str]:
        """Refresh ``*.conf.dist`` templates and seed missing ``*.conf`` files."""
        if not build_dir.is_dir():
            raise ConfigIntegrityError(f"Build directory {build_dir} does not exist.")
        copied: list[str] = []
        for source in sorted(build_dir.iterdir()):
            if not source.is_file() or not source.name.endswith(CONF_DIST_SUFFIX):
                continue
            if source.name.endswith(SKIPPED_DIST_SUFFIX):
                continue
            shutil.copyfile(source, realm.paths.root / source.name)
            target = realm.paths.root / source.name[: -len(".dist")]
            if not target.exists():
                shutil.copyfile(source, target)
            copied.append(source.name)
        if not realm.paths.worldserver_conf.exists():
            raise ConfigIntegrityError(
                f"{realm.paths.worldserver_conf} is missing after copying templates "
                f"from {build_dir}."
            )
        return copied

    def patch_worker_config(
        self,
        realm: Realm,
        dataset: Dataset,
        *,
        realm_config: RealmConfig,
        realm_id: int,
    ) -> Mapping[str, object]:
        """Point ``worldserver.conf`` at this realm's databases, port and ID."""
        databases = self.config.databases
        values: dict[str, object] = {
            "LoginDatabaseInfo": databases.auth.connection_string(),
            "CharacterDatabaseInfo": self.manager(realm).characters.settings.connection_string(),
            "WorldDatabaseInfo": dataset.world.settings.connection_string(),
            "MySQLExecutable": self.mysql_executable(),
            "WorldServerPort": realm_config.port,
            "RealmID": realm_id,
            "DataDir": str(dataset.path.resolve()),
        }
        values.update(WORKER_TOGGLES)
        for key, value in values.items():
            patch_value(realm.paths.worldserver_conf, key, value)
        return values

    def mysql_executable(self) -> str:
        """Return the MySQL client path handed to the worker."""
        if self.config.mysql_executable:
            return self.config.mysql_executable
        return str((self.config.install_root / "mysql" / "bin" / "mysql").resolve())

    # ------------------------------------------------------------------
    # Runtime
    # ------------------------------------------------------------------
    async def connect(self, realm: Realm, dataset: Dataset | None = None) -> list[str]:
        """Open the realm's databases and install the characters schema if empty."""
        dataset = dataset or self.dataset_for(realm)
        characters = self.manager(realm).characters
        await characters.connect()
        await dataset.connect()
        applied: list[str] = []
        if not await characters.table_names():
            for sql_file in sorted((dataset.core_dir() / "sql" / "characters").glob("*.sql")):
                await characters.apply_sql_file(sql_file)
                applied.append(sql_file.name)
        return applied

    async def start(self, realm: Realm, build_type: str | None = None) -> RealmManager:
        """Provision, configure and launch the realm's worker process."""
        build_type = build_type or self.config.realms.default_build_type
        manager = self.manager(realm)
        async with manager.lock:
            if manager.worldserver.is_running():
                raise UserInputError(f"Realm {realm.full_name} is already running.")
            with self.logger.operation(
                "start realm",
                args={"build_type": build_type},
                target={"kind": "realm", "name": realm.full_name},
            ) as op:
                try:
                    await self._start_locked(realm, manager, build_type, op)
                except RealmctlError as exc:
                    await self._record(realm, status="failed", last_error=str(exc))
                    op.error(str(exc), rc=int(exc.exit_code))
                    raise
                await self._record(
                    realm,
                    status="running",
                    pid=manager.worldserver.pid,
                    last_started_at=_now(),
                    last_error=None,
                )
                op.success(f"Started realm {realm.full_name}.", changed=1)
        return manager

    async def _start_locked(
        self,
        realm: Realm,
        manager: RealmManager,
        build_type: str,
        op: OperationScope,
    ) -> None:
        await self._record(realm, status="connecting", last_build_type=build_type)
        realm_config = realm.read_config()
        dataset = self.dataset_for(realm, realm_config)
        dataset.initialize()
        applied = await self.connect(realm, dataset)
        op.add_step("connect", detail=", ".join(applied) or None)

        await self._record(realm, status="provisioning")
        applied = await dataset.setup_databases("BOTH", self.auth)
        op.add_step("dataset.databases", detail=", ".join(applied))
        dataset.setup_client_data()
        op.add_step("dataset.client_data", detail=str(dataset.path))
        dataset.write_modules_txt(module.id for module in self.index.modules())
        op.add_step("dataset.modules")

        await self._record(realm, status="patching")
        build_dir = self.build_dir(dataset, build_type)
        copied = self.copy_worker_configs(realm, build_dir)
        op.add_step("config.copy", detail=", ".join(copied))
        realm_id = await asyncio.to_thread(self.ids.get_id, realm)
        self.patch_worker_config(realm, dataset, realm_config=realm_config, realm_id=realm_id)
        op.add_step("config.patch", detail=f"RealmID={realm_id}")

        await self._record(realm, status="launching")
        executable = build_dir / self.config.realms.worker_binary
        conf = realm.paths.worldserver_conf.resolve()
        await manager.worldserver.start_in(realm.paths.root, executable, [f"-c{conf}"])
        op.add_step("process.spawn", detail=f"pid={manager.worldserver.pid}")

    async def stop(self, realm: Realm, *, force: bool = False, delay: int = 0) -> bool:
        """Stop the realm's worker; return ``False`` when it was not running."""
        manager = self.manager(realm)
        process = manager.worldserver
        if not process.is_running():
            return False
        async with manager.lock:
            if not process.is_running():
                return False
            with self.logger.operation(
                "stop realm",
                args={"force": force, "delay": delay},
                target={"kind": "realm", "name": realm.full_name},
            ) as op:
                await self._record(realm, status="stopping")
                if force:
                    returncode = await process.terminate()
                    op.add_step("process.terminate", detail=f"rc={returncode}")
                else:
                    process.mark_stopping()
                    await process.send(SHUTDOWN_COMMAND.format(delay=delay))
                    op.add_step("process.shutdown", detail=f"delay={delay}")
                    returncode = await process.wait()
                    op.add_step("process.exit", detail=f"rc={returncode}")
                await self._record(
                    realm,
                    status="stopped",
                    pid=None,
                    last_stopped_at=_now(),
                    last_returncode=returncode,
                )
                op.success(f"Stopped realm {realm.full_name}.", changed=1)
        return True

    async def send_command(self, realm: Realm, text: str, *, newline: bool = True) -> bool:
        """Forward *text* to the worker; silently skip realms that are not running."""
        return await self.manager(realm).worldserver.send(text, newline=newline)

    # ------------------------------------------------------------------
    # Realm list
    # ------------------------------------------------------------------
    def realmlist_record(self, realm: Realm) -> RealmlistRecord:
        """Describe the realm as a ``realmlist`` row."""
        realm_config = realm.read_config()
        dataset = self.dataset_for(realm, realm_config)
        return RealmlistRecord(
            id=self.ids.get_id(realm),
            name=realm_config.name,
            address=realm_config.public_address,
            local_address=realm_config.local_address,
            local_subnet_mask=realm_config.local_subnet_mask,
            port=realm_config.port,
            icon=realm_config.type,
            flag=realm_config.flags,
            timezone=realm_config.timezone,
            allowed_security_level=realm_config.required_security_level,
            population=0,
            game_build=dataset.read_config().game_build,
        )

    def realmlist_sql(self, realm: Realm) -> str:
        """Return the ``INSERT INTO realmlist`` statement for *realm*."""
        return self.realmlist_record(realm).to_sql()

    async def sync_realmlist(self, realms: Iterable[Realm]) -> list[RealmlistRecord]:
        """Replace the auth database's realm list with one row per realm."""
        records = [self.realmlist_record(realm) for realm in realms]
        await self.auth.create_all(realmlist.metadata)
        await self.auth.execute(delete(realmlist))
        if records:
            await self.auth.execute(insert(realmlist), [record.as_row() for record in records])
        return records

    # ------------------------------------------------------------------
    async def _record(self, realm: Realm, **updates: object) -> None:
        # The global lock is a blocking file lock; wait for it off the event loop.
        await asyncio.to_thread(self._write_record, realm.full_name, updates)

    def _write_record(self, full_name: str, updates: dict[str, object]) -> None:
        with self.locks.global_lock():
            self.registry.update_realm(full_name, updates)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _sql_literal(value: object) -> str:
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace("'", "''")
        return f"'{escaped}'"
    return str(value)


__all__ = ["RealmLifecycle", "RealmlistRecord", "SHUTDOWN_COMMAND", "WORKER_TOGGLES"]
