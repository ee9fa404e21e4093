"""Datasets: the world content and schema a realm runs against.

Building datasets is outside realmctl's scope. This module only covers what
realm startup needs from one: its declared game build and emulator core, its
world database, schema setup for the auth and world databases, the client
data directories and the module manifest.
"""
from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .conffile import ConfField, generate_if_missing, load_fields
from .database import Connection, DatabaseSettings
from .errors import UserInputError
from .modules import ModuleEndpoint
from .schema import auth_metadata
from .templates import TemplateEngine

DATASET_CONFIG_NAME = "dataset.conf"
CLIENT_DATA_DIRS = ("dbc", "maps", "vmaps", "mmaps")
DATABASE_KINDS = ("AUTH", "WORLD", "BOTH")

DATASET_FIELDS: tuple[ConfField, ...] = (
    ConfField(
        "Dataset.GameBuild",
        12340,
        kind=int,
        description="Game client build this dataset targets",
        section="Dataset",
        examples=((12340, "3.3.5a"),),
    ),
    ConfField(
        "Dataset.EmulatorCore",
        "trinitycore",
        description="Emulator core whose binaries run realms using this dataset",
        section="Dataset",
        examples=(("trinitycore", ""),),
    ),
)


@dataclass(frozen=True)
class DatasetConfig:
    """Typed view of ``dataset.conf``."""

    game_build: int
    emulator_core: str


class Dataset:
    """A dataset directory and its world database."""

    def __init__(
        self,
        module: ModuleEndpoint,
        name: str,
        *,
        world: DatabaseSettings,
        install_root: Path,
        templates: TemplateEngine,
    ) -> None:
        self.module = module
        self.name = name
        self.full_name = f"{module.id}.{name}"
        self.path = module.datasets_dir / name
        self.config_path = self.path / DATASET_CONFIG_NAME
        self.world = Connection(world.for_suffix(self.full_name), f"world ({self.full_name})")
        self._install_root = install_root
        self._templates = templates
        self._provision_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Dataset({self.full_name!r})"

    def initialize(self) -> bool:
        """Ensure ``dataset.conf`` exists with every key present."""
        self.path.mkdir(parents=True, exist_ok=True)
        return generate_if_missing(
            self.config_path,
            DATASET_FIELDS,
            templates=self._templates,
            title="Dataset configuration",
            description="Configuration for a dataset used by one or more realms.",
        )

    def read_config(self) -> DatasetConfig:
        """Load ``dataset.conf``."""
        values = load_fields(self.config_path, DATASET_FIELDS)
        return DatasetConfig(
            game_build=int(values["Dataset.GameBuild"]),  # type: ignore[call-overload]
            emulator_core=str(values["Dataset.EmulatorCore"]),
        )

    def core_dir(self) -> Path:
        """Directory holding the emulator core builds used by this dataset."""
        return self._install_root / "core" / self.read_config().emulator_core

    async def connect(self) -> None:
        """Open the world database connection."""
        await self.world.connect()

    async def setup_databases(self, kind: str, auth: Connection) -> list[str]:
        """Ensure the auth and/or world schema exist; return what was applied."""
        normalized = kind.upper()
        if normalized not in DATABASE_KINDS:
            raise UserInputError(
                f"Unknown database kind '{kind}'. Allowed: {', '.join(DATABASE_KINDS)}."
            )
        applied: list[str] = []
        if normalized in ("AUTH", "BOTH"):
            await auth.create_all(auth_metadata)
            applied.append("auth")
        if normalized in ("WORLD", "BOTH"):
            # Realms sharing this dataset provision it one at a time.
            async with self._provision_lock:
                if not await self.world.table_names():
                    for sql_file in sorted((self.core_dir() / "sql" / "world").glob("*.sql")):
                        await self.world.apply_sql_file(sql_file)
                        applied.append(f"world:{sql_file.name}")
        return applied

    def setup_client_data(self) -> Path:
        """Ensure the client data directories exist under the dataset."""
        for name in CLIENT_DATA_DIRS:
            (self.path / name).mkdir(parents=True, exist_ok=True)
        return self.path

    def write_modules_txt(self, module_ids: Iterable[str]) -> Path:
        """Write the manifest of modules built into this dataset."""
        manifest = self.path / "modules.txt"
        manifest.write_text("".join(f"{module_id}\n" for module_id in module_ids), encoding="utf-8")
        return manifest


class DatasetCache:
    """Share one :class:`Dataset` (and world connection) per dataset name."""

    def __init__(
        self,
        *,
        world: DatabaseSettings,
        install_root: Path,
        templates: TemplateEngine,
    ) -> None:
        self._world = world
        self._install_root = install_root
        self._templates = templates
        self._datasets: dict[str, Dataset] = {}
        self._mutex = threading.Lock()

    def get(self, module: ModuleEndpoint, name: str) -> Dataset:
        """Return the dataset *name* of *module*."""
        key = f"{module.id}.{name}"
        with self._mutex:
            dataset = self._datasets.get(key)
            if dataset is None:
                dataset = Dataset(
                    module,
                    name,
                    world=self._world,
                    install_root=self._install_root,
                    templates=self._templates,
                )
                self._datasets[key] = dataset
            return dataset

    async def aclose(self) -> None:
        """Dispose of every world connection."""
        with self._mutex:
            datasets = list(self._datasets.values())
        for dataset in datasets:
            await dataset.world.close()


__all__ = ["DATASET_FIELDS", "Dataset", "DatasetCache", "DatasetConfig"]
