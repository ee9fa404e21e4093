"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

from realmctl.config import AppConfig, load_config
from realmctl.runtime import RuntimeContext, build_runtime

FAKE_WORLDSERVER = textwrap.dedent(
    """\
    #!{python}
    import sys
    from pathlib import Path

    Path("worker.args").write_text("\\n".join(sys.argv[1:]), encoding="utf-8")
    for line in sys.stdin:
        with open("worker.log", "a", encoding="utf-8") as handle:
            handle.write(line)
        if line.startswith("server shutdown"):
            sys.exit(0)
    """
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class Fleet:
    """Paths of a throwaway realmctl installation."""

    root: Path
    config_file: Path
    modules_root: Path
    core_dir: Path
    build_dir: Path
    db_dir: Path

    def sqlite_path(self, name: str) -> Path:
        """Path of a SQLite database file created by the fleet."""
        return self.db_dir / name


@pytest.fixture()
def fleet(tmp_path: Path) -> Fleet:
    """Create modules, a dataset, a fake core build and a config file."""
    modules_root = tmp_path / "modules"
    dataset_dir = modules_root / "default" / "datasets" / "default"
    dataset_dir.mkdir(parents=True)
    (dataset_dir / "dataset.conf").write_text(
        'Dataset.GameBuild = 12340\nDataset.EmulatorCore = "trinitycore"\n',
        encoding="utf-8",
    )
    (modules_root / "extra").mkdir()

    install_root = tmp_path / "install"
    core_dir = install_root / "core" / "trinitycore"
    build_dir = core_dir / "RelWithDebInfo"
    build_dir.mkdir(parents=True)
    worker = build_dir / "worldserver"
    worker.write_text(FAKE_WORLDSERVER.format(python=sys.executable), encoding="utf-8")
    worker.chmod(0o755)
    (build_dir / "worldserver.conf.dist").write_text(
        textwrap.dedent(
            """\
            # Worldserver configuration
            LoginDatabaseInfo = "127.0.0.1;3306;trinity;trinity;auth"
            WorldServerPort = 8085
            RealmID = 1
            DataDir = "."
            """
        ),
        encoding="utf-8",
    )
    (build_dir / "authserver.conf.dist").write_text("RealmServerPort = 3724\n", encoding="utf-8")
    (build_dir / "extra.conf.dist").write_text("Extra.Enabled = 1\n", encoding="utf-8")

    for kind, statement in (
        ("characters", "CREATE TABLE characters (guid INTEGER PRIMARY KEY, name TEXT);"),
        ("world", "CREATE TABLE creature_template (entry INTEGER PRIMARY KEY, name TEXT);"),
    ):
        sql_dir = core_dir / "sql" / kind
        sql_dir.mkdir(parents=True)
        (sql_dir / f"{kind}.sql").write_text(f"-- {kind} schema\n{statement}\n", encoding="utf-8")

    db_dir = tmp_path / "db"
    db_dir.mkdir()
    config_file = tmp_path / "config.yml"
    databases = "".join(
        f"  {label}:\n"
        f"    driver: sqlite+aiosqlite\n"
        f"    name: {db_dir / label}\n"
        for label in ("auth", "world", "characters")
    )
    config_file.write_text(
        f"install_root: {install_root}\n"
        f"modules_root: {modules_root}\n"
        f"state_dir: {tmp_path / 'state'}\n"
        f"logs_dir: {tmp_path / 'logs'}\n"
        f"runtime_dir: {tmp_path / 'run'}\n"
        f"templates_dir: {tmp_path / 'templates'}\n"
        f"lock_timeout: 2\n"
        f"databases:\n{databases}",
        encoding="utf-8",
    )
    return Fleet(
        root=tmp_path,
        config_file=config_file,
        modules_root=modules_root,
        core_dir=core_dir,
        build_dir=build_dir,
        db_dir=db_dir,
    )


@pytest.fixture()
def app_config(fleet: Fleet) -> AppConfig:
    """Configuration loaded from the fleet's config file."""
    return load_config(config_file=fleet.config_file, env={})


@pytest.fixture()
def runtime(app_config: AppConfig) -> RuntimeContext:
    """A fully wired runtime for the fleet."""
    return build_runtime(app_config)
