"""Configuration loader for realmctl.

Configuration is assembled from four layers, later layers winning:

1. Built-in defaults (:data:`DEFAULTS`).
2. The YAML file at ``/etc/realmctl/config.yml``, ``--config-file`` or
   ``$REALMCTL_CONFIG_FILE``.
3. ``REALMCTL_*`` environment variables. A double underscore descends into a
   section, so ``REALMCTL_DATABASES__AUTH__HOST=db.internal`` sets
   ``databases.auth.host``. Values go through ``yaml.safe_load`` and arrive
   as ints, floats or booleans where that is what they look like.
4. Overrides passed in by the CLI (``--lock-timeout``).

The merged tree is checked against the known keys and turned into frozen
dataclasses.
"""
from __future__ import annotations

import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

from .database import DatabaseSettings
from .errors import UserInputError

ENV_PREFIX = "REALMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"

BUILD_TYPES = ("Debug", "RelWithDebInfo", "Release", "MinSizeRel")
DATABASE_LABELS = ("auth", "world", "characters")
DATABASE_KEYS = frozenset({"driver", "host", "port", "user", "password", "name"})
REALMS_KEYS = frozenset(
    {"default_build_type", "default_realm", "auto_start", "build_types", "worker_binary"}
)


class ConfigError(UserInputError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DatabasesConfig:
    """Connection settings for the three logical databases."""

    auth: DatabaseSettings
    world: DatabaseSettings
    characters: DatabaseSettings

    def to_dict(self) -> dict[str, object]:
        """Return the settings with passwords redacted."""
        return {label: getattr(self, label).to_dict(redact=True) for label in DATABASE_LABELS}


@dataclass(frozen=True)
class RealmsConfig:
    """Fleet-wide realm defaults."""

    default_build_type: str = "RelWithDebInfo"
    default_realm: str | None = None
    auto_start: tuple[str, ...] = ()
    build_types: tuple[str, ...] = BUILD_TYPES
    worker_binary: str = "worldserver"

    def to_dict(self) -> dict[str, object]:
        return {
            "default_build_type": self.default_build_type,
            "default_realm": self.default_realm,
            "auto_start": list(self.auto_start),
            "build_types": list(self.build_types),
            "worker_binary": self.worker_binary,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for realmctl."""

    config_file: Path
    install_root: Path
    modules_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    mysql_executable: str
    databases: DatabasesConfig
    realms: RealmsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view, as printed by ``config show``."""
        paths = (
            "config_file",
            "install_root",
            "modules_root",
            "state_dir",
            "registry_dir",
            "logs_dir",
            "runtime_dir",
            "templates_dir",
        )
        data: dict[str, object] = {name: str(getattr(self, name)) for name in paths}
        data["lock_timeout"] = self.lock_timeout
        data["mysql_executable"] = self.mysql_executable
        data["databases"] = self.databases.to_dict()
        data["realms"] = self.realms.to_dict()
        return data


def _database_defaults(name: str) -> dict[str, object]:
    return {
        "driver": "mysql+aiomysql",
        "host": "127.0.0.1",
        "port": 3306,
        "user": "realmctl",
        "password": "realmctl",
        "name": name,
    }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/realmctl/config.yml",
    "install_root": "/opt/realmctl",
    "modules_root": "/srv/realmctl/modules",
    "state_dir": "/var/lib/realmctl",
    # None means <state_dir>/registry.
    "registry_dir": None,
    "logs_dir": "/var/log/realmctl",
    "runtime_dir": "/run/realmctl",
    "templates_dir": "/etc/realmctl/templates",
    "lock_timeout": 30.0,
    "mysql_executable": "",
    "databases": {label: _database_defaults(label) for label in DATABASE_LABELS},
    "realms": RealmsConfig().to_dict(),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file)
    elif CONFIG_ENV_VAR in environ:
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = Path(str(DEFAULTS["config_file"]))

    tree = _copy_tree(DEFAULTS)
    for layer in (_read_file(path), _env_layer(environ), dict(overrides or {})):
        _merge(tree, layer)
    tree["config_file"] = str(path)
    return _assemble(_Section(tree, ""))


def _read_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(document)


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in environ.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with a scalar setting.")
            node = child
        node[path[-1]] = _parse_scalar(raw)
    return layer


def _parse_scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge(tree: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = tree.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge(current, value)
        else:
            tree[key] = value


def _copy_tree(tree: Mapping[str, object]) -> dict[str, object]:
    copied: dict[str, object] = {}
    for key, value in tree.items():
        if isinstance(value, Mapping):
            copied[key] = _copy_tree(value)
        elif isinstance(value, list):
            copied[key] = list(value)
        else:
            copied[key] = value
    return copied


class _Section:
    """Typed accessors over one mapping of the merged tree."""

    def __init__(self, values: object, label: str) -> None:
        if values is None:
            values = {}
        if not isinstance(values, Mapping):
            raise ConfigError(f"Expected {label} to be a mapping. Got {type(values).__name__}.")
        for key in values:
            if not isinstance(key, str):
                raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        self.values: Mapping[str, object] = values
        self.label = label

    def _name(self, key: str) -> str:
        return f"{self.label}.{key}" if self.label else key

    def reject_unknown(self, allowed: Iterable[str], title: str) -> None:
        unknown = sorted(set(self.values) - set(allowed))
        if unknown:
            raise ConfigError(f"Unknown {title}: {', '.join(unknown)}.")

    def section(self, key: str) -> _Section:
        return _Section(self.values.get(key), self._name(key))

    def path(self, key: str) -> Path:
        value = self.values.get(key)
        if isinstance(value, (str, Path)):
            return Path(value).expanduser()
        raise ConfigError(f"Expected {self._name(key)} to be a filesystem path. Got {value!r}.")

    def text(self, key: str, default: str = "") -> str:
        value = self.values.get(key)
        return default if value is None else str(value).strip()

    def integer(self, key: str, default: int) -> int:
        value = self.values.get(key)
        if value is None:
            return default
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return int(value, 0)
            except ValueError as exc:
                raise ConfigError(f"Invalid integer for {self._name(key)}: {value!r}.") from exc
        raise ConfigError(f"Expected {self._name(key)} to be an integer. Got {value!r}.")

    def positive_number(self, key: str, default: float) -> float:
        value = self.values.get(key)
        if value is None:
            return float(default)
        if isinstance(value, bool):
            raise ConfigError(f"Expected {self._name(key)} to be a number. Got boolean {value!r}.")
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid number for {self._name(key)}: {value!r}.") from exc
        if number <= 0:
            raise ConfigError(f"{self._name(key)} must be greater than zero. Got {number}.")
        return number

    def names(self, key: str) -> tuple[str, ...]:
        value = self.values.get(key)
        if value is None:
            return ()
        if isinstance(value, str):
            # Comma separated when it comes from the environment.
            items: Sequence[object] = value.split(",")
        elif isinstance(value, Sequence):
            items = value
        else:
            raise ConfigError(
                f"Expected {self._name(key)} to be a list. Got {type(value).__name__}."
            )
        return tuple(str(item).strip() for item in items if str(item).strip())


def _assemble(root: _Section) -> AppConfig:
    root.reject_unknown(set(DEFAULTS), "configuration keys")

    databases = root.section("databases")
    databases.reject_unknown(set(DATABASE_LABELS), "databases configuration keys")
    settings = {label: _database(databases.section(label), label) for label in DATABASE_LABELS}

    realms = root.section("realms")
    realms.reject_unknown(REALMS_KEYS, "realms configuration keys")
    build_types = realms.names("build_types") or BUILD_TYPES
    default_build = realms.text("default_build_type", "RelWithDebInfo")
    if default_build not in build_types:
        raise ConfigError(
            f"Unsupported default build type '{default_build}'. "
            f"Allowed: {', '.join(build_types)}."
        )

    state_dir = root.path("state_dir")
    registry_dir = root.path("registry_dir") if root.values.get("registry_dir") else None
    return AppConfig(
        config_file=root.path("config_file"),
        install_root=root.path("install_root"),
        modules_root=root.path("modules_root"),
        state_dir=state_dir,
        registry_dir=registry_dir or state_dir / "registry",
        logs_dir=root.path("logs_dir"),
        runtime_dir=root.path("runtime_dir"),
        templates_dir=root.path("templates_dir"),
        lock_timeout=root.positive_number("lock_timeout", 30.0),
        mysql_executable=root.text("mysql_executable"),
        databases=DatabasesConfig(**settings),
        realms=RealmsConfig(
            default_build_type=default_build,
            default_realm=realms.text("default_realm") or None,
            auto_start=realms.names("auto_start"),
            build_types=build_types,
            worker_binary=realms.text("worker_binary", "worldserver"),
        ),
    )


def _database(section: _Section, label: str) -> DatabaseSettings:
    section.reject_unknown(DATABASE_KEYS, f"databases.{label} keys")
    defaults = _database_defaults(label)
    return DatabaseSettings(
        driver=section.text("driver", str(defaults["driver"])),
        host=section.text("host", str(defaults["host"])),
        port=section.integer("port", 3306),
        user=section.text("user", str(defaults["user"])),
        password=str(section.values.get("password", defaults["password"])),
        name=section.text("name") or label,
    )


__all__ = [
    "AppConfig",
    "BUILD_TYPES",
    "ConfigError",
    "DatabasesConfig",
    "RealmsConfig",
    "load_config",
]
