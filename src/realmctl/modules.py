"""Module discovery and realm/dataset identifier resolution.

Modules are the top-level directories of ``modules_root``. A module may hold
realms (``<module>/realms/<name>``) and datasets (``<module>/datasets/<name>``).
Identifiers are either ``<module>.<name>`` or a bare ``<name>`` that must be
unique across the fleet.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .errors import UserInputError
from .realm import Realm

_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


class UnknownIdentifierError(UserInputError):
    """Raised when a module, realm or dataset identifier does not resolve."""


@dataclass(frozen=True)
class ModuleEndpoint:
    """A module directory that may contain realms and datasets."""

    id: str
    path: Path

    @property
    def realms_dir(self) -> Path:
        """Directory holding this module's realms."""
        return self.path / "realms"

    @property
    def datasets_dir(self) -> Path:
        """Directory holding this module's datasets."""
        return self.path / "datasets"

    def realm_names(self) -> list[str]:
        """Return the names of realms defined by this module."""
        return _child_dirs(self.realms_dir)

    def dataset_names(self) -> list[str]:
        """Return the names of datasets defined by this module."""
        return _child_dirs(self.datasets_dir)


class ModuleIndex:
    """Resolve identifiers against the modules found under *root*."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def modules(self) -> list[ModuleEndpoint]:
        """Return every module, sorted by id."""
        return [ModuleEndpoint(name, self.root / name) for name in _child_dirs(self.root)]

    def is_module(self, identifier: str | None) -> bool:
        """Return whether *identifier* names an existing module."""
        if not identifier or not _NAME_PATTERN.fullmatch(identifier):
            return False
        return (self.root / identifier).is_dir()

    def get_module(self, identifier: str) -> ModuleEndpoint:
        """Return the module named *identifier*."""
        if not self.is_module(identifier):
            raise UnknownIdentifierError(f"Module '{identifier}' does not exist.")
        return ModuleEndpoint(identifier, self.root / identifier)

    def ensure_module(self, identifier: str) -> ModuleEndpoint:
        """Return the module named *identifier*, creating its directory when missing."""
        validate_name(identifier, "module name")
        path = self.root / identifier
        path.mkdir(parents=True, exist_ok=True)
        return ModuleEndpoint(identifier, path)

    def all_realms(self) -> list[Realm]:
        """Return every realm of every module."""
        return [
            Realm(module, name) for module in self.modules() for name in module.realm_names()
        ]

    def find_realm(self, identifier: str) -> Realm | None:
        """Return the realm for *identifier* or ``None`` when it does not resolve."""
        if "." in identifier:
            module_id, _, name = identifier.partition(".")
            if self.is_module(module_id) and name in self.get_module(module_id).realm_names():
                return Realm(self.get_module(module_id), name)
            return None
        matches = [realm for realm in self.all_realms() if realm.name == identifier]
        if len(matches) > 1:
            candidates = ", ".join(realm.full_name for realm in matches)
            raise UserInputError(
                f"Realm name '{identifier}' is ambiguous; use one of: {candidates}."
            )
        return matches[0] if matches else None

    def get_realm(self, identifier: str) -> Realm:
        """Return exactly one realm for *identifier*."""
        realm = self.find_realm(identifier)
        if realm is None:
            raise UnknownIdentifierError(f"Realm '{identifier}' does not exist.")
        return realm

    def get_realms(self, args: Sequence[str], default: str | None = None) -> list[Realm]:
        """Return every realm matched by *args*, falling back to *default*.

        Arguments that name a realm select it, arguments that name a module
        select all of its realms and anything else is ignored so flags and
        build types can share the argument list.
        """
        selected: list[Realm] = []
        for arg in args:
            realm = self.find_realm(arg) if _looks_like_identifier(arg) else None
            if realm is not None:
                candidates: Iterable[Realm] = [realm]
            elif self.is_module(arg):
                module = self.get_module(arg)
                candidates = [Realm(module, name) for name in module.realm_names()]
            else:
                continue
            for candidate in candidates:
                if candidate not in selected:
                    selected.append(candidate)
        if selected:
            return selected
        if default:
            return [self.get_realm(default)]
        raise UnknownIdentifierError(
            "No realm matches "
            + (", ".join(repr(arg) for arg in args) if args else "the given arguments")
            + " and no default realm is configured."
        )

    def assert_unused(self, module: ModuleEndpoint, name: str) -> str:
        """Validate *name* and ensure *module* has no realm called that."""
        validate_name(name, "realm name")
        if name in module.realm_names():
            raise UserInputError(f"Realm '{module.id}.{name}' already exists.")
        return name

    def get_dataset(self, identifier: str) -> tuple[ModuleEndpoint, str]:
        """Return the owning module and dataset name for *identifier*."""
        if "." in identifier:
            module_id, _, name = identifier.partition(".")
            if self.is_module(module_id):
                module = self.get_module(module_id)
                if name in module.dataset_names():
                    return module, name
            raise UnknownIdentifierError(f"Dataset '{identifier}' does not exist.")
        matches = [
            (module, identifier)
            for module in self.modules()
            if identifier in module.dataset_names()
        ]
        if len(matches) != 1:
            raise UnknownIdentifierError(
                f"Dataset '{identifier}' does not exist."
                if not matches
                else f"Dataset name '{identifier}' is ambiguous."
            )
        return matches[0]


def validate_name(name: str, label: str) -> str:
    """Ensure *name* is a filesystem-safe identifier."""
    if not name or not _NAME_PATTERN.fullmatch(name):
        raise UserInputError(f"Invalid {label} '{name}': must match [A-Za-z0-9_-]+.")
    return name


def _looks_like_identifier(arg: str) -> bool:
    return all(_NAME_PATTERN.fullmatch(part) for part in arg.split(".", 1))


def _child_dirs(path: Path) -> list[str]:
    if not path.is_dir():
        return []
    return sorted(
        child.name for child in path.iterdir() if child.is_dir() and not child.name.startswith(".")
    )


__all__ = ["ModuleEndpoint", "ModuleIndex", "UnknownIdentifierError", "validate_name"]
