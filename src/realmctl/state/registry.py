"""YAML state registry for realmctl.

The registry directory (``<state_dir>/registry`` unless configured) holds
``realms.yml``: one entry per realm with its last recorded status, build
type, worker pid and start/stop timestamps. Files are replaced through a
temporary file in the same directory, so readers see either the old or the
new document.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from ..errors import ConfigIntegrityError

REALMS_FILE = "realms.yml"


class StateRegistryError(ConfigIntegrityError):
    """Raised when a registry file cannot be read or a realm entry is invalid."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and replace YAML documents under *root*."""

    root: Path

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory."""
        self.root.mkdir(parents=True, exist_ok=True)

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Return the parsed document *name*, or a copy of *default* if absent or empty."""
        path = self.root / name
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return deepcopy(default)
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Registry file {path} is not valid YAML: {exc}") from exc
        return deepcopy(default) if document is None else document

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Replace document *name* with *payload*."""
        self.ensure_root()
        target = self.root / name
        fd, staging = tempfile.mkstemp(dir=self.root, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as stream:
                yaml.safe_dump(dict(payload), stream, sort_keys=False)
            os.chmod(staging, 0o640)
            os.replace(staging, target)
        finally:
            if os.path.exists(staging):
                os.unlink(staging)

    def read_realms(self) -> dict[str, list[dict[str, Any]]]:
        """Return ``realms.yml`` as ``{"realms": [...]}``, dropping malformed entries."""
        document = self.read(REALMS_FILE)
        entries = document.get("realms") if isinstance(document, Mapping) else None
        if not isinstance(entries, list):
            return {"realms": []}
        return {"realms": [dict(entry) for entry in entries if isinstance(entry, Mapping)]}

    def get_realm(self, full_name: str) -> dict[str, Any] | None:
        """Return the recorded state of *full_name*, if any."""
        for entry in self.read_realms()["realms"]:
            if entry.get("name") == full_name:
                return entry
        return None

    def update_realm(self, full_name: str, updates: Mapping[str, object]) -> dict[str, Any]:
        """Merge *updates* into the entry for *full_name*, appending a new entry if needed.

        Callers serialise updates with the global lock.
        """
        name = full_name.strip()
        if not name:
            raise StateRegistryError("Realm name must be a non-empty string.")
        entries = self.read_realms()["realms"]
        entry = next((item for item in entries if item.get("name") == name), None)
        if entry is None:
            entry = {"name": name}
            entries.append(entry)
        entry.update(updates)
        self.write(REALMS_FILE, {"realms": entries})
        return dict(entry)


__all__ = ["REALMS_FILE", "StateRegistry", "StateRegistryError"]
