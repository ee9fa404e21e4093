"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from realmctl.errors import ExitCode, ExternalResourceError
from realmctl.locking import LockManager, LockTimeoutError


def test_realm_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "default.alpha.lock"
    with manager.realm_lock("default.alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.realm_lock("default.alpha", timeout=0.2):
        pass


def test_realm_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.realm_lock("default.alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.realm_lock("default.alpha", timeout=0.1):
                pass


def test_mutate_realms_acquires_global_then_realms(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-realm locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_realms(["default.beta", "default.alpha"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "realmctl.lock",
            "default.alpha.lock",
            "default.beta.lock",
        ]


def test_id_allocation_lock_is_separate_from_global(tmp_path: Path) -> None:
    """The ID allocation lock can be taken while the global lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with manager.id_allocation(timeout=0.2) as handle:
            assert handle.path == tmp_path / "run" / "realm-ids.lock"


def test_lock_names_are_sanitised(tmp_path: Path) -> None:
    """Unsafe characters never escape the runtime directory."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    assert manager.lock_path("../evil/name") == tmp_path / "run" / ".._evil_name.lock"


def test_lock_timeout_is_an_external_resource_failure(tmp_path: Path) -> None:
    """Lock contention exits with the external-resource status, not a usage error."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.global_lock(timeout=0.1):
                pass

    assert isinstance(excinfo.value, ExternalResourceError)
    assert excinfo.value.exit_code is ExitCode.EXTERNAL_RESOURCE
