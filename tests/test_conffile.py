"""Tests for ``Key = Value`` configuration files."""
from __future__ import annotations

from pathlib import Path

import pytest

from realmctl.conffile import (
    ConfField,
    ConfFileError,
    generate_if_missing,
    load_fields,
    patch_value,
    read_typed,
    read_value,
)
from realmctl.templates import TemplateEngine

FIELDS = (
    ConfField("Realm.Name", "", description="Display name", section="Realm"),
    ConfField("Realm.Port", 8085, kind=int, section="Realm", examples=((8085, "Default"),)),
    ConfField("Realm.Offline", False, kind=bool, section="Flags"),
)


@pytest.mark.parametrize(
    ("key", "value", "kind", "raw"),
    [
        ("Realm.Name", "My Realm", str, '"My Realm"'),
        ("Realm.Port", 8095, int, "8095"),
        ("Realm.Offline", True, bool, "1"),
        ("Realm.Offline", False, bool, "0"),
    ],
)
def test_patched_value_reads_back(tmp_path: Path, key: str, value: object, kind: type, raw: str) -> None:
    """A patched key reads back as exactly the value written."""
    path = tmp_path / "realm.conf"
    path.write_text("# header\nRealm.Name = \"\"\nRealm.Port = 8085\n", encoding="utf-8")

    patch_value(path, key, value)

    assert read_value(path, key) == raw
    assert read_typed(path, key, kind) == value


def test_patch_preserves_surrounding_content(tmp_path: Path) -> None:
    """Only the first matching line changes; comments and other keys survive."""
    path = tmp_path / "worldserver.conf"
    path.write_text(
        "# WorldServerPort = 1\n"
        "    WorldServerPort = 8085\n"
        "RealmID = 1\n"
        "WorldServerPortExtra = 5\n",
        encoding="utf-8",
    )

    patch_value(path, "WorldServerPort", 8090)
    patch_value(path, "MySQLExecutable", "/opt/mysql/bin/mysql")

    assert path.read_text(encoding="utf-8").splitlines() == [
        "# WorldServerPort = 1",
        "    WorldServerPort = 8090",
        "RealmID = 1",
        "WorldServerPortExtra = 5",
        'MySQLExecutable = "/opt/mysql/bin/mysql"',
    ]


def test_patch_missing_file_raises(tmp_path: Path) -> None:
    """Patching requires the file to exist."""
    with pytest.raises(ConfFileError):
        patch_value(tmp_path / "absent.conf", "Key", 1)


def test_invalid_typed_value_raises(tmp_path: Path) -> None:
    """Values that do not parse as the field's kind are integrity errors."""
    path = tmp_path / "realm.conf"
    path.write_text("Realm.Port = eighty\n", encoding="utf-8")

    with pytest.raises(ConfFileError, match="Realm.Port"):
        read_typed(path, "Realm.Port", int)


def test_generate_if_missing_renders_then_appends(tmp_path: Path) -> None:
    """A missing file is rendered in full; later only absent keys are appended."""
    engine = TemplateEngine.with_overrides(None)
    path = tmp_path / "realm.conf"

    created = generate_if_missing(
        path,
        FIELDS,
        templates=engine,
        title="Realm configuration",
        description="Test realm.",
        values={"Realm.Name": "alpha"},
    )

    assert created is True
    assert load_fields(path, FIELDS) == {
        "Realm.Name": "alpha",
        "Realm.Port": 8085,
        "Realm.Offline": False,
    }
    assert "# Realm configuration" in path.read_text(encoding="utf-8")

    path.write_text('Realm.Name = "kept"\n', encoding="utf-8")
    changed = generate_if_missing(
        path, FIELDS, templates=engine, title="Realm configuration", description="Test realm."
    )
    unchanged = generate_if_missing(
        path, FIELDS, templates=engine, title="Realm configuration", description="Test realm."
    )

    assert changed is True
    assert unchanged is False
    assert load_fields(path, FIELDS) == {
        "Realm.Name": "kept",
        "Realm.Port": 8085,
        "Realm.Offline": False,
    }
