"""Reading and patching ``Key = Value`` configuration files.

Worldserver configuration files and realmctl's own realm/dataset files share
the same line format. Values are encoded the way the worldserver expects:
strings are double quoted, booleans are ``1``/``0`` and integers are plain
decimal. Patching rewrites the value of the first uncommented ``Key =`` line
and leaves every other byte of the file untouched.

Declarative files are described as data: a tuple of :class:`ConfField`
records is enough to load typed values, fill in defaults and generate a
documented file.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigIntegrityError
from .templates import TemplateEngine

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfFileError(ConfigIntegrityError):
    """Raised when a configuration file is missing or holds invalid values."""


@dataclass(frozen=True)
class ConfField:
    """Schema entry for one key of a declarative configuration file."""

    key: str
    default: object
    kind: type = str
    description: str = ""
    section: str = "General"
    examples: tuple[tuple[object, str], ...] = ()
    note: str = ""
    required: bool = field(default=True, compare=False)


def format_value(value: object) -> str:
    """Encode *value* for a ``Key = Value`` line."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if value is None:
        return '""'
    return f'"{value}"'


def parse_value(raw: str, kind: type) -> object:
    """Decode the raw text of a value into *kind*."""
    text = _unquote(raw.strip())
    if kind is bool:
        lowered = text.lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"not a boolean: {raw!r}")
    if kind is int:
        return int(text, 10)
    return text


def read_value(path: Path, key: str) -> str | None:
    """Return the raw value text for *key* in *path*, or ``None`` when absent."""
    if not path.exists():
        return None
    pattern = _key_pattern(key)
    for line in path.read_text(encoding="utf-8").splitlines():
        match = pattern.match(line)
        if match:
            return match.group("value").strip()
    return None


def read_typed(path: Path, key: str, kind: type, default: object = None) -> object:
    """Return the value of *key* decoded as *kind*, or *default* when absent."""
    raw = read_value(path, key)
    if raw is None:
        return default
    try:
        return parse_value(raw, kind)
    except ValueError as exc:
        raise ConfFileError(f"Invalid value for {key} in {path}: {exc}") from exc


def patch_value(path: Path, key: str, value: object) -> None:
    """Rewrite the value of *key* in *path*, appending the key when absent."""
    if not path.exists():
        raise ConfFileError(f"Configuration file {path} does not exist.")
    text = path.read_text(encoding="utf-8")
    lines = text.splitlines(keepends=True)
    pattern = _key_pattern(key)
    rendered = format_value(value)
    for index, line in enumerate(lines):
        match = pattern.match(line)
        if not match:
            continue
        newline = "\n" if line.endswith("\n") else ""
        lines[index] = f"{match.group('indent')}{key} = {rendered}{newline}"
        path.write_text("".join(lines), encoding="utf-8")
        return
    separator = "" if not text or text.endswith("\n") else "\n"
    path.write_text(f"{text}{separator}{key} = {rendered}\n", encoding="utf-8")


def load_fields(path: Path, fields: Iterable[ConfField]) -> dict[str, object]:
    """Return a mapping of key to typed value, using defaults for absent keys."""
    if not path.exists():
        raise ConfFileError(f"Configuration file {path} does not exist.")
    return {item.key: read_typed(path, item.key, item.kind, item.default) for item in fields}


def generate_if_missing(
    path: Path,
    fields: Sequence[ConfField],
    *,
    templates: TemplateEngine,
    title: str,
    description: str,
    values: Mapping[str, object] | None = None,
) -> bool:
    """Create *path* from *fields* or append keys it lacks; return whether it changed."""
    overrides = dict(values or {})
    if not path.exists():
        sections: dict[str, list[dict[str, object]]] = {}
        for item in fields:
            sections.setdefault(item.section, []).append(_field_context(item, overrides))
        context = {
            "title": title,
            "description": description,
            "sections": [
                {"name": name, "fields": entries} for name, entries in sections.items()
            ],
        }
        return templates.render_to_path("conf/generated.conf.j2", path, context)

    missing = [item for item in fields if item.required and read_value(path, item.key) is None]
    if not missing:
        return False
    chunks = [
        templates.render_to_string(
            "conf/appended.conf.j2",
            {"field": _field_context(item, overrides)},
        )
        for item in missing
    ]
    text = path.read_text(encoding="utf-8")
    separator = "" if not text or text.endswith("\n") else "\n"
    path.write_text(text + separator + "".join(chunks), encoding="utf-8")
    return True


def _field_context(item: ConfField, overrides: Mapping[str, object]) -> dict[str, object]:
    value = overrides.get(item.key, item.default)
    return {
        "key": item.key,
        "description": item.description or item.key,
        "value": format_value(value),
        "examples": [
            {"value": format_value(example), "note": note} for example, note in item.examples
        ],
        "note": item.note,
    }


def _key_pattern(key: str) -> re.Pattern[str]:
    return re.compile(rf"^(?P<indent>\s*){re.escape(key)}\s*=(?P<value>.*?)\r?$")


def _unquote(text: str) -> str:
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


__all__ = [
    "ConfField",
    "ConfFileError",
    "format_value",
    "generate_if_missing",
    "load_fields",
    "parse_value",
    "patch_value",
    "read_typed",
    "read_value",
]
