"""Async database connections backed by SQLAlchemy.

A :class:`Connection` owns one lazily created async engine for one logical
database. Realms own a characters connection each, datasets own a world
connection and the runtime owns the shared auth connection.
"""
from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.sql import Executable

from .errors import ExternalResourceError

_SUFFIX_UNSAFE = re.compile(r"[^A-Za-z0-9_]")
_STATEMENT_SPLIT = re.compile(r";\s*(?:\r?\n|$)")


class DatabaseError(ExternalResourceError):
    """Raised when a database round-trip fails."""


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection parameters for a single logical database."""

    driver: str
    host: str
    port: int
    user: str
    password: str
    name: str

    @property
    def is_sqlite(self) -> bool:
        """Return whether the settings point at a SQLite file."""
        return self.driver.startswith("sqlite")

    def for_suffix(self, suffix: str) -> DatabaseSettings:
        """Return settings for a per-owner database derived from this one."""
        safe = _SUFFIX_UNSAFE.sub("_", suffix)
        return replace(self, name=f"{self.name}_{safe}")

    def url(self, *, include_database: bool = True) -> URL:
        """Return the SQLAlchemy URL for these settings."""
        if self.is_sqlite:
            return URL.create(self.driver, database=self.name)
        return URL.create(
            self.driver,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.name if include_database else None,
        )

    def connection_string(self) -> str:
        """Return the ``host;port;user;password;database`` form used by worldserver."""
        return f"{self.host};{self.port};{self.user};{self.password};{self.name}"

    def to_dict(self, *, redact: bool = False) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "driver": self.driver,
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": "***" if redact else self.password,
            "name": self.name,
        }


class Connection:
    """A single logical database reached through an async SQLAlchemy engine."""

    def __init__(self, settings: DatabaseSettings, label: str) -> None:
        """Bind the connection descriptor; nothing is opened until :meth:`connect`."""
        self.settings = settings
        self.label = label
        self._engine: AsyncEngine | None = None
        self._connect_lock = asyncio.Lock()
        self._schema_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Connection(label={self.label!r}, database={self.settings.name!r})"

    @property
    def is_connected(self) -> bool:
        """Return whether an engine has been created and verified."""
        return self._engine is not None

    async def connect(self) -> None:
        """Create the database if needed and verify the engine; idempotent."""
        async with self._connect_lock:
            if self._engine is not None:
                return
            if not self.settings.is_sqlite:
                await self._ensure_database()
            engine = create_async_engine(self.settings.url(), pool_pre_ping=True)
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except (SQLAlchemyError, OSError) as exc:
                await engine.dispose()
                raise DatabaseError(
                    f"Failed to connect to {self.label} database "
                    f"'{self.settings.name}': {exc}"
                ) from exc
            self._engine = engine

    async def execute(
        self,
        statement: str | Executable,
        params: Mapping[str, object] | Sequence[Mapping[str, object]] | None = None,
    ) -> list[dict[str, Any]]:
        """Execute *statement* in its own transaction and return any rows."""
        engine = await self._require_engine()
        stmt = text(statement) if isinstance(statement, str) else statement
        try:
            async with engine.begin() as conn:
                result = await conn.execute(stmt, params)
                if not result.returns_rows:
                    return []
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as exc:
            raise DatabaseError(f"{self.label} query failed: {exc}") from exc

    async def fetch_all(
        self,
        statement: str | Executable,
        params: Mapping[str, object] | None = None,
    ) -> list[dict[str, Any]]:
        """Return every row produced by *statement*."""
        return await self.execute(statement, params)

    async def table_names(self) -> list[str]:
        """Return the names of the tables present in the database."""
        engine = await self._require_engine()
        try:
            async with engine.connect() as conn:
                return await conn.run_sync(lambda sync: inspect(sync).get_table_names())
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to inspect {self.label} database: {exc}") from exc

    async def create_all(self, metadata: MetaData) -> None:
        """Create every table of *metadata* that does not yet exist.

        Calls on one connection are serialised: the existence check and the
        ``CREATE TABLE`` must not interleave with another caller's.
        """
        engine = await self._require_engine()
        try:
            async with self._schema_lock, engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to create {self.label} tables: {exc}") from exc

    async def apply_sql_file(self, path: Path) -> int:
        """Execute each statement in *path*; return the number executed."""
        engine = await self._require_engine()
        statements = split_statements(path.read_text(encoding="utf-8"))
        try:
            async with engine.begin() as conn:
                for statement in statements:
                    await conn.execute(text(statement))
        except SQLAlchemyError as exc:
            raise DatabaseError(f"Failed to apply {path.name} to {self.label}: {exc}") from exc
        return len(statements)

    async def close(self) -> None:
        """Dispose of the engine if one was created."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

    async def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            await self.connect()
        assert self._engine is not None
        return self._engine

    async def _ensure_database(self) -> None:
        server = create_async_engine(self.settings.url(include_database=False))
        try:
            async with server.begin() as conn:
                await conn.execute(text(f"CREATE DATABASE IF NOT EXISTS `{self.settings.name}`"))
        except (SQLAlchemyError, OSError) as exc:
            raise DatabaseError(
                f"Failed to create {self.label} database '{self.settings.name}': {exc}"
            ) from exc
        finally:
            await server.dispose()


def split_statements(script: str) -> list[str]:
    """Split an SQL script into statements, dropping comment-only chunks."""
    statements: list[str] = []
    for chunk in _STATEMENT_SPLIT.split(script):
        lines = [
            line
            for line in chunk.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        if lines:
            statements.append("\n".join(lines))
    return statements


__all__ = ["Connection", "DatabaseError", "DatabaseSettings", "split_statements"]
