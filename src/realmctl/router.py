"""Translate operator arguments into realm lifecycle operations.

The router is shared by the one-shot CLI commands and the interactive
console. Arguments arrive as free text: realm names, module names, build
types, flags and delays can be mixed, and each operation picks out what it
needs.
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .accounts import CreatedAccount, CredentialIssuer
from .config import AppConfig
from .errors import UserInputError
from .lifecycle import RealmLifecycle, RealmlistRecord
from .modules import ModuleIndex, UnknownIdentifierError
from .realm import Realm
from .schema import auth_metadata

FORCE_FLAGS = frozenset({"--force", "-f"})
AUTOSTART_SUPPRESSION_FLAGS = frozenset({"noac", "norealm"})


class NoRunningRealmsError(UserInputError):
    """Raised when a stop request matches no running realm."""


@dataclass(frozen=True)
class RealmOutcome:
    """Result of one realm's part in a batch operation."""

    name: str
    error: BaseException | None = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        """Return whether the realm's operation succeeded."""
        return self.error is None


@dataclass(frozen=True)
class BatchResult:
    """Per-realm outcomes of a batch start or stop."""

    outcomes: tuple[RealmOutcome, ...] = ()

    @property
    def failures(self) -> list[RealmOutcome]:
        """Outcomes that ended in an error."""
        return [outcome for outcome in self.outcomes if not outcome.ok]

    @property
    def succeeded(self) -> list[RealmOutcome]:
        """Outcomes that completed without error."""
        return [outcome for outcome in self.outcomes if outcome.ok]

    @property
    def ok(self) -> bool:
        """Return whether every realm succeeded."""
        return not self.failures


@dataclass(frozen=True)
class RealmListing:
    """One line of ``list realm`` output."""

    full_name: str
    path: Path
    running: bool

    def render(self) -> str:
        """Return the ``name: path (status)`` line."""
        status = "running" if self.running else "not running"
        return f"{self.full_name}: {self.path} ({status})"


def _is_delay(arg: str) -> bool:
    return arg.isascii() and arg.isdigit()


def parse_delay(args: Sequence[str]) -> int:
    """Return the first non-negative integer argument, or ``0``."""
    for arg in args:
        if _is_delay(arg):
            return int(arg)
    return 0


def parse_build_type(args: Sequence[str], build_types: Sequence[str], default: str) -> str:
    """Return the build type named in *args* (case-insensitive), else *default*."""
    known = {build_type.lower(): build_type for build_type in build_types}
    for arg in args:
        match = known.get(arg.lower())
        if match is not None:
            return match
    return default


def parse_gm_level(value: str) -> int:
    """Parse the GM level argument of ``create account``."""
    try:
        level = int(value, 10)
    except ValueError as exc:
        raise UserInputError(f"GM level must be a number, got {value!r}.") from exc
    if level < 0:
        raise UserInputError(f"GM level must be zero or positive, got {level}.")
    return level


class CommandRouter:
    """Resolve arguments to realms and dispatch lifecycle operations."""

    def __init__(
        self,
        *,
        config: AppConfig,
        lifecycle: RealmLifecycle,
        issuer: CredentialIssuer,
    ) -> None:
        self.config = config
        self.lifecycle = lifecycle
        self.issuer = issuer

    @property
    def index(self) -> ModuleIndex:
        """The module index used for identifier resolution."""
        return self.lifecycle.index

    # ------------------------------------------------------------------
    def create_realm(self, args: Sequence[str]) -> Realm:
        """``create realm <module> <name> [displayName]``."""
        if len(args) < 2:
            raise UserInputError("Usage: create realm <module> <name> [displayName]")
        module_id, name = args[0], args[1]
        display_name = " ".join(args[2:]) or None
        return self.lifecycle.create(module_id, name, display_name)

    async def start_realms(self, args: Sequence[str]) -> BatchResult:
        """``start realm [names...] [buildType]``; realms start concurrently."""
        realms_config = self.config.realms
        build_type = parse_build_type(args, realms_config.build_types, realms_config.default_build_type)
        build_names = {value.lower() for value in realms_config.build_types}
        names = [arg for arg in args if arg.lower() not in build_names]
        realms = self.index.get_realms(names, realms_config.default_realm)
        return await _run_batch(realms, lambda realm: self.lifecycle.start(realm, build_type))

    async def stop_realms(self, args: Sequence[str]) -> BatchResult:
        """``stop realm [names...] [--force] [delay]``.

        When none of the selected realms is running the whole request fails
        before any process is signalled.
        """
        force = any(arg in FORCE_FLAGS for arg in args)
        delay = parse_delay(args)
        names = [arg for arg in args if arg not in FORCE_FLAGS]
        # Only the first number is the delay; later ones are realm or module names.
        delay_arg = next((arg for arg in names if _is_delay(arg)), None)
        if delay_arg is not None:
            names.remove(delay_arg)
        realms = self.index.get_realms(names, self.config.realms.default_realm)
        running = [realm for realm in realms if self.lifecycle.is_running(realm)]
        if not running:
            raise NoRunningRealmsError(
                "None of the specified realms are started: "
                + ", ".join(realm.full_name for realm in realms)
            )
        return await _run_batch(
            running,
            lambda realm: self.lifecycle.stop(realm, force=force, delay=delay),
        )

    async def stop_all(self) -> BatchResult:
        """Gracefully stop every realm this process is running."""
        running = [realm for realm in self.index.all_realms() if self.lifecycle.is_running(realm)]
        return await _run_batch(running, lambda realm: self.lifecycle.stop(realm))

    def list_realms(self, args: Sequence[str] = ()) -> list[RealmListing]:
        """``list realm [moduleOrName]``; running realms sort last."""
        selector = args[0] if args else None
        if not selector:
            realms = self.index.all_realms()
        elif self.index.is_module(selector):
            module = self.index.get_module(selector)
            realms = [Realm(module, name) for name in module.realm_names()]
        else:
            realm = self.index.find_realm(selector)
            if realm is None:
                raise UnknownIdentifierError(f"No module or realm named '{selector}'.")
            realms = [realm]
        listings = [
            RealmListing(realm.full_name, realm.paths.root, self.lifecycle.is_running(realm))
            for realm in realms
        ]
        return sorted(listings, key=lambda listing: (listing.running, listing.full_name))

    async def send(self, args: Sequence[str]) -> bool:
        """``send realm <name> <text...>``; returns ``False`` if the realm is not running."""
        if len(args) < 2:
            raise UserInputError("Usage: send realm <name> <text...>")
        realm = self.index.get_realm(args[0])
        return await self.lifecycle.send_command(realm, " ".join(args[1:]))

    async def create_account(self, args: Sequence[str]) -> CreatedAccount:
        """``create account <username> <password> [gmLevel] [email]``."""
        if len(args) < 2:
            raise UserInputError("Usage: create account <username> <password> [gmLevel] [email]")
        gm_level = parse_gm_level(args[2]) if len(args) > 2 else 0
        email = args[3] if len(args) > 3 else ""
        await self.lifecycle.auth.connect()
        await self.lifecycle.auth.create_all(auth_metadata)
        return await self.issuer.create_account(args[0], args[1], gm_level, email)

    async def autostart(self, flags: Iterable[str] = ()) -> BatchResult | None:
        """Start the configured auto-start realms unless a suppression flag is set."""
        if AUTOSTART_SUPPRESSION_FLAGS.intersection(flags):
            return None
        outcomes: list[RealmOutcome] = []
        realms: list[Realm] = []
        for name in self.config.realms.auto_start:
            try:
                realms.append(self.index.get_realm(name))
            except UserInputError as exc:
                outcomes.append(RealmOutcome(name, exc))
        build_type = self.config.realms.default_build_type
        started = await _run_batch(realms, lambda realm: self.lifecycle.start(realm, build_type))
        return BatchResult(tuple(outcomes) + started.outcomes)

    async def sync_realmlist(self) -> list[RealmlistRecord]:
        """Rewrite the auth realm list from every realm in the fleet."""
        await self.lifecycle.auth.connect()
        return await self.lifecycle.sync_realmlist(self.index.all_realms())

    async def wait_for_exit(self, names: Iterable[str]) -> None:
        """Wait until the worker processes of *names* have exited."""
        managers = [self.lifecycle.cache.manager_for(name) for name in names]
        await asyncio.gather(*(manager.worldserver.wait() for manager in managers))


async def _run_batch(
    realms: Sequence[Realm],
    action: Callable[[Realm], Awaitable[object]],
) -> BatchResult:
    results = await asyncio.gather(*(action(realm) for realm in realms), return_exceptions=True)
    outcomes: list[RealmOutcome] = []
    for realm, result in zip(realms, results, strict=True):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            outcomes.append(RealmOutcome(realm.full_name, result))
        else:
            outcomes.append(RealmOutcome(realm.full_name, changed=result is not False))
    return BatchResult(tuple(outcomes))


__all__ = [
    "BatchResult",
    "CommandRouter",
    "NoRunningRealmsError",
    "RealmListing",
    "RealmOutcome",
    "parse_build_type",
    "parse_delay",
    "parse_gm_level",
]
