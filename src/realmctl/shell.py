"""Interactive realm console.

``realmctl serve`` keeps worker processes alive for as long as the console
runs. Each input line is split with :mod:`shlex` and dispatched through the
static :data:`COMMANDS` table keyed by ``(verb, noun)``.
"""
from __future__ import annotations

import asyncio
import inspect
import shlex
from collections.abc import Awaitable, Callable, Iterable, Sequence

from rich.console import Console
from rich.markup import escape

from .errors import RealmctlError
from .router import BatchResult, CommandRouter
from .runtime import RuntimeContext

Handler = Callable[[CommandRouter, Console, Sequence[str]], Awaitable[None]]
LineReader = Callable[[], str]

EXIT_WORDS = frozenset({"exit", "quit"})
PROMPT = "realmctl> "


def report_batch(console: Console, verb: str, result: BatchResult) -> None:
    """Print one line per realm of a batch start or stop."""
    for outcome in result.outcomes:
        if outcome.ok:
            console.print(f"[green]{verb}[/green] {outcome.name}")
        else:
            console.print(f"[red]{outcome.name}: {outcome.error}[/red]")


async def _create_realm(router: CommandRouter, console: Console, args: Sequence[str]) -> None:
    realm = router.create_realm(args)
    console.print(f"[green]Created realm[/green] {realm.full_name} at {realm.paths.root}")


async def _create_account(router: CommandRouter, console: Console, args: Sequence[str]) -> None:
    created = await router.create_account(args)
    console.print(f"[green]Created account[/green] {created.username}")


async def _start_realm(router: CommandRouter, console: Console, args: Sequence[str]) -> None:
    report_batch(console, "Started", await router.start_realms(args))


async def _stop_realm(router: CommandRouter, console: Console, args: Sequence[str]) -> None:
    report_batch(console, "Stopped", await router.stop_realms(args))


async def _list_realm(router: CommandRouter, console: Console, args: Sequence[str]) -> None:
    listings = router.list_realms(args)
    if not listings:
        console.print("(no realms)")
    for listing in listings:
        console.print(listing.render(), markup=False, soft_wrap=True)


async def _send_realm(router: CommandRouter, console: Console, args: Sequence[str]) -> None:
    if not await router.send(args):
        console.print(f"[yellow]Realm {args[0]} is not running.[/yellow]")


COMMANDS: dict[tuple[str, str], Handler] = {
    ("create", "realm"): _create_realm,
    ("create", "account"): _create_account,
    ("start", "realm"): _start_realm,
    ("start", "realms"): _start_realm,
    ("stop", "realm"): _stop_realm,
    ("stop", "realms"): _stop_realm,
    ("list", "realm"): _list_realm,
    ("list", "realms"): _list_realm,
    ("send", "realm"): _send_realm,
}


def _validate_commands(table: dict[tuple[str, str], Handler]) -> None:
    for (verb, noun), handler in table.items():
        if not verb.isalpha() or not noun.isalpha() or verb != verb.lower() or noun != noun.lower():
            raise RuntimeError(f"Invalid console command key: {verb!r} {noun!r}")
        if not inspect.iscoroutinefunction(handler):
            raise RuntimeError(f"Console handler for '{verb} {noun}' must be a coroutine function.")
        if len(inspect.signature(handler).parameters) != 3:
            raise RuntimeError(f"Console handler for '{verb} {noun}' must accept three arguments.")


_validate_commands(COMMANDS)


def resolve(line: str) -> tuple[Handler, list[str]] | None:
    """Return the handler and remaining arguments for *line*, if it names a command."""
    parts = shlex.split(line)
    if len(parts) < 2:
        return None
    handler = COMMANDS.get((parts[0].lower(), parts[1].lower()))
    if handler is None:
        return None
    return handler, parts[2:]


def usage() -> str:
    """Return the list of console commands."""
    return ", ".join(f"{verb} {noun}" for verb, noun in COMMANDS) + ", exit"


async def execute(router: CommandRouter, console: Console, line: str) -> bool:
    """Run one console line; return ``False`` if it could not be dispatched."""
    try:
        resolved = resolve(line)
    except ValueError as exc:
        console.print(f"[red]Cannot parse command: {exc}[/red]")
        return False
    if resolved is None:
        console.print(f"[red]Unknown command: {line}[/red]")
        console.print(f"Available: {usage()}")
        return False
    handler, args = resolved
    try:
        await handler(router, console, args)
    except RealmctlError as exc:
        console.print(f"[red]{exc}[/red]")
        return False
    except Exception as exc:  # noqa: BLE001 - keep the console and its workers alive
        console.print(f"[red]Unexpected error in {escape(line)!r}: {escape(repr(exc))}[/red]")
        return False
    return True


async def serve(
    runtime: RuntimeContext,
    flags: Iterable[str] = (),
    *,
    console: Console,
    reader: LineReader | None = None,
) -> int:
    """Run the console until ``exit``, ``quit`` or end of input."""
    router = runtime.router
    read_line = reader or (lambda: console.input(PROMPT))
    flags = tuple(flags)
    with runtime.logger.operation(
        "serve",
        args={"flags": list(flags)},
        target={"kind": "console"},
    ) as op:
        try:
            records = await router.sync_realmlist()
            op.add_step("realmlist.sync", detail=f"{len(records)} realm(s)")
        except RealmctlError as exc:
            console.print(f"[yellow]Realm list not synced: {exc}[/yellow]")
            op.add_step("realmlist.sync", status="warning", detail=str(exc))

        started = await router.autostart(flags)
        if started is None:
            op.add_step("autostart", status="skipped")
        else:
            report_batch(console, "Started", started)
            op.add_step("autostart", detail=f"{len(started.succeeded)} started")

        handled = 0
        try:
            while True:
                try:
                    line = (await asyncio.to_thread(read_line)).strip()
                except EOFError:
                    break
                if not line:
                    continue
                if line.lower() in EXIT_WORDS:
                    break
                await execute(router, console, line)
                handled += 1
        finally:
            # Workers never outlive the console, however the loop ended.
            stopped = await router.stop_all()
            report_batch(console, "Stopped", stopped)
            op.add_step("shutdown", detail=f"{len(stopped.outcomes)} realm(s)")
        op.success("Console closed.", changed=handled, context={"commands": handled})
    return 0


__all__ = ["COMMANDS", "execute", "report_batch", "resolve", "serve", "usage"]
