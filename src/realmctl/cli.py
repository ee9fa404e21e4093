"""Typer-powered command line for ``realmctl``.

One-shot commands cover realm creation, inspection, account creation and
realm list synchronisation. Worker processes belong to the realmctl process
that spawned them, so stopping realms and sending console commands happen
inside ``realmctl serve``; ``realmctl start realm`` stays in the foreground
until its workers exit.
"""
from __future__ import annotations

import asyncio
import json
import textwrap
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import load_config
from .errors import ExitCode, RealmctlError
from .logging import OperationScope
from .router import AUTOSTART_SUPPRESSION_FLAGS, BatchResult
from .runtime import RuntimeContext, build_runtime
from .shell import report_batch, serve

T = TypeVar("T")

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to realmctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Realm lifecycle manager.

        Creates realms, provisions their databases and configuration, and
        runs their worldserver processes. Use `realmctl serve` for an
        interactive console that can start, stop and talk to realms.
        """
    ).strip(),
)

create_app = typer.Typer(help="Create realms and accounts.")
start_app = typer.Typer(help="Start realms in the foreground.")
list_app = typer.Typer(help="List realms.")
show_app = typer.Typer(help="Show realm details.")
sync_app = typer.Typer(help="Synchronise shared databases.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(create_app, name="create")
app.add_typer(start_app, name="start")
app.add_typer(list_app, name="list")
app.add_typer(show_app, name="show")
app.add_typer(sync_app, name="sync")
app.add_typer(config_app, name="config")


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        runtime = build_runtime(config)
    except RealmctlError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the realmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"realmctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(exc: RealmctlError) -> NoReturn:
    """Report an error already recorded by a lower layer and exit."""
    console.print(f"[red]{exc}[/red]")
    raise typer.Exit(code=int(exc.exit_code)) from exc


def _run(runtime: RuntimeContext, factory: Callable[[], Awaitable[T]]) -> T:
    """Run *factory* on a fresh event loop and close the runtime's engines after."""

    async def runner() -> T:
        try:
            return await factory()
        finally:
            await runtime.aclose()

    return asyncio.run(runner())


def _batch_exit_code(result: BatchResult) -> int:
    codes = [
        int(outcome.error.exit_code)
        if isinstance(outcome.error, RealmctlError)
        else int(ExitCode.EXTERNAL_RESOURCE)
        for outcome in result.failures
    ]
    return max(codes, default=int(ExitCode.OK))


@create_app.command("realm")
def create_realm(
    ctx: typer.Context,
    module: str = typer.Argument(..., help="Module that will own the realm."),
    name: str = typer.Argument(..., help="Directory name of the new realm."),
    display_name: str | None = typer.Argument(None, help="Name shown in the realm list."),
) -> None:
    """Create a realm and its configuration files."""
    runtime = _get_runtime(ctx)
    args = [module, name] + ([display_name] if display_name else [])
    try:
        realm = runtime.router.create_realm(args)
    except RealmctlError as exc:
        _fail(exc)
    console.print(f"[green]Created realm[/green] {realm.full_name} at {realm.paths.root}")


@create_app.command("account")
def create_account(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="Account name (stored upper-case)."),
    password: str = typer.Argument(..., help="Account password."),
    gm_level: int = typer.Argument(0, help="Security level granted on every realm."),
    email: str = typer.Argument("", help="Registration e-mail address."),
) -> None:
    """Create a login account in the auth database."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "create account",
        args={"username": username, "gm_level": gm_level, "email": email},
        target={"kind": "account", "name": username.upper()},
    ) as op:
        args = [username, password, str(gm_level), email]
        try:
            created = _run(runtime, lambda: runtime.router.create_account(args))
        except RealmctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))
        if created.gm_level:
            op.add_step("account_access.insert", detail=f"level={created.gm_level}")
        console.print(f"[green]Created account[/green] {created.username}")
        op.success(f"Created account {created.username}.", changed=1)


@start_app.command("realm")
def start_realm(
    ctx: typer.Context,
    names: list[str] | None = typer.Argument(
        None,
        help="Realms or modules to start, optionally followed by a build type.",
    ),
) -> None:
    """Start realms and wait until their worker processes exit."""
    runtime = _get_runtime(ctx)
    router = runtime.router

    async def start_and_wait() -> BatchResult:
        result = await router.start_realms(names or [])
        report_batch(console, "Started", result)
        started = [outcome.name for outcome in result.succeeded]
        if started:
            console.print("Waiting for worker processes to exit (Ctrl+C to stop).")
            await router.wait_for_exit(started)
        return result

    try:
        result = _run(runtime, start_and_wait)
    except RealmctlError as exc:
        _fail(exc)
    if not result.ok:
        raise typer.Exit(code=_batch_exit_code(result))


@list_app.command("realm")
def list_realm(
    ctx: typer.Context,
    selector: str | None = typer.Argument(None, help="Module or realm to restrict the list to."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List realms with their last recorded status."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list realm",
        args={"selector": selector, "json": json_output},
        target={"kind": "realm", "scope": selector or "all"},
    ) as op:
        try:
            listings = runtime.router.list_realms([selector] if selector else [])
        except RealmctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        entries = []
        for listing in listings:
            recorded = runtime.registry.get_realm(listing.full_name) or {}
            entries.append(
                {
                    "name": listing.full_name,
                    "path": str(listing.path),
                    "running": listing.running,
                    "status": recorded.get("status", "unknown"),
                    "build_type": recorded.get("last_build_type"),
                }
            )

        if json_output:
            console.print_json(data={"realms": entries})
            op.success("Reported realm list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Realm", style="bold")
        table.add_column("Path")
        table.add_column("Status")
        table.add_column("Build")

        if not entries:
            table.add_row("(none)", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    entry["name"],
                    entry["path"],
                    str(entry["status"]),
                    str(entry["build_type"] or ""),
                )

        console.print(table)
        op.success("Reported realm list.", changed=0)


@show_app.command("realm")
def show_realm(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Realm to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show a realm's configuration, ID and recorded state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show realm",
        args={"name": name, "json": json_output},
        target={"kind": "realm", "name": name},
    ) as op:
        try:
            realm = runtime.index.get_realm(name)
            realm_config = realm.read_config()
            realm_id = (
                runtime.lifecycle.ids.get_id(realm)
                if runtime.lifecycle.ids.has_id(realm)
                else None
            )
        except RealmctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        target: dict[str, object] = {
            "name": realm.full_name,
            "path": str(realm.paths.root),
            "realm_id": realm_id,
            "flags": realm_config.flags,
            "config": asdict(realm_config),
            "state": runtime.registry.get_realm(realm.full_name) or {},
        }

        if json_output:
            console.print_json(data=target)
            op.success("Displayed realm details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        for key, value in target.items():
            if value in (None, "", {}):
                continue
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key.replace("_", " ").title(), rendered)

        console.print(table)
        op.success("Displayed realm details.", changed=0)


@sync_app.command("realmlist")
def sync_realmlist(
    ctx: typer.Context,
    sql: bool = typer.Option(
        False,
        "--sql",
        help="Also print the INSERT statement written for each realm.",
    ),
) -> None:
    """Rewrite the auth database's realm list from the realms on disk."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sync realmlist",
        args={"sql": sql},
        target={"kind": "database", "name": "auth"},
    ) as op:
        try:
            records = _run(runtime, runtime.router.sync_realmlist)
        except RealmctlError as exc:
            _command_error(op, str(exc), rc=int(exc.exit_code))

        if sql:
            for record in records:
                console.print(record.to_sql(), markup=False, highlight=False, soft_wrap=True)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("ID", style="bold")
            table.add_column("Name")
            table.add_column("Address")
            table.add_column("Port")
            table.add_column("Flag")
            for record in records:
                table.add_row(
                    str(record.id),
                    record.name,
                    record.address,
                    str(record.port),
                    f"0x{record.flag:02x}",
                )
            console.print(table)
        op.success(f"Synchronised {len(records)} realm(s).", changed=len(records))


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@app.command("serve")
def serve_command(
    ctx: typer.Context,
    flags: list[str] | None = typer.Argument(
        None,
        help="Startup flags: 'noac' or 'norealm' skip auto-starting realms.",
    ),
) -> None:
    """Run the interactive realm console."""
    runtime = _get_runtime(ctx)
    unknown = sorted(set(flags or []) - AUTOSTART_SUPPRESSION_FLAGS)
    if unknown:
        console.print(f"[red]Unknown serve flag(s): {', '.join(unknown)}.[/red]")
        raise typer.Exit(code=int(ExitCode.USER_INPUT))
    try:
        rc = _run(runtime, lambda: serve(runtime, flags or [], console=console))
    except RealmctlError as exc:
        _fail(exc)
    raise typer.Exit(code=rc)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
