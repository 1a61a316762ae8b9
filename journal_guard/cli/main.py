"""
CLI interface for Journal Guard.

Administrative access to the encrypted journal vault: setup, migrations,
legacy upgrades, passphrase changes, budget inspection and signed configuration.
"""

import asyncio
import logging
import os
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from journal_guard.config.loader import (
    VaultConfig,
    load_sensitivity_table,
    load_vault_config,
    sign_sensitivity_file,
)
from journal_guard.core.errors import JournalGuardError
from journal_guard.core.sensitivity import DEFAULT_SENSITIVITY_TABLE, SensitivityTable
from journal_guard.core.vault import Vault

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

PASSPHRASE_ENV = "JOURNAL_GUARD_PASSPHRASE"
NEW_PASSPHRASE_ENV = "JOURNAL_GUARD_NEW_PASSPHRASE"
SIGNING_KEY_ENV = "JOURNAL_GUARD_SIGNING_KEY"
AUDIT_KEY_ENV = "JOURNAL_GUARD_AUDIT_KEY"

# Errors reported as a message and a failing exit code rather than a traceback
_HANDLED_ERRORS = (JournalGuardError, ValueError, FileNotFoundError)


def _env_bytes(name: str) -> Optional[bytes]:
    value = os.environ.get(name)
    return value.encode("utf-8") if value else None


def _config(ctx: typer.Context) -> VaultConfig:
    return ctx.obj["config"]


def _sensitivity_table(config: VaultConfig) -> SensitivityTable:
    if config.sensitivity_path is None:
        return DEFAULT_SENSITIVITY_TABLE
    return load_sensitivity_table(config.sensitivity_path, _env_bytes(SIGNING_KEY_ENV))


async def _open_vault(config: VaultConfig) -> Vault:
    return await Vault.open(config, _sensitivity_table(config), audit_key=_env_bytes(AUDIT_KEY_ENV))


def _passphrase(confirm: bool = False) -> str:
    """Passphrase from the environment, else a hidden prompt."""
    value = os.environ.get(PASSPHRASE_ENV)
    if value:
        return value
    return typer.prompt("Passphrase", hide_input=True, confirmation_prompt=confirm)


def _new_passphrase() -> str:
    value = os.environ.get(NEW_PASSPHRASE_ENV)
    if value:
        return value
    return typer.prompt("New passphrase", hide_input=True, confirmation_prompt=True)


def _fail(message: str, error: Exception) -> None:
    console.print(f"[red]{message}:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the vault YAML configuration"
    ),
    db_path: Optional[str] = typer.Option(
        None,
        "--db",
        help="SQLite database path (overrides the configuration)"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log progress to the console"
    ),
):
    """Journal Guard CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )

    try:
        config = load_vault_config(config_path) if config_path else VaultConfig()
    except _HANDLED_ERRORS as e:
        _fail("Invalid configuration", e)
    if db_path:
        config = VaultConfig(
            db_path=db_path,
            kdf_iterations=config.kdf_iterations,
            budget=config.budget,
            collector=config.collector,
            sensitivity_path=config.sensitivity_path,
        )
    ctx.obj = {"config": config}

    if ctx.invoked_subcommand is None:
        console.print("Journal Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Create the vault database and set its passphrase."""
    config = _config(ctx)

    async def _init() -> bool:
        vault = await _open_vault(config)
        if vault.is_initialized:
            return False
        await vault.setup(_passphrase(confirm=True))
        await vault.lock()
        return True

    try:
        created = asyncio.run(_init())
    except _HANDLED_ERRORS as e:
        _fail("Error initializing vault", e)

    if created:
        console.print(f"[green]✓[/] Vault initialized at {config.db_path}")
    else:
        console.print(f"[yellow]Vault at {config.db_path} is already initialized[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(ctx: typer.Context):
    """Show schema version, passphrase state and record counts."""
    config = _config(ctx)

    async def _status():
        vault = await _open_vault(config)
        counts = await asyncio.to_thread(vault.repository.store_counts)
        return vault, counts

    try:
        vault, counts = asyncio.run(_status())
    except _HANDLED_ERRORS as e:
        _fail("Error reading vault", e)

    console.print(f"\n[bold]Vault:[/bold] {config.db_path}")
    console.print(f"Schema version: {vault.schema_version}")
    if vault.migration_pending:
        console.print(
            f"[yellow]Migration to version {vault.engine.target_version} waits for the passphrase[/] "
            "(run `journal-guard migrate`)"
        )
    initialized = "[green]yes[/]" if vault.is_initialized else "[yellow]no[/] (run `journal-guard init`)"
    console.print(f"Passphrase configured: {initialized}")

    if counts:
        table = Table(title="Records")
        table.add_column("Store")
        table.add_column("Records", justify="right")
        for store_id, count in sorted(counts.items()):
            table.add_row(store_id, str(count))
        console.print(table)
    else:
        console.print("[dim]No records stored.[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def migrate(ctx: typer.Context):
    """Bring the database schema up to the current version."""
    config = _config(ctx)

    async def _migrate() -> int:
        vault = await _open_vault(config)
        if vault.migration_pending:
            await vault.unlock(_passphrase())
            await vault.lock()
        return vault.schema_version

    try:
        version = asyncio.run(_migrate())
    except _HANDLED_ERRORS as e:
        _fail("Migration failed", e)

    console.print(f"[green]✓[/] Schema is at version {version}")
    sys.exit(EXIT_CODE_PASS)


@app.command("upgrade-legacy")
def upgrade_legacy(
    ctx: typer.Context,
    store: Optional[str] = typer.Option(
        None,
        "--store",
        "-s",
        help="Only scan this store"
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Count legacy records without rewriting them"
    ),
    backup: Optional[str] = typer.Option(
        None,
        "--backup",
        "-b",
        help="Write the legacy envelopes to this JSON file before rewriting them"
    ),
):
    """Re-encrypt every legacy record into the current format."""
    config = _config(ctx)

    async def _upgrade():
        vault = await _open_vault(config)
        await vault.unlock(_passphrase())
        try:
            return await vault.upgrade_legacy(store, dry_run=dry_run, backup_path=backup)
        finally:
            await vault.lock()

    try:
        report = asyncio.run(_upgrade())
    except _HANDLED_ERRORS as e:
        _fail("Legacy upgrade failed", e)

    label = "would upgrade" if report.dry_run else "upgraded"
    console.print("\n[bold]Legacy Upgrade[/bold]")
    console.print("-" * 40)
    console.print(f"Scanned: {report.scanned}")
    console.print(f"{label.capitalize()}: {report.upgraded}")
    console.print(f"Already current: {report.skipped}")
    if report.backup_path:
        console.print(f"Backup: {report.backup_path}")

    if report.failed:
        console.print(f"[red]Unreadable: {len(report.failed)}[/]")
        for store_id, key, message in report.failed:
            console.print(f"  {store_id}/{key}: {message}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command("change-passphrase")
def change_passphrase(ctx: typer.Context):
    """Change the vault passphrase and re-encrypt every record under the new key."""
    config = _config(ctx)

    async def _change() -> int:
        vault = await _open_vault(config)
        current = _passphrase()
        if vault.migration_pending:
            await vault.unlock(current)
        try:
            return await vault.change_passphrase(current, _new_passphrase())
        finally:
            await vault.lock()

    try:
        rewritten = asyncio.run(_change())
    except _HANDLED_ERRORS as e:
        _fail("Error changing passphrase", e)

    console.print(f"[green]✓[/] Passphrase changed, {rewritten} records re-encrypted")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def budget(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User whose budget to show"),
):
    """Show privacy budget consumption for the active window."""
    config = _config(ctx)

    async def _budget():
        vault = await _open_vault(config)
        return await vault.budget.ledger(user_id)

    try:
        ledger = asyncio.run(_budget())
    except _HANDLED_ERRORS as e:
        _fail("Error reading budget", e)

    table = Table(title="Privacy Budget")
    table.add_column("Window start")
    table.add_column("Window end")
    table.add_column("Consumed", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_row(
        ledger.window_start.strftime("%Y-%m-%d %H:%M"),
        ledger.window_end.strftime("%Y-%m-%d %H:%M"),
        f"{ledger.epsilon_consumed:.4f}",
        f"{ledger.epsilon_limit:.4f}",
        f"{ledger.remaining:.4f}",
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("sign-config")
def sign_config(
    path: str = typer.Argument(..., help="Sensitivity YAML file to sign in place"),
):
    """Sign a sensitivity configuration with the configured signing key."""
    signing_key = _env_bytes(SIGNING_KEY_ENV)
    if signing_key is None:
        console.print(f"[red]Set {SIGNING_KEY_ENV} to sign configuration files[/]")
        sys.exit(EXIT_CODE_FAIL)

    try:
        signature = sign_sensitivity_file(path, signing_key)
    except _HANDLED_ERRORS as e:
        _fail("Error signing configuration", e)

    console.print(f"[green]✓[/] Signed {path} ({signature[:12]}…)")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def wipe(
    ctx: typer.Context,
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt"
    ),
):
    """Permanently delete every record, ledger row and audit event."""
    config = _config(ctx)
    if not yes and not typer.confirm(f"Permanently delete all data in {config.db_path}?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_FAIL)

    async def _wipe():
        vault = await _open_vault(config)
        await vault.unlock(_passphrase())
        await vault.wipe()

    try:
        asyncio.run(_wipe())
    except _HANDLED_ERRORS as e:
        _fail("Error wiping vault", e)

    console.print("[green]✓[/] Vault wiped")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
