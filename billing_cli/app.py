"""subledger CLI -- Typer-based operator interface to the billing engine.

Provides commands for reconciliation, discrepancy review, data-subject
export and deletion, tier upgrades and license key checks.  Human-readable
output goes to *stderr* via Rich; machine-readable output (exports, JSON
mode, raw credentials) goes to *stdout* so that pipelines compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import typer
from rich.console import Console
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_cli.display import (
    display_deletion,
    display_discrepancies,
    display_failed_events,
    display_summary,
    display_validation,
)
from billing_engine.config import BillingSettings, load_settings
from billing_engine.errors import BillingError
from billing_engine.license.feature_flags import LicenseTier
from billing_engine.license.license_manager import LicenseKeyring, LicenseManager, verify_offline
from billing_engine.log_format import configure_logging
from billing_engine.models.outcomes import ReconciliationMode, RunStatus
from billing_engine.provider.stripe_client import ProviderClient
from billing_engine.services.event_store import EventStore
from billing_engine.services.reconciliation_service import ReconciliationService
from billing_engine.services.subject_data_service import SubjectDataService
from billing_engine.services.tier_change import upgrade_tier
from billing_engine.state.database import get_engine, get_session_factory, transaction
from billing_engine.state.sqlite_adapter import create_local_tables

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="subledger",
    help="subledger - subscription ledger, license keys and Stripe reconciliation",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None
_verbose: bool = False


class ModeOption(str, Enum):
    REPORT = "report"
    AUTO_FIX = "auto-fix"

    def to_mode(self) -> ReconciliationMode:
        return ReconciliationMode.AUTO_FIX if self is ModeOption.AUTO_FIX else ReconciliationMode.REPORT


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Database URL (defaults to BILLING_DATABASE_URL).",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url, _verbose  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    _verbose = verbose


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> BillingSettings:
    overrides: dict[str, Any] = {}
    if _database_url:
        overrides["database_url"] = _database_url
    settings = load_settings(**overrides)
    configure_logging(settings, logging.DEBUG if _verbose else logging.WARNING)
    return settings


@asynccontextmanager
async def _open_state(settings: BillingSettings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a session factory; SQLite databases get their tables on first use."""
    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        if settings.database_url.startswith("sqlite"):
            await create_local_tables(engine)
        yield get_session_factory(engine)
    finally:
        await engine.dispose()


def _run(coro: Awaitable[T]) -> T:
    """Run *coro*, turning billing errors into exit code 3."""
    try:
        return asyncio.run(coro)  # type: ignore[arg-type]
    except BillingError as exc:
        console.print(f"[red]{exc.code.value}: {exc.message}[/red]")
        raise typer.Exit(code=3) from exc


def _emit_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, sort_keys=True, default=str))


def _reconciliation_service(
    factory: async_sessionmaker[AsyncSession],
    settings: BillingSettings,
) -> ReconciliationService:
    return ReconciliationService(factory, settings, ProviderClient(settings), LicenseKeyring.from_settings(settings))


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create all tables (local SQLite or dev databases; production uses Alembic)."""
    settings = _settings()

    async def _go() -> None:
        engine = get_engine(settings.database_url)
        try:
            await create_local_tables(engine)
        finally:
            await engine.dispose()

    _run(_go())
    console.print("[green]Tables created.[/green]")


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


@app.command("reconcile")
def reconcile(
    mode: ModeOption = typer.Option(ModeOption.REPORT, "--mode", help="report or auto-fix."),
) -> None:
    """Compare the ledger with Stripe and record (or fix) every discrepancy."""
    settings = _settings()
    if not settings.is_stripe_configured():
        console.print("[red]BILLING_STRIPE_SECRET_KEY is not set.[/red]")
        raise typer.Exit(code=3)

    async def _go() -> Any:
        async with _open_state(settings) as factory:
            service = _reconciliation_service(factory, settings)
            return await service.run(mode.to_mode())

    summary = _run(_go())
    if _json_output:
        _emit_json(summary.model_dump(mode="json"))
    else:
        display_summary(console, summary)
    if summary.status == RunStatus.PARTIAL:
        raise typer.Exit(code=2)


@app.command("discrepancies")
def discrepancies(
    show_all: bool = typer.Option(False, "--all", help="Include resolved discrepancies."),
    run_id: str | None = typer.Option(None, "--run-id", help="Only this run."),
    limit: int = typer.Option(100, "--limit", min=1, max=1000),
) -> None:
    """List reconciliation discrepancies, newest first."""
    settings = _settings()

    async def _go() -> list[dict[str, Any]]:
        async with _open_state(settings) as factory:
            service = _reconciliation_service(factory, settings)
            return await service.list_discrepancies(unresolved_only=not show_all, run_id=run_id, limit=limit)

    rows = _run(_go())
    if _json_output:
        _emit_json(rows)
    else:
        display_discrepancies(console, rows)


@app.command("resolve")
def resolve(
    discrepancy_id: int = typer.Argument(..., help="Discrepancy id."),
    resolved_by: str = typer.Option(..., "--by", help="Who is resolving it."),
    note: str = typer.Option(..., "--note", help="Resolution note."),
) -> None:
    """Mark a discrepancy as resolved."""
    settings = _settings()

    async def _go() -> dict[str, Any] | None:
        async with _open_state(settings) as factory:
            service = _reconciliation_service(factory, settings)
            return await service.resolve_discrepancy(discrepancy_id, resolved_by, note)

    result = _run(_go())
    if result is None:
        console.print(f"[red]Discrepancy {discrepancy_id} not found.[/red]")
        raise typer.Exit(code=1)
    if _json_output:
        _emit_json(result)
    else:
        console.print(f"[green]Discrepancy {discrepancy_id} resolved.[/green]")


@app.command("failed-events")
def failed_events(limit: int = typer.Option(50, "--limit", min=1, max=1000)) -> None:
    """List webhook events whose handling failed."""
    settings = _settings()

    async def _go() -> list[dict[str, Any]]:
        async with _open_state(settings) as factory:
            async with transaction(factory) as session:
                rows = await EventStore(session).list_failed(limit)
                return [
                    {
                        "external_event_id": row.external_event_id,
                        "event_type": row.event_type,
                        "processed_at": row.processed_at.isoformat(),
                        "error_message": row.error_message,
                    }
                    for row in rows
                ]

    rows = _run(_go())
    if _json_output:
        _emit_json(rows)
    else:
        display_failed_events(console, rows)


# ---------------------------------------------------------------------------
# Subject data
# ---------------------------------------------------------------------------


@app.command("export")
def export(
    organization_id: str = typer.Argument(..., help="Organization to export."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write the export here instead of stdout."),
) -> None:
    """Export everything held for an organization as versioned JSON."""
    settings = _settings()

    async def _go() -> Any:
        async with _open_state(settings) as factory:
            return await SubjectDataService(factory).export_subject_data(organization_id)

    document = _run(_go())
    payload = json.dumps(document.model_dump(mode="json"), indent=2, sort_keys=True)
    if output is None:
        typer.echo(payload)
        return
    output.write_text(payload + "\n", encoding="utf-8")
    console.print(f"Export written to [bold]{output}[/bold]")


@app.command("delete")
def delete(
    organization_id: str = typer.Argument(..., help="Organization to erase."),
    dry_run: bool = typer.Option(True, "--dry-run/--execute", help="Count only (default) or delete."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete an organization's customers, subscriptions, invoices and keys."""
    if not dry_run and not yes:
        typer.confirm(f"Permanently delete billing data for {organization_id}?", abort=True)
    settings = _settings()

    async def _go() -> Any:
        async with _open_state(settings) as factory:
            return await SubjectDataService(factory).delete_subject_data(organization_id, dry_run=dry_run)

    counts = _run(_go())
    if _json_output:
        _emit_json({"organization_id": organization_id, "dry_run": counts.dry_run, "counts": counts.counts()})
    else:
        display_deletion(console, counts)


# ---------------------------------------------------------------------------
# Subscriptions and license keys
# ---------------------------------------------------------------------------


@app.command("change-tier")
def change_tier(
    subscription_id: str = typer.Argument(..., help="Local subscription id."),
    tier: LicenseTier = typer.Argument(..., help="New tier; must be an upgrade."),
) -> None:
    """Upgrade a subscription's tier and rotate its license key."""
    settings = _settings()

    async def _go() -> Any:
        async with _open_state(settings) as factory:
            return await upgrade_tier(factory, settings, LicenseKeyring.from_settings(settings), subscription_id, tier)

    change, issued = _run(_go())
    previous = change.previous_tier.value if change.previous_tier else "-"
    if _json_output:
        _emit_json(
            {
                "subscription_id": change.subscription_id,
                "previous_tier": previous,
                "tier": change.tier.value,
                "credential": issued.credential if issued else None,
            }
        )
        return
    console.print(f"[green]Subscription {subscription_id}: {previous} -> {change.tier.value}[/green]")
    if issued is not None:
        console.print(f"New license key {issued.key_prefix} (expires {issued.expires_at.isoformat()}):")
        typer.echo(issued.credential)


@app.command("reissue-key")
def reissue_key(subscription_id: str = typer.Argument(..., help="Local subscription id.")) -> None:
    """Revoke a subscription's license key and print its replacement."""
    settings = _settings()

    async def _go() -> Any:
        async with _open_state(settings) as factory:
            async with transaction(factory) as session:
                manager = LicenseManager(session, LicenseKeyring.from_settings(settings), settings)
                return await manager.reissue(subscription_id)

    issued = _run(_go())
    if issued is None:
        console.print(f"[yellow]Subscription {subscription_id} is not entitled to a license key.[/yellow]")
        raise typer.Exit(code=1)
    if _json_output:
        _emit_json(issued.model_dump(mode="json"))
        return
    console.print(f"Replacement license key {issued.key_prefix} (expires {issued.expires_at.isoformat()}):")
    typer.echo(issued.credential)


@app.command("validate-key")
def validate_key(
    credential: str = typer.Argument(..., help="The license key to check."),
    offline: bool = typer.Option(False, "--offline", help="Check signature and embedded expiry only."),
) -> None:
    """Check a license key.  Exits 1 when the key is not valid."""
    settings = _settings()
    keyring = LicenseKeyring.from_settings(settings)

    if offline:
        result = verify_offline(keyring.signer, credential)
    else:

        async def _go() -> Any:
            async with _open_state(settings) as factory:
                async with transaction(factory) as session:
                    return await LicenseManager(session, keyring, settings).validate(credential)

        result = _run(_go())

    if _json_output:
        _emit_json(result.model_dump(mode="json"))
    else:
        display_validation(console, result)
    if not result.valid:
        raise typer.Exit(code=1)
