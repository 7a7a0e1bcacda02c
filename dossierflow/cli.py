"""Command line interface for managing catalogs and dossiers."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer

from dossierflow.catalog import load_catalog
from dossierflow.config import load_config
from dossierflow.engine import StepTransitionEngine
from dossierflow.errors import DossierflowError
from dossierflow.persistence import get_repository

app = typer.Typer(help="CLI for dossierflow step workflows")

catalog_app = typer.Typer(help="Commands for managing step catalogs")
dossier_app = typer.Typer(help="Commands for inspecting dossiers")

app.add_typer(catalog_app, name="catalog")
app.add_typer(dossier_app, name="dossier")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Logging level (defaults to the configured level)"
    ),
) -> None:
    """dossierflow CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))


def _engine() -> StepTransitionEngine:
    return StepTransitionEngine(get_repository(), config=load_config())


def _fail(message: str) -> None:
    typer.echo(message)
    raise typer.Exit(code=1)


@catalog_app.command("import")
def catalog_import(
    path: Path,
    product_id: Optional[str] = typer.Option(None, help="Overrides the product_id in the file"),
) -> None:
    """Load a step catalog from a YAML file and store it."""
    try:
        catalog = load_catalog(path, product_id=product_id)
    except (OSError, DossierflowError) as exc:
        _fail(f"Could not load catalog: {exc}")
    asyncio.run(get_repository().save_catalog(catalog))
    typer.echo(f"Imported {len(catalog.steps)} steps for product {catalog.product_id}")


@catalog_app.command("show")
def catalog_show(product_id: str) -> None:
    """Print the ordered steps of a product."""
    catalog = asyncio.run(get_repository().get_step_catalog(product_id))
    if catalog is None:
        _fail("Catalog not found")
    typer.echo(f"Catalog {catalog.product_id}")
    for step in catalog.steps:
        line = f"  {step.position}\t{step.code}\t{step.type.value}"
        if step.timer_delay_minutes:
            line += f"\t{step.timer_delay_minutes} min"
        typer.echo(line)


@dossier_app.command("create")
def dossier_create(
    product_id: str,
    dossier_id: Optional[str] = typer.Option(None, help="Explicit dossier id"),
) -> None:
    """Open a new dossier for a product."""
    try:
        dossier = asyncio.run(_engine().create_dossier(product_id, dossier_id=dossier_id))
    except DossierflowError as exc:
        _fail(str(exc))
    typer.echo(dossier.id)


@dossier_app.command("view")
def dossier_view(dossier_id: str) -> None:
    """Show the active step of a dossier and what can be done with it."""
    try:
        view = asyncio.run(_engine().get_active_step_view(dossier_id))
    except DossierflowError as exc:
        _fail(str(exc))

    typer.echo(f"Dossier {dossier_id}")
    if view.workflow_complete:
        typer.echo("Workflow complete")
        return
    typer.echo(f"Step {view.index + 1}/{view.total_steps}: {view.step.code} ({view.step.type.value})")
    typer.echo(f"Status: {view.instance.status.value}")
    typer.echo(f"Editable: {'yes' if view.editable else 'no'}")
    if view.blocked:
        until = view.blocked_until.isoformat() if view.blocked_until else "unknown"
        typer.echo(f"Blocked until: {until} ({view.remaining_minutes} min)")
    for issue, types in view.issues.as_missing().items():
        typer.echo(f"Documents {issue}: {', '.join(types)}")
    typer.echo(f"Actions: {', '.join(a.value for a in view.actions) or 'none'}")


@dossier_app.command("events")
def dossier_events(dossier_id: str) -> None:
    """List the audit events recorded for a dossier."""
    events = asyncio.run(get_repository().list_events(dossier_id))
    if not events:
        typer.echo("No events found")
        return
    for event in events:
        typer.echo(
            f"{event.created_at.isoformat()}\t{event.event_type}\t"
            f"{event.entity_type}:{event.entity_id}\t{event.actor_id or '-'}"
        )


if __name__ == "__main__":
    app()
