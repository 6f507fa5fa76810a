"""Command line interface for operating flowgate pipelines."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, List, Optional, TypeVar

import httpx
import typer

from flowgate import get_repository
from flowgate.config import load_config
from flowgate.contracts import EntityRef, EntityType, HistoryStatus, PipelineOutcome
from flowgate.errors import FlowgateError
from flowgate.pipelines import PipelineCatalog
from flowgate.service import ControlPlane, HistorySync, build_control_plane
from flowgate.sources import N8nClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(help="CLI for flowgate promotion pipelines")

# Command groups
pipeline_app = typer.Typer(help="Commands for running promotion pipelines")
build_app = typer.Typer(help="Commands for inspecting builds")
history_app = typer.Typer(help="Commands for querying deployment history")
workflows_app = typer.Typer(help="Commands for browsing development workflows")

app.add_typer(pipeline_app, name="pipeline")
app.add_typer(build_app, name="build")
app.add_typer(history_app, name="history")
app.add_typer(workflows_app, name="workflows")

EXIT_FAILED = 1
EXIT_AWAITING_APPROVAL = 2


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for flowgate output"),
) -> None:
    """Flowgate CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _with_control_plane(action: Callable[[ControlPlane], Awaitable[T]]) -> T:
    async def runner() -> T:
        plane = build_control_plane()
        try:
            return await action(plane)
        finally:
            await plane.aclose()

    try:
        return asyncio.run(runner())
    except FlowgateError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILED)
    except ValueError as exc:
        typer.secho(f"Invalid input: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILED)


def _split_ids(raw: Optional[str]) -> List[str]:
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


def _echo_outcome(outcome: PipelineOutcome) -> None:
    typer.echo(f"Pipeline {outcome.pipeline}: {outcome.status.value}")
    for step in outcome.steps:
        build = f" ({step.build_url})" if step.build_url else ""
        typer.echo(f"- {step.label}: {step.state.phase.value}{build}")
    if outcome.error:
        typer.echo(f"Error: {outcome.error}")
    approval = outcome.approval
    if outcome.status is HistoryStatus.AWAITING_APPROVAL and approval is not None:
        if approval.message:
            typer.echo(f"Approval: {approval.message}")
        typer.echo(f"Approve at: {approval.input_page_url}")


@app.command("migrate")
def migrate() -> None:
    """Create the deployment history table and indexes if missing."""
    repo = get_repository()
    try:
        asyncio.run(repo.ensure_schema())
    except FlowgateError as exc:
        typer.secho(f"Migration failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILED)
    typer.echo("History schema is up to date")


@pipeline_app.command("list")
def pipeline_list() -> None:
    """List the named pipelines and the ledger action each records."""
    catalog = PipelineCatalog(load_config().jobs)
    for name in catalog.names:
        definition = catalog.get(name)
        typer.echo(f"{name}\t{definition.entity_type.value}\t{definition.action}")


@pipeline_app.command("run")
def pipeline_run(
    name: str,
    entity_id: str,
    entity_name: Optional[str] = typer.Option(None, help="Display name for history"),
    ids: Optional[str] = typer.Option(
        None, help="Comma separated credential ids (promote-credentials)"
    ),
) -> None:
    """
    Run a named pipeline for a workflow or credential set.

    Exits with 0 on success, 2 when the pipeline paused for approval and 1 on
    failure.

    Example:
        flowgate pipeline run push-to-prod 42
        flowgate pipeline run promote-credentials 7 --ids 7,8,9
    """

    async def action(plane: ControlPlane) -> PipelineOutcome:
        definition = plane.catalog.get(name)
        entity = EntityRef(type=definition.entity_type, id=entity_id, name=entity_name)
        parameters = {"ids": _split_ids(ids)} if ids else {}
        return await plane.trigger_pipeline(name, entity, parameters)

    outcome = _with_control_plane(action)
    _echo_outcome(outcome)
    if outcome.status is HistoryStatus.AWAITING_APPROVAL:
        raise typer.Exit(code=EXIT_AWAITING_APPROVAL)
    if outcome.status is HistoryStatus.FAILED:
        raise typer.Exit(code=EXIT_FAILED)


@build_app.command("status")
def build_status(
    build_url: str,
    entity_type: Optional[EntityType] = typer.Option(None, help="Sync result for this entity type"),
    entity_id: Optional[str] = typer.Option(None, help="Sync result for this entity id"),
    entity_name: Optional[str] = typer.Option(None),
    action: Optional[str] = typer.Option(None, help="Ledger action to sync under"),
    ids: Optional[str] = typer.Option(None, help="Comma separated credential ids"),
) -> None:
    """Print the normalized state of a build as JSON."""
    sync = None
    if entity_type and entity_id and action:
        sync = HistorySync(
            entity=EntityRef(type=entity_type, id=entity_id, name=entity_name),
            action=action,
            ids=_split_ids(ids),
        )

    state = _with_control_plane(lambda plane: plane.get_build_state(build_url, sync))
    typer.echo(state.model_dump_json(indent=2))


@build_app.command("respond")
def build_respond(
    build_url: str,
    abort: bool = typer.Option(False, "--abort", help="Abort instead of proceeding"),
) -> None:
    """Proceed (or abort) a build that is waiting for approval."""
    state = _with_control_plane(
        lambda plane: plane.respond_to_approval(build_url, proceed=not abort)
    )
    typer.echo(f"{build_url}: {state.phase.value}")


@history_app.command("summary")
def history_summary(
    days: Optional[int] = typer.Option(None, help="Window size in days"),
    status: str = typer.Option("ALL", help="Filter health counts by status"),
) -> None:
    """Show deployment health counts, pending approvals and recent activity."""
    summary = _with_control_plane(lambda plane: plane.get_history_summary(days, status))
    typer.echo(f"Last {summary.window_days} day(s)")
    for key, total in summary.counts.items():
        typer.echo(f"  {key}: {total}")
    if summary.approvals:
        typer.echo("Pending approvals:")
        for entry in summary.approvals:
            typer.echo(f"  {entry.entity_id}\t{entry.action}\t{entry.build_url or '-'}")
    typer.echo("Recent activity:")
    for entry in summary.activity:
        typer.echo(
            f"  {entry.created_at}\t{entry.entity_type.value}\t{entry.entity_id}"
            f"\t{entry.action}\t{entry.status.value}"
        )


@history_app.command("latest")
def history_latest(
    entity_type: EntityType,
    ids: List[str],
    action: Optional[str] = typer.Option(None, help="Restrict to one action"),
) -> None:
    """Print the latest ledger row for each id as JSON."""
    latest = _with_control_plane(
        lambda plane: plane.latest_history(entity_type, ids, action)
    )
    typer.echo(
        json.dumps(
            {k: v.model_dump(mode="json") for k, v in latest.items()}, indent=2
        )
    )


def _n8n_client() -> N8nClient:
    return N8nClient.from_config(load_config().n8n)


@workflows_app.command("list")
def workflows_list(
    action: Optional[str] = typer.Option(None, help="Latest status for this action only"),
) -> None:
    """List development workflows with their latest deployment status."""

    async def collect():
        client = _n8n_client()
        try:
            workflows = await client.list_workflows()
        finally:
            await client.aclose()
        latest = await get_repository().latest_by_entity(
            EntityType.WORKFLOW, [w.id for w in workflows], action
        )
        return workflows, latest

    try:
        workflows, latest = asyncio.run(collect())
    except (FlowgateError, httpx.HTTPError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=EXIT_FAILED)

    for workflow in workflows:
        entry = latest.get(workflow.id)
        status = f"{entry.action} {entry.status.value}" if entry else "-"
        active = "active" if workflow.active else "inactive"
        typer.echo(f"{workflow.id}\t{workflow.name or '-'}\t{active}\t{status}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
