"""CLI entry point for the tamma workflow engine."""

import asyncio
import importlib
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import httpx
import structlog
import uvicorn

from tamma.config.settings import TammaSettings
from tamma.engine.orchestrator import WorkflowOrchestrator
from tamma.events.backends import FileEventBackend
from tamma.events.buffer import EventBuffer
from tamma.events.store import EventStore
from tamma.exceptions import ConfigurationError, TammaError
from tamma.models.events import EventFilter
from tamma.providers.base import AIProvider, GitPlatform
from tamma.server import create_app
from tamma.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

ProviderFactory = Callable[[TammaSettings], tuple[AIProvider, GitPlatform]]


@click.group()
@click.option("--config", default="tamma.yaml", help="Path to configuration file")
@click.option("--log-level", default="INFO", help="Logging level")
@click.option("--json-logs/--console-logs", default=True, help="Log format")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str, json_logs: bool) -> None:
    """tamma: issue-to-merge workflow orchestration engine."""
    configure_logging(log_level, json_output=json_logs)

    config_path = Path(config)
    try:
        settings = TammaSettings.from_yaml(str(config_path)) if config_path.exists() else TammaSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)
    except Exception as e:
        click.echo(f"Unexpected error loading configuration: {e}", err=True)
        log.error("config_error_unexpected", exc_info=True)
        sys.exit(1)

    ctx.obj = {"settings": settings}


def _load_provider_factory(path: str) -> ProviderFactory:
    """Import ``module:callable`` returning an (AIProvider, GitPlatform) pair."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Provider factory must look like 'package.module:factory', got '{path}'")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load provider factory '{path}': {e}") from e
    if not callable(factory):
        raise ConfigurationError(f"Provider factory '{path}' is not callable")
    return factory


@cli.command()
@click.option(
    "--providers",
    "providers_path",
    required=True,
    help="Provider factory as 'package.module:factory' returning (ai, git)",
)
@click.option("--host", default=None, help="Bind address (defaults to server.host)")
@click.option("--port", type=int, default=None, help="Port (defaults to server.port)")
@click.pass_context
def serve(ctx: click.Context, providers_path: str, host: str | None, port: int | None) -> None:
    """Run the engine with its HTTP control API."""
    settings: TammaSettings = ctx.obj["settings"]
    try:
        factory = _load_provider_factory(providers_path)
        asyncio.run(_serve(settings, factory, host or settings.server.host, port or settings.server.port))
    except TammaError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("serve_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)


async def _serve(settings: TammaSettings, factory: ProviderFactory, host: str, port: int) -> None:
    ai, git = factory(settings)
    orchestrator = WorkflowOrchestrator.from_settings(settings, ai, git)
    await orchestrator.start()
    resumed = await orchestrator.recover()
    log.info("engine_started", host=host, port=port, resumed=len(resumed))

    server = uvicorn.Server(uvicorn.Config(create_app(orchestrator), host=host, port=port, log_config=None))
    try:
        await server.serve()
    finally:
        await orchestrator.shutdown()


def _open_store(settings: TammaSettings) -> EventStore:
    return EventStore(
        FileEventBackend(settings.event_store.directory),
        EventBuffer(settings.event_store.buffer_path),
    )


@cli.command()
@click.option("--correlation-id", default=None, help="Only events of this correlation id")
@click.option("--type", "event_type", default=None, help="Only events of this type")
@click.option("--query", "-q", default=None, help="Full-text search over type and payload")
@click.option("--limit", type=int, default=100, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@click.pass_context
def events(
    ctx: click.Context,
    correlation_id: str | None,
    event_type: str | None,
    query: str | None,
    limit: int,
    offset: int,
) -> None:
    """Print stored events as JSON lines."""
    settings: TammaSettings = ctx.obj["settings"]
    try:
        page = asyncio.run(
            _query_events(
                settings,
                EventFilter(
                    correlation_id=correlation_id,
                    type=event_type,
                    full_text=query,
                    limit=limit,
                    offset=offset,
                ),
            )
        )
    except TammaError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    for event in page.events:
        click.echo(event.to_json())
    if page.next_offset is not None:
        click.echo(f"# {page.total} matching, next page at --offset {page.next_offset}", err=True)


async def _query_events(settings: TammaSettings, event_filter: EventFilter) -> Any:
    store = _open_store(settings)
    await store.start()
    try:
        return await store.query(event_filter)
    finally:
        await store.backend.close()


@cli.command()
@click.argument("correlation_id")
@click.option("--upto", type=int, default=None, help="Last sequence number to fold")
@click.pass_context
def replay(ctx: click.Context, correlation_id: str, upto: int | None) -> None:
    """Reconstruct a workflow snapshot from stored events."""
    settings: TammaSettings = ctx.obj["settings"]
    try:
        snapshot = asyncio.run(_replay(settings, correlation_id, upto))
    except TammaError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    click.echo(snapshot.model_dump_json(indent=2))


async def _replay(settings: TammaSettings, correlation_id: str, upto: int | None) -> Any:
    store = _open_store(settings)
    await store.start()
    try:
        return await store.replay(correlation_id, upto)
    finally:
        await store.backend.close()


def _api_url(settings: TammaSettings, url: str | None) -> str:
    return url or f"http://{settings.server.host}:{settings.server.port}"


def _api_post(base_url: str, path: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
    """POST to a running engine and return the JSON response."""
    try:
        response = httpx.post(f"{base_url}{path}", json=body or {}, timeout=30.0)
    except httpx.HTTPError as e:
        click.echo(f"Error: cannot reach engine at {base_url}: {e}", err=True)
        sys.exit(1)
    if response.status_code >= 400:
        detail = response.json().get("detail", response.text) if response.content else response.text
        click.echo(f"Error ({response.status_code}): {detail}", err=True)
        sys.exit(1)
    return response.json()


@cli.command()
@click.argument("issue_ref")
@click.option("--url", default=None, help="Engine API base URL")
@click.pass_context
def start(ctx: click.Context, issue_ref: str, url: str | None) -> None:
    """Start a workflow for an issue on a running engine."""
    data = _api_post(_api_url(ctx.obj["settings"], url), "/workflows", {"issue_ref": issue_ref})
    click.echo(f"Started {data['instance_id']} ({data['correlation_id']})")


@cli.command()
@click.argument("instance_id")
@click.option("--reason", default="cancelled by operator")
@click.option("--url", default=None, help="Engine API base URL")
@click.pass_context
def cancel(ctx: click.Context, instance_id: str, reason: str, url: str | None) -> None:
    """Cancel a workflow instance."""
    data = _api_post(_api_url(ctx.obj["settings"], url), f"/workflows/{instance_id}/cancel", {"reason": reason})
    click.echo(f"{instance_id}: {data['state']}")


@cli.command()
@click.argument("instance_id")
@click.option("--merge", "stage", flag_value="merge", help="Approve the merge instead of the plan")
@click.option("--plan", "stage", flag_value="plan", default=True, help="Approve the plan (default)")
@click.option("--approver", default=None)
@click.option("--url", default=None, help="Engine API base URL")
@click.pass_context
def approve(ctx: click.Context, instance_id: str, stage: str, approver: str | None, url: str | None) -> None:
    """Approve the plan or the merge of a workflow instance."""
    data = _api_post(
        _api_url(ctx.obj["settings"], url),
        f"/workflows/{instance_id}/approve-{stage}",
        {"approver": approver},
    )
    click.echo(f"{instance_id}: {data['state']}")


@cli.command()
@click.argument("escalation_id")
@click.option("--notes", required=True, help="What was done to resolve the escalation")
@click.option("--url", default=None, help="Engine API base URL")
@click.pass_context
def resolve(ctx: click.Context, escalation_id: str, notes: str, url: str | None) -> None:
    """Resolve an escalation so its workflow resumes."""
    data = _api_post(
        _api_url(ctx.obj["settings"], url),
        f"/escalations/{escalation_id}/resolve",
        {"notes": notes},
    )
    click.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    cli()
