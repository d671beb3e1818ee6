"""
OpenEntity CLI

Command-line interface for inspecting the entity runtime.

Commands:
    openentity validate FILE                 — Run the tool validator on a file
    openentity tools DIR                     — Load a tools directory, list active and failed tools
    openentity providers CONFIG              — Show provider health and status
    openentity ask PROMPT --providers CONFIG — Dispatch a generate request

Usage:
    pip install openentity
    openentity validate storage/entity/tools/word_count.py
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import click

from openentity import __version__
from openentity.config import RuntimeSettings, load_provider_configs
from openentity.exceptions import AllProvidersUnavailableError, ConfigurationError
from openentity.logging import configure_logging
from openentity.providers.dispatcher import ProviderDispatcher
from openentity.tools.registry import ToolRegistry
from openentity.tools.sandbox import ToolSandbox
from openentity.tools.validator import ToolValidator


@click.group()
@click.version_option(version=__version__, prog_name="openentity")
@click.option("--log-level", default="WARNING", help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
def cli(log_level: str, json_logs: bool) -> None:
    """OpenEntity — runtime core for a self-extending autonomous agent"""
    configure_logging(level=log_level, json_output=json_logs)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json-output", is_flag=True, help="Output as JSON")
def validate(file: Path, json_output: bool) -> None:
    """Run the tool validator on a source file."""
    report = ToolValidator().check(file.read_text(encoding="utf-8"))

    if json_output:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    else:
        click.echo(f"\n  Validation: {file.name}")
        click.echo(f"  {'─' * 50}")
        click.echo(f"  Stage:    {report.stage.value}")
        for error in report.errors:
            click.echo(f"  ✗ {error}")
        for warning in report.warnings:
            click.echo(f"  ! {warning}")
        if report.passed:
            click.echo("  ✓ Tool can be loaded")
        click.echo()

    if not report.passed:
        raise SystemExit(1)


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
def tools(directory: Path) -> None:
    """Load a tools directory and list active and failed tools."""
    settings = _settings()
    registry = ToolRegistry(sandbox=ToolSandbox(settings.sandbox), tools_dir=directory)
    asyncio.run(registry.load_directory())

    click.echo(f"\n  Tools in {directory}")
    click.echo(f"  {'─' * 50}")
    specs = registry.list()
    if not specs:
        click.echo("  No active tools")
    for spec in specs:
        click.echo(f"  ✓ {spec.name:<24} {spec.description}")

    failed = registry.failed_tools()
    if failed:
        click.echo("\n  Failed (need repair):")
        for descriptor in failed:
            stage = descriptor.rejection_stage.value if descriptor.rejection_stage else "unknown"
            click.echo(f"  ✗ {descriptor.name:<24} [{stage}]")
            for error in descriptor.rejection_errors:
                click.echo(f"      {error}")
    click.echo()


@cli.command()
@click.argument("config", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def providers(config: Path) -> None:
    """Show provider health and status from a JSON provider config file."""
    dispatcher = _dispatcher(config)

    click.echo("\n  LLM Providers")
    click.echo(f"  {'─' * 50}")
    order = {c.name: i for i, c in enumerate(dispatcher.candidates())}
    snapshots = sorted(dispatcher.health(), key=lambda h: order.get(h.name, len(order)))
    if not snapshots:
        click.echo("  No providers configured")
    for health in snapshots:
        default = " (default)" if health.is_default else ""
        click.echo(
            f"  {health.status:<9} {health.name:<20} {health.driver_kind.value:<11} "
            f"{health.model_id} priority={health.priority} errors={health.error_count}{default}"
        )
        if health.last_error:
            click.echo(f"            last error: {health.last_error}")
    click.echo()


@cli.command()
@click.argument("prompt")
@click.option(
    "--providers",
    "providers_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="JSON provider config file",
)
@click.option("--system", default=None, help="Optional system prompt")
def ask(prompt: str, providers_file: Path, system: str | None) -> None:
    """Dispatch a generate request across the configured providers."""
    dispatcher = _dispatcher(providers_file)

    async def _ask() -> str:
        if system:
            return await dispatcher.generate_with_system(system, prompt)
        return await dispatcher.generate(prompt)

    try:
        reply = asyncio.run(_ask())
    except AllProvidersUnavailableError as e:
        click.echo(f"Error: {e}", err=True)
        for name, error in e.attempts:
            click.echo(f"  {name}: {error}", err=True)
        if e.skipped:
            click.echo(f"  skipped (circuit open): {', '.join(e.skipped)}", err=True)
        raise SystemExit(1)

    click.echo(reply)
    click.echo(f"\n  [{dispatcher.current_provider} · {dispatcher.current_model}]", err=True)


def _settings() -> RuntimeSettings:
    try:
        return RuntimeSettings.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _dispatcher(path: Path) -> ProviderDispatcher:
    settings = _settings()
    try:
        configs = load_provider_configs(path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return ProviderDispatcher([settings.apply_driver_defaults(c) for c in configs])


if __name__ == "__main__":
    cli()
