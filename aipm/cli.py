"""aipm-state CLI: inspect and maintain the cached workspace state."""

from __future__ import annotations

import functools
import json
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from aipm import __version__
from aipm.errors import StateError, StateValidationError
from aipm.utils.log import LEVELS, configure_logging

console = Console()
err_console = Console(stderr=True)


def _handles_errors(func):
    """Turn StateError subclasses into a message and their exit code."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StateError as e:
            err_console.print(f"[red]Error:[/] {e}")
            for detail in getattr(e, "issues", None) or getattr(e, "mismatches", None) or []:
                err_console.print(f"  [red]x[/] {detail}")
            sys.exit(e.exit_code)

    return wrapper


def _engine(ctx: click.Context):
    """The StateEngine for this invocation, created on first use."""
    from aipm.state.engine import StateEngine

    if ctx.obj.get("engine") is None:
        engine = StateEngine(ctx.obj["repo"])
        if not ctx.obj.get("log_level"):
            level = engine.config.raw.get("defaults", {}).get("logging", {}).get("level", "info")
            configure_logging(level)
        ctx.obj["engine"] = engine
    return ctx.obj["engine"]


def _echo_value(value) -> None:
    if isinstance(value, str):
        click.echo(value)
    else:
        click.echo(json.dumps(value, indent=2, ensure_ascii=False))


@click.group()
@click.version_option(version=__version__)
@click.option("--repo", default=".", type=click.Path(file_okay=False), help="Repository root")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(LEVELS, case_sensitive=False),
    help="Log level (default: defaults.logging.level from opinions.yaml)",
)
@click.pass_context
def main(ctx: click.Context, repo: str, log_level: str | None):
    """aipm-state: cached, lock-protected workspace state.

    Compiles workspace opinions, snapshots the repository and derives the
    decisions other tooling asks about (can I branch? can I merge? what
    should be cleaned up?).
    """
    ctx.ensure_object(dict)
    ctx.obj.setdefault("repo", repo)
    ctx.obj["log_level"] = log_level
    configure_logging(log_level or "info")


# ── Lifecycle ────────────────────────────────────────────────────────


@main.command()
@click.pass_context
@_handles_errors
def init(ctx: click.Context):
    """Build the state document from scratch."""
    engine = _engine(ctx)
    console.print("\n[bold blue]aipm[/] Initializing workspace state\n")
    engine.initialize()
    console.print(f"  [green]v[/] Written to {engine.store.state_path}")


@main.command()
@click.argument(
    "section",
    default="all",
    type=click.Choice(["all", "computed", "runtime", "branches", "decisions"]),
)
@click.pass_context
@_handles_errors
def refresh(ctx: click.Context, section: str):
    """Recompute SECTION of the state document (default: all)."""
    engine = _engine(ctx)
    doc = engine.refresh(section)
    console.print(f"  [green]v[/] Refreshed {section} at {doc['metadata']['lastRefresh']}")


# ── Reads ────────────────────────────────────────────────────────────


@main.command()
@click.argument("path")
@click.option("--default", "default", default=None, help="Printed when PATH is absent")
@click.pass_context
@_handles_errors
def get(ctx: click.Context, path: str, default: str | None):
    """Print the value at dotted PATH (e.g. decisionSet.canCreateBranch)."""
    engine = _engine(ctx)
    try:
        value = engine.get(path)
    except KeyError:
        if default is None:
            err_console.print(f"[red]No value at[/] {path}")
            sys.exit(1)
        value = default
    _echo_value(value)


@main.command()
@click.pass_context
@_handles_errors
def dump(ctx: click.Context):
    """Print the whole state document as JSON."""
    click.echo(_engine(ctx).dump())


@main.command()
@click.pass_context
@_handles_errors
def summary(ctx: click.Context):
    """Show the key facts and decisions at a glance."""
    data = _engine(ctx).summary()

    table = Table(title=f"Workspace {data['workspace']}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        if isinstance(value, bool):
            value = "[green]yes[/]" if value else "[red]no[/]"
        table.add_row(key, str(value))
    console.print(table)


@main.command()
@click.pass_context
@_handles_errors
def cleanup(ctx: click.Context):
    """List branches the lifecycle rules mark for deletion."""
    candidates = _engine(ctx).cleanup_branches()
    if not candidates:
        console.print("[green]No branches need cleanup.[/]")
        return

    table = Table(title=f"Cleanup Candidates ({len(candidates)})")
    table.add_column("Branch", style="cyan")
    table.add_column("Reason")
    for candidate in candidates:
        table.add_row(candidate["branch"], candidate["reason"])
    console.print(table)


# ── Validation ───────────────────────────────────────────────────────


@main.command()
@click.pass_context
@_handles_errors
def validate(ctx: click.Context):
    """Validate the stored document and the workspace configuration."""
    from aipm.config.loader import validate_configuration
    from aipm.state.schema import validate_document

    engine = _engine(ctx)
    doc = engine.store.read()
    if doc is None:
        console.print("[yellow]No state document yet. Run 'aipm-state init'.[/]")
        return

    issues = validate_document(doc)
    if issues:
        raise StateValidationError("State document failed validation", issues)
    console.print("  [green]v[/] State document valid")

    config_issues = validate_configuration(engine.config.raw)
    if config_issues:
        raise StateValidationError("Configuration failed validation", config_issues)
    console.print("  [green]v[/] Configuration valid")


@main.command()
@click.pass_context
@_handles_errors
def check(ctx: click.Context):
    """Fail unless the cached state matches the live repository."""
    from aipm.sync.drift import DriftReconciler

    DriftReconciler(_engine(ctx)).validate_against_truth()
    console.print("[green]State matches repository.[/]")


# ── Drift ────────────────────────────────────────────────────────────


@main.command()
@click.option(
    "--mode",
    default="report-only",
    type=click.Choice(["report-only", "interactive", "auto"]),
    help="What to do about drift",
)
@click.pass_context
@_handles_errors
def drift(ctx: click.Context, mode: str):
    """Compare cached state with the repository and optionally repair it."""
    from aipm.sync.drift import DriftReconciler

    console.print("\n[bold blue]aipm[/] Drift detection\n")
    report = DriftReconciler(_engine(ctx)).repair(mode)

    if not report.has_drift:
        console.print(f"  [green]OK[/] {report.summary()}")
        return

    label = "[green]REPAIRED[/]" if report.repaired else "[red]DRIFT[/]"
    console.print(Panel(report.summary(), title="Drift Result"))
    for item in report.items:
        console.print(f"  {label} {item.describe()}")


if __name__ == "__main__":
    main()
