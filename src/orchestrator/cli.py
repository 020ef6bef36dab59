"""Edge Orchestrator CLI (edgeorch).

Usage:
    edgeorch plan -f site.yaml                # Show what apply would do
    edgeorch apply -f site.yaml --yes         # Apply without confirmation
    edgeorch state list                       # Show recorded resources

Exit codes:
    plan:  0 = ok, 1 = error, 2 = changes pending (with --detailed-exitcode)
    apply: 0 = success, 1 = failure, 3 = partial failure
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .dependency import DependencyError
from .main import load, run_apply, setup_logging
from .providers import UnknownResourceTypeError
from .resources import UnresolvedReferenceError
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError
from .state import StateStore, StateStoreError

# Errors raised before any provider call; reported without a traceback
PRE_EXECUTION_ERRORS = (
    SpecLoadError,
    ConfigurationError,
    DependencyError,
    UnresolvedReferenceError,
    UnknownResourceTypeError,
    StateStoreError,
    SecretlessViolationError,
)

PLAN_CHANGES_EXIT_CODE = 2

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_config(
    state: Path | None,
    recreate_missing: bool = False,
    overwrite_drift: bool = False,
) -> Config:
    """Load configuration from the environment and apply CLI overrides."""
    try:
        config = Config.from_env()
        overrides: dict[str, object] = {}
        if state is not None:
            overrides["state_path"] = state
        if recreate_missing:
            overrides["recreate_missing"] = True
        if overwrite_drift:
            overrides["overwrite_drift"] = True
        return dataclasses.replace(config, **overrides) if overrides else config
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


file_option = click.option(
    "--file",
    "-f",
    "desired_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Desired-state YAML document",
)
state_option = click.option(
    "--state",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="State file (default: $ORCHESTRATOR_STATE_PATH)",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text")


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="edgeorch")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Level of the JSON log stream on stderr",
)
def cli(log_level: str) -> None:
    """Edge Orchestrator CLI (edgeorch).

    Plans and applies a declarative edge-hosting stack (bucket, certificate,
    CDN distribution, DNS records) in dependency order.
    """
    setup_logging(getattr(logging, log_level.upper()))


@cli.command()
@file_option
@state_option
@json_option
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help="Exit with 2 when the plan contains changes",
)
@click.pass_context
def plan(
    ctx: click.Context,
    desired_path: Path,
    state: Path | None,
    as_json: bool,
    detailed_exitcode: bool,
) -> None:
    """Show the changes apply would make. Never calls a provider."""
    config = build_config(state)
    try:
        document, orchestrator = load(desired_path, config)
        computed = orchestrator.plan(document)
    except PRE_EXECUTION_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(computed.to_dict(), indent=2))
    else:
        click.echo(computed.summary())

    if detailed_exitcode and computed.has_changes:
        ctx.exit(PLAN_CHANGES_EXIT_CODE)


@cli.command()
@file_option
@state_option
@json_option
@click.option("--yes", "-y", is_flag=True, help="Apply without asking for confirmation")
@click.option(
    "--recreate-missing",
    is_flag=True,
    help="Re-create resources that were deleted outside the orchestrator",
)
@click.option(
    "--overwrite-drift",
    is_flag=True,
    help="Overwrite attributes changed outside the orchestrator",
)
@click.pass_context
def apply(
    ctx: click.Context,
    desired_path: Path,
    state: Path | None,
    as_json: bool,
    yes: bool,
    recreate_missing: bool,
    overwrite_drift: bool,
) -> None:
    """Plan, confirm and apply the desired state."""
    config = build_config(state, recreate_missing, overwrite_drift)
    try:
        document, orchestrator = load(desired_path, config)
        computed = orchestrator.plan(document)
    except PRE_EXECUTION_ERRORS as e:
        raise click.ClickException(str(e)) from e

    if not as_json:
        click.echo(computed.summary())

    # An unchanged plan still runs; its refresh reports out-of-band deletions and drift
    if not computed.has_changes:
        if not as_json:
            click.echo("No changes. Checking recorded resources for drift.")
    elif not yes and not click.confirm("Apply these changes?", default=False):
        click.echo("Apply cancelled.")
        ctx.exit(1)

    result = asyncio.run(run_apply(orchestrator, computed))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(result.report())
    ctx.exit(result.exit_code)


# =============================================================================
# State Commands
# =============================================================================


@cli.group("state")
def state_group() -> None:
    """Inspect the state file."""
    pass


@state_group.command("list")
@state_option
@json_option
def state_list(state: Path | None, as_json: bool) -> None:
    """List recorded resources."""
    config = build_config(state)
    try:
        records = StateStore(config.state_path).load()
    except StateStoreError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps({k: r.to_dict() for k, r in sorted(records.items())}, indent=2))
        return

    if not records:
        click.echo(f"No resources recorded in {config.state_path}")
        return
    width = max(len(node_id) for node_id in records)
    for node_id, record in sorted(records.items()):
        click.echo(f"{node_id:<{width}}  {record.status.value:<13}  {record.provider_id or '-'}")


if __name__ == "__main__":
    cli()
