"""apiguard CLI - Command Line Interface.

Operator commands for inspecting and adjusting resilience state.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Annotated, TypeVar

import typer

from apiguard import __version__
from apiguard.domain.exceptions import ApiGuardError
from apiguard.infrastructure.config.settings import get_settings
from apiguard.infrastructure.container import ResilienceContainer, build_container
from apiguard.infrastructure.logging.setup import configure_logging, get_logger

T = TypeVar("T")

app = typer.Typer(
    name="apiguard",
    help="Resilience layer for rate-limited external APIs",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """apiguard - rate limits, quotas, circuit breakers and token ledgers."""
    settings = get_settings()
    configure_logging(
        level="DEBUG" if verbose else settings.log_level,
        json_format=settings.environment == "production",
        app_name=settings.app_name,
        environment=settings.environment,
        events_level=settings.events_log_level,
    )


def _run(action: Callable[[ResilienceContainer], Awaitable[T]]) -> T:
    """Run ``action`` against a freshly built container, closing it afterwards."""

    async def _wrapped() -> T:
        container = build_container(get_settings())
        try:
            return await action(container)
        finally:
            await container.close()

    try:
        return asyncio.run(_wrapped())
    except ApiGuardError as e:
        get_logger(__name__).error("cli_command_failed", error=str(e))
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1) from e


@app.command("ledger-status")
def ledger_status(
    owner: Annotated[str, typer.Argument(help="Ledger owner (tenant or user)")],
) -> None:
    """Show an owner's token balance."""
    status = _run(lambda c: c.ledger.get_status(owner))
    typer.echo(f"Owner:             {status.owner}")
    typer.echo(f"Available tokens:  {status.available_tokens}")
    typer.echo(f"Max tokens:        {status.max_tokens}")
    typer.echo(f"Tokens per minute: {status.tokens_per_minute:g}")
    typer.echo(f"Next refill in:    {status.next_refill_in_ms} ms")


@app.command("ledger-reset")
def ledger_reset(
    owner: Annotated[str, typer.Argument(help="Ledger owner (tenant or user)")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Do not ask for confirmation"),
    ] = False,
) -> None:
    """Delete an owner's balance so it is recreated with defaults."""
    if not yes:
        typer.confirm(f"Reset token ledger of {owner}?", abort=True)
    removed = _run(lambda c: c.ledger.reset(owner))
    if removed:
        typer.echo(f"Ledger of {owner} reset.")
    else:
        typer.echo(f"No ledger entry for {owner}; nothing to reset.")


@app.command("ledger-set-max")
def ledger_set_max(
    owner: Annotated[str, typer.Argument(help="Ledger owner (tenant or user)")],
    max_tokens: Annotated[int, typer.Argument(help="New capacity", min=1)],
) -> None:
    """Change an owner's token capacity (e.g. after a plan change)."""
    entry = _run(lambda c: c.ledger.update_max_tokens(owner, max_tokens))
    typer.echo(
        f"Ledger of {owner}: max_tokens={entry.max_tokens}, "
        f"available={entry.whole_tokens}"
    )


@app.command()
def policies() -> None:
    """Print the effective per-operation policies as JSON."""
    settings = get_settings()
    policy_set = settings.policy_set()
    payload = {
        "default": policy_set.default.model_dump(mode="json"),
        "operations": {
            name: policy_set.get(name).model_dump(mode="json") for name in policy_set
        },
    }
    typer.echo(json.dumps(payload, indent=2))


@app.command()
def version() -> None:
    """Show apiguard version information."""
    typer.echo(f"apiguard v{__version__}")
    typer.echo("Resilience layer for rate-limited external APIs")


if __name__ == "__main__":
    app()
