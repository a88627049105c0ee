#!/usr/bin/env python
"""
CLI management commands for the storefront security pipeline.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar

import click
import uvicorn
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.audit.service import AuditService
from storefront.db import create_all_tables_async, dispose_engine, get_session_maker, utcnow
from storefront.exceptions import UserNotFoundError
from storefront.security.aggregator import SecurityAggregator
from storefront.security.lockout import AccountLockService, AdminContext
from storefront.settings import Settings, get_settings

T = TypeVar("T")


@dataclass
class CLIDependencies:
    """Bundle of injectable dependencies used by CLI commands."""

    session_factory: Callable[[], async_sessionmaker[AsyncSession]]
    create_tables: Callable[[], Awaitable[None]]
    dispose: Callable[[], Awaitable[None]]
    settings: Callable[[], Settings]


def _get_cli_dependencies() -> CLIDependencies:
    """Return the default dependency bundle for CLI commands."""
    return CLIDependencies(
        session_factory=get_session_maker,
        create_tables=create_all_tables_async,
        dispose=dispose_engine,
        settings=get_settings,
    )


def _run(deps: CLIDependencies, work: Callable[[], Awaitable[T]]) -> T:
    """Run ``work`` on a fresh event loop and release the engine afterwards."""

    async def _runner() -> T:
        try:
            return await work()
        finally:
            await deps.dispose()

    return asyncio.run(_runner())


@click.group()
def cli() -> None:
    """Storefront security pipeline CLI."""
    pass


@cli.command("init-db")
def init_db() -> None:
    """Create the users and activity log tables."""
    deps = _get_cli_dependencies()
    click.echo("Initializing database...")
    _run(deps, deps.create_tables)
    click.echo("Database initialized successfully!")


@cli.command("purge-audit")
@click.option("--before", "days", type=click.IntRange(min=0), required=True,
              help="Delete activity records older than this many days")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def purge_audit(days: int, yes: bool) -> None:
    """Bulk-delete old activity records."""
    deps = _get_cli_dependencies()
    cutoff = utcnow() - timedelta(days=days)
    if not yes:
        click.confirm(f"Delete all activity records before {cutoff.isoformat()}?", abort=True)

    async def _purge() -> int:
        async with deps.session_factory()() as session:
            return await AuditService(session).purge(cutoff)

    deleted = _run(deps, _purge)
    click.echo(f"Deleted {deleted} activity records.")


@cli.command()
def stats() -> None:
    """Print the security dashboard statistics as JSON."""
    deps = _get_cli_dependencies()

    async def _stats() -> dict[str, Any]:
        async with deps.session_factory()() as session:
            result = await SecurityAggregator(session, deps.settings()).system_stats()
            return result.model_dump(mode="json", by_alias=True)

    click.echo(json.dumps(_run(deps, _stats), indent=2))


@cli.command("unlock-user")
@click.argument("email")
def unlock_user(email: str) -> None:
    """Unlock an account and reset its failed login counter."""
    deps = _get_cli_dependencies()

    async def _unlock() -> str:
        async with deps.session_factory()() as session:
            service = AccountLockService(session, deps.settings().security.lockout)
            user = await service.get_user_by_email(email)
            snapshot = await service.unlock(user.id, context=AdminContext(user_agent="cli"))
            return snapshot.state.value

    try:
        state = _run(deps, _unlock)
    except UserNotFoundError:
        raise click.ClickException(f"No user with email {email}") from None
    click.echo(f"User {email} unlocked (state: {state}).")


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to settings.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to settings.port)")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Run the API server with uvicorn."""
    app_settings = _get_cli_dependencies().settings()
    uvicorn.run(
        "storefront.main:create_app",
        factory=True,
        host=host or app_settings.host,
        port=port or app_settings.port,
        reload=reload,
        log_config=None,
    )


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
