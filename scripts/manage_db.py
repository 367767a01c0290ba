#!/usr/bin/env python3
"""
Database management script for the season rewards backend.
"""

import asyncio
import sys
from pathlib import Path

# Add app to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy import select

from alembic.config import Config
from alembic import command
from app.core.database import init_database, close_database, get_async_session, DatabaseManager
from app.core.logging import setup_logging, get_logger
from app.models.distribution import ExecutionProgress
from app.models.finalized import FinalizedSeason

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")


@app.command()
def init():
    """Create all tables without migrations (local development)."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("Database initialized")

    asyncio.run(_init())


@app.command()
def upgrade(revision: str = "head"):
    """Apply migrations."""
    alembic_cfg = Config("alembic.ini")
    command.upgrade(alembic_cfg, revision)

    console.print(f"Database upgraded to: {revision}")


@app.command()
def downgrade(revision: str):
    """Downgrade database to specific revision."""
    alembic_cfg = Config("alembic.ini")
    command.downgrade(alembic_cfg, revision)

    console.print(f"Database downgraded to: {revision}")


@app.command()
def current():
    """Show current database revision."""
    command.current(Config("alembic.ini"))


@app.command()
def reset():
    """Drop all tables."""
    if not typer.confirm("Drop all tables, including finalized season snapshots?"):
        console.print("Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("All tables dropped")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health():
        setup_logging()
        await init_database()
        is_healthy = await DatabaseManager.health_check()
        await close_database()

        if not is_healthy:
            console.print("[red]Database health check failed[/red]")
            sys.exit(1)
        console.print("Database is healthy")

    asyncio.run(_health())


@app.command()
def seasons(limit: int = 10):
    """List finalized seasons and their latest distribution."""
    table = Table(title="Finalized Seasons")
    table.add_column("Season", style="cyan")
    table.add_column("Entries")
    table.add_column("Total votes")
    table.add_column("Snapshot")
    table.add_column("Distribution", style="green")

    async def _seasons():
        setup_logging()
        await init_database()

        async with get_async_session() as session:
            result = await session.execute(
                select(FinalizedSeason)
                .order_by(FinalizedSeason.season_number.desc())
                .limit(limit)
            )
            for snapshot in result.scalars().all():
                latest = await session.execute(
                    select(ExecutionProgress)
                    .where(ExecutionProgress.season_number == snapshot.season_number)
                    .order_by(ExecutionProgress.started_at.desc())
                    .limit(1)
                )
                progress = latest.scalar_one_or_none()
                distribution = (
                    f"{progress.status.value} ({progress.successful}/{progress.total_recipients})"
                    if progress else "not started"
                )
                table.add_row(
                    str(snapshot.season_number),
                    str(snapshot.total_content),
                    str(snapshot.total_votes),
                    snapshot.snapshot_hash[:12],
                    distribution
                )

        await close_database()
        console.print(table)

    asyncio.run(_seasons())


if __name__ == "__main__":
    app()
