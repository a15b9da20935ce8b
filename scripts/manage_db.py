#!/usr/bin/env python3
"""
Database management script for the RWA event indexer.
"""

import asyncio
import sys
from pathlib import Path

# Add the package root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

import typer
from rich.console import Console
from rich.table import Table

from rwa_indexer.core.config import ContractName, settings
from rwa_indexer.core.database import init_database, close_database, DatabaseManager
from rwa_indexer.core.exceptions import IndexerException
from rwa_indexer.core.logging import setup_logging, get_logger
from rwa_indexer.services.checkpoint_store import CheckpointStore
from rwa_indexer.services.event_repository import EventRepository

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")


def _checkpoint_store(session_maker) -> CheckpointStore:
    return CheckpointStore(session_maker, lambda name: settings.start_block(ContractName(name)))


@app.command()
def init():
    """Initialize database with tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health() -> bool:
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        sys.exit(1)


@app.command()
def checkpoints():
    """Show the checkpoint of every contract."""
    table = Table(title="Indexer Checkpoints")
    table.add_column("Contract", style="cyan")
    table.add_column("Last Block", style="green", justify="right")
    table.add_column("Block Hash")
    table.add_column("Updated")

    async def _checkpoints():
        setup_logging()
        session_maker = await init_database()
        try:
            store = _checkpoint_store(session_maker)
            for name in ContractName:
                checkpoint = await store.get_checkpoint(name.value)
                table.add_row(
                    name.value,
                    str(checkpoint.last_processed_block),
                    checkpoint.last_block_hash or "-",
                    checkpoint.updated_at.isoformat() if checkpoint.updated_at else "not stored",
                )
        finally:
            await close_database()

    asyncio.run(_checkpoints())
    console.print(table)


@app.command()
def rewind(
    contract: ContractName = typer.Argument(..., help="Contract whose checkpoint moves"),
    block: int = typer.Argument(..., help="Last block to treat as processed"),
):
    """Force a contract's checkpoint back, e.g. after a chain reorganization."""
    confirm = typer.confirm(
        f"Rewind {contract.value} to block {block}? Blocks after it will be re-indexed."
    )
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _rewind():
        setup_logging()
        session_maker = await init_database()
        try:
            store = _checkpoint_store(session_maker)
            await store.advance(contract.value, block, block_hash=None, force=True)
        finally:
            await close_database()

    try:
        asyncio.run(_rewind())
    except IndexerException as e:
        console.print(f"❌ Rewind failed: {e.message}")
        sys.exit(1)

    logger.warning("Checkpoint rewound by operator", contract=contract.value, block=block)
    console.print(f"⏪ {contract.value} rewound to block {block}")


@app.command()
def stats():
    """Show stored event counts and swap volume."""
    table = Table(title="Indexed Events")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green", justify="right")

    async def _stats():
        setup_logging()
        session_maker = await init_database()
        try:
            return await EventRepository(session_maker).stats()
        finally:
            await close_database()

    for key, value in asyncio.run(_stats()).items():
        table.add_row(key, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
