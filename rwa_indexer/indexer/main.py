"""
Main entry point for the indexer service.
"""

import asyncio
import signal
from typing import Optional

import structlog

from rwa_indexer.core.config import settings
from rwa_indexer.core.database import DatabaseManager, close_database, init_database
from rwa_indexer.core.logging import setup_logging
from rwa_indexer.services.chain_client import ChainClient

from .core import EventIndexer


logger = structlog.get_logger(__name__)


class IndexerMain:
    """
    Indexer service coordinator.

    Owns the process-wide resources (database engine, RPC session) and hands
    them to the EventIndexer.
    """

    def __init__(self):
        self.chain_client: Optional[ChainClient] = None
        self.indexer: Optional[EventIndexer] = None
        self._stopped = asyncio.Event()

    async def initialize(self):
        """Initialize database, chain client and indexer."""
        logger.info(
            "Initializing indexer service",
            environment=settings.environment,
            rpc_url=settings.rpc_url
        )

        session_maker = await init_database()
        await DatabaseManager.create_tables()

        self.chain_client = ChainClient()
        if not await self.chain_client.is_connected():
            logger.warning("RPC endpoint not reachable yet, pipelines will retry", rpc_url=settings.rpc_url)

        self.indexer = EventIndexer(self.chain_client, session_maker, settings)
        await self.indexer.initialize()

        logger.info("Indexer service initialized")

    async def start(self):
        """Run until stopped or every pipeline has ended."""
        await self.indexer.start()
        logger.info("Indexer service started")

        waiter = asyncio.create_task(self.indexer.wait())
        stopper = asyncio.create_task(self._stopped.wait())
        await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in (waiter, stopper):
            if not task.done():
                task.cancel()

    def request_stop(self):
        self._stopped.set()

    async def stop(self):
        """Stop the indexer and release resources."""
        logger.info("Stopping indexer service")

        if self.indexer:
            await self.indexer.stop()
        if self.chain_client:
            await self.chain_client.close()
        await close_database()

        logger.info("Indexer service stopped")


async def main():
    """Main function to run the indexer service."""
    setup_logging()

    service = IndexerMain()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, service.request_stop)

    try:
        await service.initialize()
        await service.start()
    except Exception as e:
        logger.error("Indexer service failed", error=str(e))
        raise
    finally:
        await service.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
