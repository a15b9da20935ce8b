"""
Main EventIndexer class: one supervised pipeline per monitored contract.
"""

import asyncio
from dataclasses import asdict
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rwa_indexer.core.config import ContractName, Settings, settings as default_settings
from rwa_indexer.core.exceptions import FATAL_PIPELINE_ERRORS, IndexerError, IndexerException
from rwa_indexer.models.base import utcnow
from rwa_indexer.services.chain_client import ChainClient
from rwa_indexer.services.checkpoint_store import CheckpointStore
from rwa_indexer.services.event_decoder import EventDecoder
from rwa_indexer.services.event_repository import EventRepository

from .types import IndexerStatus
from ..backfill import BackfillEngine
from ..live_subscriber import LiveSubscriber
from ..pipeline import ContractPipeline


logger = structlog.get_logger(__name__)


class EventIndexer:
    """
    Event indexer for the RWA platform contracts.

    Features:
    - One asyncio task per contract: backfill until caught up, then live
    - Restart from the stored checkpoint after transient failures
    - Reorgs and checkpoint violations stop only the affected contract
    - Health report covering every contract
    """

    def __init__(
        self,
        chain_client: ChainClient,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[Settings] = None,
        contracts: Optional[Dict[ContractName, str]] = None
    ):
        self.logger = logger.bind(service="event_indexer")
        self.config = config or default_settings
        self.chain_client = chain_client
        self.session_factory = session_factory
        self.contracts = contracts or {
            name: self.config.contract_address(name) for name in ContractName
        }
        self.status = IndexerStatus.STOPPED

        self.decoder: Optional[EventDecoder] = None
        self.repository: Optional[EventRepository] = None
        self.checkpoints: Optional[CheckpointStore] = None

        self.pipelines: Dict[ContractName, ContractPipeline] = {}
        self.backfills: Dict[ContractName, BackfillEngine] = {}
        self.subscribers: Dict[ContractName, LiveSubscriber] = {}
        self.contract_status: Dict[ContractName, IndexerStatus] = {}

        self._start_blocks: Dict[str, int] = {}
        self._tasks: Dict[ContractName, asyncio.Task] = {}
        self._health_task: Optional[asyncio.Task] = None
        self._should_stop = asyncio.Event()

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def initialize(self):
        """Build the per-contract pipelines."""
        self.status = IndexerStatus.STARTING
        self.logger.info("Initializing event indexer", contracts=[c.value for c in self.contracts])

        self._start_blocks = {name.value: self.config.start_block(name) for name in self.contracts}
        if self.config.indexer_initial_lookback is not None:
            head = await self.chain_client.current_height()
            for name in self._start_blocks:
                self._start_blocks[name] = max(
                    self._start_blocks[name], head - self.config.indexer_initial_lookback
                )

        self.decoder = EventDecoder(self.contracts)
        self.repository = EventRepository(self.session_factory)
        self.checkpoints = CheckpointStore(self.session_factory, self._default_start)

        for contract, address in self.contracts.items():
            pipeline = ContractPipeline(
                contract=contract,
                address=address,
                chain_client=self.chain_client,
                decoder=self.decoder,
                repository=self.repository,
                checkpoints=self.checkpoints,
                confirmations=self.config.indexer_confirmations,
            )
            backfill = BackfillEngine(
                pipeline,
                window_size=self.config.indexer_window_size,
                min_window_size=self.config.indexer_min_window_size,
            )
            self.pipelines[contract] = pipeline
            self.backfills[contract] = backfill
            self.subscribers[contract] = LiveSubscriber(
                pipeline,
                backfill,
                poll_interval=self.config.indexer_poll_interval,
                gap_threshold=self.config.indexer_live_gap_threshold,
            )
            self.contract_status[contract] = IndexerStatus.STOPPED

        self.status = IndexerStatus.STOPPED
        resume_from = await self.checkpoints.snapshot([contract.value for contract in self.contracts])
        self.logger.info("Event indexer initialized", checkpoints=resume_from)

    def _default_start(self, contract_name: str) -> int:
        return self._start_blocks.get(contract_name, self.config.genesis_block)

    async def start(self):
        """Start one supervised task per contract."""
        if not self.pipelines:
            raise IndexerError("Event indexer not initialized")
        if self._tasks:
            self.logger.warning("Event indexer already running")
            return

        self._should_stop.clear()
        for subscriber in self.subscribers.values():
            subscriber.reset()
        for contract in self.pipelines:
            self._tasks[contract] = asyncio.create_task(
                self._supervise(contract), name=f"indexer-{contract.value}"
            )
        self._health_task = asyncio.create_task(self._health_loop(), name="indexer-health")
        self.status = IndexerStatus.BACKFILLING
        self.logger.info("Event indexer started")

    async def wait(self):
        """Wait until every contract task has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def stop(self):
        """Stop all contract tasks."""
        if not self._tasks:
            self.status = IndexerStatus.STOPPED
            return

        self.status = IndexerStatus.STOPPING
        self.logger.info("Stopping event indexer")
        self._should_stop.set()
        for subscriber in self.subscribers.values():
            subscriber.stop()

        tasks = list(self._tasks.values())
        if self._health_task:
            tasks.append(self._health_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        self._tasks.clear()
        self._health_task = None
        for contract in self.contract_status:
            if self.contract_status[contract] != IndexerStatus.FAILED:
                self.contract_status[contract] = IndexerStatus.STOPPED
        self.status = IndexerStatus.STOPPED
        self.logger.info("Event indexer stopped")

    async def _supervise(self, contract: ContractName):
        """Run backfill then live for one contract, restarting after transient failures."""
        pipeline = self.pipelines[contract]
        log = self.logger.bind(contract=contract.value)

        while not self._should_stop.is_set():
            try:
                self.contract_status[contract] = IndexerStatus.BACKFILLING
                result = await self.backfills[contract].run()
                if self._should_stop.is_set() or not result.completed:
                    break

                self.contract_status[contract] = IndexerStatus.LIVE
                await self.subscribers[contract].run()
                break

            except FATAL_PIPELINE_ERRORS as e:
                self.contract_status[contract] = IndexerStatus.FAILED
                pipeline.stats.errors += 1
                pipeline.stats.last_error = e.message
                log.critical(
                    "Pipeline stopped, operator action required",
                    error=e.message,
                    code=e.code,
                    details=e.details
                )
                return

            except IndexerException as e:
                self.contract_status[contract] = IndexerStatus.DEGRADED
                pipeline.stats.errors += 1
                pipeline.stats.restarts += 1
                pipeline.stats.last_error = e.message
                log.error(
                    "Pipeline unhealthy, restarting from checkpoint",
                    error=e.message,
                    code=e.code,
                    retry_in=self.config.indexer_restart_delay
                )
                try:
                    await asyncio.wait_for(
                        self._should_stop.wait(), timeout=self.config.indexer_restart_delay
                    )
                except asyncio.TimeoutError:
                    continue

            except Exception as e:
                self.contract_status[contract] = IndexerStatus.FAILED
                pipeline.stats.errors += 1
                pipeline.stats.last_error = str(e)
                log.exception("Pipeline crashed", error=str(e))
                return

        self.contract_status[contract] = IndexerStatus.STOPPED

    async def _health_loop(self):
        while not self._should_stop.is_set():
            try:
                await asyncio.wait_for(
                    self._should_stop.wait(), timeout=self.config.indexer_health_interval
                )
            except asyncio.TimeoutError:
                health = await self.get_health()
                self.logger.info(
                    "Indexer health",
                    healthy=health["healthy"],
                    live_connected=health["live_connected"],
                    contracts={name: c["status"] for name, c in health["contracts"].items()}
                )

    async def get_health(self) -> Dict[str, Any]:
        """Current health of the indexer and of each contract pipeline."""
        contracts: Dict[str, Any] = {}
        for contract, pipeline in self.pipelines.items():
            status = self.contract_status.get(contract, IndexerStatus.STOPPED)
            subscriber = self.subscribers[contract]
            try:
                checkpoint: Optional[int] = await self.checkpoints.get(contract.value)
            except IndexerException:
                checkpoint = None

            contracts[contract.value] = {
                "status": status.value,
                "address": pipeline.address,
                "checkpoint": checkpoint,
                "last_head": subscriber.last_head,
                "live_connected": subscriber.connected,
                "window_size": self.backfills[contract].window_size,
                "last_error": pipeline.stats.last_error,
                "stats": asdict(pipeline.stats),
            }

        statuses = [self.contract_status.get(c, IndexerStatus.STOPPED) for c in self.pipelines]
        healthy = bool(statuses) and all(
            s in (IndexerStatus.BACKFILLING, IndexerStatus.LIVE) for s in statuses
        )
        live_connected = bool(statuses) and all(
            self.contract_status[c] == IndexerStatus.LIVE and self.subscribers[c].connected
            for c in self.pipelines
        )
        if healthy and live_connected:
            self.status = IndexerStatus.LIVE
        elif self._tasks and not healthy:
            self.status = IndexerStatus.DEGRADED

        return {
            "healthy": healthy,
            "live_connected": live_connected,
            "status": self.status.value,
            "checked_at": utcnow().isoformat(),
            "contracts": contracts,
        }
