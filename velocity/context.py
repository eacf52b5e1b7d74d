"""
Server context: the registry, coordinator and worker pool one server
process owns, wired from a VelocityConfig.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from velocity.config import VelocityConfig
from velocity.coordinator import SessionCoordinator
from velocity.latency import LatencyProber
from velocity.payload import PayloadGenerator
from velocity.registry import SessionRegistry
from velocity.system import server_identity
from velocity.throughput import ThroughputEstimator
from velocity.workers import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class ServerContext:
    config: VelocityConfig
    registry: SessionRegistry
    coordinator: SessionCoordinator
    pool: WorkerPool
    reaper_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: VelocityConfig) -> 'ServerContext':
        config.validate()
        registry = SessionRegistry(
            max_sessions=config.max_sessions,
            max_per_client=config.max_sessions_per_client,
            session_timeout=config.session_timeout,
            retention=config.result_retention,
        )
        coordinator = SessionCoordinator(
            registry=registry,
            prober=LatencyProber(
                count=config.probe_count,
                interval=config.probe_interval,
                probe_timeout=config.probe_timeout,
                max_timeout_ratio=config.probe_timeout_ratio,
            ),
            estimator=ThroughputEstimator(
                duration=config.duration,
                warmup=config.warmup,
                window=config.window,
                stall_windows=config.stall_windows,
            ),
            payload=PayloadGenerator(seed=config.payload_seed, chunk_size=config.chunk_size),
            server=server_identity(config.region),
        )
        pool = WorkerPool(workers=config.pool_workers, queue_size=config.pool_queue_size)
        return cls(config=config, registry=registry, coordinator=coordinator, pool=pool)

    async def start(self):
        await self.pool.start()
        self.reaper_task = asyncio.create_task(self._reaper_loop())

    async def stop(self):
        if self.reaper_task and not self.reaper_task.done():
            self.reaper_task.cancel()
            try:
                await self.reaper_task
            except asyncio.CancelledError:
                pass
        await self.pool.stop()

        # Sessions still open at shutdown are reported as timed out
        for session in self.registry.active_sessions():
            self.coordinator.expire(session)

    async def _reaper_loop(self):
        """Time out sessions that went idle past their deadline"""
        logger.info("🔍 Starting session expiry loop")
        while True:
            try:
                expired = self.coordinator.expire_overdue()
                if expired:
                    logger.info(f"🧹 CLEANUP: Expired {expired} idle sessions")
            except Exception as e:
                logger.error(f"❌ Session expiry error: {e}")
            await asyncio.sleep(self.config.reap_interval)
