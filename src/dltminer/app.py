"""Miner application: wires the template builder, coordinator and pool client.

Solo mode::

    node --poll--> TemplateBuilder --template--> MinerCoordinator --> lanes
                        ^                              |
                        +---------- solution ----------+  (verify, submit)

Pool mode feeds ``mining.notify`` jobs from ``StratumClient`` into the
builder and sends solutions back to the pool as shares.
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
import time
from collections.abc import Coroutine
from typing import Any

import structlog

from dltminer.config import LANE_EXECUTORS, MINING_MODES, Settings, get_settings
from dltminer.core.errors import ConfigurationError, HashMismatchError
from dltminer.core.models import Block, MiningStats, StratumJob, WorkTemplate
from dltminer.core.rewards import format_dlt
from dltminer.middleware.logging import setup_logging
from dltminer.mining.coordinator import MinerCoordinator
from dltminer.mining.engine import HashEngine, ReferenceEngine
from dltminer.mining.hashrate import format_hash_count, format_hashrate, format_lane_rates
from dltminer.pool.client import StratumClient
from dltminer.work.builder import BlockDraft, TemplateBuilder
from dltminer.work.node_client import NodeClient

logger = structlog.get_logger()


class MinerApp:
    """One mining session. ``start()`` / ``stop()`` may be called once each."""

    def __init__(
        self,
        settings: Settings,
        engine: HashEngine | None = None,
        *,
        node: NodeClient | None = None,
        pool: StratumClient | None = None,
    ) -> None:
        self.settings = settings
        self.engine = engine or ReferenceEngine()
        self.stats = MiningStats()
        self.running = False
        self.current_job: StratumJob | None = None
        self.share_bits = settings.pool_share_bits

        self.coordinator = MinerCoordinator(
            self.engine,
            on_solution=self._on_solution,
            on_hashrate=self._on_hashrate,
            on_status=self.on_status,
            batch_size=settings.batch_size,
            report_interval=settings.hashrate_report_interval,
            lane_executor=settings.lane_executor,
        )

        self.node = node
        self.pool = pool
        if settings.mining_mode == "solo" and self.node is None:
            self.node = NodeClient(settings.node_url, timeout=settings.request_timeout)
        if settings.mining_mode == "pool" and self.pool is None:
            self.pool = StratumClient(
                settings.pool_url,
                settings.miner_address,
                client_id=settings.pool_client_id,
                reconnect_delay=settings.reconnect_delay,
            )
        if self.pool is not None:
            self.pool.bind(
                on_job=self._on_pool_job,
                on_difficulty=self._on_pool_difficulty,
                on_stats=self._on_pool_stats,
                on_status=self.on_status,
            )

        self.builder = TemplateBuilder(
            self.engine,
            settings.miner_address,
            node=self.node if settings.mining_mode == "solo" else None,
            on_work_template=self._on_work_template,
            on_block_accepted=self._on_block_accepted,
            on_status=self.on_status,
            poll_interval=settings.poll_interval,
        )

        self._tasks: set[asyncio.Task[Any]] = set()
        self._stats_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None
        self._stopping = False
        self._stopped = asyncio.Event()

    @property
    def is_pool_mode(self) -> bool:
        return self.settings.mining_mode == "pool"

    async def start(self) -> None:
        """Validate settings, spin up the lanes and start receiving work."""
        self.settings.validate_miner()

        self.running = True
        self.stats = MiningStats(started_at=time.time())

        threads = self.settings.thread_count
        self.on_status(f"Initializing {threads} lane{'s' if threads > 1 else ''}...")
        await self.coordinator.init(threads)
        self.on_status(f"{threads} lane(s) online")

        if self.settings.stats_interval > 0:
            self._stats_task = asyncio.create_task(self._report_stats(), name="miner-stats")

        if self.is_pool_mode:
            assert self.pool is not None
            self.on_status("Connecting to pool...")
            self.pool.connect()
        else:
            await self.builder.start()

        logger.info(
            "miner_started",
            mode=self.settings.mining_mode,
            address=self.settings.miner_address,
            threads=threads,
        )

    async def stop(self) -> None:
        """Stop mining and release every resource. Safe to call more than once."""
        if self._stopping:
            await self._stopped.wait()
            return
        self._stopping = True
        self.running = False

        self.coordinator.stop_mining()
        await self.coordinator.terminate()
        await self.builder.stop()
        if self.pool is not None:
            await self.pool.disconnect()

        for task in [*self._tasks, self._stats_task]:
            if task is not None:
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._stats_task is not None:
            await asyncio.gather(self._stats_task, return_exceptions=True)
            self._stats_task = None

        if self.node is not None:
            await self.node.close()

        self.log_summary()
        logger.info("miner_stopped")
        self._stopped.set()

    def request_stop(self) -> None:
        """Signal-handler friendly stop."""
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop(), name="miner-stop")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def on_status(self, message: str) -> None:
        logger.info("status", message=message)

    # --- Coordinator / builder callbacks ---

    def _on_work_template(self, template: WorkTemplate) -> None:
        if not self.running:
            return
        if self.coordinator.is_mining:
            self.coordinator.update_work(template)
        else:
            self.coordinator.start_mining(template)

    def _on_solution(self, nonce: int, hash_hex: str) -> None:
        draft = self.builder.draft
        logger.info("solution_found", nonce=nonce, hash=hash_hex[:16])
        if self.is_pool_mode:
            self._spawn(self._submit_share(nonce, hash_hex, draft))
        else:
            self._spawn(self._submit_block(nonce, hash_hex, draft))

    async def _submit_block(self, nonce: int, hash_hex: str, draft: BlockDraft | None) -> None:
        accepted = await self.builder.on_solution_found(nonce, hash_hex, draft)
        if not accepted and self.running and not self.coordinator.is_mining:
            self._restart_solo()

    def _restart_solo(self) -> None:
        """Resume on the current tip with a fresh template after a failed submission."""
        try:
            template = self.builder.build_solo_work()
        except RuntimeError:
            return
        self.coordinator.start_mining(template)

    async def _submit_share(self, nonce: int, hash_hex: str, draft: BlockDraft | None) -> None:
        assert self.pool is not None
        try:
            self.builder.complete_block(nonce, hash_hex, draft)
        except HashMismatchError as exc:
            logger.error("share_hash_mismatch", nonce=nonce, reported=exc.reported, expected=exc.expected)
            self.on_status(f"HASH MISMATCH! {exc}")
        except RuntimeError:
            self.on_status("No job for share (stale solution?)")
        else:
            job_id = draft.job_id if draft is not None else None
            if job_id is not None and await self.pool.submit_work(job_id, nonce, hash_hex) is not None:
                self.stats.shares_submitted += 1
                self.on_status("Share transmitted to pool")

        if self.running and not self.coordinator.is_mining and self.current_job is not None:
            self._start_pool_job(self.current_job)

    def _on_block_accepted(self, block: Block) -> None:
        self.stats.blocks_found += 1
        coinbase = block.coinbase
        if coinbase is not None:
            self.stats.earnings += coinbase.amount
        logger.info(
            "block_found",
            index=block.index,
            blocks_found=self.stats.blocks_found,
            earnings=format_dlt(self.stats.earnings),
        )

    def _on_hashrate(self, total: float, per_lane: list[float]) -> None:
        self.stats.hashrate = total
        self.stats.per_lane_hashrate = list(per_lane)
        self.stats.total_hashes = self.coordinator.total_hashes_mined

    # --- Pool callbacks ---

    def _on_pool_job(self, job: StratumJob) -> None:
        if not self.running:
            return
        previous = self.current_job
        self.current_job = job
        if (
            self.coordinator.is_mining
            and not job.clean_jobs
            and previous is not None
            and previous.block_index == job.block_index
        ):
            logger.debug("pool_job_queued", job_id=job.job_id, block_index=job.block_index)
            return
        self._start_pool_job(job)
        self.on_status(f"Pool job {job.job_id} - block #{job.block_index}")

    def _start_pool_job(self, job: StratumJob) -> None:
        template = self.builder.build_pool_work(job, self.share_bits)
        if self.coordinator.is_mining:
            self.coordinator.update_work(template)
        else:
            self.coordinator.start_mining(template)

    def _on_pool_difficulty(self, bits: int) -> None:
        self.share_bits = bits

    def _on_pool_stats(self, workers: Any, blocks: Any, shares: Any) -> None:
        self.on_status(f"Pool: {workers} workers, {blocks} blocks, {shares} shares")

    # --- Helpers ---

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("miner_task_failed", error=str(task.exception()), exc_info=task.exception())

    async def _report_stats(self) -> None:
        while True:
            await asyncio.sleep(self.settings.stats_interval)
            self.log_summary()

    def log_summary(self) -> None:
        stats = self.stats
        logger.info(
            "miner_stats",
            hashrate=format_hashrate(stats.hashrate),
            lanes=format_lane_rates(stats.per_lane_hashrate),
            total_hashes=format_hash_count(stats.total_hashes),
            blocks_found=stats.blocks_found,
            shares_submitted=stats.shares_submitted,
            earnings=format_dlt(stats.earnings),
            uptime=round(stats.uptime(time.time())),
        )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="dlt-miner", description="DLT proof-of-work miner")
    parser.add_argument("--address", help="Miner wallet address (DLT_MINER_ADDRESS)")
    parser.add_argument("--mode", choices=MINING_MODES, help="Mining mode (DLT_MINING_MODE)")
    parser.add_argument("--threads", type=int, help="Number of mining lanes (DLT_THREAD_COUNT)")
    parser.add_argument("--node-url", help="Node REST base URL for solo mode (DLT_NODE_URL)")
    parser.add_argument("--pool-url", help="Pool bridge WebSocket URL (DLT_POOL_URL)")
    parser.add_argument("--batch-size", type=int, help="Nonces per engine call (DLT_BATCH_SIZE)")
    parser.add_argument(
        "--lane-executor", choices=LANE_EXECUTORS, help="Run lanes in processes or threads (DLT_LANE_EXECUTOR)",
    )
    parser.add_argument("--log-level", help="Log level (DLT_LOG_LEVEL)")
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace, base: Settings | None = None) -> Settings:
    """Apply command-line overrides on top of environment settings."""
    base = base or get_settings()
    overrides = {
        "miner_address": args.address,
        "mining_mode": args.mode,
        "thread_count": args.threads,
        "node_url": args.node_url,
        "pool_url": args.pool_url,
        "batch_size": args.batch_size,
        "lane_executor": args.lane_executor,
        "log_level": args.log_level,
    }
    return base.model_copy(update={k: v for k, v in overrides.items() if v is not None})


async def run(settings: Settings) -> None:
    """Run a miner until SIGINT/SIGTERM."""
    app = MinerApp(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.request_stop)
        except NotImplementedError:
            pass

    try:
        await app.start()
        await app.wait_stopped()
    finally:
        await app.stop()


def main(argv: list[str] | None = None) -> None:
    """Console entry point: ``dlt-miner``."""
    settings = settings_from_args(parse_args(argv))
    setup_logging(settings)
    try:
        asyncio.run(run(settings))
    except ConfigurationError as exc:
        logger.error("miner_config_invalid", error=str(exc))
        sys.exit(1)
    except KeyboardInterrupt:
        pass
