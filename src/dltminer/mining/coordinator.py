"""Miner coordinator: fans a work template out to N lanes and fans events back in.

Partitioning: lane ``k`` of ``N`` starts at nonce ``k`` and steps by ``N``,
so every nonce belongs to exactly one lane.

State progression: idle -> initializing -> idle -> mining -> idle.
``stop_mining`` keeps lanes alive for the next template; ``terminate``
tears them down.

Every dispatch (``start_mining`` / ``update_work``) bumps a generation
number that lanes echo back. The first solution for the current generation
wins; solutions and hashrate reports for older generations, or arriving
while not mining, are dropped.
"""

from __future__ import annotations

import asyncio
import multiprocessing
from collections.abc import Callable
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from enum import Enum

import structlog

from dltminer.config import LANE_EXECUTORS
from dltminer.core.models import WorkTemplate
from dltminer.mining.engine import HashEngine
from dltminer.mining.worker import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_REPORT_INTERVAL,
    CommandKind,
    EventKind,
    HashWorker,
    LaneCommand,
    LaneEvent,
    LaneParams,
    init_lane_process,
)

logger = structlog.get_logger()

SolutionCallback = Callable[[int, str], None]
HashrateCallback = Callable[[float, list[float]], None]
StatusCallback = Callable[[str], None]


class CoordinatorState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    MINING = "mining"


def lane_params(template: WorkTemplate, lane: int, thread_count: int, generation: int) -> LaneParams:
    """Nonce partition for ``lane``: start at ``lane``, stride ``thread_count``."""
    return LaneParams(template=template, start_nonce=lane, stride=thread_count, generation=generation)


def _log_status(message: str) -> None:
    logger.info("status", message=message)


class MinerCoordinator:
    """Owns the worker lanes and aggregates their hashrate and solutions."""

    def __init__(
        self,
        engine: HashEngine,
        on_solution: SolutionCallback,
        on_hashrate: HashrateCallback | None = None,
        on_status: StatusCallback | None = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        report_interval: float = DEFAULT_REPORT_INTERVAL,
        lane_executor: str = "thread",
        engine_factory: Callable[[], HashEngine] | None = None,
    ) -> None:
        if lane_executor not in LANE_EXECUTORS:
            raise ValueError(f"Unknown lane executor: {lane_executor}")
        self._engine = engine
        self._on_solution = on_solution
        self._on_hashrate = on_hashrate or (lambda _total, _per_lane: None)
        self._on_status = on_status or _log_status
        self._batch_size = batch_size
        self._report_interval = report_interval
        self._lane_executor = lane_executor
        self._engine_factory = engine_factory or type(engine)

        self.state = CoordinatorState.IDLE
        self.thread_count = 0
        self.total_hashes_mined = 0
        self._workers: list[HashWorker] = []
        self._lane_tasks: list[asyncio.Task[None]] = []
        self._lane_rates: dict[int, float] = {}
        self._events: asyncio.Queue[LaneEvent] | None = None
        self._dispatch_task: asyncio.Task[None] | None = None
        self._executor: Executor | None = None
        self._ready_count = 0
        self._ready: asyncio.Event | None = None
        self._generation = 0

    @property
    def is_mining(self) -> bool:
        return self.state == CoordinatorState.MINING

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def total_hashrate(self) -> float:
        return sum(self._lane_rates.values())

    async def init(self, thread_count: int) -> None:
        """Spawn ``thread_count`` lanes and wait until every lane reports ready."""
        if thread_count < 1:
            raise ValueError(f"thread_count must be at least 1, got {thread_count}")

        await self.terminate()

        self.state = CoordinatorState.INITIALIZING
        self.thread_count = thread_count
        self._ready_count = 0
        self._ready = asyncio.Event()
        self._events = asyncio.Queue()
        self._executor = self._make_executor(thread_count)

        for i in range(thread_count):
            worker = HashWorker(
                i,
                self._engine,
                self._events,
                batch_size=self._batch_size,
                report_interval=self._report_interval,
                executor=self._executor,
            )
            self._workers.append(worker)
            self._lane_rates[i] = 0.0
            self._lane_tasks.append(asyncio.create_task(worker.run(), name=f"lane-{i}"))

        self._dispatch_task = asyncio.create_task(self._dispatch_events(), name="lane-events")

        await self._ready.wait()
        self.state = CoordinatorState.IDLE
        logger.info("coordinator_ready", lanes=thread_count)

    def start_mining(self, template: WorkTemplate) -> None:
        """Dispatch a new template to every lane."""
        if not self._workers:
            raise RuntimeError("init() must complete before start_mining()")
        self._dispatch(template, CommandKind.START)

    def update_work(self, template: WorkTemplate) -> None:
        """Replace the template on every lane. No-op unless mining."""
        if not self.is_mining:
            return
        self._dispatch(template, CommandKind.NEW_WORK)

    def stop_mining(self) -> None:
        """Stop every lane but keep them alive for the next template."""
        self.state = CoordinatorState.IDLE
        self._broadcast(LaneCommand(CommandKind.STOP))
        for i in self._lane_rates:
            self._lane_rates[i] = 0.0
        self._report_hashrate()

    async def terminate(self) -> None:
        """Tear down all lanes and their executor. In-flight batch results are discarded."""
        if self._workers:
            self._broadcast(LaneCommand(CommandKind.SHUTDOWN))

        tasks = [*self._lane_tasks]
        if self._dispatch_task is not None:
            tasks.append(self._dispatch_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._executor is not None:
            # Joins at most one in-flight batch per lane.
            await asyncio.to_thread(self._executor.shutdown, wait=True, cancel_futures=True)

        self._workers = []
        self._lane_tasks = []
        self._lane_rates = {}
        self._dispatch_task = None
        self._executor = None
        self._events = None
        self._ready_count = 0
        self.state = CoordinatorState.IDLE

    def _make_executor(self, thread_count: int) -> Executor:
        if self._lane_executor == "process":
            return ProcessPoolExecutor(
                max_workers=thread_count,
                mp_context=multiprocessing.get_context("spawn"),
                initializer=init_lane_process,
                initargs=(self._engine_factory,),
            )
        return ThreadPoolExecutor(max_workers=thread_count, thread_name_prefix="dlt-lane")

    def handle_lane_event(self, event: LaneEvent) -> None:
        """Apply one lane event. Called for every event from the events queue."""
        if event.kind == EventKind.READY:
            self._ready_count += 1
            if self._ready is not None and self._ready_count >= self.thread_count:
                self._ready.set()

        elif event.kind == EventKind.HASHRATE:
            if not self._is_current(event):
                return
            self._lane_rates[event.lane] = event.hashrate
            self.total_hashes_mined += event.hashes
            self._report_hashrate()

        elif event.kind == EventKind.SOLUTION:
            if not self._is_current(event):
                logger.debug(
                    "late_solution_ignored",
                    lane=event.lane,
                    nonce=event.nonce,
                    generation=event.generation,
                )
                return
            self.state = CoordinatorState.IDLE
            self._broadcast(LaneCommand(CommandKind.STOP))
            logger.info("solution_accepted", lane=event.lane, nonce=event.nonce, hash=event.hash)
            self._on_solution(event.nonce, event.hash)

        elif event.kind == EventKind.ERROR:
            self._lane_rates[event.lane] = 0.0
            self._on_status(f"Worker {event.lane} error: {event.error}")
            self._report_hashrate()

    def per_lane_hashrates(self) -> list[float]:
        return [self._lane_rates.get(i, 0.0) for i in range(self.thread_count)]

    def _is_current(self, event: LaneEvent) -> bool:
        return self.is_mining and event.generation == self._generation

    def _dispatch(self, template: WorkTemplate, kind: CommandKind) -> None:
        self._generation += 1
        self.state = CoordinatorState.MINING
        for i, worker in enumerate(self._workers):
            self._lane_rates[i] = 0.0
            worker.post(LaneCommand(kind, lane_params(template, i, self.thread_count, self._generation)))
        logger.debug(
            "work_dispatched",
            kind=kind.value,
            lanes=self.thread_count,
            diff_bits=template.diff_bits,
            job_id=template.job_id,
            generation=self._generation,
        )

    def _broadcast(self, command: LaneCommand) -> None:
        for worker in self._workers:
            worker.post(command)

    def _report_hashrate(self) -> None:
        per_lane = self.per_lane_hashrates()
        self._on_hashrate(sum(per_lane), per_lane)

    async def _dispatch_events(self) -> None:
        assert self._events is not None
        events = self._events
        while True:
            event = await events.get()
            try:
                self.handle_lane_event(event)
            except Exception:
                logger.exception("lane_event_failed", lane=event.lane, kind=event.kind.value)
