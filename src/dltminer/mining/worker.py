"""Hash-search lane.

Each lane owns a strided slice of the nonce space and talks to the
coordinator only through messages: commands arrive on ``inbox``
(start / new_work / stop / shutdown), events leave on the shared events
queue (ready / hashrate / solution / error).

The engine call runs in an executor: a thread pool for engines that hash
without the GIL, or a process pool (one engine per process, built by
``init_lane_process``) for engines that hold it. Between batches the lane
yields with ``asyncio.sleep(0)`` so stop and new-work commands are seen
after at most one batch. A run is cancelled by bumping ``_run_id``; the
in-flight batch is allowed to finish and its result is dropped, and a new
run only starts after the old one has returned, so one lane never has two
batches in flight.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, ProcessPoolExecutor
from dataclasses import dataclass
from enum import Enum

import structlog

from dltminer.core.models import WorkTemplate
from dltminer.mining.engine import HashEngine, MineResult

logger = structlog.get_logger()

# Sized for the hashlib reference engine: roughly 0.1s per call on one core.
DEFAULT_BATCH_SIZE = 50_000
DEFAULT_REPORT_INTERVAL = 0.5  # seconds


class CommandKind(str, Enum):
    START = "start_mining"
    NEW_WORK = "new_work"
    STOP = "stop"
    SHUTDOWN = "shutdown"


class EventKind(str, Enum):
    READY = "ready"
    HASHRATE = "hashrate"
    SOLUTION = "solution"
    ERROR = "error"


@dataclass(frozen=True)
class LaneParams:
    """Work assignment for one lane: a template plus its nonce partition."""

    template: WorkTemplate
    start_nonce: int
    stride: int
    generation: int


@dataclass(frozen=True)
class LaneCommand:
    kind: CommandKind
    params: LaneParams | None = None


@dataclass(frozen=True)
class LaneEvent:
    lane: int
    kind: EventKind
    generation: int = 0
    hashrate: float = 0.0
    hashes: int = 0
    nonce: int = 0
    hash: str = ""
    error: str = ""


# Engine owned by a lane process; set by init_lane_process.
_process_engine: HashEngine | None = None


def init_lane_process(engine_factory: Callable[[], HashEngine]) -> None:
    """ProcessPoolExecutor initializer: build this process's engine once."""
    global _process_engine
    _process_engine = engine_factory()


def mine_batch_in_process(
    prefix_head: bytes,
    h: Sequence[int],
    midstate_len: int,
    prefix_tail: bytes,
    suffix: bytes,
    start_nonce: int,
    stride: int,
    batch_size: int,
    diff_bits: int,
) -> MineResult | None:
    """Run one batch on the process-local engine.

    The engine is primed with the absorbed prefix first so it can resume
    from a cached context; without ``prefix_head`` it finishes from the raw
    state words, which gives the same digests more slowly.
    """
    if _process_engine is None:
        raise RuntimeError("lane process was not initialized")
    if prefix_head:
        _process_engine.compute_midstate(prefix_head)
    return _process_engine.mine_batch(
        h, midstate_len, prefix_tail, suffix, start_nonce, stride, batch_size, diff_bits,
    )


class HashWorker:
    """One mining lane driven by commands on ``inbox``."""

    def __init__(
        self,
        index: int,
        engine: HashEngine,
        events: asyncio.Queue[LaneEvent],
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        report_interval: float = DEFAULT_REPORT_INTERVAL,
        executor: Executor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.index = index
        self.inbox: asyncio.Queue[LaneCommand] = asyncio.Queue()
        self._engine = engine
        self._events = events
        self._batch_size = batch_size
        self._report_interval = report_interval
        self._executor = executor
        self._clock = clock
        self._run_id = 0
        self._run_task: asyncio.Task[None] | None = None

    @property
    def is_mining(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def post(self, command: LaneCommand) -> None:
        """Deliver a command to this lane."""
        self.inbox.put_nowait(command)

    async def run(self) -> None:
        """Lane main loop: announce readiness, then serve commands until shutdown."""
        self._emit(LaneEvent(self.index, EventKind.READY))
        try:
            while True:
                command = await self.inbox.get()

                if command.kind in (CommandKind.START, CommandKind.NEW_WORK):
                    await self._finish_current_run()
                    if command.params is not None:
                        self._start_run(command.params)

                elif command.kind == CommandKind.STOP:
                    self._run_id += 1

                elif command.kind == CommandKind.SHUTDOWN:
                    break
        finally:
            self._run_id += 1
            if self._run_task is not None and not self._run_task.done():
                self._run_task.cancel()

    async def _finish_current_run(self) -> None:
        """Cancel the active run and wait for its in-flight batch to return."""
        self._run_id += 1
        task = self._run_task
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _start_run(self, params: LaneParams) -> None:
        self._run_id += 1
        self._run_task = asyncio.create_task(
            self._mine(params, self._run_id),
            name=f"lane-{self.index}-run-{self._run_id}",
        )

    async def _mine(self, params: LaneParams, run_id: int) -> None:
        """Batch loop for one run. Returns on solution, cancellation, or engine failure."""
        loop = asyncio.get_running_loop()
        template = params.template
        step = params.stride * self._batch_size
        nonce = params.start_nonce
        hashes = 0
        last_report = self._clock()

        logger.debug(
            "lane_run_started",
            lane=self.index,
            start_nonce=nonce,
            stride=params.stride,
            generation=params.generation,
        )

        if isinstance(self._executor, ProcessPoolExecutor):
            mine_batch = functools.partial(mine_batch_in_process, template.prefix_head)
        else:
            mine_batch = self._engine.mine_batch

        while self._run_id == run_id:
            try:
                result = await loop.run_in_executor(
                    self._executor,
                    mine_batch,
                    template.h,
                    template.midstate_len,
                    template.prefix_tail,
                    template.suffix,
                    nonce,
                    params.stride,
                    self._batch_size,
                    template.diff_bits,
                )
            except Exception as exc:
                logger.error("lane_engine_failed", lane=self.index, error=str(exc), exc_info=exc)
                self._emit(LaneEvent(
                    self.index, EventKind.ERROR, generation=params.generation, error=str(exc),
                ))
                return

            if self._run_id != run_id:
                return

            hashes += self._batch_size
            nonce += step

            now = self._clock()
            elapsed = now - last_report
            if elapsed >= self._report_interval:
                self._emit(LaneEvent(
                    self.index,
                    EventKind.HASHRATE,
                    generation=params.generation,
                    hashrate=hashes / elapsed,
                    hashes=hashes,
                ))
                hashes = 0
                last_report = now

            if result is not None:
                self._run_id += 1
                logger.info("lane_solution_found", lane=self.index, nonce=result.nonce)
                self._emit(LaneEvent(
                    self.index,
                    EventKind.SOLUTION,
                    generation=params.generation,
                    nonce=result.nonce,
                    hash=result.hash,
                ))
                return

            await asyncio.sleep(0)

    def _emit(self, event: LaneEvent) -> None:
        self._events.put_nowait(event)
