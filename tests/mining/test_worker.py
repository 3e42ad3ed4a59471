"""Tests for a single hash-search lane."""

from __future__ import annotations

import asyncio

import pytest

from dltminer.core.models import WorkTemplate
from dltminer.mining.engine import SHA256_IV
from dltminer.mining.worker import CommandKind, EventKind, HashWorker, LaneCommand, LaneEvent, LaneParams

TEMPLATE = WorkTemplate(h=SHA256_IV, midstate_len=0, prefix_tail=b"prefix", suffix=b"6", diff_bits=24)


async def _next_event(events: asyncio.Queue[LaneEvent], kind: EventKind, timeout: float = 2.0) -> LaneEvent:
    async def _wait() -> LaneEvent:
        while True:
            event = await events.get()
            if event.kind == kind:
                return event

    return await asyncio.wait_for(_wait(), timeout)


async def _start_lane(worker: HashWorker) -> asyncio.Task[None]:
    return asyncio.create_task(worker.run())


async def _shutdown(worker: HashWorker, task: asyncio.Task[None]) -> None:
    worker.post(LaneCommand(CommandKind.SHUTDOWN))
    await asyncio.wait_for(task, 2.0)


class TestHashWorker:
    @pytest.mark.asyncio
    async def test_ready_then_solution(self, scripted_engine) -> None:
        engine = scripted_engine(solutions=[7])
        events: asyncio.Queue[LaneEvent] = asyncio.Queue()
        worker = HashWorker(1, engine, events, batch_size=2, report_interval=60.0)
        task = await _start_lane(worker)

        ready = await _next_event(events, EventKind.READY)
        assert ready.lane == 1

        worker.post(LaneCommand(CommandKind.START, LaneParams(TEMPLATE, start_nonce=1, stride=2, generation=3)))
        solution = await _next_event(events, EventKind.SOLUTION)
        assert solution.nonce == 7
        assert solution.generation == 3
        assert len(solution.hash) == 64

        # batches [1, 3] then [5, 7]
        assert engine.calls == [(1, 2, 2), (5, 2, 2)]
        assert not worker.is_mining
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_hashrate_reports(self, scripted_engine) -> None:
        engine = scripted_engine()
        events: asyncio.Queue[LaneEvent] = asyncio.Queue()
        ticks = iter(range(1000))
        worker = HashWorker(0, engine, events, batch_size=10, report_interval=1.0, clock=lambda: float(next(ticks)))
        task = await _start_lane(worker)

        worker.post(LaneCommand(CommandKind.START, LaneParams(TEMPLATE, 0, 1, generation=1)))
        report = await _next_event(events, EventKind.HASHRATE)
        assert report.hashes == 10
        assert report.hashrate == 10.0
        assert report.generation == 1
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_engine_failure_reported_and_lane_stops(self, scripted_engine) -> None:
        engine = scripted_engine(fail_with=RuntimeError("engine exploded"))
        events: asyncio.Queue[LaneEvent] = asyncio.Queue()
        worker = HashWorker(2, engine, events, batch_size=4)
        task = await _start_lane(worker)

        worker.post(LaneCommand(CommandKind.START, LaneParams(TEMPLATE, 2, 4, generation=1)))
        error = await _next_event(events, EventKind.ERROR)
        assert error.lane == 2
        assert "engine exploded" in error.error

        await asyncio.sleep(0.01)
        assert len(engine.calls) == 1
        assert not task.done()
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_new_work_restarts_partition(self, scripted_engine) -> None:
        engine = scripted_engine()
        events: asyncio.Queue[LaneEvent] = asyncio.Queue()
        worker = HashWorker(0, engine, events, batch_size=3, report_interval=60.0)
        task = await _start_lane(worker)

        worker.post(LaneCommand(CommandKind.START, LaneParams(TEMPLATE, 0, 2, generation=1)))
        while len(engine.calls) < 3:
            await asyncio.sleep(0)

        engine.only_tail = b"other"
        engine.solutions = {100}
        other = WorkTemplate(h=SHA256_IV, midstate_len=0, prefix_tail=b"other", suffix=b"6", diff_bits=24)
        worker.post(LaneCommand(CommandKind.NEW_WORK, LaneParams(other, 0, 2, generation=2)))

        solution = await _next_event(events, EventKind.SOLUTION)
        assert solution.generation == 2
        assert solution.nonce == 100
        # the new run starts again from the lane's start nonce
        restarts = [call for call in engine.calls if call[0] == 0]
        assert len(restarts) == 2
        await _shutdown(worker, task)

    @pytest.mark.asyncio
    async def test_stop_halts_batches(self, scripted_engine) -> None:
        engine = scripted_engine()
        events: asyncio.Queue[LaneEvent] = asyncio.Queue()
        worker = HashWorker(0, engine, events, batch_size=2, report_interval=60.0)
        task = await _start_lane(worker)

        worker.post(LaneCommand(CommandKind.START, LaneParams(TEMPLATE, 0, 1, generation=1)))
        while len(engine.calls) < 2:
            await asyncio.sleep(0)
        worker.post(LaneCommand(CommandKind.STOP))
        await asyncio.sleep(0.05)
        count = len(engine.calls)
        await asyncio.sleep(0.05)
        assert len(engine.calls) == count
        assert not worker.is_mining
        await _shutdown(worker, task)
