"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence

import pytest

from dltminer.config import Settings
from dltminer.mining.engine import MineResult, ReferenceEngine, finish_from_midstate


class ScriptedEngine(ReferenceEngine):
    """Reference engine whose ``mine_batch`` only "finds" scripted nonces.

    The hash returned for a scripted nonce is the real SHA-256 of the
    candidate, so solutions still pass block verification.
    """

    def __init__(self, solutions: Sequence[int] = (), fail_with: Exception | None = None) -> None:
        super().__init__()
        self.solutions = set(solutions)
        self.fail_with = fail_with
        self.only_tail: bytes | None = None
        self.calls: list[tuple[int, int, int]] = []
        self._calls_lock = threading.Lock()

    def mine_batch(
        self,
        h: Sequence[int],
        midstate_len: int,
        prefix_tail: bytes,
        suffix: bytes,
        start_nonce: int,
        stride: int,
        batch_size: int,
        diff_bits: int,
    ) -> MineResult | None:
        with self._calls_lock:
            self.calls.append((start_nonce, stride, batch_size))
        if self.fail_with is not None:
            raise self.fail_with
        if self.only_tail is not None and prefix_tail != self.only_tail:
            return None
        for i in range(batch_size):
            nonce = start_nonce + i * stride
            if nonce in self.solutions:
                remaining = prefix_tail + str(nonce).encode() + suffix
                return MineResult(nonce=nonce, hash=finish_from_midstate(h, remaining, midstate_len).hex())
        return None

    def visited(self) -> list[int]:
        with self._calls_lock:
            calls = list(self.calls)
        return [start + i * stride for start, stride, batch in calls for i in range(batch)]


@pytest.fixture
def engine() -> ReferenceEngine:
    return ReferenceEngine()


@pytest.fixture
def scripted_engine() -> Callable[..., ScriptedEngine]:
    return ScriptedEngine


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        miner_address="dlt1minerxyz",
        thread_count=2,
        batch_size=4,
        lane_executor="thread",
        hashrate_report_interval=0.01,
        stats_interval=0,
        poll_interval=60.0,
        reconnect_delay=0.0,
    )

