"""Block-template builder.

Turns a chain tip (solo mode, polled from the node) or a pool job into a
``WorkTemplate`` for the lanes, and keeps the matching draft ``Block`` so a
solution can be verified and submitted.

The block hash preimage is ``Index + Timestamp + txData + PreviousHash +
Nonce + Difficulty``. ``txData`` is the merkle root from
MERKLE_ROOT_FORK_HEIGHT onwards and the canonical JSON transaction array
below it.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

import structlog

from dltminer.core.errors import HashMismatchError, NodeError
from dltminer.core.models import Block, StratumJob, Transaction, WorkTemplate
from dltminer.core.rewards import block_reward, build_coinbase, total_fees
from dltminer.core.serialization import transaction_lines, transactions_to_json_array
from dltminer.mining.engine import HashEngine
from dltminer.work.node_client import NodeClient

logger = structlog.get_logger()

MERKLE_ROOT_FORK_HEIGHT = 6000
DEFAULT_POLL_INTERVAL = 3.0  # seconds

WorkCallback = Callable[[WorkTemplate], None]
BlockCallback = Callable[[Block], None]
StatusCallback = Callable[[str], None]


@dataclass(frozen=True)
class BlockDraft:
    """A candidate block plus the exact ``txData`` string its template was hashed with."""

    block: Block
    tx_data: str
    generation: int
    job_id: str | None = None


def select_tx_data(index: int, merkle_root: str, txs: list[Transaction]) -> str:
    """Transaction component of the hash preimage for a block at ``index``."""
    if index >= MERKLE_ROOT_FORK_HEIGHT:
        return merkle_root
    return transactions_to_json_array(txs)


def effective_diff_bits(difficulty: int, difficulty_bits: int) -> int:
    """Explicit bit difficulty, or ``difficulty * 4`` when the node reports none."""
    if difficulty_bits > 0:
        return difficulty_bits
    return difficulty * 4


def parse_pool_transactions(txs_json: str) -> list[Transaction]:
    """Decode the job's ``txsJSON`` field. ``""``, ``"null"`` and garbage yield no transactions."""
    if not txs_json or txs_json == "null":
        return []
    try:
        raw = json.loads(txs_json)
    except ValueError:
        logger.warning("pool_txs_unparseable", length=len(txs_json))
        return []
    if not isinstance(raw, list):
        return []
    try:
        return [Transaction.from_dict(tx) for tx in raw if isinstance(tx, dict)]
    except (TypeError, ValueError) as exc:
        logger.warning("pool_txs_invalid", error=str(exc))
        return []


class TemplateBuilder:
    """Builds work templates and verifies/submits solved blocks.

    In solo mode ``start()`` polls the node every ``poll_interval`` seconds
    and emits a template through ``on_work_template`` whenever the chain tip
    changes. In pool mode the caller feeds jobs to ``build_pool_work``.
    """

    def __init__(
        self,
        engine: HashEngine,
        miner_address: str,
        *,
        node: NodeClient | None = None,
        on_work_template: WorkCallback | None = None,
        on_block_accepted: BlockCallback | None = None,
        on_status: StatusCallback | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock_ns: Callable[[], int] = time.time_ns,
    ) -> None:
        self._engine = engine
        self._node = node
        self.miner_address = miner_address
        self._on_work_template = on_work_template or (lambda _template: None)
        self._on_block_accepted = on_block_accepted or (lambda _block: None)
        self._on_status = on_status or (lambda message: logger.info("status", message=message))
        self._poll_interval = poll_interval
        self._clock_ns = clock_ns

        self.current_height: int | None = None
        self.last_block_hash: str | None = None
        self.current_difficulty = 0
        self.current_diff_bits = 0
        self.pending: list[Transaction] = []

        self._draft: BlockDraft | None = None
        self._generation = 0
        self._submit_lock = asyncio.Lock()
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def draft(self) -> BlockDraft | None:
        return self._draft

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        """Start polling the node (solo mode)."""
        if self._node is None:
            raise RuntimeError("solo mode needs a node client")
        if self.is_polling:
            return
        self.current_height = None
        self.last_block_hash = None
        self._poll_task = asyncio.create_task(self._poll_loop(), name="template-poll")
        logger.info("template_polling_started", node=self._node.base_url, interval=self._poll_interval)

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None
        logger.info("template_polling_stopped")

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                logger.exception("poll_cycle_failed")
                self._on_status(f"Poll error: {exc}")
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> WorkTemplate | None:
        """One poll cycle. Returns the emitted template, or None if nothing changed."""
        assert self._node is not None
        try:
            status = await self._node.get_status()
        except NodeError as exc:
            logger.warning("poll_failed", error=str(exc))
            self._on_status(f"Poll error: {exc}")
            return None

        if status.blockchain_height == self.current_height and status.last_block_hash == self.last_block_hash:
            return None

        previous_tip = (self.current_height, self.last_block_hash)
        self.current_height = status.blockchain_height
        self.last_block_hash = status.last_block_hash
        self.current_difficulty = status.difficulty
        self.current_diff_bits = status.difficulty_bits or 0
        self._on_status(
            f"Chain height: {self.current_height}, difficulty: {self.current_diff_bits} bits "
            f"({self.current_difficulty} hex)"
        )

        try:
            self.pending = await self._fetch_mempool()
            template = self.build_solo_work()
        except Exception:
            # Forget the tip so the next poll rebuilds it.
            self.current_height, self.last_block_hash = previous_tip
            raise
        self._on_work_template(template)
        return template

    async def _fetch_mempool(self) -> list[Transaction]:
        assert self._node is not None
        try:
            return await self._node.get_mempool()
        except NodeError as exc:
            logger.warning("mempool_fetch_failed", error=str(exc))
            return []

    def build_solo_work(self) -> WorkTemplate:
        """Template for the next block on top of the last observed tip."""
        if self.current_height is None or self.last_block_hash is None:
            raise RuntimeError("no chain tip observed yet")
        index = self.current_height
        reward = block_reward(index)
        template = self._build(
            index=index,
            previous_hash=self.last_block_hash,
            difficulty=self.current_difficulty,
            difficulty_bits=self.current_diff_bits,
            pending=self.pending,
            coinbase_address=self.miner_address,
            reward=reward,
            diff_bits=effective_diff_bits(self.current_difficulty, self.current_diff_bits),
        )
        self._on_status(f"Mining block #{index} | {template.diff_bits} bits | {len(self.pending) + 1} txs")
        return template

    def build_pool_work(self, job: StratumJob, share_bits: int) -> WorkTemplate:
        """Template for a pool job.

        Lanes search at the pool's share difficulty; the draft keeps the
        network difficulty fields so the preimage matches a full block.
        """
        txs = parse_pool_transactions(job.txs_json)
        return self._build(
            index=job.block_index,
            previous_hash=job.prev_hash,
            difficulty=job.difficulty,
            difficulty_bits=job.difficulty_bits,
            pending=txs,
            coinbase_address=job.pool_address or self.miner_address,
            reward=job.reward,
            diff_bits=share_bits,
            job_id=job.job_id,
        )

    def _build(
        self,
        *,
        index: int,
        previous_hash: str,
        difficulty: int,
        difficulty_bits: int,
        pending: list[Transaction],
        coinbase_address: str,
        reward: int,
        diff_bits: int,
        job_id: str | None = None,
    ) -> WorkTemplate:
        now_ns = self._clock_ns()
        coinbase = build_coinbase(coinbase_address, index, reward, total_fees(pending), now_ns=now_ns)
        txs = [coinbase, *pending]
        merkle_root = self._engine.compute_merkle_root(transaction_lines(txs))
        timestamp = now_ns // 1_000_000_000

        block = Block(
            index=index,
            timestamp=timestamp,
            transactions=txs,
            previous_hash=previous_hash,
            difficulty=difficulty,
            merkle_root=merkle_root,
            difficulty_bits=difficulty_bits,
        )
        tx_data = select_tx_data(index, merkle_root, txs)

        prefix = f"{index}{timestamp}{tx_data}{previous_hash}".encode()
        suffix = str(difficulty).encode()
        midstate = self._engine.compute_midstate(prefix)

        self._generation += 1
        self._draft = BlockDraft(block=block, tx_data=tx_data, generation=self._generation, job_id=job_id)

        logger.debug(
            "template_built",
            index=index,
            txs=len(txs),
            diff_bits=diff_bits,
            job_id=job_id,
            merkle=index >= MERKLE_ROOT_FORK_HEIGHT,
        )
        return WorkTemplate(
            h=tuple(midstate.h),
            midstate_len=midstate.length,
            prefix_tail=midstate.tail,
            prefix_head=prefix[:midstate.length],
            suffix=suffix,
            diff_bits=diff_bits,
            job_id=job_id,
        )

    def complete_block(self, nonce: int, hash_hex: str, draft: BlockDraft | None = None) -> Block:
        """Fill a draft (the current one by default) with a solution and check the hash locally.

        Raises RuntimeError without a draft and HashMismatchError when the
        recomputed hash differs from ``hash_hex``.
        """
        draft = draft or self._draft
        if draft is None:
            raise RuntimeError("no draft block")
        solved = replace(draft.block, nonce=nonce, hash=hash_hex)
        expected = self._engine.hash_block(
            solved.index,
            solved.timestamp,
            draft.tx_data,
            solved.previous_hash,
            nonce,
            solved.difficulty,
        )
        if expected != hash_hex:
            raise HashMismatchError(hash_hex, expected)
        return solved

    async def on_solution_found(self, nonce: int, hash_hex: str, draft: BlockDraft | None = None) -> bool:
        """Verify and submit a solved block. Returns True if the node accepted it.

        ``draft`` pins the template the solution was found for; it defaults
        to the current one. Submissions run one at a time; a later solution
        waits for the previous POST to finish.
        """
        async with self._submit_lock:
            draft = draft or self._draft
            if draft is None:
                self._on_status("No block to submit (stale solution?)")
                return False
            try:
                block = self.complete_block(nonce, hash_hex, draft)
            except HashMismatchError as exc:
                logger.error("hash_mismatch", nonce=nonce, reported=exc.reported, expected=exc.expected)
                self._on_status(f"HASH MISMATCH! {exc}")
                return False

            if self._node is None:
                self._on_status(f"Block #{block.index} solved but no node is configured")
                return False

            self._on_status(f"Submitting block #{block.index}...")
            try:
                result = await self._node.submit_block(block)
            except NodeError as exc:
                logger.warning("block_submit_failed", index=block.index, error=str(exc))
                self._on_status(f"Submit error: {exc}")
                return False

            if not result.success:
                logger.info("block_rejected", index=block.index, message=result.message)
                self._on_status(f"Block rejected: {result.message}")
                return False

            logger.info("block_accepted", index=block.index, hash=block.hash, nonce=block.nonce)
            self._on_status(f"BLOCK #{block.index} ACCEPTED!")
            self._on_block_accepted(block)
            return True
