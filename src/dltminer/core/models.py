"""Domain objects: transactions, blocks, work templates and pool jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from dltminer.core.errors import StratumProtocolError

COINBASE_SENDER = "SYSTEM"


@dataclass
class Transaction:
    """A ledger transaction as the node serializes it.

    ``sender`` and ``recipient`` are the ``from`` / ``to`` wire fields.
    """

    sender: str
    recipient: str
    amount: int
    timestamp: int
    signature: str
    fee: int = 0
    data: str = ""
    public_key: str = ""

    @property
    def is_coinbase(self) -> bool:
        return self.sender == COINBASE_SENDER

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Transaction:
        """Build from a node/pool JSON object. Missing optional fields take their zero value."""
        return cls(
            sender=str(raw.get("from", "")),
            recipient=str(raw.get("to", "")),
            amount=int(raw.get("amount", 0)),
            timestamp=int(raw.get("timestamp", 0)),
            signature=str(raw.get("signature", "")),
            fee=int(raw.get("fee") or 0),
            data=str(raw.get("data") or ""),
            public_key=str(raw.get("public_key") or ""),
        )


@dataclass
class Block:
    """Candidate block. ``hash`` and ``nonce`` stay empty/zero until solved."""

    index: int
    timestamp: int
    transactions: list[Transaction]
    previous_hash: str
    difficulty: int
    merkle_root: str = ""
    hash: str = ""
    nonce: int = 0
    difficulty_bits: int = 0

    @property
    def coinbase(self) -> Transaction | None:
        return self.transactions[0] if self.transactions else None


@dataclass(frozen=True)
class WorkTemplate:
    """Everything a lane needs to search nonces for one block candidate.

    ``h`` is the SHA-256 state after absorbing ``midstate_len`` prefix bytes;
    ``prefix_tail`` holds the prefix bytes not yet absorbed and ``suffix`` the
    bytes hashed after the decimal nonce.
    ``prefix_head`` optionally carries the absorbed bytes themselves, so an
    engine in another process can rebuild a fast resumable context instead
    of finishing from the raw state words.
    """

    h: tuple[int, ...]
    midstate_len: int
    prefix_tail: bytes
    suffix: bytes
    diff_bits: int
    job_id: str | None = None
    prefix_head: bytes = b""

    def __post_init__(self) -> None:
        if len(self.h) != 8:
            raise ValueError(f"midstate must have 8 words, got {len(self.h)}")


@dataclass(frozen=True)
class StratumJob:
    """A ``mining.notify`` job. Wire order is positional, see ``from_params``."""

    job_id: str
    block_index: int
    prev_hash: str
    difficulty: int
    difficulty_bits: int
    reward: int
    txs_json: str
    pool_address: str
    timestamp: int
    clean_jobs: bool

    FIELD_COUNT = 10

    @classmethod
    def from_params(cls, params: list[Any]) -> StratumJob:
        """Parse ``[jobId, blockIndex, prevHash, difficulty, difficultyBits,
        reward, txsJSON, poolAddress, timestamp, cleanJobs]``.

        Raises StratumProtocolError when fewer than 10 params are present.
        """
        if not isinstance(params, list) or len(params) < cls.FIELD_COUNT:
            got = len(params) if isinstance(params, list) else type(params).__name__
            raise StratumProtocolError(f"mining.notify needs {cls.FIELD_COUNT} params, got {got}")
        return cls(
            job_id=str(params[0]),
            block_index=int(params[1]),
            prev_hash=str(params[2]),
            difficulty=int(params[3]),
            difficulty_bits=int(params[4] or 0),
            reward=int(params[5]),
            txs_json=params[6] if isinstance(params[6], str) else "",
            pool_address=str(params[7] or ""),
            timestamp=int(params[8] or 0),
            clean_jobs=bool(params[9]),
        )


@dataclass
class MiningStats:
    """Session counters for a running miner."""

    started_at: float = 0.0
    blocks_found: int = 0
    shares_submitted: int = 0
    total_hashes: int = 0
    earnings: int = 0
    per_lane_hashrate: list[float] = field(default_factory=list)
    hashrate: float = 0.0

    def uptime(self, now: float) -> float:
        if not self.started_at:
            return 0.0
        return max(0.0, now - self.started_at)
