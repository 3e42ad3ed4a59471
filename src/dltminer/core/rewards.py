"""Block subsidy schedule and coinbase construction."""

from __future__ import annotations

import time

from dltminer.core.models import COINBASE_SENDER, Transaction

DLT_UNIT: int = 100_000_000  # base units per DLT
INITIAL_REWARD: int = 50 * DLT_UNIT
HALVING_INTERVAL: int = 250_000
MAX_HALVINGS: int = 64


def block_reward(height: int) -> int:
    """Subsidy for the block at ``height``.

    Halves every HALVING_INTERVAL blocks (floor division), and is 0 once
    MAX_HALVINGS halvings have happened or the reward drops below one unit.
    """
    if height < 0:
        raise ValueError(f"height must be non-negative, got {height}")
    halvings = height // HALVING_INTERVAL
    if halvings >= MAX_HALVINGS:
        return 0
    reward = INITIAL_REWARD >> halvings
    if reward < 1:
        return 0
    return reward


def total_fees(txs: list[Transaction]) -> int:
    return sum(tx.fee for tx in txs)


def build_coinbase(
    miner_address: str,
    block_index: int,
    reward: int,
    fees: int,
    now_ns: int | None = None,
) -> Transaction:
    """Coinbase paying ``reward + fees`` to ``miner_address``.

    The signature embeds the block index and a nanosecond timestamp so two
    coinbases for the same height never collide. Optional fields stay at
    their zero value and are omitted from the canonical JSON.
    """
    if now_ns is None:
        now_ns = time.time_ns()
    return Transaction(
        sender=COINBASE_SENDER,
        recipient=miner_address,
        amount=reward + fees,
        timestamp=now_ns // 1_000_000_000,
        signature=f"coinbase-{block_index}-{now_ns}",
    )


def format_dlt(amount: int) -> str:
    """Base units as a DLT string with 8 fractional digits: ``5000000000`` -> ``"50.00000000"``."""
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), DLT_UNIT)
    return f"{sign}{whole}.{frac:08d}"
