"""Canonical JSON for transactions and blocks.

The node hashes the exact bytes produced by Go's ``encoding/json``: struct
field order, ``omitempty`` on a fixed set of fields, compact separators and
HTML-safe string escaping. Any deviation changes the merkle root and therefore
the block hash, so every field is written explicitly here instead of going
through a generic ``json.dumps`` of a dict.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable
from typing import Any

from dltminer.core.models import Block, Transaction

# Escaped by Go's json.Marshal inside every string.
_GO_STRING_ESCAPES: dict[str, str] = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _always(_value: Any) -> bool:
    return True


def _non_zero(value: Any) -> bool:
    return value != 0


def _non_empty(value: Any) -> bool:
    return value != ""


# (wire name, attribute, include predicate)
TRANSACTION_FIELDS: tuple[tuple[str, str, Callable[[Any], bool]], ...] = (
    ("from", "sender", _always),
    ("to", "recipient", _always),
    ("amount", "amount", _always),
    ("fee", "fee", _non_zero),
    ("data", "data", _non_empty),
    ("timestamp", "timestamp", _always),
    ("signature", "signature", _always),
    ("public_key", "public_key", _non_empty),
)

BLOCK_FIELDS: tuple[tuple[str, str, Callable[[Any], bool]], ...] = (
    ("Index", "index", _always),
    ("Timestamp", "timestamp", _always),
    ("transactions", "transactions", _always),
    ("MerkleRoot", "merkle_root", _non_empty),
    ("PreviousHash", "previous_hash", _always),
    ("Hash", "hash", _always),
    ("Nonce", "nonce", _always),
    ("Difficulty", "difficulty", _always),
    ("DifficultyBits", "difficulty_bits", _non_zero),
)


def encode_string(value: str) -> str:
    """JSON-encode a string the way Go does."""
    encoded = json.dumps(value, ensure_ascii=False)
    for char, escape in _GO_STRING_ESCAPES.items():
        encoded = encoded.replace(char, escape)
    return encoded


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return encode_string(value)
    if isinstance(value, Transaction):
        return transaction_to_json(value)
    if isinstance(value, list):
        return "[" + ",".join(_encode_value(item) for item in value) + "]"
    raise TypeError(f"Cannot canonically encode {type(value).__name__}")


def _encode_object(obj: Any, fields: Iterable[tuple[str, str, Callable[[Any], bool]]]) -> str:
    parts = []
    for wire_name, attr, include in fields:
        value = getattr(obj, attr)
        if include(value):
            parts.append(f"{encode_string(wire_name)}:{_encode_value(value)}")
    return "{" + ",".join(parts) + "}"


def transaction_to_json(tx: Transaction) -> str:
    """Serialize one transaction: from, to, amount, fee?, data?, timestamp, signature, public_key?"""
    return _encode_object(tx, TRANSACTION_FIELDS)


def transactions_to_json_array(txs: Iterable[Transaction]) -> str:
    """Serialize a list of transactions as a JSON array (pre-merkle block hash input)."""
    return "[" + ",".join(transaction_to_json(tx) for tx in txs) + "]"


def transaction_lines(txs: Iterable[Transaction]) -> str:
    """Newline-joined canonical transactions, the merkle-root engine input."""
    return "\n".join(transaction_to_json(tx) for tx in txs)


def block_to_json(block: Block) -> str:
    """Serialize a block: Index, Timestamp, transactions, MerkleRoot?, PreviousHash,
    Hash, Nonce, Difficulty, DifficultyBits?"""
    return _encode_object(block, BLOCK_FIELDS)
