"""Hash engine interface and the reference engine.

The block hash is SHA-256 over ``Index + Timestamp + txData + PreviousHash +
Nonce + Difficulty`` written as decimal strings. Everything before the nonce
is fixed for a template, so the search works from a SHA-256 *midstate*: the
compression state after absorbing every complete 64-byte block of the prefix.
Each candidate then only hashes ``prefix_tail + str(nonce) + suffix``.

Any object implementing ``HashEngine`` can be injected into the lanes and the
template builder. ``ReferenceEngine`` is a portable implementation on top of
``hashlib``; a native engine can replace it without touching callers.
"""

from __future__ import annotations

import hashlib
import struct
import threading
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

_MASK = 0xFFFFFFFF

SHA256_IV: tuple[int, ...] = (
    0x6A09E667, 0xBB67AE85, 0x3C6EF372, 0xA54FF53A,
    0x510E527F, 0x9B05688C, 0x1F83D9AB, 0x5BE0CD19,
)

_K: tuple[int, ...] = (
    0x428A2F98, 0x71374491, 0xB5C0FBCF, 0xE9B5DBA5, 0x3956C25B, 0x59F111F1, 0x923F82A4, 0xAB1C5ED5,
    0xD807AA98, 0x12835B01, 0x243185BE, 0x550C7DC3, 0x72BE5D74, 0x80DEB1FE, 0x9BDC06A7, 0xC19BF174,
    0xE49B69C1, 0xEFBE4786, 0x0FC19DC6, 0x240CA1CC, 0x2DE92C6F, 0x4A7484AA, 0x5CB0A9DC, 0x76F988DA,
    0x983E5152, 0xA831C66D, 0xB00327C8, 0xBF597FC7, 0xC6E00BF3, 0xD5A79147, 0x06CA6351, 0x14292967,
    0x27B70A85, 0x2E1B2138, 0x4D2C6DFC, 0x53380D13, 0x650A7354, 0x766A0ABB, 0x81C2C92E, 0x92722C85,
    0xA2BFE8A1, 0xA81A664B, 0xC24B8B70, 0xC76C51A3, 0xD192E819, 0xD6990624, 0xF40E3585, 0x106AA070,
    0x19A4C116, 0x1E376C08, 0x2748774C, 0x34B0BCB5, 0x391C0CB3, 0x4ED8AA4A, 0x5B9CCA4F, 0x682E6FF3,
    0x748F82EE, 0x78A5636F, 0x84C87814, 0x8CC70208, 0x90BEFFFA, 0xA4506CEB, 0xBEF9A3F7, 0xC67178F2,
)


@dataclass(frozen=True)
class MineResult:
    nonce: int
    hash: str


@dataclass(frozen=True)
class Midstate:
    """SHA-256 state after ``length`` absorbed bytes, plus the unabsorbed ``tail``."""

    h: tuple[int, ...]
    length: int
    tail: bytes


class HashEngine(Protocol):
    """Operations the miner needs from a hash implementation."""

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
    ) -> MineResult | None: ...

    def compute_midstate(self, prefix: bytes) -> Midstate: ...

    def compute_merkle_root(self, tx_lines: str) -> str: ...

    def hash_block(
        self,
        index: int,
        timestamp: int,
        tx_data: str,
        previous_hash: str,
        nonce: int,
        difficulty: int,
    ) -> str: ...

    def sha256_hex(self, data: bytes) -> str: ...

    def meets_difficulty(self, hash_hex: str, diff_bits: int) -> bool: ...


def _rotr(x: int, n: int) -> int:
    return ((x >> n) | (x << (32 - n))) & _MASK


def compress(state: Sequence[int], block: bytes) -> tuple[int, ...]:
    """One SHA-256 compression of a 64-byte block into ``state``."""
    w = list(struct.unpack(">16I", block))
    for i in range(16, 64):
        x, y = w[i - 15], w[i - 2]
        s0 = _rotr(x, 7) ^ _rotr(x, 18) ^ (x >> 3)
        s1 = _rotr(y, 17) ^ _rotr(y, 19) ^ (y >> 10)
        w.append((w[i - 16] + s0 + w[i - 7] + s1) & _MASK)

    a, b, c, d, e, f, g, h = state
    for i in range(64):
        t1 = (h + (_rotr(e, 6) ^ _rotr(e, 11) ^ _rotr(e, 25)) + ((e & f) ^ (~e & g)) + _K[i] + w[i]) & _MASK
        t2 = ((_rotr(a, 2) ^ _rotr(a, 13) ^ _rotr(a, 22)) + ((a & b) ^ (a & c) ^ (b & c))) & _MASK
        h, g, f, e, d, c, b, a = g, f, e, (d + t1) & _MASK, c, b, a, (t1 + t2) & _MASK

    return tuple((x + y) & _MASK for x, y in zip(state, (a, b, c, d, e, f, g, h)))


def finish_from_midstate(h: Sequence[int], remaining: bytes, midstate_len: int) -> bytes:
    """Complete a SHA-256 digest given a midstate and the bytes that follow it."""
    total_len = midstate_len + len(remaining)
    padded = remaining + b"\x80" + b"\x00" * ((55 - len(remaining)) % 64) + (total_len * 8).to_bytes(8, "big")
    state = tuple(h)
    for offset in range(0, len(padded), 64):
        state = compress(state, padded[offset:offset + 64])
    return struct.pack(">8I", *state)


def meets_difficulty_bytes(digest: bytes, diff_bits: int) -> bool:
    """True if ``digest`` starts with at least ``diff_bits`` zero bits."""
    if diff_bits <= 0:
        return True
    width = len(digest) * 8
    if diff_bits > width:
        return False
    return int.from_bytes(digest, "big") >> (width - diff_bits) == 0


class ReferenceEngine:
    """Hash engine backed by ``hashlib``.

    ``compute_midstate`` remembers the absorbed prefix of recent templates so
    ``mine_batch`` can resume from a copied ``hashlib`` context. A midstate it
    has not seen (e.g. produced by another engine) is finished with the
    pure-Python compression function instead, which gives identical digests.
    """

    def __init__(self, max_cached_prefixes: int = 32) -> None:
        self._prefixes: OrderedDict[tuple[tuple[int, ...], int], Any] = OrderedDict()
        self._max_cached = max_cached_prefixes
        self._lock = threading.Lock()

    def compute_midstate(self, prefix: bytes) -> Midstate:
        absorbed = (len(prefix) // 64) * 64
        state = SHA256_IV
        for offset in range(0, absorbed, 64):
            state = compress(state, prefix[offset:offset + 64])

        with self._lock:
            self._prefixes[(state, absorbed)] = hashlib.sha256(prefix[:absorbed])
            while len(self._prefixes) > self._max_cached:
                self._prefixes.popitem(last=False)

        return Midstate(h=state, length=absorbed, tail=bytes(prefix[absorbed:]))

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
        with self._lock:
            base = self._prefixes.get((tuple(h), midstate_len))

        nonce = start_nonce
        for _ in range(batch_size):
            remaining = prefix_tail + str(nonce).encode() + suffix
            if base is not None:
                ctx = base.copy()
                ctx.update(remaining)
                digest = ctx.digest()
            else:
                digest = finish_from_midstate(h, remaining, midstate_len)
            if meets_difficulty_bytes(digest, diff_bits):
                return MineResult(nonce=nonce, hash=digest.hex())
            nonce += stride
        return None

    def compute_merkle_root(self, tx_lines: str) -> str:
        """Binary merkle tree over SHA-256 of each non-empty line; odd levels duplicate the last node."""
        leaves = [line for line in tx_lines.split("\n") if line]
        if not leaves:
            return hashlib.sha256(b"").hexdigest()

        level = [hashlib.sha256(line.encode()).digest() for line in leaves]
        while len(level) > 1:
            if len(level) % 2:
                level.append(level[-1])
            level = [hashlib.sha256(level[i] + level[i + 1]).digest() for i in range(0, len(level), 2)]
        return level[0].hex()

    def hash_block(
        self,
        index: int,
        timestamp: int,
        tx_data: str,
        previous_hash: str,
        nonce: int,
        difficulty: int,
    ) -> str:
        preimage = f"{index}{timestamp}{tx_data}{previous_hash}{nonce}{difficulty}"
        return hashlib.sha256(preimage.encode()).hexdigest()

    def sha256_hex(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def meets_difficulty(self, hash_hex: str, diff_bits: int) -> bool:
        if len(hash_hex) != 64:
            return False
        try:
            digest = bytes.fromhex(hash_hex)
        except ValueError:
            return False
        return meets_difficulty_bytes(digest, diff_bits)
