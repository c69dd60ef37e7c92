"""
Content hashing and duplicate detection.

Every upload is content-addressed: the SHA-256 of the file's full bytes,
hex-encoded, is checked against the server before any transfer.

Two digest strategies sit behind one interface:
    HashlibDigest      hashlib (OpenSSL-backed), used whenever it works
    PureSha256Digest   in-process pure Python implementation

select_strategy() picks one once, by probing hashlib with a known test
vector. Both produce identical digests for identical bytes.

Hashing is CPU-bound, so ContentHasher runs it in a worker thread and the
event loop keeps serving the connection meanwhile.

Usage:
    hasher = ContentHasher()
    digest = await hasher.hash_file(Path("song.flac"))

    checker = DedupChecker(correlator)
    if await checker.exists(digest):
        ...  # skip the transfer
"""

import asyncio
import hashlib
import struct
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Protocol

from chillfi_client.core.logger import get_logger
from chillfi_client.rpc.correlator import RpcCorrelator


logger = get_logger(__name__)


DEFAULT_BLOCK_SIZE = 1024 * 1024

# SHA-256("abc"), FIPS 180-2 appendix B.1
SELF_TEST_INPUT = b"abc"
SELF_TEST_DIGEST = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


# =============================================================================
# Pure Python SHA-256
# =============================================================================

_MASK = 0xFFFFFFFF

_INITIAL_STATE = (
    0x6a09e667, 0xbb67ae85, 0x3c6ef372, 0xa54ff53a,
    0x510e527f, 0x9b05688c, 0x1f83d9ab, 0x5be0cd19,
)

_ROUND_CONSTANTS = (
    0x428a2f98, 0x71374491, 0xb5c0fbcf, 0xe9b5dba5, 0x3956c25b, 0x59f111f1, 0x923f82a4, 0xab1c5ed5,
    0xd807aa98, 0x12835b01, 0x243185be, 0x550c7dc3, 0x72be5d74, 0x80deb1fe, 0x9bdc06a7, 0xc19bf174,
    0xe49b69c1, 0xefbe4786, 0x0fc19dc6, 0x240ca1cc, 0x2de92c6f, 0x4a7484aa, 0x5cb0a9dc, 0x76f988da,
    0x983e5152, 0xa831c66d, 0xb00327c8, 0xbf597fc7, 0xc6e00bf3, 0xd5a79147, 0x06ca6351, 0x14292967,
    0x27b70a85, 0x2e1b2138, 0x4d2c6dfc, 0x53380d13, 0x650a7354, 0x766a0abb, 0x81c2c92e, 0x92722c85,
    0xa2bfe8a1, 0xa81a664b, 0xc24b8b70, 0xc76c51a3, 0xd192e819, 0xd6990624, 0xf40e3585, 0x106aa070,
    0x19a4c116, 0x1e376c08, 0x2748774c, 0x34b0bcb5, 0x391c0cb3, 0x4ed8aa4a, 0x5b9cca4f, 0x682e6ff3,
    0x748f82ee, 0x78a5636f, 0x84c87814, 0x8cc70208, 0x90befffa, 0xa4506ceb, 0xbef9a3f7, 0xc67178f2,
)


def _rotr(value: int, bits: int) -> int:
    return ((value >> bits) | (value << (32 - bits))) & _MASK


class PureSha256:
    """
    Incremental SHA-256 with the hashlib object interface
    (update / digest / hexdigest).
    """

    name = "sha256"
    digest_size = 32
    block_size = 64

    def __init__(self, data: bytes = b"") -> None:
        self._state = list(_INITIAL_STATE)
        self._buffer = b""
        self._length = 0
        if data:
            self.update(data)

    def update(self, data: bytes) -> None:
        data = bytes(data)
        self._length += len(data)
        buffer = self._buffer + data
        full = len(buffer) - len(buffer) % self.block_size
        for offset in range(0, full, self.block_size):
            self._compress(buffer[offset:offset + self.block_size])
        self._buffer = buffer[full:]

    def digest(self) -> bytes:
        saved = list(self._state)
        padding = (
            b"\x80"
            + b"\x00" * ((55 - len(self._buffer)) % 64)
            + struct.pack(">Q", (self._length * 8) & 0xFFFFFFFFFFFFFFFF)
        )
        tail = self._buffer + padding
        for offset in range(0, len(tail), self.block_size):
            self._compress(tail[offset:offset + self.block_size])
        result = struct.pack(">8I", *self._state)
        self._state = saved
        return result

    def hexdigest(self) -> str:
        return self.digest().hex()

    def _compress(self, block: bytes) -> None:
        w = list(struct.unpack(">16I", block))
        for i in range(16, 64):
            s0 = _rotr(w[i - 15], 7) ^ _rotr(w[i - 15], 18) ^ (w[i - 15] >> 3)
            s1 = _rotr(w[i - 2], 17) ^ _rotr(w[i - 2], 19) ^ (w[i - 2] >> 10)
            w.append((w[i - 16] + s0 + w[i - 7] + s1) & _MASK)

        a, b, c, d, e, f, g, h = self._state
        for i in range(64):
            big_s1 = _rotr(e, 6) ^ _rotr(e, 11) ^ _rotr(e, 25)
            choose = (e & f) ^ (~e & g)
            t1 = (h + big_s1 + choose + _ROUND_CONSTANTS[i] + w[i]) & _MASK
            big_s0 = _rotr(a, 2) ^ _rotr(a, 13) ^ _rotr(a, 22)
            majority = (a & b) ^ (a & c) ^ (b & c)
            t2 = (big_s0 + majority) & _MASK

            h = g
            g = f
            f = e
            e = (d + t1) & _MASK
            d = c
            c = b
            b = a
            a = (t1 + t2) & _MASK

        self._state = [
            (x + y) & _MASK for x, y in zip(self._state, (a, b, c, d, e, f, g, h))
        ]


# =============================================================================
# Strategies
# =============================================================================

class _Hasher(Protocol):
    def update(self, data: bytes) -> Any: ...
    def hexdigest(self) -> str: ...


class DigestStrategy(ABC):
    """SHA-256 implementation used by ContentHasher."""

    name = "abstract"

    @abstractmethod
    def new(self) -> _Hasher:
        pass

    def digest_bytes(self, data: bytes) -> str:
        hasher = self.new()
        hasher.update(data)
        return hasher.hexdigest()

    def digest_file(self, path: Path, block_size: int = DEFAULT_BLOCK_SIZE) -> str:
        hasher = self.new()
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(block_size), b""):
                hasher.update(block)
        return hasher.hexdigest()


class HashlibDigest(DigestStrategy):
    name = "hashlib"

    def new(self) -> _Hasher:
        return hashlib.sha256()


class PureSha256Digest(DigestStrategy):
    name = "pure"

    def new(self) -> _Hasher:
        return PureSha256()


def select_strategy() -> DigestStrategy:
    """
    Choose the digest strategy once.

    hashlib is used when it offers sha256 and reproduces the known test
    vector; otherwise the pure implementation is used.
    """
    try:
        digest = hashlib.sha256(SELF_TEST_INPUT).hexdigest()
    except (AttributeError, ValueError) as e:
        logger.warning(f"hashlib sha256 unavailable ({e}), using pure SHA-256")
        return PureSha256Digest()

    if digest != SELF_TEST_DIGEST:
        logger.warning("hashlib sha256 failed its self-test, using pure SHA-256")
        return PureSha256Digest()

    return HashlibDigest()


# =============================================================================
# Hasher and dedup check
# =============================================================================

class ContentHasher:
    """
    Computes content digests off the event loop.

    Args:
        strategy: Digest strategy. Chosen by select_strategy() when omitted.
        block_size: Bytes read per block when hashing files.
    """

    def __init__(self, strategy: DigestStrategy | None = None, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
        self.strategy = strategy or select_strategy()
        self.block_size = block_size
        logger.debug(f"Content hashing with {self.strategy.name} SHA-256")

    async def hash_file(self, path: Path) -> str:
        return await asyncio.to_thread(self.strategy.digest_file, path, self.block_size)

    async def hash_bytes(self, data: bytes) -> str:
        return await asyncio.to_thread(self.strategy.digest_bytes, data)


class DedupChecker:
    """
    Asks the server whether content already exists (song:checkHash).

    Errors propagate: the caller decides what a failed check means.
    """

    def __init__(self, correlator: RpcCorrelator) -> None:
        self.correlator = correlator

    async def exists(self, digest: str) -> bool:
        response = await self.correlator.call("song:checkHash", {"hash": digest})
        return bool(response.get("exists")) if isinstance(response, dict) else False
