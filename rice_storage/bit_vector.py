"""
Fixed-width bit vectors for sparse distributed memory (SDM).

An address or value is 1024 bits held as 16 unsigned 64-bit chunks. Random
addresses of this width are pairwise near-orthogonal, which is what lets the
server write to a neighborhood of close addresses and read back from the
nearest stored ones. This module only provides the representation and the
Hamming distance; neighborhood selection lives server-side.
"""

from __future__ import annotations

import random as _random
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from .errors import ValidationError

ADDRESS_SIZE_U64 = 16
CHUNK_BITS = 64
TOTAL_BITS = ADDRESS_SIZE_U64 * CHUNK_BITS

_U64_LIMIT = 1 << CHUNK_BITS
_LOW_32 = 0xFFFFFFFF


def _pop_count32(value: int) -> int:
    """Population count of a 32-bit value."""
    return (value & _LOW_32).bit_count()


@dataclass(frozen=True)
class BitVector:
    """
    Immutable 1024-bit vector used as an SDM address or payload.

    Args:
        chunks: Exactly 16 integers in [0, 2**64). Omit for the zero vector.

    Raises:
        ValidationError: Wrong chunk count or a chunk outside the u64 range
    """

    chunks: tuple[int, ...]

    ADDRESS_SIZE_U64 = ADDRESS_SIZE_U64

    def __init__(self, chunks: Iterable[int] | None = None) -> None:
        if chunks is None:
            values: tuple[int, ...] = (0,) * ADDRESS_SIZE_U64
        else:
            values = tuple(chunks)
        if len(values) != ADDRESS_SIZE_U64:
            raise ValidationError(
                f"BitVector must have {ADDRESS_SIZE_U64} chunks, got {len(values)}"
            )
        for index, chunk in enumerate(values):
            if isinstance(chunk, bool) or not isinstance(chunk, int):
                raise ValidationError(f"BitVector chunk {index} must be an int, got {chunk!r}")
            if not 0 <= chunk < _U64_LIMIT:
                raise ValidationError(f"BitVector chunk {index} out of u64 range: {chunk}")
        object.__setattr__(self, "chunks", values)

    @classmethod
    def random(cls, rng: _random.Random | None = None) -> BitVector:
        """Draw 16 independent, uniformly random 64-bit chunks."""
        source = rng or _random.SystemRandom()
        return cls(source.getrandbits(CHUNK_BITS) for _ in range(ADDRESS_SIZE_U64))

    @classmethod
    def from_bytes(cls, data: bytes) -> BitVector:
        """Decode 128 bytes of big-endian chunks."""
        width = CHUNK_BITS // 8
        if len(data) != ADDRESS_SIZE_U64 * width:
            raise ValidationError(
                f"BitVector needs {ADDRESS_SIZE_U64 * width} bytes, got {len(data)}"
            )
        return cls(
            int.from_bytes(data[i : i + width], "big") for i in range(0, len(data), width)
        )

    def to_bytes(self) -> bytes:
        """Encode as 128 bytes of big-endian chunks."""
        return b"".join(chunk.to_bytes(CHUNK_BITS // 8, "big") for chunk in self.chunks)

    def to_list(self) -> list[int]:
        """Chunks as a list, the shape both transports put on the wire."""
        return list(self.chunks)

    def flip_bit(self, index: int) -> BitVector:
        """
        Return a copy with one bit inverted.

        Bit 0 is the least significant bit of chunk 0.
        """
        if not 0 <= index < TOTAL_BITS:
            raise ValidationError(f"Bit index must be in [0, {TOTAL_BITS}), got {index}")
        chunk_index, bit = divmod(index, CHUNK_BITS)
        values = list(self.chunks)
        values[chunk_index] ^= 1 << bit
        return BitVector(values)

    def hamming_distance(self, other: BitVector) -> int:
        """
        Count the bits that differ between two vectors.

        Each 64-bit XOR is counted as two 32-bit population counts.

        Returns:
            Distance in [0, 1024]
        """
        distance = 0
        for mine, theirs in zip(self.chunks, other.chunks, strict=True):
            xor = mine ^ theirs
            distance += _pop_count32(xor) + _pop_count32(xor >> 32)
        return distance

    def __iter__(self) -> Iterator[int]:
        return iter(self.chunks)

    def __len__(self) -> int:
        return ADDRESS_SIZE_U64

    def __repr__(self) -> str:
        return f"BitVector({self.to_bytes().hex()})"


def hamming_distance(a: BitVector, b: BitVector) -> int:
    """Hamming distance between two addresses."""
    return a.hamming_distance(b)


__all__ = [
    "ADDRESS_SIZE_U64",
    "BitVector",
    "TOTAL_BITS",
    "hamming_distance",
]
