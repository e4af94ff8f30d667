"""Cell types, level masks and the stored form of cell data."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

MAX_LEVEL = 3
MAX_DEPTH = 1024
MAX_BIT_LENGTH = 1023


class CellType(IntEnum):
    """Cell kinds; the value is the byte used in stored cells."""

    UNKNOWN = 0
    ORDINARY = 1
    PRUNED_BRANCH = 2
    LIBRARY_REFERENCE = 3
    MERKLE_PROOF = 4
    MERKLE_UPDATE = 5

    @classmethod
    def from_exotic_tag(cls, tag: int) -> "CellType":
        """Cell type for the first data byte of a cell in a bag of cells."""
        return _EXOTIC_TAGS.get(tag, cls.UNKNOWN)

    @property
    def exotic_tag(self) -> int:
        return _TAG_OF_TYPE.get(self, 0)

    @property
    def is_exotic(self) -> bool:
        return self is not CellType.ORDINARY


_EXOTIC_TAGS = {
    1: CellType.PRUNED_BRANCH,
    2: CellType.LIBRARY_REFERENCE,
    3: CellType.MERKLE_PROOF,
    4: CellType.MERKLE_UPDATE,
    0xFF: CellType.ORDINARY,
}
_TAG_OF_TYPE = {cell_type: tag for tag, cell_type in _EXOTIC_TAGS.items()}


@dataclass(frozen=True)
class LevelMask:
    """Three-bit mask of the levels at which a cell has distinct hashes."""

    mask: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.mask <= 7:
            raise ValueError(f"invalid level mask {self.mask}")

    @classmethod
    def with_level(cls, level: int) -> "LevelMask":
        if not 0 <= level <= MAX_LEVEL:
            raise ValueError(f"invalid level {level}")
        return cls((1 << level) - 1)

    @classmethod
    def for_merkle_cell(cls, children_mask: "LevelMask") -> "LevelMask":
        return cls(children_mask.mask >> 1)

    def level(self) -> int:
        return bin(self.mask).count("1")

    def calc_hash_index(self, index: int) -> int:
        return bin(self.mask & ((1 << index) - 1)).count("1")

    def __or__(self, other: "LevelMask") -> "LevelMask":
        return LevelMask(self.mask | other.mask)


def descriptor_bytes(
    bit_len: int, references_count: int, level_mask: int, is_exotic: bool, store_hashes: bool
) -> tuple[int, int]:
    """The two descriptor bytes that start a serialized cell."""
    d1 = references_count + 8 * int(is_exotic) + 16 * int(store_hashes) + 32 * level_mask
    d2 = bit_len // 8 + (bit_len + 7) // 8
    return d1, d2


def find_tag(data: bytes) -> int:
    """Bit length of data that ends with a completion tag."""
    length = len(data) * 8
    for byte in reversed(data):
        if byte == 0:
            length -= 8
            continue
        skip = 1
        mask = 1
        while byte & mask == 0:
            skip += 1
            mask <<= 1
        return length - skip
    return length


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def take(self, n: int) -> bytes:
        if self.offset + n > len(self.data):
            raise ValueError("Invalid cell data: unexpected end of input")
        chunk = self.data[self.offset : self.offset + n]
        self.offset += n
        return bytes(chunk)

    def byte(self) -> int:
        return self.take(1)[0]


@dataclass(frozen=True)
class CellData:
    """Cell payload with its precomputed hashes and depths."""

    cell_type: CellType
    bit_length: int
    data: bytes
    level_mask: LevelMask = LevelMask(0)
    store_hashes: bool = False
    hashes: tuple[bytes, ...] = ()
    depths: tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if not 0 <= self.bit_length <= MAX_BIT_LENGTH:
            raise ValueError(f"invalid bit length {self.bit_length}")
        if len(self.data) != (self.bit_length + 8) // 8:
            raise ValueError("data length does not match bit length")
        if any(len(h) != 32 for h in self.hashes):
            raise ValueError("hashes must be 32 bytes long")
        if any(not 0 <= d <= 0xFFFF for d in self.depths):
            raise ValueError("depth out of range")

    def serialize(self) -> bytes:
        out = bytearray([int(self.cell_type)])
        out += struct.pack("<H", self.bit_length)
        out += self.data
        out += bytes([self.level_mask.mask, int(self.store_hashes)])
        if self.hashes:
            out += bytes([1, len(self.hashes)])
            for h in self.hashes:
                out += h
        else:
            out.append(0)
        if self.depths:
            out += bytes([1, len(self.depths)])
            for d in self.depths:
                out += struct.pack("<H", d)
        else:
            out.append(0)
        return bytes(out)

    @classmethod
    def deserialize(cls, data: bytes) -> tuple["CellData", int]:
        """Parse cell data; return it with the number of bytes consumed."""
        reader = _Reader(data)
        try:
            cell_type = CellType(reader.byte())
        except ValueError:
            raise ValueError("Invalid cell data: unknown cell type") from None
        (bit_length,) = struct.unpack("<H", reader.take(2))
        payload = reader.take((bit_length + 8) // 8)
        level_mask = LevelMask(reader.byte())
        store_hashes = reader.byte() != 0
        hashes: tuple[bytes, ...] = ()
        if reader.byte():
            count = reader.byte()
            hashes = tuple(reader.take(32) for _ in range(count))
        depths: tuple[int, ...] = ()
        if reader.byte():
            count = reader.byte()
            depths = tuple(struct.unpack("<H", reader.take(2))[0] for _ in range(count))
        cell = cls(cell_type, bit_length, payload, level_mask, store_hashes, hashes, depths)
        return cell, reader.offset

    def hash(self, index: int) -> bytes:
        hash_index = self.level_mask.calc_hash_index(index)
        if self.cell_type is CellType.PRUNED_BRANCH:
            if hash_index != self.level_mask.level():
                offset = 2 + hash_index * 32
                return self.data[offset : offset + 32]
            hash_index = 0
        if not self.hashes:
            raise ValueError("cell has no stored hashes")
        return self.hashes[min(hash_index, len(self.hashes) - 1)]

    def depth(self, index: int) -> int:
        hash_index = self.level_mask.calc_hash_index(index)
        if self.cell_type is CellType.PRUNED_BRANCH:
            level = self.level_mask.level()
            if hash_index != level:
                offset = 2 + level * 32 + hash_index * 2
                return int.from_bytes(self.data[offset : offset + 2], "big")
            hash_index = 0
        if not self.depths:
            raise ValueError("cell has no stored depths")
        return self.depths[min(hash_index, len(self.depths) - 1)]

    def repr_hash(self) -> bytes:
        return self.hash(MAX_LEVEL)