"""Fixed-size records holding computed hashes, depths and counters of cells."""

from __future__ import annotations

from .cell import CellType, LevelMask


class HashesEntry:
    """Read-only view of one entry.

    Layout: level mask, cell type, two padding bytes, tree bits count (u64 LE),
    tree cell count (u64 LE), four 32-byte hashes, four depths (u16 LE).
    """

    LEN = 4 + 8 + 8 + 32 * 4 + 2 * 4
    HASHES_OFFSET = 4 + 8 + 8
    DEPTHS_OFFSET = 4 + 8 + 8 + 32 * 4

    def __init__(self, buffer) -> None:
        self._buf = buffer

    def level_mask(self) -> LevelMask:
        return LevelMask(self._buf[0])

    def cell_type(self) -> CellType:
        return CellType(self._buf[1])

    def tree_bits_count(self) -> int:
        return int.from_bytes(self._buf[4:12], "little")

    def tree_cell_count(self) -> int:
        return int.from_bytes(self._buf[12:20], "little")

    def hash(self, n: int) -> bytes:
        offset = self.HASHES_OFFSET + 32 * self.level_mask().calc_hash_index(n)
        return bytes(self._buf[offset : offset + 32])

    def depth(self, n: int) -> int:
        offset = self.DEPTHS_OFFSET + 2 * self.level_mask().calc_hash_index(n)
        return int.from_bytes(self._buf[offset : offset + 2], "little")

    def pruned_branch_hash(self, n: int, data: bytes) -> bytes:
        level_mask = self.level_mask()
        index = level_mask.calc_hash_index(n)
        if index == level_mask.level():
            return bytes(self._buf[self.HASHES_OFFSET : self.HASHES_OFFSET + 32])
        offset = 2 + index * 32
        return bytes(data[offset : offset + 32])

    def pruned_branch_depth(self, n: int, data: bytes) -> int:
        level_mask = self.level_mask()
        index = level_mask.calc_hash_index(n)
        level = level_mask.level()
        if index == level:
            return int.from_bytes(self._buf[self.DEPTHS_OFFSET : self.DEPTHS_OFFSET + 2], "little")
        offset = 2 + level * 32 + index * 2
        return int.from_bytes(data[offset : offset + 2], "big")


class HashesEntryWriter:
    """Writable view of one entry."""

    def __init__(self, buffer: memoryview) -> None:
        self._buf = buffer

    def as_reader(self) -> HashesEntry:
        return HashesEntry(self._buf)

    def clear(self) -> None:
        self._buf[:] = bytes(len(self._buf))

    def set_level_mask(self, level_mask: LevelMask) -> None:
        self._buf[0] = level_mask.mask

    def set_cell_type(self, cell_type: CellType) -> None:
        self._buf[1] = int(cell_type)

    def set_tree_bits_count(self, count: int) -> None:
        self._buf[4:12] = count.to_bytes(8, "little")

    def set_tree_cell_count(self, count: int) -> None:
        self._buf[12:20] = count.to_bytes(8, "little")

    def tree_counters(self) -> bytes:
        return bytes(self._buf[4:20])

    def set_hash(self, i: int, hash: bytes) -> None:
        if len(hash) != 32:
            raise ValueError("hash must be 32 bytes long")
        self.hash_slice(i)[:] = hash

    def hash_slice(self, i: int) -> memoryview:
        offset = HashesEntry.HASHES_OFFSET + 32 * i
        return self._buf[offset : offset + 32]

    def set_depth(self, i: int, depth: int) -> None:
        self.depth_slice(i)[:] = depth.to_bytes(2, "little")

    def depth_slice(self, i: int) -> memoryview:
        offset = HashesEntry.DEPTHS_OFFSET + 2 * i
        return self._buf[offset : offset + 2]


class EntriesBuffer:
    """One entry for the current cell followed by one for each of up to four children."""

    def __init__(self) -> None:
        self._data = bytearray(HashesEntry.LEN * 5)
        self._view = memoryview(self._data)

    def _entry(self, i: int) -> memoryview:
        return self._view[i * HashesEntry.LEN : (i + 1) * HashesEntry.LEN]

    def current_entry_buffer(self) -> memoryview:
        return self._entry(0)

    def child_buffers(self) -> list[memoryview]:
        return [self._entry(i) for i in range(1, 5)]

    def split_children(self, references) -> tuple[HashesEntryWriter, list[tuple[int, HashesEntry]]]:
        """Writer for the current entry and the children paired with their indices."""
        children = [
            (index, HashesEntry(buffer))
            for index, buffer in zip(references, self.child_buffers())
        ]
        return HashesEntryWriter(self._entry(0)), children