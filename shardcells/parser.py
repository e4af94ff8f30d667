"""Incremental reader for bag-of-cells shard state packets."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .cell import CellType, LevelMask, find_tag

_log = logging.getLogger(__name__)

BOC_INDEXED_TAG = 0x68FF65F3
BOC_INDEXED_CRC32_TAG = 0xACC3A728
BOC_GENERIC_TAG = 0xB5EE9C72


def _make_crc_table() -> tuple[int, ...]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ 0x82F63B78 if crc & 1 else crc >> 1
        table.append(crc)
    return tuple(table)


_CRC_TABLE = _make_crc_table()


def crc32c(data, value: int = 0) -> int:
    """CRC-32C (Castagnoli) of ``data``, continuing from a previous ``value``."""
    crc = value ^ 0xFFFFFFFF
    for byte in bytes(data):
        crc = _CRC_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF


class ShardStateParserError(ValueError):
    """Malformed shard state data."""


class _Underflow(EOFError):
    """Not enough buffered data to finish the current read."""


@dataclass(frozen=True)
class BocHeader:
    root_index: int
    index_included: bool
    has_crc: bool
    ref_size: int
    offset_size: int
    cell_count: int
    total_size: int


@dataclass(frozen=True)
class RawCell:
    """A cell as stored in a bag of cells, with references given by index."""

    cell_type: CellType
    level_mask: int
    data: bytes
    bit_len: int
    reference_indices: tuple[int, ...]

    @classmethod
    def from_stored_data(
        cls, data, ref_size: int, cell_count: int, cell_index: int
    ) -> "RawCell":
        raw = bytes(data)
        offset = 0

        def take(n: int) -> bytes:
            nonlocal offset
            if offset + n > len(raw):
                raise ShardStateParserError("Invalid shard state cell: unexpected end of data")
            chunk = raw[offset : offset + n]
            offset += n
            return chunk

        d1 = take(1)[0]
        level = d1 >> 5
        has_hashes = bool(d1 & 0b0001_0000)
        is_exotic = bool(d1 & 0b0000_1000)
        ref_count = d1 & 0b0000_0111

        if ref_count == 0b111 and has_hashes:
            data_size = 32 * (LevelMask(level).level() + 1)
            cell_data = take(data_size) + b"\x80"
            return cls(CellType.ORDINARY, level, cell_data, find_tag(cell_data), ())

        d2 = take(1)[0]
        data_size = (d2 >> 1) + (d2 & 1)
        cell_data = take(data_size)
        if d2 & 1 == 0:
            cell_data += b"\x80"

        cell_type = CellType.from_exotic_tag(cell_data[0]) if is_exotic else CellType.ORDINARY

        references = []
        for _ in range(ref_count):
            index = int.from_bytes(take(ref_size), "big")
            if index > cell_count or index <= cell_index:
                raise ShardStateParserError(
                    "Invalid shard state cell: Reference index out of range"
                )
            references.append(index)

        return cls(cell_type, level, cell_data, find_tag(cell_data), tuple(references))


class _Transaction:
    """Tentative read over the current and next packets, committed by ``end``."""

    def __init__(self, reader: "ShardStatePacketReader") -> None:
        self._reader = reader
        self._reading_next = False
        self._offset = reader._offset

    def _packet(self):
        reader = self._reader
        while True:
            if not self._reading_next:
                if self._offset < len(reader._current):
                    return reader._current
                self._reading_next = True
                self._offset = 0
                continue
            if self._offset < len(reader._next):
                return reader._next
            return None

    def read(self, n: int) -> bytes:
        out = bytearray()
        while len(out) < n:
            packet = self._packet()
            if packet is None:
                raise _Underflow("packet buffer underflow")
            count = min(len(packet) - self._offset, n - len(out))
            out += packet[self._offset : self._offset + count]
            self._offset += count
        return bytes(out)

    def read_byte(self) -> int:
        return self.read(1)[0]

    def read_be_uint(self, size: int) -> int:
        return int.from_bytes(self.read(size), "big")

    def skip(self, n: int) -> bool:
        while True:
            packet = self._packet()
            if packet is None:
                return False
            skipped = min(len(packet) - self._offset, n)
            n -= skipped
            self._offset += skipped
            if n == 0:
                return True

    def end(self) -> None:
        reader = self._reader
        if self._reading_next:
            if reader._has_crc:
                reader._hash(reader._current[reader._offset :])
                reader._hash(reader._next[: self._offset])
            reader._current = bytes(reader._next)
            reader._next = bytearray()
        elif reader._has_crc:
            reader._hash(reader._current[reader._offset : self._offset])
        reader._offset = self._offset


class ShardStatePacketReader:
    """Parses a bag of cells that arrives in packets.

    Each read returns ``None`` (or ``False``) when more data is needed; the
    read can then be retried after the next packet is supplied.
    """

    def __init__(self) -> None:
        self._crc = 0
        self._has_crc = True
        self._offset = 0
        self._current = b""
        self._next = bytearray()
        self._bytes_to_skip = 0

    def _hash(self, chunk) -> None:
        self._crc = crc32c(chunk, self._crc)

    def set_next_packet(self, packet) -> None:
        self._next += bytes(packet)

    def _process_skip(self) -> bool:
        """Skip pending bytes; return False if more data is needed."""
        n = self._bytes_to_skip
        if n == 0:
            return True
        self._bytes_to_skip = 0

        remaining = len(self._current) - self._offset
        if n < remaining:
            self._hash(self._current[self._offset : self._offset + n])
            self._offset += n
            return True
        if n == remaining:
            self._hash(self._current[self._offset :])
            self._offset = 0
            self._current = bytes(self._next)
            self._next = bytearray()
            return True

        n -= remaining
        self._hash(self._current[self._offset :])
        self._offset = 0
        self._current = bytes(self._next)
        self._next = bytearray()
        if n > len(self._current):
            n -= len(self._current)
            self._hash(self._current)
            self._current = b""
            self._bytes_to_skip = n
            return False
        self._offset = n
        self._hash(self._current[:n])
        return True

    def read_header(self) -> BocHeader | None:
        if not self._process_skip():
            return None

        src = _Transaction(self)
        try:
            magic = src.read_be_uint(4)
            first_byte = src.read_byte()
            total_size = 5

            has_crc = False
            if magic == BOC_INDEXED_TAG:
                ref_size = first_byte
                index_included = True
            elif magic == BOC_INDEXED_CRC32_TAG:
                ref_size = first_byte
                index_included = True
                has_crc = True
            elif magic == BOC_GENERIC_TAG:
                index_included = bool(first_byte & 0b1000_0000)
                has_crc = bool(first_byte & 0b0100_0000)
                ref_size = first_byte & 0b0000_0111
            else:
                raise ShardStateParserError("Invalid shard state header: Invalid flags")

            self._has_crc = has_crc

            if ref_size == 0 or ref_size > 4:
                raise ShardStateParserError(
                    "Invalid shard state header: Ref size must be in range [1;4]"
                )

            offset_size = src.read_byte()
            total_size += 1
            if offset_size == 0 or offset_size > 8:
                raise ShardStateParserError(
                    "Invalid shard state header: Offset size must be in range [1;8]"
                )

            cell_count = src.read_be_uint(ref_size)
            root_count = src.read_be_uint(ref_size)
            src.read_be_uint(ref_size)  # absent cells
            total_size += 3 * ref_size

            if root_count != 1:
                raise ShardStateParserError(
                    "Invalid shard state header: Expected one root cell"
                )
            if root_count > cell_count:
                raise ShardStateParserError(
                    "Invalid shard state header: Root count is greater then cell count"
                )

            total_size += src.read_be_uint(offset_size) + offset_size

            root_index = 0
            if magic == BOC_GENERIC_TAG:
                root_index = src.read_be_uint(ref_size)
                total_size += ref_size
        except _Underflow:
            return None

        src.end()

        if index_included:
            index_size = cell_count * offset_size
            total_size += index_size
            self._bytes_to_skip = index_size

        if has_crc:
            total_size += 4

        return BocHeader(
            root_index=root_index,
            index_included=index_included,
            has_crc=has_crc,
            ref_size=ref_size,
            offset_size=offset_size,
            cell_count=cell_count,
            total_size=total_size,
        )

    def read_cell(self, ref_size: int) -> bytes | None:
        """Next cell without its precomputed hashes: d1, d2, data and references."""
        if not self._process_skip():
            return None

        src = _Transaction(self)
        try:
            d1 = src.read_byte()
            level = d1 >> 5
            has_hashes = bool(d1 & 0b0001_0000)
            ref_count = d1 & 0b0000_0111

            if ref_count == 0b111 and has_hashes:
                data_size = 32 * (LevelMask(level).level() + 1)
                cell = bytes([d1]) + src.read(data_size)
                _log.info("ABSENT")
            else:
                if ref_count > 4:
                    _log.error("CELLS: %d", ref_count)
                    raise ShardStateParserError(
                        "Invalid shard state cell: Cell must contain at most 4 references"
                    )
                d2 = src.read_byte()
                hash_count = LevelMask(level).level() + 1
                if has_hashes and not src.skip(hash_count * (32 + 2)):
                    return None
                data_size = (d2 >> 1) + (d2 & 1)
                cell = bytes([d1, d2]) + src.read(data_size + ref_count * ref_size)
        except _Underflow:
            return None

        src.end()
        return cell

    def read_crc(self) -> bool:
        """Check the trailing checksum; False if it has not fully arrived yet."""
        if not self._process_skip():
            return False

        current_crc = self._crc
        src = _Transaction(self)
        try:
            target_crc = int.from_bytes(src.read(4), "little")
        except _Underflow:
            return False
        src.end()
        self._crc = 0

        if current_crc != target_crc:
            raise ShardStateParserError("Crc mismatch")
        return True