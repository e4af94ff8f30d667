"""Import of a downloaded shard state into cell storage."""

from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional

from .cell import MAX_DEPTH, CellType, LevelMask, descriptor_bytes
from .cell_storage import PS_MARKER, Cells, CellStorage, StorageCell
from .entries_buffer import EntriesBuffer, HashesEntry, HashesEntryWriter
from .files_context import FilesContext
from .parser import BocHeader, RawCell, ShardStatePacketReader
from .tree import Tree, WriteBatch

_log = logging.getLogger(__name__)

_CELLS_PER_BATCH = 1_000_000
_CHUNK_TAIL = struct.Struct("<I")


class ReplaceTransactionError(ValueError):
    """The downloaded shard state is incomplete or holds an invalid cell."""


@dataclass
class _FinalizationContext:
    pruned_branches: dict[int, bytes] = field(default_factory=dict)
    entries_buffer: EntriesBuffer = field(default_factory=EntriesBuffer)
    write_batch: WriteBatch = field(default_factory=WriteBatch)


class ShardStateReplaceTransaction:
    """Receives a shard state packet by packet, then stores its cells.

    Cells are first spooled to the context's cells file in chunks; ``finalize``
    walks them from the last to the first, computes hashes and depths and
    writes every cell into the ``cells`` column.
    """

    def __init__(
        self, shard_state_db: Tree, cell_storage: CellStorage, marker: int = PS_MARKER
    ) -> None:
        self.shard_state_db = shard_state_db
        self.cell_storage = cell_storage
        self.marker = marker
        self.header: Optional[BocHeader] = None
        self.cells_read = 0
        self._reader = ShardStatePacketReader()

    def process_packet(self, ctx: FilesContext, packet) -> bool:
        """Consume one packet; True once the whole state has been received."""
        cells_file = ctx.cells_file()
        self._reader.set_next_packet(packet)

        if self.header is None:
            header = self._reader.read_header()
            if header is None:
                return False
            _log.debug("%r", header)
            self.header = header
        header = self.header

        chunk_size = 0
        while self.cells_read < header.cell_count:
            cell = self._reader.read_cell(header.ref_size)
            if cell is None:
                break
            cells_file.write(cell)
            cells_file.write(bytes([len(cell)]))
            chunk_size += len(cell) + 1
            self.cells_read += 1

        if chunk_size > 0:
            _log.debug("creating chunk of %d bytes", chunk_size)
            cells_file.write(_CHUNK_TAIL.pack(chunk_size))

        if self.cells_read < header.cell_count:
            return False

        if header.has_crc and not self._reader.read_crc():
            return False

        return True

    def finalize(self, ctx: FilesContext, state_key) -> StorageCell:
        """Store all received cells, record the root under ``state_key`` and load it."""
        header = self.header
        if header is None:
            raise ReplaceTransactionError("Invalid shard state packet: BOC header not found")

        db = self.shard_state_db.db
        fctx = _FinalizationContext()

        with ctx.create_mapped_hashes_file(header.cell_count * HashesEntry.LEN) as hashes_file:
            with ctx.create_mapped_cells_file() as cells_file:
                file_pos = cells_file.length
                cell_index = header.cell_count
                batch_len = 0

                while file_pos >= _CHUNK_TAIL.size:
                    file_pos -= _CHUNK_TAIL.size
                    (chunk_size,) = _CHUNK_TAIL.unpack(
                        cells_file.read_at(file_pos, _CHUNK_TAIL.size)
                    )
                    if chunk_size > file_pos:
                        raise ReplaceTransactionError(
                            "Invalid shard state packet: corrupted cells file"
                        )
                    file_pos -= chunk_size
                    chunk = cells_file.read_at(file_pos, chunk_size)
                    _log.debug("processing chunk of %d bytes", chunk_size)

                    pos = chunk_size
                    while pos > 0:
                        if cell_index == 0:
                            raise ReplaceTransactionError(
                                "Invalid shard state packet: too many cells"
                            )
                        cell_index -= 1
                        batch_len += 1
                        cell_size = chunk[pos - 1]
                        pos -= cell_size + 1
                        if pos < 0:
                            raise ReplaceTransactionError(
                                "Invalid shard state packet: corrupted cells file"
                            )

                        cell = RawCell.from_stored_data(
                            chunk[pos : pos + cell_size],
                            header.ref_size,
                            header.cell_count,
                            cell_index,
                        )

                        for index, buffer in zip(
                            cell.reference_indices, fctx.entries_buffer.child_buffers()
                        ):
                            buffer[:] = hashes_file.read_at(
                                index * HashesEntry.LEN, HashesEntry.LEN
                            )

                        self._finalize_cell(fctx, cell_index, cell)

                        hashes_file.write_at(
                            cell_index * HashesEntry.LEN,
                            fctx.entries_buffer.current_entry_buffer(),
                        )

                    if batch_len > _CELLS_PER_BATCH:
                        db.write(fctx.write_batch)
                        fctx.write_batch = WriteBatch()
                        batch_len = 0

                if batch_len > 0:
                    db.write(fctx.write_batch)
                    fctx.write_batch = WriteBatch()

        current_entry, _ = fctx.entries_buffer.split_children(())
        self.shard_state_db.insert(state_key, current_entry.as_reader().hash(3))

        root = self.shard_state_db.get(state_key)
        if root is None:
            raise ReplaceTransactionError("Not found")
        return self.cell_storage.load_cell(root[:32])

    def _finalize_cell(
        self, ctx: _FinalizationContext, cell_index: int, cell: RawCell
    ) -> None:
        current_entry, children = ctx.entries_buffer.split_children(cell.reference_indices)
        current_entry.clear()

        data_size = cell.bit_len // 8 + int(cell.bit_len % 8 != 0)

        children_mask = LevelMask(0)
        tree_bits_count = cell.bit_len
        tree_cell_count = 1
        for _, child in children:
            children_mask = children_mask | child.level_mask()
            tree_bits_count += child.tree_bits_count()
            tree_cell_count += child.tree_cell_count()

        is_merkle_cell = False
        is_pruned_cell = False
        if cell.cell_type is CellType.ORDINARY:
            level_mask = children_mask
        elif cell.cell_type is CellType.PRUNED_BRANCH:
            is_pruned_cell = True
            level_mask = LevelMask(cell.level_mask)
        elif cell.cell_type is CellType.LIBRARY_REFERENCE:
            level_mask = LevelMask(0)
        elif cell.cell_type in (CellType.MERKLE_PROOF, CellType.MERKLE_UPDATE):
            is_merkle_cell = True
            level_mask = LevelMask.for_merkle_cell(children_mask)
        else:
            raise ReplaceTransactionError("Invalid cell: Unknown cell type")

        if cell.level_mask != level_mask.mask:
            raise ReplaceTransactionError("Invalid cell: Level mask mismatch")

        current_entry.set_level_mask(level_mask)
        current_entry.set_cell_type(cell.cell_type)
        current_entry.set_tree_bits_count(tree_bits_count)
        current_entry.set_tree_cell_count(tree_cell_count)

        hash_count = 1 if is_pruned_cell else level_mask.level() + 1
        data = cell.data[:data_size]

        def pruned_data(index: int) -> bytes:
            try:
                return ctx.pruned_branches[index]
            except KeyError:
                raise ReplaceTransactionError(
                    "Invalid cell: Pruned branch data not found"
                ) from None

        max_depths = [0] * 4
        for i in range(hash_count):
            hasher = hashlib.sha256()
            hash_level_mask = level_mask if is_pruned_cell else LevelMask.with_level(i)
            d1, d2 = descriptor_bytes(
                cell.bit_len,
                len(cell.reference_indices),
                hash_level_mask.mask,
                cell.cell_type is not CellType.ORDINARY,
                False,
            )
            hasher.update(bytes([d1, d2]))
            if i == 0:
                hasher.update(data)
            else:
                hasher.update(current_entry.hash_slice(i - 1))

            child_level = i + 1 if is_merkle_cell else i
            for index, child in children:
                if child.cell_type() is CellType.PRUNED_BRANCH:
                    child_depth = child.pruned_branch_depth(i, pruned_data(index))
                else:
                    child_depth = child.depth(child_level)
                hasher.update(child_depth.to_bytes(2, "big"))

                max_depths[i] = max(max_depths[i], child_depth + 1)
                if max_depths[i] > MAX_DEPTH:
                    raise ReplaceTransactionError("Invalid cell: Max tree depth exceeded")
                current_entry.set_depth(i, max_depths[i])

            for index, child in children:
                if child.cell_type() is CellType.PRUNED_BRANCH:
                    hasher.update(child.pruned_branch_hash(i, pruned_data(index)))
                else:
                    hasher.update(child.hash(child_level))

            current_entry.set_hash(i, hasher.digest())

        if is_pruned_cell:
            ctx.pruned_branches[cell_index] = bytes(data)

        output = self._serialize(current_entry, cell, children, hash_count)

        reader = current_entry.as_reader()
        key = reader.pruned_branch_hash(3, data) if is_pruned_cell else reader.hash(3)
        ctx.write_batch.put(Cells, key, output)

    def _serialize(
        self,
        current_entry: HashesEntryWriter,
        cell: RawCell,
        children: list[tuple[int, HashesEntry]],
        hash_count: int,
    ) -> bytes:
        out = bytearray([self.marker, int(cell.cell_type)])
        out += struct.pack("<H", cell.bit_len)
        out += cell.data[: (cell.bit_len + 8) // 8]
        # level mask, store_hashes, has_hashes, hash count
        out += bytes([cell.level_mask, 0, 1, hash_count])
        for i in range(hash_count):
            out += current_entry.hash_slice(i)
        # has_depths, depth count
        out += bytes([1, hash_count])
        for i in range(hash_count):
            out += current_entry.depth_slice(i)
        out.append(len(cell.reference_indices))
        for _, child in children:
            out += child.hash(3)
        out += current_entry.tree_counters()
        return bytes(out)