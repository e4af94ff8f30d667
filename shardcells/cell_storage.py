"""Reference-marked storage of cells in the ``cells`` column."""

from __future__ import annotations

import struct
import threading
import weakref
from dataclasses import dataclass
from typing import Optional, Union

from .cell import MAX_LEVEL, CellData, CellType, LevelMask
from .tree import Column, Database, Tree, WriteBatch

PS_MARKER = 0
"""Marker of cells that belong to a persistent state."""

PS_TEMP_MARKER = 0xFF
"""Marker of cells in a persistent state transition."""

_HASH_LEN = 32
_COUNTERS = struct.Struct("<QQ")


class Cells(Column):
    """Column family that holds serialized cells keyed by representation hash."""

    NAME = "cells"


class CellStorageError(ValueError):
    """A cell is missing from the store or its stored form is invalid."""


@dataclass(frozen=True)
class Marker:
    """Mark cells with ``marker`` while their stored marker differs.

    With ``force`` set, children are visited even when the parent was
    already marked.
    """

    marker: int
    force: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.marker <= 0xFF:
            raise ValueError(f"invalid marker {self.marker}")


def _read_references(body: bytes, offset: int) -> tuple[list[bytes], int]:
    if offset >= len(body):
        raise CellStorageError("Invalid data: missing references count")
    count = body[offset]
    offset += 1
    end = offset + count * _HASH_LEN
    if end > len(body):
        raise CellStorageError("Invalid data: truncated references")
    hashes = [body[start : start + _HASH_LEN] for start in range(offset, end, _HASH_LEN)]
    return hashes, end


def _parse_cell_data(body: bytes) -> tuple[CellData, int]:
    try:
        return CellData.deserialize(body)
    except ValueError as exc:
        raise CellStorageError(f"Invalid data: {exc}") from exc


class StorageCell:
    """A cell loaded from storage whose children are loaded on demand."""

    def __init__(
        self,
        storage: "CellStorage",
        cell_data: CellData,
        references: list[bytes],
        tree_bits_count: int = 0,
        tree_cell_count: int = 0,
    ) -> None:
        self._storage = storage
        self.cell_data = cell_data
        self._references: list[Union[StorageCell, bytes]] = list(references)
        self._lock = threading.Lock()
        self.tree_bits_count = tree_bits_count
        self.tree_cell_count = tree_cell_count

    def repr_hash(self) -> bytes:
        return self.cell_data.hash(MAX_LEVEL)

    def hash(self, index: int) -> bytes:
        return self.cell_data.hash(index)

    def depth(self, index: int) -> int:
        return self.cell_data.depth(index)

    @property
    def data(self) -> bytes:
        return self.cell_data.data

    @property
    def bit_length(self) -> int:
        return self.cell_data.bit_length

    @property
    def cell_type(self) -> CellType:
        return self.cell_data.cell_type

    @property
    def level_mask(self) -> LevelMask:
        return self.cell_data.level_mask

    def references_count(self) -> int:
        with self._lock:
            return len(self._references)

    def reference_hash(self, index: int) -> bytes:
        """Representation hash of a child without loading it."""
        with self._lock:
            if not 0 <= index < len(self._references):
                raise CellStorageError("Accessing invalid cell reference")
            ref = self._references[index]
        return ref.repr_hash() if isinstance(ref, StorageCell) else ref

    def reference(self, index: int) -> "StorageCell":
        with self._lock:
            if not 0 <= index < len(self._references):
                raise CellStorageError("Accessing invalid cell reference")
            ref = self._references[index]
        if isinstance(ref, StorageCell):
            return ref
        cell = self._storage.load_cell(ref)
        with self._lock:
            self._references[index] = cell
        return cell

    @classmethod
    def deserialize(cls, storage: "CellStorage", data) -> "StorageCell":
        """Build a cell from its stored form (marker byte first)."""
        if not data:
            raise CellStorageError("Invalid data")
        body = bytes(data[1:])
        cell_data, offset = _parse_cell_data(body)
        references, offset = _read_references(body, offset)
        counters = body[offset : offset + _COUNTERS.size]
        if len(counters) == _COUNTERS.size:
            tree_bits_count, tree_cell_count = _COUNTERS.unpack(counters)
        else:
            tree_bits_count, tree_cell_count = 0, 0
        return cls(storage, cell_data, references, tree_bits_count, tree_cell_count)

    @staticmethod
    def deserialize_marker_and_references(data) -> tuple[int, list[bytes]]:
        """Marker and child hashes of a stored cell."""
        if not data:
            raise CellStorageError("Invalid data: missing marker")
        body = bytes(data[1:])
        _, offset = _parse_cell_data(body)
        references, _ = _read_references(body, offset)
        return data[0], references

    @staticmethod
    def serialize_to(marker: int, cell) -> bytes:
        """Stored form of ``cell``: marker, cell data, child hashes, tree counters."""
        count = cell.references_count()
        if count > 0xFF:
            raise CellStorageError("Too many references")
        out = bytearray([marker])
        out += cell.cell_data.serialize()
        out.append(count)
        for i in range(count):
            out += cell.reference(i).repr_hash()
        out += _COUNTERS.pack(cell.tree_bits_count, cell.tree_cell_count)
        return bytes(out)


class CellStorage:
    """Cells keyed by representation hash, each tagged with a one-byte marker."""

    def __init__(self, db: Database) -> None:
        self.cells = Tree(db, Cells)
        self._cache: "weakref.WeakValueDictionary[bytes, StorageCell]" = (
            weakref.WeakValueDictionary()
        )
        self._cache_lock = threading.Lock()

    @property
    def db(self) -> Database:
        return self.cells.db

    def _remark(self, batch: WriteBatch, key: bytes, value: bytes, marker: int) -> bool:
        """Queue a marker update; False if the stored cell needs none."""
        if not value:
            raise CellStorageError("Invalid cell")
        if value[0] > 0 and value[0] != marker:
            batch.put(Cells, key, bytes([marker]) + value[1:])
            return True
        return False

    def store_cell(self, batch: WriteBatch, marker: int, root) -> int:
        """Queue writes for every cell of ``root`` not yet stored with ``marker``.

        Returns the number of cells written.
        """
        transaction: set[bytes] = set()

        root_id = bytes(root.repr_hash())
        value = self.cells.get(root_id)
        if value is None:
            batch.put(Cells, root_id, StorageCell.serialize_to(marker, root))
        elif not self._remark(batch, root_id, value, marker):
            return 0
        transaction.add(root_id)

        stack = [root]
        while stack:
            current = stack.pop()
            for i in range(current.references_count()):
                cell = current.reference(i)
                cell_id = bytes(cell.repr_hash())
                value = self.cells.get(cell_id)
                if value is not None:
                    if not self._remark(batch, cell_id, value, marker):
                        continue
                elif cell_id in transaction:
                    continue
                else:
                    batch.put(Cells, cell_id, StorageCell.serialize_to(marker, cell))
                transaction.add(cell_id)
                stack.append(cell)

        return len(transaction)

    def load_cell(self, hash) -> StorageCell:
        key = bytes(hash)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        value = self.cells.get(key)
        if value is None:
            raise CellStorageError("Cell not found in cell db")
        cell = StorageCell.deserialize(self, value)
        with self._cache_lock:
            self._cache[key] = cell
        return cell

    def sweep_cells(self, target_marker: int) -> int:
        """Delete non-persistent cells whose marker differs from ``target_marker``."""
        total = 0
        for key, value in self.db.raw_iterator(Cells).__iter__():
            if value and 0 < value[0] != target_marker:
                self.db.delete(Cells, key)
                total += 1
        return total

    def mark_cells_tree(self, root_cell, target_marker: Marker) -> int:
        """Set the marker of the tree under ``root_cell``; return how many changed."""
        marker = target_marker.marker
        force = target_marker.force

        stack = [bytes(root_cell)]
        total = 0
        batch = WriteBatch()

        while stack:
            cell_id = stack.pop()
            value = self.cells.get(cell_id)
            if value is None:
                raise CellStorageError(
                    f"Cell not found in cell db (child not found, depth: {len(stack)})"
                )
            current, references = StorageCell.deserialize_marker_and_references(value)

            persistent = current in (PS_MARKER, PS_TEMP_MARKER)
            changed = not persistent and current != marker
            if changed:
                batch.put(Cells, cell_id, bytes([marker]) + value[1:])
                total += 1

            if not persistent and (changed or force):
                stack.extend(references)

        self.db.write(batch)
        return total

    def drop_cell(self, hash) -> None:
        """Forget the cached instance of a cell."""
        with self._cache_lock:
            self._cache.pop(bytes(hash), None)