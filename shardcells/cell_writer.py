"""Export of a stored cell tree as a bag-of-cells file."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Iterator, Union

from .tree import Tree

_log = logging.getLogger(__name__)

REF_SIZE = 4
_BOC_GENERIC_MAGIC = bytes([0xB5, 0xEE, 0x9C, 0x72])
_MAX_REFERENCES = 4
_HASH_LEN = 32


class CellWriterError(ValueError):
    """A cell is missing from the store or cannot be decoded."""


def number_of_bytes_to_fit(value: int) -> int:
    """Number of bytes needed to hold an unsigned 64-bit ``value``."""
    if not 0 <= value < 1 << 64:
        raise ValueError("value must fit into 64 bits")
    leading_zeros = 64 - value.bit_length()
    return 8 - leading_zeros // 8


def deserialize_cell(value) -> tuple[int, int, bytes, list[bytes]]:
    """Decode a stored cell (without its marker byte).

    Returns the two bag-of-cells descriptor bytes, the cell data without the
    completion byte, and the hashes of the referenced cells.
    """
    value = bytes(value)
    size = len(value)

    def require(offset: int, n: int) -> None:
        # Stored cells are always followed by more bytes, hence the strict bound.
        if offset + n >= size:
            raise CellWriterError("Invalid cell")

    offset = 0
    require(offset, 3)
    cell_type = value[offset]
    offset += 1
    bit_length = int.from_bytes(value[offset : offset + 2], "little")
    offset += 2

    d2 = ((bit_length >> 2) & 0xFE) | int(bit_length % 8 != 0)
    data_len = (d2 >> 1) + (d2 & 1)
    require(offset, data_len)
    data = value[offset : offset + data_len]
    offset += (bit_length + 8) // 8

    require(offset, 1)
    level_mask = value[offset]
    offset += 2  # level mask and store_hashes

    require(offset, 2)
    has_hashes = value[offset]
    offset += 1
    if has_hashes:
        offset += 1 + value[offset] * 32

    require(offset, 2)
    has_depths = value[offset]
    offset += 1
    if has_depths:
        offset += 1 + value[offset] * 2

    require(offset, 1)
    reference_count = value[offset]
    offset += 1
    if reference_count > _MAX_REFERENCES:
        raise CellWriterError("Invalid cell")

    d1 = (reference_count | (int(cell_type != 0x01) << 3) | (level_mask << 5)) & 0xFF

    references = []
    for _ in range(reference_count):
        require(offset, _HASH_LEN)
        references.append(value[offset : offset + _HASH_LEN])
        offset += _HASH_LEN

    return d1, d2, data, references


@dataclass
class _LoadedCell:
    hash: bytes
    d1: int
    d2: int
    data: bytes
    indices: list[int] = field(default_factory=list)


def _write_reversed(cells: Tree, root_hash: bytes, out: BinaryIO) -> tuple[list[int], int]:
    """Write cells children-first into ``out``; return cell sizes and their total."""
    indices: dict[bytes, list] = {root_hash: [0, False]}
    remap: dict[int, bytes] = {}
    cell_sizes: list[int] = []
    total_size = 0
    iteration = 0
    remap_index = 0

    stack: list[tuple[int, Union[bytes, _LoadedCell]]] = [(0, root_hash)]

    while stack:
        index, item = stack.pop()

        if isinstance(item, bytes):
            value = cells.get(item)
            if value is None:
                raise CellWriterError("Cell not found in cell db")
            if not value:
                raise CellWriterError("Invalid cell")

            d1, d2, data, references = deserialize_cell(value[1:])

            reference_indices = []
            preload = []
            for child_hash in references:
                entry = indices.get(child_hash)
                if entry is None:
                    remap_index += 1
                    indices[child_hash] = [remap_index, False]
                    preload.append((remap_index, child_hash))
                    reference_indices.append(remap_index)
                else:
                    child_index, written = entry
                    if not written:
                        preload.append((child_index, child_hash))
                    reference_indices.append(child_index)

            stack.append((index, _LoadedCell(item, d1, d2, data, reference_indices)))
            stack.extend(reversed(preload))
            continue

        if index in remap:
            continue
        remap[index] = iteration.to_bytes(4, "big")

        entry = indices.get(item.hash)
        if entry is not None:
            entry[1] = True

        iteration += 1
        if iteration % 100_000 == 0:
            _log.info("iteration %d", iteration)

        cell_size = 2 + len(item.data) + len(item.indices) * REF_SIZE
        cell_sizes.append(cell_size)
        total_size += cell_size

        out.write(bytes([item.d1, item.d2]))
        out.write(item.data)
        for child in item.indices:
            try:
                out.write(remap[child])
            except KeyError:
                raise CellWriterError(
                    f"Child not found. Iteration {iteration}. Child {child}"
                ) from None

    return cell_sizes, total_size


@contextmanager
def _reversed_cells(
    cells: Tree, base_path: Path, root_hash: bytes
) -> Iterator[tuple[BinaryIO, list[int], int]]:
    """Temporary file with the cells in reverse order, removed on exit."""
    path = base_path / f"{root_hash.hex()}.temp"
    file = open(path, "w+b")
    try:
        with file:
            cell_sizes, total_size = _write_reversed(cells, root_hash, file)
            file.flush()
            yield file, cell_sizes, total_size
    finally:
        try:
            path.unlink()
        except OSError as exc:
            _log.error("failed to remove file %s: %r", path, exc)


class CellWriter:
    """Writes the cell tree under a root hash into ``base_path`` as a bag of cells."""

    def __init__(self, cells: Tree, base_path) -> None:
        self.cells = cells
        self.base_path = Path(base_path)

    def write(self, root_hash) -> Path:
        """Write the file named by the hex root hash and return its path."""
        root_hash = bytes(root_hash)
        if len(root_hash) != _HASH_LEN:
            raise ValueError("root hash must be 32 bytes long")

        target = self.base_path / root_hash.hex()
        # Open the target first so that an error surfaces immediately.
        with open(target, "wb") as file:
            _log.info("started loading cells")
            with _reversed_cells(self.cells, self.base_path, root_hash) as (
                temp,
                cell_sizes,
                total_size,
            ):
                _log.info("finished loading cells")
                cell_count = len(cell_sizes)
                offset_size = min(number_of_bytes_to_fit(total_size), 8)

                file.truncate(22 + offset_size * (1 + cell_count) + total_size)

                flags = 0b1000_0000 | REF_SIZE
                file.write(_BOC_GENERIC_MAGIC + bytes([flags, offset_size]))
                file.write(cell_count.to_bytes(4, "big"))
                file.write((1).to_bytes(4, "big"))  # root count
                file.write(bytes(4))  # absent cell count
                file.write(total_size.to_bytes(offset_size, "big"))
                file.write(bytes(4))  # root index

                _log.info("started building index")
                index = bytearray()
                next_offset = 0
                for cell_size in reversed(cell_sizes):
                    next_offset += cell_size
                    index += next_offset.to_bytes(offset_size, "big")
                file.write(index)
                _log.info("finished building index")

                remaining = total_size
                for cell_size in reversed(cell_sizes):
                    remaining -= cell_size
                    temp.seek(remaining)
                    cell = bytearray(temp.read(cell_size))
                    if len(cell) != cell_size:
                        raise CellWriterError("Invalid cell")

                    d1, d2 = cell[0], cell[1]
                    ref_count = d1 & 7
                    data_size = (d2 >> 1) + (d2 & 1)
                    ref_offset = 2 + data_size
                    for r in range(ref_count):
                        start = ref_offset + r * REF_SIZE
                        child = int.from_bytes(cell[start : start + REF_SIZE], "big")
                        cell[start : start + REF_SIZE] = (cell_count - child - 1).to_bytes(
                            REF_SIZE, "big"
                        )

                    file.write(cell)

                file.flush()

        return target