"""Temporary files used while a downloaded shard state is imported."""

from __future__ import annotations

import mmap
import os
from pathlib import Path


class FilesContextError(RuntimeError):
    """The cells file has already been handed over for mapping."""


class _MappedFile:
    """Fixed-length file mapped into memory, accessed by offset."""

    def __init__(self, mapping: mmap.mmap | None) -> None:
        self._mapping = mapping
        self._buffer = mapping if mapping is not None else bytearray()

    @classmethod
    def create(cls, path, length: int) -> "_MappedFile":
        with open(path, "w+b") as file:
            file.truncate(length)
            return cls(mmap.mmap(file.fileno(), length) if length else None)

    @classmethod
    def from_file(cls, file) -> "_MappedFile":
        length = os.fstat(file.fileno()).st_size
        return cls(mmap.mmap(file.fileno(), length) if length else None)

    @property
    def length(self) -> int:
        return len(self._buffer)

    def __len__(self) -> int:
        return self.length

    def _check(self, offset: int, size: int) -> None:
        if offset < 0 or size < 0 or offset + size > len(self._buffer):
            raise IndexError("range out of bounds of mapped file")

    def read_at(self, offset: int, size: int) -> bytes:
        self._check(offset, size)
        return bytes(self._buffer[offset : offset + size])

    def write_at(self, offset: int, data) -> None:
        data = bytes(data)
        self._check(offset, len(data))
        self._buffer[offset : offset + len(data)] = data

    def flush(self) -> None:
        if self._mapping is not None:
            self._mapping.flush()

    def close(self) -> None:
        if self._mapping is not None and not self._mapping.closed:
            self._mapping.flush()
            self._mapping.close()

    def __enter__(self) -> "_MappedFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class FilesContext:
    """Cells and hashes files for one block's state in the downloads directory."""

    def __init__(self, downloads_dir, workchain_id: int, shard_prefix: int, seq_no: int) -> None:
        block_id = f"({workchain_id},{shard_prefix:016x},{seq_no})"
        directory = Path(downloads_dir)
        self.cells_path = directory / f"state_cells_{block_id}"
        self.hashes_path = directory / f"state_hashes_{block_id}"
        self._cells_file = open(self.cells_path, "w+b")

    def cells_file(self):
        """The open cells file, writable until it is mapped."""
        if self._cells_file is None:
            raise FilesContextError("Already finalized")
        return self._cells_file

    def create_mapped_hashes_file(self, length: int) -> _MappedFile:
        return _MappedFile.create(self.hashes_path, length)

    def create_mapped_cells_file(self) -> _MappedFile:
        file = self.cells_file()
        self._cells_file = None
        with file:
            file.flush()
            return _MappedFile.from_file(file)

    def clear(self) -> None:
        """Remove both files."""
        if self._cells_file is not None:
            self._cells_file.close()
            self._cells_file = None
        os.remove(self.cells_path)
        os.remove(self.hashes_path)