"""Ordered key-value store with named column families and typed trees over them."""

from __future__ import annotations

import bisect
import os
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Iterator, Optional, Union

_STORE_FILE = "store.bin"


class Column:
    """A named column family. Subclasses set ``NAME``."""

    NAME: ClassVar[str] = ""


ColumnRef = Union[str, "type[Column]"]


def _column_name(column: ColumnRef) -> str:
    if isinstance(column, str):
        return column
    return column.NAME


@dataclass(frozen=True)
class DbCaches:
    """Capacities of the block caches shared by all columns."""

    block_cache_capacity: int
    compressed_block_cache_capacity: int

    MIN_CAPACITY: ClassVar[int] = 64 * 1024 * 1024

    @classmethod
    def with_capacity(cls, capacity: int) -> "DbCaches":
        if capacity < 0:
            raise ValueError("cache capacity must not be negative")
        block = min(capacity * 2 // 3, cls.MIN_CAPACITY)
        compressed = min(max(capacity - block, 0), cls.MIN_CAPACITY)
        return cls(block, compressed)


class _ColumnData:
    __slots__ = ("values", "keys")

    def __init__(self, values: Optional[dict] = None) -> None:
        self.values: dict[bytes, bytes] = dict(values or {})
        self.keys: list[bytes] = sorted(self.values)

    def put(self, key: bytes, value: bytes) -> None:
        if key not in self.values:
            bisect.insort(self.keys, key)
        self.values[key] = value

    def delete(self, key: bytes) -> None:
        if key in self.values:
            del self.values[key]
            del self.keys[bisect.bisect_left(self.keys, key)]


class WriteBatch:
    """A group of writes applied to the database at once."""

    def __init__(self) -> None:
        self._ops: list[tuple[str, bytes, Optional[bytes]]] = []

    def put(self, column: ColumnRef, key, value) -> None:
        self._ops.append((_column_name(column), bytes(key), bytes(value)))

    def delete(self, column: ColumnRef, key) -> None:
        self._ops.append((_column_name(column), bytes(key), None))

    def clear(self) -> None:
        self._ops.clear()

    def __len__(self) -> int:
        return len(self._ops)

    def __iter__(self):
        return iter(self._ops)


class RawIterator:
    """Cursor over a consistent snapshot of one column."""

    def __init__(
        self, keys: list[bytes], values: list[bytes], prefix_same_as_start: bool = False
    ) -> None:
        self._keys = keys
        self._values = values
        self._prefix_mode = prefix_same_as_start
        self._prefix: Optional[bytes] = None
        self._pos = len(keys)

    def seek(self, key) -> None:
        key = bytes(key)
        self._pos = bisect.bisect_left(self._keys, key)
        self._prefix = key if self._prefix_mode else None

    def seek_to_first(self) -> None:
        self._pos = 0
        self._prefix = None

    def _seek_to_last(self) -> None:
        self._pos = len(self._keys) - 1
        self._prefix = None

    def seek_for_prev(self, key) -> None:
        self._pos = bisect.bisect_right(self._keys, bytes(key)) - 1
        self._prefix = None

    def valid(self) -> bool:
        if not 0 <= self._pos < len(self._keys):
            return False
        return self._prefix is None or self._keys[self._pos].startswith(self._prefix)

    def _require_valid(self) -> None:
        if not self.valid():
            raise RuntimeError("iterator is not positioned on an entry")

    def next(self) -> None:
        self._require_valid()
        self._pos += 1

    def prev(self) -> None:
        self._require_valid()
        self._pos -= 1

    def key(self) -> Optional[bytes]:
        return self._keys[self._pos] if self.valid() else None

    def value(self) -> Optional[bytes]:
        return self._values[self._pos] if self.valid() else None

    def item(self) -> Optional[tuple[bytes, bytes]]:
        if not self.valid():
            return None
        return self._keys[self._pos], self._values[self._pos]

    def __iter__(self) -> Iterator[tuple[bytes, bytes]]:
        while self.valid():
            yield self._keys[self._pos], self._values[self._pos]
            self._pos += 1


def _dump(columns: dict[str, _ColumnData]) -> bytes:
    out = bytearray(struct.pack("<I", len(columns)))
    for name, data in columns.items():
        raw_name = name.encode()
        out += struct.pack("<H", len(raw_name)) + raw_name
        out += struct.pack("<Q", len(data.keys))
        for key in data.keys:
            value = data.values[key]
            out += struct.pack("<I", len(key)) + key
            out += struct.pack("<I", len(value)) + value
    return bytes(out)


def _parse(raw: bytes) -> dict[str, dict[bytes, bytes]]:
    result: dict[str, dict[bytes, bytes]] = {}
    offset = 0

    def take(n: int) -> bytes:
        nonlocal offset
        if offset + n > len(raw):
            raise ValueError("corrupted store file")
        chunk = raw[offset : offset + n]
        offset += n
        return chunk

    try:
        (column_count,) = struct.unpack("<I", take(4))
        for _ in range(column_count):
            (name_len,) = struct.unpack("<H", take(2))
            name = take(name_len).decode()
            (entry_count,) = struct.unpack("<Q", take(8))
            entries = {}
            for _ in range(entry_count):
                (key_len,) = struct.unpack("<I", take(4))
                key = take(key_len)
                (value_len,) = struct.unpack("<I", take(4))
                entries[key] = take(value_len)
            result[name] = entries
    except (struct.error, UnicodeDecodeError) as exc:
        raise ValueError("corrupted store file") from exc
    return result


class Database:
    """Thread-safe ordered store with column families, saved to its directory on close."""

    def __init__(self, path, columns) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.RLock()
        self._closed = False
        stored = self._load()
        names = list(dict.fromkeys(_column_name(c) for c in columns))
        missing = sorted(set(stored) - set(names))
        if missing:
            raise ValueError(f"Column families not opened: {', '.join(missing)}")
        self._columns = {name: _ColumnData(stored.get(name)) for name in names}

    def _load(self) -> dict[str, dict[bytes, bytes]]:
        if self.path is None:
            return {}
        store = self.path / _STORE_FILE
        if not store.exists():
            return {}
        return _parse(store.read_bytes())

    def _column(self, column: ColumnRef) -> _ColumnData:
        if self._closed:
            raise RuntimeError("database is closed")
        name = _column_name(column)
        try:
            return self._columns[name]
        except KeyError:
            raise KeyError(f"No cf for {name}") from None

    def has_column(self, name: ColumnRef) -> bool:
        return _column_name(name) in self._columns

    def get(self, column: ColumnRef, key) -> Optional[bytes]:
        with self._lock:
            return self._column(column).values.get(bytes(key))

    def put(self, column: ColumnRef, key, value) -> None:
        with self._lock:
            self._column(column).put(bytes(key), bytes(value))

    def delete(self, column: ColumnRef, key) -> None:
        with self._lock:
            self._column(column).delete(bytes(key))

    def write(self, batch: WriteBatch) -> None:
        with self._lock:
            ops = [(self._column(name), key, value) for name, key, value in batch]
            for data, key, value in ops:
                if value is None:
                    data.delete(key)
                else:
                    data.put(key, value)

    def raw_iterator(
        self, column: ColumnRef, upper_bound=None, prefix_same_as_start: bool = False
    ) -> RawIterator:
        with self._lock:
            data = self._column(column)
            keys = data.keys
            if upper_bound is not None:
                keys = keys[: bisect.bisect_left(keys, bytes(upper_bound))]
            else:
                keys = list(keys)
            values = [data.values[key] for key in keys]
        return RawIterator(keys, values, prefix_same_as_start)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            if self.path is not None:
                self.path.mkdir(parents=True, exist_ok=True)
                target = self.path / _STORE_FILE
                temp = target.with_suffix(".tmp")
                temp.write_bytes(_dump(self._columns))
                os.replace(temp, target)
            self._closed = True

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class DbBuilder:
    """Collects column families and opens a database at a path."""

    def __init__(self, path, caches: DbCaches) -> None:
        self.path = Path(path)
        self.caches = caches
        self._columns: list[str] = []

    def column(self, column: ColumnRef) -> "DbBuilder":
        self._columns.append(_column_name(column))
        return self

    def build(self) -> Database:
        self.path.mkdir(parents=True, exist_ok=True)
        return Database(self.path, self._columns)


class Tree:
    """Access to a single column family of a database."""

    def __init__(self, db: Database, column: ColumnRef) -> None:
        self.name = _column_name(column)
        if not db.has_column(self.name):
            raise KeyError(f"No cf for {self.name}")
        self.db = db

    def get(self, key) -> Optional[bytes]:
        return self.db.get(self.name, key)

    def insert(self, key, value) -> None:
        self.db.put(self.name, key, value)

    def remove(self, key) -> None:
        self.db.delete(self.name, key)

    def contains_key(self, key) -> bool:
        return self.db.get(self.name, key) is not None

    def items(self, start=None, reverse: bool = False) -> Iterator[tuple[bytes, bytes]]:
        """Yield entries in key order, from ``start`` or from the first/last key."""
        it = self.raw_iterator()
        if start is None:
            if reverse:
                it._seek_to_last()
            else:
                it.seek_to_first()
        elif reverse:
            it.seek_for_prev(start)
        else:
            it.seek(start)
        while it.valid():
            yield it.item()
            if reverse:
                it.prev()
            else:
                it.next()

    def prefix_iterator(self, prefix) -> RawIterator:
        it = self.db.raw_iterator(self.name, prefix_same_as_start=True)
        it.seek(prefix)
        return it

    def raw_iterator(self) -> RawIterator:
        return self.db.raw_iterator(self.name)