# shardcells

A storage layer for shard states. Each state is kept as a tree of cells. The
package is pure Python and has no runtime dependencies.

It has these modules:

- `shardcells.tree` is a small ordered key-value store with column families.
  It provides `Database`, `DbBuilder`, `Tree`, `WriteBatch`, `RawIterator`,
  `Column` and `DbCaches`.
- `shardcells.cell` holds the cell model: `CellType`, `LevelMask` and
  `CellData`. It also has two helpers, `descriptor_bytes` and `find_tag`.
- `shardcells.parser` reads a bag of cells that arrives in packets. It provides
  `ShardStatePacketReader`, `BocHeader`, `RawCell` and `crc32c`.
- `shardcells.files_context` manages the temporary cells and hashes files used
  during an import. It provides `FilesContext`.
- `shardcells.entries_buffer` holds fixed-size records of computed hashes,
  depths and tree counters. It provides `EntriesBuffer`, `HashesEntry` and
  `HashesEntryWriter`.
- `shardcells.cell_storage` stores cells by marker, with marking and sweeping.
  It provides `CellStorage`, `StorageCell`, `Marker`, the `Cells` column,
  `PS_MARKER` and `PS_TEMP_MARKER`.
- `shardcells.replace_transaction` imports a downloaded state. It provides
  `ShardStateReplaceTransaction`.
- `shardcells.cell_writer` exports a stored tree as a BOC file. It provides
  `CellWriter`, `deserialize_cell` and `number_of_bytes_to_fit`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## The store

`Database` keeps every column family in memory behind a lock. `close()` writes
all of the data to `store.bin` in the database directory. Opening the database
again reads that file back. Every column family saved in the file must be named
when the database is opened; otherwise a `ValueError` is raised.

`DbBuilder` collects the columns and then opens the database:

```python
from shardcells.tree import Column, DbBuilder, DbCaches, Tree
from shardcells.cell_storage import Cells, CellStorage

class ShardStates(Column):
    NAME = "shard_states"

db = (
    DbBuilder("data/db", DbCaches.with_capacity(256 * 1024 * 1024))
    .column(Cells)
    .column(ShardStates)
    .build()
)
storage = CellStorage(db)
states = Tree(db, ShardStates)
```

`DbCaches.with_capacity` only computes the two cache sizes. Each size is capped
at 64 MiB. The store itself does no caching with them.

The main operations are:

- `Tree` wraps one column family with `get`, `insert`, `remove`,
  `contains_key`, `items(start, reverse)`, `prefix_iterator` and
  `raw_iterator`.
- `WriteBatch` groups puts and deletes. `Database.write` applies them together.

## Cells and markers

Each cell is stored in the `cells` column under its representation hash. The
first byte of the stored value is a *marker*:

- `0` (`PS_MARKER`) marks cells of a persistent state.
- `255` (`PS_TEMP_MARKER`) marks cells in a persistent state transition.
- Any other value is a garbage-collection generation.

The `CellStorage` methods work as follows:

- `store_cell(batch, marker, root)` puts every cell of `root` that is not yet
  stored into the batch. A stored cell whose marker is non-zero and different
  from `marker` is rewritten with the new marker. Cells already stored with
  marker `0` or with `marker` stop the walk. The method returns how many cells
  were queued.
- `load_cell(hash)` returns a `StorageCell`. Loaded cells are cached by weak
  reference. Children are loaded on demand through `StorageCell.reference(i)`.
  A missing cell raises `CellStorageError`.
- `mark_cells_tree(root_hash, Marker(marker, force=False))` sets `marker` on
  every reachable cell whose marker differs. It neither changes nor descends
  into cells with marker `0` or `255`. With `force=True` it also descends below
  cells that already carried the marker. It returns the number of cells changed.
- `sweep_cells(target_marker)` deletes every cell whose marker is neither `0`
  nor `target_marker`, and returns how many it deleted.

## Importing a state

A state arrives in packets. `ShardStateReplaceTransaction` reads the BOC header
and then the cells. It spools them into the cells file of a `FilesContext`. The
downloads directory must already exist.

```python
from shardcells.files_context import FilesContext
from shardcells.replace_transaction import ShardStateReplaceTransaction

ctx = FilesContext("data/downloads", -1, 0x8000000000000000, 1)
tx = ShardStateReplaceTransaction(states, storage)  # marker defaults to PS_MARKER
for packet in packets:
    if tx.process_packet(ctx, packet):
        break
root = tx.finalize(ctx, b"state-key")
ctx.clear()
```

`process_packet` returns `True` once all cells have been received. If the
header announces a CRC-32C, the checksum must also have arrived and matched.

`finalize` then does the following:

1. It walks the cells from the last one to the first.
2. It computes SHA-256 hashes, depths and tree counters for each cell.
3. It writes the cells into the `cells` column.
4. It stores the root hash under the state key in the given tree.
5. It returns the root as a `StorageCell`.

The following errors can be raised:

- `ShardStateParserError`: bad headers, bad cells or a CRC mismatch.
- `ReplaceTransactionError`: an incomplete state, an invalid level mask, an
  unknown cell type or too great a depth.

## Exporting a state

`CellWriter(storage.cells, "exports").write(root_hash)` writes the stored tree
under `root_hash` as a BOC file:

- The file goes into the given directory and is named after the hex of the
  hash. The method returns its path.
- The file uses the generic BOC tag, 4-byte reference indices and an offset
  index.
- A temporary `<hash>.temp` file is used while writing and removed afterwards.
- A missing or undecodable cell raises `CellWriterError`.

## What this package does not do

- It does not download states. Packets must come from the caller.
- It has no command-line tool and no server.
- It keeps no state for the garbage-collection steps. It does not pick a
  collection's target marker. It does not resume an interrupted mark or sweep.
  It does not delete old shard-state records. The caller decides when to call
  `mark_cells_tree` and `sweep_cells`.
- It keeps no block metadata. It does not know which block a state belongs to,
  beyond the key the caller passes to `finalize`.
- The store is neither durable nor multi-process. Data reaches disk only when
  `Database.close()` runs. Writes since the last close are lost if the process
  stops early.