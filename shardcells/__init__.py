"""Cell storage for shard states: a column-family store, bag-of-cells import, marker-based collection and BOC export."""

__version__ = "0.1.0"

__all__ = [
    "tree",
    "cell",
    "entries_buffer",
    "parser",
    "files_context",
    "cell_storage",
    "cell_writer",
    "replace_transaction",
]