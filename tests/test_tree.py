import pytest

from shardcells.tree import (
    Column,
    Database,
    DbBuilder,
    DbCaches,
    Tree,
    WriteBatch,
)


class Cells(Column):
    NAME = "cells"


class States(Column):
    NAME = "states"


class Missing(Column):
    NAME = "missing"


@pytest.fixture
def db(tmp_path):
    caches = DbCaches.with_capacity(1 << 20)
    database = DbBuilder(tmp_path / "db", caches).column(Cells).column(States).build()
    yield database
    database.close()


def test_caches_saturate_at_limit():
    caches = DbCaches.with_capacity(1 << 40)
    assert caches.block_cache_capacity == 64 * 1024 * 1024
    assert caches.compressed_block_cache_capacity == 64 * 1024 * 1024


def test_caches_split_small_capacity():
    caches = DbCaches.with_capacity(3000)
    total = caches.block_cache_capacity + caches.compressed_block_cache_capacity
    assert total == 3000
    assert caches.block_cache_capacity > caches.compressed_block_cache_capacity


def test_caches_reject_negative():
    with pytest.raises(ValueError):
        DbCaches.with_capacity(-1)


def test_tree_requires_column(db):
    with pytest.raises(KeyError):
        Tree(db, Missing)


def test_insert_get_remove(db):
    tree = Tree(db, Cells)
    tree.insert(b"key", b"value")
    assert tree.get(b"key") == b"value"
    assert tree.contains_key(b"key")
    tree.remove(b"key")
    assert tree.get(b"key") is None
    assert not tree.contains_key(b"key")


def test_columns_are_isolated(db):
    Tree(db, Cells).insert(b"k", b"a")
    assert Tree(db, States).get(b"k") is None


def test_write_batch_applies_all(db):
    tree = Tree(db, Cells)
    tree.insert(b"old", b"1")
    batch = WriteBatch()
    batch.put(Cells, b"x", b"2")
    batch.put("states", b"y", b"3")
    batch.delete(Cells, b"old")
    assert len(batch) == 3
    db.write(batch)
    assert tree.get(b"x") == b"2"
    assert Tree(db, States).get(b"y") == b"3"
    assert tree.get(b"old") is None
    batch.clear()
    assert len(batch) == 0


def test_write_batch_with_unknown_column_changes_nothing(db):
    batch = WriteBatch()
    batch.put(Cells, b"x", b"2")
    batch.put(Missing, b"y", b"3")
    with pytest.raises(KeyError):
        db.write(batch)
    assert Tree(db, Cells).get(b"x") is None


def test_raw_iterator_sorted(db):
    tree = Tree(db, Cells)
    keys = [b"b", b"a", b"c"]
    for key in keys:
        tree.insert(key, key + b"!")
    it = tree.raw_iterator()
    it.seek_to_first()
    assert [k for k, _ in it] == sorted(keys)


def test_seek_for_prev(db):
    tree = Tree(db, Cells)
    for key in (b"a", b"b", b"c"):
        tree.insert(key, b"v")
    it = tree.raw_iterator()
    it.seek_for_prev(b"bb")
    assert it.key() == b"b"
    it.prev()
    assert it.item() == (b"a", b"v")
    it.prev()
    assert not it.valid()
    assert it.key() is None


def test_next_on_invalid_iterator_raises(db):
    it = Tree(db, Cells).raw_iterator()
    it.seek_to_first()
    with pytest.raises(RuntimeError):
        it.next()


def test_upper_bound(db):
    tree = Tree(db, Cells)
    for key in (b"a", b"b", b"c", b"d"):
        tree.insert(key, b"v")
    it = db.raw_iterator(Cells, upper_bound=b"c")
    it.seek_to_first()
    assert [k for k, _ in it] == [b"a", b"b"]


def test_prefix_iterator(db):
    tree = Tree(db, States)
    wanted = {b"gc_last_block1", b"gc_last_block2"}
    for key in wanted | {b"aaa", b"states_gc_state", b"zzz"}:
        tree.insert(key, b"v")
    it = tree.prefix_iterator(b"gc_last_block")
    assert {k for k, _ in it} == wanted


def test_iterator_is_snapshot(db):
    tree = Tree(db, Cells)
    tree.insert(b"a", b"1")
    it = tree.raw_iterator()
    tree.insert(b"b", b"2")
    tree.remove(b"a")
    it.seek_to_first()
    assert list(it) == [(b"a", b"1")]


def test_items_forward_and_reverse(db):
    tree = Tree(db, Cells)
    for key in (b"a", b"b", b"c"):
        tree.insert(key, key)
    assert [k for k, _ in tree.items()] == [b"a", b"b", b"c"]
    assert [k for k, _ in tree.items(reverse=True)] == [b"c", b"b", b"a"]
    assert [k for k, _ in tree.items(start=b"b")] == [b"b", b"c"]
    assert [k for k, _ in tree.items(start=b"b", reverse=True)] == [b"b", b"a"]


def test_persistence(tmp_path):
    caches = DbCaches.with_capacity(1024)
    path = tmp_path / "db"
    with DbBuilder(path, caches).column(Cells).build() as database:
        Tree(database, Cells).insert(b"k", b"\x00\xff")
    with DbBuilder(path, caches).column(Cells).build() as database:
        assert Tree(database, Cells).get(b"k") == b"\x00\xff"


def test_reopen_without_existing_column_fails(tmp_path):
    caches = DbCaches.with_capacity(1024)
    path = tmp_path / "db"
    DbBuilder(path, caches).column(Cells).column(States).build().close()
    with pytest.raises(ValueError):
        DbBuilder(path, caches).column(Cells).build()


def test_closed_database_rejects_access(tmp_path):
    database = Database(None, ["cells"])
    database.close()
    with pytest.raises(RuntimeError):
        database.get("cells", b"k")