import pytest

from shardcells.cell import CellData, CellType, LevelMask, descriptor_bytes
from shardcells.cell_storage import Cells
from shardcells.cell_writer import (
    CellWriter,
    CellWriterError,
    deserialize_cell,
    number_of_bytes_to_fit,
)
from shardcells.parser import RawCell, ShardStatePacketReader
from shardcells.tree import Database, Tree


def key(n):
    return bytes([n]) * 32


def stored(data, bit_length, refs=(), cell_type=CellType.ORDINARY, marker=1,
           level_mask=0, hashes=(), depths=(), counters=True):
    cell = CellData(cell_type, bit_length, data, LevelMask(level_mask), False,
                    tuple(hashes), tuple(depths))
    out = bytes([marker]) + cell.serialize() + bytes([len(refs)]) + b"".join(refs)
    if counters:
        out += bytes(16)
    return out


@pytest.fixture
def tree():
    db = Database(None, [Cells])
    return Tree(db, Cells)


def parse_boc(blob):
    reader = ShardStatePacketReader()
    reader.set_next_packet(blob)
    header = reader.read_header()
    raw_cells = [reader.read_cell(header.ref_size) for _ in range(header.cell_count)]
    parsed = [
        RawCell.from_stored_data(c, header.ref_size, header.cell_count, i)
        for i, c in enumerate(raw_cells)
    ]
    return header, raw_cells, parsed


def test_write_shared_tree(tree, tmp_path):
    tree.insert(key(1), stored(b"\x11\x80", 8, [key(2), key(3)]))
    tree.insert(key(2), stored(b"\x22\x80", 8, [key(4)]))
    tree.insert(key(3), stored(b"\x33\x80", 8, [key(4)]))
    tree.insert(key(4), stored(b"\xa8", 4))

    path = CellWriter(tree, tmp_path).write(key(1))

    assert path == tmp_path / key(1).hex()
    blob = path.read_bytes()
    assert blob[:5] == b"\xb5\xee\x9c\x72\x84"

    header, _, cells = parse_boc(blob)
    assert header.cell_count == 4
    assert header.root_index == 0
    assert header.total_size == len(blob)

    first_bytes = [c.data[0] for c in cells]
    assert first_bytes[0] == 0x11
    root_children = [first_bytes[i] for i in cells[0].reference_indices]
    assert root_children == [0x22, 0x33]

    left = cells[cells[0].reference_indices[0]]
    right = cells[cells[0].reference_indices[1]]
    assert left.reference_indices == right.reference_indices
    assert first_bytes[left.reference_indices[0]] == 0xA8
    assert list(tmp_path.glob("*.temp")) == []


def test_single_cell_matches_descriptor(tree, tmp_path):
    value = stored(b"\x5a\x80", 8)
    tree.insert(key(7), value)

    blob = CellWriter(tree, tmp_path).write(key(7)).read_bytes()
    header, raw_cells, _ = parse_boc(blob)

    d1, d2, data, refs = deserialize_cell(value[1:])
    assert header.cell_count == 1
    assert raw_cells == [bytes([d1, d2]) + data]
    assert refs == []


def test_duplicate_reference_written_once(tree, tmp_path):
    tree.insert(key(1), stored(b"\x11\x80", 8, [key(2), key(2)]))
    tree.insert(key(2), stored(b"\x22\x80", 8))

    blob = CellWriter(tree, tmp_path).write(key(1)).read_bytes()
    header, _, cells = parse_boc(blob)

    assert header.cell_count == 2
    first, second = cells[0].reference_indices
    assert first == second
    assert cells[first].data[0] == 0x22


def test_missing_root(tree, tmp_path):
    with pytest.raises(CellWriterError, match="not found"):
        CellWriter(tree, tmp_path).write(key(9))
    assert list(tmp_path.glob("*.temp")) == []


def test_missing_child(tree, tmp_path):
    tree.insert(key(1), stored(b"\x11\x80", 8, [key(9)]))
    with pytest.raises(CellWriterError, match="not found"):
        CellWriter(tree, tmp_path).write(key(1))
    assert list(tmp_path.glob("*.temp")) == []


def test_empty_value_is_invalid(tree, tmp_path):
    tree.insert(key(1), b"")
    with pytest.raises(CellWriterError, match="Invalid cell"):
        CellWriter(tree, tmp_path).write(key(1))


def test_root_hash_length_checked(tree, tmp_path):
    with pytest.raises(ValueError):
        CellWriter(tree, tmp_path).write(b"\x01" * 5)


@pytest.mark.parametrize("bit_length", [0, 1, 7, 8, 9, 100, 1023])
def test_deserialize_cell_descriptors(bit_length):
    data = bytes((bit_length + 8) // 8)
    refs = [key(2), key(3)]
    value = stored(data, bit_length, refs)
    d1, d2, payload, references = deserialize_cell(value[1:])

    expected_d1, expected_d2 = descriptor_bytes(bit_length, len(refs), 0, False, False)
    assert (d1, d2) == (expected_d1, expected_d2)
    assert len(payload) == (bit_length + 7) // 8
    assert references == refs


def test_deserialize_exotic_with_level():
    value = stored(b"\x01\x80", 8, cell_type=CellType.PRUNED_BRANCH, level_mask=1)
    d1, _, _, _ = deserialize_cell(value[1:])
    assert d1 & 0b1000 == 0b1000
    assert d1 >> 5 == 1
    assert d1 & 0b111 == 0


def test_deserialize_skips_hashes_and_depths():
    refs = [key(5)]
    value = stored(b"\x77\x80", 8, refs, hashes=[key(8)], depths=[3])
    _, _, payload, references = deserialize_cell(value[1:])
    assert payload == b"\x77"
    assert references == refs


def test_deserialize_truncated():
    value = stored(b"\x11\x80", 8, [key(2)])
    with pytest.raises(CellWriterError):
        deserialize_cell(value[1:6])


def test_deserialize_requires_trailing_bytes():
    value = stored(b"\x11\x80", 8, [key(2)], counters=False)
    with pytest.raises(CellWriterError):
        deserialize_cell(value[1:])


def test_deserialize_too_many_references():
    refs = [key(i) for i in range(5)]
    value = stored(b"\x11\x80", 8, refs)
    with pytest.raises(CellWriterError):
        deserialize_cell(value[1:])


@pytest.mark.parametrize("value", [0, 1, 255, 256, 65535, 65536, 2**63, 2**64 - 1])
def test_number_of_bytes_to_fit(value):
    n = number_of_bytes_to_fit(value)
    assert 0 <= n <= 8
    assert value < 256**n
    if n > 0:
        assert value >= 256 ** (n - 1)


def test_number_of_bytes_to_fit_rejects_out_of_range():
    with pytest.raises(ValueError):
        number_of_bytes_to_fit(2**64)