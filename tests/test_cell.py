import pytest

from shardcells.cell import (
    CellData,
    CellType,
    LevelMask,
    descriptor_bytes,
    find_tag,
)


def _tagged(bit_len):
    data = bytearray((bit_len + 8) // 8)
    for i in range(bit_len):
        data[i // 8] |= 0x80 >> (i % 8)
    data[bit_len // 8] |= 0x80 >> (bit_len % 8)
    return bytes(data)


def test_cell_type_stored_values():
    assert CellType.ORDINARY == 0x01
    assert CellType.from_exotic_tag(0xFF) is CellType.ORDINARY
    assert CellType.from_exotic_tag(0x42) is CellType.UNKNOWN


@pytest.mark.parametrize("cell_type", list(CellType)[1:])
def test_exotic_tag_round_trip(cell_type):
    assert CellType.from_exotic_tag(cell_type.exotic_tag) is cell_type


@pytest.mark.parametrize("level", [0, 1, 2, 3])
def test_level_mask_with_level(level):
    mask = LevelMask.with_level(level)
    assert mask.level() == level
    assert mask.calc_hash_index(3) == level


def test_level_mask_validation():
    with pytest.raises(ValueError):
        LevelMask(8)
    with pytest.raises(ValueError):
        LevelMask.with_level(4)


def test_merkle_mask_drops_lowest_level():
    children = LevelMask.with_level(3)
    merkle = LevelMask.for_merkle_cell(children)
    assert merkle.level() == children.level() - 1


def test_level_mask_or():
    assert (LevelMask(1) | LevelMask(4)).mask == LevelMask(5).mask


@pytest.mark.parametrize("bit_len", [0, 1, 7, 8, 9, 100, 1023])
def test_find_tag_round_trip(bit_len):
    assert find_tag(_tagged(bit_len)) == bit_len


def test_find_tag_without_tag():
    assert find_tag(bytes(4)) == 0


@pytest.mark.parametrize("bit_len", [0, 5, 8, 13, 1023])
def test_descriptor_bytes(bit_len):
    d1, d2 = descriptor_bytes(bit_len, 3, 5, True, False)
    assert d1 & 7 == 3
    assert d1 >> 5 == 5
    assert d1 & 8
    assert not d1 & 16
    assert (d2 >> 1) + (d2 & 1) == (bit_len + 7) // 8
    assert bool(d2 & 1) == (bit_len % 8 != 0)


def test_cell_data_round_trip():
    cell = CellData(
        CellType.ORDINARY,
        13,
        _tagged(13),
        LevelMask(1),
        False,
        (bytes([1]) * 32, bytes([2]) * 32),
        (4, 9),
    )
    raw = cell.serialize() + b"tail"
    parsed, consumed = CellData.deserialize(raw)
    assert parsed == cell
    assert raw[consumed:] == b"tail"


def test_cell_data_round_trip_without_hashes():
    cell = CellData(CellType.LIBRARY_REFERENCE, 0, _tagged(0))
    parsed, consumed = CellData.deserialize(cell.serialize())
    assert parsed == cell
    assert consumed == len(cell.serialize())


def test_cell_data_truncated():
    raw = CellData(CellType.ORDINARY, 8, _tagged(8), hashes=(bytes(32),), depths=(1,)).serialize()
    with pytest.raises(ValueError):
        CellData.deserialize(raw[:-1])


def test_cell_data_rejects_bad_length():
    with pytest.raises(ValueError):
        CellData(CellType.ORDINARY, 16, bytes(1))


def test_hash_by_level():
    hashes = tuple(bytes([i]) * 32 for i in range(4))
    cell = CellData(CellType.ORDINARY, 0, _tagged(0), LevelMask(7), hashes=hashes, depths=(0, 1, 2, 3))
    assert [cell.hash(i) for i in range(4)] == list(hashes)
    assert cell.repr_hash() == hashes[3]
    assert cell.depth(2) == 2


def test_pruned_branch_hash_and_depth():
    lower_hash = bytes([7]) * 32
    own_hash = bytes([9]) * 32
    payload = bytes([1, 1]) + lower_hash + (300).to_bytes(2, "big")
    bit_len = len(payload) * 8
    cell = CellData(
        CellType.PRUNED_BRANCH,
        bit_len,
        payload + b"\x80",
        LevelMask(1),
        hashes=(own_hash,),
        depths=(5,),
    )
    assert cell.hash(0) == lower_hash
    assert cell.repr_hash() == own_hash
    assert cell.depth(0) == 300
    assert cell.depth(3) == 5