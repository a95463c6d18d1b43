import pytest

from ecslave.objects import (
    RX_PDO_OBJIDX,
    TX_PDO_OBJIDX,
    Access,
    DataType,
    DictObject,
    Mapping,
    ObjectDictionary,
    ObjectEntry,
    ObjectType,
    SdoAbort,
    bitslice_get,
    bitslice_set,
    pdo_pack,
    pdo_unpack,
    read_access,
    write_access,
)
from ecslave.registers import AbortCode, ALState


def _entry(sub, dtype, bits, flags, value=0, data=None):
    return ObjectEntry(sub, dtype, bits, flags, f"e{sub}", value, data)


def _dictionary():
    inputs = [bytearray(2), bytearray(1)]
    outputs = [bytearray(1)]
    objects = [
        DictObject(0x1000, ObjectType.VAR, 0, "Device type",
                   [_entry(0, DataType.UNSIGNED32, 32, Access.RO, 0x1234)]),
        DictObject(0x1600, ObjectType.RECORD, 1, "RxPDO", [
            _entry(0, DataType.UNSIGNED8, 8, Access.RO, 1),
            _entry(1, DataType.UNSIGNED32, 32, Access.RO, 0x70000108),
        ]),
        DictObject(0x1A00, ObjectType.RECORD, 2, "TxPDO", [
            _entry(0, DataType.UNSIGNED8, 8, Access.RO, 2),
            _entry(1, DataType.UNSIGNED32, 32, Access.RO, 0x60000110),
            _entry(2, DataType.UNSIGNED32, 32, Access.RO, 0x60000208),
        ]),
        DictObject(RX_PDO_OBJIDX, ObjectType.ARRAY, 1, "Rx assign", [
            _entry(0, DataType.UNSIGNED8, 8, Access.RO, 1),
            _entry(1, DataType.UNSIGNED16, 16, Access.RO, 0x1600),
        ]),
        DictObject(TX_PDO_OBJIDX, ObjectType.ARRAY, 1, "Tx assign", [
            _entry(0, DataType.UNSIGNED8, 8, Access.RO, 1),
            _entry(1, DataType.UNSIGNED16, 16, Access.RO, 0x1A00),
        ]),
        DictObject(0x6000, ObjectType.RECORD, 2, "Inputs", [
            _entry(0, DataType.UNSIGNED8, 8, Access.RO, 2),
            _entry(1, DataType.UNSIGNED16, 16, Access.RO | Access.TXPDO, 0, inputs[0]),
            _entry(2, DataType.UNSIGNED8, 8, Access.RO | Access.TXPDO, 0, inputs[1]),
        ]),
        DictObject(0x7000, ObjectType.RECORD, 1, "Outputs", [
            _entry(0, DataType.UNSIGNED8, 8, Access.RO, 1),
            _entry(1, DataType.UNSIGNED8, 8, Access.RW | Access.RXPDO, 0, outputs[0]),
        ]),
    ]
    return ObjectDictionary(objects), inputs, outputs


def test_find_object():
    od, _, _ = _dictionary()
    pos = od.find_object(0x6000)
    assert od.objects[pos].index == 0x6000
    assert od.find_object(0x6001) is None
    assert od.find_object(0x0001) is None


def test_find_subindex_sparse():
    obj = DictObject(0x2000, ObjectType.RECORD, 5, "sparse", [
        _entry(0, DataType.UNSIGNED8, 8, Access.RO, 5),
        _entry(2, DataType.UNSIGNED8, 8, Access.RO),
        _entry(5, DataType.UNSIGNED8, 8, Access.RO),
    ])
    od = ObjectDictionary([obj])
    assert od.find_subindex(0, 0) == 0
    assert obj.entries[od.find_subindex(0, 5)].subindex == 5
    assert obj.entries[od.find_subindex(0, 2)].subindex == 2
    assert od.find_subindex(0, 3) is None
    assert od.find_subindex(0, 9) is None


def test_unsorted_dictionary_rejected():
    with pytest.raises(ValueError):
        ObjectDictionary([DictObject(0x2000, ObjectType.VAR, 0), DictObject(0x1000, ObjectType.VAR, 0)])


def test_size_of_pdo_without_mappings():
    od, _, _ = _dictionary()
    size, mappings = od.size_of_pdo(RX_PDO_OBJIDX, 0)
    assert size == 1
    assert mappings == []


def test_size_of_pdo_with_mappings():
    od, _, _ = _dictionary()
    size, mappings = od.size_of_pdo(TX_PDO_OBJIDX, 4)
    inputs = od.objects[od.find_object(0x6000)]
    assert size * 8 == sum(m.obj.bitlength for m in mappings)
    assert [m.obj for m in mappings] == inputs.entries[1:]
    assert all(m.parent is inputs for m in mappings)
    assert mappings[0].offset == 0
    assert mappings[1].offset == inputs.entries[1].bitlength


def test_size_of_pdo_too_many_mappings():
    od, _, _ = _dictionary()
    assert od.size_of_pdo(TX_PDO_OBJIDX, 1) == (0, None)


def test_size_of_pdo_missing_mapped_object():
    od, _, _ = _dictionary()
    od.objects[od.find_object(0x1600)].entries[1].value = 0x71000108
    assert od.size_of_pdo(RX_PDO_OBJIDX, 4) == (0, None)


def test_size_of_pdo_other_index():
    od, _, _ = _dictionary()
    assert od.size_of_pdo(0x1000, 4) == (0, [])


def test_pdo_pack_unpack_round_trip():
    od, inputs, outputs = _dictionary()
    _, tx = od.size_of_pdo(TX_PDO_OBJIDX, 4)
    inputs[0][:] = b"\x34\x12"
    inputs[1][:] = b"\x56"
    buffer = bytearray(8)
    pdo_pack(buffer, tx)
    assert bytes(buffer[:3]) == b"\x34\x12\x56"

    _, rx = od.size_of_pdo(RX_PDO_OBJIDX, 4)
    pdo_unpack(b"\x9a" + bytes(7), rx)
    assert outputs[0] == bytearray(b"\x9a")


def test_padding_mapping_is_skipped():
    buffer = bytearray(8)
    pdo_pack(buffer, [Mapping(None, None, 0)])
    assert buffer == bytearray(8)


def test_bitslice_round_trip_across_word():
    bitmap = bytearray(16)
    bitslice_set(bitmap, 60, 8, 0xAB)
    assert bitslice_get(bitmap, 60, 8) == 0xAB
    assert bitslice_get(bitmap, 0, 60) == 0
    assert bitslice_get(bitmap, 68, 60) == 0


def test_bitslice_set_preserves_neighbours():
    bitmap = bytearray(b"\xff" * 4)
    bitslice_set(bitmap, 4, 8, 0)
    assert bitslice_get(bitmap, 4, 8) == 0
    assert bitslice_get(bitmap, 0, 4) == 0xF
    assert bitslice_get(bitmap, 12, 20) == (1 << 20) - 1


def test_bitslice_out_of_range():
    with pytest.raises(ValueError):
        bitslice_get(bytes(2), 10, 8)
    with pytest.raises(ValueError):
        bitslice_set(bytearray(2), 12, 8, 1)


def test_access_checks():
    assert read_access(Access.RO, ALState.PREOP)
    assert not read_access(Access.WO, ALState.OP)
    assert write_access(Access.RWPRE, ALState.PREOP)
    assert not write_access(Access.RWPRE, ALState.SAFEOP)
    assert write_access(Access.RWOP, ALState.OP)


def test_entry_value_masking():
    entry = _entry(1, DataType.UNSIGNED8, 8, Access.RW, data=bytearray(1))
    entry.set_value(0x1FF)
    assert entry.get_value() == 0xFF


def test_entry_string_set_ignored_and_get_rejected():
    entry = _entry(1, DataType.VISIBLE_STRING, 32, Access.RW, data=bytearray(b"abcd"))
    entry.set_value(0)
    assert entry.data == bytearray(b"abcd")
    with pytest.raises(ValueError):
        entry.get_value()


def test_constant_entry_cannot_be_set():
    entry = _entry(0, DataType.UNSIGNED16, 16, Access.RO, 0x1234)
    assert entry.get_value() == 0x1234
    with pytest.raises(ValueError):
        entry.set_value(1)


def test_init_default_values_and_hook():
    od, inputs, _ = _dictionary()
    od.objects[od.find_object(0x6000)].entries[1].value = 0x4321
    calls = []
    od.init_default_values(False, lambda: calls.append(True))
    assert inputs[0] == bytearray(b"\x21\x43")
    assert calls == [True]


def test_init_default_values_skipped():
    od, inputs, _ = _dictionary()
    od.objects[od.find_object(0x6000)].entries[1].value = 0x4321
    od.init_default_values(True, None)
    assert inputs[0] == bytearray(2)


def test_max_sub():
    od, _, _ = _dictionary()
    assert od.max_sub(0x6000) == 2
    assert od.max_sub(0x5555) == 0


def test_complete_access_upload():
    od, inputs, _ = _dictionary()
    inputs[0][:] = b"\x34\x12"
    inputs[1][:] = b"\x56"
    pos = od.find_object(0x6000)
    data = od.complete_access_upload(pos, 0, ALState.PREOP)
    assert data == b"\x02\x00\x34\x12\x56"
    assert od.complete_access_size(pos, 0) == len(data) * 8


def test_complete_access_upload_write_only_reads_zero():
    entries = [
        _entry(0, DataType.UNSIGNED8, 8, Access.RO, 1),
        _entry(1, DataType.UNSIGNED16, 16, Access.WO, 0, bytearray(b"\xaa\xbb")),
    ]
    od = ObjectDictionary([DictObject(0x2000, ObjectType.RECORD, 1, "wo", entries)])
    assert od.complete_access_upload(0, 0, ALState.OP) == b"\x01\x00\x00\x00"


def test_complete_access_upload_bits():
    entries = [_entry(0, DataType.UNSIGNED8, 8, Access.RO, 3)] + [
        _entry(n, DataType.BIT1, 1, Access.RO, 0, bytearray([bit]))
        for n, bit in ((1, 1), (2, 0), (3, 1))
    ]
    od = ObjectDictionary([DictObject(0x2000, ObjectType.RECORD, 3, "bits", entries)])
    assert od.complete_access_upload(0, 0, ALState.OP) == b"\x03\x00\x05"


def test_complete_access_download_round_trip():
    od, _, outputs = _dictionary()
    pos = od.find_object(0x7000)
    covered = od.complete_access_download(pos, 0, b"\x09\x00\x77", ALState.OP, 3)
    assert outputs[0] == bytearray(b"\x77")
    assert od.objects[pos].entries[0].value == 1
    assert od.complete_access_upload(pos, 0, ALState.OP) == b"\x01\x00\x77"
    assert covered == od.complete_access_size(pos, 0)


def test_complete_access_download_read_only_ignored():
    od, inputs, _ = _dictionary()
    pos = od.find_object(0x6000)
    od.complete_access_download(pos, 0, b"\x02\x00\x11\x22\x33", ALState.OP, 0)
    assert inputs[0] == bytearray(2)
    assert inputs[1] == bytearray(1)


def test_complete_access_on_string_object_aborts():
    entries = [_entry(0, DataType.VISIBLE_STRING, 32, Access.RO, 0, bytearray(4))]
    od = ObjectDictionary([DictObject(0x1008, ObjectType.VAR, 0, "name", entries)])
    with pytest.raises(SdoAbort) as info:
        od.complete_access_size(0, 0)
    assert info.value.code == AbortCode.CA_NOT_SUPPORTED
    with pytest.raises(SdoAbort):
        od.complete_access_download(0, 0, b"abcd", ALState.OP, 0)