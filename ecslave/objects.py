"""CoE object dictionary: entries, lookup, PDO mapping and process data packing."""

from __future__ import annotations

from bisect import bisect_left
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Callable, Iterable, Optional, Union

from .registers import AbortCode, ALState

RX_PDO_OBJIDX = 0x1C12
TX_PDO_OBJIDX = 0x1C13
COMPLETE_ACCESS_FLAG = 1 << 15
OBJH_READ = 0
OBJH_WRITE = 1

Buffer = Union[bytes, bytearray, memoryview]


class DataType(IntEnum):
    """CoE data type codes."""

    BOOLEAN = 0x0001
    INTEGER8 = 0x0002
    INTEGER16 = 0x0003
    INTEGER32 = 0x0004
    UNSIGNED8 = 0x0005
    UNSIGNED16 = 0x0006
    UNSIGNED32 = 0x0007
    REAL32 = 0x0008
    VISIBLE_STRING = 0x0009
    OCTET_STRING = 0x000A
    UNICODE_STRING = 0x000B
    INTEGER24 = 0x0010
    REAL64 = 0x0011
    INTEGER64 = 0x0015
    UNSIGNED24 = 0x0016
    UNSIGNED64 = 0x001B
    PDO_MAPPING = 0x0021
    IDENTITY = 0x0023
    BITARR8 = 0x002D
    BITARR16 = 0x002E
    BITARR32 = 0x002F
    BIT1 = 0x0030
    BIT2 = 0x0031
    BIT3 = 0x0032
    BIT4 = 0x0033
    BIT5 = 0x0034
    BIT6 = 0x0035
    BIT7 = 0x0036
    BIT8 = 0x0037
    ARRAY_OF_INT = 0x0260
    ARRAY_OF_SINT = 0x0261
    ARRAY_OF_DINT = 0x0262
    ARRAY_OF_UDINT = 0x0263


class ObjectType(IntEnum):
    """CoE object codes."""

    DOMAIN = 0x0002
    DEFTYPE = 0x0005
    DEFSTRUCT = 0x0006
    VAR = 0x0007
    ARRAY = 0x0008
    RECORD = 0x0009


class Access(IntFlag):
    """Access and mapping flags of an object entry."""

    RPRE = 0x01
    RSAFE = 0x02
    ROP = 0x04
    WPRE = 0x08
    WSAFE = 0x10
    WOP = 0x20
    RXPDO = 0x40
    TXPDO = 0x80
    BACKUP = 0x100
    SETTING = 0x200
    RO = RPRE | RSAFE | ROP
    WO = WPRE | WSAFE | WOP
    RW = RO | WO
    RWPRE = WPRE | RO
    RWOP = WOP | RO
    RWPRE_SAFE = WPRE | WSAFE | RO


class SdoAbort(Exception):
    """An SDO request failed with the given abort code."""

    def __init__(self, code: int) -> None:
        super().__init__(f"SDO abort 0x{int(code):08x}")
        self.code = int(code)


_STRING_TYPES = frozenset(
    {DataType.VISIBLE_STRING, DataType.OCTET_STRING, DataType.UNICODE_STRING}
)

_WIDTH = {
    **dict.fromkeys(
        (
            DataType.BIT1, DataType.BIT2, DataType.BIT3, DataType.BIT4,
            DataType.BIT5, DataType.BIT6, DataType.BIT7, DataType.BIT8,
            DataType.BOOLEAN, DataType.UNSIGNED8, DataType.INTEGER8, DataType.BITARR8,
        ),
        1,
    ),
    **dict.fromkeys((DataType.UNSIGNED16, DataType.INTEGER16, DataType.BITARR16), 2),
    **dict.fromkeys(
        (DataType.REAL32, DataType.UNSIGNED32, DataType.INTEGER32, DataType.BITARR32), 4
    ),
    **dict.fromkeys((DataType.REAL64, DataType.UNSIGNED64, DataType.INTEGER64), 8),
}


def _bits_to_bytes(bits: int) -> int:
    return (bits + 7) >> 3


def read_access(access: int, state: int) -> bool:
    """True when the access flags allow reading in the given AL state."""
    return bool(
        (access & Access.RPRE and state == ALState.PREOP)
        or (access & Access.RSAFE and state == ALState.SAFEOP)
        or (access & Access.ROP and state == ALState.OP)
    )


def write_access(access: int, state: int) -> bool:
    """True when the access flags allow writing in the given AL state."""
    return bool(
        (access & Access.WPRE and state == ALState.PREOP)
        or (access & Access.WSAFE and state == ALState.SAFEOP)
        or (access & Access.WOP and state == ALState.OP)
    )


@dataclass(eq=False)
class ObjectEntry:
    """One sub-index of an object; ``data`` holds its live value, else ``value`` is constant."""

    subindex: int
    datatype: int
    bitlength: int
    flags: int
    name: str = ""
    value: int = 0
    data: Optional[bytearray] = None

    def raw(self, nbytes: int) -> bytes:
        """The first ``nbytes`` bytes of the entry's value, little-endian, zero padded."""
        if self.data is not None:
            return bytes(self.data[:nbytes]).ljust(nbytes, b"\0")
        constant = (self.value & 0xFFFFFFFF).to_bytes(4, "little")
        return constant.ljust(nbytes, b"\0")[:nbytes]

    def fetch(self, nbytes: int) -> int:
        """The value as an unsigned integer of ``nbytes`` bytes."""
        return int.from_bytes(self.raw(nbytes), "little")

    def get_value(self) -> int:
        """Read the value according to the entry's data type."""
        width = _WIDTH.get(self.datatype)
        if width is None:
            raise ValueError(f"data type 0x{self.datatype:04x} has no scalar value")
        return self.fetch(width)

    def set_value(self, value: int) -> None:
        """Store a value according to the entry's data type; other types are ignored."""
        width = _WIDTH.get(self.datatype)
        if width is None:
            return
        if self.data is None:
            raise ValueError(f"entry {self.subindex} is constant")
        if len(self.data) < width:
            raise ValueError(f"entry {self.subindex} storage is shorter than {width} bytes")
        self.data[:width] = (value & ((1 << (8 * width)) - 1)).to_bytes(width, "little")


@dataclass(eq=False)
class DictObject:
    """An object of the dictionary with its entries in sub-index order."""

    index: int
    objtype: int
    maxsub: int
    name: str = ""
    entries: list[ObjectEntry] = field(default_factory=list)


@dataclass
class Mapping:
    """One mapped entry in a sync manager's process data, ``offset`` in bits."""

    obj: Optional[ObjectEntry]
    parent: Optional[DictObject]
    offset: int


def _span(bitmap: Buffer, offset: int, length: int) -> tuple[int, int]:
    if offset < 0 or length < 0:
        raise ValueError("bit offset and length must not be negative")
    start = offset >> 3
    end = _bits_to_bytes(offset + length)
    if end > len(bitmap):
        raise ValueError(f"bits {offset}..{offset + length} lie outside the buffer")
    return start, end


def bitslice_get(bitmap: Buffer, offset: int, length: int) -> int:
    """Read ``length`` bits starting at bit ``offset`` of a little-endian bitmap."""
    start, end = _span(bitmap, offset, length)
    if length == 0:
        return 0
    chunk = int.from_bytes(bytes(bitmap[start:end]), "little")
    return (chunk >> (offset & 7)) & ((1 << length) - 1)


def bitslice_set(bitmap: bytearray, offset: int, length: int, value: int) -> None:
    """Write ``length`` bits of ``value`` at bit ``offset`` of a little-endian bitmap."""
    start, end = _span(bitmap, offset, length)
    if length == 0:
        return
    shift = offset & 7
    mask = ((1 << length) - 1) << shift
    chunk = int.from_bytes(bytes(bitmap[start:end]), "little")
    chunk = (chunk & ~mask) | ((value << shift) & mask)
    bitmap[start:end] = chunk.to_bytes(end - start, "little")


def pdo_pack(buffer: bytearray, mappings: Iterable[Mapping]) -> None:
    """Copy the mapped entries' values into the input process data."""
    for mapping in mappings:
        obj = mapping.obj
        if obj is None:
            continue
        if obj.bitlength > 64:
            nbytes = _bits_to_bytes(obj.bitlength)
            start = mapping.offset >> 3
            if start + nbytes > len(buffer):
                raise ValueError("mapped entry lies outside the process data")
            buffer[start:start + nbytes] = obj.raw(nbytes)
        else:
            bitslice_set(buffer, mapping.offset, obj.bitlength, obj.get_value())


def pdo_unpack(buffer: Buffer, mappings: Iterable[Mapping]) -> None:
    """Copy the output process data into the mapped entries."""
    for mapping in mappings:
        obj = mapping.obj
        if obj is None:
            continue
        if obj.bitlength > 64:
            nbytes = _bits_to_bytes(obj.bitlength)
            start = mapping.offset >> 3
            if obj.data is None:
                raise ValueError(f"entry {obj.subindex} is constant")
            obj.data[:nbytes] = bytes(buffer[start:start + nbytes])
        else:
            obj.set_value(bitslice_get(buffer, mapping.offset, obj.bitlength))


class ObjectDictionary:
    """The slave's object dictionary, ordered by object index."""

    def __init__(self, objects: Iterable[DictObject]) -> None:
        self.objects = list(objects)
        self._indices = [obj.index for obj in self.objects]
        if any(a >= b for a, b in zip(self._indices, self._indices[1:])):
            raise ValueError("objects must be in strictly increasing index order")

    def __len__(self) -> int:
        return len(self.objects)

    def __iter__(self):
        return iter(self.objects)

    def find_object(self, index: int) -> Optional[int]:
        """Position of the object with this index, or None."""
        pos = bisect_left(self._indices, index)
        if pos < len(self._indices) and self._indices[pos] == index:
            return pos
        return None

    def find_subindex(self, position: int, subindex: int) -> Optional[int]:
        """Position of the sub-index within the object's entries, or None."""
        obj = self.objects[position]
        entries = obj.entries
        if not entries:
            return None
        if subindex <= obj.maxsub and subindex < len(entries):
            if entries[subindex].subindex == subindex:
                return subindex
        last = min(obj.maxsub, len(entries) - 1)
        n = 0
        while n < last and entries[n].subindex < subindex:
            n += 1
        return n if entries[n].subindex == subindex else None

    def size_of_pdo(
        self, index: int, max_mappings: int
    ) -> tuple[int, Optional[list[Mapping]]]:
        """Byte size of the PDOs assigned in 0x1C12/0x1C13 and their mappings.

        With ``max_mappings`` 0 no mappings are collected and the list is empty.
        When the mapping is invalid the result is ``(0, None)``.
        """
        if index not in (RX_PDO_OBJIDX, TX_PDO_OBJIDX):
            return 0, []
        position = self.find_object(index)
        if position is None:
            return 0, []
        assign = self.objects[position].entries
        offset = 0
        mappings: list[Mapping] = []
        for sic in range(1, assign[0].fetch(1) + 1):
            pdo_pos = self.find_object(assign[sic].fetch(2))
            if pdo_pos is None:
                continue
            pdo = self.objects[pdo_pos].entries
            for c in range(1, pdo[0].fetch(1) + 1):
                value = pdo[c].fetch(4)
                if max_mappings > 0:
                    if len(mappings) == max_mappings:
                        return 0, None
                    mapped_index = value >> 16
                    mapped_sub = (value >> 8) & 0xFF
                    if mapped_index == 0 and mapped_sub == 0:
                        mappings.append(Mapping(None, None, offset))
                    else:
                        mpos = self.find_object(mapped_index)
                        if mpos is None:
                            return 0, None
                        nsub = self.find_subindex(mpos, mapped_sub)
                        if nsub is None:
                            return 0, None
                        owner = self.objects[mpos]
                        mappings.append(Mapping(owner.entries[nsub], owner, offset))
                offset += value & 0xFF
        return _bits_to_bytes(offset) & 0xFFFF, mappings

    def max_sub(self, index: int) -> int:
        """Value of sub-index 0 of the object, 0 when the object does not exist."""
        position = self.find_object(index)
        if position is None:
            return 0
        return self.objects[position].entries[0].fetch(1)

    def init_default_values(
        self, skip: bool = False, set_defaults_hook: Optional[Callable[[], None]] = None
    ) -> None:
        """Load every entry's default value into its storage, then call the hook."""
        if skip:
            return
        for obj in self.objects:
            for entry in obj.entries:
                if entry.data is not None:
                    entry.set_value(entry.value)
                if entry.subindex >= obj.maxsub:
                    break
        if set_defaults_hook is not None:
            set_defaults_hook()

    def _ca_layout(
        self, position: int, nsub: int, max_bytes: int = 0
    ) -> tuple[list[tuple[ObjectEntry, int]], int]:
        """Bit positions of the entries in a complete access, and the total bits."""
        obj = self.objects[position]
        if obj.entries[0].datatype in _STRING_TYPES:
            raise SdoAbort(AbortCode.CA_NOT_SUPPORTED)
        placements: list[tuple[ObjectEntry, int]] = []
        size = 0
        for n in range(nsub, obj.maxsub + 1):
            entry = obj.entries[n]
            bitlen = entry.bitlength
            if bitlen % 8 == 0 and size % 8:
                size += 8 - size % 8
            placements.append((entry, size))
            size += 16 if (n == 0 and obj.objtype != ObjectType.VAR) else bitlen
            if max_bytes > 0 and _bits_to_bytes(size) >= max_bytes:
                break
        return placements, size

    def complete_access_size(self, position: int, nsub: int) -> int:
        """Size in bits of a complete access starting at entry ``nsub``."""
        return self._ca_layout(position, nsub)[1]

    def complete_access_upload(self, position: int, nsub: int, state: int) -> bytes:
        """Serialise the object from entry ``nsub``; unreadable entries read as zero."""
        placements, total = self._ca_layout(position, nsub)
        buf = bytearray(_bits_to_bytes(total))
        for entry, pos in placements:
            bitlen = entry.bitlength
            readable = read_access(entry.flags & 0x3F, state)
            if bitlen % 8 == 0:
                nbytes = _bits_to_bytes(bitlen)
                start = pos >> 3
                buf[start:start + nbytes] = entry.raw(nbytes) if readable else bytes(nbytes)
            else:
                bitoffset = pos % 8
                byte = pos >> 3
                mask = (1 << bitlen) - 1
                if readable:
                    if bitoffset == 0:
                        buf[byte] = 0
                    buf[byte] |= ((entry.raw(1)[0] & mask) << bitoffset) & 0xFF
                else:
                    buf[byte] &= ~(mask << bitoffset) & 0xFF
        return bytes(buf)

    def complete_access_download(
        self, position: int, nsub: int, data: Buffer, state: int, max_bytes: int = 0
    ) -> int:
        """Store ``data`` into the writable byte-aligned entries; returns bits covered."""
        placements, total = self._ca_layout(position, nsub, max_bytes)
        for entry, pos in placements:
            bitlen = entry.bitlength
            if bitlen % 8 or entry.data is None:
                continue
            if not write_access(entry.flags & 0x3F, state):
                continue
            nbytes = _bits_to_bytes(bitlen)
            start = pos >> 3
            chunk = bytes(data[start:start + nbytes])
            entry.data[:len(chunk)] = chunk
        return total