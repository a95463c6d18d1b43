"""SDO upload and download services of CAN over EtherCAT."""

from __future__ import annotations

import struct
from typing import Any, Optional, Union

from .objects import (
    COMPLETE_ACCESS_FLAG,
    Access,
    DataType,
    ObjectEntry,
    SdoAbort,
    read_access,
    write_access,
)
from .registers import (
    COE_COMMAND_DOWNLOADRESPONSE,
    COE_COMMAND_DOWNLOADSEGRESP,
    COE_COMMAND_LASTSEGMENTBIT,
    COE_COMMAND_SDOABORT,
    COE_COMMAND_UPLOADRESPONSE,
    COE_COMMAND_UPLOADSEGMENT,
    COE_COMPLETEACCESS,
    COE_DEFAULTLENGTH,
    COE_EXPEDITED_INDICATOR,
    COE_HEADERSIZE,
    COE_SDOREQUEST,
    COE_SDORESPONSE,
    COE_SEGMENTHEADERSIZE,
    COE_SIZE_INDICATOR,
    COE_TOGGLEBIT,
    MBX_HEADER_SIZE,
    AbortCode,
    MailboxState,
    MailboxType,
)
from .state import Slave

# Offsets of the SDO fields within a mailbox buffer.
_SERVICE = 6
_COMMAND = 8
_INDEX = 9
_SUBINDEX = 11
_SIZE = 12
_DATA = 16
_SEGMENT_DATA = 9

_FLEXIBLE_TYPES = frozenset(
    {
        DataType.OCTET_STRING,
        DataType.UNICODE_STRING,
        DataType.ARRAY_OF_INT,
        DataType.ARRAY_OF_SINT,
        DataType.ARRAY_OF_DINT,
        DataType.ARRAY_OF_UDINT,
    }
)

Source = Union[bytes, bytearray, memoryview]


def _bits_to_bytes(bits: int) -> int:
    return (bits + 7) >> 3


def _slice(source: Source, start: int, size: int) -> bytes:
    return bytes(source[start:start + size]).ljust(size, b"\0")


def _hook_code(result: Any) -> int:
    return 0 if result is None else int(result)


class SdoServer(Slave):
    """Slave stack answering SDO requests found in mailbox buffer 0.

    Object hooks from the configuration are called as
    ``pre_object_download_hook(index, subindex, data, size, flags)``,
    ``pre_object_upload_hook(index, subindex, data, size, flags)`` and
    ``post_object_*_hook(index, subindex, flags)``; each returns an abort
    code, 0 or None meaning success.  The upload pre hook may instead
    return ``(code, size)`` to change the number of bytes sent.
    """

    # -- hooks -------------------------------------------------------------

    def _upload_pre(self, index: int, subindex: int, data: Any, size: int,
                    flags: int) -> tuple[int, int]:
        hook = self.config.pre_object_upload_hook
        if hook is None:
            return 0, size
        result = hook(index, subindex, data, size, flags)
        if isinstance(result, tuple):
            code, size = result
            return _hook_code(code), int(size)
        return _hook_code(result), size

    def _upload_post(self, index: int, subindex: int, flags: int) -> int:
        hook = self.config.post_object_upload_hook
        return 0 if hook is None else _hook_code(hook(index, subindex, flags))

    def _download_pre(self, index: int, subindex: int, data: bytes, size: int,
                      flags: int) -> int:
        hook = self.config.pre_object_download_hook
        return 0 if hook is None else _hook_code(hook(index, subindex, data, size, flags))

    def _download_post(self, index: int, subindex: int, flags: int) -> int:
        hook = self.config.post_object_download_hook
        return 0 if hook is None else _hook_code(hook(index, subindex, flags))

    # -- buffer helpers ----------------------------------------------------

    @property
    def _data_size(self) -> int:
        return self.active_mbx_size - MBX_HEADER_SIZE

    @property
    def _al_state(self) -> int:
        return self.current_status & 0x0F

    def _set_length(self, n: int, length: int) -> None:
        header = self._header(n)
        header.length = length
        self._store_header(n, header)

    def _init_coesdo(self, n: int, service: int, command: int, index: int,
                     subindex: int) -> None:
        header = self._header(n)
        header.length = COE_DEFAULTLENGTH
        header.mbx_type = MailboxType.COE
        self._store_header(n, header)
        buf = self.mbx[n]
        struct.pack_into("<H", buf, _SERVICE, (service << 12) & 0xFFFF)
        buf[_COMMAND] = command & 0xFF
        struct.pack_into("<H", buf, _INDEX, index & 0xFFFF)
        buf[_SUBINDEX] = subindex & 0xFF

    def _put_size(self, n: int, value: int) -> None:
        struct.pack_into("<I", self.mbx[n], _SIZE, value & 0xFFFFFFFF)

    def _request(self) -> tuple[int, int, int, int]:
        buf = self.mbx[0]
        command = buf[_COMMAND]
        index = struct.unpack_from("<H", buf, _INDEX)[0]
        subindex = buf[_SUBINDEX]
        size = struct.unpack_from("<I", buf, _SIZE)[0]
        return command, index, subindex, size

    def _find(self, index: int) -> Optional[int]:
        if self.dictionary is None:
            return None
        return self.dictionary.find_object(index)

    def _entry(self, position: int, nsub: int) -> ObjectEntry:
        return self.dictionary.objects[position].entries[nsub]

    def _set_state_idle(self, reuse: int, index: int, subindex: int, code: int) -> None:
        if code:
            self.abort(reuse, index, subindex, code)
        self.mbx_control[0] = MailboxState.IDLE
        self.xoe = 0

    def _complete_access_target(self, index: int, subindex: int) -> tuple[int, int]:
        # A complete access starts at sub-index 0 or 1.
        if subindex > 1:
            raise SdoAbort(AbortCode.UNSUPPORTED)
        position = self._find(index)
        if position is None:
            raise SdoAbort(AbortCode.NOOBJECT)
        nsub = self.dictionary.find_subindex(position, subindex)
        if nsub is None:
            raise SdoAbort(AbortCode.NOSUBINDEX)
        return position, nsub

    # -- services ----------------------------------------------------------

    def abort(self, reuse: int, index: int, subindex: int, code: int) -> None:
        """Queue an SDO abort, in buffer ``reuse`` or in a newly claimed one."""
        out = reuse if reuse else self.claim_buffer()
        if not out:
            return
        self._init_coesdo(out, COE_SDOREQUEST, COE_COMMAND_SDOABORT, index, subindex)
        self._put_size(out, code)
        self.mbx_control[out] = MailboxState.OUTREQ

    def upload(self) -> None:
        """Answer an SDO upload request: expedited, normal or first segment."""
        _, index, subindex, _ = self._request()
        position = self._find(index)
        if position is None:
            self.abort(0, index, subindex, AbortCode.NOOBJECT)
        else:
            nsub = self.dictionary.find_subindex(position, subindex)
            if nsub is None:
                self.abort(0, index, subindex, AbortCode.NOSUBINDEX)
            else:
                entry = self._entry(position, nsub)
                if not read_access(entry.flags & 0x3F, self._al_state):
                    self._set_state_idle(0, index, subindex, AbortCode.WRITEONLY)
                    return
                out = self.claim_buffer()
                if out:
                    if not self._upload_to(out, entry, index, subindex):
                        return
        self.mbx_control[0] = MailboxState.IDLE
        self.xoe = 0

    def _upload_to(self, out: int, entry: ObjectEntry, index: int, subindex: int) -> bool:
        bits = entry.bitlength
        dss = 0x0C
        if bits > 8:
            dss = 0x08
        if bits > 16:
            dss = 0x04
        if bits > 24:
            dss = 0x00
        command = COE_COMMAND_UPLOADRESPONSE | COE_SIZE_INDICATOR
        self._init_coesdo(out, COE_SDORESPONSE, command, index, subindex)
        buf = self.mbx[out]
        size = _bits_to_bytes(bits)
        if size <= 4:
            buf[_COMMAND] = command | COE_EXPEDITED_INDICATOR | dss
            data = entry.data if entry.data is not None else entry.raw(4)
            code, size = self._upload_pre(index, subindex, data, size, entry.flags)
            if code:
                self._set_state_idle(out, index, subindex, code)
                return False
            if entry.data is None:
                self._put_size(out, entry.value)
            else:
                buf[_SIZE:_SIZE + 4] = _slice(entry.data, 0, size).ljust(4, b"\0")[:4]
        else:
            code, size = self._upload_pre(index, subindex, entry.data, size, entry.flags)
            if code:
                self._set_state_idle(out, index, subindex, code)
                return False
            source = entry.data if entry.data is not None else entry.raw(4)
            self.frags = size
            self._put_size(out, size)
            if size + COE_HEADERSIZE > self._data_size:
                size = self._data_size - COE_HEADERSIZE
                self.fragsleft = size
                self.segmented = MailboxType.SEU
                self.data = source
                self.flags = entry.flags
            else:
                self.segmented = 0
            self._set_length(out, COE_HEADERSIZE + size)
            buf[_DATA:_DATA + size] = _slice(source, 0, size)
        if self.segmented == 0:
            code = self._upload_post(index, subindex, entry.flags)
            if code:
                self._set_state_idle(out, index, subindex, code)
                return False
        self.mbx_control[out] = MailboxState.OUTREQ
        return True

    def upload_complete_access(self) -> None:
        """Answer an SDO upload request for a whole object."""
        _, index, subindex, _ = self._request()
        try:
            position, nsub = self._complete_access_target(index, subindex)
        except SdoAbort as exc:
            self._set_state_idle(0, index, subindex, exc.code)
            return
        out = self.claim_buffer()
        if not out:
            # An abort would need a buffer of its own as well.
            self._set_state_idle(0, index, subindex, 0)
            return
        first = self._entry(position, 0)
        try:
            bits = self.dictionary.complete_access_size(position, nsub)
        except SdoAbort as exc:
            self._set_state_idle(out, index, subindex, exc.code)
            return
        dss = 0 if bits > 24 else (4 * (3 - ((bits - 1) >> 3))) & 0xFF
        size = _bits_to_bytes(bits)
        if size + self.config.prealloc_factor * COE_HEADERSIZE > len(self.mbxdata):
            self._set_state_idle(out, index, subindex, AbortCode.CA_NOT_SUPPORTED)
            return
        code, size = self._upload_pre(index, subindex, first.data, size,
                                      first.flags | COMPLETE_ACCESS_FLAG)
        if code:
            self._set_state_idle(out, index, subindex, code)
            return
        data = self.dictionary.complete_access_upload(position, nsub, self._al_state)
        self.mbxdata[:len(data)] = data

        command = COE_COMMAND_UPLOADRESPONSE | COE_COMPLETEACCESS | COE_SIZE_INDICATOR
        self._init_coesdo(out, COE_SDORESPONSE, command, index, subindex)
        buf = self.mbx[out]
        self.segmented = 0
        if size <= 4:
            buf[_COMMAND] = command | COE_EXPEDITED_INDICATOR | dss
            buf[_SIZE:_SIZE + 4] = _slice(self.mbxdata, 0, size).ljust(4, b"\0")[:4]
        else:
            self._put_size(out, size)
            if size + COE_HEADERSIZE > self._data_size:
                self.frags = size
                size = self._data_size - COE_HEADERSIZE
                self.fragsleft = size
                self.segmented = MailboxType.SEU
                self.data = self.mbxdata
                self.flags = COMPLETE_ACCESS_FLAG
            self._set_length(out, COE_HEADERSIZE + size)
            buf[_DATA:_DATA + size] = _slice(self.mbxdata, 0, size)

        if self.segmented == 0:
            code = self._upload_post(index, subindex, first.flags | COMPLETE_ACCESS_FLAG)
            if code:
                self._set_state_idle(out, index, subindex, code)
                return
        self.mbx_control[out] = MailboxState.OUTREQ
        self._set_state_idle(out, index, subindex, 0)

    def upload_segment(self) -> None:
        """Send the next segment of a segmented upload."""
        command, index, subindex, _ = self._request()
        out = self.claim_buffer()
        if out:
            offset = self.fragsleft
            size = self.frags - self.fragsleft
            response = COE_COMMAND_UPLOADSEGMENT | (command & COE_TOGGLEBIT)
            self._init_coesdo(out, COE_SDORESPONSE, response, index, subindex)
            buf = self.mbx[out]
            if size + COE_SEGMENTHEADERSIZE > self._data_size:
                size = self._data_size - COE_SEGMENTHEADERSIZE
                self.fragsleft += size
                self._set_length(out, COE_SEGMENTHEADERSIZE + size)
            else:
                self.segmented = 0
                self.frags = 0
                self.fragsleft = 0
                response |= COE_COMMAND_LASTSEGMENTBIT
                if size >= 7:
                    self._set_length(out, COE_SEGMENTHEADERSIZE + size)
                else:
                    response |= (7 - size) << 1
                    self._set_length(out, COE_DEFAULTLENGTH)
                buf[_COMMAND] = response & 0xFF
            source = self.data if self.data is not None else b""
            buf[_SEGMENT_DATA:_SEGMENT_DATA + size] = _slice(source, offset, size)
            if self.segmented == 0:
                code = self._upload_post(index, subindex, self.flags)
                if code:
                    self._set_state_idle(out, index, subindex, code)
                    return
            self.mbx_control[out] = MailboxState.OUTREQ
        self.mbx_control[0] = MailboxState.IDLE
        self.xoe = 0

    def download(self) -> None:
        """Handle an SDO download request: expedited, normal or first segment."""
        command, index, subindex, size_field = self._request()
        buf = self.mbx[0]
        position = self._find(index)
        if position is None:
            self.abort(0, index, subindex, AbortCode.NOOBJECT)
        else:
            nsub = self.dictionary.find_subindex(position, subindex)
            if nsub is None:
                self.abort(0, index, subindex, AbortCode.NOSUBINDEX)
            else:
                entry = self._entry(position, nsub)
                access = entry.flags & 0x3F
                if write_access(access, self._al_state):
                    if not self._download_into(entry, command, size_field, index, subindex):
                        return
                elif access == Access.RO:
                    self.abort(0, index, subindex, AbortCode.READONLY)
                else:
                    self.abort(0, index, subindex, AbortCode.NOTINTHISSTATE)
        self.mbx_control[0] = MailboxState.IDLE
        self.xoe = 0

    def _download_into(self, entry: ObjectEntry, command: int, size_field: int,
                       index: int, subindex: int) -> bool:
        buf = self.mbx[0]
        if command & COE_EXPEDITED_INDICATOR:
            size = 4 - ((command & 0x0C) >> 2)
            offset = _SIZE
        else:
            size = size_field & 0xFFFF
            offset = _DATA
        actsize = _bits_to_bytes(entry.bitlength)
        if actsize != size:
            if entry.datatype == DataType.VISIBLE_STRING:
                # Pad with zeroes up to the entry's maximum size.
                if entry.data is not None and size < actsize:
                    end = min(actsize, len(entry.data))
                    entry.data[size:end] = bytes(max(0, end - size))
            elif entry.datatype not in _FLEXIBLE_TYPES:
                self._set_state_idle(0, index, subindex, AbortCode.TYPEMISMATCH)
                return False
        payload = bytes(buf[offset:offset + size])
        code = self._download_pre(index, subindex, payload, size, entry.flags)
        if code:
            self.abort(0, index, subindex, code)
            return True
        available = self._header(0).length - COE_HEADERSIZE
        if size > 4 and size > available:
            size = available
            self.segmented = MailboxType.SED
            self.data = memoryview(entry.data)[size:] if entry.data is not None else None
            self.index = index
            self.subindex = subindex
            self.flags = entry.flags
        else:
            self.segmented = 0
        if entry.data is not None:
            n = min(size, len(entry.data))
            entry.data[:n] = _slice(buf, offset, n)
        out = self.claim_buffer()
        if out:
            self._init_coesdo(out, COE_SDORESPONSE, COE_COMMAND_DOWNLOADRESPONSE,
                              index, subindex)
            self._put_size(out, 0)
            self.mbx_control[out] = MailboxState.OUTREQ
        if self.segmented == 0:
            code = self._download_post(index, subindex, entry.flags)
            if code:
                self.abort(out, index, subindex, code)
        return True

    def download_complete_access(self) -> None:
        """Handle an SDO download request for a whole object."""
        command, index, subindex, size_field = self._request()
        buf = self.mbx[0]
        try:
            position, nsub = self._complete_access_target(index, subindex)
        except SdoAbort as exc:
            self._set_state_idle(0, index, subindex, exc.code)
            return
        if command & COE_EXPEDITED_INDICATOR:
            nbytes = 4 - ((command & 0x0C) >> 2)
            offset = _SIZE
        else:
            nbytes = size_field & 0xFFFF
            offset = _DATA
        first = self._entry(position, 0)
        try:
            bits = self.dictionary.complete_access_size(position, nsub)
        except SdoAbort as exc:
            self._set_state_idle(0, index, subindex, exc.code)
            return
        size = _bits_to_bytes(bits)
        # Conformance tools send less than the full object, so only more is refused.
        if nbytes > size:
            self._set_state_idle(0, index, subindex, AbortCode.TYPEMISMATCH)
            return
        payload = bytes(buf[offset:offset + nbytes])
        code = self._download_pre(index, subindex, payload, size,
                                  first.flags | COMPLETE_ACCESS_FLAG)
        if code:
            self._set_state_idle(0, index, subindex, code)
            return
        if nbytes + COE_HEADERSIZE > self._data_size:
            if nbytes + self.config.prealloc_factor * COE_HEADERSIZE > len(self.mbxdata):
                self._set_state_idle(0, index, subindex, AbortCode.CA_NOT_SUPPORTED)
                return
            self.frags = nbytes
            size = self._data_size - COE_HEADERSIZE
            self.fragsleft = size
            self.segmented = MailboxType.SED
            self.data = memoryview(self.mbxdata)[size:]
            self.index = index
            self.subindex = subindex
            self.flags = COMPLETE_ACCESS_FLAG
            self.mbxdata[:size] = _slice(buf, offset, size)
        else:
            self.segmented = 0
            self.dictionary.complete_access_download(
                position, nsub, bytes(buf[offset:]), self._al_state, nbytes
            )
            code = self._download_post(index, subindex, first.flags | COMPLETE_ACCESS_FLAG)
            if code:
                self._set_state_idle(0, index, subindex, code)
                return
        out = self.claim_buffer()
        if out:
            self._init_coesdo(out, COE_SDORESPONSE,
                              COE_COMMAND_DOWNLOADRESPONSE | COE_COMPLETEACCESS,
                              index, subindex)
            self._put_size(out, 0)
            self.mbx_control[out] = MailboxState.OUTREQ
        self._set_state_idle(out, index, subindex, 0)

    def download_segment(self) -> None:
        """Store one segment of a segmented download and acknowledge it."""
        command = self.mbx[0][_COMMAND]
        out = self.claim_buffer()
        if out:
            size = self._header(0).length - COE_SEGMENTHEADERSIZE
            if size == 7:
                size = 7 - ((command >> 1) & 7)
            response = COE_COMMAND_DOWNLOADSEGRESP | (command & COE_TOGGLEBIT)
            self._init_coesdo(out, COE_SDORESPONSE, response, 0, 0)
            chunk = _slice(self.mbx[0], _SEGMENT_DATA, max(size, 0))
            if isinstance(self.data, memoryview):
                n = min(len(chunk), len(self.data))
                self.data[:n] = chunk[:n]

            if command & COE_COMMAND_LASTSEGMENTBIT:
                if self.flags == COMPLETE_ACCESS_FLAG:
                    if self.frags > self.fragsleft + size:
                        self._set_state_idle(0, self.index, self.subindex,
                                             AbortCode.TYPEMISMATCH)
                        return
                    position = self._find(self.index)
                    nsub = (
                        None if position is None
                        else self.dictionary.find_subindex(position, self.subindex)
                    )
                    if position is None or nsub is None:
                        self._set_state_idle(0, self.index, self.subindex,
                                             AbortCode.NOOBJECT)
                        return
                    self.dictionary.complete_access_download(
                        position, nsub, self.mbxdata, self._al_state, self.frags
                    )
                self.segmented = 0
                self.frags = 0
                self.fragsleft = 0
                self.data = None
                code = self._download_post(self.index, self.subindex, self.flags)
                if code:
                    self._set_state_idle(out, self.index, self.subindex, code)
                    return
            else:
                if isinstance(self.data, memoryview):
                    self.data = self.data[size:]
                self.fragsleft += size
            self.mbx_control[out] = MailboxState.OUTREQ
        self._set_state_idle(0, 0, 0, 0)