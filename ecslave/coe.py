"""CAN over EtherCAT dispatch and SDO information services."""

from __future__ import annotations

import struct

from .objects import ObjectType
from .registers import (
    COE_HEADERSIZE,
    COE_SDOREQUEST,
    MBX_HEADER_SIZE,
    AbortCode,
    MailboxState,
    MailboxType,
)
from .sdo import SdoServer

COE_SDOINFORMATION = 0x08
COE_INFOERROR = 0x07
COE_GETODLISTRESPONSE = 0x02
COE_GETODRESPONSE = 0x04
COE_ENTRYDESCRIPTIONRESPONSE = 0x06
COE_VALUEINFO_ACCESS = 0x01
COE_VALUEINFO_OBJECT = 0x02
COE_VALUEINFO_MAPPABLE = 0x04
COE_MINIMUM_LENGTH = 8

_COMMAND_UPLOADREQUEST = 0x40
_COMMAND_UPLOADSEGREQ = 0x60
_COMMAND_DOWNLOADREQUEST = 0x20
_COMMAND_DOWNLOADSEGREQ = 0x00
_COMPLETEACCESS = 0x10

_INFO_GETODLIST = 0x01
_INFO_GETOD = 0x03
_INFO_GETED = 0x05

_MBXERR_INVALIDHEADER = 0x0005
_MBXERR_INVALIDSIZE = 0x0008

_INCLAIM = MailboxState(0x01)
_OUTPOST = MailboxState(0x04)
_AGAIN = MailboxState(0x06)

_XOE_COE = int(MailboxType.COE)
_XOE_ODLIST = int(MailboxType.COE) + 0x10

# Offsets within a mailbox buffer.
_SERVICE = 6
_INFO_OPCODE = 8
_INFO_RESERVED = 9
_INFO_FRAGMENTS = 10
_INFO_INDEX = 12
_OD_DATATYPE = 14
_OD_MAXSUB = 16
_OD_OBJECTCODE = 17
_OD_NAME = 18
_ED_SUBINDEX = 14
_ED_VALUEINFO = 15
_ED_DATATYPE = 16
_ED_BITLENGTH = 18
_ED_ACCESS = 20
_ED_NAME = 22
_SDO_COMMAND = 8
_SDO_INDEX = 9
_SDO_SUBINDEX = 11


class CoeHandler(SdoServer):
    """Slave stack that routes CoE mailboxes to SDO and SDO information services."""

    # -- helpers -----------------------------------------------------------

    @property
    def _od_list_size(self) -> int:
        """Bytes of object indices that fit in one OD list response."""
        return (self.active_mbx_size - MBX_HEADER_SIZE - 2 - 4 - 2) & 0xFFFE

    def _outbox_busy(self) -> bool:
        return any(state in (_OUTPOST, _AGAIN) for state in self.mbx_control)

    def _entry_count(self) -> int:
        count = 0
        if self.dictionary is None:
            return 0
        for obj in self.dictionary:
            if obj.index == 0xFFFF:
                break
            count += 1
        return count

    def _info_response(self, out: int, opcode: int, incomplete: bool,
                       fragments_left: int, length: int) -> None:
        header = self._header(out)
        header.mbx_type = MailboxType.COE
        header.length = length
        self._store_header(out, header)
        buf = self.mbx[out]
        struct.pack_into("<H", buf, _SERVICE, COE_SDOINFORMATION << 12)
        buf[_INFO_OPCODE] = (opcode & 0x7F) | (0x80 if incomplete else 0)
        buf[_INFO_RESERVED] = 0
        struct.pack_into("<H", buf, _INFO_FRAGMENTS, fragments_left & 0xFFFF)

    def _put_indices(self, out: int, offset: int, first: int, last: int) -> None:
        buf = self.mbx[out]
        for i, obj in enumerate(self.dictionary.objects[first:last]):
            struct.pack_into("<H", buf, offset + 2 * i, obj.index & 0xFFFF)

    def _put_name(self, out: int, offset: int, name: str, limit: int) -> int:
        encoded = name.encode("utf-8")
        n = min(len(encoded), max(limit, 0))
        terminator = encoded[n:n + 1] or b"\0"
        buf = self.mbx[out]
        buf[offset:offset + n + 1] = encoded[:n] + terminator
        return n

    def _finish(self) -> None:
        self.mbx_control[0] = MailboxState.IDLE
        self.xoe = 0

    # -- services ----------------------------------------------------------

    def info_error(self, code: int) -> None:
        """Answer an SDO information request with an error carrying ``code``."""
        out = self.claim_buffer()
        if not out:
            return
        self._info_response(out, COE_INFOERROR, False, 0, COE_HEADERSIZE)
        code = int(code) & 0xFFFFFFFF
        struct.pack_into("<HH", self.mbx[out], _INFO_INDEX, code & 0xFFFF, code >> 16)
        self.mbx_control[out] = MailboxState.OUTREQ
        self._finish()

    def get_od_list(self) -> None:
        """Answer a Get OD List request: object count or the list of all indices."""
        entries = self._entry_count()
        self.entries = entries
        list_size = self._od_list_size
        frags = (entries * 2 + list_size - 1) // list_size
        list_type = struct.unpack_from("<H", self.mbx[0], _INFO_INDEX)[0]
        if list_type > 0x01:
            self.info_error(AbortCode.UNSUPPORTED)
            return
        out = self.claim_buffer()
        if not out:
            return
        buf = self.mbx[out]
        if list_type == 0x00:
            self._finish()
            self.frags = frags
            self.fragsleft = frags - 1
            self._info_response(out, COE_GETODLISTRESPONSE, False, 0, 0x08 + 10)
            struct.pack_into("<HHHHHH", buf, _INFO_INDEX, 0, entries, 0, 0, 0, 0)
        else:
            if frags > 1:
                incomplete = True
                self.xoe = _XOE_ODLIST
                n = list_size >> 1
            else:
                incomplete = False
                self._finish()
                n = entries
            self.frags = frags
            self.fragsleft = frags - 1
            self._info_response(out, COE_GETODLISTRESPONSE, incomplete,
                                self.fragsleft, 0x08 + 2 * n)
            struct.pack_into("<H", buf, _INFO_INDEX, 0x01)
            self._put_indices(out, _OD_DATATYPE, 0, n)
        self.mbx_control[out] = MailboxState.OUTREQ

    def get_od_list_continue(self) -> None:
        """Send the next fragment of a Get OD List response."""
        out = self.claim_buffer()
        if not out:
            return
        half = self._od_list_size >> 1
        start = (self.frags - self.fragsleft) * half
        if self.fragsleft > 1:
            incomplete = True
            end = start + half
        else:
            incomplete = False
            self._finish()
            end = self.entries
        self.fragsleft -= 1
        self._info_response(out, COE_GETODLISTRESPONSE, incomplete,
                            self.fragsleft, 0x06 + 2 * (end - start))
        self._put_indices(out, _INFO_INDEX, start, end)
        self.mbx_control[out] = MailboxState.OUTREQ

    def get_object_description(self) -> None:
        """Answer a Get Object Description request."""
        index = struct.unpack_from("<H", self.mbx[0], _INFO_INDEX)[0]
        position = self._find(index)
        if position is None:
            self.info_error(AbortCode.NOOBJECT)
            return
        out = self.claim_buffer()
        if not out:
            return
        obj = self.dictionary.objects[position]
        if obj.objtype in (ObjectType.VAR, ObjectType.ARRAY):
            nsub = self.dictionary.find_subindex(position, 0)
            datatype = obj.entries[nsub].datatype if nsub is not None else 0
            maxsub = obj.maxsub if obj.objtype == ObjectType.VAR else obj.entries[0].value
        else:
            datatype = 0
            maxsub = obj.entries[0].value if obj.entries else 0
        buf = self.mbx[out]
        struct.pack_into("<HH", buf, _INFO_INDEX, index, datatype & 0xFFFF)
        buf[_OD_MAXSUB] = maxsub & 0xFF
        buf[_OD_OBJECTCODE] = obj.objtype & 0xFF
        n = self._put_name(out, _OD_NAME, obj.name, self._data_size - 0x0C - 1)
        self._info_response(out, COE_GETODRESPONSE, False, 0, 0x0C + n)
        self.mbx_control[out] = MailboxState.OUTREQ
        self._finish()

    def get_entry_description(self) -> None:
        """Answer a Get Entry Description request."""
        request = self.mbx[0]
        index = struct.unpack_from("<H", request, _INFO_INDEX)[0]
        subindex = request[_ED_SUBINDEX]
        position = self._find(index)
        if position is None:
            self.info_error(AbortCode.NOOBJECT)
            return
        nsub = self.dictionary.find_subindex(position, subindex)
        if nsub is None:
            self.info_error(AbortCode.NOSUBINDEX)
            return
        out = self.claim_buffer()
        if not out:
            return
        entry = self._entry(position, nsub)
        buf = self.mbx[out]
        struct.pack_into("<H", buf, _INFO_INDEX, index)
        buf[_ED_SUBINDEX] = subindex
        buf[_ED_VALUEINFO] = COE_VALUEINFO_ACCESS | COE_VALUEINFO_OBJECT | COE_VALUEINFO_MAPPABLE
        struct.pack_into("<HHH", buf, _ED_DATATYPE, entry.datatype & 0xFFFF,
                         entry.bitlength & 0xFFFF, entry.flags & 0xFFFF)
        n = self._put_name(out, _ED_NAME, entry.name, self._data_size - 0x10 - 1)
        self._info_response(out, COE_ENTRYDESCRIPTIONRESPONSE, False, 0, 0x10 + n)
        self.mbx_control[out] = MailboxState.OUTREQ
        self._finish()

    def process(self) -> None:
        """Take a CoE mailbox from buffer 0 and hand it to the matching service."""
        if not self.mbx_run:
            return
        if not self.xoe and self.mbx_control[0] == _INCLAIM:
            header = self._header(0)
            if header.mbx_type == MailboxType.COE:
                if header.length < COE_MINIMUM_LENGTH:
                    self.mailbox_error(_MBXERR_INVALIDSIZE)
                else:
                    self.xoe = _XOE_COE
        if self.xoe == _XOE_ODLIST and not self._outbox_busy():
            self.get_od_list_continue()
        if self.xoe != _XOE_COE:
            return

        buf = self.mbx[0]
        length = self._header(0).length
        service = struct.unpack_from("<H", buf, _SERVICE)[0] >> 12
        command = buf[_SDO_COMMAND]
        if service == COE_SDOREQUEST:
            sdo_command = command & 0xE0
            complete = command & _COMPLETEACCESS == _COMPLETEACCESS
            if sdo_command == _COMMAND_UPLOADREQUEST and length == COE_HEADERSIZE:
                if complete:
                    self.upload_complete_access()
                else:
                    self.upload()
            elif (command & 0xEF == _COMMAND_UPLOADSEGREQ and length == COE_HEADERSIZE
                  and self.segmented == MailboxType.SEU):
                self.upload_segment()
            elif sdo_command == _COMMAND_DOWNLOADREQUEST:
                if complete:
                    self.download_complete_access()
                else:
                    self.download()
            elif sdo_command == _COMMAND_DOWNLOADSEGREQ:
                self.download_segment()
            return

        opcode = buf[_INFO_OPCODE] & 0x7F
        if service == COE_SDOINFORMATION and opcode == _INFO_GETODLIST:
            self.get_od_list()
        elif service == COE_SDOINFORMATION and opcode == _INFO_GETOD:
            self.get_object_description()
        elif service == COE_SDOINFORMATION and opcode == _INFO_GETED:
            self.get_entry_description()
        else:
            if service == 0:
                self.mailbox_error(_MBXERR_INVALIDHEADER)
            else:
                index = struct.unpack_from("<H", buf, _SDO_INDEX)[0]
                self.abort(0, index, buf[_SDO_SUBINDEX], AbortCode.UNSUPPORTED)
            self._finish()