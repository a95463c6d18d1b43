"""EtherCAT slave controller registers, status codes and low-level register access."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, Callable, ClassVar, Optional, Protocol


class Register(IntEnum):
    """Addresses of ESC registers used by the slave stack."""

    ADDRESS = 0x0010
    CONF_STATION_ALIAS = 0x0012
    DLSTATUS = 0x0110
    ALCONTROL = 0x0120
    ALSTATUS = 0x0130
    ALERROR = 0x0134
    ALEVENTMASK = 0x0204
    ALEVENT = 0x0220
    WDSTATUS = 0x0440
    EECONTSTAT = 0x0502
    EEDATA = 0x0508
    SM0 = 0x0800
    SM0STATUS = 0x0805
    SM0ACTIVATE = 0x0806
    SM0PDI = 0x0807
    SM1 = 0x0808
    SM2 = 0x0810
    SM3 = 0x0818
    LOCALTIME = 0x0910
    LOCALTIME_OFFSET = 0x0920
    SYNC_ACT = 0x0981
    SYNC0_CYCLE_TIME = 0x09A0
    SYNC1_CYCLE_TIME = 0x09A4


ALCONTROL_ERROR_ACK = 0x0010
ALSTATUS_ERROR_IND = 0x0010
ALEVENT_SM_MASK = 0x0310
SYNC_ACT_ACTIVATED = 0x01
SYNC_SYNC0_EN = 0x02
SYNC_SYNC1_EN = 0x04
SYNC_AUTO_ACTIVATED = 0x08
SMENABLE_BIT = 0x01
AL_STATEMASK = 0x001F
AL_ALLBUTINITMASK = 0x0E
AL_ERRACKMASK = 0x0F
AL_ID_REQUEST = 0x0020

SYNCTYPE_SUPPORT_FREERUN = 0x01
SYNCTYPE_SUPPORT_SYNCHRON = 0x02
SYNCTYPE_SUPPORT_DCSYNC0 = 0x04
SYNCTYPE_SUPPORT_DCSYNC1 = 0x08
SYNCTYPE_SUPPORT_SUBCYCLE = 0x10

MBX_HEADER_SIZE = 6
SM_REGISTER_SIZE = 8

COE_DEFAULTLENGTH = 0x0A
COE_HEADERSIZE = 0x0A
COE_SEGMENTHEADERSIZE = 0x03
COE_SDOREQUEST = 0x02
COE_SDORESPONSE = 0x03
COE_SDOINFORMATION = 0x08
COE_COMMAND_SDOABORT = 0x80
COE_COMMAND_UPLOADREQUEST = 0x40
COE_COMMAND_UPLOADRESPONSE = 0x40
COE_COMMAND_UPLOADSEGMENT = 0x00
COE_COMMAND_UPLOADSEGREQ = 0x60
COE_COMMAND_DOWNLOADREQUEST = 0x20
COE_COMMAND_DOWNLOADRESPONSE = 0x60
COE_COMMAND_DOWNLOADSEGREQ = 0x00
COE_COMMAND_DOWNLOADSEGRESP = 0x20
COE_COMMAND_LASTSEGMENTBIT = 0x01
COE_SIZE_INDICATOR = 0x01
COE_EXPEDITED_INDICATOR = 0x02
COE_COMPLETEACCESS = 0x10
COE_TOGGLEBIT = 0x10
COE_INFOERROR = 0x07
COE_GETODLISTRESPONSE = 0x02
COE_GETODRESPONSE = 0x04
COE_ENTRYDESCRIPTIONRESPONSE = 0x06
COE_VALUEINFO_ACCESS = 0x01
COE_VALUEINFO_OBJECT = 0x02
COE_VALUEINFO_MAPPABLE = 0x04
COE_VALUEINFO_TYPE = 0x08
COE_VALUEINFO_DEFAULT = 0x10
COE_VALUEINFO_MINIMUM = 0x20
COE_VALUEINFO_MAXIMUM = 0x40
COE_MINIMUM_LENGTH = 8


class ALState(IntEnum):
    """Application layer states as reported in AL Status."""

    INIT = 0x01
    PREOP = 0x02
    BOOT = 0x03
    SAFEOP = 0x04
    OP = 0x08
    ERROR = 0x10


class ALEvent(IntFlag):
    """Bits of the AL Event Request register."""

    CONTROL = 0x0001
    DC_LATCH = 0x0002
    DC_SYNC0 = 0x0004
    DC_SYNC1 = 0x0008
    SMCHANGE = 0x0010
    EEP = 0x0020
    WD = 0x0040
    SM0 = 0x0100
    SM1 = 0x0200
    SM2 = 0x0400
    SM3 = 0x0800


class ALError(IntEnum):
    """AL Status Codes written to register 0x134."""

    NONE = 0x0000
    UNSPECIFIEDERROR = 0x0001
    NOMEMORY = 0x0002
    INVALIDSTATECHANGE = 0x0011
    UNKNOWNSTATE = 0x0012
    BOOTNOTSUPPORTED = 0x0013
    NOVALIDFIRMWARE = 0x0014
    INVALIDBOOTMBXCONFIG = 0x0015
    INVALIDMBXCONFIG = 0x0016
    INVALIDSMCONFIG = 0x0017
    NOVALIDINPUTS = 0x0018
    NOVALIDOUTPUTS = 0x0019
    SYNCERROR = 0x001A
    WATCHDOG = 0x001B
    INVALIDSYNCMANAGERTYP = 0x001C
    INVALIDOUTPUTSM = 0x001D
    INVALIDINPUTSM = 0x001E
    INVALIDWDTCFG = 0x001F
    SLAVENEEDSCOLDSTART = 0x0020
    SLAVENEEDSINIT = 0x0021
    SLAVENEEDSPREOP = 0x0022
    SLAVENEEDSSAFEOP = 0x0023
    INVALIDINPUTMAPPING = 0x0024
    INVALIDOUTPUTMAPPING = 0x0025
    INCONSISTENTSETTINGS = 0x0026
    FREERUNNOTSUPPORTED = 0x0027
    SYNCNOTSUPPORTED = 0x0028
    FREERUNNEEDS3BUFFMODE = 0x0029
    BACKGROUNDWATCHDOG = 0x002A
    NOVALIDINPUTSOUTPUTS = 0x002B
    FATALSYNCERROR = 0x002C
    NOSYNCERROR = 0x002D
    INVALIDINPUTFMMUCFG = 0x002E
    DCINVALIDSYNCCFG = 0x0030
    INVALIDDCLATCHCFG = 0x0031
    PLLERROR = 0x0032
    DCSYNCIOERROR = 0x0033
    DCSYNCTIMEOUT = 0x0034
    DCSYNCCYCLETIME = 0x0035
    DCSYNC0CYCLETIME = 0x0036
    DCSYNC1CYCLETIME = 0x0037
    MBXAOE = 0x0041
    MBXEOE = 0x0042
    MBXCOE = 0x0043
    MBXFOE = 0x0044
    MBXSOE = 0x0045
    MBXVOE = 0x004F
    EEPROMNOACCESS = 0x0050
    EEPROMERROR = 0x0051
    SLAVERESTARTEDLOCALLY = 0x0060
    DEVICEIDVALUEUPDATED = 0x0061
    APPLCTRLAVAILABLE = 0x00F0
    UNKNOWN = 0xFFFF


class MailboxError(IntEnum):
    """Detail codes of a mailbox error reply."""

    SYNTAX = 0x0001
    UNSUPPORTEDPROTOCOL = 0x0002
    INVALIDCHANNEL = 0x0003
    SERVICENOTSUPPORTED = 0x0004
    INVALIDHEADER = 0x0005
    SIZETOOSHORT = 0x0006
    NOMOREMEMORY = 0x0007
    INVALIDSIZE = 0x0008


class AbortCode(IntEnum):
    """SDO abort codes."""

    NOTOGGLE = 0x05030000
    TRANSFER_TIMEOUT = 0x05040000
    UNKNOWN = 0x05040001
    INVALID_BLOCK_SIZE = 0x05040002
    INVALID_SEQUENCE_NUMBER = 0x05040003
    BLOCK_CRC_ERROR = 0x05040004
    OUT_OF_MEMORY = 0x05040005
    UNSUPPORTED = 0x06010000
    WRITEONLY = 0x06010001
    READONLY = 0x06010002
    SUBINDEX0_NOT_ZERO = 0x06010003
    CA_NOT_SUPPORTED = 0x06010004
    EXCEEDS_MBOX_SIZE = 0x06010005
    SDO_DOWNLOAD_BLOCKED = 0x06010006
    NOOBJECT = 0x06020000
    MAPPING_OBJECT_ERROR = 0x06040041
    MAPPING_LENGTH_ERROR = 0x06040042
    GENERAL_PARAMETER_ERROR = 0x06040043
    GENERAL_DEVICE_ERROR = 0x06040047
    HARDWARE_ERROR = 0x06060000
    TYPEMISMATCH = 0x06070010
    DATATYPE_TOO_HIGH = 0x06070012
    DATATYPE_TOO_LOW = 0x06070013
    NOSUBINDEX = 0x06090011
    VALUE_EXCEEDED = 0x06090030
    VALUE_TOO_HIGH = 0x06090031
    VALUE_TOO_LOW = 0x06090032
    MODULE_LIST_MISMATCH = 0x06090033
    MAX_VAL_LESS_THAN_MIN_VAL = 0x06090036
    RESOURCE_NOT_AVAILABLE = 0x060A0023
    GENERALERROR = 0x08000000
    DATA_STORE_ERROR = 0x08000020
    DATA_STORE_LOCAL_ERROR = 0x08000021
    NOTINTHISSTATE = 0x08000022
    OBJECT_DICTIONARY_ERROR = 0x08000023
    NO_DATA_AVAILABLE = 0x08000024


class MailboxType(IntEnum):
    """Mailbox protocol types and extended protocol sub-states."""

    ERR = 0x00
    AOE = 0x01
    EOE = 0x02
    COE = 0x03
    FOE = 0x04
    ODL = 0x10
    OD = 0x20
    ED = 0x30
    SEU = 0x40
    SED = 0x50


class MailboxState(IntEnum):
    """State of a local mailbox buffer."""

    IDLE = 0x00
    INCLAIM = 0x01
    OUTCLAIM = 0x02
    OUTREQ = 0x03
    OUTPOST = 0x04
    BACKUP = 0x05
    AGAIN = 0x06


class AppState(IntFlag):
    """Process data state of the application."""

    IDLE = 0x00
    INPUT = 0x01
    OUTPUT = 0x02


class SmResult(IntFlag):
    """Which sync manager failed validation."""

    ERRSM0 = 0x01
    ERRSM1 = 0x02
    ERRSM2 = 0x04
    ERRSM3 = 0x08


def _bit(value: int, position: int) -> int:
    return (value >> position) & 1


def _with_bit(value: int, position: int, flag: int) -> int:
    return (value & ~(1 << position)) | ((1 if flag else 0) << position)


@dataclass
class SyncManager:
    """The eight little-endian bytes of one sync manager register block."""

    SIZE: ClassVar[int] = SM_REGISTER_SIZE
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<HHBBBB")

    psa: int = 0
    length: int = 0
    command: int = 0
    status: int = 0
    act_esc: int = 0
    act_pdi: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "SyncManager":
        if len(data) < cls.SIZE:
            raise ValueError(f"sync manager block needs {cls.SIZE} bytes, got {len(data)}")
        return cls(*cls._FORMAT.unpack_from(bytes(data)))

    def to_bytes(self) -> bytes:
        return self._FORMAT.pack(
            self.psa & 0xFFFF,
            self.length & 0xFFFF,
            self.command & 0xFF,
            self.status & 0xFF,
            self.act_esc & 0xFF,
            self.act_pdi & 0xFF,
        )

    @property
    def mode(self) -> int:
        return self.command & 0x03

    @property
    def direction(self) -> int:
        return (self.command >> 2) & 0x03

    @property
    def mbx_stat(self) -> int:
        return _bit(self.status, 3)

    @mbx_stat.setter
    def mbx_stat(self, flag: int) -> None:
        self.status = _with_bit(self.status, 3, flag)

    @property
    def buf_stat(self) -> int:
        return (self.status >> 4) & 0x03

    @property
    def ec_sm(self) -> int:
        return _bit(self.act_esc, 0)

    @property
    def ec_rep(self) -> int:
        return _bit(self.act_esc, 1)

    @property
    def pdi_sm(self) -> int:
        return _bit(self.act_pdi, 0)

    @property
    def pdi_rep(self) -> int:
        return _bit(self.act_pdi, 1)

    @pdi_rep.setter
    def pdi_rep(self, flag: int) -> None:
        self.act_pdi = _with_bit(self.act_pdi, 1, flag)


@dataclass
class MailboxHeader:
    """The six byte header in front of every mailbox message."""

    SIZE: ClassVar[int] = MBX_HEADER_SIZE
    _FORMAT: ClassVar[struct.Struct] = struct.Struct("<HHBB")

    length: int = 0
    address: int = 0
    channel: int = 0
    priority: int = 0
    mbx_type: int = 0
    count: int = 0

    @classmethod
    def unpack(cls, data: bytes) -> "MailboxHeader":
        if len(data) < cls.SIZE:
            raise ValueError(f"mailbox header needs {cls.SIZE} bytes, got {len(data)}")
        length, address, chan_prio, type_cnt = cls._FORMAT.unpack_from(bytes(data))
        return cls(
            length=length,
            address=address,
            channel=chan_prio & 0x3F,
            priority=(chan_prio >> 6) & 0x03,
            mbx_type=type_cnt & 0x0F,
            count=(type_cnt >> 4) & 0x0F,
        )

    def pack(self) -> bytes:
        return self._FORMAT.pack(
            self.length & 0xFFFF,
            self.address & 0xFFFF,
            (self.channel & 0x3F) | ((self.priority & 0x03) << 6),
            (self.mbx_type & 0x0F) | ((self.count & 0x0F) << 4),
        )


@dataclass(frozen=True)
class SyncManagerConfig:
    """Expected layout of one sync manager: start, length, end, control, activation."""

    sma: int
    sml: int
    sme: int
    smc: int
    smact: int = 0


Hook = Optional[Callable[..., Any]]


def _default_mailbox() -> tuple[SyncManagerConfig, SyncManagerConfig]:
    return (
        SyncManagerConfig(0x1000, 128, 0x1000 + 128 - 1, 0x26),
        SyncManagerConfig(0x1080, 128, 0x1080 + 128 - 1, 0x22),
    )


@dataclass
class SlaveConfig:
    """Application configuration of the slave stack."""

    use_interrupt: bool = False
    watchdog_cnt: int = 0
    mailbox_size: int = 128
    boot_mailbox_size: int = 128
    mailbox_buffers: int = 3
    prealloc_factor: int = 1
    mailbox: tuple[SyncManagerConfig, SyncManagerConfig] = field(default_factory=_default_mailbox)
    boot_mailbox: tuple[SyncManagerConfig, SyncManagerConfig] = field(
        default_factory=_default_mailbox
    )
    sm2: SyncManagerConfig = SyncManagerConfig(0x1100, 0, 0x1100, 0x24, 1)
    sm3: SyncManagerConfig = SyncManagerConfig(0x1180, 0, 0x1180, 0x20, 1)
    max_mappings_sm2: int = 0
    max_mappings_sm3: int = 0
    skip_default_initialization: bool = False
    set_defaults_hook: Hook = None
    pre_state_change_hook: Hook = None
    post_state_change_hook: Hook = None
    application_hook: Hook = None
    safeoutput_override: Hook = None
    pre_object_download_hook: Hook = None
    post_object_download_hook: Hook = None
    pre_object_upload_hook: Hook = None
    post_object_upload_hook: Hook = None
    rxpdo_override: Hook = None
    txpdo_override: Hook = None
    esc_hw_interrupt_enable: Hook = None
    esc_hw_interrupt_disable: Hook = None
    esc_hw_eep_handler: Hook = None
    esc_check_dc_handler: Hook = None
    get_device_id: Hook = None


class _EscBus(Protocol):
    def read(self, address: int, length: int) -> bytes: ...

    def write(self, address: int, data: bytes) -> None: ...


class MemoryEsc:
    """An ESC register and process memory space held in a byte array."""

    def __init__(self, size: int = 0x10000) -> None:
        if size <= 0:
            raise ValueError("memory size must be positive")
        self.memory = bytearray(size)

    def _check(self, address: int, length: int) -> None:
        if address < 0 or length < 0 or address + length > len(self.memory):
            raise ValueError(
                f"access of {length} bytes at 0x{address:04x} is outside ESC memory"
            )

    def read(self, address: int, length: int) -> bytes:
        self._check(address, length)
        return bytes(self.memory[address:address + length])

    def write(self, address: int, data: bytes) -> None:
        data = bytes(data)
        self._check(address, len(data))
        self.memory[address:address + len(data)] = data


class EscCore:
    """Slave stack variables and the register access shared by the upper layers."""

    def __init__(self, esc: _EscBus, config: Optional[SlaveConfig] = None) -> None:
        self.esc = esc
        self.config = config if config is not None else SlaveConfig()
        cfg = self.config
        self.use_interrupt = cfg.use_interrupt
        self.watchdogcnt = cfg.watchdog_cnt
        self.mb = cfg.mailbox
        self.mbboot = cfg.boot_mailbox

        self.mbx_run = 0
        self.active_mbx_size = cfg.mailbox_size
        self.active_mb0 = self.mb[0]
        self.active_mb1 = self.mb[1]
        self.sm2_sml = 0
        self.sm3_sml = 0
        self.dcsync = 0
        self.synccounter = 0
        self.synccounterlimit = 0
        self.current_status = 0
        self.current_error = 0
        self.al_control = 0
        self.dl_status = 0
        self.address = 0
        self.mbxcnt = 0
        self.mbxincnt = 0
        self.mbxoutpost = 0
        self.mbxbackup = 0
        self.xoe = 0
        self.txcue = 0
        self.mbxfree = 0
        self.segmented = 0
        self.data: Any = None
        self.entries = 0
        self.frags = 0
        self.fragsleft = 0
        self.index = 0
        self.subindex = 0
        self.flags = 0
        self.toggle = 0
        self.sm2mappings = 0
        self.sm3mappings = 0
        self.sm_test_result = 0
        self.prev_time = 0
        self.time = 0
        self.al_event = 0
        self.app_state = AppState.IDLE
        self.sm = [SyncManager() for _ in range(4)]
        self.mbxdata = bytearray(cfg.prealloc_factor * cfg.mailbox_size)

    def _read_u16(self, address: int) -> int:
        return int.from_bytes(self.esc.read(address, 2), "little")

    def _write_u16(self, address: int, value: int) -> None:
        self.esc.write(address, (value & 0xFFFF).to_bytes(2, "little"))

    def _read_u32(self, address: int) -> int:
        return int.from_bytes(self.esc.read(address, 4), "little")

    def _write_u32(self, address: int, value: int) -> None:
        self.esc.write(address, (value & 0xFFFFFFFF).to_bytes(4, "little"))

    def _load_sm(self, n: int) -> SyncManager:
        """Read the whole register block of sync manager n into the local copy."""
        block = self.esc.read(Register.SM0 + (n << 3), SyncManager.SIZE)
        self.sm[n] = SyncManager.from_bytes(block)
        return self.sm[n]

    def al_error(self, code: int) -> None:
        """Store and write the AL Status Code."""
        self.current_error = code & 0xFFFF
        self._write_u16(Register.ALERROR, code)

    def al_status(self, status: int) -> None:
        """Store and write the AL Status."""
        self.current_status = status & 0xFF
        self._write_u16(Register.ALSTATUS, status & 0xFF)

    def write_event_mask(self, mask: int) -> None:
        self._write_u32(Register.ALEVENTMASK, mask)

    def read_event_mask(self) -> int:
        return self._read_u32(Register.ALEVENTMASK)

    def write_event(self, event: int) -> None:
        self._write_u32(Register.ALEVENT, event)

    def read_event(self) -> int:
        return self._read_u32(Register.ALEVENT)

    def sm_ack(self, n: int) -> int:
        """Read the activation register of sync manager n to acknowledge its event."""
        return self.esc.read(Register.SM0ACTIVATE + (n << 3), 1)[0]

    def sm_status(self, n: int) -> None:
        self.sm[n].status = self.esc.read(Register.SM0STATUS + (n << 3), 1)[0]

    def sm_write_pdi(self, n: int) -> None:
        self.esc.write(Register.SM0PDI + (n << 3), bytes([self.sm[n].act_pdi & 0xFF]))

    def sm_read_pdi(self, n: int) -> None:
        self.sm[n].act_pdi = self.esc.read(Register.SM0PDI + (n << 3), 1)[0]

    def sm_enable(self, n: int) -> None:
        """Clear the PDI deactivate bit and wait until the ESC reports it cleared."""
        sm = self.sm[n]
        sm.act_pdi &= ~SMENABLE_BIT & 0xFF
        self.sm_write_pdi(n)
        self.sm_read_pdi(n)
        while sm.act_pdi & SMENABLE_BIT:
            self.sm_read_pdi(n)

    def sm_disable(self, n: int) -> None:
        """Set the PDI deactivate bit and wait until the ESC reports it set."""
        sm = self.sm[n]
        sm.act_pdi |= SMENABLE_BIT
        self.sm_write_pdi(n)
        self.sm_read_pdi(n)
        while not sm.act_pdi & SMENABLE_BIT:
            self.sm_read_pdi(n)

    def read_address(self) -> int:
        self.address = self._read_u16(Register.ADDRESS)
        return self.address

    def watchdog_status(self) -> int:
        return self._read_u16(Register.WDSTATUS) & 0xFF

    def sync_activation(self) -> int:
        return self.esc.read(Register.SYNC_ACT, 1)[0]

    def sync0_cycle_time(self) -> int:
        return self._read_u32(Register.SYNC0_CYCLE_TIME)

    def sync1_cycle_time(self) -> int:
        return self._read_u32(Register.SYNC1_CYCLE_TIME)

    def check_dc(self) -> int:
        """Validate the DC settings; 0 when fine, otherwise the AL Status Code to set."""
        if self.sync_activation() & (SYNC_ACT_ACTIVATED | SYNC_AUTO_ACTIVATED):
            handler = self.config.esc_check_dc_handler
            if handler is None:
                return int(ALError.DCINVALIDSYNCCFG)
            return int(handler())
        self.dcsync = 0
        self.synccounter = 0
        return 0