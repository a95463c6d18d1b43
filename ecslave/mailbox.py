"""Low-level mailbox protocol: sync manager 0/1 handling and local mailbox buffers."""

from __future__ import annotations

from typing import Optional

from .registers import (
    MBX_HEADER_SIZE,
    ALError,
    ALEvent,
    ALState,
    EscCore,
    MailboxError,
    MailboxHeader,
    MailboxState,
    MailboxType,
    SlaveConfig,
    SmResult,
    SyncManagerConfig,
    _EscBus,
)


class Mailbox(EscCore):
    """Slave stack with the mailbox layer on top of the register access.

    Buffer 0 receives the incoming mailbox; buffers 1 and up hold outgoing
    messages.  Methods that hand out a buffer return its index, where 0 means
    that no outgoing buffer was available.
    """

    def __init__(self, esc: _EscBus, config: Optional[SlaveConfig] = None) -> None:
        super().__init__(esc, config)
        cfg = self.config
        if cfg.mailbox_size <= MBX_HEADER_SIZE or cfg.boot_mailbox_size <= MBX_HEADER_SIZE:
            raise ValueError("mailbox size too small")
        if cfg.mailbox_buffers < 1:
            raise ValueError("at least one mailbox buffer is needed")
        size = max(
            cfg.mailbox_size,
            cfg.boot_mailbox_size,
            *(sm.sml for sm in (*cfg.mailbox, *cfg.boot_mailbox)),
        )
        self.mbx = [bytearray(size) for _ in range(cfg.mailbox_buffers)]
        self.mbx_control = [MailboxState.IDLE for _ in range(cfg.mailbox_buffers)]

    def _header(self, n: int) -> MailboxHeader:
        return MailboxHeader.unpack(self.mbx[n])

    def _store_header(self, n: int, header: MailboxHeader) -> None:
        self.mbx[n][:MBX_HEADER_SIZE] = header.pack()

    @staticmethod
    def _matches(sm, expected: SyncManagerConfig) -> bool:
        return (
            sm.psa == expected.sma
            and sm.length == expected.sml
            and sm.command == expected.smc
            and sm.ec_sm != 0
        )

    def check_mailbox(self, state: int) -> int:
        """Compare SM0/SM1 with the active mailbox layout; INIT|ERROR on mismatch."""
        sm0 = self._load_sm(0)
        sm1 = self._load_sm(1)
        for sm, expected, result in (
            (sm0, self.active_mb0, SmResult.ERRSM0),
            (sm1, self.active_mb1, SmResult.ERRSM1),
        ):
            if not self._matches(sm, expected):
                self.sm_test_result = int(result)
                self.sm_disable(0)
                self.sm_disable(1)
                return ALState.INIT | ALState.ERROR
        return state

    def _start(self, state: int, size: int, configs, error: ALError) -> int:
        self.active_mbx_size = size
        self.active_mb0, self.active_mb1 = configs
        self.sm_enable(0)
        self.sm_enable(1)
        self.sm_status(0)
        self.sm_status(1)
        state = self.check_mailbox(state)
        if state & ALState.ERROR:
            self.al_error(error)
            self.mbx_run = 0
        else:
            self.toggle = self.sm[1].ec_rep
            self.sm[1].pdi_rep = self.toggle & 1
            self.sm_write_pdi(1)
            self.mbx_run = 1
        return state

    def start_mailbox(self, state: int) -> int:
        """Enable SM0/SM1 with the normal mailbox layout."""
        return self._start(state, self.config.mailbox_size, self.mb, ALError.INVALIDMBXCONFIG)

    def start_boot_mailbox(self, state: int) -> int:
        """Enable SM0/SM1 with the bootstrap mailbox layout."""
        return self._start(
            state, self.config.boot_mailbox_size, self.mbboot, ALError.INVALIDBOOTMBXCONFIG
        )

    def stop_mailbox(self) -> None:
        """Disable SM0/SM1 and clear all mailbox bookkeeping."""
        self.mbx_run = 0
        self.sm_disable(0)
        self.sm_disable(1)
        self.mbx_control = [MailboxState.IDLE for _ in self.mbx_control]
        self.mbxoutpost = 0
        self.mbxbackup = 0
        self.xoe = 0
        self.mbxfree = 1
        self.toggle = 0
        self.mbxincnt = 0
        self.segmented = 0
        self.frags = 0
        self.fragsleft = 0
        self.txcue = 0
        self.index = 0
        self.subindex = 0
        self.flags = 0

    def read_mailbox(self) -> None:
        """Copy the receive mailbox from the ESC into buffer 0."""
        mb0 = self.active_mb0
        buf = self.mbx[0]
        buf[:MBX_HEADER_SIZE] = self.esc.read(mb0.sma, MBX_HEADER_SIZE)
        length = min(self._header(0).length, mb0.sml - MBX_HEADER_SIZE)
        body = self.esc.read(mb0.sma + MBX_HEADER_SIZE, length)
        buf[MBX_HEADER_SIZE:MBX_HEADER_SIZE + length] = body
        if length + MBX_HEADER_SIZE < mb0.sml:
            # Reading the last byte releases the mailbox in the ESC.
            self.esc.read(mb0.sme, 1)
        self.mbx_control[0] = MailboxState.INCLAIM

    def write_mailbox(self, n: int) -> None:
        """Copy local buffer n into the send mailbox of the ESC."""
        mb1 = self.active_mb1
        length = min(self._header(n).length, mb1.sml - MBX_HEADER_SIZE)
        self.esc.write(mb1.sma, bytes(self.mbx[n][:MBX_HEADER_SIZE + length]))
        if length + MBX_HEADER_SIZE < mb1.sml:
            # Writing the last byte hands the mailbox to the master.
            self.esc.write(mb1.sme, b"\x00")
        self.mbxfree = 0

    def ack_mailbox_read(self) -> None:
        """Acknowledge that the master has read the send mailbox."""
        self.esc.write(self.active_mb1.sma, b"\x00")
        self.mbxfree = 1

    def claim_buffer(self) -> int:
        """Claim the highest idle outgoing buffer and prepare its header; 0 if none."""
        n = len(self.mbx_control) - 1
        while n > 0 and self.mbx_control[n]:
            n -= 1
        if n:
            self.mbx_control[n] = MailboxState.OUTCLAIM
            self.mbxcnt = (self.mbxcnt + 1) & 0x07 or 1
            header = self._header(n)
            header.address = 0
            header.channel = 0
            header.priority = 0
            header.count = self.mbxcnt
            self._store_header(n, header)
            self.txcue += 1
        return n

    def out_request_buffer(self) -> int:
        """Index of the highest buffer waiting to be posted; 0 if none."""
        n = len(self.mbx_control) - 1
        while n > 0 and self.mbx_control[n] != MailboxState.OUTREQ:
            n -= 1
        return n

    def mailbox_error(self, error: int) -> None:
        """Queue a mailbox error reply with the given detail code."""
        out = self.claim_buffer()
        if not out:
            return
        header = self._header(out)
        header.length = 4
        header.mbx_type = MailboxType.ERR
        self._store_header(out, header)
        buf = self.mbx[out]
        buf[MBX_HEADER_SIZE:MBX_HEADER_SIZE + 2] = (1).to_bytes(2, "little")
        buf[MBX_HEADER_SIZE + 2:MBX_HEADER_SIZE + 4] = (error & 0xFFFF).to_bytes(2, "little")
        self.mbx_control[out] = MailboxState.OUTREQ

    def mailbox_process(self) -> bool:
        """Send, resend and receive mailboxes; True when a protocol has work to do."""
        if not self.mbx_run:
            return False

        if self.al_event & (ALEvent.SM0 | ALEvent.SM1):
            self.sm_status(0)
            self.sm_status(1)

        # Send mailbox was read by the master.
        if self.mbxoutpost and self.al_event & ALEvent.SM1:
            self.ack_mailbox_read()
            if self.mbxbackup:
                self.mbx_control[self.mbxbackup] = MailboxState.IDLE
            if self.mbx_control[self.mbxoutpost] == MailboxState.AGAIN:
                self.write_mailbox(self.mbxoutpost)
            self.mbx_control[self.mbxoutpost] = MailboxState.BACKUP
            self.mbxbackup = self.mbxoutpost
            self.mbxoutpost = 0
            return self.xoe > 0

        # Repeat request from the master.
        if self.sm[1].ec_rep != self.toggle:
            if self.mbxoutpost or self.mbxbackup:
                if self.mbxoutpost == 0:
                    self.write_mailbox(self.mbxbackup)
                else:
                    self.sm_disable(1)
                    self.mbx_control[self.mbxoutpost] = MailboxState.AGAIN
                    self.sm_enable(1)
                    self.write_mailbox(self.mbxbackup)
                self.toggle = self.sm[1].ec_rep
                self.sm[1].pdi_rep = self.toggle & 1
                self.sm_write_pdi(1)
            return False

        if self.txcue and (self.mbxfree or not self.sm[1].mbx_stat):
            handle = self.out_request_buffer()
            if handle:
                self.write_mailbox(handle)
                self.sm_status(1)
                self.mbx_control[handle] = MailboxState.OUTPOST
                self.mbxoutpost = handle
                if self.txcue:
                    self.txcue -= 1

        if (
            self.sm[0].mbx_stat
            and self.mbx_control[0] == MailboxState.IDLE
            and self.mbxoutpost == 0
            and self.xoe == 0
        ):
            self.read_mailbox()
            self.sm[0].mbx_stat = 0
            header = self._header(0)
            if header.length == 0 or header.length > self.active_mb0.sml - MBX_HEADER_SIZE:
                self.mailbox_error(MailboxError.INVALIDHEADER)
                self.mbx_control[0] = MailboxState.IDLE
            if header.count != 0 and header.count == self.mbxincnt:
                # Same counter as the previous message: a repeated mailbox.
                self.mbx_control[0] = MailboxState.IDLE
            self.mbxincnt = header.count
            return True

        return False

    def xoe_process(self) -> None:
        """Answer a received mailbox that no protocol handler took."""
        if not self.mbx_run:
            return
        if self.xoe == 0 and self.mbx_control[0] == MailboxState.INCLAIM:
            header = self._header(0)
            if header.mbx_type == 0 or header.length == 0:
                self.mailbox_error(MailboxError.INVALIDHEADER)
            else:
                self.mailbox_error(MailboxError.UNSUPPORTEDPROTOCOL)
            self.mbx_control[0] = MailboxState.IDLE