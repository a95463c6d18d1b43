"""Application layer state machine of the slave: state changes and process data start/stop."""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional

from .mailbox import Mailbox
from .objects import RX_PDO_OBJIDX, TX_PDO_OBJIDX, Mapping, ObjectDictionary
from .registers import (
    AL_ALLBUTINITMASK,
    AL_ERRACKMASK,
    AL_ID_REQUEST,
    AL_STATEMASK,
    SYNC_ACT_ACTIVATED,
    ALError,
    ALEvent,
    ALState,
    AppState,
    Register,
    SlaveConfig,
    SmResult,
    SyncManager,
    SyncManagerConfig,
    _EscBus,
)

_PREOP_ERROR = ALState.PREOP | ALState.ERROR
_INIT_ERROR = ALState.INIT | ALState.ERROR


class _T(IntEnum):
    """Requested state in the high nibble, current state in the low nibble."""

    INIT_TO_INIT = 0x11
    INIT_TO_PREOP = 0x21
    INIT_TO_BOOT = 0x31
    INIT_TO_SAFEOP = 0x41
    INIT_TO_OP = 0x81
    PREOP_TO_INIT = 0x12
    PREOP_TO_PREOP = 0x22
    PREOP_TO_BOOT = 0x32
    PREOP_TO_SAFEOP = 0x42
    PREOP_TO_OP = 0x82
    BOOT_TO_INIT = 0x13
    BOOT_TO_PREOP = 0x23
    BOOT_TO_BOOT = 0x33
    BOOT_TO_SAFEOP = 0x43
    BOOT_TO_OP = 0x83
    SAFEOP_TO_INIT = 0x14
    SAFEOP_TO_PREOP = 0x24
    SAFEOP_TO_BOOT = 0x34
    SAFEOP_TO_SAFEOP = 0x44
    SAFEOP_TO_OP = 0x84
    OP_TO_INIT = 0x18
    OP_TO_PREOP = 0x28
    OP_TO_BOOT = 0x38
    OP_TO_SAFEOP = 0x48
    OP_TO_OP = 0x88


def _call_state_hook(hook: Any, as_: int, an: int) -> tuple[int, int]:
    """Run a state change hook; it may return a new (as, an) pair or None."""
    if hook is None:
        return as_, an
    result = hook(as_, an)
    if result is None:
        return as_, an
    new_as, new_an = result
    return int(new_as) & 0xFF, int(new_an) & 0xFF


class Slave(Mailbox):
    """Slave stack driving AL state changes requested by the master.

    State hooks are called as ``hook(as_, an)`` and may return a new
    ``(as_, an)`` pair to change the transition or the resulting state.
    ``get_device_id`` is called with no arguments and returns the device
    identification value, or None when it is not available.
    """

    def __init__(
        self,
        esc: _EscBus,
        config: Optional[SlaveConfig] = None,
        dictionary: Optional[ObjectDictionary] = None,
    ) -> None:
        super().__init__(esc, config)
        self.dictionary = dictionary
        self.sm2_map: list[Mapping] = []
        self.sm3_map: list[Mapping] = []

    # -- helpers -----------------------------------------------------------

    def _size_of_pdo(self, index: int, max_mappings: int) -> tuple[int, int, list[Mapping]]:
        if self.dictionary is None:
            return 0, 0, []
        size, mappings = self.dictionary.size_of_pdo(index, max_mappings)
        if mappings is None:
            return size, -1, []
        count = len(mappings) if max_mappings > 0 else 0
        return size, count, mappings

    def _safe_output(self) -> None:
        hook = self.config.safeoutput_override
        if hook is not None:
            hook()

    def _input_or_output_sm_error(self) -> None:
        if self.sm_test_result & SmResult.ERRSM3:
            self.al_error(ALError.INVALIDINPUTSM)
        else:
            self.al_error(ALError.INVALIDOUTPUTSM)

    def _check_pd_sm(self, sm: SyncManager, expected: SyncManagerConfig, sml: int) -> bool:
        if sm.psa != expected.sma or sm.command != expected.smc:
            return False
        if sm.length != sml:
            return False
        configured_active = expected.smact & SYNC_ACT_ACTIVATED
        master_active = sm.act_esc & SYNC_ACT_ACTIVATED
        if not configured_active and (master_active or sml > 0):
            return False
        if configured_active and not master_active and sml > 0:
            return False
        return True

    def _check_id_request(self, al_control: int, an: int) -> bool:
        if not al_control & AL_ID_REQUEST:
            return False
        state = al_control & AL_ERRACKMASK
        if state != ALState.BOOT and (
            state < ALState.SAFEOP or an == ALState.SAFEOP or an == ALState.OP
        ):
            return self._read_u16(Register.ALERROR) == ALError.NONE
        return False

    def _load_device_id(self) -> int:
        hook = self.config.get_device_id
        if hook is not None:
            device_id = hook() or 0
        else:
            device_id = self._read_u16(Register.CONF_STATION_ALIAS)
        if device_id:
            self.al_error(device_id)
            return AL_ID_REQUEST
        return 0

    # -- public operations -------------------------------------------------

    def goto_error(self, status: int, error: int) -> None:
        """Drop to an error state requested by the application, with hooks."""
        if status & ALState.OP:
            return
        an = self.current_status & AL_ERRACKMASK
        as_ = (((status & AL_ERRACKMASK) << 4) | (an & 0x0F)) & 0xFF
        as_, an = _call_state_hook(self.config.pre_state_change_hook, as_, an)
        if self.app_state & AppState.OUTPUT:
            self.stop_output()
        self.al_error(error)
        self.al_status(status)
        an = status
        _call_state_hook(self.config.post_state_change_hook, as_, an)

    def check_sm23(self, state: int) -> int:
        """Validate SM2 and SM3 against the configured layout; PREOP|ERROR on mismatch."""
        cfg = self.config
        sm2 = self._load_sm(2)
        if not self._check_pd_sm(sm2, cfg.sm2, self.sm2_sml):
            self.sm_test_result = int(SmResult.ERRSM2)
            return _PREOP_ERROR
        if cfg.sm2.sma + sm2.length * 3 > cfg.sm3.sma:
            # SM2 overlaps SM3
            self.sm_test_result = int(SmResult.ERRSM2)
            return _PREOP_ERROR
        sm3 = self._load_sm(3)
        if not self._check_pd_sm(sm3, cfg.sm3, self.sm3_sml):
            self.sm_test_result = int(SmResult.ERRSM3)
            return _PREOP_ERROR
        return state

    def start_input(self, state: int) -> int:
        """Check SM2/SM3 and start updating inputs; PREOP|ERROR on failure."""
        state = self.check_sm23(state)
        if state != _PREOP_ERROR:
            if self.sm3_sml > 0:
                self.sm_enable(3)
            self.app_state = AppState.INPUT
        else:
            self.sm_disable(2)
            self.sm_disable(3)
            self._input_or_output_sm_error()

        if not self.use_interrupt:
            return state

        if state != _PREOP_ERROR:
            dc_result = self.check_dc()
            if dc_result > 0:
                self.al_error(dc_result)
                state = _PREOP_ERROR
                self.sm_disable(2)
                self.sm_disable(3)
                self.app_state = AppState.IDLE
            else:
                enable = self.config.esc_hw_interrupt_enable
                if enable is not None:
                    mask = ALEvent.SM3 if self.sm2_sml == 0 else ALEvent.SM2
                    if self.dcsync > 0:
                        mask |= ALEvent.DC_SYNC0
                    enable(mask)
        return state

    def stop_input(self) -> None:
        """Stop updating inputs by disabling SM3 and SM2."""
        self.app_state = AppState.IDLE
        self.sm_disable(3)
        self.sm_disable(2)
        disable = self.config.esc_hw_interrupt_disable
        if self.use_interrupt and disable is not None:
            disable(ALEvent.DC_SYNC0 | ALEvent.SM2 | ALEvent.SM3)

    def start_output(self, state: int) -> int:
        """Start updating outputs by enabling SM2; the state is returned unchanged."""
        if self.sm2_sml > 0:
            self.sm_enable(2)
        self.app_state |= AppState.OUTPUT
        return state

    def stop_output(self) -> None:
        """Stop updating outputs and let the application set safe values."""
        self.app_state &= AppState.INPUT
        self.sm_disable(2)
        self._safe_output()

    def sm_activation_event(self) -> None:
        """React to a sync manager activation change reported in AL Event."""
        if not self.al_event & ALEvent.SMCHANGE:
            return
        ac = self.al_control & AL_STATEMASK
        as_ = self.current_status & AL_STATEMASK
        an = as_
        if ac & ALState.ERROR or ac == ALState.INIT:
            ac &= AL_ERRACKMASK
            an &= AL_ERRACKMASK

        if as_ & AL_ALLBUTINITMASK and as_ != ALState.BOOT and self.mbx_run:
            ax = self.check_mailbox(as_)
            ax23 = self.check_sm23(as_)
            if an & ALState.ERROR and not ac & ALState.ERROR:
                return
            if ax == _INIT_ERROR:
                if self.app_state:
                    self.stop_output()
                    self.stop_input()
                self.stop_mailbox()
                self.al_error(ALError.INVALIDMBXCONFIG)
                self.mbx_run = 0
                self.al_status(ax)
                return
            if self.app_state and ax23 == _PREOP_ERROR:
                self.stop_output()
                self.stop_input()
                self._input_or_output_sm_error()
                self.al_status(ax23)
        else:
            for n in range(8):
                self.sm_ack(n)

    def _transition(self, as_: int, ac: int, an: int) -> int:
        match as_:
            case _T.INIT_TO_INIT | _T.PREOP_TO_PREOP | _T.OP_TO_OP:
                pass
            case _T.INIT_TO_PREOP:
                self.read_address()
                an = self.start_mailbox(ac)
            case _T.INIT_TO_BOOT | _T.BOOT_TO_BOOT:
                self.read_address()
                an = self.start_boot_mailbox(ac)
            case _T.INIT_TO_SAFEOP | _T.INIT_TO_OP:
                an = _INIT_ERROR
                self.al_error(ALError.INVALIDSTATECHANGE)
            case _T.OP_TO_INIT:
                self.stop_output()
                self.stop_input()
                self.stop_mailbox()
                an = ALState.INIT
            case _T.SAFEOP_TO_INIT:
                self.stop_input()
                self.stop_mailbox()
                an = ALState.INIT
            case _T.PREOP_TO_INIT | _T.BOOT_TO_INIT:
                self.stop_mailbox()
                an = ALState.INIT
            case _T.PREOP_TO_BOOT | _T.BOOT_TO_PREOP | _T.BOOT_TO_SAFEOP | _T.BOOT_TO_OP:
                an = _PREOP_ERROR
                self.al_error(ALError.INVALIDSTATECHANGE)
            case _T.PREOP_TO_SAFEOP | _T.SAFEOP_TO_SAFEOP:
                cfg = self.config
                self.sm2_sml, self.sm2mappings, self.sm2_map = self._size_of_pdo(
                    RX_PDO_OBJIDX, cfg.max_mappings_sm2
                )
                if self.sm2mappings < 0:
                    self.al_error(ALError.INVALIDOUTPUTSM)
                    return _PREOP_ERROR
                self.sm3_sml, self.sm3mappings, self.sm3_map = self._size_of_pdo(
                    TX_PDO_OBJIDX, cfg.max_mappings_sm3
                )
                if self.sm3mappings < 0:
                    self.al_error(ALError.INVALIDINPUTSM)
                    return _PREOP_ERROR
                an = self.start_input(ac)
                if an == ac:
                    self.sm_enable(2)
            case _T.PREOP_TO_OP:
                an = _PREOP_ERROR
                self.al_error(ALError.INVALIDSTATECHANGE)
            case _T.OP_TO_PREOP:
                self.stop_output()
                self.stop_input()
                an = ALState.PREOP
            case _T.SAFEOP_TO_PREOP:
                self.stop_input()
                an = ALState.PREOP
            case _T.SAFEOP_TO_BOOT:
                an = ALState.SAFEOP | ALState.ERROR
                self.al_error(ALError.INVALIDSTATECHANGE)
            case _T.SAFEOP_TO_OP:
                an = self.start_output(ac)
            case _T.OP_TO_BOOT:
                an = ALState.SAFEOP | ALState.ERROR
                self.al_error(ALError.INVALIDSTATECHANGE)
                self.stop_output()
                # Without outputs the error is flagged through SM3.
                if self.sm2_sml == 0 and self.sm3_sml > 0:
                    self.sm_disable(3)
            case _T.OP_TO_SAFEOP:
                an = ALState.SAFEOP
                self.stop_output()
            case _:
                if an == ALState.OP:
                    self.stop_output()
                    if self.sm2_sml == 0 and self.sm3_sml > 0:
                        self.sm_disable(3)
                    an = ALState.SAFEOP
                if as_ == ALState.SAFEOP:
                    self.stop_input()
                an |= ALState.ERROR
                self.al_error(ALError.UNKNOWNSTATE)
        return int(an)

    def process_state(self) -> None:
        """Carry out a state change requested through AL Control."""
        if not self.al_event & ALEvent.CONTROL:
            return
        self.al_control = self._read_u16(Register.ALCONTROL)
        ac = self.al_control & AL_STATEMASK
        as_ = self.current_status & AL_STATEMASK
        an = as_
        if ac & ALState.ERROR or ac == ALState.INIT:
            ac &= AL_ERRACKMASK
            an &= AL_ERRACKMASK

        # An error that the master has not acknowledged stays.
        if an & ALState.ERROR and not ac & ALState.ERROR:
            return

        as_ = ((ac << 4) | (as_ & 0x0F)) & 0xFF
        as_, an = _call_state_hook(self.config.pre_state_change_hook, as_, an)
        an = self._transition(as_, ac, an)
        as_, an = _call_state_hook(self.config.post_state_change_hook, as_, an)

        if not an & ALState.ERROR and self.current_error:
            self.al_error(ALError.NONE)

        if self._check_id_request(self.al_control, an):
            an |= self._load_device_id()

        self.al_status(an)