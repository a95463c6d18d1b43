import pytest

from ecslave.objects import DataType, DictObject, ObjectDictionary, ObjectEntry, ObjectType
from ecslave.registers import (
    AL_ID_REQUEST,
    ALCONTROL_ERROR_ACK,
    ALError,
    ALEvent,
    ALState,
    AppState,
    MemoryEsc,
    Register,
    SlaveConfig,
    SmResult,
    SyncManager,
    SYNC_ACT_ACTIVATED,
)
from ecslave.state import Slave


def program_sm(esc, n, psa, length, command, act_esc=1):
    esc.write(Register.SM0 + n * 8, SyncManager(psa, length, command, 0, act_esc, 0).to_bytes())


def read_u16(esc, reg):
    return int.from_bytes(esc.read(reg, 2), "little")


def program_mailbox(esc, cfg):
    for n, sm in enumerate(cfg.mailbox):
        program_sm(esc, n, sm.sma, sm.sml, sm.smc)


def program_pd(esc, cfg, sm2_len=0, sm3_len=0):
    program_sm(esc, 2, cfg.sm2.sma, sm2_len, cfg.sm2.smc)
    program_sm(esc, 3, cfg.sm3.sma, sm3_len, cfg.sm3.smc)


def request(slave, esc, control):
    esc.write(Register.ALCONTROL, int(control).to_bytes(2, "little"))
    slave.al_event = ALEvent.CONTROL
    slave.process_state()


def make(config=None, dictionary=None):
    esc = MemoryEsc()
    slave = Slave(esc, config or SlaveConfig(), dictionary)
    slave.al_status(ALState.INIT)
    program_mailbox(esc, slave.config)
    program_pd(esc, slave.config)
    return esc, slave


def to_op(slave, esc):
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.SAFEOP)
    request(slave, esc, ALState.OP)


def test_init_to_preop_starts_mailbox():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP
    assert slave.mbx_run == 1


def test_init_to_preop_bad_mailbox():
    esc, slave = make()
    program_sm(esc, 0, 0x2000, 128, slave.config.mailbox[0].smc)
    request(slave, esc, ALState.PREOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDMBXCONFIG
    assert slave.sm_test_result == SmResult.ERRSM0
    assert slave.mbx_run == 0


def test_init_to_op_is_invalid_and_ack_clears_error():
    esc, slave = make()
    request(slave, esc, ALState.OP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDSTATECHANGE
    request(slave, esc, ALState.INIT | ALCONTROL_ERROR_ACK)
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT
    assert read_u16(esc, Register.ALERROR) == ALError.NONE


def test_unacknowledged_error_stays():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    slave.al_status(ALState.PREOP | ALState.ERROR)
    request(slave, esc, ALState.SAFEOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR
    assert slave.app_state == AppState.IDLE


def test_no_control_event_does_nothing():
    esc, slave = make()
    esc.write(Register.ALCONTROL, int(ALState.PREOP).to_bytes(2, "little"))
    slave.al_event = 0
    slave.process_state()
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT
    assert slave.mbx_run == 0


def test_full_walk_to_op_and_back():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.SAFEOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.SAFEOP
    assert slave.app_state == AppState.INPUT
    request(slave, esc, ALState.OP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.OP
    assert slave.app_state & AppState.OUTPUT
    request(slave, esc, ALState.INIT)
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT
    assert slave.app_state == AppState.IDLE
    assert slave.mbx_run == 0


def test_op_to_safeop_calls_safe_output():
    calls = []
    cfg = SlaveConfig(safeoutput_override=lambda: calls.append("safe"))
    esc, slave = make(cfg)
    to_op(slave, esc)
    request(slave, esc, ALState.SAFEOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.SAFEOP
    assert slave.app_state == AppState.INPUT
    assert calls == ["safe"]


def test_op_to_boot_is_invalid():
    esc, slave = make()
    to_op(slave, esc)
    request(slave, esc, ALState.BOOT)
    assert read_u16(esc, Register.ALSTATUS) == ALState.SAFEOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDSTATECHANGE
    assert slave.app_state == AppState.INPUT


def test_preop_to_op_is_invalid():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.OP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDSTATECHANGE


def test_check_sm23_wrong_address():
    esc, slave = make()
    program_sm(esc, 2, slave.config.sm2.sma + 8, 0, slave.config.sm2.smc)
    assert slave.check_sm23(ALState.SAFEOP) == ALState.PREOP | ALState.ERROR
    assert slave.sm_test_result == SmResult.ERRSM2


def test_check_sm23_accepts_configured_layout():
    esc, slave = make()
    assert slave.check_sm23(ALState.SAFEOP) == ALState.SAFEOP


def test_start_input_failure_reports_sm():
    esc, slave = make()
    program_sm(esc, 3, slave.config.sm3.sma, 0, 0x00)
    result = slave.start_input(ALState.SAFEOP)
    assert result == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDINPUTSM
    assert slave.app_state == AppState.IDLE


def test_start_input_enables_interrupts():
    masks = []
    cfg = SlaveConfig(use_interrupt=True, esc_hw_interrupt_enable=masks.append)
    esc, slave = make(cfg)
    assert slave.start_input(ALState.SAFEOP) == ALState.SAFEOP
    assert masks == [ALEvent.SM3]


def test_start_input_with_dc_sync():
    masks = []
    cfg = SlaveConfig(
        use_interrupt=True,
        esc_hw_interrupt_enable=masks.append,
        esc_check_dc_handler=lambda: 0,
    )
    esc, slave = make(cfg)
    esc.write(Register.SYNC_ACT, bytes([SYNC_ACT_ACTIVATED]))
    slave.dcsync = 1
    assert slave.start_input(ALState.SAFEOP) == ALState.SAFEOP
    assert masks == [ALEvent.SM3 | ALEvent.DC_SYNC0]


def test_start_input_dc_without_handler_fails():
    cfg = SlaveConfig(use_interrupt=True)
    esc, slave = make(cfg)
    esc.write(Register.SYNC_ACT, bytes([SYNC_ACT_ACTIVATED]))
    assert slave.start_input(ALState.SAFEOP) == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.DCINVALIDSYNCCFG
    assert slave.app_state == AppState.IDLE


def test_stop_input_disables_interrupts():
    masks = []
    cfg = SlaveConfig(use_interrupt=True, esc_hw_interrupt_disable=masks.append)
    esc, slave = make(cfg)
    slave.app_state = AppState.INPUT
    slave.stop_input()
    assert masks == [ALEvent.DC_SYNC0 | ALEvent.SM2 | ALEvent.SM3]
    assert slave.app_state == AppState.IDLE
    assert slave.sm[2].act_pdi & 1 == 1


def test_start_and_stop_output():
    esc, slave = make()
    slave.app_state = AppState.INPUT
    assert slave.start_output(ALState.OP) == ALState.OP
    assert slave.app_state == AppState.INPUT | AppState.OUTPUT
    slave.stop_output()
    assert slave.app_state == AppState.INPUT


def test_goto_error_writes_status_and_calls_hooks():
    seen = []
    cfg = SlaveConfig(
        pre_state_change_hook=lambda a, n: seen.append(("pre", a, n)),
        post_state_change_hook=lambda a, n: seen.append(("post", a, n)),
    )
    esc, slave = make(cfg)
    slave.al_status(ALState.SAFEOP)
    target = ALState.SAFEOP | ALState.ERROR
    slave.goto_error(target, ALError.SYNCERROR)
    assert read_u16(esc, Register.ALSTATUS) == target
    assert read_u16(esc, Register.ALERROR) == ALError.SYNCERROR
    assert seen[0][0] == "pre" and seen[0][2] == ALState.SAFEOP
    assert seen[1][0] == "post" and seen[1][2] == target


def test_goto_error_ignores_op():
    esc, slave = make()
    slave.goto_error(ALState.OP, ALError.SYNCERROR)
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT
    assert read_u16(esc, Register.ALERROR) == ALError.NONE


def test_post_hook_can_change_result():
    cfg = SlaveConfig(
        post_state_change_hook=lambda a, n: (a, ALState.PREOP | ALState.ERROR)
    )
    esc, slave = make(cfg)
    request(slave, esc, ALState.PREOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR


def test_device_id_request():
    cfg = SlaveConfig(get_device_id=lambda: 0x1234)
    esc, slave = make(cfg)
    request(slave, esc, ALState.PREOP | AL_ID_REQUEST)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | AL_ID_REQUEST
    assert read_u16(esc, Register.ALERROR) == 0x1234


def test_sm_change_with_broken_mailbox_drops_to_init():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    program_sm(esc, 0, 0x2000, 128, slave.config.mailbox[0].smc)
    slave.al_event = ALEvent.SMCHANGE
    slave.sm_activation_event()
    assert read_u16(esc, Register.ALSTATUS) == ALState.INIT | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDMBXCONFIG
    assert slave.mbx_run == 0


def test_sm_change_with_broken_inputs_drops_to_preop():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.SAFEOP)
    program_sm(esc, 3, slave.config.sm3.sma, 0, 0x00)
    slave.al_event = ALEvent.SMCHANGE
    slave.sm_activation_event()
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDINPUTSM
    assert slave.app_state == AppState.IDLE


def test_sm_change_without_event_keeps_state():
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    program_sm(esc, 0, 0x2000, 128, slave.config.mailbox[0].smc)
    slave.al_event = 0
    slave.sm_activation_event()
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP
    assert slave.mbx_run == 1


def _dictionary(mapped_sub=1):
    u8 = DataType.UNSIGNED8
    return ObjectDictionary([
        DictObject(0x1600, ObjectType.RECORD, 1, "RxPDO", [
            ObjectEntry(0, u8, 8, 0x07, value=1),
            ObjectEntry(1, DataType.UNSIGNED32, 32, 0x07,
                        value=0x70000010 | (mapped_sub << 8)),
        ]),
        DictObject(0x1C12, ObjectType.ARRAY, 1, "Assign", [
            ObjectEntry(0, u8, 8, 0x07, value=1),
            ObjectEntry(1, DataType.UNSIGNED16, 16, 0x07, value=0x1600),
        ]),
        DictObject(0x1C13, ObjectType.ARRAY, 0, "Assign", [
            ObjectEntry(0, u8, 8, 0x07, value=0),
        ]),
        DictObject(0x7000, ObjectType.RECORD, 1, "Outputs", [
            ObjectEntry(0, u8, 8, 0x07, value=1),
            ObjectEntry(1, DataType.UNSIGNED16, 16, 0x47, data=bytearray(2)),
        ]),
    ])


def test_safeop_with_mapped_outputs():
    cfg = SlaveConfig(max_mappings_sm2=4)
    esc, slave = make(cfg, _dictionary())
    program_pd(esc, cfg, sm2_len=2)
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.SAFEOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.SAFEOP
    assert slave.sm2_sml == 2
    assert slave.sm2mappings == 1
    assert slave.sm2_map[0].offset == 0


def test_safeop_with_invalid_mapping():
    cfg = SlaveConfig(max_mappings_sm2=4)
    esc, slave = make(cfg, _dictionary(mapped_sub=9))
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.SAFEOP)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDOUTPUTSM
    assert slave.sm2mappings == -1


def test_safeop_length_mismatch_rejected():
    cfg = SlaveConfig()
    esc, slave = make(cfg, _dictionary())
    request(slave, esc, ALState.PREOP)
    request(slave, esc, ALState.SAFEOP)
    assert slave.sm2mappings == 0
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDOUTPUTSM


@pytest.mark.parametrize("target", [ALState.BOOT])
def test_preop_to_boot_is_invalid(target):
    esc, slave = make()
    request(slave, esc, ALState.PREOP)
    request(slave, esc, target)
    assert read_u16(esc, Register.ALSTATUS) == ALState.PREOP | ALState.ERROR
    assert read_u16(esc, Register.ALERROR) == ALError.INVALIDSTATECHANGE