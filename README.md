# ecslave

An EtherCAT slave stack written in pure Python. It provides the application
layer (AL) state machine, the mailbox protocol on sync managers 0 and 1, and a
CANopen over EtherCAT (CoE) object dictionary with an SDO server and SDO
information services.

The stack accesses the EtherCAT slave controller (ESC) through any object
that has `read(address, length) -> bytes` and `write(address, data)`.
`MemoryEsc` is such an object. It keeps the whole register and process memory
space in a `bytearray`, which makes it useful for simulation and tests.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Modules

- `ecslave.registers` holds the register addresses and codes as enums:
  `Register`, `ALState`, `ALEvent`, `ALError`, `MailboxError`, `AbortCode`,
  `MailboxType`, `MailboxState`, `AppState` and `SmResult`. It also holds:
  - the wire structures `SyncManager` (`from_bytes` and `to_bytes`) and
    `MailboxHeader` (`unpack` and `pack`);
  - the configuration types `SyncManagerConfig` and `SlaveConfig`;
  - `MemoryEsc`;
  - `EscCore`, which does register access for the AL status and status code,
    the AL event and event mask registers, sync manager enable, disable, PDI
    and status, the station address, the watchdog status, SYNC activation,
    the SYNC0 and SYNC1 cycle times, and the DC check in `check_dc`.
- `ecslave.mailbox` provides `Mailbox`, a subclass of `EscCore`. It starts
  and stops the normal and bootstrap mailboxes, checks the SM0/SM1 layout,
  reads the receive mailbox into buffer 0 and claims outgoing buffers. It
  posts outgoing mailboxes, answers repeat requests and queues mailbox error
  replies. It does this through `mailbox_process` and `xoe_process`.
- `ecslave.objects` provides the object dictionary. It has `ObjectEntry`,
  `DictObject`, `ObjectDictionary` and `Mapping`, the enums `DataType`,
  `ObjectType` and `Access`, and the `SdoAbort` exception.
  `ObjectDictionary` has these methods:
  - `find_object` and `find_subindex`, which look up objects and entries;
  - `size_of_pdo`, which gives the PDO size and the mappings from 0x1C12 or
    0x1C13;
  - `max_sub` and `init_default_values`;
  - `complete_access_size`, `complete_access_upload` and
    `complete_access_download`, which serve complete access.

  The module also has `pdo_pack`, `pdo_unpack`, `bitslice_get`,
  `bitslice_set`, `read_access` and `write_access`.
- `ecslave.state` provides `Slave`, a subclass of `Mailbox`. It takes an
  optional `ObjectDictionary` and carries out the AL state changes that the
  master requests:
  - `process_state` handles requests through AL Control.
  - `sm_activation_event` handles sync manager activation changes.
  - `check_sm23`, `start_input`, `stop_input`, `start_output` and
    `stop_output` handle the process data sync managers.
  - `goto_error` drops to an error state on request of the application.

  After the change to Safe-Op, the PDO mappings are available as `sm2_map`
  (outputs) and `sm3_map` (inputs).
- `ecslave.sdo` provides `SdoServer`, a subclass of `Slave`. It serves SDO
  upload and download: expedited, normal and segmented transfers, complete
  access, and abort replies.
- `ecslave.coe` provides `CoeHandler`, a subclass of `SdoServer` and the full
  stack. Its `process` method dispatches a received CoE mailbox to the SDO
  services. It also answers Get OD List (`get_od_list` and
  `get_od_list_continue`), Get Object Description and Get Entry Description
  requests, and sends SDO information errors.

## Example

```python
from ecslave.coe import CoeHandler
from ecslave.objects import Access, DataType, DictObject, ObjectDictionary, ObjectEntry, ObjectType
from ecslave.registers import MemoryEsc, SlaveConfig

counter = ObjectEntry(0, DataType.UNSIGNED32, 32, Access.RO, "Counter", value=0, data=bytearray(4))
dictionary = ObjectDictionary([DictObject(0x2000, ObjectType.VAR, 0, "Counter", [counter])])
dictionary.init_default_values()

slave = CoeHandler(MemoryEsc(), SlaveConfig(), dictionary)

# One pass of the main loop:
slave.al_event = slave.read_event()
slave.process_state()
slave.sm_activation_event()
slave.mailbox_process()
slave.process()
slave.xoe_process()
```

Hooks are set on `SlaveConfig`:

- State change hooks are called as `hook(as_, an)` and may return a new
  `(as_, an)` pair.
- Object upload and download hooks return an SDO abort code. A result of 0
  or `None` means success.
- `get_device_id` returns the device identification value.

To exchange process data, pass the buffer and `slave.sm3_map` to `pdo_pack`,
and the buffer and `slave.sm2_map` to `pdo_unpack`.

## What the package does not do

- It has no driver for real ESC hardware. You supply the object that does
  register reads and writes.
- It has no main program or command-line tool. The application runs the loop
  itself.
- It does not emulate the ESI EEPROM.
- It has no Ethernet over EtherCAT or File over EtherCAT protocol handlers.
  Mailboxes of those types get an "unsupported protocol" mailbox error from
  `xoe_process`.