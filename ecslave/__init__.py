"""EtherCAT slave stack: AL state machine, mailboxes, CoE object dictionary and SDO server."""

__version__ = "3.0.0"
__all__ = ["coe", "mailbox", "objects", "registers", "sdo", "state"]