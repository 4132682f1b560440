"""Wire format shared by the watchdog multiplexing daemon and its clients."""

from __future__ import annotations

import os
import struct
from dataclasses import dataclass
from enum import IntEnum

NAME_SIZE = 128
RUN_DIR = "/run/wdmd"
SOCKET_NAME = "wdmd.sock"

_FORMAT = struct.Struct(f"=6I3Q{NAME_SIZE}s")
HEADER_SIZE = _FORMAT.size


class Command(IntEnum):
    """Requests a client can send to the daemon."""

    REGISTER = 1
    REFCOUNT_SET = 2
    REFCOUNT_CLEAR = 3
    TEST_LIVE = 4
    STATUS = 5
    DUMP_DEBUG = 6
    OPEN_WATCHDOG = 7


@dataclass
class Header:
    """One fixed-size message exchanged over the daemon socket."""

    cmd: int = 0
    magic: int = 0
    length: int = 0
    flags: int = 0
    test_interval: int = 0
    fire_timeout: int = 0
    last_keepalive: int = 0
    renewal_time: int = 0
    expire_time: int = 0
    name: str = ""

    def pack(self) -> bytes:
        """Encode the header into its wire representation."""
        raw_name = self.name.encode("utf-8")
        if len(raw_name) > NAME_SIZE:
            raise ValueError(f"name longer than {NAME_SIZE} bytes")
        try:
            return _FORMAT.pack(
                self.magic,
                int(self.cmd),
                self.length,
                self.flags,
                self.test_interval,
                self.fire_timeout,
                self.last_keepalive,
                self.renewal_time,
                self.expire_time,
                raw_name,
            )
        except struct.error as exc:
            raise ValueError(str(exc)) from exc

    @classmethod
    def unpack(cls, data: bytes) -> "Header":
        """Decode a header from exactly HEADER_SIZE bytes."""
        if len(data) != HEADER_SIZE:
            raise ValueError(f"header must be {HEADER_SIZE} bytes, got {len(data)}")
        (magic, cmd, length, flags, test_interval, fire_timeout,
         last_keepalive, renewal_time, expire_time, raw_name) = _FORMAT.unpack(data)
        try:
            cmd = Command(cmd)
        except ValueError:
            pass
        name = raw_name.split(b"\0", 1)[0].decode("utf-8", "replace")
        return cls(
            cmd=cmd,
            magic=magic,
            length=length,
            flags=flags,
            test_interval=test_interval,
            fire_timeout=fire_timeout,
            last_keepalive=last_keepalive,
            renewal_time=renewal_time,
            expire_time=expire_time,
            name=name,
        )


def socket_address(run_dir: str = RUN_DIR) -> str:
    """Return the path of the daemon's listening socket."""
    return os.path.join(run_dir, SOCKET_NAME)