"""Client side of the watchdog multiplexing daemon protocol."""

from __future__ import annotations

import errno
import socket
from dataclasses import dataclass

from .protocol import HEADER_SIZE, NAME_SIZE, Command, Header, socket_address


class WdmdError(OSError):
    """A request to the watchdog daemon failed."""


@dataclass(frozen=True)
class Status:
    """Daemon state reported in reply to a status request."""

    test_interval: int
    fire_timeout: int
    last_keepalive: int


class WdmdClient:
    """A connection to the watchdog daemon."""

    def __init__(self, sock: socket.socket):
        self._sock = sock

    @classmethod
    def connect(cls, path: str | None = None) -> "WdmdClient":
        """Connect to the daemon socket at path (the default location if None)."""
        target = path or socket_address()
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(target)
        except OSError as exc:
            sock.close()
            raise WdmdError(exc.errno, f"cannot connect to {target}: {exc.strerror}") from exc
        return cls(sock)

    def _send(self, header: Header) -> None:
        try:
            self._sock.sendall(header.pack())
        except OSError as exc:
            raise WdmdError(exc.errno, f"send failed: {exc.strerror}") from exc

    def _receive(self) -> Header:
        buf = bytearray()
        while len(buf) < HEADER_SIZE:
            try:
                chunk = self._sock.recv(HEADER_SIZE - len(buf))
            except OSError as exc:
                raise WdmdError(exc.errno, f"receive failed: {exc.strerror}") from exc
            if not chunk:
                raise WdmdError(errno.ECONNRESET, "connection closed by daemon")
            buf.extend(chunk)
        return Header.unpack(bytes(buf))

    def register(self, name: str) -> None:
        """Tell the daemon the name of this connection."""
        if len(name.encode("utf-8")) > NAME_SIZE:
            raise WdmdError(errno.ENAMETOOLONG, f"name longer than {NAME_SIZE} bytes")
        self._send(Header(cmd=Command.REGISTER, name=name))

    def open_watchdog(self, fire_timeout: int) -> int:
        """Ask the daemon to arm the device with fire_timeout seconds."""
        self._send(Header(cmd=Command.OPEN_WATCHDOG, fire_timeout=fire_timeout))
        reply = self._receive()
        if reply.fire_timeout != fire_timeout:
            raise WdmdError(
                f"daemon fire timeout {reply.fire_timeout} does not match {fire_timeout}"
            )
        return reply.fire_timeout

    def refcount_set(self) -> None:
        """Prevent the daemon from shutting down cleanly while connected."""
        self._send(Header(cmd=Command.REFCOUNT_SET))

    def refcount_clear(self) -> None:
        """Drop the reference that keeps the daemon running."""
        self._send(Header(cmd=Command.REFCOUNT_CLEAR))

    def test_live(self, renewal_time: int, expire_time: int) -> None:
        """Report the last renewal and the time after which pings must stop."""
        self._send(
            Header(cmd=Command.TEST_LIVE, renewal_time=renewal_time, expire_time=expire_time)
        )

    def status(self) -> Status:
        """Query the daemon's test interval, fire timeout and last keepalive."""
        self._send(Header(cmd=Command.STATUS))
        reply = self._receive()
        return Status(reply.test_interval, reply.fire_timeout, reply.last_keepalive)

    def fileno(self) -> int:
        return self._sock.fileno()

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "WdmdClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()