"""The watchdog multiplexing daemon: client bookkeeping, tests and main loop."""

from __future__ import annotations

import contextlib
import dataclasses
import errno
import fcntl
import grp
import logging
import os
import selectors
import signal
import socket
import struct
import threading
import time
from dataclasses import dataclass

from .device import DeviceError, test_interval_for
from .protocol import HEADER_SIZE, RUN_DIR, Command, Header, socket_address

log = logging.getLogger(__name__)

DEFAULT_TEST_INTERVAL = 10
RECOVER_TEST_INTERVAL = 1
DEFAULT_FIRE_TIMEOUT = 60
DEFAULT_HIGH_PRIORITY = 0
DEFAULT_SOCKET_GID = 0
SOCKET_GNAME = "etcdlock_manager"
SOCKET_MODE = 0o660
LOCKFILE_NAME = "wdmd.pid"
DEFAULT_MARKER_PATH = "/dev/shm/wdmd"
DEBUG_SIZE = 1024 * 1024

_LINE_LIMIT = 255
_NAME_SHOWN = 64
_PEERCRED = struct.Struct("3i")


def _monotime() -> int:
    return int(time.monotonic())


@dataclass
class DaemonConfig:
    """Settings the daemon runs with."""

    run_dir: str = RUN_DIR
    socket_path: str | None = None
    fire_timeout: int = DEFAULT_FIRE_TIMEOUT
    high_priority: int = DEFAULT_HIGH_PRIORITY
    socket_gid: int = DEFAULT_SOCKET_GID
    allow_scripts: bool = False
    kill_script_sec: int = 0
    identity: str = ""
    marker_path: str = DEFAULT_MARKER_PATH

    def __post_init__(self) -> None:
        if not self.socket_path:
            self.socket_path = socket_address(self.run_dir)


@dataclass(eq=False)
class ClientEntry:
    """One connection (or internal file) watched by the daemon."""

    index: int
    sock: socket.socket | None
    internal: bool = False
    name: str = ""
    pid: int = 0
    pid_dead: bool = False
    refcount: bool = False
    renewal: int = 0
    expire: int = 0

    def fileno(self) -> int:
        if self.sock is None:
            return -1
        return self.sock.fileno()


def _peer_pid(sock: socket.socket | None) -> int:
    if sock is None:
        raise OSError(errno.EBADF, "connection is closed")
    creds = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _PEERCRED.size)
    return _PEERCRED.unpack(creds)[0]


class WatchdogDaemon:
    """Pets the watchdog device for as long as every client stays live."""

    def __init__(self, config=None, device=None, scripts=None, clock=_monotime):
        self.config = config if config is not None else DaemonConfig()
        self.device = device
        self.scripts = scripts
        self.clock = clock
        self.clients: list[ClientEntry | None] = []
        self.fire_timeout = self.config.fire_timeout
        self.standard_test_interval = DEFAULT_TEST_INTERVAL
        self.test_interval = DEFAULT_TEST_INTERVAL
        self.test_loop_enable = False
        self.resetting = False
        self.test_time = 0
        self.quit = False
        self._selector: selectors.BaseSelector | None = None
        self._wake: socket.socket | None = None

    # -- device timestamps -------------------------------------------------

    @property
    def last_keepalive(self) -> int:
        return self.device.last_keepalive if self.device is not None else 0

    @property
    def last_closeunclean(self) -> int:
        return self.device.last_closeunclean if self.device is not None else 0

    # -- clients -----------------------------------------------------------

    def _used(self):
        return [entry for entry in self.clients if entry is not None]

    def add_client(self, sock, internal=False, name=""):
        """Track sock in the first free slot and return its entry."""
        index = next((i for i, e in enumerate(self.clients) if e is None), len(self.clients))
        entry = ClientEntry(index, sock, internal, name)
        if index == len(self.clients):
            self.clients.append(entry)
        else:
            self.clients[index] = entry
        if self._selector is not None and sock is not None:
            self._selector.register(sock, selectors.EVENT_READ, entry)
        return entry

    def _forget(self, sock) -> None:
        if sock is None:
            return
        if self._selector is not None:
            with contextlib.suppress(KeyError, ValueError):
                self._selector.unregister(sock)
        with contextlib.suppress(OSError):
            sock.close()

    def client_dead(self, entry):
        """Close a client; one with an expiry stays monitored until it expires."""
        if not entry.expire:
            log.debug("client_pid_dead ci %d", entry.index)
            self._forget(entry.sock)
            entry.sock = None
            if self.clients[entry.index] is entry:
                self.clients[entry.index] = None
            return
        log.error("client dead ci %d fd %d pid %d renewal %d expire %d %s",
                  entry.index, entry.fileno(), entry.pid, entry.renewal,
                  entry.expire, entry.name)
        self._forget(entry.sock)
        entry.sock = None
        entry.pid_dead = True

    def _reply(self, entry, data: bytes) -> None:
        if entry.sock is None:
            return
        with contextlib.suppress(OSError):
            entry.sock.sendall(data)

    def handle_header(self, entry, header):
        """Act on one request; return the reply header sent, if any."""
        cmd = header.cmd
        if cmd == Command.REGISTER:
            try:
                pid = _peer_pid(entry.sock)
            except OSError:
                self.client_dead(entry)
                return None
            entry.pid = pid
            entry.name = header.name
            log.debug("register ci %d fd %d pid %d %s", entry.index, entry.fileno(),
                      pid, entry.name)
        elif cmd == Command.REFCOUNT_SET:
            entry.refcount = True
        elif cmd == Command.REFCOUNT_CLEAR:
            entry.refcount = False
        elif cmd == Command.OPEN_WATCHDOG:
            reply = dataclasses.replace(header)
            try:
                reply.fire_timeout = self.open_watchdog(header.fire_timeout)
            except DeviceError as exc:
                log.error("open_watchdog failed: %s", exc)
                reply.fire_timeout = 0
            log.debug("open_watchdog fire_timeout %d result %d",
                      header.fire_timeout, self.fire_timeout)
            self._reply(entry, reply.pack())
            return reply
        elif cmd == Command.TEST_LIVE:
            entry.renewal = header.renewal_time
            entry.expire = header.expire_time
            log.debug("test_live ci %d renewal %d expire %d", entry.index,
                      entry.renewal, entry.expire)
        elif cmd == Command.STATUS:
            reply = dataclasses.replace(
                header,
                test_interval=self.test_interval,
                fire_timeout=self.fire_timeout,
                last_keepalive=self.last_keepalive,
            )
            self._reply(entry, reply.pack())
            return reply
        elif cmd == Command.DUMP_DEBUG:
            entry.name = "dump"
            self._reply(entry, self.dump_debug().encode("utf-8"))
        return None

    def open_watchdog(self, fire_timeout):
        """Arm the device with fire_timeout and start the test loop."""
        if self.test_loop_enable:
            return self.fire_timeout
        if not fire_timeout:
            raise DeviceError("no fire timeout requested")
        if self.device is None:
            raise DeviceError("no watchdog device")
        actual = self.device.arm(fire_timeout)
        self.fire_timeout = actual
        self.standard_test_interval = test_interval_for(actual)
        self.test_interval = self.standard_test_interval
        self.test_loop_enable = True
        return actual

    # -- tests -------------------------------------------------------------

    def test_clients(self):
        """Return how many clients are expired or about to expire."""
        now = self.clock()
        failures = 0
        for entry in self._used():
            if not entry.expire:
                continue
            last_ping = max(self.last_keepalive, self.last_closeunclean)
            if now >= entry.expire:
                log.error("test failed rem %d now %d ping %d close %d renewal %d "
                          "expire %d client %d %s",
                          self.fire_timeout - (now - last_ping), now,
                          self.last_keepalive, self.last_closeunclean,
                          entry.renewal, entry.expire, entry.pid, entry.name)
                failures += 1
                continue
            # Fail one interval early so the ping caused by closing the
            # device lands before the expiry, not after it.
            if (entry.expire >= self.standard_test_interval
                    and now >= entry.expire - self.standard_test_interval):
                log.error("test warning now %d ping %d close %d renewal %d "
                          "expire %d client %d %s",
                          now, self.last_keepalive, self.last_closeunclean,
                          entry.renewal, entry.expire, entry.pid, entry.name)
                failures += 1
        return failures

    def count_clients(self):
        """Return (clients holding a refcount, clients that are not internal)."""
        used = self._used()
        active = sum(1 for entry in used if entry.refcount)
        external = sum(1 for entry in used if not entry.internal)
        return active, external

    def active_clients(self):
        """Return whether any client holds a refcount."""
        return any(entry.refcount for entry in self._used())

    def dump_debug(self):
        """Return the daemon's state as text, one line per item."""
        now = self.clock()
        head = (
            f"wdmd {os.getpid()} socket_gid {self.config.socket_gid} "
            f"high_priority {self.config.high_priority} now {now} "
            f"last_keepalive {self.last_keepalive} "
            f"last_closeunclean {self.last_closeunclean} "
            f"allow_scripts {int(bool(self.config.allow_scripts))} "
            f"kill_script_sec {self.config.kill_script_sec} "
            f"fire_timeout {self.fire_timeout} identity \"{self.config.identity}\"\n"
        )[:_LINE_LIMIT]
        body = list(self.scripts.describe(now)) if self.scripts is not None else []
        for entry in self._used():
            line = (
                f"client {entry.index} name {entry.name[:_NAME_SHOWN]} pid {entry.pid} "
                f"fd {entry.fileno()} dead {int(entry.pid_dead)} "
                f"ref {int(entry.refcount)} now {now} renewal {entry.renewal} "
                f"expire {entry.expire}\n"
            )
            body.append(line[:_LINE_LIMIT])

        lines = [head]
        total = len(head)
        for line in body:
            if total + len(line) >= DEBUG_SIZE - 1:
                break
            lines.append(line)
            total += len(line)
        return "".join(lines)

    def _pet(self) -> None:
        with contextlib.suppress(DeviceError):
            self.device.keepalive()

    def run_tests(self):
        """Run one test cycle, then pet or abandon the device; return failures."""
        self.test_time = self.clock()
        log.debug("test_time %d", self.test_time)
        failures = 0
        if self.scripts is not None and self.config.allow_scripts:
            failures += self.scripts.run_cycle(self.standard_test_interval)
        failures += self.test_clients()

        if not failures:
            if self.device.fd is None:
                with contextlib.suppress(DeviceError):
                    self.device.open()
                self._pet()
                log.error("%s reopen", self.device.path)
            else:
                self._pet()
            self.test_interval = self.standard_test_interval
            self.resetting = False
        else:
            self.device.close_unclean()
            self.test_interval = RECOVER_TEST_INTERVAL
            self.resetting = True
        return failures

    # -- main loop ---------------------------------------------------------

    def _wakeup(self) -> None:
        if self._wake is not None:
            with contextlib.suppress(OSError):
                self._wake.send(b"\0")

    def request_quit(self):
        """Ask the loop to stop; refused while a client holds a refcount."""
        if not self.active_clients():
            self.quit = True
        self._wakeup()
        return self.quit

    def _reload_scripts(self) -> None:
        if self.scripts is not None and self.config.allow_scripts:
            self.scripts.setup()

    def _install_signal_handlers(self) -> dict:
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, lambda *_: self.request_quit())
        previous[signal.SIGHUP] = signal.signal(signal.SIGHUP,
                                                lambda *_: self._reload_scripts())
        return previous

    def _accept(self, listener) -> None:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        conn.setblocking(True)
        with contextlib.suppress(OSError, AttributeError):
            conn.setsockopt(socket.SOL_SOCKET, socket.SO_PASSCRED, 1)
        self.add_client(conn)

    @staticmethod
    def _drain(sock) -> None:
        with contextlib.suppress(OSError):
            while sock.recv(64):
                pass

    def _process_connection(self, entry) -> None:
        try:
            data = entry.sock.recv(HEADER_SIZE, socket.MSG_WAITALL)
        except OSError as exc:
            log.error("ci %d recv error %s", entry.index, exc.errno)
            self.client_dead(entry)
            return
        if not data:
            self.client_dead(entry)
            return
        if len(data) != HEADER_SIZE:
            log.error("ci %d recv size %d", entry.index, len(data))
            self.client_dead(entry)
            return
        self.handle_header(entry, Header.unpack(data))

    def _loop(self, listener, listener_entry, wake_entry) -> None:
        poll_timeout: float = self.test_interval
        self.test_time = 0
        while True:
            for key, _ in self._selector.select(poll_timeout):
                entry = key.data
                if entry is listener_entry:
                    self._accept(listener)
                elif entry is wake_entry:
                    self._drain(entry.sock)
                elif entry.sock is not None:
                    self._process_connection(entry)

            active, external = self.count_clients()
            if self.quit and not active:
                break
            if not self.test_loop_enable:
                continue

            # While recovering, the device was closed uncleanly and must be
            # reopened and petted again before it may be closed cleanly.
            if not active and not external and not self.resetting:
                log.debug("close watchdog unused")
                self.device.close()
                self.test_loop_enable = False
                self.test_interval = self.standard_test_interval
                poll_timeout = self.test_interval
                self.test_time = 0
                continue

            if self.clock() - self.test_time >= self.test_interval:
                self.run_tests()

            sleep_seconds = self.test_time + self.test_interval - self.clock()
            poll_timeout = sleep_seconds if sleep_seconds > 0 else 0.5
            log.debug("test_interval %d sleep_seconds %d poll_timeout %s",
                      self.test_interval, sleep_seconds, poll_timeout)

    def serve(self, listener):
        """Serve clients on listener until asked to quit, then disarm the device."""
        selector = selectors.DefaultSelector()
        wake_r, wake_w = socket.socketpair()
        wake_r.setblocking(False)
        wake_w.setblocking(False)
        self._selector = selector
        self._wake = wake_w
        listener_entry = self.add_client(listener, True, "listen")
        wake_entry = self.add_client(wake_r, True, "signal")
        previous = self._install_signal_handlers()
        try:
            self._loop(listener, listener_entry, wake_entry)
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            self._selector = None
            self._wake = None
            for entry in (listener_entry, wake_entry):
                if self.clients[entry.index] is entry:
                    self.clients[entry.index] = None
            selector.close()
            wake_r.close()
            wake_w.close()
        if self.device is not None:
            self.device.close()
        return 0


def setup_listener(path, gid=DEFAULT_SOCKET_GID):
    """Create the daemon's listening socket at path, group gid, mode 0660."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)
        sock.bind(path)
        sock.listen(5)
        os.chmod(path, SOCKET_MODE)
        os.chown(path, -1, gid)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def acquire_lockfile(run_dir=RUN_DIR):
    """Create run_dir, lock its pid file and write our pid; return the fd."""
    old_umask = os.umask(0o022)
    try:
        os.mkdir(run_dir, 0o775)
    except FileExistsError:
        pass
    finally:
        os.umask(old_umask)

    path = os.path.join(run_dir, LOCKFILE_NAME)
    try:
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_CLOEXEC, 0o644)
    except OSError as exc:
        log.error("lockfile open error %s: %s", path, exc.strerror)
        raise
    try:
        try:
            fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            log.error("daemon already running (lockfile %s %s)", path, exc.errno)
            raise OSError(exc.errno, f"daemon already running (lockfile {path})") from exc
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("ascii"))
    except OSError:
        os.close(fd)
        raise
    return fd


def create_marker(path=DEFAULT_MARKER_PATH):
    """Create the marker that outlives an unclean exit but not a reboot."""
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o644)
    except OSError as exc:
        log.error("other wdmd not cleanly stopped, marker error %s", exc.errno)
        raise
    os.close(fd)


def remove_marker(path=DEFAULT_MARKER_PATH):
    """Remove the marker created at startup."""
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)


def group_to_gid(name):
    """Return the gid of group name, or the default gid if it does not exist."""
    try:
        return grp.getgrnam(name).gr_gid
    except KeyError:
        log.info("group '%s' not found, using socket gid: %d", name, DEFAULT_SOCKET_GID)
        return DEFAULT_SOCKET_GID