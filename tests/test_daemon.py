import grp
import os
import socket
import stat
import threading

import pytest

from wdmux import device as devmod
from wdmux.client import WdmdClient
from wdmux.daemon import (
    DEFAULT_FIRE_TIMEOUT,
    DEFAULT_SOCKET_GID,
    DEFAULT_TEST_INTERVAL,
    LOCKFILE_NAME,
    RECOVER_TEST_INTERVAL,
    SOCKET_MODE,
    ClientEntry,
    DaemonConfig,
    WatchdogDaemon,
    acquire_lockfile,
    create_marker,
    group_to_gid,
    remove_marker,
    setup_listener,
)
from wdmux.device import DeviceError
from wdmux.protocol import HEADER_SIZE, Command, Header, socket_address
from wdmux.scripts import ScriptRunner


class FakeClock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


class FakeDevice:
    def __init__(self, accept=True):
        self.path = "/dev/fake-watchdog"
        self.fd = None
        self.last_keepalive = 0
        self.last_closeunclean = 0
        self.accept = accept
        self.arms = []
        self.keepalives = 0
        self.unclean = 0
        self.opens = 0

    def arm(self, fire_timeout):
        self.arms.append(fire_timeout)
        if not self.accept or not fire_timeout:
            raise DeviceError("refused")
        self.open()
        self.keepalive()
        return fire_timeout

    def open(self):
        self.opens += 1
        self.fd = 42

    def close(self):
        was_open = self.fd is not None
        self.fd = None
        return was_open

    def close_unclean(self):
        if self.fd is not None:
            self.fd = None
            self.unclean += 1

    def keepalive(self):
        self.keepalives += 1


def make_daemon(accept=True, scripts=None, config=None):
    clock = FakeClock()
    dev = FakeDevice(accept)
    daemon = WatchdogDaemon(config or DaemonConfig(), dev, scripts, clock)
    return daemon, dev, clock


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    yield a, b
    a.close()
    b.close()


def read_reply(sock):
    return Header.unpack(sock.recv(HEADER_SIZE, socket.MSG_WAITALL))


def test_config_defaults_socket_path():
    config = DaemonConfig(run_dir="/tmp/somewhere")
    assert config.socket_path == socket_address("/tmp/somewhere")
    assert config.fire_timeout == DEFAULT_FIRE_TIMEOUT


def test_add_client_reuses_freed_slot():
    daemon, _, _ = make_daemon()
    first = daemon.add_client(None, name="a")
    second = daemon.add_client(None, name="b")
    assert second.index == first.index + 1
    daemon.client_dead(first)
    assert daemon.clients[first.index] is None
    third = daemon.add_client(None, name="c")
    assert third.index == first.index
    assert daemon.clients[third.index] is third


def test_register_records_peer_pid_and_name(pair):
    a, _ = pair
    daemon, _, _ = make_daemon()
    entry = daemon.add_client(a)
    assert daemon.handle_header(entry, Header(cmd=Command.REGISTER, name="lock_a")) is None
    assert entry.pid == os.getpid()
    assert entry.name == "lock_a"


def test_register_on_closed_connection_drops_client():
    daemon, _, _ = make_daemon()
    entry = daemon.add_client(None)
    assert daemon.handle_header(entry, Header(cmd=Command.REGISTER, name="x")) is None
    assert daemon.clients[entry.index] is None


def test_refcount_set_and_clear():
    daemon, _, _ = make_daemon()
    entry = daemon.add_client(None)
    daemon.handle_header(entry, Header(cmd=Command.REFCOUNT_SET))
    assert daemon.active_clients() is True
    assert daemon.count_clients() == (1, 1)
    daemon.handle_header(entry, Header(cmd=Command.REFCOUNT_CLEAR))
    assert daemon.active_clients() is False


def test_test_live_sets_times():
    daemon, _, _ = make_daemon()
    entry = daemon.add_client(None)
    daemon.handle_header(entry, Header(cmd=Command.TEST_LIVE, renewal_time=500, expire_time=540))
    assert (entry.renewal, entry.expire) == (500, 540)


def test_status_reply(pair):
    a, b = pair
    daemon, dev, _ = make_daemon()
    dev.last_keepalive = 777
    entry = daemon.add_client(a)
    sent = daemon.handle_header(entry, Header(cmd=Command.STATUS))
    reply = read_reply(b)
    assert reply == sent
    assert reply.test_interval == DEFAULT_TEST_INTERVAL
    assert reply.fire_timeout == DEFAULT_FIRE_TIMEOUT
    assert reply.last_keepalive == 777


def test_open_watchdog_success(pair):
    a, b = pair
    daemon, dev, _ = make_daemon()
    entry = daemon.add_client(a)
    daemon.handle_header(entry, Header(cmd=Command.OPEN_WATCHDOG, fire_timeout=30))
    reply = read_reply(b)
    assert reply.fire_timeout == 30
    assert daemon.fire_timeout == 30
    assert daemon.test_loop_enable is True
    assert daemon.standard_test_interval == devmod.test_interval_for(30)
    assert daemon.test_interval == daemon.standard_test_interval
    assert dev.keepalives == 1


def test_open_watchdog_failure_replies_zero(pair):
    a, b = pair
    daemon, _, _ = make_daemon(accept=False)
    entry = daemon.add_client(a)
    daemon.handle_header(entry, Header(cmd=Command.OPEN_WATCHDOG, fire_timeout=30))
    assert read_reply(b).fire_timeout == 0
    assert daemon.test_loop_enable is False


def test_open_watchdog_zero_timeout_rejected():
    daemon, _, _ = make_daemon()
    with pytest.raises(DeviceError):
        daemon.open_watchdog(0)


def test_open_watchdog_only_arms_once():
    daemon, dev, _ = make_daemon()
    assert daemon.open_watchdog(20) == 20
    assert daemon.open_watchdog(45) == 20
    assert dev.arms == [20]


def test_client_dead_with_expiry_keeps_monitoring(pair):
    a, _ = pair
    daemon, _, clock = make_daemon()
    entry = daemon.add_client(a)
    entry.expire = clock.now + 100
    daemon.client_dead(entry)
    assert daemon.clients[entry.index] is entry
    assert entry.pid_dead is True
    assert entry.sock is None
    assert a.fileno() == -1
    clock.now = entry.expire
    assert daemon.test_clients() == 1


def test_test_clients_windows():
    daemon, _, clock = make_daemon()
    entry = daemon.add_client(None)
    assert daemon.test_clients() == 0
    entry.expire = clock.now + daemon.standard_test_interval + 50
    assert daemon.test_clients() == 0
    clock.now = entry.expire - 1
    assert daemon.test_clients() == 1
    clock.now = entry.expire + 5
    assert daemon.test_clients() == 1


def test_count_clients_internal_and_refcount():
    daemon, _, _ = make_daemon()
    daemon.add_client(None, internal=True, name="listen")
    ext = daemon.add_client(None)
    ext.refcount = True
    daemon.add_client(None)
    assert daemon.count_clients() == (1, 2)


def test_run_tests_recovery_and_reopen():
    daemon, dev, clock = make_daemon()
    daemon.open_watchdog(DEFAULT_FIRE_TIMEOUT)
    entry = daemon.add_client(None)
    entry.expire = clock.now

    assert daemon.run_tests() == 1
    assert dev.unclean == 1
    assert dev.fd is None
    assert daemon.test_interval == RECOVER_TEST_INTERVAL
    assert daemon.resetting is True
    assert daemon.test_time == clock.now

    entry.expire = 0
    pets_before = dev.keepalives
    assert daemon.run_tests() == 0
    assert dev.fd is not None
    assert dev.keepalives == pets_before + 1
    assert daemon.test_interval == daemon.standard_test_interval
    assert daemon.resetting is False


def test_request_quit_refused_with_refcount():
    daemon, _, _ = make_daemon()
    entry = daemon.add_client(None)
    entry.refcount = True
    assert daemon.request_quit() is False
    entry.refcount = False
    assert daemon.request_quit() is True
    assert daemon.quit is True


def test_dump_debug_lines(tmp_path):
    runner = ScriptRunner(str(tmp_path))
    runner.add("check")
    daemon, _, clock = make_daemon(scripts=runner)
    daemon.add_client(None, name="alpha")
    text = daemon.dump_debug()
    lines = text.splitlines(keepends=True)
    assert lines[0].startswith(f"wdmd {os.getpid()} socket_gid {DEFAULT_SOCKET_GID} ")
    assert any(line.startswith("script 0 name check ") for line in lines)
    assert any(line.startswith("client 0 name alpha pid 0 fd -1 ") for line in lines)
    assert all(line.endswith("\n") and len(line) <= 255 for line in lines)
    assert f"now {clock.now}" in lines[0]


def test_dump_debug_command_sends_text(pair):
    a, b = pair
    daemon, _, _ = make_daemon()
    entry = daemon.add_client(a)
    daemon.handle_header(entry, Header(cmd=Command.DUMP_DEBUG))
    text = b.recv(65536).decode()
    assert entry.name == "dump"
    assert text.startswith(f"wdmd {os.getpid()} ")
    assert "name dump" in text


def test_group_to_gid():
    assert group_to_gid("no-such-group-for-wdmux-tests") == DEFAULT_SOCKET_GID
    known = grp.getgrall()[0]
    assert group_to_gid(known.gr_name) == known.gr_gid


def test_marker_exclusive(tmp_path):
    path = str(tmp_path / "marker")
    create_marker(path)
    with pytest.raises(FileExistsError):
        create_marker(path)
    remove_marker(path)
    assert not os.path.exists(path)
    create_marker(path)
    assert os.path.exists(path)
    remove_marker(path)
    remove_marker(path)


def test_acquire_lockfile_writes_pid(tmp_path):
    run_dir = tmp_path / "run"
    fd = acquire_lockfile(str(run_dir))
    try:
        content = (run_dir / LOCKFILE_NAME).read_text()
        assert content == f"{os.getpid()}\n"
    finally:
        os.close(fd)


def test_setup_listener_mode_and_connect(tmp_path):
    path = str(tmp_path / "s")
    listener = setup_listener(path, os.getgid())
    try:
        st = os.stat(path)
        assert stat.S_IMODE(st.st_mode) == SOCKET_MODE
        assert st.st_gid == os.getgid()
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as peer:
            peer.connect(path)
            assert peer.getpeername() == path
    finally:
        listener.close()


def test_serve_end_to_end(tmp_path):
    path = str(tmp_path / "s")
    dev = FakeDevice()
    daemon = WatchdogDaemon(DaemonConfig(socket_path=path), dev, None)
    listener = setup_listener(path, os.getgid())
    thread = threading.Thread(target=daemon.serve, args=(listener,), daemon=True)
    thread.start()
    try:
        with WdmdClient.connect(path) as client:
            client.register("tester")
            status = client.status()
            assert status.fire_timeout == DEFAULT_FIRE_TIMEOUT
            assert client.open_watchdog(30) == 30
            assert client.status().fire_timeout == 30
        daemon.request_quit()
        thread.join(5)
        assert not thread.is_alive()
        assert dev.keepalives >= 1
        assert dev.fd is None
        assert isinstance(daemon.clients, list)
        assert all(e is None or e.name not in ("listen", "signal") for e in daemon.clients)
    finally:
        daemon.request_quit()
        thread.join(5)
        listener.close()


def test_client_entry_fileno_without_socket():
    entry = ClientEntry(0, None)
    assert entry.fileno() == -1