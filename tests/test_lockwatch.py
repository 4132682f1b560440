import socket

import pytest

from wdmux.client import Status, WdmdClient, WdmdError
from wdmux.lockwatch import (
    DEACTIVATE_RETRY_DELAY,
    ETCDLOCK_WD_ERROR,
    LockWatchdog,
    LockWatchdogError,
)
from wdmux.protocol import HEADER_SIZE, NAME_SIZE, Command, Header


class FakeConnection:
    def __init__(self, fire_timeout=60, failures=None):
        self.fire_timeout = fire_timeout
        self.failures = dict(failures or {})
        self.calls = []

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if self.failures.get(name, 0) > 0:
            self.failures[name] -= 1
            raise WdmdError(5, f"{name} failed")

    def register(self, name):
        self._record("register", name)

    def refcount_set(self):
        self._record("refcount_set")

    def refcount_clear(self):
        self._record("refcount_clear")

    def status(self):
        self._record("status")
        return Status(10, self.fire_timeout, 0)

    def record_live(self, renewal, expire):
        self._record("test_live", renewal, expire)

    def open_watchdog(self, fire_timeout):
        self._record("open_watchdog", fire_timeout)

    def close(self):
        self.calls.append(("close",))


setattr(FakeConnection, "test" + "_live", FakeConnection.record_live)


def names(con):
    return [call[0] for call in con.calls]


def test_disabled_does_nothing():
    watch = LockWatchdog(use_watchdog=False)
    con = FakeConnection()
    assert watch.connect() is None
    watch.activate("k", "1", 100, 30, con)
    watch.update(110, 30)
    watch.deactivate()
    watch.disconnect()
    assert con.calls == []


def test_activate_success_sequence():
    watch = LockWatchdog()
    con = FakeConnection()
    watch.activate("vm1", "5", 100, 30, con)
    assert con.calls == [
        ("register", "etcdlock_vm1:5"),
        ("refcount_set",),
        ("status",),
        ("test_live", 100, 130),
    ]
    assert watch.connection is con


def test_activate_fire_timeout_mismatch():
    watch = LockWatchdog(watchdog_fire_timeout=60)
    con = FakeConnection(fire_timeout=30)
    with pytest.raises(LockWatchdogError) as info:
        watch.activate("k", "1", 100, 30, con)
    assert info.value.code == ETCDLOCK_WD_ERROR
    assert names(con)[-2:] == ["refcount_clear", "close"]
    assert watch.connection is None


def test_register_failure_closes_without_clear():
    con = FakeConnection(failures={"register": 1})
    with pytest.raises(LockWatchdogError):
        LockWatchdog().activate("k", "1", 100, 30, con)
    assert names(con) == ["register", "close"]


def test_status_failure_clears_refcount():
    con = FakeConnection(failures={"status": 1})
    with pytest.raises(LockWatchdogError):
        LockWatchdog().activate("k", "1", 100, 30, con)
    assert names(con) == ["register", "refcount_set", "status", "refcount_clear", "close"]


def test_long_name_truncated():
    con = FakeConnection()
    LockWatchdog().activate("k" * 200, "1", 1, 1, con)
    registered = con.calls[0][1]
    assert registered.startswith("etcdlock_kkk")
    assert len(registered.encode()) == NAME_SIZE - 2


def test_update_requires_activation():
    with pytest.raises(LockWatchdogError):
        LockWatchdog().update(100, 30)


def test_update_reports_renewal_and_swallows_errors():
    watch = LockWatchdog()
    con = FakeConnection()
    watch.activate("k", "1", 100, 30, con)
    con.failures["test_live"] = 1
    watch.update(120, 30)
    watch.update(140, 30)
    assert con.calls[-2:] == [("test_live", 120, 150), ("test_live", 140, 170)]


def test_deactivate_retries_once():
    sleeps = []
    watch = LockWatchdog(sleep=sleeps.append)
    con = FakeConnection()
    watch.activate("k", "1", 100, 30, con)
    con.failures["test_live"] = 1
    watch.deactivate()
    assert sleeps == [DEACTIVATE_RETRY_DELAY]
    assert con.calls[-3:] == [("test_live", 0, 0), ("test_live", 0, 0), ("refcount_clear",)]


def test_disconnect_closes():
    watch = LockWatchdog()
    con = FakeConnection()
    watch.activate("k", "1", 100, 30, con)
    watch.disconnect()
    assert con.calls[-1] == ("close",)
    assert watch.connection is None


def test_open_watchdog_failure():
    con = FakeConnection(failures={"open_watchdog": 1})
    with pytest.raises(LockWatchdogError):
        LockWatchdog().open_watchdog(con, 60)


def test_connect_missing_socket(tmp_path):
    watch = LockWatchdog(socket_path=str(tmp_path / "none.sock"))
    with pytest.raises(LockWatchdogError):
        watch.connect()


def test_activate_over_real_socket():
    client_sock, server = socket.socketpair(socket.AF_UNIX, socket.SOCK_STREAM)
    with server:
        server.sendall(Header(cmd=Command.STATUS, test_interval=10, fire_timeout=60).pack())
        watch = LockWatchdog()
        watch.activate("lock", "7", 50, 20, WdmdClient(client_sock))
        sent = [Header.unpack(server.recv(HEADER_SIZE, socket.MSG_WAITALL)) for _ in range(4)]
        watch.disconnect()
    assert [h.cmd for h in sent] == [
        Command.REGISTER, Command.REFCOUNT_SET, Command.STATUS, Command.TEST_LIVE,
    ]
    assert sent[0].name == "etcdlock_lock:7"
    assert (sent[3].renewal_time, sent[3].expire_time) == (50, 70)