"""Ties a held lock's keepalive to the watchdog daemon's device petting."""

from __future__ import annotations

import contextlib
import logging
import time

from .client import WdmdClient, WdmdError
from .protocol import NAME_SIZE

log = logging.getLogger(__name__)

ETCDLOCK_OK = 1
ETCDLOCK_WD_ERROR = -203

DEFAULT_USE_WATCHDOG = True
DEFAULT_WATCHDOG_FIRE_TIMEOUT = 60
DEACTIVATE_RETRY_DELAY = 0.5

ETCDLOCK_KEY_LEN = 48
ETCDLOCK_VALUE_LEN = 10


class LockWatchdogError(Exception):
    """The watchdog daemon could not be set up for a lock."""

    code = ETCDLOCK_WD_ERROR


class LockWatchdog:
    """Watchdog registration for one lock; every call is a no-op when disabled."""

    def __init__(self, use_watchdog=DEFAULT_USE_WATCHDOG,
                 watchdog_fire_timeout=DEFAULT_WATCHDOG_FIRE_TIMEOUT,
                 socket_path=None, sleep=time.sleep):
        self.use_watchdog = use_watchdog
        self.watchdog_fire_timeout = watchdog_fire_timeout
        self.socket_path = socket_path
        self._sleep = sleep
        self.connection = None

    def connect(self):
        """Open a connection to the daemon, or return None when disabled."""
        if not self.use_watchdog:
            return None
        try:
            return WdmdClient.connect(self.socket_path)
        except WdmdError as exc:
            log.error("wdmd_connect failed %s", exc)
            raise LockWatchdogError(f"wdmd_connect failed: {exc}") from exc

    def open_watchdog(self, con, fire_timeout):
        """Have the daemon arm the device and start its keepalive loop."""
        if not self.use_watchdog:
            return
        try:
            con.open_watchdog(fire_timeout)
        except WdmdError as exc:
            log.error("wdmd_open_watchdog fire_timeout %d error", fire_timeout)
            raise LockWatchdogError(
                f"wdmd_open_watchdog fire_timeout {fire_timeout} error"
            ) from exc

    @staticmethod
    def _name_for(key, value):
        raw = f"etcdlock_{key}:{value}".encode("utf-8")[: NAME_SIZE - 2]
        return raw.decode("utf-8", "ignore")

    def _abandon(self, con, clear, message, cause=None):
        log.error(message)
        if clear:
            with contextlib.suppress(WdmdError):
                con.refcount_clear()
        con.close()
        raise LockWatchdogError(message) from cause

    def activate(self, key, value, timestamp, keepalive_fail_timeout_seconds, con):
        """Register con for this lock and make pings depend on its renewals."""
        if not self.use_watchdog:
            return

        name = self._name_for(key, value)
        try:
            con.register(name)
        except WdmdError as exc:
            self._abandon(con, False, f"wdmd_register failed {exc}", exc)
        try:
            con.refcount_set()
        except WdmdError as exc:
            self._abandon(con, False, f"wdmd_refcount_set failed {exc}", exc)

        try:
            status = con.status()
        except WdmdError as exc:
            self._abandon(con, True, f"wdmd_status failed {exc}", exc)

        if status.fire_timeout != self.watchdog_fire_timeout:
            self._abandon(
                con, True,
                f"wdmd invalid fire_timeout {status.fire_timeout} "
                f"vs {self.watchdog_fire_timeout}",
            )

        try:
            con.test_live(timestamp, timestamp + keepalive_fail_timeout_seconds)
        except WdmdError as exc:
            self._abandon(con, True, f"wdmd_test_live in create failed {exc}", exc)

        self.connection = con

    def _require_connection(self):
        if self.connection is None:
            raise LockWatchdogError("watchdog is not active for this lock")
        return self.connection

    def update(self, timestamp, keepalive_fail_timeout_seconds):
        """Report a successful renewal; failures are logged, not raised."""
        if not self.use_watchdog:
            return
        con = self._require_connection()
        try:
            con.test_live(timestamp, timestamp + keepalive_fail_timeout_seconds)
        except WdmdError as exc:
            log.error("wdmd_test_live %d failed %s", timestamp, exc)

    def deactivate(self):
        """Clear the expiry so the daemon stops watching this lock."""
        if not self.use_watchdog:
            return
        con = self._require_connection()
        log.info("wdmd_test_live 0 0 to disable")
        try:
            con.test_live(0, 0)
        except WdmdError as exc:
            log.error("wdmd_test_live in deactivate failed %s", exc)
            # A failure here can lead to a reset; retry once in case it was transient.
            self._sleep(DEACTIVATE_RETRY_DELAY)
            try:
                con.test_live(0, 0)
            except WdmdError as exc2:
                log.error("wdmd_test_live in deactivate 2 failed %s", exc2)
        with contextlib.suppress(WdmdError):
            con.refcount_clear()

    def disconnect(self):
        """Close the daemon connection."""
        if not self.use_watchdog:
            return
        if self.connection is not None:
            self.connection.close()
            self.connection = None