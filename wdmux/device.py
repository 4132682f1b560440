"""Access to a kernel watchdog device and probing for a usable one."""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import struct
import sys
import time

log = logging.getLogger(__name__)

# ioctl requests from the kernel watchdog interface (_IOR/_IOWR on 'W' with an int).
WDIOC_KEEPALIVE = 0x80045705
WDIOC_SETTIMEOUT = 0xC0045706
WDIOC_GETTIMEOUT = 0x80045707

ITCO_IDENTITY = "iTCO_wdt"
SYSFS_WATCHDOG_ROOT = "/sys/class/watchdog"
DEFAULT_PATHS = ("/dev/watchdog0", "/dev/watchdog1", "/dev/watchdog")
IDENTITY_SIZE = 64
DISARM = b"V"
NO_DEVICE_MESSAGE = "no watchdog device, load a watchdog driver"

_INT = struct.Struct("i")


class DeviceError(Exception):
    """A watchdog device could not be opened, queried or configured."""


def _monotime() -> int:
    return int(time.monotonic())


def _time_str() -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S ")


def _stamp(out, message: str) -> None:
    print(f"{_time_str()} {message}", file=out, flush=True)


class WatchdogDevice:
    """An open (or openable) watchdog device node.

    Timeouts are always expressed in real seconds: for iTCO devices, whose
    actual firing time is twice the value the driver reports, the values
    are converted on the way in and out.
    """

    def __init__(self, path: str, itco: bool = False):
        self.path = path
        self.itco = itco
        self.fd: int | None = None
        self.last_keepalive = 0
        self.last_closeunclean = 0

    def open(self) -> None:
        """Open the device for writing; opening arms it."""
        if self.fd is not None:
            log.error("watchdog already open fd %d", self.fd)
            raise DeviceError(f"watchdog already open fd {self.fd}")
        try:
            self.fd = os.open(self.path, os.O_WRONLY | os.O_CLOEXEC)
        except OSError as exc:
            log.error("open %s error %s", self.path, exc.errno)
            raise DeviceError(f"{self.path} open error {exc.errno}") from exc

    def close(self) -> bool:
        """Disarm and close the device; return whether the disarm write worked."""
        if self.fd is None:
            log.debug("close_watchdog already closed")
            return False
        disarmed = True
        try:
            os.write(self.fd, DISARM)
        except OSError as exc:
            log.error("%s disarm write error %s", self.path, exc.errno)
            disarmed = False
        else:
            log.info("%s disarmed", self.path)
        finally:
            with contextlib.suppress(OSError):
                os.close(self.fd)
            self.fd = None
        return disarmed

    def close_unclean(self) -> None:
        """Close without disarming, leaving the device to fire."""
        if self.fd is None:
            return
        log.error("%s closed unclean", self.path)
        with contextlib.suppress(OSError):
            os.close(self.fd)
        self.fd = None
        self.last_closeunclean = _monotime()

    def _ioctl(self, request: int, value: int, what: str) -> int:
        if self.fd is None:
            raise DeviceError(f"{self.path} is not open")
        buf = bytearray(_INT.pack(value))
        try:
            fcntl.ioctl(self.fd, request, buf, True)
        except OSError as exc:
            raise DeviceError(f"{self.path} {what} error {exc.errno}") from exc
        return _INT.unpack(bytes(buf))[0]

    def keepalive(self) -> None:
        """Ping the device."""
        try:
            self._ioctl(WDIOC_KEEPALIVE, 0, "keepalive")
        finally:
            self.last_keepalive = _monotime()
            log.debug("keepalive %s", self.path)

    def get_timeout(self) -> int:
        """Return the device's firing timeout in seconds."""
        raw = self._ioctl(WDIOC_GETTIMEOUT, 0, "gettimeout")
        return raw * 2 if self.itco else raw

    def set_timeout(self, seconds: int) -> int:
        """Request a firing timeout; return the value the driver accepted."""
        raw = seconds // 2 if self.itco else seconds
        result = self._ioctl(WDIOC_SETTIMEOUT, raw, "settimeout")
        return result * 2 if self.itco else result

    def arm(self, fire_timeout: int) -> int:
        """Open the device with fire_timeout, ping it and return the timeout."""
        if not fire_timeout:
            raise DeviceError("no fire timeout requested")
        self.open()
        try:
            current = self.get_timeout()
            if current != fire_timeout:
                self.set_timeout(fire_timeout)
                current = self.get_timeout()
                if current != fire_timeout:
                    log.error("open_watchdog gettimeout value %d set %d",
                              current, fire_timeout)
                    raise DeviceError(
                        f"{self.path} gettimeout value {current} set {fire_timeout}"
                    )
        except DeviceError:
            self.close()
            raise
        log.warning("%s open with timeout %d", self.path, current)
        with contextlib.suppress(DeviceError):
            self.keepalive()
        return current


def test_interval_for(fire_timeout: int) -> int:
    """Return the interval between tests suited to a firing timeout."""
    if fire_timeout >= 60:
        return 10
    if fire_timeout >= 30:
        return 5
    if fire_timeout >= 10:
        return 2
    return 1


def read_identity(path: str, sysfs_root: str = SYSFS_WATCHDOG_ROOT) -> str | None:
    """Return the driver identity of the device at path, or None if unknown."""
    base = os.path.basename(path)
    if not base:
        return None
    identity_path = os.path.join(sysfs_root, base, "identity")
    try:
        with open(identity_path, "rb") as handle:
            data = handle.read(IDENTITY_SIZE - 1)
    except OSError:
        return None
    if not data:
        return None
    identity = data.split(b"\n", 1)[0].split(b"\0", 1)[0].decode("utf-8", "replace")
    log.debug("%s %s %s", path, identity_path, identity)
    return identity


def candidate_paths(saved_path: str = "", option_path: str = "") -> list[str]:
    """List device paths in the order they should be tried."""
    paths = []
    if saved_path:
        paths.append(saved_path)
    if option_path and option_path != saved_path:
        paths.append(option_path)
    paths.extend(p for p in DEFAULT_PATHS if p not in (saved_path, option_path))
    return paths


def find_device(saved_path: str = "", option_path: str = "") -> str:
    """Return the first device path that opens and reports a timeout."""
    for candidate in candidate_paths(saved_path, option_path):
        try:
            os.stat(candidate)
        except OSError:
            continue
        device = WatchdogDevice(candidate)
        try:
            device.open()
        except DeviceError:
            continue
        try:
            timeout = device.get_timeout()
        except DeviceError:
            log.error("%s failed to report timeout", candidate)
            continue
        finally:
            device.close()
        log.debug("%s gettimeout reported %d", candidate, timeout)
        return candidate
    log.error(NO_DEVICE_MESSAGE)
    raise DeviceError(NO_DEVICE_MESSAGE)


def probe_device(path: str, fire_timeout: int, itco: bool = False, out=None) -> str:
    """Check that path supports fire_timeout and print the path if it does."""
    out = out if out is not None else sys.stdout
    try:
        os.stat(path)
    except OSError as exc:
        raise DeviceError(f"error {exc.errno} stat {path}") from exc
    device = WatchdogDevice(path, itco)
    device.open()
    try:
        if device.get_timeout() != fire_timeout:
            if device.set_timeout(fire_timeout) != fire_timeout:
                raise DeviceError(f"invalid timeout {path}")
        print(path, file=out, flush=True)
    finally:
        if not device.close():
            log.error("probe failed to disarm %s", path)
    return path


def _try_cycle(device: WatchdogDevice, timeout: int, forcefire: bool, out, sleep) -> int:
    path = device.path
    current = device.get_timeout()
    if device.itco:
        _stamp(out, f"{path} gettimeout real {current} itco {current // 2}")
    else:
        _stamp(out, f"{path} gettimeout {current}")

    if current != timeout:
        result = device.set_timeout(timeout)
        if device.itco:
            _stamp(out, f"{path} settimeout real {timeout} itco {timeout // 2} "
                        f"result real {result} itco {result // 2}")
            if result // 2 != timeout // 2:
                raise DeviceError(
                    f"{path} settimeout real {timeout} itco {timeout // 2} failed"
                )
        else:
            _stamp(out, f"{path} settimeout {timeout} result {result}")
            if result != timeout:
                raise DeviceError(f"{path} settimeout {timeout} failed")

        current = device.get_timeout()
        if device.itco:
            _stamp(out, f"{path} gettimeout real {current} itco {current // 2}")
        else:
            _stamp(out, f"{path} gettimeout {current}")

    device.keepalive()
    _stamp(out, f"{path} keepalive fd {device.fd} result 0")

    if forcefire:
        _stamp(out, "waiting for watchdog to reset machine:")
        for elapsed in range(1, current + 5):
            sleep(1)
            if elapsed >= current + 1:
                _stamp(out, f"{elapsed} {path} failed to fire after timeout "
                            f"{current} seconds")
            else:
                _stamp(out, f"{elapsed}")
    return current


def try_timeout(path: str, timeout: int, itco: bool = False, forcefire: bool = False,
                out=None, sleep=time.sleep) -> int:
    """Try setting timeout on path, ping it, optionally wait for it to fire."""
    out = out if out is not None else sys.stdout
    try:
        os.stat(path)
    except OSError as exc:
        raise DeviceError(f"{path} stat error {exc.errno}") from exc

    device = WatchdogDevice(path, itco)
    device.open()
    fd = device.fd
    _stamp(out, f"{path} open fd {fd}")

    failure: DeviceError | None = None
    current = 0
    try:
        current = _try_cycle(device, timeout, forcefire, out, sleep)
    except DeviceError as exc:
        failure = exc

    if not device.close():
        print(f"trytimeout failed to disarm {path}", file=sys.stderr)
    _stamp(out, f"{path} disarm write V fd {fd} result {-1 if failure else 0}")
    _stamp(out, f"{path} close fd {fd} result 0")

    if failure is not None:
        raise failure
    return current


def probe_watchdog(saved_path: str = "", option_path: str = "", fire_timeout: int = 60,
                   timeout: int = 0, forcefire: bool = False, out=None) -> str:
    """Find a working device: try a timeout on it, or print its path."""
    out = out if out is not None else sys.stdout
    for candidate in candidate_paths(saved_path, option_path):
        itco = read_identity(candidate) == ITCO_IDENTITY
        try:
            if timeout:
                try_timeout(candidate, timeout, itco, forcefire, out)
            else:
                probe_device(candidate, fire_timeout, itco, out)
        except DeviceError as exc:
            print(exc, file=sys.stderr)
            continue
        return candidate
    print(NO_DEVICE_MESSAGE, file=sys.stderr)
    raise DeviceError(NO_DEVICE_MESSAGE)