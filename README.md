# wdmux

`wdmux` lets several processes share one hardware watchdog device
(`/dev/watchdog*`). A daemon owns the device and pets it at a fixed
interval. Each client connects over a Unix socket and reports when it last
renewed and when it expires. When any client's expiry time is within one
test interval, the daemon closes the device without disarming it. The
daemon then runs its tests every second. If they pass again, it reopens the
device and pets it. If they do not, the machine resets on schedule.
Executable check scripts can also take part in the decision.

wdmux runs on Linux only. It uses `SO_PEERCRED`, `fcntl` and the kernel
watchdog ioctls.

## Installation

```
pip install wdmux
```

To run the tests, install with `pip install wdmux[test]` and then run `pytest`.

## The daemon

```
wdmux              # fork into the background and serve
wdmux -D           # stay in the foreground and log debug output to stderr
wdmux -p           # print the path of a working watchdog device
wdmux -t 30        # check that a device accepts a 30 second timeout, ping it, disarm it
wdmux -F -t 30     # same, then wait for the device to fire (resets the machine!)
wdmux -d           # print debug state from a running daemon
wdmux -V           # print the version
wdmux --help
```

More options:

* `-H 0|1`: when set to 1, switch the daemon to real-time round-robin scheduling.
* `-G <group>`: the group that owns the socket. The default is `etcdlock_manager`. If that group does not exist, gid 0 is used.
* `-S 0|1`: turn check scripts on or off. The default is off.
* `-s <dir>`: the scripts directory. The default is `/etc/wdmd.d`.
* `-k <sec>`: kill a script that is still running after this many seconds.
* `-w <path>`: the watchdog device to try first. After it, the daemon tries `/dev/watchdog0`, `/dev/watchdog1` and `/dev/watchdog`.

The daemon keeps its socket (`wdmd.sock`, mode 0660) and its pid file
(`wdmd.pid`) in `/run/wdmd`. It also creates a marker file,
`/dev/shm/wdmd`, which survives an unclean exit but not a reboot. If the
marker is already there, the daemon will not start and `-p`/`-t` will not
probe. The daemon opens the device only after a client asks it to. When no
clients remain, it disarms and closes the device cleanly. SIGTERM and SIGINT
stop the daemon only if no client holds a reference. SIGHUP reloads the
scripts directory.

For `iTCO_wdt` devices the driver's timeout value is only half of the real
firing time. wdmux converts between the two, so every timeout you give or
read is in real seconds.

## Check scripts

When scripts are turned on, every executable regular file in the scripts
directory is run once per test cycle. Files whose names start with `.` are
skipped, and at most 8 scripts are used. A script counts as a failure in
any of these cases:

* it exits with a non-zero status;
* it is killed by a signal;
* it is still running one second before the standard test interval ends.

Any failure stops the device from being petted. See `wdmux.scripts.ScriptRunner`.

## Client library

```python
import time
from wdmux.client import WdmdClient

with WdmdClient.connect() as client:
    client.register("my_service")
    client.open_watchdog(60)
    client.refcount_set()
    now = int(time.monotonic())
    client.test_live(now, now + 40)   # renew before now + 40
    print(client.status())            # Status(test_interval, fire_timeout, last_keepalive)
    client.test_live(0, 0)            # stop monitoring
    client.refcount_clear()
```

The daemon compares expiry times with the system monotonic clock, in whole
seconds. A failed request raises `WdmdError`, which is an `OSError`. Both
`WdmdClient.connect()` and `wdmux.protocol.socket_address()` take the
socket path or run directory as an argument, so you can point them
somewhere other than `/run/wdmd`. The wire format is defined by
`wdmux.protocol.Header` and `wdmux.protocol.Command`.

## Tying a lock to the watchdog

`wdmux.lockwatch.LockWatchdog` links the keepalive of a single lock to the
daemon through these steps:

* `connect()`
* `open_watchdog(con, fire_timeout)`
* `activate(key, value, timestamp, keepalive_fail_timeout_seconds, con)`
* `update(timestamp, keepalive_fail_timeout_seconds)` after each renewal
* `deactivate()`
* `disconnect()`

When `use_watchdog` is false, every call does nothing.

If setup or activation fails, `LockWatchdogError` is raised. If activation
fails after the reference was set, the reference is cleared first, and the
connection is closed. Failures in `update` are logged and not raised.
`deactivate` retries once after half a second.

## Demo client

```
wdmux-client [iterations]
```

The demo client connects, registers as `wdmd_client` and prints the
daemon's status. It then sleeps ten seconds, reports itself live for the
next 40 seconds and repeats this `iterations + 2` times (`iterations`
defaults to 10). At the end it clears its expiry. It does not arm the
device itself.

## What it does not do

wdmux does not acquire, hold or renew locks. `LockWatchdog` only passes
the caller's renewal times on to the daemon. The lock service must come
from somewhere else. The package also ships no service unit or init
script for starting the daemon at boot.