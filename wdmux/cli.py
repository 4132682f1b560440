"""Command line entry point of the watchdog multiplexing daemon."""

from __future__ import annotations

import argparse
import contextlib
import logging
import logging.handlers
import os
import re
import socket
import sys

from .daemon import (
    DEBUG_SIZE,
    DEFAULT_HIGH_PRIORITY,
    SOCKET_GNAME,
    DaemonConfig,
    WatchdogDaemon,
    acquire_lockfile,
    create_marker,
    group_to_gid,
    remove_marker,
    setup_listener,
)
from .device import (
    ITCO_IDENTITY,
    DeviceError,
    WatchdogDevice,
    find_device,
    probe_watchdog,
    read_identity,
)
from .protocol import RUN_DIR, Command, Header, socket_address
from .scripts import DEFAULT_SCRIPTS_DIR, ScriptRunner

log = logging.getLogger("wdmux")

VERSION = "1.0.1"
WDPATH_SIZE = 64
DEFAULT_ALLOW_SCRIPTS = 0
DEFAULT_KILL_SCRIPT_SEC = 0
IN_USE_MESSAGE = "cannot probe watchdog devices while wdmd is in use."
FORCEFIRE_MESSAGE = "Use force fire (-F) with a timeout (-t)."


def _leading_int(text: str) -> int:
    """Parse the leading integer of text, 0 when there is none."""
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def build_parser() -> argparse.ArgumentParser:
    """Return the parser for the daemon's options."""
    parser = argparse.ArgumentParser(prog="wdmd", add_help=False)
    parser.add_argument("-h", "--help", action="store_true")
    parser.add_argument("-p", "--probe", action="store_true")
    parser.add_argument("-d", "--dump", action="store_true")
    parser.add_argument("-t", "--trytimeout", type=_leading_int, default=None)
    parser.add_argument("-F", "--forcefire", action="store_true")
    parser.add_argument("-V", "--version", action="store_true")
    parser.add_argument("-D", dest="debug", action="store_true")
    parser.add_argument("-H", dest="high_priority", type=_leading_int,
                        default=DEFAULT_HIGH_PRIORITY)
    parser.add_argument("-G", dest="gname", default=SOCKET_GNAME)
    parser.add_argument("-S", dest="allow_scripts", type=_leading_int,
                        default=DEFAULT_ALLOW_SCRIPTS)
    parser.add_argument("-s", dest="scripts_dir", default=DEFAULT_SCRIPTS_DIR)
    parser.add_argument("-k", dest="kill_script_sec", type=_leading_int,
                        default=DEFAULT_KILL_SCRIPT_SEC)
    parser.add_argument("-w", dest="watchdog_path", default="")
    return parser


def _usage() -> str:
    return (
        "Usage:\n"
        "wdmd [options]\n\n"
        "--version, -V          print version\n"
        "--help, -h             print usage\n"
        "--dump, -d             print debug from daemon\n"
        "--probe, -p            print path of functional watchdog device\n"
        "--trytimeout, -t <sec> set the timeout value for watchdog device\n"
        "--forcefire, -F        force watchdog to fire and reset machine, use with -t\n"
        "-D                     debug: no fork and print all logging to stderr\n"
        f"-H 0|1                 use high priority features (1 yes, 0 no, default "
        f"{DEFAULT_HIGH_PRIORITY})\n"
        "-G <name>              group ownership for the socket\n"
        f"-S 0|1                 allow script tests (default {DEFAULT_ALLOW_SCRIPTS})\n"
        f"-s <path>              path to scripts dir (default {DEFAULT_SCRIPTS_DIR})\n"
        f"-k <num>               kill unfinished scripts after num seconds (default "
        f"{DEFAULT_KILL_SCRIPT_SEC})\n"
        "-w <path>              path to the watchdog device to try first\n"
    )


def print_debug(socket_path=None, out=None) -> str:
    """Ask a running daemon for its debug dump and write it to out."""
    out = out if out is not None else sys.stdout
    target = socket_path or socket_address()
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.connect(target)
        sock.sendall(Header(cmd=Command.DUMP_DEBUG).pack())
        data = sock.recv(DEBUG_SIZE)
    text = data.split(b"\0", 1)[0].decode("utf-8", "replace")
    out.write(text)
    out.flush()
    return text


def _configure_logging(debug: bool) -> None:
    root = logging.getLogger("wdmux")
    root.handlers.clear()
    if debug:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(created)d %(asctime)s %(message)s",
                                               "%Y-%m-%d %H:%M:%S"))
        root.setLevel(logging.DEBUG)
    else:
        try:
            handler = logging.handlers.SysLogHandler(
                address="/dev/log", facility=logging.handlers.SysLogHandler.LOG_DAEMON
            )
        except OSError:
            handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("wdmd[%(process)d]: %(message)s"))
        root.setLevel(logging.INFO)
    root.addHandler(handler)


def _daemonize() -> None:
    if os.fork() > 0:
        os._exit(0)
    os.setsid()
    os.chdir("/")
    devnull = os.open(os.devnull, os.O_RDWR)
    for fd in (0, 1, 2):
        os.dup2(devnull, fd)
    if devnull > 2:
        os.close(devnull)


def _setup_priority(high_priority: int) -> None:
    if not high_priority:
        return
    try:
        policy = os.SCHED_RR
        priority = os.sched_get_priority_max(policy)
    except (AttributeError, OSError) as exc:
        log.info("could not get max scheduler priority err %s", exc)
        return
    flags = policy | getattr(os, "SCHED_RESET_ON_FORK", 0)
    try:
        os.sched_setscheduler(0, flags, os.sched_param(priority))
    except OSError as exc:
        log.info("could not set RR|RESET_ON_FORK priority %d err %s", priority, exc.errno)


def _probe(args, option_path: str, timeout: int) -> int:
    try:
        create_marker()
    except OSError:
        print(IN_USE_MESSAGE, file=sys.stderr)
        return 1
    try:
        probe_watchdog("", option_path, timeout=timeout, forcefire=args.forcefire)
    except DeviceError:
        return 1
    finally:
        remove_marker()
    return 0


def _run_daemon(args, option_path: str) -> int:
    socket_gid = group_to_gid(args.gname)
    if not args.debug:
        try:
            _daemonize()
        except OSError:
            print("cannot fork daemon", file=sys.stderr)
            return 1
    _configure_logging(args.debug)
    _setup_priority(args.high_priority)

    try:
        lock_fd = acquire_lockfile(RUN_DIR)
    except OSError:
        return 1
    lockfile_path = os.path.join(RUN_DIR, "wdmd.pid")
    try:
        try:
            create_marker()
        except OSError:
            return 1
        try:
            scripts = ScriptRunner(args.scripts_dir, args.kill_script_sec)
            if args.allow_scripts:
                scripts.setup()
            try:
                listener = setup_listener(socket_address(RUN_DIR), socket_gid)
            except OSError as exc:
                log.error("listener setup failed: %s", exc)
                return 1
            with contextlib.closing(listener):
                try:
                    path = find_device("", option_path)
                except DeviceError:
                    return 1
                identity = read_identity(path) or ""
                device = WatchdogDevice(path, identity == ITCO_IDENTITY)
                config = DaemonConfig(
                    run_dir=RUN_DIR,
                    high_priority=args.high_priority,
                    socket_gid=socket_gid,
                    allow_scripts=bool(args.allow_scripts),
                    kill_script_sec=args.kill_script_sec,
                    identity=identity,
                )
                log.info('wdmd started S%d H%d G%d using %s "%s"', args.allow_scripts,
                         args.high_priority, socket_gid, path, identity or "unknown")
                return WatchdogDaemon(config, device, scripts).serve(listener)
        finally:
            remove_marker()
    finally:
        with contextlib.suppress(OSError):
            os.unlink(lockfile_path)
        os.close(lock_fd)


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    args, _unknown = build_parser().parse_known_args(argv)

    if args.help:
        sys.stdout.write(_usage())
        return 0
    if args.version:
        print(f"wdmd version {VERSION}")
        return 0
    if args.dump:
        try:
            print_debug()
        except OSError:
            return 1
        return 0

    do_probe = args.probe or args.trytimeout is not None
    timeout = args.trytimeout or 0
    option_path = args.watchdog_path[: WDPATH_SIZE - 1]

    if args.forcefire and not do_probe:
        print(FORCEFIRE_MESSAGE, file=sys.stderr)
        return 1

    if do_probe:
        return _probe(args, option_path, timeout)
    return _run_daemon(args, option_path)


if __name__ == "__main__":
    sys.exit(main())