"""Periodic test scripts whose failures stop the watchdog from being pinged."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import stat
import subprocess
import time
from dataclasses import dataclass

log = logging.getLogger(__name__)

DEFAULT_SCRIPTS_DIR = "/etc/wdmd.d"
MAX_SCRIPTS = 8
_NAME_SHOWN = 64
_LINE_LIMIT = 255


def _monotime() -> int:
    return int(time.monotonic())


def is_executable_file(path: str) -> bool:
    """Return whether path is a regular file its owner may execute."""
    try:
        st = os.stat(path)
    except OSError:
        return False
    return stat.S_ISREG(st.st_mode) and bool(st.st_mode & stat.S_IXUSR)


@dataclass
class ScriptStatus:
    """Run history of one test script."""

    name: str
    start: int = 0
    pid: int = 0
    last_result: int = 0
    run_count: int = 0
    fail_count: int = 0
    good_count: int = 0
    kill_count: int = 0
    long_count: int = 0

    def summary(self) -> str:
        return (
            f"script {self.name[:_NAME_SHOWN]} last_result {self.last_result} "
            f"start {self.start} run {self.run_count} fail {self.fail_count} "
            f"good {self.good_count} kill {self.kill_count} long {self.long_count}"
        )


class ScriptRunner:
    """Runs the executables of a directory once per test cycle."""

    def __init__(self, scripts_dir: str = DEFAULT_SCRIPTS_DIR, kill_script_sec: int = 0,
                 max_scripts: int = MAX_SCRIPTS):
        self.scripts_dir = scripts_dir
        self.kill_script_sec = kill_script_sec
        self.scripts: list[ScriptStatus | None] = [None] * max_scripts
        self._procs: dict[int, subprocess.Popen] = {}

    def setup(self) -> None:
        """Add every executable in the scripts directory not already known."""
        try:
            names = sorted(os.listdir(self.scripts_dir))
        except OSError:
            return
        for name in names:
            if name.startswith("."):
                continue
            if not is_executable_file(os.path.join(self.scripts_dir, name)):
                log.debug("script %s ignore", name)
                continue
            if self.find(name) is None:
                self.add(name)

    def find(self, name: str) -> int | None:
        """Return the slot holding the script called name, if any."""
        for index, script in enumerate(self.scripts):
            if script is not None and script.name == name:
                return index
        return None

    def add(self, name: str) -> int | None:
        """Put name in the first free slot; return the slot, or None when full."""
        for index, script in enumerate(self.scripts):
            if script is None:
                log.debug("add_script %d %s", index, name)
                self.scripts[index] = ScriptStatus(name)
                return index
        log.debug("script %s no space", name)
        return None

    def _active(self):
        return [(i, s) for i, s in enumerate(self.scripts) if s is not None and s.pid]

    def _launch(self, script: ScriptStatus) -> subprocess.Popen:
        path = os.path.join(self.scripts_dir, script.name)
        if not is_executable_file(path):
            raise OSError(errno.ENOENT, f"{path} is not an executable file")
        proc = subprocess.Popen([path], stdin=subprocess.DEVNULL)
        log.debug("script %s pid %d", script.name, proc.pid)
        return proc

    def _start_due(self, begin: int, standard_test_interval: int) -> None:
        for index, script in enumerate(self.scripts):
            if script is None or script.pid:
                continue
            # After a success, wait a full standard interval before rerunning,
            # since the test interval shrinks while failures are seen.
            if not script.last_result and begin - script.start < standard_test_interval - 1:
                continue
            try:
                proc = self._launch(script)
            except OSError as exc:
                log.error("script %s removed %s", script.name, exc)
                self.scripts[index] = None
                continue
            self._procs[index] = proc
            script.pid = proc.pid
            script.start = begin
            script.run_count += 1

    def _collect(self, index: int, script: ScriptStatus) -> tuple[bool, int]:
        """Poll one script; return (still running, failures seen)."""
        proc = self._procs[index]
        result = proc.poll()
        failed = 0
        if result is None:
            still_running = True
        else:
            still_running = False
            del self._procs[index]
            if result > 0:
                log.error("script %s pid %d exit status %d", script.name, script.pid, result)
                script.fail_count += 1
                script.last_result = result
                failed = 1
            elif result == 0:
                script.good_count += 1
                script.last_result = 0
            else:
                log.error("script %s pid %d term signal %d", script.name, script.pid, -result)
                script.kill_count += 1
                script.last_result = errno.EINTR
                failed = 1
            script.pid = 0
            if failed:
                log.error(script.summary())

        if (script.pid and self.kill_script_sec
                and _monotime() - script.start >= self.kill_script_sec):
            with contextlib.suppress(OSError):
                proc.kill()
        return still_running, failed

    def run_cycle(self, standard_test_interval: int) -> int:
        """Start due scripts, wait for them, and return the number of failures."""
        begin = _monotime()
        failures = 0
        self._start_due(begin, standard_test_interval)

        while True:
            running = 0
            for index, script in self._active():
                still_running, failed = self._collect(index, script)
                running += still_running
                failures += failed
            if not running or _monotime() - begin >= standard_test_interval - 1:
                break
            time.sleep(1)

        if running:
            now = _monotime()
            for _, script in self._active():
                script.long_count += 1
                failures += 1
                log.error("script %s pid %d start %d now %d taking too long",
                          script.name, script.pid, script.start, now)
                log.error(script.summary())
        return failures

    def describe(self, now: int) -> list[str]:
        """Return one status line per known script."""
        lines = []
        for index, s in enumerate(self.scripts):
            if s is None:
                continue
            line = (
                f"script {index} name {s.name[:_NAME_SHOWN]} pid {s.pid} now {now} "
                f"start {s.start} last_result {s.last_result} run {s.run_count} "
                f"fail {s.fail_count} good {s.good_count} kill {s.kill_count} "
                f"long {s.long_count}\n"
            )
            lines.append(line[:_LINE_LIMIT])
        return lines