"""Small client that registers with the daemon and reports liveness for a while."""

from __future__ import annotations

import re
import sys
import time

from .client import WdmdClient, WdmdError

CLIENT_NAME = "wdmd_client"
DEFAULT_ITERATIONS = 10
DEFAULT_INTERVAL = 10
LIVE_WINDOW = 40


def run(client, iterations=DEFAULT_ITERATIONS, interval=DEFAULT_INTERVAL,
        clock=time.time, sleep=time.sleep, out=None):
    """Register, report status, send periodic liveness, then clear the expiry."""
    out = out if out is not None else sys.stdout

    client.register(CLIENT_NAME)
    print("wdmd_register 0", file=out)

    status = client.status()
    print(
        f"wdmd_status 0 test_interval {status.test_interval} "
        f"fire_timeout {status.fire_timeout} last_keepalive {status.last_keepalive}",
        file=out,
    )

    now = 0
    for _ in range(max(1, iterations + 2)):
        sleep(interval)
        now = int(clock())
        client.test_live(now, now + LIVE_WINDOW)
        print(f"wdmd_test_live 0 {now} {now + LIVE_WINDOW}", file=out)

    client.test_live(now, 0)
    print("wdmd_test_live 0 0", file=out)
    return 0


def _leading_int(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    iterations = _leading_int(argv[0]) if argv else DEFAULT_ITERATIONS

    try:
        client = WdmdClient.connect()
    except WdmdError as exc:
        print(f"wdmd_connect -{exc.errno or 1}", file=sys.stderr)
        return 1
    print(f"wdmd_connect {client.fileno()}")

    with client:
        try:
            return run(client, iterations)
        except WdmdError as exc:
            print(f"wdmd_client: {exc}", file=sys.stderr)
            return 1


if __name__ == "__main__":
    sys.exit(main())