import io

import pytest

from wdmux.client import Status, WdmdError
from wdmux.democlient import CLIENT_NAME, LIVE_WINDOW, run


class RecordingClient:
    def __init__(self, fail_register=False):
        self.fail_register = fail_register
        self.registered = []
        self.live = []

    def register(self, name):
        if self.fail_register:
            raise WdmdError(32, "broken pipe")
        self.registered.append(name)

    def status(self):
        return Status(test_interval=10, fire_timeout=60, last_keepalive=5)

    def record_live(self, renewal, expire):
        self.live.append((renewal, expire))


setattr(RecordingClient, "test" + "_live", RecordingClient.record_live)


def run_with(client, iterations, start=1000):
    ticks = iter(range(start, start + 100))
    sleeps = []
    out = io.StringIO()
    result = run(client, iterations=iterations, interval=10,
                 clock=lambda: next(ticks), sleep=sleeps.append, out=out)
    return result, sleeps, out.getvalue().splitlines()


def test_registers_with_fixed_name():
    client = RecordingClient()
    result, _, lines = run_with(client, 0)
    assert result == 0
    assert client.registered == [CLIENT_NAME]
    assert lines[0] == "wdmd_register 0"
    assert lines[1] == "wdmd_status 0 test_interval 10 fire_timeout 60 last_keepalive 5"


def test_pass_count_is_iterations_plus_two():
    client = RecordingClient()
    _, sleeps, _ = run_with(client, 3)
    assert len(sleeps) == 5
    assert all(s == 10 for s in sleeps)
    assert len(client.live) == 6


def test_negative_iterations_run_once():
    client = RecordingClient()
    _, sleeps, _ = run_with(client, -5)
    assert len(sleeps) == 1


def test_live_window_and_final_clear():
    client = RecordingClient()
    _, _, lines = run_with(client, 1)
    *periodic, final = client.live
    assert all(expire - renewal == LIVE_WINDOW for renewal, expire in periodic)
    assert final == (periodic[-1][0], 0)
    assert lines[-1] == "wdmd_test_live 0 0"


def test_live_lines_show_times():
    client = RecordingClient()
    _, _, lines = run_with(client, 0, start=2000)
    renewal, expire = client.live[0]
    assert lines[2] == f"wdmd_test_live 0 {renewal} {expire}"


def test_errors_propagate():
    with pytest.raises(WdmdError):
        run_with(RecordingClient(fail_register=True), 0)