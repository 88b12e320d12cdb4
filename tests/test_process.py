import sys
import textwrap
import time

import pytest
from PySide6.QtCore import QCoreApplication, QEventLoop, QProcess

from xraylink.errors import ProcessError
from xraylink.process import ProcessSupervisor, SupervisorState, parse_traffic_deltas


@pytest.fixture
def supervisor():
    sup = ProcessSupervisor()
    sup.lines = []
    sup.stopped = []
    sup.traffic = []
    sup.events.subscribe("log_line", sup.lines.append)
    sup.events.subscribe("stopped", lambda *args: sup.stopped.append(args))
    sup.events.subscribe("traffic_changed", lambda rx, tx: sup.traffic.append((rx, tx)))
    return sup


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        QCoreApplication.processEvents(QEventLoop.ProcessEventsFlag.AllEvents, 50)
        time.sleep(0.01)
    return predicate()


def _fake_engine(directory, body):
    # the supervisor runs `<exe> run -config <path>`, so python executes the file named "run"
    (directory / "run").write_text(textwrap.dedent(body), encoding="utf8")
    return sys.executable


def test_start_with_missing_binary_does_not_spawn(supervisor, tmp_path):
    with pytest.raises(ProcessError):
        supervisor.start(str(tmp_path / "no-such-xray"), str(tmp_path / "config.json"))
    assert not supervisor.is_running()
    assert supervisor.state == SupervisorState.IDLE


def test_start_without_path(supervisor):
    with pytest.raises(ProcessError, match="path is not set"):
        supervisor.start("", "config.json")


def test_stop_when_idle_is_noop(supervisor):
    supervisor.stop()
    assert supervisor.stopped == []


def test_partial_lines_are_buffered(supervisor):
    supervisor._consume("stdout", b"hello wor")
    assert supervisor.lines == []
    supervisor._consume("stdout", b"ld\n\nrx 100 tx 5\n")
    assert supervisor.lines == ["hello world", "rx 100 tx 5"]
    assert (supervisor.rx_bytes, supervisor.tx_bytes) == (100, 5)
    assert supervisor.traffic == [(100, 5)]


def test_multibyte_character_split_across_reads(supervisor):
    data = "route caf\u00e9 ok\n".encode("utf-8")
    cut = data.index("\u00e9".encode("utf-8")) + 1
    supervisor._consume("stdout", data[:cut])
    supervisor._consume("stdout", data[cut:])
    assert supervisor.lines == ["route caf\u00e9 ok"]


def test_streams_are_buffered_separately(supervisor):
    supervisor._consume("stdout", "out-")
    supervisor._consume("stderr", "err\n")
    supervisor._consume("stdout", "line\n")
    assert supervisor.lines == ["err", "out-line"]


def test_trailing_output_flushed_before_stopped(supervisor):
    order = []
    supervisor.events.subscribe("log_line", lambda line: order.append("line"))
    supervisor.events.subscribe("stopped", lambda *args: order.append("stopped"))
    supervisor._consume("stderr", "panic: boom")
    supervisor._on_finished(2, QProcess.ExitStatus.NormalExit)
    assert supervisor.lines == ["panic: boom"]
    assert order == ["line", "stopped"]
    assert supervisor.stopped == [(2, False, False)]
    assert supervisor.state == SupervisorState.STOPPED


def test_crash_exit_is_reported(supervisor):
    supervisor._on_finished(1, QProcess.ExitStatus.CrashExit)
    assert supervisor.stopped == [(1, True, False)]
    assert supervisor.state == SupervisorState.CRASHED


def test_requested_stop_is_not_a_crash(supervisor):
    supervisor._stop_requested = True
    supervisor._on_finished(15, QProcess.ExitStatus.CrashExit)
    assert supervisor.stopped == [(15, False, True)]
    assert supervisor.state == SupervisorState.STOPPED


def test_crashed_error_ignored_during_requested_stop(supervisor):
    errors = []
    supervisor.events.subscribe("error", errors.append)
    supervisor._stop_requested = True
    supervisor._on_error(QProcess.ProcessError.Crashed)
    assert errors == []


def test_parse_traffic_deltas():
    assert parse_traffic_deltas("uplink: 120 downlink: 300") == (300, 120)
    assert parse_traffic_deltas("RX=7") == (7, 0)
    assert parse_traffic_deltas("accepted tcp:example.com:443") == (0, 0)


def test_stop_after_crash_is_noop(supervisor):
    supervisor._on_finished(1, QProcess.ExitStatus.CrashExit)
    supervisor.stop()
    assert supervisor.stopped == [(1, True, False)]
    assert not supervisor.is_running()


@pytest.mark.skipif(sys.platform.startswith("win"), reason="needs POSIX signals")
def test_stop_kills_engine_that_ignores_terminate(supervisor, tmp_path):
    exe = _fake_engine(tmp_path, """
        import signal, sys, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        sys.stdout.write("ready\\n")
        sys.stdout.write("half a line")
        sys.stdout.flush()
        time.sleep(60)
    """)
    order = []
    supervisor.events.subscribe("log_line", order.append)
    supervisor.events.subscribe("stopped", lambda *args: order.append("stopped"))
    supervisor.start(exe, str(tmp_path / "config.json"), str(tmp_path))
    assert _wait_for(lambda: "ready" in supervisor.lines)
    assert supervisor.state == SupervisorState.RUNNING

    started = time.monotonic()
    supervisor.stop(timeout_ms=500)
    assert time.monotonic() - started < 5

    assert not supervisor.is_running()
    assert len(supervisor.stopped) == 1
    _, crashed, requested = supervisor.stopped[0]
    assert (crashed, requested) == (False, True)
    assert order == ["ready", "half a line", "stopped"]
    assert supervisor.state == SupervisorState.STOPPED


@pytest.mark.skipif(sys.platform.startswith("win"), reason="needs POSIX signals")
def test_engine_exit_code_reported(supervisor, tmp_path):
    exe = _fake_engine(tmp_path, """
        import sys
        sys.stderr.write("failed to load config")
        sys.stderr.flush()
        sys.exit(23)
    """)
    supervisor.start(exe, str(tmp_path / "config.json"), str(tmp_path))
    assert _wait_for(lambda: supervisor.stopped)
    assert supervisor.stopped == [(23, False, False)]
    assert supervisor.lines == ["failed to load config"]
    assert supervisor.state == SupervisorState.STOPPED
