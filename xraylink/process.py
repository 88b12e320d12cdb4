import os
import re
from enum import Enum

from PySide6.QtCore import QProcess

from xraylink.errors import ProcessError
from xraylink.events import EventHub

RX_PATTERN = re.compile(r"(?:\brx\b|\bdown(?:link)?\b)\D*(\d+)")
TX_PATTERN = re.compile(r"(?:\btx\b|\bup(?:link)?\b)\D*(\d+)")

KILL_WAIT_MS = 2000


class SupervisorState(Enum):
    IDLE = "Idle"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPED = "Stopped"
    CRASHED = "Crashed"


def parse_traffic_deltas(line):
    """Best-effort (rx, tx) byte deltas from an engine log line."""
    low = line.lower()
    rx = RX_PATTERN.search(low)
    tx = TX_PATTERN.search(low)
    return (int(rx.group(1)) if rx else 0, int(tx.group(1)) if tx else 0)


class ProcessSupervisor:
    """Owns a single xray-core subprocess.

    Events: ``started()``, ``stopped(exit_code, crashed, requested)``,
    ``error(message)``, ``log_line(line)``, ``traffic_changed(rx, tx)``.
    """

    def __init__(self):
        self.events = EventHub()
        self.state = SupervisorState.IDLE
        self.rx_bytes = 0
        self.tx_bytes = 0
        self._buffers = {"stdout": b"", "stderr": b""}
        self._stop_requested = False
        self._process = QProcess()
        self._process.readyReadStandardOutput.connect(self._on_stdout)
        self._process.readyReadStandardError.connect(self._on_stderr)
        self._process.started.connect(self._on_started)
        self._process.finished.connect(self._on_finished)
        self._process.errorOccurred.connect(self._on_error)

    def is_running(self):
        return self._process.state() != QProcess.ProcessState.NotRunning

    def start(self, executable_path, config_path, working_dir=None):
        if self.is_running():
            raise ProcessError("xray-core is already running.")
        executable_path = str(executable_path or "").strip()
        if not executable_path:
            raise ProcessError("xray-core executable path is not set.")
        if not os.path.exists(executable_path):
            raise ProcessError(f"xray-core executable not found: {executable_path}")

        self.rx_bytes = 0
        self.tx_bytes = 0
        self._buffers = {"stdout": b"", "stderr": b""}
        self._stop_requested = False
        self.events.emit("traffic_changed", self.rx_bytes, self.tx_bytes)

        self._process.setProgram(executable_path)
        self._process.setArguments(["run", "-config", config_path])
        if working_dir:
            self._process.setWorkingDirectory(working_dir)
        self.state = SupervisorState.STARTING
        self._process.start()

    def stop(self, timeout_ms=3000):
        if not self.is_running():
            return
        self._stop_requested = True
        self._process.terminate()
        if not self._process.waitForFinished(max(0, int(timeout_ms))):
            self._process.kill()
            self._process.waitForFinished(KILL_WAIT_MS)

    # ===============================
    # LOG DRAINING
    # ===============================

    def _on_stdout(self):
        self._consume("stdout", self._process.readAllStandardOutput().data())

    def _on_stderr(self):
        self._consume("stderr", self._process.readAllStandardError().data())

    def _consume(self, stream, chunk):
        # decode whole lines; a read can end inside a multibyte character
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        buffered = self._buffers[stream] + chunk
        *complete, rest = buffered.split(b"\n")
        self._buffers[stream] = rest
        for raw in complete:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                self._handle_line(line)

    def _handle_line(self, line):
        self.events.emit("log_line", line)
        rx_delta, tx_delta = parse_traffic_deltas(line)
        changed = False
        if rx_delta > 0:
            self.rx_bytes += rx_delta
            changed = True
        if tx_delta > 0:
            self.tx_bytes += tx_delta
            changed = True
        if changed:
            self.events.emit("traffic_changed", self.rx_bytes, self.tx_bytes)

    # ===============================
    # PROCESS CALLBACKS
    # ===============================

    def _on_started(self):
        self.state = SupervisorState.RUNNING
        self.events.emit("started")

    def _on_finished(self, exit_code, exit_status):
        for stream in ("stdout", "stderr"):
            if self._buffers[stream]:
                self._consume(stream, b"\n")

        requested = self._stop_requested
        crashed = exit_status == QProcess.ExitStatus.CrashExit and not requested
        self._stop_requested = False
        self.state = SupervisorState.CRASHED if crashed else SupervisorState.STOPPED
        self.events.emit("stopped", int(exit_code), crashed, requested)

    def _on_error(self, error):
        # terminate() during stop() surfaces as Crashed on POSIX
        if self._stop_requested and error == QProcess.ProcessError.Crashed:
            return
        if error == QProcess.ProcessError.FailedToStart:
            self.state = SupervisorState.CRASHED
        self.events.emit("error", self._process.errorString())
