import time

from PySide6.QtCore import QTimer
from PySide6.QtNetwork import QAbstractSocket, QTcpSocket

PING_TIMEOUT_MS = 3200
PING_STAGGER_MS = 140


class _PingAttempt:
    def __init__(self, owner, address, port, callback, timeout_ms):
        self._owner = owner
        self._callback = callback
        self._done = False
        self._started = time.monotonic()
        self._socket = QTcpSocket()
        self._socket.connected.connect(self._on_connected)
        self._socket.errorOccurred.connect(self._on_error)
        self._timer = QTimer()
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._on_timeout)
        owner._pending.add(self)
        self._timer.start(int(timeout_ms))
        self._socket.connectToHost(address, int(port))

    def _on_connected(self):
        self._finish(int(round((time.monotonic() - self._started) * 1000)))

    def _on_error(self, _error):
        self._finish(-1)

    def _on_timeout(self):
        self._finish(-1)

    def cancel(self):
        self._finish(None)

    def _finish(self, ping_ms):
        if self._done:
            return
        self._done = True
        self._timer.stop()
        if self._socket.state() != QAbstractSocket.SocketState.UnconnectedState:
            self._socket.abort()
        self._socket.deleteLater()
        self._owner._pending.discard(self)
        if ping_ms is not None:
            self._callback(ping_ms)


class TcpPinger:
    """Timed TCP connect probes; ``callback(ms)`` gets -1 on failure or timeout."""

    def __init__(self, timeout_ms=PING_TIMEOUT_MS):
        self.timeout_ms = timeout_ms
        self._pending = set()

    @property
    def in_flight(self):
        return len(self._pending)

    def probe(self, address, port, callback):
        return _PingAttempt(self, address, port, callback, self.timeout_ms)

    def cancel_all(self):
        for attempt in list(self._pending):
            attempt.cancel()
