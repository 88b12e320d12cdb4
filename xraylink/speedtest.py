import time
from dataclasses import dataclass
from enum import Enum

from PySide6.QtCore import QByteArray, QTimer, QUrl
from PySide6.QtNetwork import QNetworkAccessManager, QNetworkProxy, QNetworkReply, QNetworkRequest

from xraylink import APP_NAME, APP_VERSION
from xraylink.events import EventHub

TICK_INTERVAL_MS = 120
PING_SAMPLES = 4
MAX_ATTEMPTS_PER_PHASE = 12
HISTORY_MAX_ITEMS = 20
TRANSFER_TIMEOUT_MS = 12000
UPLOAD_PAYLOAD_BYTES = 4 * 1024 * 1024

PING_DURATION_SEC = 4
DOWNLOAD_DURATION_SEC = 10
UPLOAD_DURATION_SEC = 8

PING_URLS = (
    "https://cloudflare.com/cdn-cgi/trace",
    "https://www.google.com/generate_204",
    "https://cp.cloudflare.com/generate_204",
)
DOWNLOAD_URLS = (
    "https://speed.cloudflare.com/__down?bytes=32000000",
    "https://speed.cloudflare.com/__down?bytes=64000000",
    "https://speed.hetzner.de/100MB.bin",
)
UPLOAD_URLS = (
    "https://speed.cloudflare.com/__up",
    "https://httpbin.org/post",
)

ROUTE_TUNNEL = "tunnel"
ROUTE_DIRECT = "direct"


class SpeedTestPhase(Enum):
    IDLE = "Idle"
    PING = "Ping"
    DOWNLOAD = "Download"
    UPLOAD = "Upload"
    DONE = "Done"
    ERROR = "Error"


@dataclass
class SpeedTestState:
    running: bool = False
    phase: SpeedTestPhase = SpeedTestPhase.IDLE
    route: str = ""
    elapsed_sec: int = 0
    duration_sec: int = 0
    current_mbps: float = 0.0
    peak_mbps: float = 0.0
    ping_ms: int = -1
    download_mbps: float = 0.0
    upload_mbps: float = 0.0
    error: str = ""
    bytes_received: int = 0
    last_bytes: int = 0
    phase_bytes: int = 0
    attempt: int = 0
    ping_sample_count: int = 0
    ping_total_ms: int = 0
    upload_mode: bool = False


def mbps_from_bytes(num_bytes, elapsed_ms):
    elapsed_ms = max(1, elapsed_ms)
    return (num_bytes * 8.0 * 1000.0) / (elapsed_ms * 1024.0 * 1024.0)


def url_for_phase(phase, attempt):
    urls = {
        SpeedTestPhase.PING: PING_URLS,
        SpeedTestPhase.DOWNLOAD: DOWNLOAD_URLS,
        SpeedTestPhase.UPLOAD: UPLOAD_URLS,
    }.get(phase)
    if not urls:
        return ""
    return urls[max(0, attempt) % len(urls)]


def format_result_line(ping_ms, download_mbps, upload_mbps):
    return f"Done: ping {ping_ms} ms, down {download_mbps:.1f} Mbps, up {upload_mbps:.1f} Mbps"


# ===============================
# HTTP TRANSPORT
# ===============================

class _QtReply:
    def __init__(self, reply, on_data, on_upload_progress, on_finished):
        self._reply = reply
        self._on_data = on_data
        self._on_upload_progress = on_upload_progress
        self._on_finished = on_finished
        self._active = True
        reply.readyRead.connect(self._handle_ready_read)
        reply.uploadProgress.connect(self._handle_upload_progress)
        reply.finished.connect(self._handle_finished)

    def _handle_ready_read(self):
        if not self._active:
            return
        chunk = self._reply.readAll()
        if chunk.size() > 0:
            self._on_data(chunk.size())

    def _handle_upload_progress(self, sent, _total):
        if self._active:
            self._on_upload_progress(int(sent))

    def _handle_finished(self):
        if not self._active:
            return
        self._active = False
        error = None
        if self._reply.error() != QNetworkReply.NetworkError.NoError:
            error = self._reply.errorString()
        self._reply.deleteLater()
        self._on_finished(error)

    def abort(self):
        if not self._active:
            return
        self._active = False
        self._reply.abort()
        self._reply.deleteLater()


class QtHttpTransport:
    """QNetworkAccessManager-backed transport, optionally through the local SOCKS5 port."""

    def __init__(self, transfer_timeout_ms=TRANSFER_TIMEOUT_MS):
        self.transfer_timeout_ms = transfer_timeout_ms
        self._manager = None

    def _network_manager(self):
        if self._manager is None:
            self._manager = QNetworkAccessManager()
        return self._manager

    def set_proxy(self, socks_port):
        manager = self._network_manager()
        if socks_port:
            manager.setProxy(QNetworkProxy(QNetworkProxy.ProxyType.Socks5Proxy, "127.0.0.1", int(socks_port)))
        else:
            manager.setProxy(QNetworkProxy(QNetworkProxy.ProxyType.NoProxy))

    def start(self, url, payload, on_data, on_upload_progress, on_finished):
        request = QNetworkRequest(QUrl(url))
        request.setAttribute(
            QNetworkRequest.Attribute.RedirectPolicyAttribute,
            QNetworkRequest.RedirectPolicy.NoLessSafeRedirectPolicy,
        )
        request.setRawHeader(b"User-Agent", f"{APP_NAME}-SpeedTest/{APP_VERSION}".encode("ascii"))
        request.setRawHeader(b"Accept", b"*/*")
        request.setTransferTimeout(self.transfer_timeout_ms)

        manager = self._network_manager()
        if payload is None:
            reply = manager.get(request)
        else:
            request.setHeader(QNetworkRequest.KnownHeaders.ContentTypeHeader, "application/octet-stream")
            reply = manager.post(request, QByteArray(payload))
        return _QtReply(reply, on_data, on_upload_progress, on_finished)


# ===============================
# ENGINE
# ===============================

class SpeedTestEngine:
    """Ping, download and upload phases driven by a 120 ms tick.

    Events: ``changed(state)``, ``log(line)``.
    """

    def __init__(self, transport=None, clock=None, tick_interval_ms=TICK_INTERVAL_MS):
        self.events = EventHub()
        self.state = SpeedTestState()
        self._history = []
        self._transport = transport or QtHttpTransport()
        self._clock = clock or (lambda: int(time.monotonic() * 1000))
        self._request = None
        self._request_token = None
        self._request_started_ms = None
        self._phase_started_ms = None
        self._sample_started_ms = None
        self._timer = QTimer()
        self._timer.setInterval(tick_interval_ms)
        self._timer.timeout.connect(self._on_tick)

    @property
    def history(self):
        return list(self._history)

    @property
    def running(self):
        return self.state.running

    def _changed(self):
        self.events.emit("changed", self.state)

    def _log(self, line):
        self.events.emit("log", line)

    def start(self, proxy_port=None):
        """Run a full test; through 127.0.0.1:proxy_port when given, else direct."""
        self.cancel()
        route = ROUTE_TUNNEL if proxy_port else ROUTE_DIRECT
        self.state = SpeedTestState(running=True, duration_sec=3, route=route)
        self._phase_started_ms = None
        self._sample_started_ms = None
        self._changed()

        self._transport.set_proxy(proxy_port)
        if proxy_port:
            self._log(f"[SpeedTest] Started via VPN tunnel (SOCKS5 127.0.0.1:{proxy_port}).")
        else:
            self._log("[SpeedTest] Started via direct internet (no VPN proxy).")

        self._timer.start()
        self._start_phase(SpeedTestPhase.PING, PING_DURATION_SEC)

    def cancel(self):
        self._abort_request()
        self._timer.stop()
        if self.state.running:
            self.state.running = False
            self.state.current_mbps = 0.0
            self.state.phase = SpeedTestPhase.IDLE
            self.state.elapsed_sec = 0
            self._phase_started_ms = None
            self._sample_started_ms = None
            self._log("[SpeedTest] Canceled.")
            self._changed()

    # ===============================
    # PHASES
    # ===============================

    def _start_phase(self, phase, duration_sec):
        s = self.state
        s.phase = phase
        s.duration_sec = duration_sec
        s.elapsed_sec = 0
        s.current_mbps = 0.0
        s.peak_mbps = 0.0
        s.phase_bytes = 0
        s.last_bytes = 0
        s.bytes_received = 0
        s.attempt = 0
        if phase == SpeedTestPhase.PING:
            s.ping_sample_count = 0
            s.ping_total_ms = 0
        now = self._clock()
        self._phase_started_ms = now
        self._sample_started_ms = now
        self._changed()
        self._start_request()

    def _start_request(self):
        if not self.state.running:
            return
        self._abort_request()

        url = url_for_phase(self.state.phase, self.state.attempt)
        if not url:
            self._finish(False, "Invalid speed test endpoint.")
            return

        upload = self.state.phase == SpeedTestPhase.UPLOAD
        payload = b"x" * UPLOAD_PAYLOAD_BYTES if upload else None
        self.state.attempt += 1
        self.state.upload_mode = upload
        self._request_started_ms = self._clock()

        token = object()
        self._request_token = token
        handle = self._transport.start(
            url,
            payload,
            lambda n: self._on_data(token, n),
            lambda sent: self._on_upload_progress(token, sent),
            lambda error: self._on_finished(token, error),
        )
        if self._request_token is token:
            self._request = handle

    def _abort_request(self):
        self._request_token = None
        request, self._request = self._request, None
        if request is not None:
            request.abort()

    def _finish(self, ok, error=""):
        self._abort_request()
        self._timer.stop()
        s = self.state
        s.running = False
        s.current_mbps = max(s.download_mbps, s.upload_mbps) if ok else 0.0
        s.phase = SpeedTestPhase.DONE if ok else SpeedTestPhase.ERROR
        s.error = "" if ok else error
        self._phase_started_ms = None
        self._sample_started_ms = None
        self._changed()

        if ok:
            line = format_result_line(s.ping_ms, s.download_mbps, s.upload_mbps)
            self._history.insert(0, line)
            del self._history[HISTORY_MAX_ITEMS:]
            route = "VPN tunnel" if s.route == ROUTE_TUNNEL else "direct internet"
            self._log(f"[SpeedTest] {line} (via {route})")
        else:
            self._log(f"[SpeedTest] Failed: {error}")
        self._changed()

    # ===============================
    # CALLBACKS
    # ===============================

    def _phase_elapsed_ms(self, now=None):
        if self._phase_started_ms is None:
            return None
        return (self._clock() if now is None else now) - self._phase_started_ms

    def _on_tick(self):
        s = self.state
        if not s.running:
            return

        now = self._clock()
        phase_elapsed = self._phase_elapsed_ms(now)
        if phase_elapsed is not None:
            s.elapsed_sec = int(phase_elapsed // 1000)

        if s.phase == SpeedTestPhase.PING:
            self._changed()
            return

        sample_ms = TICK_INTERVAL_MS
        if self._sample_started_ms is not None:
            sample_ms = now - self._sample_started_ms
            self._sample_started_ms = now
        if sample_ms <= 0:
            sample_ms = TICK_INTERVAL_MS
        delta = max(0, s.bytes_received - s.last_bytes)
        s.last_bytes = s.bytes_received

        mbps = mbps_from_bytes(delta, sample_ms)
        s.current_mbps = mbps
        s.peak_mbps = max(s.peak_mbps, mbps)
        self._changed()

        if phase_elapsed is None or phase_elapsed < s.duration_sec * 1000:
            return

        average = mbps_from_bytes(s.bytes_received, phase_elapsed)
        if s.phase == SpeedTestPhase.DOWNLOAD:
            s.download_mbps = max(s.download_mbps, s.peak_mbps, average)
            self._abort_request()
            self._changed()
            self._start_phase(SpeedTestPhase.UPLOAD, UPLOAD_DURATION_SEC)
        elif s.phase == SpeedTestPhase.UPLOAD:
            s.upload_mbps = max(s.upload_mbps, s.peak_mbps, average)
            self._finish(True)

    def _on_data(self, token, num_bytes):
        if token is not self._request_token or not self.state.running:
            return
        if num_bytes > 0:
            self.state.bytes_received += num_bytes
            self.state.phase_bytes += num_bytes

    def _on_upload_progress(self, token, sent):
        s = self.state
        if token is not self._request_token or not s.running or not s.upload_mode:
            return
        if sent > s.bytes_received:
            s.phase_bytes += sent - s.bytes_received
            s.bytes_received = sent

    def _on_finished(self, token, error):
        if token is not self._request_token:
            return
        self._request_token = None
        self._request = None
        s = self.state
        if not s.running:
            return

        if s.phase == SpeedTestPhase.PING:
            if error is None:
                elapsed = self._clock() - (self._request_started_ms or 0)
                s.ping_sample_count += 1
                s.ping_total_ms += max(elapsed, 1)
            if s.ping_sample_count >= PING_SAMPLES:
                s.ping_ms = s.ping_total_ms // s.ping_sample_count
                self._start_phase(SpeedTestPhase.DOWNLOAD, DOWNLOAD_DURATION_SEC)
                return
            if s.attempt >= MAX_ATTEMPTS_PER_PHASE:
                if s.ping_sample_count > 0:
                    s.ping_ms = s.ping_total_ms // s.ping_sample_count
                    self._start_phase(SpeedTestPhase.DOWNLOAD, DOWNLOAD_DURATION_SEC)
                else:
                    self._finish(False, error or "Ping requests failed.")
                return
            self._start_request()
            return

        if s.phase in (SpeedTestPhase.DOWNLOAD, SpeedTestPhase.UPLOAD):
            phase_elapsed = self._phase_elapsed_ms()
            # the tick closes the phase once its window has elapsed
            if phase_elapsed is not None and phase_elapsed >= s.duration_sec * 1000:
                return

            if s.phase_bytes <= 0 and s.attempt >= MAX_ATTEMPTS_PER_PHASE:
                label = "Download" if s.phase == SpeedTestPhase.DOWNLOAD else "Upload"
                self._finish(False, error or f"{label} test returned no data.")
                return

            if s.phase_bytes > 0 and phase_elapsed is not None:
                average = mbps_from_bytes(s.bytes_received, phase_elapsed)
                if s.phase == SpeedTestPhase.DOWNLOAD:
                    s.download_mbps = max(s.download_mbps, s.peak_mbps, average)
                else:
                    s.upload_mbps = max(s.upload_mbps, s.peak_mbps, average)
                self._changed()

            self._start_request()
            return

        if error:
            self._finish(False, error)
        else:
            self._finish(True)
