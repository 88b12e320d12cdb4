import pytest

from fakes import FakeClock, FakeTransport
from xraylink.speedtest import (
    DOWNLOAD_URLS,
    MAX_ATTEMPTS_PER_PHASE,
    PING_SAMPLES,
    PING_URLS,
    UPLOAD_PAYLOAD_BYTES,
    SpeedTestEngine,
    SpeedTestPhase,
    format_result_line,
    mbps_from_bytes,
    url_for_phase,
)


@pytest.fixture
def engine():
    transport = FakeTransport()
    clock = FakeClock()
    eng = SpeedTestEngine(transport=transport, clock=clock)
    eng.transport = transport
    eng.clock = clock
    eng.logs = []
    eng.events.subscribe("log", eng.logs.append)
    yield eng
    eng.cancel()


def _finish_pings(engine, elapsed_ms=30):
    for _ in range(PING_SAMPLES):
        engine.clock.advance(elapsed_ms)
        engine.transport.last.finish(None)


def _run_phase(engine, chunk, duration_ms):
    phase = engine.state.phase
    elapsed = 0
    while engine.state.phase == phase and elapsed < duration_ms:
        engine.clock.advance(120)
        elapsed += 120
        engine.transport.last.on_data(chunk)
        engine._on_tick()


def test_helpers():
    assert mbps_from_bytes(1024 * 1024, 1000) == pytest.approx(8.0)
    assert mbps_from_bytes(100, 0) > 0
    assert url_for_phase(SpeedTestPhase.PING, 0) == PING_URLS[0]
    assert url_for_phase(SpeedTestPhase.DOWNLOAD, len(DOWNLOAD_URLS)) == DOWNLOAD_URLS[0]
    assert url_for_phase(SpeedTestPhase.DONE, 0) == ""
    assert format_result_line(35, 48.24, 12.06) == "Done: ping 35 ms, down 48.2 Mbps, up 12.1 Mbps"


def test_direct_start_logs_route(engine):
    engine.start()
    assert engine.transport.proxy_port is None
    assert engine.state.route == "direct"
    assert engine.state.phase == SpeedTestPhase.PING
    assert engine.logs == ["[SpeedTest] Started via direct internet (no VPN proxy)."]
    assert engine.transport.last.url == PING_URLS[0]


def test_tunnel_start_uses_socks_proxy(engine):
    engine.start(proxy_port=10808)
    assert engine.transport.proxy_port == 10808
    assert engine.state.route == "tunnel"
    assert engine.logs == ["[SpeedTest] Started via VPN tunnel (SOCKS5 127.0.0.1:10808)."]


def test_ping_failures_end_in_error_without_history(engine):
    engine.start()
    for _ in range(MAX_ATTEMPTS_PER_PHASE):
        engine.transport.last.finish("Host unreachable")
    assert len(engine.transport.requests) == MAX_ATTEMPTS_PER_PHASE
    assert engine.state.phase == SpeedTestPhase.ERROR
    assert not engine.running
    assert engine.state.error == "Host unreachable"
    assert engine.history == []
    assert engine.logs[-1] == "[SpeedTest] Failed: Host unreachable"


def test_full_run_records_history(engine):
    engine.start(proxy_port=10808)
    _finish_pings(engine, elapsed_ms=40)
    assert engine.state.ping_ms == 40
    assert engine.state.phase == SpeedTestPhase.DOWNLOAD

    _run_phase(engine, 150_000, 10_000)
    assert engine.state.phase == SpeedTestPhase.UPLOAD
    assert engine.state.download_mbps > 0
    upload = engine.transport.last
    assert upload.payload is not None and len(upload.payload) == UPLOAD_PAYLOAD_BYTES

    elapsed = 0
    while engine.running and elapsed < 8_000:
        engine.clock.advance(120)
        elapsed += 120
        engine.transport.last.on_upload_progress(elapsed * 100)
        engine._on_tick()

    assert engine.state.phase == SpeedTestPhase.DONE
    assert not engine.running
    assert engine.state.upload_mbps > 0
    assert len(engine.history) == 1
    line = engine.history[0]
    assert line.startswith("Done: ping 40 ms, down ")
    assert line.endswith(" Mbps")
    assert engine.logs[-1] == f"[SpeedTest] {line} (via VPN tunnel)"


def test_download_request_finishing_early_is_restarted(engine):
    engine.start()
    _finish_pings(engine)
    first = engine.transport.last
    first.on_data(5000)
    engine.clock.advance(500)
    first.finish(None)
    assert engine.transport.last is not first
    assert engine.state.phase == SpeedTestPhase.DOWNLOAD
    assert engine.running


def test_cancel_mid_download(engine):
    engine.start()
    _finish_pings(engine)
    request = engine.transport.last
    request.on_data(1000)
    engine.cancel()
    assert request.aborted
    assert engine.state.phase == SpeedTestPhase.IDLE
    assert not engine.running
    assert engine.history == []
    assert engine.logs[-1] == "[SpeedTest] Canceled."

    # late callbacks from the aborted request are ignored
    request.on_data(5000)
    request.finish("Operation canceled")
    assert engine.state.phase == SpeedTestPhase.IDLE
    assert engine.state.bytes_received == 1000


def test_restart_replaces_running_test(engine):
    engine.start()
    first = engine.transport.last
    engine.start()
    assert first.aborted
    assert engine.running
    first.finish(None)
    assert engine.state.ping_sample_count == 0


def test_history_is_bounded(engine):
    engine._history = [f"old {i}" for i in range(20)]
    engine.start()
    _finish_pings(engine)
    _run_phase(engine, 100_000, 10_000)
    elapsed = 0
    while engine.running and elapsed < 8_000:
        engine.clock.advance(120)
        elapsed += 120
        engine.transport.last.on_upload_progress(elapsed * 50)
        engine._on_tick()
    assert len(engine.history) == 20
    assert engine.history[0].startswith("Done: ")
    assert engine.history[-1] == "old 18"
