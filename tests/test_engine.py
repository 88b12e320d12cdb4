import json
import subprocess
from types import SimpleNamespace

import pytest

from xraylink.engine import EngineCapabilities, parse_stats_output, parse_version, query_traffic_stats
from xraylink.errors import NetworkError, StatsQueryError


def test_stats_json_sums_non_api_outbounds():
    stdout = json.dumps({"stat": [
        {"name": "outbound>>>proxy>>>traffic>>>uplink", "value": 100},
        {"name": "outbound>>>proxy>>>traffic>>>downlink", "value": "2000"},
        {"name": "outbound>>>direct>>>traffic>>>downlink", "value": 5},
        {"name": "outbound>>>api>>>traffic>>>downlink", "value": 999},
        {"name": "inbound>>>mixed-in>>>traffic>>>uplink", "value": 7},
    ]})
    assert parse_stats_output(stdout) == (100, 2005)


def test_stats_json_single_object():
    stdout = json.dumps({"stat": {"name": "outbound>>>proxy>>>traffic>>>uplink", "value": 3}})
    assert parse_stats_output(stdout) == (3, 0)


def test_stats_text_fallback():
    text = (
        'stat: { name: "outbound>>>proxy>>>traffic>>>uplink" value: 12 }\n'
        'stat: { name: "outbound>>>proxy>>>traffic>>>downlink" value: 34 }\n'
        'stat: { name: "outbound>>>api>>>traffic>>>downlink" value: 56 }\n'
    )
    assert parse_stats_output(text) == (12, 34)


def test_stats_unexpected_output():
    with pytest.raises(StatsQueryError, match="Unexpected statsquery output"):
        parse_stats_output("garbage", "")
    with pytest.raises(NetworkError):
        parse_stats_output("", "")


def test_query_requires_path():
    with pytest.raises(StatsQueryError):
        query_traffic_stats("", 10085)


def test_parse_version():
    assert parse_version("Xray 26.1.23 (Xray, Penetrates Everything.)") == (26, 1, 23)
    assert parse_version("xray 1.8.4") == (1, 8, 4)
    assert parse_version("v2ray") is None


def _runner(stdout="", fail=None):
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        if fail:
            raise fail
        return SimpleNamespace(returncode=0, stdout=stdout, stderr="")

    run.calls = calls
    return run


def test_capabilities_probe_and_cache(tmp_path):
    exe = tmp_path / "xray"
    exe.write_text("")
    runner = _runner("Xray 26.2.0 (Xray)")
    caps = EngineCapabilities(runner=runner)
    assert caps.probe(str(exe))
    assert caps.probe(str(exe))
    assert len(runner.calls) == 1
    assert runner.calls[0][1:] == ["version"]
    assert caps.version_text == "26.2.0"

    caps.invalidate()
    assert caps.version_text == "Not detected"
    caps.probe(str(exe))
    assert len(runner.calls) == 2


def test_capabilities_old_version(tmp_path):
    exe = tmp_path / "xray"
    exe.write_text("")
    caps = EngineCapabilities(runner=_runner("Xray 25.1.1"))
    assert not caps.probe(str(exe))
    assert caps.version == (25, 1, 1)


def test_capabilities_unavailable_and_missing(tmp_path):
    exe = tmp_path / "xray"
    exe.write_text("")
    caps = EngineCapabilities(runner=_runner(fail=subprocess.TimeoutExpired("xray", 3)))
    assert not caps.probe(str(exe))
    assert caps.version_text == "Unavailable"

    runner = _runner("Xray 26.2.0")
    caps = EngineCapabilities(runner=runner)
    assert not caps.probe(str(tmp_path / "missing"))
    assert runner.calls == []


def test_capabilities_unparseable_output(tmp_path):
    exe = tmp_path / "xray"
    exe.write_text("")
    caps = EngineCapabilities(runner=_runner("something else"))
    assert not caps.probe(str(exe))
    assert caps.version_text == "Detected"
