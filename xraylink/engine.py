"""Side-channel queries against the xray-core binary: stats API and version."""

import json
import os
import re
import subprocess

from xraylink.errors import StatsQueryError

NO_WINDOW_FLAG = getattr(subprocess, "CREATE_NO_WINDOW", 0)

STATS_QUERY_TIMEOUT = 4.5
VERSION_QUERY_TIMEOUT = 3.0
PROCESS_ROUTING_MIN_VERSION = (26, 1, 23)

VERSION_PATTERN = re.compile(r"Xray\s+(\d+)\.(\d+)\.(\d+)", re.IGNORECASE)
_UPLINK_PATTERN = re.compile(r"outbound>>>([^>]+)>>>traffic>>>uplink[^0-9]*([0-9]+)", re.IGNORECASE)
_DOWNLINK_PATTERN = re.compile(r"outbound>>>([^>]+)>>>traffic>>>downlink[^0-9]*([0-9]+)", re.IGNORECASE)


# ===============================
# STATS QUERY
# ===============================

def _safe_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return int(default)


def _parse_stats_json(stdout_text):
    try:
        root = json.loads(stdout_text)
    except ValueError:
        return None
    if not isinstance(root, dict):
        return None

    stat = root.get("stat")
    entries = [stat] if isinstance(stat, dict) else stat if isinstance(stat, list) else []
    up = down = 0
    found = False
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name", ""))
        if not name.startswith("outbound>>>"):
            continue
        parts = name.split(">>>")
        if len(parts) < 4 or parts[1] == "api":
            continue
        value = _safe_int(entry.get("value"))
        if parts[3] == "uplink":
            up += value
            found = True
        elif parts[3] == "downlink":
            down += value
            found = True
    return (up, down) if found else None


def _parse_stats_text(text):
    up = down = 0
    found = False
    for pattern, is_up in ((_UPLINK_PATTERN, True), (_DOWNLINK_PATTERN, False)):
        for match in pattern.finditer(text):
            if match.group(1).lower() == "api":
                continue
            if is_up:
                up += int(match.group(2))
            else:
                down += int(match.group(2))
            found = True
    return (up, down) if found else None


def parse_stats_output(stdout_text, stderr_text=""):
    """Return (uplink, downlink) summed over non-api outbounds.

    JSON output is preferred; the plaintext form
    ``stat: { name: "outbound>>>proxy>>>traffic>>>uplink" value: 12 }`` is the fallback.
    """
    result = _parse_stats_json(stdout_text)
    if result is not None:
        return result
    result = _parse_stats_text(f"{stdout_text}\n{stderr_text}")
    if result is not None:
        return result

    snippet = f"{stdout_text}\n{stderr_text}".strip()
    if len(snippet) > 200:
        snippet = snippet[:200] + "..."
    raise StatsQueryError(f"Unexpected statsquery output: {snippet or '<empty>'}")


def query_traffic_stats(executable_path, api_port, timeout=STATS_QUERY_TIMEOUT):
    """Blocking; run it off the control thread."""
    if not str(executable_path or "").strip():
        raise StatsQueryError("xray-core executable path is not set.")
    cmd = [
        executable_path,
        "api",
        "statsquery",
        f"--server=127.0.0.1:{int(api_port)}",
        "-pattern",
        "outbound>>>",
    ]
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            creationflags=NO_WINDOW_FLAG,
        )
    except subprocess.TimeoutExpired as e:
        raise StatsQueryError("xray api statsquery timed out.") from e
    except OSError as e:
        raise StatsQueryError(f"Failed to start xray api statsquery process: {e}") from e

    if proc.returncode != 0:
        raise StatsQueryError((proc.stderr or "").strip() or "xray api statsquery failed.")
    return parse_stats_output(proc.stdout or "", proc.stderr or "")


# ===============================
# VERSION PROBE
# ===============================

def parse_version(text):
    match = VERSION_PATTERN.search(str(text or ""))
    if not match:
        return None
    return tuple(int(g) for g in match.groups())


class EngineCapabilities:
    """Cached ``xray version`` probe, invalidated when the executable path changes."""

    def __init__(self, timeout=VERSION_QUERY_TIMEOUT, runner=subprocess.run):
        self.timeout = timeout
        self._runner = runner
        self._checked_path = None
        self.version = None
        self.version_text = "Not detected"
        self.process_routing_supported = False

    def invalidate(self):
        self._checked_path = None
        self.version = None
        self.version_text = "Not detected"
        self.process_routing_supported = False

    def probe(self, executable_path):
        path = str(executable_path or "").strip()
        if path == self._checked_path:
            return self.process_routing_supported

        self.invalidate()
        self._checked_path = path
        if not path or not os.path.exists(path):
            return False

        try:
            proc = self._runner(
                [path, "version"],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                creationflags=NO_WINDOW_FLAG,
            )
        except (OSError, subprocess.TimeoutExpired):
            self.version_text = "Unavailable"
            return False

        version = parse_version(f"{proc.stdout or ''}\n{proc.stderr or ''}")
        if version is None:
            self.version_text = "Detected"
            return False

        self.version = version
        self.version_text = ".".join(str(v) for v in version)
        self.process_routing_supported = version >= PROCESS_ROUTING_MIN_VERSION
        return self.process_routing_supported
