import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler

LOG_FILE_NAME = "xraylink.log"
DEFAULT_LOG_LIMIT = 200

_LOGGER = None

NOISY_CORE_PATTERNS = (
    "the feature websocket transport",
    "\"allowinsecure\" will be removed",
    "feature \"host\" in \"headers\" is deprecated",
    "the feature vless (with no flow",
)

_TUN_BROADCAST_MARKERS = (
    "udp:169.254.255.255:137",
    "udp:255.255.255.255:137",
    "udp:169.254.255.255:138",
    "udp:255.255.255.255:138",
    "from tcp:169.254.",
    "from udp:169.254.",
    "udp:224.",
)


def get_logger(log_dir=None):
    global _LOGGER
    if _LOGGER is not None:
        return _LOGGER

    logger = logging.getLogger("xraylink")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if not logger.handlers:
        # No log files for frozen builds or when no data dir is known.
        if getattr(sys, "frozen", False) or not log_dir:
            logger.addHandler(logging.NullHandler())
        else:
            os.makedirs(log_dir, exist_ok=True)
            handler = RotatingFileHandler(
                os.path.join(log_dir, LOG_FILE_NAME),
                maxBytes=1_000_000,
                backupCount=3,
                encoding="utf-8",
            )
            handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
            logger.addHandler(handler)

    _LOGGER = logger
    return logger


def log_level_for(text):
    low = str(text or "").lower()
    if "error" in low or "failed" in low:
        return logging.ERROR
    if "warn" in low:
        return logging.WARNING
    return logging.INFO


def is_noisy_traffic_line(line):
    if " accepted " not in line:
        return False
    if "[tun-in -> direct]" in line and any(m in line for m in _TUN_BROADCAST_MARKERS):
        return True
    # tun-in traffic stays visible for diagnostics
    if "[tun-in ->" in line:
        return False
    return ">> proxy" in line or "socks ->" in line or "mixed-in ->" in line


def is_noisy_core_line(line):
    msg = str(line or "").lower()
    return any(p in msg for p in NOISY_CORE_PATTERNS)


class LogBuffer:
    """Bounded ring of recent log lines with a repeat guard.

    The same line arriving again within ``repeat_window`` seconds is counted
    instead of stored; the count is flushed as a ``[LogGuard]`` line when a
    different line arrives.
    """

    def __init__(self, limit=DEFAULT_LOG_LIMIT, repeat_window=1.5, clock=time.monotonic):
        self.limit = max(1, int(limit))
        self.repeat_window = float(repeat_window)
        self._clock = clock
        self._lines = []
        self._repeat_text = None
        self._repeat_ts = 0.0
        self._repeat_count = 0

    @property
    def lines(self):
        return list(self._lines)

    @property
    def latest(self):
        return self._lines[-1] if self._lines else ""

    def __len__(self):
        return len(self._lines)

    def append(self, text):
        text = str(text or "").strip()
        if not text:
            return False

        now = self._clock()
        if text == self._repeat_text and (now - self._repeat_ts) <= self.repeat_window:
            self._repeat_count += 1
            self._repeat_ts = now
            return False

        self._flush_repeats()
        self._repeat_text = text
        self._repeat_ts = now
        self._push(text)
        return True

    def clear(self):
        self._lines = []
        self._repeat_text = None
        self._repeat_count = 0

    def _flush_repeats(self):
        if self._repeat_count > 0:
            self._push(f"[LogGuard] suppressed {self._repeat_count} repeated line(s): {self._repeat_text}")
            self._repeat_count = 0

    def _push(self, text):
        self._lines.append(text)
        if len(self._lines) > self.limit:
            self._lines = self._lines[-self.limit:]
