import copy
import json
import os
import tempfile

from xraylink.errors import ConfigWriteError
from xraylink.log import get_logger

PROFILES_FILE = "profiles.json"
SETTINGS_FILE = "settings.json"
RUNTIME_CONFIG_FILE = "xray-runtime-config.json"


def default_data_dir():
    home = os.environ.get("XRAYLINK_HOME", "").strip()
    if home:
        return os.path.abspath(os.path.expanduser(home))
    return os.path.join(os.path.expanduser("~"), ".xraylink")


def default_settings():
    return {
        "core": {
            "executable_path": "",
            "logging_enabled": True,
        },
        "profiles": {
            "auto_ping": False,
            "current_index": -1,
            "current_id": "",
        },
        "network": {
            "use_system_proxy": False,
            "tun_mode": False,
            "auto_disable_system_proxy_on_disconnect": False,
        },
        "routing": {
            "whitelist_mode": False,
            "proxy_domains": "",
            "direct_domains": "",
            "block_domains": "",
            "proxy_apps": "",
            "direct_apps": "",
            "block_apps": "",
            "custom_dns_servers": "",
        },
        "ports": {
            "socks": 10808,
            "http": 10808,
            "api": 10085,
        },
        "advanced": {
            "log_level": "warning",
            "enable_stats_api": True,
            "enable_mux": False,
            "log_limit": 200,
            "suppress_noisy_core_logs": True,
        },
        "tunnel": {
            "name": "",
            "auto_route": True,
            "strict_route": True,
        },
    }


def merge_settings(defaults: dict, override: dict) -> dict:
    """Overlay stored ``override`` values on ``defaults`` section by section.

    Unknown keys are kept so newer settings files survive a downgrade. The
    result shares no containers with either argument.
    """
    merged = copy.deepcopy(defaults)
    for key, value in (override or {}).items():
        section = merged.get(key)
        if isinstance(section, dict) and isinstance(value, dict):
            merged[key] = merge_settings(section, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def write_json_atomic(path, data):
    """Write ``data`` as JSON so readers never observe a partial file."""
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
    except OSError as e:
        raise ConfigWriteError(f"Failed to open config file: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise ConfigWriteError(f"Failed to write config file to disk: {e}") from e


class SettingsStore:
    def load(self):
        raise NotImplementedError

    def save(self, data):
        raise NotImplementedError


class MemorySettingsStore(SettingsStore):
    def __init__(self, data=None):
        self.data = merge_settings(default_settings(), data or {})
        self.save_count = 0

    def load(self):
        return copy.deepcopy(self.data)

    def save(self, data):
        self.data = copy.deepcopy(data)
        self.save_count += 1


class JsonSettingsStore(SettingsStore):
    def __init__(self, path):
        self.path = path

    def load(self):
        defaults = default_settings()
        if not os.path.exists(self.path):
            return defaults
        try:
            with open(self.path, "r", encoding="utf8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return merge_settings(defaults, data)
        except (OSError, ValueError) as e:
            get_logger().warning("[Settings] Failed to load %s: %s", self.path, e)
        return defaults

    def save(self, data):
        write_json_atomic(self.path, data)
