import ipaddress
import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from xraylink.settings import default_settings, merge_settings

DEFAULT_SOCKS_PORT = 10808
DEFAULT_HTTP_PORT = 10808
DEFAULT_API_PORT = 10085
DEFAULT_LOG_LEVEL = "warning"
DEFAULT_TUN_DNS_SERVERS = ("1.1.1.1", "8.8.8.8", "9.9.9.9")
LOG_LEVELS = ("debug", "info", "warning", "error", "none")

_RULE_SPLIT = re.compile(r"[,;\n\r]+")
_DNS_SPLIT = re.compile(r"[,;\n\r\t ]+")


def parse_rules(text):
    out = []
    seen = set()
    for item in _RULE_SPLIT.split(str(text or "")):
        entry = item.strip()
        if not entry:
            continue
        key = entry.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(entry)
    return out


def normalize_dns_server(value):
    candidate = str(value or "").strip()
    if not candidate:
        return ""

    if "://" in candidate:
        try:
            host = urlsplit(candidate).hostname or ""
        except ValueError:
            host = ""
        if not host:
            return ""
        candidate = host

    if candidate.startswith("[") and "]:" in candidate:
        closing = candidate.index("]")
        if closing > 1:
            candidate = candidate[1:closing].strip()
    elif candidate.count(":") == 1:
        # host:port; raw IPv6 has several colons and is kept
        host_part, _, port_part = candidate.partition(":")
        if host_part and port_part.isdigit() and int(port_part) <= 65535:
            candidate = host_part.strip()

    if candidate.endswith("."):
        candidate = candidate[:-1]
    if not candidate:
        return ""

    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return candidate.lower()


def parse_dns_servers(text):
    out = []
    seen = set()
    for entry in _DNS_SPLIT.split(str(text or "")):
        normalized = normalize_dns_server(entry)
        if not normalized or normalized.lower() in seen:
            continue
        seen.add(normalized.lower())
        out.append(normalized)
    return out


def _safe_port(value, default):
    try:
        port = int(value)
    except (TypeError, ValueError):
        return default
    if port < 1 or port > 65535:
        return default
    return port


def normalize_log_level(value):
    level = str(value or "").strip().lower()
    return level if level in LOG_LEVELS else DEFAULT_LOG_LEVEL


@dataclass
class RoutingOptions:
    socks_port: int = DEFAULT_SOCKS_PORT
    http_port: int = DEFAULT_HTTP_PORT
    api_port: int = DEFAULT_API_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    enable_stats_api: bool = True
    enable_mux: bool = False
    enable_tun: bool = False
    tun_interface_name: str = ""
    tun_auto_route: bool = True
    tun_strict_route: bool = True
    whitelist_mode: bool = False
    proxy_domains: list = field(default_factory=list)
    direct_domains: list = field(default_factory=list)
    block_domains: list = field(default_factory=list)
    proxy_processes: list = field(default_factory=list)
    direct_processes: list = field(default_factory=list)
    block_processes: list = field(default_factory=list)
    enable_process_routing: bool = False
    dns_servers: list = field(default_factory=list)

    @property
    def has_process_rules(self):
        return bool(self.proxy_processes or self.direct_processes or self.block_processes)

    @classmethod
    def from_settings(cls, settings):
        s = merge_settings(default_settings(), settings or {})
        ports = s["ports"]
        routing = s["routing"]
        advanced = s["advanced"]
        tunnel = s["tunnel"]
        return cls(
            socks_port=_safe_port(ports.get("socks"), DEFAULT_SOCKS_PORT),
            http_port=_safe_port(ports.get("http"), DEFAULT_HTTP_PORT),
            api_port=_safe_port(ports.get("api"), DEFAULT_API_PORT),
            log_level=normalize_log_level(advanced.get("log_level")),
            enable_stats_api=bool(advanced.get("enable_stats_api", True)),
            enable_mux=bool(advanced.get("enable_mux", False)),
            enable_tun=bool(s["network"].get("tun_mode", False)),
            tun_interface_name=str(tunnel.get("name") or "").strip(),
            tun_auto_route=bool(tunnel.get("auto_route", True)),
            tun_strict_route=bool(tunnel.get("strict_route", True)),
            whitelist_mode=bool(routing.get("whitelist_mode", False)),
            proxy_domains=parse_rules(routing.get("proxy_domains")),
            direct_domains=parse_rules(routing.get("direct_domains")),
            block_domains=parse_rules(routing.get("block_domains")),
            proxy_processes=parse_rules(routing.get("proxy_apps")),
            direct_processes=parse_rules(routing.get("direct_apps")),
            block_processes=parse_rules(routing.get("block_apps")),
            dns_servers=parse_dns_servers(routing.get("custom_dns_servers")),
        )
