"""Compile a ServerProfile plus RoutingOptions into an xray-core JSON config."""

import json

from xraylink.platforms import current_platform
from xraylink.rules import DEFAULT_TUN_DNS_SERVERS
from xraylink.settings import write_json_atomic

MIXED_INBOUND_TAG = "mixed-in"
HTTP_INBOUND_TAG = "http-in"
TUN_INBOUND_TAG = "tun-in"
API_INBOUND_TAG = "api-in"
FRAGMENT_OUTBOUND_TAG = "frag-proxy"
DNS_OUTBOUND_TAG = "dns-out"

PRIVATE_CIDRS = [
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "::1/128",
    "fc00::/7",
    "fe80::/10",
]

LOCAL_DOMAINS = ["full:localhost", "domain:local", "regexp:.*\\.local\\.?$"]

TUN_NOISE_PORTS = "137,138,5353,5355"
TUN_NOISE_CIDRS = ["169.254.0.0/16", "255.255.255.255/32", "224.0.0.0/4"]

SNIFF_DEST_OVERRIDE = ["http", "tls", "quic", "fakedns"]
MUX_CONCURRENCY = 8


def _sniffing():
    return {"enabled": True, "destOverride": list(SNIFF_DEST_OVERRIDE), "routeOnly": False}


def normalize_domain_rule(entry):
    # Entries that already carry a rule type (domain:, full:, geosite:, regexp:) are kept.
    entry = entry.strip()
    return entry if ":" in entry else f"domain:{entry}"


# ===============================
# INBOUNDS
# ===============================

def build_inbounds(options, platform):
    inbounds = [{
        "tag": MIXED_INBOUND_TAG,
        "listen": "127.0.0.1",
        "port": options.socks_port,
        "protocol": "mixed",
        "sniffing": _sniffing(),
        "settings": {"udp": True, "auth": "noauth", "allowTransparent": False},
    }]
    if options.http_port != options.socks_port:
        inbounds.append({
            "tag": HTTP_INBOUND_TAG,
            "listen": "127.0.0.1",
            "port": options.http_port,
            "protocol": "http",
            "sniffing": _sniffing(),
            "settings": {"allowTransparent": False},
        })
    if options.enable_tun:
        inbounds.append({
            "tag": TUN_INBOUND_TAG,
            "protocol": "tun",
            "settings": platform.tun_settings(options),
            "sniffing": _sniffing(),
        })
    if options.enable_stats_api:
        inbounds.append({
            "tag": API_INBOUND_TAG,
            "listen": "127.0.0.1",
            "port": options.api_port,
            "protocol": "dokodemo-door",
            "settings": {"address": "127.0.0.1"},
        })
    return inbounds


# ===============================
# OUTBOUNDS
# ===============================

def build_stream(profile):
    network = profile.network or "tcp"
    security = profile.security or "none"
    stream = {"network": network, "security": security}

    if network == "ws":
        ws = {"path": profile.path or "/"}
        if profile.host_header:
            ws["headers"] = {"Host": profile.host_header}
        stream["wsSettings"] = ws
    elif network == "grpc":
        stream["grpcSettings"] = {"serviceName": profile.service_name}
    elif network == "tcp":
        stream["tcpSettings"] = {"header": {"type": profile.header_type or "none"}}

    if security == "tls":
        tls = {}
        if profile.sni:
            tls["serverName"] = profile.sni
        alpn = [a.strip() for a in profile.alpn.split(",") if a.strip()]
        if alpn:
            tls["alpn"] = alpn
        if profile.fingerprint:
            tls["fingerprint"] = profile.fingerprint
        if profile.allow_insecure:
            tls["allowInsecure"] = True
        stream["tlsSettings"] = tls
    elif security == "reality":
        reality = {}
        if profile.sni:
            reality["serverName"] = profile.sni
        if profile.fingerprint:
            reality["fingerprint"] = profile.fingerprint
        if profile.public_key:
            reality["publicKey"] = profile.public_key
        if profile.short_id:
            reality["shortId"] = profile.short_id
        reality["spiderX"] = profile.spider_x or "/"
        stream["realitySettings"] = reality
        stream["sockopt"] = {"dialerProxy": FRAGMENT_OUTBOUND_TAG}

    return stream


def build_proxy_outbound(profile, options):
    protocol = profile.protocol.lower()
    user = {"id": profile.user_id}
    if protocol == "vless":
        user["encryption"] = profile.encryption or "none"
        if profile.flow:
            user["flow"] = profile.flow
    else:
        user["security"] = profile.encryption or "auto"
        user["alterId"] = 0

    outbound = {
        "tag": "proxy",
        "protocol": protocol,
        "settings": {
            "vnext": [{"address": profile.address, "port": profile.port, "users": [user]}],
        },
        "streamSettings": build_stream(profile),
    }
    if options.enable_mux:
        outbound["mux"] = {"enabled": True, "concurrency": MUX_CONCURRENCY}
    return outbound


def build_outbounds(profile, options):
    outbounds = [
        build_proxy_outbound(profile, options),
        {"tag": "direct", "protocol": "freedom", "settings": {}},
        {"tag": "block", "protocol": "blackhole", "settings": {}},
    ]
    if (profile.security or "").lower() == "reality":
        outbounds.append({
            "tag": FRAGMENT_OUTBOUND_TAG,
            "protocol": "freedom",
            "settings": {
                "fragment": {"packets": "tlshello", "length": "100-200", "interval": "10-20"},
            },
        })
    if options.enable_tun:
        outbounds.append({"tag": DNS_OUTBOUND_TAG, "protocol": "dns"})
    return outbounds


# ===============================
# ROUTING
# ===============================

def _domain_rule(domains, outbound_tag):
    return {
        "type": "field",
        "domain": [normalize_domain_rule(d) for d in domains],
        "outboundTag": outbound_tag,
    }


def _process_rule(processes, outbound_tag):
    return {"type": "field", "process": list(processes), "outboundTag": outbound_tag}


def build_routing_rules(options):
    rules = []
    if options.enable_stats_api:
        rules.append({"type": "field", "inboundTag": [API_INBOUND_TAG], "outboundTag": "api"})

    if options.enable_tun:
        rules.append({
            "type": "field",
            "inboundTag": [TUN_INBOUND_TAG],
            "network": "tcp,udp",
            "port": "53",
            "outboundTag": DNS_OUTBOUND_TAG,
        })
        rules.append({
            "type": "field",
            "inboundTag": [TUN_INBOUND_TAG],
            "network": "udp",
            "port": TUN_NOISE_PORTS,
            "outboundTag": "block",
        })
        rules.append({
            "type": "field",
            "inboundTag": [TUN_INBOUND_TAG],
            "network": "udp",
            "ip": list(TUN_NOISE_CIDRS),
            "outboundTag": "block",
        })

    private_rule = {"type": "field", "ip": list(PRIVATE_CIDRS), "outboundTag": "direct"}
    local_rule = {"type": "field", "domain": list(LOCAL_DOMAINS), "outboundTag": "direct"}
    if options.enable_tun:
        # private and local shortcuts apply to the local proxy inbounds only
        local_inbounds = [MIXED_INBOUND_TAG]
        if options.http_port != options.socks_port:
            local_inbounds.append(HTTP_INBOUND_TAG)
        private_rule["inboundTag"] = list(local_inbounds)
        local_rule["inboundTag"] = list(local_inbounds)
    rules.append(private_rule)
    rules.append(local_rule)

    process_routing = options.enable_process_routing
    if options.block_domains:
        rules.append(_domain_rule(options.block_domains, "block"))
    if process_routing and options.block_processes:
        rules.append(_process_rule(options.block_processes, "block"))
    if options.direct_domains:
        rules.append(_domain_rule(options.direct_domains, "direct"))
    if process_routing and options.direct_processes:
        rules.append(_process_rule(options.direct_processes, "direct"))
    if options.proxy_domains:
        rules.append(_domain_rule(options.proxy_domains, "proxy"))
    if process_routing and options.proxy_processes:
        rules.append(_process_rule(options.proxy_processes, "proxy"))

    if options.enable_tun:
        default_tag = "proxy"
    else:
        default_tag = "direct" if options.whitelist_mode else "proxy"
    rules.append({"type": "field", "outboundTag": default_tag, "network": "tcp,udp"})
    return rules


# ===============================
# CONFIG
# ===============================

def build_config(profile, options, platform=None):
    platform = platform or current_platform()
    config = {
        "log": {"loglevel": options.log_level},
        "inbounds": build_inbounds(options, platform),
        "outbounds": build_outbounds(profile, options),
        "routing": {"domainStrategy": "AsIs", "rules": build_routing_rules(options)},
        "policy": {
            "system": {
                "statsInboundUplink": True,
                "statsInboundDownlink": True,
                "statsOutboundUplink": True,
                "statsOutboundDownlink": True,
            },
        },
        "stats": {},
    }
    if options.enable_stats_api:
        config["api"] = {"tag": "api", "services": ["StatsService"]}
    if options.enable_tun:
        config["dns"] = {
            "servers": list(options.dns_servers or DEFAULT_TUN_DNS_SERVERS),
            "queryStrategy": "UseIP",
        }
    return config


def config_to_json(config):
    return json.dumps(config, indent=2, ensure_ascii=False)


def write_config(config, path):
    write_json_atomic(path, config)
