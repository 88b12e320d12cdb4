import base64
import binascii
import json
from urllib.parse import parse_qs, unquote, urlsplit

from xraylink.errors import ParseError
from xraylink.profile import ServerProfile, new_profile_id

# VMess JSON keys mapped onto ServerProfile fields; anything else goes to extra.
_VMESS_KNOWN_KEYS = {
    "v", "ps", "add", "port", "id", "aid", "scy", "net", "tls", "path", "type",
    "host", "sni", "alpn", "flow", "fp", "pbk", "sid", "spx", "serviceName",
    "allowInsecure",
}


# ===============================
# HELPERS
# ===============================

def decode_flexible_base64(text):
    """Decode standard or URL-safe base64, padded or not. Returns b"" on failure."""
    raw = "".join(str(text or "").split())
    if not raw:
        return b""
    normalized = raw.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    for candidate in (normalized, raw):
        try:
            decoded = base64.b64decode(candidate, validate=True)
        except (binascii.Error, ValueError):
            continue
        if decoded:
            return decoded
    return b""


def _text(obj, key):
    value = obj.get(key)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def _query_value(q, key, default=""):
    return q.get(key, [default])[0].strip()


def _safe_port(value, default=0):
    try:
        port = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return port if 0 < port <= 65535 else 0


def _bool_from_text(value):
    return str(value).strip().lower() in {"1", "true"}


def _normalize_ws_path(network, path):
    if network != "ws":
        return path
    if not path:
        return "/"
    return path if path.startswith("/") else "/" + path


def _normalize_security(value):
    v = (value or "").strip().lower()
    return v if v and v != "none" else "none"


# ===============================
# LINK PARSERS
# ===============================

def parse_vmess(link):
    raw = link.strip()
    payload = raw[len("vmess://"):].strip()

    name_from_fragment = ""
    if "#" in payload:
        payload, fragment = payload.split("#", 1)
        name_from_fragment = unquote(fragment).strip()

    decoded = decode_flexible_base64(payload)
    if not decoded:
        raise ParseError(ParseError.BASE64_DECODE_FAILED, "VMESS payload could not be Base64-decoded.")

    try:
        obj = json.loads(decoded.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError(ParseError.INVALID_JSON, "VMESS payload is not valid JSON.") from e
    if not isinstance(obj, dict):
        raise ParseError(ParseError.INVALID_JSON, "VMESS payload is not valid JSON.")

    network = (_text(obj, "net") or "tcp").lower()
    profile = ServerProfile(
        id=new_profile_id(),
        name=name_from_fragment or _text(obj, "ps"),
        protocol="vmess",
        address=_text(obj, "add"),
        port=_safe_port(_text(obj, "port")),
        user_id=_text(obj, "id"),
        encryption=_text(obj, "scy") or "auto",
        flow=_text(obj, "flow"),
        network=network,
        security=_normalize_security(_text(obj, "tls")),
        sni=_text(obj, "sni"),
        alpn=_text(obj, "alpn"),
        fingerprint=_text(obj, "fp"),
        public_key=_text(obj, "pbk"),
        short_id=_text(obj, "sid"),
        spider_x=_text(obj, "spx"),
        path=_normalize_ws_path(network, _text(obj, "path")),
        host_header=_text(obj, "host"),
        service_name=_text(obj, "serviceName"),
        header_type=_text(obj, "type").lower(),
        allow_insecure=_bool_from_text(_text(obj, "allowInsecure")),
        original_link=raw,
        extra={k: v for k, v in obj.items() if k not in _VMESS_KNOWN_KEYS},
    )
    if not profile.is_valid():
        raise ParseError(ParseError.MISSING_REQUIRED_FIELDS, "VMESS link is missing required fields.")
    return profile


def parse_vless(link):
    raw = link.strip()
    try:
        u = urlsplit(raw)
        port = u.port
    except ValueError as e:
        raise ParseError(ParseError.INVALID_URL, "VLESS link is not a valid URL.") from e
    if u.scheme.lower() != "vless" or not u.netloc:
        raise ParseError(ParseError.INVALID_URL, "VLESS link is not a valid URL.")

    q = parse_qs(u.query, keep_blank_values=True)
    network = (_query_value(q, "type") or "tcp").lower()
    sni = _query_value(q, "sni") or _query_value(q, "serverName")

    profile = ServerProfile(
        id=new_profile_id(),
        name=unquote(u.fragment).strip(),
        protocol="vless",
        address=(u.hostname or "").strip(),
        port=443 if port is None else port,
        user_id=unquote(u.username or "").strip(),
        encryption=(_query_value(q, "encryption") or "none").lower(),
        flow=_query_value(q, "flow"),
        network=network,
        security=_normalize_security(_query_value(q, "security")),
        sni=sni,
        alpn=_query_value(q, "alpn"),
        fingerprint=_query_value(q, "fp"),
        public_key=_query_value(q, "pbk"),
        short_id=_query_value(q, "sid"),
        spider_x=_query_value(q, "spx"),
        path=_normalize_ws_path(network, _query_value(q, "path")),
        host_header=_query_value(q, "host"),
        service_name=_query_value(q, "serviceName"),
        header_type=_query_value(q, "headerType").lower(),
        allow_insecure=_bool_from_text(_query_value(q, "allowInsecure")),
        original_link=raw,
    )
    if not profile.is_valid():
        raise ParseError(ParseError.MISSING_REQUIRED_FIELDS, "VLESS link is missing required fields.")
    return profile


def parse_link(link):
    """Parse a vmess:// or vless:// share link into a new ServerProfile."""
    text = str(link or "").strip()
    if not text:
        raise ParseError(ParseError.UNSUPPORTED_FORMAT, "Import link is empty.")

    lowered = text.lower()
    if lowered.startswith("vmess://"):
        return parse_vmess(text)
    if lowered.startswith("vless://"):
        return parse_vless(text)
    raise ParseError(ParseError.UNSUPPORTED_FORMAT, "Unsupported link format. Use VMESS or VLESS.")


def is_share_link(text):
    lowered = str(text or "").strip().lower()
    return lowered.startswith("vmess://") or lowered.startswith("vless://")
