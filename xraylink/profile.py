import base64
import io
import json
import uuid
from dataclasses import dataclass, field
from urllib.parse import quote, urlencode

import qrcode

from xraylink.errors import ValidationError

SUPPORTED_PROTOCOLS = ("vmess", "vless")

# persisted key -> attribute name
_JSON_KEYS = (
    ("id", "id"),
    ("name", "name"),
    ("protocol", "protocol"),
    ("address", "address"),
    ("port", "port"),
    ("userId", "user_id"),
    ("encryption", "encryption"),
    ("flow", "flow"),
    ("network", "network"),
    ("security", "security"),
    ("sni", "sni"),
    ("alpn", "alpn"),
    ("fingerprint", "fingerprint"),
    ("publicKey", "public_key"),
    ("shortId", "short_id"),
    ("spiderX", "spider_x"),
    ("path", "path"),
    ("hostHeader", "host_header"),
    ("serviceName", "service_name"),
    ("headerType", "header_type"),
    ("allowInsecure", "allow_insecure"),
    ("originalLink", "original_link"),
    ("groupName", "group_name"),
    ("sourceName", "source_name"),
    ("sourceId", "source_id"),
    ("extra", "extra"),
)

_LOWERCASE_FIELDS = {"protocol", "network", "security", "header_type"}


def new_profile_id():
    return str(uuid.uuid4())


def _clean_str(value):
    return str(value or "").strip()


def _safe_port(value):
    try:
        port = int(value)
    except (TypeError, ValueError):
        return 0
    return port if 0 < port <= 65535 else 0


@dataclass
class ServerProfile:
    id: str = ""
    name: str = ""
    protocol: str = ""
    address: str = ""
    port: int = 0
    user_id: str = ""
    encryption: str = ""
    flow: str = ""
    network: str = "tcp"
    security: str = "none"
    sni: str = ""
    alpn: str = ""
    fingerprint: str = ""
    public_key: str = ""
    short_id: str = ""
    spider_x: str = ""
    path: str = ""
    host_header: str = ""
    service_name: str = ""
    header_type: str = ""
    allow_insecure: bool = False
    original_link: str = ""
    group_name: str = ""
    source_name: str = ""
    source_id: str = ""
    extra: dict = field(default_factory=dict)
    # liveness, never persisted
    ping_in_progress: bool = field(default=False, compare=False)
    last_ping_ms: int = field(default=-1, compare=False)

    def is_valid(self):
        return (
            bool(self.protocol.strip())
            and bool(self.address.strip())
            and bool(self.user_id.strip())
            and 0 < int(self.port or 0) <= 65535
        )

    def display_label(self):
        if self.name.strip():
            return self.name.strip()
        return f"{self.address}:{self.port} ({self.protocol.upper()})"

    def ping_text(self):
        if self.ping_in_progress:
            return "Pinging..."
        if self.last_ping_ms >= 0:
            return f"{self.last_ping_ms} ms"
        return "--"

    def to_json(self):
        data = {}
        for key, attr in _JSON_KEYS:
            value = getattr(self, attr)
            data[key] = dict(value) if attr == "extra" else value
        return data

    @classmethod
    def from_json(cls, data):
        if not isinstance(data, dict):
            raise ValidationError("Profile entry is not an object.")

        kwargs = {}
        for key, attr in _JSON_KEYS:
            if key not in data:
                continue
            value = data[key]
            if attr == "port":
                kwargs[attr] = _safe_port(value)
            elif attr == "allow_insecure":
                kwargs[attr] = bool(value)
            elif attr == "extra":
                kwargs[attr] = dict(value) if isinstance(value, dict) else {}
            else:
                text = _clean_str(value)
                kwargs[attr] = text.lower() if attr in _LOWERCASE_FIELDS else text

        profile = cls(**kwargs)
        if not profile.id:
            profile.id = new_profile_id()
        if not profile.is_valid():
            raise ValidationError(f"Profile '{profile.display_label()}' is missing required fields.")
        return profile

    # ===============================
    # SHARE LINK / QR EXPORT
    # ===============================

    def to_share_link(self):
        if not self.is_valid():
            raise ValidationError("Cannot export an invalid profile.")
        proto = self.protocol.lower()
        if proto == "vmess":
            payload = dict(self.extra)
            payload.update({
                "v": "2",
                "ps": self.name or "VMESS",
                "add": self.address,
                "port": str(self.port),
                "id": self.user_id,
                "aid": str(payload.get("aid", "0")),
                "scy": self.encryption or "auto",
                "net": self.network or "tcp",
                "type": self.header_type or "none",
                "host": self.host_header,
                "path": self.path,
                "tls": "" if self.security == "none" else self.security,
                "sni": self.sni,
                "alpn": self.alpn,
                "fp": self.fingerprint,
                "pbk": self.public_key,
                "sid": self.short_id,
                "spx": self.spider_x,
                "flow": self.flow,
                "serviceName": self.service_name,
            })
            if self.allow_insecure:
                payload["allowInsecure"] = "1"
            encoded = base64.b64encode(json.dumps(payload, ensure_ascii=False).encode("utf-8")).decode("ascii")
            return f"vmess://{encoded}"

        if proto == "vless":
            query_map = {
                "encryption": self.encryption or "none",
                "flow": self.flow,
                "security": self.security or "none",
                "type": self.network or "tcp",
                "host": self.host_header,
                "path": self.path,
                "sni": self.sni,
                "alpn": self.alpn,
                "fp": self.fingerprint,
                "pbk": self.public_key,
                "sid": self.short_id,
                "spx": self.spider_x,
                "serviceName": self.service_name,
                "headerType": self.header_type,
                "allowInsecure": "1" if self.allow_insecure else "",
            }
            q = urlencode([(k, v) for k, v in query_map.items() if v])
            user = quote(self.user_id, safe="")
            host = f"[{self.address}]" if ":" in self.address else self.address
            fragment = quote(self.name or "VLESS", safe="")
            return f"vless://{user}@{host}:{self.port}?{q}#{fragment}"

        raise ValidationError(f"Unsupported protocol: {self.protocol}")

    def share_qr_png(self):
        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=2,
        )
        qr.add_data(self.to_share_link())
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        output = io.BytesIO()
        img.save(output, format="PNG")
        return output.getvalue()
