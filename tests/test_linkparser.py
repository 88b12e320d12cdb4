import base64
import json

import pytest

from xraylink.errors import ParseError
from xraylink.linkparser import decode_flexible_base64, is_share_link, parse_link


def _vmess(obj, urlsafe=True, padded=False, fragment=""):
    raw = json.dumps(obj).encode("utf-8")
    encoded = base64.urlsafe_b64encode(raw) if urlsafe else base64.b64encode(raw)
    if not padded:
        encoded = encoded.rstrip(b"=")
    link = "vmess://" + encoded.decode("ascii")
    return link + fragment


def test_vmess_urlsafe_unpadded_ws():
    profile = parse_link(_vmess({"add": "example.com", "port": "443", "id": "uuid", "net": "ws", "path": "x"}))
    assert profile.protocol == "vmess"
    assert profile.address == "example.com"
    assert profile.port == 443
    assert profile.user_id == "uuid"
    assert profile.network == "ws"
    assert profile.path == "/x"
    assert profile.encryption == "auto"
    assert profile.id


def test_vmess_fragment_name_wins_and_unknown_keys_are_kept():
    link = _vmess(
        {"ps": "json name", "add": "h", "port": 8443, "id": "u", "aid": "0", "tls": "TLS", "custom": "1"},
        urlsafe=False,
        padded=True,
        fragment="#My%20Server",
    )
    profile = parse_link(link)
    assert profile.name == "My Server"
    assert profile.port == 8443
    assert profile.security == "tls"
    assert profile.extra == {"custom": "1"}
    assert profile.original_link == link


def test_vmess_ws_empty_path_defaults_to_root():
    profile = parse_link(_vmess({"add": "h", "port": "80", "id": "u", "net": "ws"}))
    assert profile.path == "/"


def test_vmess_bad_base64():
    with pytest.raises(ParseError) as exc:
        parse_link("vmess://!!!not-base64!!!")
    assert exc.value.code == ParseError.BASE64_DECODE_FAILED


def test_vmess_invalid_json():
    link = "vmess://" + base64.b64encode(b"not json").decode("ascii")
    with pytest.raises(ParseError) as exc:
        parse_link(link)
    assert exc.value.code == ParseError.INVALID_JSON


def test_vmess_json_array_is_invalid_json():
    link = "vmess://" + base64.b64encode(b"[1, 2]").decode("ascii")
    with pytest.raises(ParseError) as exc:
        parse_link(link)
    assert exc.value.code == ParseError.INVALID_JSON


def test_vmess_missing_fields():
    with pytest.raises(ParseError) as exc:
        parse_link(_vmess({"add": "h", "port": "443"}))
    assert exc.value.code == ParseError.MISSING_REQUIRED_FIELDS


def test_vless_reality():
    link = "vless://abc@1.2.3.4:443?type=tcp&security=reality&sni=x.com&pbk=KEY&sid=ab#Name%20One"
    profile = parse_link(link)
    assert profile.protocol == "vless"
    assert profile.address == "1.2.3.4"
    assert profile.port == 443
    assert profile.user_id == "abc"
    assert profile.network == "tcp"
    assert profile.security == "reality"
    assert profile.sni == "x.com"
    assert profile.public_key == "KEY"
    assert profile.short_id == "ab"
    assert profile.name == "Name One"
    assert profile.encryption == "none"


def test_vless_port_defaults_to_443_and_server_name_fallback():
    profile = parse_link("vless://abc@example.org?security=tls&serverName=sni.example.org")
    assert profile.port == 443
    assert profile.sni == "sni.example.org"


def test_vless_ws_path_normalized():
    profile = parse_link("vless://abc@example.org:8080?type=ws&path=ray")
    assert profile.path == "/ray"


def test_vless_invalid_port():
    with pytest.raises(ParseError) as exc:
        parse_link("vless://abc@example.org:99999")
    assert exc.value.code == ParseError.INVALID_URL


def test_vless_missing_user():
    with pytest.raises(ParseError) as exc:
        parse_link("vless://example.org:443")
    assert exc.value.code == ParseError.MISSING_REQUIRED_FIELDS


def test_scheme_is_case_insensitive():
    assert parse_link("VLESS://abc@example.org:443").protocol == "vless"


def test_unsupported_and_empty():
    with pytest.raises(ParseError) as exc:
        parse_link("trojan://x@y:1")
    assert exc.value.code == ParseError.UNSUPPORTED_FORMAT
    with pytest.raises(ParseError) as exc:
        parse_link("   ")
    assert exc.value.code == ParseError.UNSUPPORTED_FORMAT
    assert str(exc.value) == "Import link is empty."


def test_parse_error_is_value_error():
    with pytest.raises(ValueError):
        parse_link("http://example.com")


def test_each_parse_gets_a_fresh_id():
    link = "vless://abc@example.org:443"
    assert parse_link(link).id != parse_link(link).id


def test_decode_flexible_base64_variants():
    raw = b"hello?>world"
    assert decode_flexible_base64(base64.b64encode(raw).decode()) == raw
    assert decode_flexible_base64(base64.urlsafe_b64encode(raw).decode().rstrip("=")) == raw
    assert decode_flexible_base64("") == b""
    assert decode_flexible_base64("%%%") == b""


def test_is_share_link():
    assert is_share_link("vmess://abc")
    assert is_share_link("  VLESS://abc")
    assert not is_share_link("ss://abc")


def test_vless_ws_tls_with_name():
    profile = parse_link("vless://user@host:443?type=ws&security=tls&path=abc#Name")
    assert profile.protocol == "vless"
    assert profile.network == "ws"
    assert profile.security == "tls"
    assert profile.path == "/abc"
    assert profile.name == "Name"
