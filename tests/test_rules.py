from xraylink.rules import RoutingOptions, normalize_dns_server, normalize_log_level, parse_dns_servers, parse_rules


def test_parse_rules_splits_trims_and_dedupes():
    text = "google.com, Youtube.com;youtube.com\n\n  chrome.exe \r\nGOOGLE.com"
    assert parse_rules(text) == ["google.com", "Youtube.com", "chrome.exe"]
    assert parse_rules("") == []
    assert parse_rules(None) == []


def test_normalize_dns_server():
    assert normalize_dns_server("1.1.1.1") == "1.1.1.1"
    assert normalize_dns_server("8.8.8.8:53") == "8.8.8.8"
    assert normalize_dns_server("[2606:4700::1111]:53") == "2606:4700::1111"
    assert normalize_dns_server("2606:4700:4700::1111") == "2606:4700:4700::1111"
    assert normalize_dns_server("https://dns.Google/dns-query") == "dns.google"
    assert normalize_dns_server("one.one.one.one.") == "one.one.one.one"
    assert normalize_dns_server("  ") == ""


def test_parse_dns_servers_dedupes():
    assert parse_dns_servers("1.1.1.1, 1.1.1.1:53\n8.8.8.8 9.9.9.9") == ["1.1.1.1", "8.8.8.8", "9.9.9.9"]


def test_normalize_log_level():
    assert normalize_log_level("DEBUG") == "debug"
    assert normalize_log_level("verbose") == "warning"


def test_options_from_settings():
    options = RoutingOptions.from_settings({
        "ports": {"socks": 1080, "http": "8080", "api": 0},
        "network": {"tun_mode": True},
        "routing": {"whitelist_mode": True, "proxy_domains": "a.com,b.com", "block_apps": "bad.exe"},
        "advanced": {"enable_mux": True, "log_level": "info"},
        "tunnel": {"name": "tun7"},
    })
    assert options.socks_port == 1080
    assert options.http_port == 8080
    assert options.api_port == 10085
    assert options.enable_tun
    assert options.whitelist_mode
    assert options.enable_mux
    assert options.log_level == "info"
    assert options.tun_interface_name == "tun7"
    assert options.proxy_domains == ["a.com", "b.com"]
    assert options.block_processes == ["bad.exe"]
    assert options.has_process_rules
    assert not options.enable_process_routing


def test_options_defaults():
    options = RoutingOptions.from_settings({})
    assert (options.socks_port, options.http_port, options.api_port) == (10808, 10808, 10085)
    assert options.enable_stats_api
    assert not options.has_process_rules
