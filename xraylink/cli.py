"""Command-line front end; long-running commands drive the Qt event loop."""

import argparse
import json
import os
import signal
import sys

from PySide6.QtCore import QCoreApplication, QTimer

from xraylink import APP_NAME, APP_VERSION
from xraylink.configbuilder import config_to_json
from xraylink.errors import ValidationError
from xraylink.log import get_logger
from xraylink.platforms import detect_xray_path
from xraylink.session import RULE_LIST_KEYS, ConnectionState, SessionOrchestrator
from xraylink.settings import SETTINGS_FILE, JsonSettingsStore, default_data_dir
from xraylink.speedtest import SpeedTestPhase


def _on_off(value):
    v = str(value).strip().lower()
    if v in {"1", "on", "true", "yes"}:
        return True
    if v in {"0", "off", "false", "no"}:
        return False
    raise argparse.ArgumentTypeError("expected on/off")


def build_parser():
    parser = argparse.ArgumentParser(prog=APP_NAME, description="xray-core session manager")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    parser.add_argument("--data-dir", default=None, help="Directory for profiles, settings and logs")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import vmess:// or vless:// links")
    p.add_argument("links", nargs="*", help="Share links")
    p.add_argument("--file", help="Read links from a text file")
    p.add_argument("--group", default="General", help="Group name")

    p = sub.add_parser("subscribe", help="Fetch a subscription URL and import its links")
    p.add_argument("url")
    p.add_argument("--group", default="General", help="Group name")

    sub.add_parser("list", help="List profiles")

    p = sub.add_parser("remove", help="Remove a profile")
    p.add_argument("row", type=int, help="1-based row")

    p = sub.add_parser("select", help="Select the current profile")
    p.add_argument("row", type=int, help="1-based row")

    p = sub.add_parser("ping", help="TCP ping one or all profiles")
    p.add_argument("row", type=int, nargs="?", help="1-based row, all when omitted")

    p = sub.add_parser("share", help="Print a profile's share link")
    p.add_argument("row", type=int, help="1-based row")
    p.add_argument("--qr", metavar="FILE", help="Also write a QR code PNG")

    p = sub.add_parser("config", help="Print the compiled xray-core config")
    p.add_argument("row", type=int, nargs="?", help="1-based row, current when omitted")

    p = sub.add_parser("connect", help="Connect and stay in the foreground until Ctrl+C")
    p.add_argument("row", type=int, nargs="?", help="1-based row, current when omitted")
    p.add_argument("--speedtest", action="store_true", help="Run a speed test through the tunnel, then exit")

    sub.add_parser("speedtest", help="Run a direct speed test")

    p = sub.add_parser("set", help="Change settings")
    p.add_argument("--xray", metavar="PATH", help="xray-core executable path ('auto' to detect)")
    p.add_argument("--system-proxy", type=_on_off, metavar="on|off")
    p.add_argument("--tun", type=_on_off, metavar="on|off")
    p.add_argument("--auto-disable-proxy", type=_on_off, metavar="on|off")
    p.add_argument("--whitelist", type=_on_off, metavar="on|off")
    p.add_argument("--stats", type=_on_off, metavar="on|off")
    p.add_argument("--mux", type=_on_off, metavar="on|off")
    p.add_argument("--logging", type=_on_off, metavar="on|off")
    p.add_argument("--log-level", choices=["debug", "info", "warning", "error", "none"])
    p.add_argument("--socks-port", type=int)
    p.add_argument("--http-port", type=int)
    p.add_argument("--api-port", type=int)
    p.add_argument("--rule", nargs=2, action="append", metavar=("KEY", "TEXT"),
                   help=f"Rule list, KEY is one of: {', '.join(RULE_LIST_KEYS)}")
    p.add_argument("--dns", metavar="SERVERS", help="Custom DNS servers for TUN mode")
    return parser


def _row_index(session, row):
    index = (row - 1) if row is not None else session.current_profile_index
    if session.store.profile_at(index) is None:
        print(f"No profile at row {row if row is not None else index + 1}", file=sys.stderr)
        return None
    return index


def _print_log(line):
    print(line, file=sys.stderr)


# ===============================
# COMMANDS
# ===============================

def cmd_import(session, args):
    text = "\n".join(args.links)
    if args.file:
        with open(args.file, "r", encoding="utf8") as f:
            text += "\n" + f.read()
    count = session.import_profile_batch(text, group=args.group)
    if count <= 0:
        print(session.last_error, file=sys.stderr)
        return 1
    print(f"Imported {count} profile(s).")
    return 0


def cmd_subscribe(session, args):
    count = session.import_subscription(args.url, group=args.group)
    if count <= 0:
        print(session.last_error or "Nothing imported.", file=sys.stderr)
        return 1
    print(f"Imported {count} profile(s).")
    return 0


def cmd_list(session, args):
    if not len(session.store):
        print("No profiles.")
        return 0
    for i, profile in enumerate(session.store.profiles):
        marker = "*" if i == session.current_profile_index else " "
        print(f"{marker}{i + 1:>3}  {profile.display_label():<40} {profile.protocol:<6} "
              f"{profile.network:<5} {profile.security:<8} [{profile.group_name or '-'}] {profile.ping_text()}")
    return 0


def cmd_remove(session, args):
    index = _row_index(session, args.row)
    if index is None:
        return 1
    session.remove_profile(index)
    return 0


def cmd_select(session, args):
    index = _row_index(session, args.row)
    if index is None:
        return 1
    session.set_current_profile_index(index)
    return 0


def cmd_share(session, args):
    index = _row_index(session, args.row)
    if index is None:
        return 1
    profile = session.store.profile_at(index)
    try:
        print(profile.to_share_link())
        if args.qr:
            with open(args.qr, "wb") as f:
                f.write(profile.share_qr_png())
    except ValidationError as e:
        print(str(e), file=sys.stderr)
        return 1
    return 0


def cmd_config(session, args):
    index = _row_index(session, args.row)
    if index is None:
        return 1
    print(config_to_json(session.build_config_for(index)))
    return 0


def cmd_set(session, args):
    if args.xray:
        path = args.xray
        if path == "auto":
            path = detect_xray_path([session.data_dir], session.platform)
            if not path:
                print("xray-core not found on PATH.", file=sys.stderr)
                return 1
        session.set_executable_path(path)
    if args.system_proxy is not None:
        session.set_use_system_proxy(args.system_proxy)
    if args.tun is not None:
        session.set_tun_mode(args.tun)
    if args.auto_disable_proxy is not None:
        session.set_auto_disable_system_proxy(args.auto_disable_proxy)
    if args.whitelist is not None:
        session.set_whitelist_mode(args.whitelist)
    if args.logging is not None:
        session.set_logging_enabled(args.logging)
    for key, text in args.rule or []:
        try:
            session.set_rule_list(key, text)
        except KeyError:
            print(f"Unknown rule list: {key}", file=sys.stderr)
            return 1
    if args.dns is not None:
        session.set_custom_dns_servers(args.dns)

    advanced = session.settings["advanced"]
    ports = session.settings["ports"]
    changed = False
    for value, section, key in (
        (args.stats, advanced, "enable_stats_api"),
        (args.mux, advanced, "enable_mux"),
        (args.log_level, advanced, "log_level"),
        (args.socks_port, ports, "socks"),
        (args.http_port, ports, "http"),
        (args.api_port, ports, "api"),
    ):
        if value is not None:
            section[key] = value
            changed = True
    if changed:
        session.save_settings()

    print(json.dumps(session.settings, indent=2))
    return 0


def _run_loop(app, until):
    """Spin the event loop until ``until()`` returns an exit code or Ctrl+C."""
    result = {"code": 0}

    def check():
        code = until()
        if code is not None:
            result["code"] = code
            app.quit()

    def _handle_sigint(_sig, _frame):
        result["code"] = 130
        app.quit()

    signal.signal(signal.SIGINT, _handle_sigint)
    # lets the interpreter run the SIGINT handler while Qt is in its loop
    poll = QTimer()
    poll.timeout.connect(check)
    poll.start(100)
    app.exec()
    poll.stop()
    return result["code"]


def cmd_ping(session, args, app):
    if args.row is None:
        session.ping_all_profiles()
    else:
        index = _row_index(session, args.row)
        if index is None:
            return 1
        session.ping_profile(index)

    def done():
        if any(p.ping_in_progress for p in session.store):
            return None
        return 0

    code = _run_loop(app, done)
    cmd_list(session, args)
    return code


def _speed_test_done(session):
    phase = session.speed_test.state.phase
    if session.speed_test.running:
        return None
    if phase == SpeedTestPhase.DONE:
        print(session.speed_test_history[0])
        return 0
    if phase == SpeedTestPhase.ERROR:
        print(session.speed_test.state.error, file=sys.stderr)
        return 1
    return None


def cmd_speedtest(session, args, app):
    session.events.subscribe("log", _print_log)
    session.start_speed_test()
    return _run_loop(app, lambda: _speed_test_done(session))


def cmd_connect(session, args, app):
    index = _row_index(session, args.row)
    if index is None:
        return 1
    session.events.subscribe("log", _print_log)
    session.events.subscribe("state_changed", lambda state: print(f"[{state.value}]", file=sys.stderr))
    speed_test = {"started": False}

    def until():
        if session.state == ConnectionState.ERROR and not session.supervisor.is_running():
            print(session.last_error, file=sys.stderr)
            return 1
        if session.state == ConnectionState.DISCONNECTED and not session.supervisor.is_running():
            return 0
        if args.speedtest and session.connected:
            if not speed_test["started"]:
                speed_test["started"] = True
                session.start_speed_test()
                return None
            return _speed_test_done(session)
        return None

    session.connect_profile(index)
    code = _run_loop(app, until)
    session.shutdown()
    return code


def main(argv=None):
    args = build_parser().parse_args(argv)
    data_dir = args.data_dir or default_data_dir()
    os.makedirs(data_dir, exist_ok=True)
    get_logger(data_dir)

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    session = SessionOrchestrator(JsonSettingsStore(os.path.join(data_dir, SETTINGS_FILE)), data_dir)
    if not session.executable_path:
        detected = detect_xray_path([data_dir], session.platform)
        if detected:
            session.set_executable_path(detected)

    simple = {
        "import": cmd_import,
        "subscribe": cmd_subscribe,
        "list": cmd_list,
        "remove": cmd_remove,
        "select": cmd_select,
        "share": cmd_share,
        "config": cmd_config,
        "set": cmd_set,
    }
    looping = {
        "ping": cmd_ping,
        "speedtest": cmd_speedtest,
        "connect": cmd_connect,
    }
    if args.command in simple:
        return simple[args.command](session, args)
    return looping[args.command](session, args, app)


if __name__ == "__main__":
    sys.exit(main())
