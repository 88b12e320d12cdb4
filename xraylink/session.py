import os
import threading
from enum import Enum
from functools import partial

from PySide6.QtCore import QObject, QTimer, Signal, Slot

from xraylink.configbuilder import build_config, write_config
from xraylink.engine import PROCESS_ROUTING_MIN_VERSION, EngineCapabilities, query_traffic_stats
from xraylink.errors import ConfigWriteError, NetworkError, ParseError, ProcessError, SystemProxyError
from xraylink.events import EventHub
from xraylink.linkparser import parse_link
from xraylink.log import LogBuffer, get_logger, is_noisy_core_line, is_noisy_traffic_line, log_level_for
from xraylink.ping import PING_STAGGER_MS, TcpPinger
from xraylink.platforms import current_platform
from xraylink.process import ProcessSupervisor
from xraylink.rules import RoutingOptions, parse_dns_servers, parse_rules
from xraylink.selftest import check_local_proxy
from xraylink.settings import PROFILES_FILE, RUNTIME_CONFIG_FILE
from xraylink.speedtest import SpeedTestEngine
from xraylink.store import ProfileStore
from xraylink.subscriptions import extract_share_links, fetch_subscription_links
from xraylink.sysproxy import default_system_proxy

DEFAULT_GROUP = "General"
STATS_POLL_INTERVAL_MS = 1000
STATS_FAILURE_LOG_EVERY = 30
SELF_TEST_SETTLE_MS = 700
SELF_TEST_RETRY_MS = 700
SELF_TEST_MAX_ATTEMPTS = 4
STOP_TIMEOUT_MS = 3000

RULE_LIST_KEYS = (
    "proxy_domains",
    "direct_domains",
    "block_domains",
    "proxy_apps",
    "direct_apps",
    "block_apps",
)


class ConnectionState(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


def run_in_thread(fn):
    threading.Thread(target=fn, daemon=True).start()


class SessionOrchestrator(QObject):
    """Connection state machine over the profile store, config compiler and supervisor.

    Observers subscribe on ``events``: ``state_changed(state)``,
    ``error_changed(message)``, ``traffic_changed(rx, tx)``, ``log(line)``,
    ``current_profile_changed(index)``, ``speed_test_changed(state)``.
    """

    # results of off-thread work, delivered back on the control thread
    _stats_finished = Signal(object)
    _self_test_finished = Signal(object)

    def __init__(self, settings_store, data_dir, supervisor=None, system_proxy=None,
                 speed_test=None, capabilities=None, pinger=None, platform=None,
                 stats_query=None, self_test=None, run_in_background=None, parent=None):
        super().__init__(parent)
        self.events = EventHub()
        self.data_dir = data_dir
        self.profiles_path = os.path.join(data_dir, PROFILES_FILE)
        self.config_path = os.path.join(data_dir, RUNTIME_CONFIG_FILE)

        self._settings_store = settings_store
        self.settings = settings_store.load()
        self.store = ProfileStore()
        self.supervisor = supervisor or ProcessSupervisor()
        self.system_proxy = system_proxy or default_system_proxy()
        self.speed_test = speed_test or SpeedTestEngine()
        self.capabilities = capabilities or EngineCapabilities()
        self.pinger = pinger or TcpPinger()
        self.platform = platform or current_platform()
        self._stats_query = stats_query or query_traffic_stats
        self._self_test = self_test or check_local_proxy
        self._run_in_background = run_in_background or run_in_thread
        self._logger = get_logger()

        self.state = ConnectionState.DISCONNECTED
        self.last_error = ""
        self.rx_bytes = 0
        self.tx_bytes = 0
        self.current_profile_index = -1
        self.active_options = None
        self._pending_reconnect_index = -1
        self._stopping = False
        self._session = 0
        self._stats_query_session = None
        self._stats_failure_count = 0
        self._logs = LogBuffer(limit=self.settings["advanced"].get("log_limit", 200))

        self._poll_timer = QTimer(self)
        self._poll_timer.setInterval(STATS_POLL_INTERVAL_MS)
        self._poll_timer.timeout.connect(self.poll_traffic_stats)
        self._stats_finished.connect(self._on_stats_result)
        self._self_test_finished.connect(self._on_self_test_result)

        self.supervisor.events.subscribe("started", self._on_process_started)
        self.supervisor.events.subscribe("stopped", self._on_process_stopped)
        self.supervisor.events.subscribe("error", self._on_process_error)
        self.supervisor.events.subscribe("log_line", self._on_log_line)
        self.supervisor.events.subscribe("traffic_changed", self._on_log_traffic)
        self.speed_test.events.subscribe("log", self.append_system_log)
        self.speed_test.events.subscribe("changed", partial(self.events.emit, "speed_test_changed"))

        self.store.load(self.profiles_path)
        self._restore_current_profile()

    # ===============================
    # STATE
    # ===============================

    @property
    def connected(self):
        return self.state == ConnectionState.CONNECTED

    @property
    def busy(self):
        return self.state == ConnectionState.CONNECTING

    @property
    def recent_logs(self):
        return self._logs.lines

    @property
    def latest_log_line(self):
        return self._logs.latest

    @property
    def speed_test_history(self):
        return self.speed_test.history

    def _set_state(self, state):
        if self.state == state:
            return
        self.state = state
        self.events.emit("state_changed", state)

    def _set_error(self, message):
        if self.last_error == message:
            return
        self.last_error = message
        self.events.emit("error_changed", message)

    def _fail(self, message):
        self._set_error(message)
        self._set_state(ConnectionState.ERROR)
        self.append_system_log(f"[System] {message}")

    def _set_traffic(self, rx, tx):
        if (rx, tx) == (self.rx_bytes, self.tx_bytes):
            return
        self.rx_bytes = rx
        self.tx_bytes = tx
        self.events.emit("traffic_changed", rx, tx)

    # ===============================
    # LOGGING
    # ===============================

    @property
    def logging_enabled(self):
        return bool(self.settings["core"].get("logging_enabled", True))

    def set_logging_enabled(self, enabled):
        self.settings["core"]["logging_enabled"] = bool(enabled)
        if not enabled:
            self._logs.clear()
        self.save_settings()

    def append_system_log(self, message):
        if not self.logging_enabled or message == self._logs.latest:
            return
        self._record_log(message)

    def _on_log_line(self, line):
        if not self.logging_enabled:
            return
        if is_noisy_traffic_line(line) or "[api-in -> api]" in line:
            return
        if self.settings["advanced"].get("suppress_noisy_core_logs", True) and is_noisy_core_line(line):
            return
        self._record_log(line)

    def _record_log(self, line):
        if self._logs.append(line):
            self._logger.log(log_level_for(line), line)
            self.events.emit("log", line)

    # ===============================
    # SETTINGS
    # ===============================

    def save_settings(self):
        self._settings_store.save(self.settings)

    @property
    def executable_path(self):
        return str(self.settings["core"].get("executable_path") or "").strip()

    def set_executable_path(self, path):
        path = os.path.abspath(os.path.expanduser(path)) if str(path or "").strip() else ""
        if path == self.executable_path:
            return
        self.settings["core"]["executable_path"] = path
        self.capabilities.invalidate()
        self.save_settings()
        self.append_system_log(f"[System] xray-core path set to {path or '<none>'}.")

    @property
    def use_system_proxy(self):
        return bool(self.settings["network"].get("use_system_proxy", False))

    @property
    def tun_mode(self):
        return bool(self.settings["network"].get("tun_mode", False))

    @property
    def auto_disable_system_proxy(self):
        return bool(self.settings["network"].get("auto_disable_system_proxy_on_disconnect", False))

    def set_use_system_proxy(self, enabled):
        enabled = bool(enabled)
        self.settings["network"]["use_system_proxy"] = enabled
        if enabled and self.tun_mode:
            self.settings["network"]["tun_mode"] = False
            self.append_system_log("[System] TUN mode disabled; system proxy mode selected.")
        self.save_settings()
        if self.connected:
            self.apply_system_proxy(enabled)

    def set_tun_mode(self, enabled):
        enabled = bool(enabled)
        self.settings["network"]["tun_mode"] = enabled
        if enabled and self.use_system_proxy:
            self.settings["network"]["use_system_proxy"] = False
            if self.connected:
                self.apply_system_proxy(False)
        self.save_settings()
        if self.connected:
            self.append_system_log("[System] TUN mode change applies on next connect.")

    def set_auto_disable_system_proxy(self, enabled):
        self.settings["network"]["auto_disable_system_proxy_on_disconnect"] = bool(enabled)
        self.save_settings()

    def set_whitelist_mode(self, enabled):
        self.settings["routing"]["whitelist_mode"] = bool(enabled)
        self.save_settings()

    def set_rule_list(self, key, text):
        if key not in RULE_LIST_KEYS:
            raise KeyError(key)
        self.settings["routing"][key] = "\n".join(parse_rules(text))
        self.save_settings()

    def set_custom_dns_servers(self, text):
        self.settings["routing"]["custom_dns_servers"] = "\n".join(parse_dns_servers(text))
        self.save_settings()

    def build_options(self):
        options = RoutingOptions.from_settings(self.settings)
        options.enable_process_routing = self.capabilities.probe(self.executable_path)
        if options.enable_tun:
            options.tun_interface_name = self.platform.tun_interface_name(options.tun_interface_name)
        return options

    def build_config_for(self, row):
        profile = self.store.profile_at(row)
        if profile is None:
            raise IndexError(f"No profile at row {row}")
        return build_config(profile, self.build_options(), self.platform)

    # ===============================
    # PROFILES
    # ===============================

    def _restore_current_profile(self):
        count = len(self.store)
        index = int(self.settings["profiles"].get("current_index", -1))
        by_id = self.store.index_of_id(self.settings["profiles"].get("current_id", ""))
        if count == 0:
            index = -1
        elif by_id >= 0:
            index = by_id
        elif index < 0 or index >= count:
            index = 0
        self.current_profile_index = index

    def _save_profiles(self):
        try:
            self.store.save(self.profiles_path)
        except ConfigWriteError as e:
            self.append_system_log(f"[Profiles] Failed to save profiles: {e}")

    def set_current_profile_index(self, index):
        if index == self.current_profile_index or index < -1 or index >= len(self.store):
            return
        previous = self.current_profile_index
        self.current_profile_index = index
        profile = self.store.profile_at(index)
        self.settings["profiles"]["current_index"] = index
        self.settings["profiles"]["current_id"] = profile.id if profile else ""
        self.events.emit("current_profile_changed", index)
        self.save_settings()

        if index < 0:
            self._pending_reconnect_index = -1
            return
        if not self.busy and previous >= 0 and (self.connected or self.supervisor.is_running()):
            self._pending_reconnect_index = index
            self.append_system_log("[System] Switching to selected profile...")
            self.disconnect()

    def _accept_import(self):
        if self.last_error:
            self._set_error("")
        if self.state == ConnectionState.ERROR:
            self._set_state(ConnectionState.DISCONNECTED)

    def _import_links(self, links, source_id, source_name, group):
        imported = 0
        last_index = -1
        for link in links:
            try:
                profile = parse_link(link)
            except ParseError as e:
                self.append_system_log(f"[Import] Skipped link: {e}")
                continue
            if not profile.name:
                profile.name = f"{profile.protocol.upper()} {profile.address}"
            profile.group_name = group
            profile.source_name = source_name
            profile.source_id = source_id
            if self.store.add_profile(profile):
                imported += 1
                last_index = self.store.index_of_id(profile.id)
                if last_index < 0:
                    last_index = self.store.find_equivalent(profile)
        return imported, last_index

    def import_profile_link(self, link, group=DEFAULT_GROUP):
        try:
            profile = parse_link(link)
        except ParseError as e:
            self._set_error(str(e))
            return False

        if not profile.name:
            profile.name = f"{profile.protocol.upper()} {profile.address}"
        profile.group_name = group.strip() or DEFAULT_GROUP
        profile.source_name = "Manual import"
        profile.source_id = "manual"
        if not self.store.add_profile(profile):
            self._set_error("Failed to add imported profile.")
            return False

        self._save_profiles()
        index = self.store.find_equivalent(profile)
        self.set_current_profile_index(index)
        if self.settings["profiles"].get("auto_ping") and index >= 0:
            self.ping_profile(index)
        self._accept_import()
        return True

    def import_profile_batch(self, text, group=DEFAULT_GROUP):
        links = extract_share_links(text)
        if not links:
            self._set_error("No supported VMESS/VLESS links found in input.")
            return 0

        count, last_index = self._import_links(links, "manual", "Manual import", group.strip() or DEFAULT_GROUP)
        if count <= 0:
            self._set_error("No valid profiles were imported from input.")
            return 0

        self._save_profiles()
        if self.current_profile_index < 0 and last_index >= 0:
            self.set_current_profile_index(last_index)
        if self.settings["profiles"].get("auto_ping"):
            self.ping_all_profiles()
        self.append_system_log(f"[Import] Imported {count} profile(s).")
        self._accept_import()
        return count

    def import_subscription(self, url, group=DEFAULT_GROUP, fetch=fetch_subscription_links):
        """Blocking fetch; call from the CLI or wrap in a worker."""
        try:
            links = fetch(url)
        except NetworkError as e:
            self._set_error(str(e))
            self.append_system_log(f"[Import] Subscription failed: {e}")
            return 0
        if not links:
            self._set_error("Subscription returned no supported VMESS/VLESS links.")
            return 0

        count, last_index = self._import_links(links, url.strip(), "Subscription", group.strip() or DEFAULT_GROUP)
        if count:
            self._save_profiles()
            if self.current_profile_index < 0 and last_index >= 0:
                self.set_current_profile_index(last_index)
            self._accept_import()
        self.append_system_log(f"[Import] Subscription imported {count} profile(s).")
        return count

    def remove_profile(self, row):
        previous = self.current_profile_index
        if not self.store.remove_at(row):
            return False

        count = len(self.store)
        if count == 0:
            target = -1
        elif previous == row:
            target = min(row, count - 1)
        elif row < previous:
            target = previous - 1
        else:
            target = min(previous, count - 1)

        if previous == row and target >= 0:
            # another profile now occupies the selected row; force a re-resolve
            self.current_profile_index = -1
        self.set_current_profile_index(target)
        self._save_profiles()
        return True

    # ===============================
    # PING
    # ===============================

    def ping_profile(self, row):
        profile = self.store.profile_at(row)
        if profile is None:
            return
        if not profile.address.strip() or not profile.port:
            self.store.set_ping_result(row, -1)
            return

        self.store.set_pinging(row, True)
        profile_id = profile.id
        self.pinger.probe(profile.address.strip(), profile.port, partial(self._on_ping_result, profile_id))

    def _on_ping_result(self, profile_id, ping_ms):
        # rows may have shifted while the probe was in flight
        row = self.store.index_of_id(profile_id)
        if row >= 0:
            self.store.set_ping_result(row, ping_ms)

    def ping_all_profiles(self):
        for i, profile in enumerate(self.store.profiles):
            self.store.set_pinging(i, True)
            QTimer.singleShot(i * PING_STAGGER_MS, partial(self._ping_by_id, profile.id))

    def _ping_by_id(self, profile_id):
        row = self.store.index_of_id(profile_id)
        if row >= 0:
            self.ping_profile(row)

    # ===============================
    # CONNECT / DISCONNECT
    # ===============================

    def _log_ignored_app_rules(self, options):
        if options.enable_process_routing or not options.has_process_rules:
            return
        floor = ".".join(str(v) for v in PROCESS_ROUTING_MIN_VERSION)
        self.append_system_log(
            f"[System] App rules ignored: installed Xray {self.capabilities.version_text} "
            f"does not support process routing (requires Xray {floor}+)."
        )

    def connect_profile(self, index=None):
        if index is None:
            index = self.current_profile_index
        if self.busy:
            return

        if self.supervisor.is_running():
            if self.connected and index != self.current_profile_index and self.store.profile_at(index):
                self.set_current_profile_index(index)
                return
            if not self.connected:
                self.append_system_log("[System] Warning: xray-core is already running; state resynced to Connected.")
                self._set_state(ConnectionState.CONNECTED)
            return

        profile = self.store.profile_at(index)
        if profile is None:
            self._fail("Please select a valid server profile.")
            return
        exe = self.executable_path
        if not exe:
            self._fail("Set the xray-core executable path first.")
            return
        if not os.path.exists(exe):
            self._fail("xray-core binary not found at selected path.")
            return

        self.set_current_profile_index(index)
        options = self.build_options()
        self._log_ignored_app_rules(options)
        config = build_config(profile, options, self.platform)
        try:
            write_config(config, self.config_path)
        except ConfigWriteError as e:
            self._fail(str(e))
            return

        self.active_options = options
        self._session += 1
        self._set_traffic(0, 0)
        self._set_error("")
        self._set_state(ConnectionState.CONNECTING)
        self.append_system_log(f"[System] Connecting to {profile.display_label()}...")
        try:
            self.supervisor.start(exe, self.config_path, os.path.dirname(exe))
        except ProcessError as e:
            self._fail(str(e))

    def disconnect(self):
        self._poll_timer.stop()
        self.speed_test.cancel()

        if self.supervisor.is_running():
            self._stopping = True
            self._set_state(ConnectionState.CONNECTING)
            self.supervisor.stop(STOP_TIMEOUT_MS)
            if self.supervisor.is_running():
                self._stopping = False
                self._fail("xray-core did not stop and is still running.")
                return
            if self._stopping:
                # stop event not delivered synchronously
                self._stopping = False
                self._finish_disconnect()
            return

        self._stopping = False
        self._finish_disconnect()

    def toggle_connection(self):
        if self.supervisor.is_running() or self.connected or self.busy:
            self.disconnect()
        else:
            self.connect_profile()

    def _finish_disconnect(self):
        self._session += 1
        if self.use_system_proxy and self.auto_disable_system_proxy:
            self.apply_system_proxy(False)
        self._set_error("")
        self._set_state(ConnectionState.DISCONNECTED)
        self._maybe_reconnect_pending()

    def _maybe_reconnect_pending(self):
        index = self._pending_reconnect_index
        if index < 0 or self.busy or self.supervisor.is_running():
            return
        self._pending_reconnect_index = -1
        if index < len(self.store):
            QTimer.singleShot(0, partial(self.connect_profile, index))

    # ===============================
    # SUPERVISOR CALLBACKS
    # ===============================

    def _on_process_started(self):
        self._set_state(ConnectionState.CONNECTED)
        options = self.active_options or self.build_options()
        if options.enable_tun:
            name = self.platform.tun_interface_name(options.tun_interface_name)
            self.append_system_log(f"[System] TUN mode active on interface {name}.")
        elif self.use_system_proxy:
            self.apply_system_proxy(True)
        else:
            self.append_system_log(f"[System] Clean mode: point apps at 127.0.0.1:{options.socks_port}.")
        self.append_system_log("[System] xray-core started.")

        if options.enable_stats_api:
            self._stats_failure_count = 0
            self._poll_timer.start()
            self.poll_traffic_stats()

        QTimer.singleShot(SELF_TEST_SETTLE_MS, partial(self.run_self_test, 0, self._session))

    def _on_process_stopped(self, exit_code, crashed, requested):
        self._poll_timer.stop()
        self.speed_test.cancel()
        stopping, self._stopping = self._stopping, False

        if stopping or requested:
            self.append_system_log("[System] xray-core stopped.")
            self._finish_disconnect()
            return

        self._session += 1
        if self.use_system_proxy and self.auto_disable_system_proxy:
            self.apply_system_proxy(False)
        if crashed:
            self._fail("xray-core terminated unexpectedly.")
            return
        self.append_system_log(f"[System] xray-core exited with code {exit_code}.")
        if self.state != ConnectionState.ERROR:
            self._set_state(ConnectionState.DISCONNECTED)

    def _on_process_error(self, message):
        if self._stopping:
            return
        self._poll_timer.stop()
        self.speed_test.cancel()
        self._fail(f"xray-core error: {message}")

    def _on_log_traffic(self, rx, tx):
        # the stats API is authoritative while it is being polled
        if self._poll_timer.isActive():
            return
        self._set_traffic(rx, tx)

    # ===============================
    # SYSTEM PROXY
    # ===============================

    def apply_system_proxy(self, enable, force=False):
        if enable and not self.use_system_proxy:
            return
        options = self.active_options or RoutingOptions.from_settings(self.settings)
        was_enabled = self.system_proxy.is_enabled()
        if not force and was_enabled == enable:
            return

        try:
            if enable:
                self.system_proxy.enable(options.socks_port, options.http_port)
            else:
                self.system_proxy.disable(force)
        except SystemProxyError as e:
            if enable:
                message = f"Connected, but failed to enable system proxy: {e}"
                self.append_system_log(f"[System] {message}")
                self._set_error(message)
            else:
                self.append_system_log(f"[System] Failed to disable system proxy: {e}")
                self._set_error("")
            return

        if enable:
            self.append_system_log("[System] System proxy enabled.")
        elif was_enabled and not self.system_proxy.is_enabled():
            self.append_system_log("[System] System proxy disabled.")

    def clean_system_proxy(self):
        self.apply_system_proxy(False, force=True)

    # ===============================
    # TRAFFIC STATS
    # ===============================

    def poll_traffic_stats(self):
        if not self.connected or self._stats_query_session == self._session:
            return
        options = self.active_options
        if options is None or not options.enable_stats_api:
            return

        exe = self.executable_path
        port = options.api_port
        session = self._session
        # at most one query in flight per session
        self._stats_query_session = session

        def work():
            try:
                up, down = self._stats_query(exe, port)
                result = (session, True, up, down, "")
            except NetworkError as e:
                result = (session, False, 0, 0, str(e))
            self._stats_finished.emit(result)

        self._run_in_background(work)

    @Slot(object)
    def _on_stats_result(self, result):
        session, ok, up, down, error = result
        if self._stats_query_session == session:
            self._stats_query_session = None
        if session != self._session or not self.connected:
            return
        if not ok:
            self._stats_failure_count += 1
            if self._stats_failure_count == 1 or self._stats_failure_count % STATS_FAILURE_LOG_EVERY == 0:
                self.append_system_log(f"[System] Stats API query failed: {error}")
            return
        self._stats_failure_count = 0
        self._set_traffic(down, up)

    # ===============================
    # PROXY SELF-TEST
    # ===============================

    def run_self_test(self, attempt=0, session=None):
        if session is not None and session != self._session:
            return
        if not self.connected:
            return
        session = self._session
        port = (self.active_options or self.build_options()).socks_port

        def work():
            try:
                self._self_test(port)
                result = (session, attempt, port, True, "")
            except NetworkError as e:
                result = (session, attempt, port, False, str(e))
            self._self_test_finished.emit(result)

        self._run_in_background(work)

    @Slot(object)
    def _on_self_test_result(self, result):
        session, attempt, port, ok, error = result
        if session != self._session or not self.connected:
            return
        if ok:
            self.append_system_log(f"[System] Proxy self-test passed (127.0.0.1:{port} is forwarding traffic).")
            return
        if attempt + 1 < SELF_TEST_MAX_ATTEMPTS:
            QTimer.singleShot(SELF_TEST_RETRY_MS, partial(self.run_self_test, attempt + 1, session))
            return

        self.append_system_log(f"[System] Proxy self-test failed: {error}")
        if self.active_options is not None and self.active_options.enable_tun:
            self.append_system_log("[System] Hint: TUN mode needs administrator/root rights to create the interface.")
        elif self.use_system_proxy:
            self.append_system_log("[System] Hint: verify system proxy state and retry with proper permissions.")
        else:
            self.append_system_log(f"[System] Hint: Clean mode requires apps to use 127.0.0.1:{port} manually.")

    # ===============================
    # SPEED TEST
    # ===============================

    def start_speed_test(self):
        if self.busy and not self.connected:
            self.append_system_log("[SpeedTest] Wait for current connection attempt to finish.")
            return
        port = None
        if self.connected:
            port = (self.active_options or self.build_options()).socks_port
        self.speed_test.start(proxy_port=port)

    def cancel_speed_test(self):
        self.speed_test.cancel()

    def shutdown(self):
        self.speed_test.cancel()
        self.pinger.cancel_all()
        self._poll_timer.stop()
        if self.supervisor.is_running():
            self.disconnect()
