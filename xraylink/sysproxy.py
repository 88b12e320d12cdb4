import sys

from xraylink.errors import SystemProxyError

INTERNET_SETTINGS_PATH = r"Software\Microsoft\Windows\CurrentVersion\Internet Settings"
PROXY_ADDR = "127.0.0.1"


class SystemProxy:
    """OS system-proxy toggle; failures raise SystemProxyError."""

    def enable(self, socks_port, http_port):
        raise NotImplementedError

    def disable(self, force=False):
        raise NotImplementedError

    def is_enabled(self):
        raise NotImplementedError


class UnsupportedSystemProxy(SystemProxy):
    def enable(self, socks_port, http_port):
        raise SystemProxyError(f"System proxy is not supported on {sys.platform}.")

    def disable(self, force=False):
        if force:
            raise SystemProxyError(f"System proxy is not supported on {sys.platform}.")

    def is_enabled(self):
        return False


class WindowsSystemProxy(SystemProxy):
    def __init__(self):
        import winreg

        self._reg = winreg
        self._enabled_by_us = False

    def _set_values(self, enabled, server=None):
        reg = self._reg
        try:
            key = reg.OpenKey(reg.HKEY_CURRENT_USER, INTERNET_SETTINGS_PATH, 0, reg.KEY_WRITE)
        except OSError as e:
            raise SystemProxyError(f"Cannot open Internet Settings: {e}") from e
        try:
            reg.SetValueEx(key, "ProxyEnable", 0, reg.REG_DWORD, 1 if enabled else 0)
            if server is not None:
                reg.SetValueEx(key, "ProxyServer", 0, reg.REG_SZ, server)
        except OSError as e:
            raise SystemProxyError(f"Cannot write Internet Settings: {e}") from e
        finally:
            reg.CloseKey(key)

    def enable(self, socks_port, http_port):
        self._set_values(True, f"{PROXY_ADDR}:{int(http_port)}")
        self._enabled_by_us = True

    def disable(self, force=False):
        if not force and not self._enabled_by_us:
            return
        self._set_values(False)
        self._enabled_by_us = False

    def is_enabled(self):
        reg = self._reg
        try:
            key = reg.OpenKey(reg.HKEY_CURRENT_USER, INTERNET_SETTINGS_PATH, 0, reg.KEY_READ)
        except OSError:
            return False
        try:
            enabled, _ = reg.QueryValueEx(key, "ProxyEnable")
            server, _ = reg.QueryValueEx(key, "ProxyServer")
        except FileNotFoundError:
            enabled = 0
            server = ""
        finally:
            reg.CloseKey(key)
        return bool(enabled) and str(server).strip().startswith(f"{PROXY_ADDR}:")


def default_system_proxy():
    if sys.platform.startswith("win"):
        return WindowsSystemProxy()
    return UnsupportedSystemProxy()
