import os
import shutil
import sys

TUN_IPV4_ADDRESS = "172.19.0.1/30"
TUN_IPV6_ADDRESS = "fdfe:dcba:9876::1/126"
TUN_MTU = 1500


class PlatformProfile:
    """Per-OS facts the config compiler and engine discovery need."""

    name = "generic"
    tun_stack = "mixed"
    default_tun_interface = "xray0"
    executable_names = ("xray-core", "xray")

    def tun_interface_name(self, configured=""):
        configured = str(configured or "").strip()
        return configured or self.default_tun_interface

    def tun_settings(self, options):
        return {
            "name": self.tun_interface_name(options.tun_interface_name),
            "MTU": TUN_MTU,
            "address": [TUN_IPV4_ADDRESS, TUN_IPV6_ADDRESS],
            "stack": self.tun_stack,
            "autoRoute": bool(options.tun_auto_route),
            "strictRoute": bool(options.tun_strict_route),
            "userLevel": 0,
        }


class WindowsPlatform(PlatformProfile):
    name = "windows"
    tun_stack = "gvisor"
    default_tun_interface = "xray-tun"
    executable_names = ("xray-core.exe", "xray.exe")


class MacPlatform(PlatformProfile):
    name = "macos"
    tun_stack = "system"
    default_tun_interface = "utun10"

    def tun_interface_name(self, configured=""):
        configured = str(configured or "").strip()
        # macOS only accepts utunN device names
        if configured.startswith("utun") and configured[4:].isdigit():
            return configured
        return self.default_tun_interface


class LinuxPlatform(PlatformProfile):
    name = "linux"


def current_platform(platform_name=None):
    platform_name = platform_name or sys.platform
    if platform_name.startswith("win"):
        return WindowsPlatform()
    if platform_name == "darwin":
        return MacPlatform()
    if platform_name.startswith("linux"):
        return LinuxPlatform()
    return PlatformProfile()


def detect_xray_path(search_dirs=(), platform=None):
    platform = platform or current_platform()
    for directory in search_dirs:
        if not directory:
            continue
        for exe in platform.executable_names:
            candidate = os.path.join(directory, exe)
            if os.path.isfile(candidate):
                return os.path.abspath(candidate)
    for exe in platform.executable_names:
        found = shutil.which(exe)
        if found:
            return os.path.abspath(found)
    return ""
