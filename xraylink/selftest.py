import socket
import time

from xraylink.errors import NetworkError

CONNECT_TARGET = "1.1.1.1:443"
CONNECT_TIMEOUT = 2.5
READ_WINDOW = 5.0
MAX_RESPONSE_BYTES = 4096


def _build_connect_request(target=CONNECT_TARGET):
    return (
        f"CONNECT {target} HTTP/1.1\r\n"
        f"Host: {target}\r\n"
        "Proxy-Connection: Keep-Alive\r\n\r\n"
    ).encode("ascii")


def check_local_proxy(port, host="127.0.0.1", target=CONNECT_TARGET,
                      connect_timeout=CONNECT_TIMEOUT, read_window=READ_WINDOW):
    """Issue an HTTP CONNECT through the local mixed inbound.

    Blocking; raises NetworkError unless the proxy answers with a 200 status line.
    """
    try:
        sock = socket.create_connection((host, int(port)), timeout=connect_timeout)
    except OSError as e:
        raise NetworkError("Local mixed proxy port is not reachable.") from e

    response = b""
    with sock:
        try:
            sock.sendall(_build_connect_request(target))
        except OSError as e:
            raise NetworkError("Failed to write proxy CONNECT request.") from e

        deadline = time.monotonic() + read_window
        while b"\r\n\r\n" not in response and len(response) <= MAX_RESPONSE_BYTES:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                chunk = sock.recv(MAX_RESPONSE_BYTES)
            except OSError:
                break
            if not chunk:
                break
            response += chunk

    first_line = response.split(b"\r\n", 1)[0].decode("utf-8", errors="replace").strip()
    if first_line.startswith("HTTP/1.1 200") or first_line.startswith("HTTP/1.0 200"):
        return first_line
    if not first_line:
        raise NetworkError("No proxy response for CONNECT test.")
    raise NetworkError(f"CONNECT response: {first_line}")
