import re
import socket
import urllib.error
import urllib.request
from urllib.parse import urlparse

from xraylink import APP_NAME, APP_VERSION
from xraylink.errors import SubscriptionError
from xraylink.linkparser import decode_flexible_base64, is_share_link

MAX_SUBSCRIPTION_BYTES = 4 * 1024 * 1024

_TOKEN_SPLIT = re.compile(r"[\s,]+")


def extract_share_links(text):
    links = []
    seen = set()
    for token in _TOKEN_SPLIT.split(str(text or "")):
        item = token.strip()
        if not is_share_link(item) or item in seen:
            continue
        seen.add(item)
        links.append(item)
    return links


def decode_subscription_payload(payload):
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="ignore")
    text = (payload or "").strip()
    if not text:
        return []

    direct_links = extract_share_links(text)
    if direct_links:
        return direct_links

    decoded = decode_flexible_base64(text)
    if not decoded:
        return []
    return extract_share_links(decoded.decode("utf-8", errors="ignore"))


def download_subscription(url: str, timeout: float = 12, opener=urllib.request.urlopen) -> bytes:
    """Return the raw subscription body, capped at MAX_SUBSCRIPTION_BYTES.

    Raises SubscriptionError for a bad URL, an HTTP failure, a timeout or an
    oversized body; ``status`` carries the HTTP code when there is one.
    """
    parsed = urlparse(str(url or "").strip())
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        raise SubscriptionError("Subscription URL must start with http:// or https://")

    request = urllib.request.Request(parsed.geturl(), headers={"User-Agent": f"{APP_NAME}/{APP_VERSION}"})
    try:
        with opener(request, timeout=float(timeout)) as resp:
            status = int(getattr(resp, "status", 200))
            if not 200 <= status < 300:
                raise SubscriptionError(f"Subscription HTTP status: {status}", status=status)
            body = resp.read(MAX_SUBSCRIPTION_BYTES + 1)
    except urllib.error.HTTPError as e:
        raise SubscriptionError(f"Subscription HTTP error: {e.code}", status=e.code) from e
    except urllib.error.URLError as e:
        raise SubscriptionError(f"Subscription network error: {getattr(e, 'reason', e)}") from e
    except socket.timeout as e:
        raise SubscriptionError("Subscription request timed out") from e

    if len(body) > MAX_SUBSCRIPTION_BYTES:
        raise SubscriptionError("Subscription payload is too large (>4MB)")
    return body


def fetch_subscription_links(url: str, timeout: float = 12) -> list:
    return decode_subscription_payload(download_subscription(url, timeout))
