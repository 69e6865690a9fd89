from __future__ import annotations

import ipaddress
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

TRACKING_KEYS = {"ref", "fbclid", "gclid", "si"}
BLOCKED_HOSTNAMES = {"localhost", "metadata.google.internal"}
INTERNAL_UPLOAD_PREFIX = "/api/v1/uploads"


def extract_host(raw_url: str) -> str:
    """Lowercased hostname without a trailing dot, or "" when the URL has none."""
    if not raw_url or not raw_url.strip():
        return ""
    try:
        host = urlparse(raw_url.strip()).hostname
    except ValueError:
        return ""
    if not host:
        return ""
    return host.lower().rstrip(".")


def host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


def normalize_url(raw_url: str) -> str:
    """Conservative URL normalization used to build canonical player URLs."""
    parsed = urlparse(raw_url.strip())

    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower()
    if ":" in netloc:
        host, port = netloc.rsplit(":", maxsplit=1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host

    path = parsed.path or "/"
    if path != "/" and path.endswith("/"):
        path = path[:-1]

    filtered_query_pairs = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(key.lower())
    ]
    filtered_query_pairs.sort(key=lambda pair: pair[0])
    query = urlencode(filtered_query_pairs, doseq=True)
    return urlunparse((scheme, netloc, path, "", query, ""))


def resolve_url(base_url: str, ref: str) -> str:
    ref = ref.strip()
    if not ref:
        return ref
    if urlparse(ref).scheme:
        return ref
    return urljoin(base_url, ref)


def is_internal_upload_url(raw_url: str) -> bool:
    trimmed = raw_url.strip() if raw_url else ""
    if not trimmed:
        return False
    if trimmed == INTERNAL_UPLOAD_PREFIX or trimmed.startswith(INTERNAL_UPLOAD_PREFIX + "/"):
        return True
    try:
        path = urlparse(trimmed).path.strip()
    except ValueError:
        return False
    return path == INTERNAL_UPLOAD_PREFIX or path.startswith(INTERNAL_UPLOAD_PREFIX + "/")


def is_blocked_hostname(host: str) -> bool:
    return host in BLOCKED_HOSTNAMES or host.endswith(".localhost")


def parse_ip(host: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    try:
        return ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return None


def is_blocked_ip(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        address.is_loopback
        or address.is_link_local
        or address.is_private
        or address.is_unspecified
        or address.is_multicast
    )


def _is_tracking_param(key: str) -> bool:
    return key.startswith("utm_") or key in TRACKING_KEYS
