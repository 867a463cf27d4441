"""
URL utilities for normalizing URLs and extracting the domain forms used by
deduplication, trust lookup and per-domain caps.
"""

from typing import Optional
from urllib.parse import urlparse, urlunparse

MAX_URL_LENGTH = 2048

# Second-level suffixes under which the registrable domain has three labels
MULTI_PART_SUFFIXES = {
    "co.uk", "org.uk", "ac.uk", "gov.uk",
    "com.au", "net.au", "org.au", "edu.au", "gov.au",
    "co.jp", "ac.jp", "go.jp", "or.jp", "ne.jp",
    "com.tw", "org.tw", "edu.tw", "gov.tw",
    "com.cn", "edu.cn", "gov.cn", "org.cn",
    "co.kr", "ac.kr", "go.kr", "or.kr",
    "com.hk", "edu.hk", "gov.hk",
    "com.sg", "edu.sg", "gov.sg",
    "co.in", "ac.in", "gov.in",
    "com.br", "gov.br",
    "co.nz", "govt.nz", "ac.nz",
}


def normalize_url(url: str) -> str:
    """
    Normalize a URL for consistent comparison: lowercase host, drop fragment
    and trailing slash.

    Args:
        url: URL string to normalize

    Returns:
        Normalized URL string
    """
    if not url:
        return ""

    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"

    p = urlparse(url)
    path = p.path.rstrip("/") if p.path not in ("", "/") else ""
    return urlunparse((p.scheme.lower(), p.netloc.lower(), path, p.params, p.query, ""))


def is_valid_url(url: str) -> bool:
    if not url or len(url) > MAX_URL_LENGTH:
        return False
    try:
        p = urlparse(url)
    except ValueError:
        return False
    return p.scheme in ("http", "https") and bool(p.hostname)


def extract_domain(url: str) -> str:
    """
    Extract the hostname from a URL, without port or ``www.`` prefix.

    Returns:
        Lowercase host or empty string if there is none
    """
    if not url:
        return ""

    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    host = host.lower().rstrip(".")
    if host.startswith("www."):
        host = host[4:]
    return host


def _host_of(value: str) -> str:
    if "//" in value:
        return extract_domain(value)
    host = value.strip().lower().rstrip(".")
    return host[4:] if host.startswith("www.") else host


def registrable_domain(host_or_url: str) -> str:
    """
    Reduce a host (or URL) to its registrable domain.

    ``news.bbc.co.uk`` -> ``bbc.co.uk``, ``blog.example.com`` -> ``example.com``.
    """
    host = _host_of(host_or_url)
    labels = [label for label in host.split(".") if label]
    if len(labels) <= 2:
        return ".".join(labels)
    if ".".join(labels[-2:]) in MULTI_PART_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


def top_level_domain(host_or_url: str) -> Optional[str]:
    host = _host_of(host_or_url)
    if "." not in host:
        return None
    return host.rsplit(".", 1)[1] or None

