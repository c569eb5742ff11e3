"""
URL Normalization & Link Policy

Pure helpers shared by the crawler frontier and link extraction. Keeping
them side-effect free makes the dedup guarantee (no URL visited twice)
easy to test in isolation.
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import urljoin, urlsplit, urlunsplit


# ---------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------

ALLOWED_SCHEMES = frozenset({"http", "https"})

SKIPPED_SCHEME_PREFIXES = ("mailto:", "tel:", "javascript:", "data:", "ftp:", "sms:", "file:")

BINARY_EXTENSIONS = frozenset({
    # documents
    "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "odt", "ods", "rtf",
    # archives
    "zip", "rar", "tar", "gz", "tgz", "bz2", "7z",
    # images
    "png", "jpg", "jpeg", "gif", "bmp", "svg", "webp", "ico", "tif", "tiff",
    # media
    "mp3", "mp4", "wav", "avi", "mov", "mkv", "webm", "ogg",
    # binaries / assets
    "exe", "dmg", "msi", "apk", "bin", "iso", "css", "js", "json", "xml",
    "woff", "woff2", "ttf", "eot",
})

BLOCKED_PATH_PATTERN = re.compile(
    r"/(api|admin|wp-admin|login|logout|signin|signout|sign-in|sign-out|"
    r"register|signup|sign-up|auth|account|cart|checkout)(/|$)",
    re.IGNORECASE,
)

_DEFAULT_PORTS = {"http": 80, "https": 443}


# ---------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------

def seed_url(domain: str) -> str:
    """
    Turn a bare domain or URL into the normalized crawl root.

    >>> seed_url("example.com")
    'https://example.com/'
    """
    domain = domain.strip()
    if not domain:
        raise ValueError("domain is required")

    if "://" not in domain:
        domain = f"https://{domain}"

    normalized = normalize_url(domain)
    if normalized is None:
        raise ValueError(f"Unsupported seed domain: {domain!r}")

    parts = urlsplit(normalized)
    return urlunsplit((parts.scheme, parts.netloc, "/", "", ""))


def normalize_url(url: str, strip_query: bool = True) -> Optional[str]:
    """
    Canonical form used for frontier dedup.

    Returns None for URLs that are not crawlable HTTP(S) locations.
    """
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES or not parts.hostname:
        return None

    host = parts.hostname.lower()
    try:
        port = parts.port
    except ValueError:
        return None

    netloc = host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{host}:{port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    query = "" if strip_query else parts.query

    return urlunsplit((scheme, netloc, path, query, ""))


def _bare_host(host: str) -> str:
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def is_same_site(url: str, root_url: str) -> bool:
    """
    True when `url` is on the seed host or one of its subdomains.

    A leading `www.` is ignored on both sides.
    """
    host = urlsplit(url).hostname
    root_host = urlsplit(root_url).hostname
    if not host or not root_host:
        return False

    host, root_host = _bare_host(host), _bare_host(root_host)
    return host == root_host or host.endswith("." + root_host)


def should_skip_url(url: str) -> bool:
    """
    Check if URL is a binary asset or an auth/admin location.
    """
    path = urlsplit(url).path.lower()

    last_segment = path.rsplit("/", 1)[-1]
    if "." in last_segment:
        extension = last_segment.rsplit(".", 1)[-1]
        if extension in BINARY_EXTENSIONS:
            return True

    return bool(BLOCKED_PATH_PATTERN.search(path))


def resolve_link(
    href: str,
    base_url: str,
    root_url: str,
    strip_query: bool = True,
) -> Optional[str]:
    """
    Resolve an href found on `base_url` into a followable normalized URL.

    Returns None when the link must not be followed.
    """
    href = (href or "").strip()
    if not href or href.startswith("#"):
        return None

    if href.lower().startswith(SKIPPED_SCHEME_PREFIXES):
        return None

    normalized = normalize_url(urljoin(base_url, href), strip_query=strip_query)
    if normalized is None:
        return None

    if not is_same_site(normalized, root_url):
        return None

    if should_skip_url(normalized):
        return None

    return normalized
