"""Canonical links: the dedup and join key between search and enrichment records."""

from urllib.parse import urlsplit

_DEFAULT_PORTS = {"http": 80, "https": 443}


def canonical_link(url: str | None) -> str | None:
    """Normalize a URL to a comparison key, or None if it has no resolvable host.

    The key is lower-cased, has its scheme folded to https, a leading ``www.``,
    default ports, fragments and trailing slashes removed. Query strings are
    kept because some sites route per-location pages through them.
    """
    if not url or not isinstance(url, str):
        return None
    text = url.strip().lower()
    if not text:
        return None
    if "://" not in text:
        text = f"http://{text.lstrip('/')}"

    try:
        parts = urlsplit(text)
        port = parts.port
    except ValueError:
        return None
    if parts.scheme not in _DEFAULT_PORTS:
        return None

    host = parts.hostname or ""
    if host.startswith("www."):
        host = host[4:]
    if not host or ("." not in host and host != "localhost"):
        return None

    netloc = host if port in (None, _DEFAULT_PORTS[parts.scheme]) else f"{host}:{port}"
    path = parts.path.rstrip("/")
    key = f"https://{netloc}{path}"
    if parts.query:
        key += f"?{parts.query}"
    return key


def is_http_url(url: str | None) -> bool:
    """True for absolute http(s) URLs, the only links the enrichment provider accepts."""
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme in _DEFAULT_PORTS and bool(parts.netloc)
