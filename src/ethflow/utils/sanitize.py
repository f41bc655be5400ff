"""
Credential scrubbing for upstream URLs.

Provider URLs routinely embed API keys in the path (``/v2/<key>``), in the
query string or as userinfo. Anything that leaves the process, whether in a
response or a log line, goes through ``sanitize_url`` first.
"""

from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

if TYPE_CHECKING:
    from ..config import UpstreamConfig

REDACTED = "[REDACTED]"
SENSITIVE_QUERY_MARKERS = ("key", "token", "secret")
KEYED_PATH_PREFIXES = ("/v3/", "/v2/")


def redact_api_key(text: str) -> str:
    """
    Cut everything after the first ``/v2/`` or ``/v3/`` segment.

    ``/v2/abc123/extra`` becomes ``/v2/[REDACTED]``.
    """
    cut = min(
        (pos for prefix in KEYED_PATH_PREFIXES if (pos := text.find(prefix)) != -1),
        default=-1,
    )
    if cut == -1:
        return text
    return text[:cut + 4] + REDACTED


def sanitize_url(url: str | None) -> str:
    """
    Strip credentials from a URL.

    Removes userinfo, drops query parameters whose name contains ``key``,
    ``token`` or ``secret`` (case-insensitive) and redacts keyed paths.

    Args:
        url: URL to clean (None or empty gives an empty string)

    Returns:
        The sanitised URL
    """
    if not url:
        return ""

    try:
        parts = urlsplit(url)
        netloc = parts.hostname or ""
        if parts.port is not None:
            netloc = f"{netloc}:{parts.port}"
    except ValueError:
        return redact_api_key(url)

    query = urlencode([
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not any(marker in name.lower() for marker in SENSITIVE_QUERY_MARKERS)
    ])

    return urlunsplit((parts.scheme, netloc, redact_api_key(parts.path), query, parts.fragment))


def sources_info(upstream: "UpstreamConfig") -> dict[str, Any]:
    """Describe the configured upstreams with credentials removed."""
    return {
        "rpc_http": sanitize_url(upstream.rpc_http_url),
        "rpc_ws": sanitize_url(upstream.rpc_ws_url),
        "beacon_api": sanitize_url(upstream.beacon_api_url),
        "relays": [sanitize_url(relay) for relay in upstream.relay_urls],
    }
