"""HTTP header processing for the LeakGuard proxy.

Implements the header rules for upstream-bound requests and client-facing
responses:

  - build_upstream_headers(): strips hop-by-hop headers (including Host and
    Content-Length, which httpx recomputes) and forwards every other request
    header unchanged, repeats included.

  - build_relay_headers(): strips hop-by-hop headers from the upstream response
    but keeps Content-Length, so the relayed body length matches what upstream
    declared.

RFC 7230 §6.1 — hop-by-hop headers MUST NOT be forwarded by intermediaries.

Both functions return ordered lists of (name, value) pairs rather than dicts:
repeated headers (``set-cookie``, ``anthropic-beta``) must survive the proxy.
"""

from __future__ import annotations

from typing import Iterable

# ─── Constants ────────────────────────────────────────────────────────────────

# Hop-by-hop headers MUST be stripped before forwarding (RFC 7230 §6.1).
# httpx sets content-length automatically from the content= parameter.
# host is derived from the upstream URL; the client-facing host is never forwarded.
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",  # let httpx compute from content=
    }
)

# Response relay keeps the upstream's declared length: the body is relayed raw.
_RELAY_KEPT: frozenset[str] = frozenset({"content-length"})


def _connection_tokens(headers: list[tuple[str, str]]) -> set[str]:
    """Header names listed in ``Connection`` are hop-by-hop for this message."""
    tokens: set[str] = set()
    for name, value in headers:
        if name.lower() == "connection":
            tokens.update(t.strip().lower() for t in value.split(",") if t.strip())
    return tokens


# ─── Public API ───────────────────────────────────────────────────────────────


def build_upstream_headers(
    request_headers: Iterable[tuple[str, str]],
) -> list[tuple[str, str]]:
    """Build the header list to send to upstream.

    Args:
        request_headers: Iterable of (name, value) tuples from the incoming request.
                         Typically ``request.headers.items()`` in FastAPI handlers,
                         which yields repeated headers once per occurrence.

    Returns:
        Ordered ``(name, value)`` pairs, hop-by-hop headers removed.
    """
    headers = list(request_headers)
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(headers)
    return [(name, value) for name, value in headers if name.lower() not in dropped]


def build_relay_headers(
    upstream_headers: Iterable[tuple[str, str]],
) -> list[tuple[str, str]]:
    """Build the header list returned to the client from the upstream response.

    Rate-limit headers (``anthropic-ratelimit-*``, ``retry-after``) and
    ``content-encoding`` pass through with their exact values; the body is
    relayed without decompression.

    Args:
        upstream_headers: ``httpx.Response.headers.multi_items()``.
    """
    headers = list(upstream_headers)
    dropped = (HOP_BY_HOP_HEADERS - _RELAY_KEPT) | _connection_tokens(headers)
    return [(name, value) for name, value in headers if name.lower() not in dropped]
