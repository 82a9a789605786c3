"""
Permissive CORS headers for the proxy's responses.

Everything here is a pure operation on a header mapping: the relay strips the
upstream's own CORS headers, copies the rest, then stamps ours on top.
"""
from typing import Iterable, Mapping, Optional

from multidict import CIMultiDict

ALLOW_METHODS = "GET, POST, PUT, DELETE, OPTIONS, HEAD"
ALLOW_HEADERS = "Content-Type, Authorization, X-Requested-With, Accept, Origin"

# Tells the Daytona preview gateway not to add its own CORS headers
DISABLE_CORS_MARKER = "X-Daytona-Disable-CORS"

UPSTREAM_CORS_HEADERS = frozenset({
    "access-control-allow-origin",
    "access-control-allow-methods",
    "access-control-allow-headers",
    "access-control-allow-credentials",
    "access-control-expose-headers",
    "access-control-max-age",
})

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


def hop_by_hop_names(headers: Mapping[str, str]) -> frozenset:
    """Fixed hop-by-hop headers plus any the sender listed in its Connection header."""
    listed = set()
    for name, value in headers.items():
        if name.lower() == "connection":
            listed.update(token.strip().lower() for token in value.split(",") if token.strip())
    return HOP_BY_HOP_HEADERS | listed


def cors_headers(origin: Optional[str] = None) -> CIMultiDict:
    return CIMultiDict([
        ("Access-Control-Allow-Origin", origin or "*"),
        ("Access-Control-Allow-Methods", ALLOW_METHODS),
        ("Access-Control-Allow-Headers", ALLOW_HEADERS),
        ("Access-Control-Allow-Credentials", "true"),
        (DISABLE_CORS_MARKER, "true"),
    ])


def apply_cors_headers(headers, origin: Optional[str] = None):
    """Set the CORS headers on any mutable header mapping, replacing existing values."""
    for name, value in cors_headers(origin).items():
        headers[name] = value
    return headers


def without_headers(headers: Mapping[str, str], excluded: Iterable[str]) -> CIMultiDict:
    excluded = {name.lower() for name in excluded}
    return CIMultiDict(
        (name, value) for name, value in headers.items() if name.lower() not in excluded
    )


def merge_response_headers(upstream_headers: Mapping[str, str], origin: Optional[str] = None) -> CIMultiDict:
    headers = without_headers(upstream_headers, UPSTREAM_CORS_HEADERS | hop_by_hop_names(upstream_headers))
    return apply_cors_headers(headers, origin)
