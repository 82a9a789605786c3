"""
Outbound side of the proxy.

`forward` performs one request against the upstream and returns either an
`UpstreamResponse` (head received, body still unread) or an `UpstreamFailure`.
When the first attempt fails because TLS was spoken to a plaintext server (or
the other way round) it retries exactly once with the opposite scheme.
"""
import asyncio
import errno
import logging
import socket
import ssl
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, Mapping, Optional, Union

import aiohttp
from multidict import CIMultiDict, CIMultiDictProxy
from yarl import URL

from cors_headers import hop_by_hop_names, without_headers
from proxy_config import DEBUG

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

BODYLESS_METHODS = frozenset({"GET", "HEAD"})

# Host/Origin must not reach the upstream; aiohttp recomputes Content-Length
STRIPPED_REQUEST_HEADERS = frozenset({"host", "origin", "content-length"})

# Only forward these when the browser sent them
SKIP_AUTO_HEADERS = ("User-Agent", "Accept", "Accept-Encoding")

# OpenSSL record-layer errors seen when TLS meets a plaintext peer
PROTOCOL_MISMATCH_REASONS = frozenset({
    "WRONG_VERSION_NUMBER",
    "UNKNOWN_PROTOCOL",
    "HTTP_REQUEST",
    "HTTPS_PROXY_REQUEST",
    "PACKET_LENGTH_TOO_LONG",
    "RECORD_LAYER_FAILURE",
})


class ErrorKind(Enum):
    UPSTREAM_UNREACHABLE = "upstream_unreachable"
    PROTOCOL_MISMATCH = "protocol_mismatch"
    UPSTREAM_TIMEOUT = "upstream_timeout"


@dataclass(frozen=True)
class UpstreamFailure:
    kind: ErrorKind
    message: str
    code: Optional[str]
    url: str
    exception: Optional[BaseException] = None


@dataclass
class UpstreamResponse:
    url: str
    status: int
    reason: str
    headers: CIMultiDictProxy
    response: aiohttp.ClientResponse
    session: aiohttp.ClientSession

    async def iter_body(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        async for chunk in self.response.content.iter_chunked(chunk_size):
            yield chunk

    async def release(self):
        self.response.close()
        await self.session.close()


UpstreamResult = Union[UpstreamResponse, UpstreamFailure]


def outbound_headers(headers: Mapping[str, str]) -> CIMultiDict:
    return without_headers(headers, STRIPPED_REQUEST_HEADERS | hop_by_hop_names(headers))


def _ssl_error(exc: BaseException) -> Optional[ssl.SSLError]:
    candidates = (
        getattr(exc, "certificate_error", None),
        getattr(exc, "os_error", None),
        exc.__cause__,
        exc,
    )
    for candidate in candidates:
        if isinstance(candidate, ssl.SSLError) and getattr(candidate, "reason", None):
            return candidate
    return None


def is_protocol_mismatch(exc: BaseException) -> bool:
    if isinstance(exc, aiohttp.ClientConnectorCertificateError):
        return False
    if not isinstance(exc, (aiohttp.ClientSSLError, ssl.SSLError)):
        return False
    ssl_error = _ssl_error(exc)
    return ssl_error is not None and ssl_error.reason in PROTOCOL_MISMATCH_REASONS


def classify_error(exc: BaseException):
    """Map a transport exception to (ErrorKind, Node-style error code)."""
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorKind.UPSTREAM_TIMEOUT, "ETIMEDOUT"
    if is_protocol_mismatch(exc):
        return ErrorKind.PROTOCOL_MISMATCH, "EPROTO"

    ssl_error = _ssl_error(exc)
    if ssl_error is not None:
        return ErrorKind.UPSTREAM_UNREACHABLE, ssl_error.reason

    if isinstance(exc, aiohttp.ServerDisconnectedError):
        return ErrorKind.UPSTREAM_UNREACHABLE, "ECONNRESET"

    os_error = getattr(exc, "os_error", None)
    if os_error is None and isinstance(exc, OSError):
        os_error = exc
    if isinstance(os_error, socket.gaierror):
        return ErrorKind.UPSTREAM_UNREACHABLE, "ENOTFOUND"
    if os_error is not None and os_error.errno in errno.errorcode:
        return ErrorKind.UPSTREAM_UNREACHABLE, errno.errorcode[os_error.errno]
    return ErrorKind.UPSTREAM_UNREACHABLE, None


def _failure(url: URL, exc: BaseException) -> UpstreamFailure:
    kind, code = classify_error(exc)
    message = str(exc) or exc.__class__.__name__
    return UpstreamFailure(kind=kind, message=message, code=code, url=str(url), exception=exc)


async def _attempt(
    url: URL,
    method: str,
    headers: CIMultiDict,
    data: Optional[bytes],
    verify_tls: bool,
) -> UpstreamResult:
    session = aiohttp.ClientSession(
        auto_decompress=False,
        skip_auto_headers=SKIP_AUTO_HEADERS,
        timeout=aiohttp.ClientTimeout(),
    )
    try:
        response = await session.request(
            method,
            url,
            headers=headers,
            data=data,
            allow_redirects=False,
            ssl=verify_tls,
        )
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
        await session.close()
        return _failure(url, exc)
    except BaseException:
        await session.close()
        raise

    return UpstreamResponse(
        url=str(url),
        status=response.status,
        reason=response.reason or "",
        headers=response.headers,
        response=response,
        session=session,
    )


async def forward(
    target_url: str,
    method: str,
    headers: Mapping[str, str],
    body: bytes,
    verify_tls: Callable[[Optional[str]], bool],
) -> UpstreamResult:
    method = (method or "GET").upper()
    url = URL(target_url, encoded=True)
    request_headers = outbound_headers(headers)
    data = body if body and method not in BODYLESS_METHODS else None

    result = await _attempt(url, method, request_headers, data, verify_tls(url.host))
    if not isinstance(result, UpstreamFailure) or result.kind is not ErrorKind.PROTOCOL_MISMATCH:
        return result

    use_https = url.scheme != "https"
    logger.warning(f"SSL/Protocol error detected for {url}: {result.message}")
    logger.warning(f"Attempting fallback to {'HTTPS' if use_https else 'HTTP'}...")
    url = url.with_scheme("https" if use_https else "http")

    result = await _attempt(url, method, request_headers, data, verify_tls(url.host))
    if isinstance(result, UpstreamFailure):
        if use_https:
            logger.warning(
                "SSL connection failed. Common causes: server is using HTTP, not HTTPS; "
                f"self-signed certificate issues; TLS version mismatch. Error: {result.message}",
                exc_info=result.exception if DEBUG else None,
            )
        if result.kind is ErrorKind.PROTOCOL_MISMATCH:
            result = replace(result, kind=ErrorKind.UPSTREAM_UNREACHABLE)
    return result
