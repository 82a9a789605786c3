import asyncio
import logging
from email.utils import formatdate
from typing import AsyncIterator, Optional

import aiohttp
from fastapi.responses import JSONResponse, Response, StreamingResponse

from cors_headers import apply_cors_headers, merge_response_headers
from errors import UpstreamStreamError
from proxy_config import DEBUG
from upstream import UpstreamFailure, UpstreamResponse, UpstreamResult

logger = logging.getLogger(__name__)


def http_date() -> str:
    return formatdate(usegmt=True)


def preflight_response(origin: Optional[str] = None) -> Response:
    response = Response(status_code=204, headers={"Date": http_date()})
    apply_cors_headers(response.headers, origin)
    return response


def error_payload(failure: UpstreamFailure, target: str, method: str, path: str) -> dict:
    details = {"target": target, "method": method, "path": path}
    # JSON.stringify drops undefined, so an unknown code is omitted rather than null
    if failure.code is not None:
        details["code"] = failure.code
    return {
        "error": "Proxy request failed",
        "message": failure.message,
        "details": details,
    }


def failure_response(
    failure: UpstreamFailure,
    target: str,
    method: str,
    path: str,
    origin: Optional[str] = None,
) -> JSONResponse:
    logger.error(
        f"Proxy error: url={path} method={method} target={target} "
        f"kind={failure.kind.value} code={failure.code} error={failure.message}",
        exc_info=failure.exception if DEBUG else None,
    )
    response = JSONResponse(
        error_payload(failure, target, method, path),
        status_code=502,
        headers={"Date": http_date()},
    )
    apply_cors_headers(response.headers, origin)
    return response


async def stream_body(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
    """
    Yield the upstream body chunk by chunk. The ASGI server awaits each send
    before pulling the next chunk, so at most one chunk is held in memory.
    """
    try:
        async for chunk in upstream.iter_body():
            yield chunk
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error(f"Upstream {upstream.url} failed after the response started: {e}")
        raise UpstreamStreamError(upstream.url, e) from e
    finally:
        await upstream.release()


def success_response(upstream: UpstreamResponse, origin: Optional[str] = None) -> StreamingResponse:
    headers = merge_response_headers(upstream.headers, origin)
    headers.setdefault("Date", http_date())
    response = StreamingResponse(stream_body(upstream), status_code=upstream.status)
    for name, value in headers.items():
        response.headers.append(name, value)
    return response


def relay(
    result: UpstreamResult,
    target: str,
    method: str,
    path: str,
    origin: Optional[str] = None,
) -> Response:
    if isinstance(result, UpstreamFailure):
        return failure_response(result, target, method, path, origin)
    return success_response(result, origin)
