import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import Response

from proxy_config import VERSION, ProxyConfig
from relay import preflight_response, relay
from route_selector import select_route
from upstream import forward

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"]

# The relayed upstream head already carries Date and Server
UVICORN_OPTIONS = {"server_header": False, "date_header": False}


def request_path(request: Request) -> str:
    """Path and query exactly as the client sent them (still percent-encoded)."""
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


async def handle_request(request: Request, config: ProxyConfig) -> Response:
    origin = request.headers.get("origin")
    method = request.method
    path = request_path(request)

    logger.info(f"{method} {path} (origin: {origin or 'none'})")

    if method == "OPTIONS":
        return preflight_response(origin)

    route = select_route(path, config.target)
    body = await request.body()

    result = await forward(route.url, method, request.headers, body, verify_tls=config.verify_tls_for)
    return relay(result, target=route.base_url, method=method, path=route.path, origin=origin)


def create_app(config: ProxyConfig) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Daytona Drizzle Proxy v{VERSION}")
        logger.info(f"Listening on: http://localhost:{config.port}")
        logger.info(f"Forwarding to: {config.target}")
        logger.info("CORS enabled for all origins")
        yield
        logger.info("Shutting down...")

    # No docs routes: every path belongs to the upstream
    app = FastAPI(
        title="Daytona Drizzle Proxy",
        version=VERSION,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.config = config

    @app.api_route("/{full_path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request, full_path: str) -> Response:
        return await handle_request(request, config)

    return app
