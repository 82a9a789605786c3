import asyncio
from types import SimpleNamespace

import httpx
import pytest
import uvicorn
from aiohttp import web
from aiohttp.test_utils import TestServer

from proxy_config import ProxyConfig
from proxy_server import UVICORN_OPTIONS, create_app
from upstream import UpstreamResponse


async def _serve(app: web.Application) -> TestServer:
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    server.base_url = f"http://127.0.0.1:{server.port}"
    return server


@pytest.fixture
async def echo_upstream():
    """Upstream that returns the request body and records every request it sees."""
    received = []

    async def echo(request: web.Request):
        body = await request.read()
        received.append(
            SimpleNamespace(
                method=request.method,
                path_qs=request.raw_path,
                headers=request.headers.copy(),
                body=body,
            )
        )
        response = web.Response(
            body=body,
            headers={
                "Content-Type": request.headers.get("Content-Type", "application/octet-stream"),
                "Access-Control-Allow-Origin": "https://upstream.example",
                "Access-Control-Allow-Methods": "GET",
                "Access-Control-Max-Age": "600",
                "X-Upstream": "echo",
            },
        )
        response.headers.add("Set-Cookie", "a=1; Path=/")
        response.headers.add("Set-Cookie", "b=2; Path=/")
        return response

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", echo)
    server = await _serve(app)
    server.received = received
    yield server
    await server.close()


@pytest.fixture
async def streaming_upstream():
    """Upstream that answers GET /big with a chunked body of 64 x 16 KiB."""

    async def big(request: web.Request):
        response = web.StreamResponse(status=200, headers={"Content-Type": "application/octet-stream"})
        response.enable_chunked_encoding()
        await response.prepare(request)
        for i in range(64):
            await response.write(bytes([i % 256]) * 16384)
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/big", big)
    server = await _serve(app)
    yield server
    await server.close()


@pytest.fixture
def make_proxy_client():
    def _make(target: str, **kwargs) -> httpx.AsyncClient:
        config = ProxyConfig(port=8080, target=target, **kwargs)
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=create_app(config)),
            base_url="http://proxy.test",
        )

    return _make


@pytest.fixture
async def truncating_upstream():
    """Upstream that promises 100000 bytes on /cut, sends 4096 and drops the connection."""

    async def cut(request: web.Request):
        response = web.StreamResponse(status=200, headers={"Content-Type": "application/octet-stream"})
        response.content_length = 100000
        await response.prepare(request)
        await response.write(b"x" * 4096)
        await asyncio.sleep(0.05)
        request.transport.close()
        return response

    app = web.Application()
    app.router.add_get("/cut", cut)
    server = await _serve(app)
    yield server
    await server.close()


@pytest.fixture
async def slow_upstream():
    """Upstream that trickles 40 chunks on /slow, 50 ms apart."""

    async def slow(request: web.Request):
        response = web.StreamResponse(status=200, headers={"Content-Type": "text/plain"})
        response.enable_chunked_encoding()
        await response.prepare(request)
        try:
            for _ in range(40):
                await response.write(b"tick\n")
                await asyncio.sleep(0.05)
            await response.write_eof()
        except ConnectionError:
            pass
        return response

    app = web.Application()
    app.router.add_get("/slow", slow)
    server = await _serve(app)
    yield server
    await server.close()


@pytest.fixture
def released(monkeypatch):
    """Records the URL of every upstream response the relay releases."""
    urls = []
    original = UpstreamResponse.release

    async def release(self):
        urls.append(self.url)
        await original(self)

    monkeypatch.setattr(UpstreamResponse, "release", release)
    return urls


@pytest.fixture
async def live_proxy():
    """Serves the proxy with a real uvicorn server on an ephemeral port."""
    running = []

    async def _start(target: str) -> str:
        app = create_app(ProxyConfig(port=8080, target=target))
        server = uvicorn.Server(
            uvicorn.Config(app, host="127.0.0.1", port=0, lifespan="off", log_level="warning", **UVICORN_OPTIONS)
        )
        task = asyncio.create_task(server.serve())
        running.append((server, task))
        while not server.started:
            if task.done():
                task.result()
                raise RuntimeError("proxy server exited before it started")
            await asyncio.sleep(0.01)
        port = server.servers[0].sockets[0].getsockname()[1]
        return f"http://127.0.0.1:{port}"

    yield _start
    for server, task in running:
        server.should_exit = True
        await asyncio.wait_for(task, timeout=10)
