"""In-process OpenAI-style completion server for tests."""

from __future__ import annotations

import asyncio
import json
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from aiohttp import web
from aiohttp.test_utils import TestServer


@dataclass
class FakeBehaviour:
    models_status: int = 200
    status: int = 200
    tokens: int = 5
    ttfb_s: float = 0.0
    token_gap_s: float = 0.0
    delay_s: float = 0.0          # non-streaming response delay
    usage: bool = True
    raw_body: Optional[str] = None  # returned verbatim instead of a completion
    prompt_tokens: int = 7
    stream_error: Optional[str] = None  # SSE error event sent after the chunks


@dataclass
class FakeStats:
    completions: int = 0
    in_flight: int = 0
    max_in_flight: int = 0
    prompts: List[str] = field(default_factory=list)


def completion_app(behaviour: Optional[FakeBehaviour] = None) -> tuple[web.Application, FakeStats]:
    b = behaviour or FakeBehaviour()
    stats = FakeStats()

    async def models(request: web.Request) -> web.Response:
        return web.json_response({"data": [{"id": "fake"}]}, status=b.models_status)

    def usage_for(max_tokens: int) -> dict:
        return {"prompt_tokens": b.prompt_tokens, "completion_tokens": min(b.tokens, max_tokens)}

    async def completions(request: web.Request) -> web.StreamResponse:
        body = await request.json()
        stats.completions += 1
        stats.prompts.append(body.get("prompt", ""))
        stats.in_flight += 1
        stats.max_in_flight = max(stats.max_in_flight, stats.in_flight)
        try:
            if b.status != 200:
                return web.Response(status=b.status, text="upstream error")
            if b.raw_body is not None:
                await asyncio.sleep(b.delay_s)
                return web.Response(text=b.raw_body, content_type="application/json")

            n = min(b.tokens, int(body.get("max_tokens", b.tokens)))
            if not body.get("stream"):
                await asyncio.sleep(b.delay_s)
                payload = {"choices": [{"text": "tok " * n}]}
                if b.usage:
                    payload["usage"] = usage_for(n)
                return web.json_response(payload)

            resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
            await resp.prepare(request)
            await asyncio.sleep(b.ttfb_s)
            for i in range(n):
                if i:
                    await asyncio.sleep(b.token_gap_s)
                chunk = {"choices": [{"text": "tok", "index": 0}]}
                await resp.write(f"data: {json.dumps(chunk)}\n\n".encode())
            if b.stream_error is not None:
                err = {"error": {"message": b.stream_error, "type": "server_error", "code": 500}}
                await resp.write(f"data: {json.dumps(err)}\n\n".encode())
            if b.usage:
                final = {"choices": [], "usage": usage_for(n)}
                await resp.write(f"data: {json.dumps(final)}\n\n".encode())
            await resp.write(b"data: [DONE]\n\n")
            await resp.write_eof()
            return resp
        finally:
            stats.in_flight -= 1

    app = web.Application()
    app.router.add_get("/v1/models", models)
    app.router.add_post("/v1/completions", completions)
    return app, stats


@asynccontextmanager
async def serve(app: web.Application) -> AsyncIterator[str]:
    server = TestServer(app)
    await server.start_server()
    try:
        yield f"http://{server.host}:{server.port}"
    finally:
        await server.close()


class BackgroundServer:
    """Runs an app on its own event loop thread, for code that calls asyncio.run itself."""

    def __init__(self, app: web.Application):
        self._app = app
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, daemon=True)
        self._server: Optional[TestServer] = None
        self.url = ""

    async def _start(self) -> str:
        self._server = TestServer(self._app)
        await self._server.start_server()
        return f"http://{self._server.host}:{self._server.port}"

    def __enter__(self) -> "BackgroundServer":
        self._thread.start()
        self.url = asyncio.run_coroutine_threadsafe(self._start(), self._loop).result(timeout=10)
        return self

    def __exit__(self, *exc) -> None:
        if self._server is not None:
            asyncio.run_coroutine_threadsafe(self._server.close(), self._loop).result(timeout=10)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        self._loop.close()
