# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

from __future__ import annotations

import asyncio
import json
import logging
import random
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .types import Outcome, RequestRecord, RequestSpec

logger = logging.getLogger(__name__)

REACHABLE = (200, 401)
REDIRECTS = (301, 302)


class ConnectivityError(RuntimeError):
    """The endpoint failed the pre-flight probe; nothing was run."""

    def __init__(self, url: str, status: Optional[int], detail: str = ""):
        self.url = url
        self.status = status
        shown = f"HTTP {status:03d}" if status is not None else "no response"
        msg = f"Server not reachable at {url} ({shown})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class RecordSink:
    """Append-only record collection shared by the concurrent requests of one pattern."""

    def __init__(self) -> None:
        self._records: List[RequestRecord] = []
        self._lock = threading.Lock()

    def append(self, record: RequestRecord) -> None:
        with self._lock:
            self._records.append(record)

    def snapshot(self) -> Tuple[RequestRecord, ...]:
        with self._lock:
            return tuple(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def load_prompts(path: str | Path) -> List[str]:
    prompts: List[str] = []
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            if not line.strip():
                continue
            obj = json.loads(line)
            prompts.append(obj["prompt"])
    if not prompts:
        raise ValueError(f"No prompts found in {path}")
    return prompts


def make_request_set(
    prompts: List[str],
    n_requests: int,
    *,
    max_tokens: int,
    target: str,
    credential: Optional[str],
    model: str,
    stream: bool,
    seed: int = 0,
) -> List[RequestSpec]:
    """Build ``n_requests`` specs; ``{i}`` in a prompt becomes the 1-based request index."""
    rng = random.Random(seed)
    reqs: List[RequestSpec] = []
    for i in range(n_requests):
        prompt = prompts[0] if len(prompts) == 1 else rng.choice(prompts)
        reqs.append(
            RequestSpec(
                prompt=prompt.replace("{i}", str(i + 1)),
                max_output_tokens=max_tokens,
                target=target,
                credential=credential,
                model=model,
                stream=stream,
            )
        )
    return reqs


def completions_url(base_url: str) -> str:
    return base_url.rstrip("/") + "/v1/completions"


def open_session(*, verify_tls: bool = True) -> aiohttp.ClientSession:
    connector = aiohttp.TCPConnector(limit=0, ttl_dns_cache=60, ssl=verify_tls)
    timeout = aiohttp.ClientTimeout(total=None)
    return aiohttp.ClientSession(connector=connector, timeout=timeout)


def _headers(credential: Optional[str]) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if credential:
        headers["Authorization"] = f"Bearer {credential}"
    return headers


def _usage_int(usage: Any, key: str) -> int:
    if not isinstance(usage, dict):
        return 0
    try:
        return max(int(usage.get(key) or 0), 0)
    except (TypeError, ValueError):
        return 0


def _has_choices(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("choices"), list) and bool(data["choices"])


def _stream_error(chunk: Any) -> Optional[str]:
    """Error text carried by an SSE event, as vLLM and OpenAI send mid-stream."""
    if not isinstance(chunk, dict) or not chunk.get("error"):
        return None
    err = chunk["error"]
    if isinstance(err, dict):
        return str(err.get("message") or err)
    return str(err)


async def execute(
    session: aiohttp.ClientSession,
    spec: RequestSpec,
    sink: RecordSink,
    *,
    timeout_s: float = 120.0,
    prefill_estimate_s: Optional[float] = None,
) -> RequestRecord:
    """Issue one completion request and append exactly one record to ``sink``.

    Never raises for request-level problems: transport errors, timeouts,
    non-2xx statuses and malformed payloads all become a FAILED record.
    """
    payload: Dict[str, Any] = {
        "model": spec.model,
        "prompt": spec.prompt,
        "max_tokens": spec.max_output_tokens,
    }
    if spec.stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

    status: Optional[int] = None
    error: Optional[str] = None
    ok = False
    first: Optional[float] = None
    last: Optional[float] = None
    gaps: List[float] = []
    chunks = 0
    usage: Any = None
    streamed = False

    t0 = time.perf_counter()
    try:
        async with session.post(
            spec.target,
            json=payload,
            headers=_headers(spec.credential),
            timeout=aiohttp.ClientTimeout(total=timeout_s),
        ) as resp:
            status = resp.status
            if not 200 <= resp.status < 300:
                body = await resp.text()
                error = f"HTTP {resp.status}: {body[:200]}"
            elif spec.stream and resp.content_type == "text/event-stream":
                streamed = True
                async for raw in resp.content:
                    line = raw.decode("utf-8", errors="replace").strip()
                    if not line.startswith("data:"):
                        continue
                    data_text = line[5:].strip()
                    if data_text == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data_text)
                    except ValueError:
                        continue
                    stream_error = _stream_error(chunk)
                    if stream_error:
                        error = f"stream error after {chunks} chunks: {stream_error}"
                        break
                    if isinstance(chunk, dict) and chunk.get("usage"):
                        usage = chunk["usage"]
                    if not _has_choices(chunk):
                        continue
                    now = time.perf_counter()
                    if first is None:
                        first = now
                    else:
                        gaps.append(now - last)
                    last = now
                    chunks += 1
                ok = chunks > 0 and error is None
                if chunks == 0 and error is None:
                    error = "stream ended without any completion chunk"
            else:
                # servers that ignore "stream" answer with a plain completion body
                if spec.stream:
                    logger.debug("%s answered a stream request with %s", spec.target, resp.content_type)
                data = await resp.json(content_type=None)
                usage = data.get("usage") if isinstance(data, dict) else None
                ok = _has_choices(data)
                if not ok:
                    error = "response has no choices"
    except asyncio.TimeoutError:
        error = f"timed out after {timeout_s}s"
    except aiohttp.ClientError as e:
        error = f"{type(e).__name__}: {e}"
    except ValueError as e:
        error = f"malformed response: {e}"
    t1 = time.perf_counter()

    if error:
        logger.debug("request to %s failed: %s", spec.target, error)

    rec = RequestRecord(
        outcome=Outcome.SUCCESS if ok else Outcome.FAILED,
        latency_s=t1 - t0,
        ttfb_s=(first - t0) if ok and first is not None else None,
        inter_token_s=tuple(gaps) if ok else (),
        prompt_tokens=_usage_int(usage, "prompt_tokens") if ok else 0,
        completion_tokens=_usage_int(usage, "completion_tokens") if ok else 0,
        status=status,
        error=error,
        streamed=streamed,
        chunks=chunks if ok else 0,
        prefill_estimate_s=None if streamed else prefill_estimate_s,
    )
    sink.append(rec)
    return rec


async def _probe_once(session: aiohttp.ClientSession, url: str, credential: Optional[str], ssl: Any) -> Optional[int]:
    try:
        async with session.get(
            url,
            headers=_headers(credential),
            allow_redirects=False,
            ssl=ssl,
            timeout=aiohttp.ClientTimeout(total=10),
        ) as resp:
            return resp.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.debug("probe of %s failed: %s", url, e)
        return None


def https_variant(base_url: str) -> Optional[str]:
    if base_url.startswith("http://"):
        return "https://" + base_url[len("http://"):]
    return None


async def probe_endpoint(
    session: aiohttp.ClientSession,
    base_url: str,
    *,
    credential: Optional[str] = None,
    verify_tls: bool = True,
) -> str:
    """Check ``GET /v1/models`` and return the base URL requests should use.

    A redirect on a plain-http base switches to https. 200 and 401 count as
    reachable; anything else raises :class:`ConnectivityError`.
    """
    base_url = base_url.rstrip("/")
    ssl = verify_tls
    url = base_url + "/v1/models"
    status = await _probe_once(session, url, credential, ssl)

    if status in REDIRECTS:
        secure = https_variant(base_url)
        if secure is not None:
            logger.info("%s redirects (HTTP %s); switching to %s", url, status, secure)
            base_url = secure
            url = base_url + "/v1/models"
            status = await _probe_once(session, url, credential, ssl)

    if status not in REACHABLE:
        raise ConnectivityError(url, status, "make sure the inference server is running")
    logger.info("server reachable at %s/v1 (HTTP %s)", base_url, status)
    return base_url
