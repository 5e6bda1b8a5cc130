# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

from __future__ import annotations

import asyncio
import json
import logging
import socket
import subprocess
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from .analysis import percentile
from .config import BenchConfig
from .loadgen import RecordSink, completions_url, execute, load_prompts, make_request_set, open_session, probe_endpoint
from .patterns import pattern_request_count, run_pattern, session_executor
from .report import build_report, report_to_json
from .types import PatternResult, RequestSpec, RunReport

logger = logging.getLogger(__name__)


@dataclass
class RunOutput:
    base_url: str
    prefill_estimate_s: Optional[float]
    results: List[PatternResult]
    report: RunReport
    out_dir: Optional[Path] = None


def _write_json(path: Path, obj: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True)


def _try_run(cmd: List[str]) -> Optional[str]:
    try:
        out = subprocess.check_output(cmd, stderr=subprocess.STDOUT, text=True)
        return out.strip()
    except (OSError, subprocess.CalledProcessError):
        return None


def _collect_env_snapshot() -> Dict[str, Any]:
    """Collect lightweight environment metadata for local run tracking."""
    snap: Dict[str, Any] = {}
    snap["hostname"] = socket.gethostname()
    snap["python"] = _try_run(["python", "--version"])
    snap["pip_freeze"] = _try_run(["python", "-m", "pip", "freeze"])
    snap["git_commit"] = _try_run(["git", "rev-parse", "HEAD"])
    snap["timestamp"] = time.strftime("%Y-%m-%d %H:%M:%S")
    return snap


async def calibrate_prefill(
    session: aiohttp.ClientSession,
    *,
    url: str,
    prompt: str,
    model: str,
    credential: Optional[str],
    n: int,
    timeout_s: float,
) -> Optional[float]:
    """Median latency of sequential max_tokens=1 requests, used as a best-effort prefill estimate."""
    if n <= 0:
        return None
    sink = RecordSink()
    spec = RequestSpec(prompt=prompt, max_output_tokens=1, target=url, credential=credential, model=model, stream=False)
    for _ in range(n):
        await execute(session, spec, sink, timeout_s=timeout_s)
    ok = [r.latency_s for r in sink.snapshot() if r.ok]
    if not ok:
        logger.warning("prefill calibration failed for all %d requests; TPOT estimates disabled", n)
        return None
    return percentile(ok, 50)


def pattern_prompts(cfg: BenchConfig) -> Dict[str, List[str]]:
    """Read every pattern's prompt list; a bad ``prompts_path`` raises here, before any request."""
    return {pc.name: load_prompts(pc.prompts_path) if pc.prompts_path else [pc.prompt] for pc in cfg.patterns}


async def run_patterns(
    cfg: BenchConfig,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> RunOutput:
    """Probe the endpoint, then run every configured pattern back to back.

    Prompt files are read up front, so a missing or empty one raises before
    the probe. Raises :class:`~llmload.loadgen.ConnectivityError` before any
    pattern runs when the probe fails.
    """
    tgt, run = cfg.target, cfg.run
    credential = tgt.credential(environ)
    prompts = pattern_prompts(cfg)
    results: List[PatternResult] = []

    async with open_session(verify_tls=tgt.verify_tls) as session:
        base_url = await probe_endpoint(session, tgt.base_url, credential=credential, verify_tls=tgt.verify_tls)
        url = completions_url(base_url)

        prefill: Optional[float] = None
        if not tgt.stream:
            prefill = await calibrate_prefill(
                session,
                url=url,
                prompt=prompts[cfg.patterns[0].name][0].replace("{i}", "1"),
                model=tgt.model,
                credential=credential,
                n=run.calibration_requests,
                timeout_s=tgt.timeout_s,
            )
            logger.info("prefill estimate: %s", prefill)

        run_one = session_executor(session, timeout_s=tgt.timeout_s, prefill_estimate_s=prefill)
        deadline = time.perf_counter() + run.run_timeout_s if run.run_timeout_s else None

        for pc in cfg.patterns:
            pattern = pc.to_pattern()
            specs = make_request_set(
                prompts[pc.name],
                pattern_request_count(pattern),
                max_tokens=pc.max_tokens,
                target=url,
                credential=credential,
                model=tgt.model,
                stream=tgt.stream,
                seed=run.seed,
            )
            results.append(await run_pattern(run_one, pc.name, pattern, specs, deadline=deadline, progress=run.progress))

    report = build_report(
        results,
        slo={"ttft_p95_s": run.slo_ttft_p95_s, "tpot_p95_s": run.slo_tpot_p95_s},
        base_url=base_url,
        model=tgt.model,
    )
    return RunOutput(base_url=base_url, prefill_estimate_s=prefill, results=results, report=report)


def records_to_json(results: List[PatternResult]) -> Dict[str, List[Dict[str, Any]]]:
    out: Dict[str, List[Dict[str, Any]]] = {}
    for res in results:
        rows = []
        for rec in res.records:
            d = asdict(rec)
            d["outcome"] = rec.outcome.value
            rows.append(d)
        out[res.name] = rows
    return out


def run_benchmark(
    cfg: BenchConfig,
    *,
    run_id: str,
    environ: Optional[Mapping[str, str]] = None,
) -> RunOutput:
    """Run the configured benchmark and write artifacts under runs/ when enabled."""
    output = asyncio.run(run_patterns(cfg, environ=environ))
    if not cfg.run.write_artifacts:
        return output

    out = Path(cfg.run.out_dir) / cfg.run.name / run_id
    out.mkdir(parents=True, exist_ok=True)
    if cfg.run.write_env_snapshot:
        _write_json(out / "env.json", _collect_env_snapshot())

    summary = {
        "name": cfg.run.name,
        "run_id": run_id,
        "target": asdict(cfg.target),
        "run": asdict(cfg.run),
        "patterns": [asdict(p) for p in cfg.patterns],
        "prefill_estimate_s": output.prefill_estimate_s,
        "report": report_to_json(output.report),
        "records": records_to_json(output.results),
        "timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
    }
    _write_json(out / "summary.json", summary)
    output.out_dir = out
    return output
