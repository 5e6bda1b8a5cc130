"""End-to-end runs against the in-process fake server."""

from __future__ import annotations

import asyncio
import json

import pytest

from fakeserver import BackgroundServer, FakeBehaviour, completion_app, serve
from llmload.config import parse_config
from llmload.loadgen import ConnectivityError
from llmload.report import TPOT, TPOT_EST, TTFT
from llmload.runner import run_benchmark, run_patterns


def _cfg(url: str, tmp_path, **run) -> dict:
    return {
        "target": {"base_url": url, "model": "fake", "api_key_env": "FAKE_KEY", "timeout_s": 5},
        "run": {"name": "t", "out_dir": str(tmp_path), "progress": False, "write_env_snapshot": False, **run},
        "patterns": [
            {"name": "baseline", "kind": "burst", "count": 3, "max_tokens": 4},
            {"name": "concurrency", "kind": "sweep", "levels": [1, 2], "prompt": "Test query {i}", "max_tokens": 4},
            {"name": "sustained", "kind": "sustained", "count": 3, "interval_s": 0.02, "max_tokens": 4},
        ],
    }


def test_streaming_run(tmp_path):
    async def go():
        app, stats = completion_app(FakeBehaviour(tokens=4, ttfb_s=0.05, token_gap_s=0.01))
        async with serve(app) as url:
            cfg = parse_config(_cfg(url, tmp_path), environ={})
            out = await run_patterns(cfg, environ={"FAKE_KEY": "k"})
        return out, stats

    out, stats = asyncio.run(go())
    assert stats.completions == 3 + 3 + 3
    report = out.report
    assert list(report.patterns) == ["baseline", "concurrency", "sustained"]
    assert report.overall.n_requests == report.overall.succeeded == 9
    assert report.overall.metrics[TTFT].count == 9
    assert report.overall.metrics[TPOT].count == 9
    assert report.overall.metrics[TPOT_EST].count == 0
    assert [lvl.level for lvl in report.patterns["concurrency"].levels] == [1, 2]
    assert out.prefill_estimate_s is None


def test_non_streaming_run_calibrates_prefill(tmp_path):
    async def go():
        app, stats = completion_app(FakeBehaviour(tokens=4, delay_s=0.02))
        async with serve(app) as url:
            data = _cfg(url, tmp_path, calibration_requests=2)
            data["target"]["stream"] = False
            out = await run_patterns(parse_config(data, environ={}), environ={})
        return out, stats

    out, stats = asyncio.run(go())
    assert stats.completions == 2 + 9
    assert out.prefill_estimate_s is not None
    assert out.report.overall.metrics[TTFT].count == 0
    assert out.report.overall.metrics[TPOT].count == 0
    # calibration requests are not part of the report
    assert out.report.overall.n_requests == 9


def test_probe_failure_runs_no_patterns(tmp_path):
    async def go():
        app, stats = completion_app(FakeBehaviour(models_status=500))
        async with serve(app) as url:
            with pytest.raises(ConnectivityError):
                await run_patterns(parse_config(_cfg(url, tmp_path), environ={}), environ={})
        return stats

    assert asyncio.run(go()).completions == 0


@pytest.mark.parametrize("contents", [None, "\n\n"])
def test_bad_prompts_file_raises_before_any_request(tmp_path, contents):
    prompts = tmp_path / "prompts.jsonl"
    if contents is not None:
        prompts.write_text(contents, encoding="utf-8")

    async def go():
        app, stats = completion_app(FakeBehaviour(tokens=2))
        async with serve(app) as url:
            data = _cfg(url, tmp_path)
            data["patterns"][1]["prompts_path"] = str(prompts)
            with pytest.raises((FileNotFoundError, ValueError)):
                await run_patterns(parse_config(data, environ={}), environ={})
        return stats

    assert asyncio.run(go()).completions == 0


def test_calibration_uses_first_pattern_prompts_file(tmp_path):
    prompts = tmp_path / "prompts.jsonl"
    prompts.write_text('{"prompt": "Summarize report {i}"}\n', encoding="utf-8")

    async def go():
        app, stats = completion_app(FakeBehaviour(tokens=2))
        async with serve(app) as url:
            data = _cfg(url, tmp_path, calibration_requests=2)
            data["target"]["stream"] = False
            data["patterns"][0]["prompts_path"] = str(prompts)
            await run_patterns(parse_config(data, environ={}), environ={})
        return stats

    stats = asyncio.run(go())
    assert stats.prompts[:2] == ["Summarize report 1", "Summarize report 1"]
    assert sorted(stats.prompts[2:5]) == ["Summarize report 1", "Summarize report 2", "Summarize report 3"]


def test_run_benchmark_writes_summary(tmp_path):
    app, _ = completion_app(FakeBehaviour(tokens=3))
    with BackgroundServer(app) as srv:
        out = run_benchmark(parse_config(_cfg(srv.url, tmp_path), environ={}), run_id="r1")

    assert out.out_dir == tmp_path / "t" / "r1"
    summary = json.loads((out.out_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["run_id"] == "r1"
    assert summary["report"]["overall"]["n_requests"] == 9
    assert len(summary["records"]["concurrency"]) == 3
    assert summary["records"]["baseline"][0]["outcome"] == "success"
