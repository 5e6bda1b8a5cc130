"""Tests for report aggregation and rendering."""

from __future__ import annotations

import json
import random

import pytest

from llmload.report import LATENCY, TPOT, TPOT_EST, TTFT, build_report, render_report, report_to_json
from llmload.types import LevelResult, Outcome, PatternResult, RequestRecord


def _streamed(latency=2.0, ttfb=0.4, tokens=50) -> RequestRecord:
    return RequestRecord(
        outcome=Outcome.SUCCESS,
        latency_s=latency,
        ttfb_s=ttfb,
        inter_token_s=tuple([(latency - ttfb) / (tokens - 1)] * (tokens - 1)),
        prompt_tokens=5,
        completion_tokens=tokens,
        streamed=True,
        chunks=tokens,
    )


def _failed() -> RequestRecord:
    return RequestRecord(outcome=Outcome.FAILED, latency_s=0.1, status=500, error="HTTP 500")


def _pattern(name, records, started=0.0, finished=1.0, kind="burst", levels=()) -> PatternResult:
    return PatternResult(
        name=name, kind=kind, started_s=started, finished_s=finished, records=tuple(records), levels=tuple(levels)
    )


def test_tpot_scenario_five_identical_requests():
    report = build_report([_pattern("baseline", [_streamed() for _ in range(5)], finished=10.0)])
    tpot = report.overall.metrics[TPOT]
    assert tpot.count == 5
    assert tpot.mean == pytest.approx(0.032)
    assert tpot.p50 == pytest.approx(0.032)
    assert report.overall.metrics[TTFT].mean == pytest.approx(0.4)


def test_counts_reconcile_with_failures():
    recs = [_streamed(), _failed(), _streamed(), _failed(), _failed()]
    report = build_report([_pattern("mixed", recs)])
    o = report.overall
    assert o.n_requests == 5
    assert o.succeeded == 2
    assert o.failed == 3
    assert o.succeeded + o.failed == o.n_requests
    # failed records never feed latency statistics
    assert report.overall.metrics[LATENCY].count == 2


def test_single_token_responses_excluded_from_tpot():
    recs = [_streamed(), RequestRecord(outcome=Outcome.SUCCESS, latency_s=0.3, ttfb_s=0.3, completion_tokens=1, streamed=True, chunks=1)]
    report = build_report([_pattern("p", recs)])
    assert report.overall.metrics[TPOT].count == 1
    assert report.overall.metrics[TTFT].count == 2


def test_sweep_level_throughput_uses_own_duration():
    lvl1 = LevelResult(level=2, started_s=0.0, finished_s=1.0, records=(_streamed(tokens=50), _streamed(tokens=50)))
    lvl2 = LevelResult(level=4, started_s=1.0, finished_s=5.0, records=tuple(_streamed(tokens=20) for _ in range(4)))
    res = _pattern("concurrency", lvl1.records + lvl2.records, finished=5.0, kind="sweep", levels=[lvl1, lvl2])

    summary = build_report([res]).patterns["concurrency"]
    first, second = summary.levels
    assert first.level == 2 and first.duration_s == 1.0
    assert first.tok_per_s == pytest.approx(100.0)
    assert first.req_per_s == pytest.approx(2.0)
    assert second.level == 4 and second.duration_s == 4.0
    assert second.tok_per_s == pytest.approx(80 / 4.0)
    assert summary.tok_per_s == pytest.approx(180 / 5.0)


def test_overall_throughput_divides_by_wall_clock_not_summed_latency():
    # ten concurrent 2s requests finishing within a 2s window
    report = build_report([_pattern("burst", [_streamed() for _ in range(10)], started=3.0, finished=5.0)])
    o = report.overall
    assert o.duration_s == pytest.approx(2.0)
    assert o.tok_per_s == pytest.approx(500 / 2.0)
    assert o.req_per_s == pytest.approx(5.0)


def test_overall_duration_sums_sequential_patterns():
    a = _pattern("a", [_streamed()], started=0.0, finished=2.0)
    b = _pattern("b", [_streamed()], started=2.0, finished=5.0)
    assert build_report([a, b]).overall.duration_s == pytest.approx(5.0)


def test_non_streaming_records_report_estimate_separately():
    rec = RequestRecord(outcome=Outcome.SUCCESS, latency_s=1.2, completion_tokens=50, prefill_estimate_s=0.2)
    report = build_report([_pattern("blocking", [rec] * 3)])
    assert report.overall.metrics[TTFT].count == 0
    assert report.overall.metrics[TPOT].count == 0
    assert report.overall.metrics[TPOT_EST].mean == pytest.approx(0.02)

    text = render_report(report)
    assert "TTFT not measured" in text
    assert "ESTIMATED" in text


def test_streaming_report_has_no_estimate_section():
    text = render_report(build_report([_pattern("baseline", [_streamed()] * 3)]))
    assert "TTFT (measured, streaming)" in text
    assert "ESTIMATED" not in text
    assert "target: ≤0.5s" in text


def test_empty_run_renders():
    report = build_report([])
    assert report.overall.n_requests == 0
    assert "Summary: 0/0" in render_report(report)


def test_report_is_deterministic_for_any_record_order():
    recs = [_streamed(latency=1 + i / 10, ttfb=0.1 + i / 100) for i in range(20)] + [_failed()] * 3
    shuffled = list(recs)
    random.Random(7).shuffle(shuffled)
    a = build_report([_pattern("p", recs)])
    b = build_report([_pattern("p", shuffled)])
    assert a.overall.metrics[LATENCY] == b.overall.metrics[LATENCY]
    assert a.overall.metrics[TTFT] == b.overall.metrics[TTFT]
    assert render_report(a) == render_report(a)


def test_report_json_is_serializable():
    data = report_to_json(build_report([_pattern("p", [_streamed(), _failed()])]))
    text = json.dumps(data)
    assert json.loads(text)["patterns"]["p"]["failed"] == 1
