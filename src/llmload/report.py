# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

from .analysis import mean, summarize_samples
from .types import LevelResult, LevelSummary, MetricSummary, PatternResult, PatternSummary, RequestRecord, RunReport

RULE = "═" * 51

# Metric keys; the "_est" metric is derived from a prefill estimate, never measured.
LATENCY = "latency_s"
TTFT = "ttft_s"
TPOT = "tpot_s"
TPOT_EST = "tpot_est_s"

DEFAULT_SLO = {"ttft_p95_s": 0.5, "tpot_p95_s": 0.03}


def _rate(n: float, seconds: float) -> float:
    return n / seconds if seconds > 0 else 0.0


def _metrics(records: Sequence[RequestRecord]) -> Dict[str, MetricSummary]:
    ok = [r for r in records if r.ok]
    return {
        LATENCY: summarize_samples([r.latency_s for r in ok]),
        TTFT: summarize_samples([r.ttfb_s for r in ok]),
        TPOT: summarize_samples([r.tpot_s for r in ok]),
        TPOT_EST: summarize_samples([r.tpot_estimate_s for r in ok]),
    }


def _level_summary(level: LevelResult) -> LevelSummary:
    ok = [r for r in level.records if r.ok]
    tokens = sum(r.completion_tokens for r in ok)
    return LevelSummary(
        level=level.level,
        n_requests=len(level.records),
        succeeded=len(ok),
        duration_s=level.duration_s,
        mean_latency_s=mean([r.latency_s for r in ok]),
        completion_tokens=tokens,
        req_per_s=_rate(len(ok), level.duration_s),
        tok_per_s=_rate(tokens, level.duration_s),
    )


def _summarize(
    name: str,
    kind: str,
    records: Sequence[RequestRecord],
    duration_s: float,
    *,
    abandoned: int = 0,
    levels: Sequence[LevelResult] = (),
) -> PatternSummary:
    ok = [r for r in records if r.ok]
    completion = sum(r.completion_tokens for r in ok)
    return PatternSummary(
        name=name,
        kind=kind,
        n_requests=len(records),
        succeeded=len(ok),
        failed=len(records) - len(ok),
        abandoned=abandoned,
        duration_s=duration_s,
        prompt_tokens=sum(r.prompt_tokens for r in ok),
        completion_tokens=completion,
        req_per_s=_rate(len(ok), duration_s),
        tok_per_s=_rate(completion, duration_s),
        metrics=_metrics(records),
        levels=[_level_summary(lvl) for lvl in levels],
    )


def build_report(
    results: Sequence[PatternResult],
    *,
    slo: Optional[Dict[str, float]] = None,
    base_url: Optional[str] = None,
    model: Optional[str] = None,
) -> RunReport:
    """Aggregate pattern results. Throughput always divides by measured wall-clock time."""
    patterns: Dict[str, PatternSummary] = {}
    all_records: List[RequestRecord] = []
    wall = 0.0
    abandoned = 0
    for res in results:
        patterns[res.name] = _summarize(
            res.name, res.kind, res.records, res.duration_s, abandoned=res.abandoned, levels=res.levels
        )
        all_records.extend(res.records)
        wall += res.duration_s
        abandoned += res.abandoned

    overall = _summarize("overall", "all", all_records, wall, abandoned=abandoned)
    return RunReport(
        overall=overall,
        patterns=patterns,
        slo=dict(slo or DEFAULT_SLO),
        base_url=base_url,
        model=model,
    )


def report_to_json(report: RunReport) -> Dict[str, Any]:
    return asdict(report)


def _section(lines: List[str], title: str) -> None:
    lines.append(RULE)
    lines.append(title)
    lines.append(RULE)


def _mark(value: float, target: Optional[float]) -> str:
    if target is None:
        return ""
    tick = "✓" if value <= target else "⚠"
    return f" {tick} (target: ≤{target:g}s)"


def _stat_lines(lines: List[str], m: MetricSummary, *, ms: bool = False, target: Optional[float] = None) -> None:
    def fmt(v: float) -> str:
        return f"{v:.3f} s ({v * 1000:.0f} ms)" if ms else f"{v:.2f} s"

    lines.append(f"Mean:               {fmt(m.mean)}")
    lines.append(f"P50 (median):       {fmt(m.p50)}")
    lines.append(f"P90:                {fmt(m.p90)}")
    lines.append(f"P95:                {fmt(m.p95)}{_mark(m.p95, target)}")
    lines.append(f"P99:                {fmt(m.p99)}")
    lines.append(f"Samples:            {m.count}")


def render_report(report: RunReport) -> str:
    o = report.overall
    lines: List[str] = []
    lines.append("╔════════════════════════════════════════════════════╗")
    lines.append("║                  BENCHMARK RESULTS                 ║")
    lines.append("╚════════════════════════════════════════════════════╝")
    if report.base_url or report.model:
        lines.append(f"Target: {report.base_url or '-'}  Model: {report.model or '-'}")
    lines.append("")

    _section(lines, "1. OVERALL PERFORMANCE")
    lines.append(f"Total Requests:     {o.n_requests}")
    pct = 100.0 * o.succeeded / o.n_requests if o.n_requests else 0.0
    lines.append(f"Successful:         {o.succeeded} ({pct:.1f}%)")
    lines.append(f"Failed:             {o.failed}")
    if o.abandoned:
        lines.append(f"Not dispatched:     {o.abandoned} (run timeout)")
    lines.append("")

    _section(lines, "2. END-TO-END LATENCY (seconds)")
    _stat_lines(lines, o.metrics[LATENCY])
    lines.append("")

    ttft = o.metrics[TTFT]
    _section(lines, "3. TIME TO FIRST TOKEN - TTFT (measured, streaming)")
    if ttft.count:
        _stat_lines(lines, ttft, target=report.slo.get("ttft_p95_s"))
    else:
        lines.append("No streamed responses; TTFT not measured.")
    lines.append("")

    tpot = o.metrics[TPOT]
    _section(lines, "4. TIME PER OUTPUT TOKEN - TPOT (measured, streaming)")
    if tpot.count:
        _stat_lines(lines, tpot, ms=True, target=report.slo.get("tpot_p95_s"))
    else:
        lines.append("No streamed multi-token responses; TPOT not measured.")
    lines.append("")

    est = o.metrics[TPOT_EST]
    if est.count:
        _section(lines, "4b. TPOT (ESTIMATED from non-streaming latency)")
        lines.append("Derived as (latency - prefill estimate) / completion tokens; not a measurement.")
        _stat_lines(lines, est, ms=True)
        lines.append("")

    _section(lines, "5. THROUGHPUT METRICS (per wall-clock second)")
    lines.append(f"Successful requests: {o.succeeded}")
    lines.append(f"Completion tokens:   {o.completion_tokens}")
    avg_tokens = o.completion_tokens / o.succeeded if o.succeeded else 0.0
    lines.append(f"Avg tokens/request:  {avg_tokens:.0f}")
    lines.append(f"Measured time:       {o.duration_s:.2f} s")
    lines.append(f"Request throughput:  {o.req_per_s:.2f} req/s")
    lines.append(f"Token throughput:    {o.tok_per_s:.2f} tokens/s")
    lines.append("")

    _section(lines, "6. PER-PATTERN BREAKDOWN")
    for p in report.patterns.values():
        lat = p.metrics[LATENCY]
        avg_tok = p.completion_tokens / p.succeeded if p.succeeded else 0.0
        lines.append(
            f"{p.name:<18} [{p.kind}] {p.succeeded}/{p.n_requests} ok  "
            f"{lat.mean:.2f}s avg  p95 {lat.p95:.2f}s  ~{avg_tok:.0f} tok  "
            f"{p.req_per_s:.2f} req/s  {p.tok_per_s:.2f} tok/s over {p.duration_s:.2f}s"
        )
        for lvl in p.levels:
            lines.append(
                f"    concurrent {lvl.level:<4} {lvl.succeeded}/{lvl.n_requests} ok  "
                f"{lvl.mean_latency_s:.2f}s avg  {lvl.duration_s:.2f}s wall  "
                f"{lvl.req_per_s:.2f} req/s  {lvl.tok_per_s:.2f} tok/s"
            )
    lines.append("")

    lines.append(RULE)
    lines.append(f"Summary: {o.succeeded}/{o.n_requests} requests successful")
    return "\n".join(lines)
