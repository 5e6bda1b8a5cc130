# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .types import MetricSummary

EMPTY = 0.0
PERCENTILES = (50, 90, 95, 99)


def _clean(samples: Iterable[Optional[float]]) -> np.ndarray:
    vals = [float(s) for s in samples if s is not None and not math.isnan(s)]
    return np.sort(np.array(vals, dtype=np.float64))


def percentile(samples: Sequence[Optional[float]], p: float) -> float:
    """Nearest-rank percentile; returns ``EMPTY`` when there are no samples."""
    if not 0 <= p <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {p}")
    arr = _clean(samples)
    if arr.size == 0:
        return EMPTY
    rank = math.ceil(arr.size * p / 100)
    rank = min(max(rank, 1), arr.size)
    return float(arr[rank - 1])


def mean(samples: Sequence[Optional[float]]) -> float:
    arr = _clean(samples)
    if arr.size == 0:
        return EMPTY
    return float(arr.mean())


def summarize_samples(samples: Sequence[Optional[float]]) -> MetricSummary:
    arr = _clean(samples)
    values = arr.tolist()
    return MetricSummary(
        count=int(arr.size),
        mean=mean(values),
        p50=percentile(values, 50),
        p90=percentile(values, 90),
        p95=percentile(values, 95),
        p99=percentile(values, 99),
    )


def load_run_dir(run_dir: str | Path) -> pd.DataFrame:
    """One row per (run, pattern) from every summary.json below ``run_dir``."""
    run_dir = Path(run_dir)
    rows: List[Dict] = []
    for p in sorted(run_dir.glob("**/summary.json")):
        with p.open("r", encoding="utf-8") as f:
            summary = json.load(f)
        report = summary.get("report", {})
        for name, pat in report.get("patterns", {}).items():
            rows.append(
                {
                    "run": summary.get("run_id", p.parent.name),
                    "experiment": summary.get("name"),
                    "model": report.get("model"),
                    "pattern": name,
                    "kind": pat.get("kind"),
                    "n_requests": pat.get("n_requests"),
                    "succeeded": pat.get("succeeded"),
                    "duration_s": pat.get("duration_s"),
                    "p50_s": pat.get("metrics", {}).get("latency_s", {}).get("p50"),
                    "p95_s": pat.get("metrics", {}).get("latency_s", {}).get("p95"),
                    "ttft_p95_s": pat.get("metrics", {}).get("ttft_s", {}).get("p95"),
                    "completion_tokens": pat.get("completion_tokens"),
                    "req_per_s": pat.get("req_per_s"),
                    "tok_per_s": pat.get("tok_per_s"),
                }
            )
    if not rows:
        raise FileNotFoundError(f"No summary.json files under {run_dir}")
    return pd.DataFrame(rows)


def load_sweep_levels(run_dir: str | Path) -> pd.DataFrame:
    """Per-level rows of every concurrency sweep found below ``run_dir``."""
    rows: List[Dict] = []
    for p in sorted(Path(run_dir).glob("**/summary.json")):
        with p.open("r", encoding="utf-8") as f:
            summary = json.load(f)
        for name, pat in summary.get("report", {}).get("patterns", {}).items():
            for lvl in pat.get("levels", []):
                rows.append({"run": summary.get("run_id", p.parent.name), "pattern": name, **lvl})
    return pd.DataFrame(rows)


def summarize(df: pd.DataFrame) -> pd.DataFrame:
    keep = [
        "experiment", "run", "model", "pattern", "kind", "n_requests", "succeeded", "duration_s",
        "p50_s", "p95_s", "ttft_p95_s", "completion_tokens", "req_per_s", "tok_per_s",
    ]
    cols = [c for c in keep if c in df.columns]
    out = df[cols].copy()
    out.sort_values(["run", "pattern"], inplace=True)
    return out


def peak_levels(levels: pd.DataFrame) -> pd.DataFrame:
    """The sweep level with the highest token throughput, one row per (run, pattern)."""
    if levels.empty:
        return levels
    idx = levels.groupby(["run", "pattern"])["tok_per_s"].idxmax()
    return levels.loc[idx].sort_values(["run", "pattern"]).reset_index(drop=True)


def write_index(run_dir: str | Path, out_dir: str | Path) -> List[Path]:
    """Write pattern, sweep-level and peak-level tables as CSV and JSON; returns the files written."""
    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    tables = {"index": summarize(load_run_dir(run_dir))}
    levels = load_sweep_levels(run_dir)
    if not levels.empty:
        tables["index_levels"] = levels.sort_values(["run", "pattern", "level"])
        tables["index_peaks"] = peak_levels(levels)

    written: List[Path] = []
    for stem, df in tables.items():
        df.to_csv(out / f"{stem}.csv", index=False)
        (out / f"{stem}.json").write_text(df.to_json(orient="records", indent=2), encoding="utf-8")
        written += [out / f"{stem}.csv", out / f"{stem}.json"]
    return written
