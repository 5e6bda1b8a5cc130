# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

"""Aggregate summaries under ./runs and plot concurrency sweeps.

Usage
-----
python scripts/analyze_results.py --runs runs/comprehensive --out runs/comprehensive/plots

Plotting needs the optional extra: pip install -e '.[plots]'.
If you did not install the package, the script will automatically add ./src
to PYTHONPATH when run from the repo root.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC = REPO_ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import matplotlib.pyplot as plt

from llmload.analysis import load_run_dir, load_sweep_levels, summarize


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--runs", required=True, help="Directory containing run subfolders with summary.json")
    ap.add_argument("--out", required=True, help="Output directory for tables and figures")
    args = ap.parse_args()

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)

    summ = summarize(load_run_dir(args.runs))
    summ.to_csv(out / "summary.csv", index=False)

    levels = load_sweep_levels(args.runs)
    if not levels.empty:
        levels.to_csv(out / "sweep_levels.csv", index=False)
        for metric, fname, ylabel in [
            ("tok_per_s", "throughput_tokens_per_s.png", "Throughput (tokens/s)"),
            ("req_per_s", "throughput_req_per_s.png", "Throughput (req/s)"),
            ("mean_latency_s", "mean_latency_s.png", "Mean latency (s)"),
        ]:
            plt.figure()
            for (run, pattern), g in levels.groupby(["run", "pattern"]):
                g = g.sort_values("level")
                plt.plot(g["level"], g[metric], marker="o", label=f"{run}/{pattern}")
            plt.xlabel("Concurrency")
            plt.ylabel(ylabel)
            plt.legend()
            plt.tight_layout()
            plt.savefig(out / fname, dpi=200)

    print(f"Wrote {out}")


if __name__ == "__main__":
    main()
