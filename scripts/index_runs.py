# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

"""Index every benchmark run below a directory.

Writes, next to each other in --out:
- index.{csv,json}         one row per (run, pattern)
- index_levels.{csv,json}  one row per concurrency sweep level
- index_peaks.{csv,json}   the highest tokens/s level of each sweep

Usage
-----
python scripts/index_runs.py --runs runs --out runs
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC = REPO_ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from llmload.analysis import write_index


def main() -> int:
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    ap.add_argument("--runs", default="runs", help="Directory scanned recursively for summary.json")
    ap.add_argument("--out", default=None, help="Where to write the index (defaults to --runs)")
    args = ap.parse_args()

    try:
        written = write_index(args.runs, args.out or args.runs)
    except FileNotFoundError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    for path in written:
        print(path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
