# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

from .config import BenchConfig, load_bench_config
from .loadgen import ConnectivityError, open_session, probe_endpoint
from .report import render_report, report_to_json
from .runner import run_benchmark


def _apply_overrides(cfg: BenchConfig, args: argparse.Namespace) -> BenchConfig:
    if args.base_url:
        cfg.target.base_url = args.base_url
    if args.model:
        cfg.target.model = args.model
    if getattr(args, "no_stream", False):
        cfg.target.stream = False
    if getattr(args, "run_timeout", None) is not None:
        cfg.run.run_timeout_s = args.run_timeout
    if getattr(args, "no_artifacts", False):
        cfg.run.write_artifacts = False
    if getattr(args, "no_progress", False):
        cfg.run.progress = False
    return cfg


async def _probe(cfg: BenchConfig) -> str:
    async with open_session(verify_tls=cfg.target.verify_tls) as session:
        return await probe_endpoint(
            session,
            cfg.target.base_url,
            credential=cfg.target.credential(),
            verify_tls=cfg.target.verify_tls,
        )


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="llmload", description="Load tests for OpenAI-compatible completion servers")
    p.add_argument("--log-level", default="WARNING", help="Python logging level")
    sub = p.add_subparsers(dest="cmd", required=True)

    def common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--config", required=True, help="Path to YAML config")
        sp.add_argument("--base-url", default=None, help="Override target base URL")
        sp.add_argument("--model", default=None, help="Override model identifier")

    runp = sub.add_parser("run", help="Probe the endpoint and run every configured pattern")
    common(runp)
    runp.add_argument("--no-stream", action="store_true", help="Use blocking responses (TPOT is then estimated)")
    runp.add_argument("--run-timeout", type=float, default=None, help="Stop dispatching new requests after this many seconds")
    runp.add_argument("--run-id", default=None, help="Override run id")
    runp.add_argument("--json", default=None, help="Also write the report JSON to this path")
    runp.add_argument("--no-artifacts", action="store_true", help="Do not write runs/ artifacts")
    runp.add_argument("--no-progress", action="store_true", help="Hide progress bars")

    probep = sub.add_parser("probe", help="Only run the connectivity check")
    common(probep)

    ap = sub.add_parser("print-config", help="Print the parsed config for debugging")
    common(ap)

    args = p.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    cfg = _apply_overrides(load_bench_config(args.config), args)

    if args.cmd == "print-config":
        print(json.dumps({"target": asdict(cfg.target), "run": asdict(cfg.run), "patterns": [asdict(x) for x in cfg.patterns]}, indent=2))
        return 0

    try:
        if args.cmd == "probe":
            base_url = asyncio.run(_probe(cfg))
            print(f"✓ Server reachable at {base_url}/v1")
            return 0
        run_id = args.run_id or time.strftime("%Y%m%d_%H%M%S")
        out = run_benchmark(cfg, run_id=run_id)
    except ConnectivityError as e:
        print(f"❌ ERROR: {e}", file=sys.stderr)
        return 1

    print(render_report(out.report))
    if args.json:
        path = Path(args.json)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report_to_json(out.report), indent=2, sort_keys=True), encoding="utf-8")
    if out.out_dir is not None:
        print(str(out.out_dir))
    return 0


if __name__ == "__main__":
    sys.exit(main())
