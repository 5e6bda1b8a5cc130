# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York


from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .types import Burst, ConcurrencySweep, LoadPattern, Sustained

KINDS = ("burst", "sustained", "sweep")


@dataclass
class TargetConfig:
    base_url: str = "http://localhost"   # http -> https redirect is detected by the probe
    model: str = "swiss-ai/Apertus-8B-Instruct-2509"
    api_key_env: str = "VLLM_API_KEY"    # credential is read from this variable, never from YAML
    stream: bool = True
    timeout_s: float = 120.0
    verify_tls: bool = True

    def credential(self, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
        env = os.environ if environ is None else environ
        return env.get(self.api_key_env) or None


@dataclass
class RunConfig:
    name: str = "default"
    out_dir: str = "runs"
    run_timeout_s: Optional[float] = None

    # Non-streaming runs only: max_tokens=1 requests used as the prefill estimate
    calibration_requests: int = 3

    slo_ttft_p95_s: float = 0.5
    slo_tpot_p95_s: float = 0.03

    write_artifacts: bool = True
    write_env_snapshot: bool = True
    progress: bool = True
    seed: int = 0


@dataclass
class PatternConfig:
    name: str
    kind: str = "burst"
    count: int = 1
    concurrency: Optional[int] = None
    batched: bool = False
    interval_s: float = 0.5
    levels: List[int] = field(default_factory=list)
    requests_per_level: Optional[int] = None
    prompt: str = "What is machine learning?"
    prompts_path: Optional[str] = None
    max_tokens: int = 50

    def __post_init__(self) -> None:
        if self.kind not in KINDS:
            raise ValueError(f"Pattern {self.name!r}: unknown kind {self.kind!r}, expected one of {KINDS}")
        if self.max_tokens < 1:
            raise ValueError(f"Pattern {self.name!r}: max_tokens must be >= 1")
        if self.kind in ("burst", "sustained") and self.count < 1:
            raise ValueError(f"Pattern {self.name!r}: count must be >= 1")
        if self.kind == "burst" and self.concurrency is not None and self.concurrency < 1:
            raise ValueError(f"Pattern {self.name!r}: concurrency must be >= 1")
        if self.kind == "sustained" and self.interval_s < 0:
            raise ValueError(f"Pattern {self.name!r}: interval_s must be >= 0")
        if self.kind == "sweep":
            if not self.levels or any(lvl < 1 for lvl in self.levels):
                raise ValueError(f"Pattern {self.name!r}: sweep levels must be a non-empty list of positive ints")
            if self.requests_per_level is not None and self.requests_per_level < 1:
                raise ValueError(f"Pattern {self.name!r}: requests_per_level must be >= 1")

    def to_pattern(self) -> LoadPattern:
        if self.kind == "burst":
            return Burst(concurrency=self.concurrency or self.count, count=self.count, batched=self.batched)
        if self.kind == "sustained":
            return Sustained(count=self.count, interval_s=self.interval_s)
        return ConcurrencySweep(levels=tuple(self.levels), requests_per_level=self.requests_per_level)


@dataclass
class BenchConfig:
    target: TargetConfig
    run: RunConfig
    patterns: List[PatternConfig]


def load_yaml(path: str | Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def apply_env(target: TargetConfig, environ: Optional[Mapping[str, str]] = None) -> TargetConfig:
    env = os.environ if environ is None else environ
    if env.get("LLMLOAD_BASE_URL"):
        target.base_url = env["LLMLOAD_BASE_URL"]
    if env.get("LLMLOAD_MODEL"):
        target.model = env["LLMLOAD_MODEL"]
    return target


def parse_config(cfg: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> BenchConfig:
    target = apply_env(TargetConfig(**cfg.get("target", {})), environ)
    run = RunConfig(**cfg.get("run", {}))
    patterns = [PatternConfig(**p) for p in cfg.get("patterns", [])]
    if not patterns:
        raise ValueError("Config defines no patterns")
    names = [p.name for p in patterns]
    if len(set(names)) != len(names):
        raise ValueError(f"Pattern names must be unique, got {names}")
    return BenchConfig(target=target, run=run, patterns=patterns)


def load_bench_config(path: str | Path, environ: Optional[Mapping[str, str]] = None) -> BenchConfig:
    return parse_config(load_yaml(path), environ)
