# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class RequestSpec:
    """A single request to an OpenAI-compatible /v1/completions endpoint."""

    prompt: str
    max_output_tokens: int
    target: str
    credential: Optional[str] = None
    model: str = "default"
    stream: bool = True


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class RequestRecord:
    """Timing and token accounting for one issued request.

    ``ttfb_s`` and ``inter_token_s`` are direct measurements taken while the
    body streams in; both are empty for non-streaming requests, which carry
    ``prefill_estimate_s`` instead.
    """

    outcome: Outcome
    latency_s: float
    ttfb_s: Optional[float] = None
    inter_token_s: Tuple[float, ...] = ()
    prompt_tokens: int = 0
    completion_tokens: int = 0

    status: Optional[int] = None
    error: Optional[str] = None
    streamed: bool = False
    chunks: int = 0
    prefill_estimate_s: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def _decode_tokens(self) -> int:
        # Usage may be absent from a stream; fall back to the delivered chunk count.
        return self.completion_tokens or self.chunks

    @property
    def tpot_s(self) -> Optional[float]:
        """Measured time per output token; None unless streamed with >1 token."""
        if not self.ok or self.ttfb_s is None:
            return None
        tokens = self._decode_tokens()
        if tokens <= 1:
            return None
        return (self.latency_s - self.ttfb_s) / tokens

    @property
    def tpot_estimate_s(self) -> Optional[float]:
        """Non-streaming TPOT derived from a prefill estimate, never a measurement."""
        if not self.ok or self.streamed or self.prefill_estimate_s is None:
            return None
        if self.completion_tokens <= 1:
            return None
        value = (self.latency_s - self.prefill_estimate_s) / self.completion_tokens
        return value if value > 0 else None


@dataclass(frozen=True)
class Burst:
    concurrency: int
    count: int
    batched: bool = False  # wait for each batch of `concurrency` before the next


@dataclass(frozen=True)
class Sustained:
    count: int
    interval_s: float


@dataclass(frozen=True)
class ConcurrencySweep:
    levels: Tuple[int, ...]
    requests_per_level: Optional[int] = None  # None: one request per slot at each level


LoadPattern = Union[Burst, Sustained, ConcurrencySweep]


@dataclass(frozen=True)
class LevelResult:
    level: int
    started_s: float
    finished_s: float
    records: Tuple[RequestRecord, ...]

    @property
    def duration_s(self) -> float:
        return self.finished_s - self.started_s


@dataclass(frozen=True)
class PatternResult:
    """Everything one pattern produced: its records plus wall-clock bounds."""

    name: str
    kind: str
    started_s: float
    finished_s: float
    records: Tuple[RequestRecord, ...]
    levels: Tuple[LevelResult, ...] = ()
    abandoned: int = 0

    @property
    def duration_s(self) -> float:
        return self.finished_s - self.started_s


@dataclass(frozen=True)
class MetricSummary:
    count: int
    mean: float
    p50: float
    p90: float
    p95: float
    p99: float


@dataclass(frozen=True)
class LevelSummary:
    level: int
    n_requests: int
    succeeded: int
    duration_s: float
    mean_latency_s: float
    completion_tokens: int
    req_per_s: float
    tok_per_s: float


@dataclass(frozen=True)
class PatternSummary:
    name: str
    kind: str
    n_requests: int
    succeeded: int
    failed: int
    abandoned: int
    duration_s: float
    prompt_tokens: int
    completion_tokens: int
    req_per_s: float
    tok_per_s: float
    metrics: Dict[str, MetricSummary] = field(default_factory=dict)
    levels: List[LevelSummary] = field(default_factory=list)


@dataclass(frozen=True)
class RunReport:
    """Aggregated view of a run, keyed by pattern name and metric name."""

    overall: PatternSummary
    patterns: Dict[str, PatternSummary]
    slo: Dict[str, float]
    base_url: Optional[str] = None
    model: Optional[str] = None
