# Copyright (c) 2025 Vahab Jabrayilov (vjabrayilov@cs.columbia.edu)
# Copyright (c) 2025 DAPLab of Columbia University (https://daplab.cs.columbia.edu/)
# Copyright (c) 2025 The Trustees of Columbia University in the City of New York

"""Load pattern schedules over the request executor.

Each runner dispatches its full request list unless the run deadline
(a ``time.perf_counter()`` value) passes first; requests already in flight
always finish and are recorded. Results are never interpreted here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import aiohttp
from tqdm import tqdm

from .loadgen import RecordSink, execute
from .types import Burst, ConcurrencySweep, LevelResult, LoadPattern, PatternResult, RequestSpec, Sustained

logger = logging.getLogger(__name__)

Executor = Callable[[RequestSpec, RecordSink], Awaitable[Any]]


def pattern_kind(pattern: LoadPattern) -> str:
    if isinstance(pattern, Burst):
        return "burst"
    if isinstance(pattern, Sustained):
        return "sustained"
    if isinstance(pattern, ConcurrencySweep):
        return "sweep"
    raise TypeError(f"Unknown load pattern: {pattern!r}")


def sweep_level_counts(pattern: ConcurrencySweep) -> List[int]:
    return [pattern.requests_per_level or level for level in pattern.levels]


def pattern_request_count(pattern: LoadPattern) -> int:
    if isinstance(pattern, (Burst, Sustained)):
        return pattern.count
    if isinstance(pattern, ConcurrencySweep):
        return sum(sweep_level_counts(pattern))
    raise TypeError(f"Unknown load pattern: {pattern!r}")


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.perf_counter() >= deadline


def _bar(total: int, desc: str, progress: bool) -> tqdm:
    return tqdm(total=total, desc=desc, disable=not progress, leave=False)


async def _burst(
    run_one: Executor,
    specs: Sequence[RequestSpec],
    sink: RecordSink,
    *,
    concurrency: int,
    batched: bool,
    deadline: Optional[float],
    desc: str,
    progress: bool,
) -> int:
    """Dispatch ``specs`` with at most ``concurrency`` in flight; returns the abandoned count."""
    dispatched = 0
    with _bar(len(specs), desc, progress) as bar:
        if batched:
            for start in range(0, len(specs), concurrency):
                if _expired(deadline):
                    break
                batch = specs[start:start + concurrency]
                await asyncio.gather(*(run_one(s, sink) for s in batch))
                dispatched += len(batch)
                bar.update(len(batch))
        else:
            sem = asyncio.Semaphore(concurrency)
            tasks: List[asyncio.Task] = []

            async def bounded(spec: RequestSpec) -> None:
                try:
                    await run_one(spec, sink)
                finally:
                    sem.release()
                bar.update(1)

            for spec in specs:
                await sem.acquire()
                if _expired(deadline):
                    sem.release()
                    break
                tasks.append(asyncio.create_task(bounded(spec)))
                dispatched += 1
            if tasks:
                await asyncio.gather(*tasks)
    return len(specs) - dispatched


async def run_burst(
    run_one: Executor,
    name: str,
    pattern: Burst,
    specs: Sequence[RequestSpec],
    *,
    deadline: Optional[float] = None,
    progress: bool = False,
) -> PatternResult:
    sink = RecordSink()
    t0 = time.perf_counter()
    abandoned = await _burst(
        run_one,
        specs[: pattern.count],
        sink,
        concurrency=max(1, pattern.concurrency),
        batched=pattern.batched,
        deadline=deadline,
        desc=name,
        progress=progress,
    )
    t1 = time.perf_counter()
    return PatternResult(name=name, kind="burst", started_s=t0, finished_s=t1, records=sink.snapshot(), abandoned=abandoned)


async def run_sustained(
    run_one: Executor,
    name: str,
    pattern: Sustained,
    specs: Sequence[RequestSpec],
    *,
    deadline: Optional[float] = None,
    progress: bool = False,
) -> PatternResult:
    """Fire one request every ``interval_s`` without waiting on earlier ones."""
    sink = RecordSink()
    specs = specs[: pattern.count]
    tasks: List[asyncio.Task] = []
    t0 = time.perf_counter()
    with _bar(len(specs), name, progress) as bar:

        async def tracked(spec: RequestSpec) -> None:
            await run_one(spec, sink)
            bar.update(1)

        for i, spec in enumerate(specs):
            if _expired(deadline):
                break
            tasks.append(asyncio.create_task(tracked(spec)))
            if i + 1 < len(specs):
                await asyncio.sleep(pattern.interval_s)
        if tasks:
            await asyncio.gather(*tasks)
    t1 = time.perf_counter()
    return PatternResult(
        name=name,
        kind="sustained",
        started_s=t0,
        finished_s=t1,
        records=sink.snapshot(),
        abandoned=len(specs) - len(tasks),
    )


async def run_sweep(
    run_one: Executor,
    name: str,
    pattern: ConcurrencySweep,
    specs: Sequence[RequestSpec],
    *,
    deadline: Optional[float] = None,
    progress: bool = False,
) -> PatternResult:
    """Run a full burst per level, in order, timing each level on its own."""
    levels: List[LevelResult] = []
    records: List = []
    abandoned = 0
    offset = 0
    t0 = time.perf_counter()
    for level, count in zip(pattern.levels, sweep_level_counts(pattern)):
        level_specs = specs[offset:offset + count]
        offset += count
        if _expired(deadline):
            abandoned += len(level_specs)
            continue
        sink = RecordSink()
        l0 = time.perf_counter()
        abandoned += await _burst(
            run_one,
            level_specs,
            sink,
            concurrency=max(1, level),
            batched=False,
            deadline=deadline,
            desc=f"{name}@{level}",
            progress=progress,
        )
        l1 = time.perf_counter()
        level_records = sink.snapshot()
        levels.append(LevelResult(level=level, started_s=l0, finished_s=l1, records=level_records))
        records.extend(level_records)
    t1 = time.perf_counter()
    return PatternResult(
        name=name,
        kind="sweep",
        started_s=t0,
        finished_s=t1,
        records=tuple(records),
        levels=tuple(levels),
        abandoned=abandoned,
    )


async def run_pattern(
    run_one: Executor,
    name: str,
    pattern: LoadPattern,
    specs: Sequence[RequestSpec],
    *,
    deadline: Optional[float] = None,
    progress: bool = False,
) -> PatternResult:
    needed = pattern_request_count(pattern)
    if len(specs) < needed:
        raise ValueError(f"Pattern {name!r} needs {needed} request specs, got {len(specs)}")

    logger.info("pattern %s (%s): %d requests", name, pattern_kind(pattern), needed)
    if isinstance(pattern, Burst):
        result = await run_burst(run_one, name, pattern, specs, deadline=deadline, progress=progress)
    elif isinstance(pattern, Sustained):
        result = await run_sustained(run_one, name, pattern, specs, deadline=deadline, progress=progress)
    elif isinstance(pattern, ConcurrencySweep):
        result = await run_sweep(run_one, name, pattern, specs, deadline=deadline, progress=progress)
    else:
        raise TypeError(f"Unknown load pattern: {pattern!r}")

    if result.abandoned:
        logger.warning("pattern %s: run timeout reached, %d dispatches abandoned", name, result.abandoned)
    logger.info("pattern %s finished in %.2fs", name, result.duration_s)
    return result


def session_executor(
    session: aiohttp.ClientSession,
    *,
    timeout_s: float = 120.0,
    prefill_estimate_s: Optional[float] = None,
) -> Executor:
    """Bind :func:`execute` to a session so patterns only pass spec and sink."""

    async def run_one(spec: RequestSpec, sink: RecordSink) -> Any:
        return await execute(session, spec, sink, timeout_s=timeout_s, prefill_estimate_s=prefill_estimate_s)

    return run_one
