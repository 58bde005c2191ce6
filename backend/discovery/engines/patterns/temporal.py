"""Temporal cycle detection.

Buckets dated experiences by position in a cycle and flags buckets whose
count exceeds the uniform expectation n/k. The deviation is a binomial
z-score, (observed - n*p) / sqrt(n*p*(1-p)) with p = 1/k, and confidence is
its one-sided normal CDF. No scipy: math.erf is enough for a normal tail.

Cycles:
- lunar: eight equal phases of the synodic month
- weekday: Monday..Sunday of occurred_on
"""

from __future__ import annotations

import math
from collections.abc import Callable
from datetime import date
from typing import Literal

from pydantic import BaseModel, Field

from discovery.engines.patterns.lunar import PHASE_LABELS, PHASES, phase_index
from discovery.models.experience import Experience
from discovery.models.patterns import TemporalPattern

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

# cycle -> (bucket names, labels, date -> bucket index)
CYCLES: dict[str, tuple[tuple[str, ...], dict[str, str], Callable[[date], int]]] = {
    "lunar": (PHASES, PHASE_LABELS, phase_index),
    "weekday": (_WEEKDAYS, {d: d.capitalize() for d in _WEEKDAYS}, date.weekday),
}


class TemporalParams(BaseModel):
    cycle: Literal["lunar", "weekday"] = "lunar"
    min_count: int = Field(default=3, ge=1)
    z_threshold: float = Field(default=1.645, ge=0.0)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def normal_cdf(z: float) -> float:
    return 0.5 * (1.0 + math.erf(z / math.sqrt(2.0)))


def detect_temporal_cycles(
    experiences: list[Experience], params: TemporalParams
) -> list[TemporalPattern]:
    buckets, labels, bucket_of = CYCLES[params.cycle]
    k = len(buckets)

    dated = [e for e in experiences if e.occurred_on is not None]
    n = len(dated)
    if n < params.min_count:
        return []

    members: list[list[str]] = [[] for _ in range(k)]
    for exp in dated:
        members[bucket_of(exp.occurred_on)].append(exp.id)

    p = 1.0 / k
    expected = n * p
    sd = math.sqrt(n * p * (1 - p))

    patterns: list[TemporalPattern] = []
    for idx, ids in enumerate(members):
        observed = len(ids)
        if observed < params.min_count:
            continue
        z = (observed - expected) / sd
        if z < params.z_threshold:
            continue
        confidence = round(normal_cdf(z), 4)
        if confidence < params.min_confidence:
            continue
        name = buckets[idx]
        patterns.append(TemporalPattern(
            cycle=params.cycle,
            phase=name,
            phase_label=labels[name],
            observed=observed,
            expected=round(expected, 3),
            z_score=round(z, 3),
            excess_ratio=round(observed / expected - 1.0, 3),
            confidence=confidence,
            experience_ids=ids,
        ))

    patterns.sort(key=lambda t: (-t.z_score, t.phase))
    return patterns
