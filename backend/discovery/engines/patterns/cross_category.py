"""Cross-category overlap: different categories sharing a secondary signal.

Signals per experience: each tag, a coarse location cell and a fixed-width
time window. For a signal value shared by experiences of at least two
categories, ``pair_count`` is the number of experience pairs whose categories
differ. Confidence is that count over all pairs sharing the signal, i.e. how
mixed the categories are.
"""

from __future__ import annotations

from collections import Counter
from datetime import date, timedelta

from pydantic import BaseModel, Field

from discovery.engines.patterns.geo import location_cell
from discovery.engines.patterns.tag_network import normalize_tag
from discovery.models.experience import Experience
from discovery.models.patterns import CrossCategoryPattern

_EPOCH = date(1970, 1, 1)


class CrossCategoryParams(BaseModel):
    min_overlap: int = Field(default=2, ge=1)
    location_bucket_deg: float = Field(default=1.0, gt=0.0, le=45.0)
    window_days: int = Field(default=7, ge=1, le=3660)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def _time_window(d: date, window_days: int) -> str:
    start = _EPOCH + timedelta(days=((d - _EPOCH).days // window_days) * window_days)
    end = start + timedelta(days=window_days - 1)
    return f"{start.isoformat()}..{end.isoformat()}"


def _signals(exp: Experience, params: CrossCategoryParams) -> set[tuple[str, str]]:
    signals = {("tag", normalize_tag(t)) for t in exp.tags if normalize_tag(t)}
    if exp.has_location:
        signals.add(("location", location_cell(exp.latitude, exp.longitude, params.location_bucket_deg)))
    if exp.occurred_on is not None:
        signals.add(("time_window", _time_window(exp.occurred_on, params.window_days)))
    return signals


def detect_cross_category(
    experiences: list[Experience], params: CrossCategoryParams
) -> list[CrossCategoryPattern]:
    by_signal: dict[tuple[str, str], list[Experience]] = {}
    for exp in experiences:
        for signal in _signals(exp, params):
            by_signal.setdefault(signal, []).append(exp)

    patterns: list[CrossCategoryPattern] = []
    for (signal_type, value), members in by_signal.items():
        counts = Counter(e.category for e in members)
        if len(counts) < 2:
            continue
        n = len(members)
        pair_count = (n * n - sum(c * c for c in counts.values())) // 2
        if pair_count < params.min_overlap:
            continue
        confidence = round(pair_count / (n * (n - 1) / 2), 4)
        if confidence < params.min_confidence:
            continue
        patterns.append(CrossCategoryPattern(
            signal_type=signal_type,
            signal_value=value,
            categories=sorted(counts),
            pair_count=pair_count,
            confidence=confidence,
            experience_ids=[e.id for e in members],
        ))

    patterns.sort(key=lambda p: (-p.pair_count, p.signal_type, p.signal_value))
    return patterns
