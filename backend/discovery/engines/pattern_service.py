"""Pattern service: loads candidate experiences and dispatches to detectors.

Detectors themselves are pure; this layer owns the async store reads,
parameter validation and the per-detector error isolation of the summary.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ValidationError

from discovery.engines.patterns import (
    DETECTORS,
    AttributeCorrelationParams,
    CompareCategoriesParams,
    compare_categories,
    correlate_attributes,
    explain_pair,
)
from discovery.models.errors import InvalidRequestError, NotFoundError
from discovery.models.experience import Experience, VisibilityScope
from discovery.models.patterns import (
    AttributeCorrelationReport,
    CategoryComparison,
    PatternSummary,
    SimilarityExplanation,
)
from discovery.store.experience_store import ExperienceStore

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 1000


def _parse(name: str, params_model: type[BaseModel], params: dict | None):
    try:
        return params_model(**(params or {}))
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid parameters for {name}: {e.errors()[0]['msg']}")


def validate_params(detector: str, params: dict | None):
    """Resolve a detector name and validate its named parameters."""
    if detector not in DETECTORS:
        raise InvalidRequestError(
            f"Unknown detector: {detector}. Expected one of: {', '.join(sorted(DETECTORS))}"
        )
    params_model, _ = DETECTORS[detector]
    return _parse(detector, params_model, params)


class PatternService:
    """Runs pattern detectors over candidate sets."""

    def __init__(self, store: ExperienceStore) -> None:
        self.store = store

    async def load(self, candidate_ids: list[str], scope: VisibilityScope) -> list[Experience]:
        """Visible experiences in candidate order; ids out of scope are skipped."""
        if len(candidate_ids) > MAX_CANDIDATES:
            raise InvalidRequestError(f"At most {MAX_CANDIDATES} candidates per detection")
        ordered = list(dict.fromkeys(candidate_ids))
        found = await self.store.get_many(ordered, scope)
        return [found[i] for i in ordered if i in found]

    async def detect(
        self,
        detector: str,
        candidate_ids: list[str],
        params: dict | None = None,
        viewer_id: str | None = None,
    ) -> list:
        parsed = validate_params(detector, params)
        experiences = await self.load(candidate_ids, VisibilityScope(viewer_id=viewer_id))
        _, detect = DETECTORS[detector]
        results = detect(experiences, parsed)
        logger.info("Detector %s: %d candidates -> %d patterns", detector, len(experiences), len(results))
        return results

    async def summarize(
        self,
        candidate_ids: list[str],
        params: dict[str, dict] | None = None,
        viewer_id: str | None = None,
    ) -> PatternSummary:
        """Run every set-level detector once; one detector failing does not sink the rest."""
        params = params or {}
        experiences = await self.load(candidate_ids, VisibilityScope(viewer_id=viewer_id))
        summary = PatternSummary()
        for name, (_, detect) in DETECTORS.items():
            try:
                parsed = validate_params(name, params.get(name))
                results = detect(experiences, parsed)
            except InvalidRequestError as e:
                summary.errors[name] = e.message
                continue
            setattr(summary, name, results)
            for result in results:
                for exp_id in result.experience_ids:
                    kinds = summary.membership.setdefault(exp_id, [])
                    if result.kind not in kinds:
                        kinds.append(result.kind)
        return summary

    async def explain(
        self,
        experience_a: str,
        experience_b: str,
        viewer_id: str | None = None,
    ) -> SimilarityExplanation:
        if experience_a == experience_b:
            raise InvalidRequestError("Cannot explain the similarity of an experience with itself.")
        scope = VisibilityScope(viewer_id=viewer_id)
        found = await self.store.get_many([experience_a, experience_b], scope)
        missing = [i for i in (experience_a, experience_b) if i not in found]
        if missing:
            raise NotFoundError(f"Experience not found: {', '.join(missing)}")
        embeddings = await self.store.get_embeddings([experience_a, experience_b])
        return explain_pair(
            found[experience_a],
            found[experience_b],
            embeddings.get(experience_a),
            embeddings.get(experience_b),
        )

    async def compare_categories(
        self,
        candidate_ids: list[str],
        params: dict | None = None,
        viewer_id: str | None = None,
    ) -> CategoryComparison:
        parsed = _parse("compare_categories", CompareCategoriesParams, params)
        experiences = await self.load(candidate_ids, VisibilityScope(viewer_id=viewer_id))
        return compare_categories(experiences, parsed)

    async def correlate_attributes(
        self,
        candidate_ids: list[str],
        params: dict | None = None,
        viewer_id: str | None = None,
    ) -> AttributeCorrelationReport:
        """Correlations over the filterable attribute keys of the schema."""
        parsed = _parse("attribute_correlation", AttributeCorrelationParams, params)
        schema = await self.store.attribute_schema()
        filterable = {key for key, entry in schema.items() if entry.is_filterable}
        if parsed.attribute_key is not None and parsed.attribute_key not in filterable:
            raise InvalidRequestError(f"Attribute is not filterable: {parsed.attribute_key}")
        experiences = await self.load(candidate_ids, VisibilityScope(viewer_id=viewer_id))
        report = correlate_attributes(experiences, parsed, filterable)
        logger.info("Attribute correlation: %d candidates -> %d pairs", len(experiences), report.total_pairs)
        return report
