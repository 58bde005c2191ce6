"""Tests for category comparison and attribute correlation."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))
os.environ.setdefault("DATABASE_URL", "sqlite:///test.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test")

from datetime import date

import pytest
from pydantic import ValidationError

from discovery.engines.patterns import (
    AttributeCorrelationParams,
    CompareCategoriesParams,
    compare_categories,
    correlate_attributes,
)
from discovery.engines.patterns.category_compare import pearson
from discovery.models.errors import InvalidRequestError
from discovery.models.experience import Experience


def _exp(exp_id, category="ufo_uap", **kwargs) -> Experience:
    return Experience(id=exp_id, user_id=kwargs.pop("user_id", "u1"), category=category, **kwargs)


def _sightings():
    return [
        _exp("u1", location_text="Zurich ", occurred_on=date(2023, 8, 1), attributes={"shape": "sphere"}),
        _exp("u2", location_text="zurich", occurred_on=date(2023, 8, 9), attributes={"shape": "disc", "color": "red"}),
        _exp("u3", location_text="Bern", occurred_on=date(2023, 9, 2)),
        _exp("d1", category="dreams", location_text="Zurich", occurred_on=date(2023, 7, 30),
             attributes={"lucid": "yes"}),
        _exp("d2", category="dreams", occurred_on=date(2023, 9, 5), attributes={"color": "blue"}),
        _exp("p1", category="paranormal", location_text="Basel"),
    ]


# === Category comparison ===


def test_pearson():
    assert pearson([1, 2, 3], [2, 4, 6]) == 1.0
    assert pearson([1, 2, 3], [3, 2, 1]) == -1.0
    assert pearson([1, 1, 1], [1, 2, 3]) == 0.0
    assert pearson([5], [5]) == 0.0


def test_compare_two_categories():
    result = compare_categories(_sightings(), CompareCategoriesParams(category_a="ufo_uap", category_b="dreams"))

    assert result.category_a.count == 3
    assert result.category_b.count == 2
    assert result.difference == 1
    assert result.ratio == 1.5
    assert [(loc.label, loc.count) for loc in result.category_a.top_locations] == [("zurich", 2), ("bern", 1)]
    assert result.shared_locations == ["zurich"]
    assert result.category_a.peak_month == "2023-08"
    assert [(m.label, m.count) for m in result.category_b.months] == [("2023-07", 1), ("2023-09", 1)]
    assert result.shared_attributes == ["color"]
    assert result.unique_to_a == ["shape"]
    assert result.unique_to_b == ["lucid"]
    assert result.experience_ids == ["u1", "u2", "u3", "d1", "d2"]
    # months 07, 08, 09: ufo (0, 2, 1) against dreams (1, 0, 1)
    assert result.temporal_correlation == -0.866


def test_compare_with_date_range_and_empty_side():
    params = CompareCategoriesParams(
        category_a="ufo_uap", category_b="dreams", date_from=date(2023, 8, 1), date_to=date(2023, 8, 31),
    )
    result = compare_categories(_sightings(), params)
    assert result.category_a.count == 2
    assert result.category_b.count == 0
    assert result.ratio is None
    assert result.category_b.peak_month is None
    assert result.temporal_correlation == 0.0


def test_compare_params_are_checked():
    with pytest.raises(ValidationError):
        CompareCategoriesParams(category_a="ufo_uap", category_b="ufo_uap")
    with pytest.raises(ValidationError):
        CompareCategoriesParams(category_a="ufo_uap", category_b="astrology")
    with pytest.raises(ValidationError):
        CompareCategoriesParams(
            category_a="ufo_uap", category_b="dreams", date_from=date(2024, 1, 2), date_to=date(2024, 1, 1),
        )


# === Attribute correlation ===


def _attributed():
    return [
        _exp("e1", attributes={"shape": "sphere", "color": "orange"}),
        _exp("e2", attributes={"shape": "Sphere", "color": "orange"}),
        _exp("e3", attributes={"shape": "sphere", "color": "white"}),
        _exp("e4", category="dreams", attributes={"shape": "triangle", "color": "white", "witness_name": "Ann"}),
    ]


FILTERABLE = {"shape", "color"}


def test_correlations_ranked_by_lift():
    report = correlate_attributes(_attributed(), AttributeCorrelationParams(min_cooccurrence=1), FILTERABLE)

    assert report.total_experiences == 4
    assert report.total_attributes == 4  # witness_name is not filterable
    assert [(c.attribute_a, c.attribute_b, c.lift) for c in report.correlations] == [
        ("color=white", "shape=triangle", 2.0),
        ("color=orange", "shape=sphere", 1.333),
        ("color=white", "shape=sphere", 0.667),
    ]
    orange = report.correlations[1]
    assert orange.cooccurrences == 2
    assert orange.confidence == 1.0  # every orange report is a sphere
    assert orange.experience_ids == ["e1", "e2"]
    assert report.average_lift == 1.333


def test_correlation_thresholds_and_filters():
    at_least_two = correlate_attributes(_attributed(), AttributeCorrelationParams(min_cooccurrence=2), FILTERABLE)
    assert [(c.attribute_a, c.attribute_b) for c in at_least_two.correlations] == [("color=orange", "shape=sphere")]

    top = correlate_attributes(_attributed(), AttributeCorrelationParams(min_cooccurrence=1, top_n=1), FILTERABLE)
    assert len(top.correlations) == 1
    assert top.total_pairs == 3

    ufo_only = correlate_attributes(
        _attributed(), AttributeCorrelationParams(category="ufo_uap", min_cooccurrence=1), FILTERABLE,
    )
    assert ufo_only.total_experiences == 3
    assert all("triangle" not in c.attribute_b for c in ufo_only.correlations)

    triangle = correlate_attributes(
        _attributed(), AttributeCorrelationParams(attribute_key="shape", min_cooccurrence=1), {"shape"},
    )
    assert triangle.correlations == []


def test_no_attributes_no_correlations():
    report = correlate_attributes([_exp("e1"), _exp("e2")], AttributeCorrelationParams(), FILTERABLE)
    assert report.correlations == []
    assert report.average_lift == 0.0


# === Through the pattern service ===


@pytest.mark.asyncio
async def test_service_compares_visible_candidates(seeded):
    services, ids = seeded
    result = await services.patterns.compare_categories(
        list(ids.values()), {"category_a": "ufo_uap", "category_b": "dreams"},
    )
    # carol's private report is not visible to an anonymous caller
    assert result.category_a.count == 3
    assert ids["carol_private"] not in result.experience_ids
    assert result.unique_to_a == ["shape"]

    with pytest.raises(InvalidRequestError, match="Invalid parameters for compare_categories"):
        await services.patterns.compare_categories(list(ids.values()), {"category_a": "ufo_uap"})


@pytest.mark.asyncio
async def test_service_correlates_filterable_attributes_only(seeded):
    services, ids = seeded
    report = await services.patterns.correlate_attributes(list(ids.values()), {"min_cooccurrence": 1})
    assert report.total_attributes == 2  # shape=sphere, shape=triangle
    assert report.correlations == []

    with pytest.raises(InvalidRequestError, match="not filterable"):
        await services.patterns.correlate_attributes(list(ids.values()), {"attribute_key": "witness_name"})
