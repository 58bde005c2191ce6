"""Pattern detectors. Pure functions over an ordered list of experiences."""

from discovery.engines.patterns.attribute_correlation import AttributeCorrelationParams, correlate_attributes
from discovery.engines.patterns.category_compare import CompareCategoriesParams, compare_categories
from discovery.engines.patterns.cross_category import CrossCategoryParams, detect_cross_category
from discovery.engines.patterns.explainer import explain_pair
from discovery.engines.patterns.geo import GeographicParams, detect_geographic_clusters
from discovery.engines.patterns.tag_network import TagNetworkParams, detect_tag_pairs
from discovery.engines.patterns.temporal import TemporalParams, detect_temporal_cycles

# detector name -> (parameter model, detector); the set-level detectors the summary runs
DETECTORS = {
    "geographic": (GeographicParams, detect_geographic_clusters),
    "temporal": (TemporalParams, detect_temporal_cycles),
    "tag_network": (TagNetworkParams, detect_tag_pairs),
    "cross_category": (CrossCategoryParams, detect_cross_category),
}

__all__ = [
    "DETECTORS",
    "AttributeCorrelationParams",
    "CompareCategoriesParams",
    "CrossCategoryParams",
    "GeographicParams",
    "TagNetworkParams",
    "TemporalParams",
    "compare_categories",
    "correlate_attributes",
    "detect_cross_category",
    "detect_geographic_clusters",
    "detect_tag_pairs",
    "detect_temporal_cycles",
    "explain_pair",
]
