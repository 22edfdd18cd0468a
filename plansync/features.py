"""
Helpers for converting between stored points and GeoJSON features.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Tuple

from plansync.errors import InvalidFeatureError

# Open attribute bag for a point; values only need to be JSON serializable.
Properties = Dict[str, Any]


def empty_feature_collection() -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": []}


def make_feature(point_id: str, properties: Properties, geometry: Any) -> Dict[str, Any]:
    """Build a client-facing feature; the id is folded back into properties."""
    return {
        "type": "Feature",
        "properties": {**(properties or {}), "id": point_id},
        "geometry": geometry,
    }


def feature_collection(features: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": list(features)}


def strip_id(properties: Properties) -> Properties:
    """Return a copy of properties without the redundant id key."""
    stored = dict(properties or {})
    stored.pop("id", None)
    return stored


def split_feature(feature: Any) -> Tuple[str, Properties, Dict[str, Any]]:
    """
    Split an incoming feature into (id, properties-without-id, geometry).

    Raises InvalidFeatureError when the feature has no usable id or geometry.
    """
    if not isinstance(feature, dict):
        raise InvalidFeatureError("feature must be an object")
    properties = feature.get("properties")
    if not isinstance(properties, dict):
        raise InvalidFeatureError("feature.properties must be an object")
    point_id = properties.get("id")
    if point_id is None or point_id == "":
        raise InvalidFeatureError("feature.properties.id is required")
    geometry = feature.get("geometry")
    if not isinstance(geometry, dict):
        raise InvalidFeatureError(
            f"feature {point_id!r} has no geometry object"
        )
    return str(point_id), strip_id(properties), geometry


def features_of(collection: Any) -> List[Any]:
    """Return the features list of a collection, tolerating a missing one."""
    if not collection:
        return []
    if not isinstance(collection, dict):
        raise InvalidFeatureError("geojsonData must be an object")
    features = collection.get("features") or []
    if not isinstance(features, list):
        raise InvalidFeatureError("geojsonData.features must be a list")
    return features
