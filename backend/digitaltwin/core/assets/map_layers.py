"""
Map layer content analysis.

Uploaded map layers are arbitrary JSON objects. ``analyze_layer_content``
classifies them and pulls out the metadata stored next to the blob:

    FeatureCollection with features   -> geojson
    Feature with geometry             -> geojson_feature
    object with a "layers" list       -> layer_group
    anything else                     -> custom
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class LayerInfo:
    layer_type: str
    layer_name: str
    properties_count: int = 0
    geometry_type: Optional[str] = None
    description: Optional[str] = None


def _lower(value: Any) -> Optional[str]:
    return value.lower() if isinstance(value, str) else None


def analyze_layer_content(layer: Dict[str, Any]) -> LayerInfo:
    if layer.get("type") == "FeatureCollection" and isinstance(layer.get("features"), list):
        info = LayerInfo(layer_type="geojson", layer_name=layer.get("name") or "geojson_layer")
        features = layer["features"]
        if features and isinstance(features[0], dict):
            first = features[0]
            geometry = first.get("geometry")
            if isinstance(geometry, dict):
                info.geometry_type = _lower(geometry.get("type"))
            if isinstance(first.get("properties"), dict):
                info.properties_count = len(first["properties"])

    elif layer.get("type") == "Feature" and layer.get("geometry"):
        properties = layer.get("properties") if isinstance(layer.get("properties"), dict) else {}
        geometry = layer["geometry"] if isinstance(layer["geometry"], dict) else {}
        info = LayerInfo(
            layer_type="geojson_feature",
            layer_name=properties.get("name") or "feature",
            geometry_type=_lower(geometry.get("type")),
            properties_count=len(properties),
        )

    elif isinstance(layer.get("layers"), list):
        info = LayerInfo(
            layer_type="layer_group",
            layer_name=layer.get("name") or "layer_group",
            properties_count=len(layer["layers"]),
        )

    else:
        info = LayerInfo(
            layer_type="custom",
            layer_name=layer.get("name") or layer.get("title") or layer.get("id") or "custom_layer",
            properties_count=len(layer),
        )

    info.layer_name = str(info.layer_name)
    description = layer.get("description") or layer.get("desc") or layer.get("summary")
    info.description = description if isinstance(description, str) else None
    return info


def layer_filename(layer_name: str, timestamp_ms: int) -> str:
    """Storage file name for a layer; unsafe characters become underscores."""
    safe_name = re.sub(r"[^A-Za-z0-9_.-]+", "_", layer_name).strip("._") or "layer"
    return f"{safe_name}_{timestamp_ms}.json"
