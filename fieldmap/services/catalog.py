# fieldmap/services/catalog.py
"""
Hub catalog of geospatial layers plus the per-service metadata requests the
layer manager needs (sub-layer listing, legends, image size warnings).
"""
import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.errors import FieldMapError, translate_http_error
from ..schemas.catalog import CatalogItem, LegendData, LegendItem, SubLayerInfo, UIPattern
from ..schemas.common import DataSource
from ..utils.http import MinIntervalLimiter, get_json
from . import arcgis

logger = logging.getLogger(__name__)

_limiter = MinIntervalLimiter(settings.arcgis_min_interval_sec)

COLLECTIONS = ("dataset", "appAndMap", "document")

UI_PATTERN_TYPES = {
    UIPattern.MAP_LAYER: {
        "Feature Service", "Image Service", "Map Service", "Vector Tile Service",
        "Scene Service", "Stream Service", "WMS", "WFS", "KML",
    },
    UIPattern.EXTERNAL_LINK: {
        "Web Experience", "Dashboard", "Web Mapping Application", "Operations Dashboard",
        "Insights Workbook", "Hub Initiative", "Site Application",
    },
}

LARGE_PIXEL_THRESHOLD = 100_000_000
VERY_LARGE_PIXEL_THRESHOLD = 1_000_000_000


def ui_pattern_for(item_type: str) -> UIPattern:
    for pattern, types in UI_PATTERN_TYPES.items():
        if item_type in types:
            return pattern
    return UIPattern.MODAL


def item_from_record(feature: Dict[str, Any]) -> Optional[CatalogItem]:
    attrs = feature.get("properties") or feature.get("attributes") or {}
    item_id = feature.get("id") or attrs.get("id")
    url = attrs.get("url") or attrs.get("itemURL") or ""
    if not item_id or not url:
        return None
    categories = attrs.get("categories") or []
    if not isinstance(categories, list):
        categories = [categories]
    item_type = attrs.get("type") or "Unknown"
    return CatalogItem(
        id=str(item_id),
        title=attrs.get("title") or attrs.get("name") or "Untitled",
        source_url=url,
        item_type=item_type,
        ui_pattern=ui_pattern_for(item_type),
        description=attrs.get("description") or attrs.get("snippet") or "",
        tags=attrs.get("tags") or [],
        categories=categories,
    )


async def fetch_collection(collection: str, limit: int = 100) -> List[Dict[str, Any]]:
    await _limiter.wait()
    url = f"{settings.hub_catalog_base.rstrip('/')}/{collection}/items"
    try:
        data = await get_json(url, params={"limit": str(limit)}, timeout=settings.http_timeout_sec)
    except httpx.HTTPError as ex:
        raise translate_http_error(ex) from ex
    return data.get("features") or data.get("data") or []


async def search_items(keyword: Optional[str] = None, limit: int = 100) -> tuple[List[CatalogItem], DataSource]:
    """Items from every collection, de-duplicated by id, optionally keyword filtered."""
    pages = await asyncio.gather(*[fetch_collection(c, limit) for c in COLLECTIONS])
    seen: set[str] = set()
    items: List[CatalogItem] = []
    for page in pages:
        for feature in page:
            if (feature.get("properties") or feature.get("attributes") or {}).get("type") == "Hub Page":
                continue
            item = item_from_record(feature)
            if item is None or item.id in seen:
                continue
            seen.add(item.id)
            items.append(item)
    if keyword:
        q = keyword.lower()
        items = [i for i in items if q in f"{i.title} {i.description} {' '.join(i.tags)}".lower()]
    return items, DataSource(name="Hub catalog", url=settings.hub_catalog_base, note=f"{len(items)} items")


async def fetch_service_layers(service_url: str, timeout: Optional[float] = None) -> List[SubLayerInfo]:
    """Sub-layers of a Feature/Map/Image service. Any failure yields an empty list."""
    try:
        data = await arcgis.fetch_service_json(service_url, timeout=timeout or settings.layer_load_timeout_sec)
    except FieldMapError as ex:
        logger.warning("Could not list layers of %s: %s", service_url, ex)
        return []
    if isinstance(data.get("layers"), list):
        return [
            SubLayerInfo(
                id=l["id"], name=l.get("name") or f"Layer {l['id']}", type=l.get("type") or "Feature Layer",
                description=l.get("description"), geometry_type=l.get("geometryType"),
                min_scale=l.get("minScale"), max_scale=l.get("maxScale"),
            )
            for l in data["layers"] if "id" in l
        ]
    if data.get("name") and "/ImageServer" in service_url:
        return [SubLayerInfo(id=0, name=data["name"], type="Image Service",
                             description=data.get("description") or data.get("serviceDescription"),
                             min_scale=data.get("minScale"), max_scale=data.get("maxScale"))]
    return []


async def prefetch_service_layers(service_url: str) -> List[SubLayerInfo]:
    return await fetch_service_layers(service_url, timeout=settings.metadata_prefetch_timeout_sec)


def image_performance_warning(data: dict) -> Optional[str]:
    """Warning text for untiled image services too large to render quickly."""
    tiled = "Tiles" in (data.get("capabilities") or "") or data.get("cacheType") is not None
    extent = data.get("extent") or {}
    cols = data.get("cols") or extent.get("width") or 0
    rows = data.get("rows") or extent.get("height") or 0
    pixels = cols * rows
    if tiled or pixels <= LARGE_PIXEL_THRESHOLD:
        return None
    size_gb = pixels * 3 / (1024 ** 3)
    size = f"~{size_gb:.1f} GB" if size_gb > 1 else f"~{size_gb * 1024:.0f} MB"
    if pixels > VERY_LARGE_PIXEL_THRESHOLD:
        return f"This image service is not tiled and extremely large ({size}). Rendering will be very slow or may fail."
    return f"This image service is not tiled and very large ({size}). Rendering may be slow."


# -------- legends ----------
_UNIT_PATTERNS = (
    re.compile(r"units?:\s*([^\n,;.]+)", re.I),
    re.compile(r"measured in\s+([^\n,;.]+)", re.I),
    re.compile(r"\(([^)]+)\)\s*$"),
)


def extract_units(metadata: Optional[dict]) -> Optional[str]:
    if not metadata:
        return None
    if metadata.get("units"):
        return metadata["units"]
    for f in metadata.get("fields") or []:
        if f.get("units"):
            return f["units"]
    text = metadata.get("description") or metadata.get("serviceDescription") or ""
    for pattern in _UNIT_PATTERNS:
        m = pattern.search(text)
        if m:
            return m.group(1).strip()
    return None


def transform_symbol(symbol: Optional[dict]) -> Dict[str, Any]:
    if not symbol:
        return {}
    t = symbol.get("type")
    if t in ("esriSFS", "esriSMS"):
        out = {"type": "polygon" if t == "esriSFS" else "point", "fillColor": symbol.get("color")}
        if t == "esriSFS":
            out["style"] = symbol.get("style")
        else:
            out["size"] = symbol.get("size")
        if symbol.get("outline"):
            out["outlineColor"] = symbol["outline"].get("color")
            out["outlineWidth"] = symbol["outline"].get("width")
        return out
    if t == "esriSLS":
        return {"type": "line", "fillColor": symbol.get("color"), "lineWidth": symbol.get("width")}
    if t in ("esriPFS", "esriPMS"):
        return {
            "type": "image", "imageData": symbol.get("imageData"), "url": symbol.get("url"),
            "contentType": symbol.get("contentType") or "image/png",
            "width": symbol.get("width") or 20, "height": symbol.get("height") or 20,
        }
    return {"type": "text"} if t == "esriTS" else {}


def renderer_to_legend(renderer: dict, layer_name: str, layer_id: int, units: Optional[str]) -> LegendData:
    rtype = renderer.get("type") or "simple"
    items: List[LegendItem] = []
    if rtype == "simple":
        items.append(LegendItem(label=renderer.get("label") or layer_name, symbol=transform_symbol(renderer.get("symbol"))))
    elif rtype == "uniqueValue":
        items = [LegendItem(label=str(i.get("label") or i.get("value")), symbol=transform_symbol(i.get("symbol")))
                 for i in renderer.get("uniqueValueInfos") or []]
    elif rtype == "classBreaks":
        items = [LegendItem(label=str(i.get("label") or ""), symbol=transform_symbol(i.get("symbol")))
                 for i in renderer.get("classBreakInfos") or []]
    return LegendData(layer_id=str(layer_id), layer_name=layer_name, renderer_type=rtype, units=units, items=items)


async def fetch_legend_info(service_url: str, layer_id: int = 0) -> Optional[LegendData]:
    """
    Try ``/legend`` first (map and image services), then fall back to the
    layer's ``drawingInfo.renderer``. Returns None when neither has a legend.
    """
    is_image = "/ImageServer" in service_url
    layer_url = service_url if is_image else f"{service_url.rstrip('/')}/{layer_id}"

    metadata: Optional[dict] = None
    try:
        metadata = await arcgis.fetch_service_json(layer_url)
    except FieldMapError as ex:
        logger.debug("Layer metadata unavailable for legend of %s: %s", layer_url, ex)

    try:
        legend = await arcgis.fetch_service_json(f"{service_url.rstrip('/')}/legend")
    except FieldMapError:
        legend = {}
    layers = legend.get("layers") or []
    if layers:
        entry = next((l for l in layers if l.get("layerId") == layer_id), layers[0])
        if entry.get("legend"):
            return LegendData(
                layer_id=str(entry.get("layerId")),
                layer_name=entry.get("layerName") or "",
                renderer_type="simple" if len(entry["legend"]) == 1 else "uniqueValue",
                units=extract_units(metadata),
                items=[LegendItem(label=i.get("label") or "", symbol=transform_symbol(
                    {"type": "esriPMS", **{k: i.get(k) for k in ("imageData", "url", "contentType", "width", "height")}}))
                    for i in entry["legend"]],
            )

    renderer = ((metadata or {}).get("drawingInfo") or {}).get("renderer")
    if not renderer:
        return None
    return renderer_to_legend(renderer, (metadata or {}).get("name") or f"Layer {layer_id}", layer_id, extract_units(metadata))
