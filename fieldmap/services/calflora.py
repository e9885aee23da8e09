# fieldmap/services/calflora.py
import logging
from typing import Any, Dict, List, Optional

from ..core.config import settings
from ..schemas.common import DataSource
from ..schemas.observations import CalFloraPlant
from ..utils.geo import extent_for
from ..utils.http import MinIntervalLimiter
from ..utils.time import from_epoch_ms
from . import arcgis

logger = logging.getLogger(__name__)

_limiter = MinIntervalLimiter(settings.arcgis_min_interval_sec)


def native_status(attrs: Dict[str, Any]) -> str:
    raw = str(attrs.get("native_status") or attrs.get("nativity") or "").lower()
    if attrs.get("cal_ipc_rating") or "invasive" in raw:
        return "invasive"
    if raw.startswith("non") or "introduced" in raw or "exotic" in raw:
        return "non-native"
    if "native" in raw:
        return "native"
    return "unknown"


def _date(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return from_epoch_ms(value).strftime("%Y-%m-%d")
    return str(value)


def transform_feature(feature: Dict[str, Any]) -> CalFloraPlant:
    a = feature.get("attributes") or {}
    g = feature.get("geometry") or {}
    return CalFloraPlant(
        id=str(a.get("id") or a.get("OBJECTID") or a.get("objectid")),
        scientific_name=a.get("plant") or a.get("scientific_name") or "Unknown",
        common_name=a.get("common_name"),
        family=a.get("family"),
        native_status=native_status(a),
        cal_ipc_rating=a.get("cal_ipc_rating"),
        location=(g.get("x", 0.0), g.get("y", 0.0)),
        county=a.get("county"),
        elevation=a.get("elevation"),
        observation_date=_date(a.get("observation_date") or a.get("date")),
        observer=a.get("observer"),
        attributes=a,
    )


async def query_plants(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search_mode: str = "expanded",
    custom_polygon: Optional[str] = None,
    max_results: int = 1000,
) -> tuple[List[CalFloraPlant], DataSource]:
    where = "1=1"
    if start_date and end_date:
        where = f"observation_date >= DATE '{start_date}' AND observation_date <= DATE '{end_date}'"
    use_post = False
    if search_mode == "custom" and custom_polygon:
        geo = {"geometry": custom_polygon, "geometry_type": "esriGeometryPolygon"}
        use_post = True
    else:
        geo = {"geometry": extent_for(search_mode).envelope(), "geometry_type": "esriGeometryEnvelope"}
    await _limiter.wait()
    features = await arcgis.query_all(settings.calflora_url, max_results=max_results, page_size=1000,
                                      use_post=use_post, where=where, out_fields="*", **geo)
    plants = [transform_feature(f) for f in features]
    return plants, DataSource(name="CalFlora (preserve)", url=settings.calflora_url, note=where)
