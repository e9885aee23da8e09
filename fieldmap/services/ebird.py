# fieldmap/services/ebird.py
from typing import List, Optional

from ..core.config import settings
from ..schemas.common import DataSource
from ..schemas.observations import EBirdObservation
from . import arcgis

OBSERVATIONS_LAYER_ID = 0


def base_url(search_mode: str) -> str:
    # custom polygons are clipped from the buffer-zone dataset
    base = settings.ebird_exact_base if search_mode == "preserve-only" else settings.ebird_buffer_base
    return f"{base.rstrip('/')}/{OBSERVATIONS_LAYER_ID}"


def build_where(start_date: Optional[str], end_date: Optional[str]) -> str:
    # observation_date is a "YYYY-MM-DD" string field
    if start_date and end_date:
        return f"observation_date >= '{start_date}' AND observation_date <= '{end_date}'"
    if start_date:
        return f"observation_date >= '{start_date}'"
    if end_date:
        return f"observation_date <= '{end_date}'"
    return "1=1"


async def query_observations(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search_mode: str = "expanded",
    custom_polygon: Optional[str] = None,
    max_results: int = 2000,
    page_size: int = 500,
) -> tuple[List[EBirdObservation], DataSource]:
    kwargs = {"where": build_where(start_date, end_date), "out_fields": "*", "order_by": "observation_date DESC"}
    use_post = False
    if search_mode == "custom" and custom_polygon:
        kwargs.update(geometry=custom_polygon, geometry_type="esriGeometryPolygon")
        use_post = True
    url = base_url(search_mode)
    features = await arcgis.query_all(url, max_results=max_results, page_size=page_size, use_post=use_post, **kwargs)
    # geometry is Web Mercator; the lat/lng attributes are WGS84
    observations = [
        EBirdObservation(**f["attributes"])
        for f in features
        if f.get("attributes") and f["attributes"].get("lat") is not None and f["attributes"].get("lng") is not None
    ]
    return observations, DataSource(name="eBird observations", url=url, note=kwargs["where"])


async def query_observations_count(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search_mode: str = "expanded",
    custom_polygon: Optional[str] = None,
) -> int:
    kwargs = {"where": build_where(start_date, end_date)}
    use_post = False
    if search_mode == "custom" and custom_polygon:
        kwargs.update(geometry=custom_polygon, geometry_type="esriGeometryPolygon")
        use_post = True
    return await arcgis.query_count(base_url(search_mode), use_post=use_post, **kwargs)
