# fieldmap/services/tnc_observations.py
import logging
from typing import List, Optional

from ..core.config import settings
from ..schemas.common import DataSource
from ..schemas.observations import TNCObservation
from ..utils.geo import BBox, extent_for, preserve_boundary_geometry
from . import arcgis

logger = logging.getLogger(__name__)

OBSERVATIONS_LAYER_ID = 0
OUT_FIELDS = (
    "OBJECTID,observation_id,observation_uuid,scientific_name,common_name,taxon_category_name,"
    "observed_on,user_name,taxon_kingdom_name,taxon_phylum_name,taxon_class_name,taxon_order_name,"
    "taxon_family_name,taxon_genus_name,taxon_species_name,image_url,image_license"
)


def _layer_url() -> str:
    return f"{settings.tnc_observations_base.rstrip('/')}/{OBSERVATIONS_LAYER_ID}"


def build_where(taxon_categories: List[str], start_date: Optional[str], end_date: Optional[str]) -> str:
    where = "1=1"
    if taxon_categories:
        cats = ",".join(f"'{c}'" for c in taxon_categories)
        where += f" AND taxon_category_name IN ({cats})"
    if start_date and end_date:
        where += f" AND observed_on >= DATE '{start_date}' AND observed_on <= DATE '{end_date}'"
    return where


def spatial_params(mode: str, custom_polygon: Optional[str], extent: Optional[BBox] = None) -> tuple[dict, bool]:
    """Returns (geometry kwargs, use_post). Polygon filters go by POST."""
    if mode == "custom" and custom_polygon:
        return {"geometry": custom_polygon, "geometry_type": "esriGeometryPolygon"}, True
    if mode == "preserve-only":
        geometry, geometry_type = preserve_boundary_geometry(settings.preserve_boundary_path)
        return {"geometry": geometry, "geometry_type": geometry_type}, geometry_type == "esriGeometryPolygon"
    box = extent or extent_for(mode)
    return {"geometry": box.envelope(), "geometry_type": "esriGeometryEnvelope"}, False


def _to_observation(feature: dict) -> TNCObservation:
    attrs = dict(feature.get("attributes") or {})
    geom = feature.get("geometry") or {}
    attrs["observation_id"] = attrs.get("observation_id") or attrs.get("OBJECTID")
    return TNCObservation(**attrs, coordinates=(geom.get("x", 0.0), geom.get("y", 0.0)))


async def query_observations(
    taxon_categories: Optional[List[str]] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search_mode: str = "expanded",
    custom_polygon: Optional[str] = None,
    max_results: int = 10000,
) -> tuple[List[TNCObservation], DataSource]:
    where = build_where(taxon_categories or [], start_date, end_date)
    geo, use_post = spatial_params(search_mode, custom_polygon)
    features = await arcgis.query_all(
        _layer_url(),
        max_results=max_results,
        page_size=1000,
        max_pages=50,
        use_post=use_post,
        where=where,
        out_fields=OUT_FIELDS,
        order_by="OBJECTID DESC",
        **geo,
    )
    observations = [_to_observation(f) for f in features]
    return observations, DataSource(name="TNC iNaturalist mirror", url=_layer_url(), note=where)


async def query_observations_count(
    taxon_categories: Optional[List[str]] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search_mode: str = "expanded",
    custom_polygon: Optional[str] = None,
) -> int:
    where = build_where(taxon_categories or [], start_date, end_date)
    geo, use_post = spatial_params(search_mode, custom_polygon)
    return await arcgis.query_count(_layer_url(), use_post=use_post or search_mode == "custom", where=where, **geo)
