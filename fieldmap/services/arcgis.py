# fieldmap/services/arcgis.py
"""
Point-query service protocol shared by the feature-service backed catalogs.

    GET {serviceUrl}/query?where=...&geometry=...&outFields=...&f=json
    -> {"features": [{"attributes": {...}, "geometry": {...}}], "exceededTransferLimit": bool}

The count-only variant sets ``returnCountOnly`` and returns ``{"count": n}``.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.errors import check_arcgis_payload, translate_http_error
from ..utils.http import get_json, post_form

logger = logging.getLogger(__name__)


def build_query_params(
    where: str = "1=1",
    out_fields: Optional[List[str] | str] = "*",
    geometry: Optional[str] = None,
    geometry_type: str = "esriGeometryEnvelope",
    return_geometry: bool = True,
    record_count: Optional[int] = None,
    offset: Optional[int] = None,
    order_by: Optional[str] = None,
    count_only: bool = False,
) -> Dict[str, str]:
    params: Dict[str, str] = {"where": where, "f": "json"}
    if count_only:
        params["returnCountOnly"] = "true"
    else:
        if isinstance(out_fields, (list, tuple)):
            out_fields = ",".join(out_fields)
        params["outFields"] = out_fields or "*"
        params["returnGeometry"] = "true" if return_geometry else "false"
    if geometry:
        params["geometry"] = geometry
        params["geometryType"] = geometry_type
        params["spatialRel"] = "esriSpatialRelIntersects"
        params["inSR"] = "4326"
    if not count_only:
        params["outSR"] = "4326"
    if record_count is not None:
        params["resultRecordCount"] = str(record_count)
    if offset is not None:
        params["resultOffset"] = str(offset)
    if order_by:
        params["orderByFields"] = order_by
    return params


async def fetch_service_json(url: str, params: Optional[dict] = None, timeout: Optional[float] = None) -> dict:
    """GET ``url`` with ``f=json``; httpx and ArcGIS errors come back as the failure taxonomy."""
    query = {"f": "json", **(params or {})}
    try:
        payload = await get_json(url, params=query, timeout=timeout or settings.http_timeout_sec)
    except (httpx.HTTPError, ValueError) as ex:
        raise translate_http_error(ex) from ex
    return check_arcgis_payload(payload)


async def query(layer_url: str, params: Dict[str, str], use_post: bool = False, timeout: Optional[float] = None) -> dict:
    url = f"{layer_url.rstrip('/')}/query"
    try:
        if use_post:
            payload = await post_form(url, data=params, timeout=timeout or settings.http_timeout_sec)
        else:
            payload = await get_json(url, params=params, timeout=timeout or settings.http_timeout_sec)
    except (httpx.HTTPError, ValueError) as ex:
        raise translate_http_error(ex) from ex
    return check_arcgis_payload(payload)


async def query_features(layer_url: str, use_post: bool = False, **kwargs) -> List[Dict[str, Any]]:
    data = await query(layer_url, build_query_params(**kwargs), use_post=use_post)
    return data.get("features") or []


async def query_count(layer_url: str, use_post: bool = False, **kwargs) -> int:
    data = await query(layer_url, build_query_params(count_only=True, **kwargs), use_post=use_post)
    count = data.get("count")
    return count if isinstance(count, int) else 0


async def query_all(
    layer_url: str,
    max_results: int,
    page_size: int = 1000,
    max_pages: int = 50,
    use_post: bool = False,
    **kwargs,
) -> List[Dict[str, Any]]:
    """
    Page through ``/query`` with resultOffset until a short page, ``max_results``
    or ``max_pages``. Services may set exceededTransferLimit even when more pages
    exist, so a full page always means "keep going".
    """
    features: List[Dict[str, Any]] = []
    offset = 0
    for _ in range(max_pages):
        remaining = max_results - len(features)
        if remaining <= 0:
            break
        size = min(page_size, remaining)
        page = await query_features(layer_url, use_post=use_post, record_count=size, offset=offset, **kwargs)
        features.extend(page)
        if len(page) < size:
            break
        offset += len(page)
    return features


async def query_pages_parallel(
    layer_url: str,
    page_size: int,
    parallel: int,
    **kwargs,
) -> List[Dict[str, Any]]:
    """
    Fetch ``parallel`` pages at a time and stop at the first empty or short page.
    Pages are consumed in offset order.
    """
    out: List[Dict[str, Any]] = []
    offset = 0
    while True:
        batches = await asyncio.gather(*[
            query_features(layer_url, record_count=page_size, offset=offset + i * page_size, **kwargs)
            for i in range(parallel)
        ])
        for batch in batches:
            if not batch:
                return out
            out.extend(batch)
            if len(batch) < page_size:
                return out
        offset += parallel * page_size
