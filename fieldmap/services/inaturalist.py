# fieldmap/services/inaturalist.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from ..core.config import settings
from ..core.errors import translate_http_error
from ..schemas.common import DataSource
from ..schemas.observations import INaturalistObservation, INaturalistTaxon
from ..utils.http import MinIntervalLimiter, get_json

logger = logging.getLogger(__name__)

PER_PAGE = 200

# 60 requests/minute
_limiter = MinIntervalLimiter(settings.inaturalist_min_interval_sec)


def _date_range(start_date: Optional[str], end_date: Optional[str], days_back: int):
    if start_date and end_date:
        return start_date, end_date
    end = datetime.now(timezone.utc)
    return (end - timedelta(days=days_back)).strftime("%Y-%m-%d"), end.strftime("%Y-%m-%d")


def transform_observation(obs: Dict[str, Any]) -> INaturalistObservation:
    """The API reports ``location`` as "lat,lng"; keep (lon, lat)."""
    parts = (obs.get("location") or "0,0").split(",")
    lat, lon = float(parts[0]), float(parts[1])
    taxon = obs.get("taxon")
    return INaturalistObservation(
        id=obs["id"],
        observed_on=obs.get("observed_on"),
        created_at=obs.get("created_at"),
        updated_at=obs.get("updated_at"),
        time_observed_at=obs.get("time_observed_at"),
        location=(lon, lat),
        geoprivacy=obs.get("geoprivacy"),
        taxon=INaturalistTaxon(**{k: taxon.get(k) for k in (
            "id", "name", "preferred_common_name", "iconic_taxon_name", "rank", "default_photo")}) if taxon else None,
        user_login=(obs.get("user") or {}).get("login"),
        photos=obs.get("photos") or [],
        quality_grade=obs.get("quality_grade"),
        uri=obs.get("uri"),
    )


async def get_recent_observations(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    days_back: int = 30,
    max_results: int = 500,
    quality_grade: Optional[str] = None,
    iconic_taxa: Optional[List[str]] = None,
) -> tuple[List[INaturalistObservation], DataSource]:
    d1, d2 = _date_range(start_date, end_date, days_back)
    params: Dict[str, str] = {
        "place_id": str(settings.inaturalist_place_id),
        "per_page": str(PER_PAGE),
        "d1": d1,
        "d2": d2,
        "order": "desc",
        "order_by": "observed_on",
        "has": "geo",
        "acc_below": "1000",
        "photos": "true",
        "photo_license": "any",
    }
    if quality_grade:
        params["quality_grade"] = quality_grade
    if iconic_taxa:
        params["iconic_taxa"] = ",".join(iconic_taxa)

    url = f"{settings.inaturalist_base}/observations"
    results: List[Dict[str, Any]] = []
    page = 1
    while len(results) < max_results:
        await _limiter.wait()
        params["page"] = str(page)
        try:
            data = await get_json(url, params=params, timeout=settings.http_timeout_sec)
        except httpx.HTTPError as ex:
            raise translate_http_error(ex) from ex
        batch = data.get("results") or []
        logger.debug("iNaturalist page %s: %s observations (total %s)", page, len(batch), data.get("total_results"))
        if not batch:
            break
        results.extend(batch)
        if len(batch) < PER_PAGE:
            break
        page += 1

    observations = [transform_observation(o) for o in results[:max_results]]
    return observations, DataSource(name="iNaturalist observations (place)", url=url,
                                    note=f"{d1} to {d2}, {len(observations)} results")
