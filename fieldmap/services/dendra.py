# fieldmap/services/dendra.py
"""
Sensor-network catalog (feature service with three relevant tables):

    0  stations      (points)
    3  datastreams   (station_id, variable, unit)
    4  datapoints    (id, datastream_id, timestamp_utc, value)
"""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from ..core.config import settings
from ..core.errors import FieldMapError
from ..schemas.timeseries import Datapoint, Datastream, DatastreamMetadata, DendraStation
from ..utils.time import arcgis_date_literal, from_epoch_ms, parse_date
from . import arcgis

logger = logging.getLogger(__name__)

STATION_LAYER_ID = 0
DATASTREAM_TABLE_ID = 3
DATAPOINT_TABLE_ID = 4


def _layer(layer_id: int) -> str:
    return f"{settings.dendra_base.rstrip('/')}/{layer_id}"


async def fetch_stations() -> List[DendraStation]:
    features = await arcgis.query_features(_layer(STATION_LAYER_ID), out_fields="*", return_geometry=True)
    out = []
    for f in features:
        geom = f.get("geometry") or {}
        out.append(DendraStation(**f.get("attributes", {}), x=geom.get("x", 0.0), y=geom.get("y", 0.0)))
    return out


async def fetch_datastreams(station_id: Optional[int] = None) -> List[Datastream]:
    where = f"station_id={station_id}" if station_id is not None else "1=1"
    features = await arcgis.query_features(_layer(DATASTREAM_TABLE_ID), where=where, return_geometry=False)
    return [Datastream(**f.get("attributes", {})) for f in features]


async def get_most_recent_timestamp(datastream_id: int) -> Optional[int]:
    features = await arcgis.query_features(
        _layer(DATAPOINT_TABLE_ID),
        where=f"datastream_id={datastream_id}",
        out_fields="timestamp_utc",
        return_geometry=False,
        order_by="timestamp_utc DESC",
        record_count=1,
    )
    if not features:
        return None
    return features[0].get("attributes", {}).get("timestamp_utc")


async def _where_clause(datastream_id: int, days_back: Optional[int], use_recent_filter: bool) -> Optional[str]:
    """
    None means the datastream has no data at all (only possible when anchoring
    the window to the most recent datapoint).
    """
    where = f"datastream_id={datastream_id}"
    if days_back is None:
        return where
    if use_recent_filter:
        latest = await get_most_recent_timestamp(datastream_id)
        if latest is None:
            return None
        reference = from_epoch_ms(latest)
    else:
        reference = parse_date(None)
    start = reference - timedelta(days=days_back)
    return f"{where} AND timestamp_utc >= {arcgis_date_literal(start)}"


async def fetch_datapoints(
    datastream_id: int,
    days_back: Optional[int] = None,
    page_size: int = 2000,
    use_recent_filter: bool = True,
) -> List[Datapoint]:
    """
    Datapoints ordered by timestamp. ``days_back=None`` returns the full history;
    otherwise the window ends at the most recent datapoint (``use_recent_filter``)
    or at now.
    """
    where = await _where_clause(datastream_id, days_back, use_recent_filter)
    if where is None:
        return []
    features = await arcgis.query_pages_parallel(
        _layer(DATAPOINT_TABLE_ID),
        page_size=page_size,
        parallel=settings.timeseries_parallel_batches,
        where=where,
        out_fields="id,datastream_id,timestamp_utc,value",
        return_geometry=False,
        order_by="timestamp_utc ASC",
    )
    return [Datapoint(**f["attributes"]) for f in features if f.get("attributes")]


async def fetch_datastream_metadata(datastream_id: int) -> DatastreamMetadata:
    """Count, first/last timestamp and a sampled min/max. Failures give an empty record."""
    layer = _layer(DATAPOINT_TABLE_ID)
    where = f"datastream_id={datastream_id}"
    try:
        count = await arcgis.query_count(layer, where=where)
        if count == 0:
            return DatastreamMetadata()
        first, last, sample = await asyncio.gather(
            arcgis.query_features(layer, where=where, out_fields="timestamp_utc,value", return_geometry=False,
                                  order_by="timestamp_utc ASC", record_count=1),
            arcgis.query_features(layer, where=where, out_fields="timestamp_utc,value", return_geometry=False,
                                  order_by="timestamp_utc DESC", record_count=1),
            arcgis.query_features(layer, where=where, out_fields="value", return_geometry=False,
                                  record_count=1000),
        )
    except FieldMapError as ex:
        logger.error("Metadata for datastream %s failed: %s", datastream_id, ex)
        return DatastreamMetadata()

    values = [f["attributes"].get("value") for f in sample if f.get("attributes")]
    values = [v for v in values if v is not None]
    return DatastreamMetadata(
        first_timestamp=first[0]["attributes"].get("timestamp_utc") if first else None,
        last_timestamp=last[0]["attributes"].get("timestamp_utc") if last else None,
        datapoint_count=count,
        min_value=min(values) if values else None,
        max_value=max(values) if values else None,
    )


async def fetch_datastreams_with_metadata(station_id: int) -> List[Datastream]:
    streams = await fetch_datastreams(station_id)
    metas = await asyncio.gather(*[fetch_datastream_metadata(s.id) for s in streams])
    for s, m in zip(streams, metas):
        s.metadata = m
    return streams
