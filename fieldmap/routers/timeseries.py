# fieldmap/routers/timeseries.py
import json
from typing import Literal

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..core.errors import FieldMapError
from ..engine.dashboard import Dashboard
from ..services import dendra
from ..services.features import aggregate_datapoints, summarize_datapoints
from .deps import get_dashboard

router = APIRouter(tags=["timeseries"])


@router.get("/timeseries/{datastream_id}")
async def stream_datapoints(datastream_id: int, d: Dashboard = Depends(get_dashboard)):
    """NDJSON: the recent window first, then the merged full history."""

    async def lines():
        try:
            async for update in d.timeseries.load(datastream_id):
                yield update.model_dump_json() + "\n"
        except FieldMapError as ex:
            yield '{"error": %s}\n' % json.dumps(ex.user_message)

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@router.get("/timeseries/{datastream_id}/summary")
async def datastream_summary(
    datastream_id: int,
    aggregation: Literal["hourly", "daily", "weekly"] = "daily",
    d: Dashboard = Depends(get_dashboard),
):
    points = await d.timeseries.load_all(datastream_id)
    return {
        "datastream_id": datastream_id,
        "summary": summarize_datapoints(points),
        "series": aggregate_datapoints(points, aggregation),
    }


@router.get("/stations/{station_id}/datastreams")
async def station_datastreams(station_id: int):
    streams = await dendra.fetch_datastreams_with_metadata(station_id)
    return [s.model_dump() for s in streams]
