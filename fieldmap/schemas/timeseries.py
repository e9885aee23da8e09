from enum import Enum

from pydantic import BaseModel, ConfigDict


class Phase(str, Enum):
    RECENT = "recent"
    FULL = "full"


class Datapoint(BaseModel):
    id: int | str
    timestamp_utc: int          # epoch milliseconds
    value: float | None = None
    datastream_id: int | None = None


class TimeSeriesRequest(BaseModel):
    datastream_id: int
    race_token: int
    phase: Phase


class SeriesUpdate(BaseModel):
    datastream_id: int
    phase: Phase
    datapoints: list[Datapoint]
    final: bool = False


class DatastreamMetadata(BaseModel):
    first_timestamp: int | None = None
    last_timestamp: int | None = None
    datapoint_count: int = 0
    min_value: float | None = None
    max_value: float | None = None


class Datastream(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    station_id: int | None = None
    name: str | None = None
    variable: str | None = None
    unit: str | None = None
    metadata: DatastreamMetadata | None = None


class DendraStation(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int
    name: str | None = None
    is_active: int | None = None
    x: float = 0.0
    y: float = 0.0
