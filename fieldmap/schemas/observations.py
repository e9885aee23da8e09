# fieldmap/schemas/observations.py
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .catalog import CatalogItem
from .common import DataSource
from .timeseries import DendraStation


class SourceName(str, Enum):
    INATURALIST = "iNaturalist"            # citizen-science API
    TNC_INATURALIST = "tncINaturalist"     # partner-hosted mirror
    EBIRD = "eBird"
    CALFLORA = "calFlora"
    DENDRA = "dendra"                      # sensor network
    TNC_ARCGIS = "tncArcGIS"               # geospatial layer catalog


SpatialFilter = Literal["preserve-only", "expanded", "custom"]


class SearchFilters(BaseModel):
    source: SourceName
    start_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    end_date: Optional[str] = Field(None, description="YYYY-MM-DD")
    spatial_filter: SpatialFilter = "expanded"
    custom_polygon: Optional[str] = None
    max_results: Optional[int] = Field(None, ge=1)
    taxon_categories: list[str] = []
    quality_grade: Optional[Literal["research", "needs_id", "casual"]] = None
    keyword: Optional[str] = None


class Observation(BaseModel):
    """Common view over the source-specific shapes."""
    id: int | str
    coordinates: tuple[float, float]        # (lon, lat)
    taxon: Optional[str] = None
    observed_on: Optional[str] = None
    attribution: Optional[str] = None


class INaturalistTaxon(BaseModel):
    id: int
    name: str
    preferred_common_name: Optional[str] = None
    iconic_taxon_name: Optional[str] = None
    rank: Optional[str] = None
    default_photo: Optional[dict[str, Any]] = None


class INaturalistObservation(BaseModel):
    id: int
    observed_on: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    time_observed_at: Optional[str] = None
    location: tuple[float, float]           # (lon, lat)
    geoprivacy: Optional[str] = None
    taxon: Optional[INaturalistTaxon] = None
    user_login: Optional[str] = None
    photos: list[dict[str, Any]] = []
    quality_grade: Optional[str] = None
    uri: Optional[str] = None

    def as_observation(self) -> Observation:
        taxon = None
        if self.taxon:
            taxon = self.taxon.preferred_common_name or self.taxon.name
        return Observation(id=self.id, coordinates=self.location, taxon=taxon,
                           observed_on=self.observed_on, attribution=self.user_login)


class TNCObservation(BaseModel):
    model_config = ConfigDict(extra="allow")

    observation_id: int
    observation_uuid: Optional[str] = None
    scientific_name: Optional[str] = None
    common_name: Optional[str] = None
    taxon_category_name: Optional[str] = None
    observed_on: Optional[int | str] = None     # epoch ms for date fields
    user_name: Optional[str] = None
    image_url: Optional[str] = None
    coordinates: tuple[float, float]

    def as_observation(self) -> Observation:
        return Observation(id=self.observation_id, coordinates=self.coordinates,
                           taxon=self.common_name or self.scientific_name,
                           observed_on=None if self.observed_on is None else str(self.observed_on),
                           attribution=self.user_name)


class EBirdObservation(BaseModel):
    model_config = ConfigDict(extra="allow")

    obs_id: str
    common_name: Optional[str] = None
    scientific_name: Optional[str] = None
    count_observed: Optional[int] = None
    location_name: Optional[str] = None
    observation_date: Optional[str] = None
    protocol_name: Optional[str] = None
    lat: float
    lng: float

    def as_observation(self) -> Observation:
        return Observation(id=self.obs_id, coordinates=(self.lng, self.lat),
                           taxon=self.common_name or self.scientific_name,
                           observed_on=self.observation_date, attribution="eBird")


class CalFloraPlant(BaseModel):
    id: str
    scientific_name: str
    common_name: Optional[str] = None
    family: Optional[str] = None
    native_status: Literal["native", "non-native", "invasive", "unknown"] = "unknown"
    cal_ipc_rating: Optional[str] = None
    location: tuple[float, float]
    county: Optional[str] = None
    elevation: Optional[float] = None
    observation_date: Optional[str] = None
    observer: Optional[str] = None
    attributes: dict[str, Any] = {}

    def as_observation(self) -> Observation:
        return Observation(id=self.id, coordinates=self.location,
                           taxon=self.common_name or self.scientific_name,
                           observed_on=self.observation_date, attribution=self.observer or "CalFlora")


class SearchResults(BaseModel):
    """Per-source result arrays. Replaced wholesale by every search."""
    inaturalist: list[INaturalistObservation] = []
    tnc_inaturalist: list[TNCObservation] = []
    ebird: list[EBirdObservation] = []
    calflora: list[CalFloraPlant] = []
    dendra: list[DendraStation] = []
    catalog: list[CatalogItem] = []
    sources: list[DataSource] = []

    def counts(self) -> dict[str, int]:
        return {
            "inaturalist": len(self.inaturalist),
            "tnc_inaturalist": len(self.tnc_inaturalist),
            "ebird": len(self.ebird),
            "calflora": len(self.calflora),
            "dendra": len(self.dendra),
            "catalog": len(self.catalog),
        }
