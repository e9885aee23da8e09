# fieldmap/schemas/catalog.py
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ServiceFamily(str, Enum):
    POINT_QUERY = "pointQuery"      # FeatureServer
    DYNAMIC_MAP = "dynamicMap"      # MapServer
    RASTER_IMAGE = "rasterImage"    # ImageServer, dynamic or pre-tiled
    VECTOR_TILE = "vectorTile"      # VectorTileServer
    SCENE = "scene"                 # SceneServer
    STREAM = "stream"               # StreamServer


class UIPattern(str, Enum):
    MAP_LAYER = "mapLayer"
    MODAL = "modal"
    EXTERNAL_LINK = "externalLink"


class LayerStatus(str, Enum):
    INACTIVE = "inactive"
    LOADING = "loading"
    ACTIVE = "active"
    RELOADING = "reloading"
    ERROR = "error"


class SubLayerInfo(BaseModel):
    id: int
    name: str
    type: str = "Feature Layer"
    description: str | None = None
    geometry_type: str | None = None
    min_scale: float | None = None
    max_scale: float | None = None


class LegendItem(BaseModel):
    label: str = ""
    symbol: dict[str, Any] = {}


class LegendData(BaseModel):
    layer_id: str
    layer_name: str
    renderer_type: str = "simple"
    units: str | None = None
    items: list[LegendItem] = []


# Only these are filled in after first activation; everything else is fixed
# when the item comes back from the catalog.
_MUTABLE_FIELDS = frozenset({"available_sub_layers", "selected_sub_layer_id", "legend_data"})


class CatalogItem(BaseModel):
    id: str
    title: str = ""
    source_url: str
    service_family: ServiceFamily | None = None
    ui_pattern: UIPattern = UIPattern.MAP_LAYER
    item_type: str = ""
    description: str = ""
    tags: list[str] = []
    categories: list[str] = []
    rendering_warning: str | None = None
    available_sub_layers: list[SubLayerInfo] = []
    selected_sub_layer_id: int | None = None
    legend_data: LegendData | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name not in _MUTABLE_FIELDS and not name.startswith("_"):
            raise AttributeError(f"CatalogItem.{name} is immutable")
        super().__setattr__(name, value)

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CatalogItem) and other.id == self.id


class LayerRuntimeState(BaseModel):
    item_id: str
    status: LayerStatus = LayerStatus.INACTIVE
    opacity: float = Field(0.8, ge=0.0, le=1.0)
    opacity_set_by_user: bool = False
    activations: int = 0
    last_error: str | None = None


class LayerLoadError(BaseModel):
    item_id: str
    layer_title: str
    error_message: str


class ImageLoadingState(BaseModel):
    item_id: str
    layer_title: str
    is_loading: bool = True
    show_slow_warning: bool = False
    has_timed_out: bool = False
    warning: str | None = None
