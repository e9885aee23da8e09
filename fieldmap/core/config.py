# fieldmap/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from pathlib import Path

class Settings(BaseSettings):
    app_name: str = Field(default="Field Map Dashboard API", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Remote catalogs
    inaturalist_base: str = Field(default="https://api.inaturalist.org/v1", alias="INATURALIST_BASE")
    inaturalist_place_id: int = Field(default=136122, alias="INATURALIST_PLACE_ID")
    tnc_observations_base: str = Field(
        default="https://services9.arcgis.com/RHVPKKiFTONKtxq3/arcgis/rest/services/iNat_PreUC_View/FeatureServer",
        alias="TNC_OBSERVATIONS_BASE",
    )
    ebird_exact_base: str = Field(
        default="https://dangermondpreserve-spatial.com/server/rest/services/Hosted/Dangermond_Preserve_eBird_Exact_Boundary_133M_Dataset_/FeatureServer",
        alias="EBIRD_EXACT_BASE",
    )
    ebird_buffer_base: str = Field(
        default="https://dangermondpreserve-spatial.com/server/rest/services/Hosted/Dangermond_Preserve_eBird_1_5_Mile_Buffer_Zone_133M_Dataset_/FeatureServer",
        alias="EBIRD_BUFFER_BASE",
    )
    calflora_url: str = Field(
        default="https://dangermondpreserve-spatial.com/server/rest/services/Hosted/CalFlora_Dangermond_Observations_Clean/FeatureServer/0",
        alias="CALFLORA_URL",
    )
    dendra_base: str = Field(
        default="https://dangermondpreserve-spatial.com/server/rest/services/Dendra_Stations/FeatureServer",
        alias="DENDRA_BASE",
    )
    hub_catalog_base: str = Field(
        default="https://dangermondpreserve-tnc.hub.arcgis.com/api/search/v1/collections",
        alias="HUB_CATALOG_BASE",
    )
    preserve_boundary_path: str | None = Field(default=None, alias="PRESERVE_BOUNDARY_PATH")

    # Timeouts (seconds)
    http_timeout_sec: float = Field(default=30.0, alias="HTTP_TIMEOUT_SEC")
    layer_load_timeout_sec: float = Field(default=45.0, alias="LAYER_LOAD_TIMEOUT_SEC")
    metadata_prefetch_timeout_sec: float = Field(default=4.0, alias="METADATA_PREFETCH_TIMEOUT_SEC")
    image_slow_warning_sec: float = Field(default=10.0, alias="IMAGE_SLOW_WARNING_SEC")
    image_timeout_warning_sec: float = Field(default=30.0, alias="IMAGE_TIMEOUT_WARNING_SEC")
    highlight_settle_sec: float = Field(default=0.1, alias="HIGHLIGHT_SETTLE_SEC")

    # Time series
    recent_window_days: int = Field(default=30, alias="RECENT_WINDOW_DAYS")
    timeseries_page_size: int = Field(default=2000, alias="TIMESERIES_PAGE_SIZE")
    timeseries_parallel_batches: int = Field(default=5, alias="TIMESERIES_PARALLEL_BATCHES")

    # Layers
    default_layer_opacity: int = Field(default=80, alias="DEFAULT_LAYER_OPACITY")
    renderer_sample_size: int = Field(default=10, alias="RENDERER_SAMPLE_SIZE")

    # Rate limits
    inaturalist_min_interval_sec: float = Field(default=1.0, alias="INATURALIST_MIN_INTERVAL_SEC")
    arcgis_min_interval_sec: float = Field(default=0.5, alias="ARCGIS_MIN_INTERVAL_SEC")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),  # fieldmap/.env
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

settings = Settings()
