from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    geoanalyst_service_url: str = Field(
        default="http://localhost:5000/api/python",
        alias="GEOANALYST_SERVICE_URL",
    )
    geoanalyst_api_key: str | None = Field(default=None, alias="GEOANALYST_API_KEY")
    geoanalyst_request_timeout_seconds: float = Field(
        default=30.0,
        alias="GEOANALYST_REQUEST_TIMEOUT_SECONDS",
        ge=1.0,
        le=300.0,
    )

    geoanalyst_poll_interval_seconds: float = Field(
        default=5.0,
        alias="GEOANALYST_POLL_INTERVAL_SECONDS",
        ge=0.01,
        le=300.0,
    )
    geoanalyst_initial_poll_delay_seconds: float = Field(
        default=0.5,
        alias="GEOANALYST_INITIAL_POLL_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
    )
    geoanalyst_completion_delay_seconds: float = Field(
        default=1.0,
        alias="GEOANALYST_COMPLETION_DELAY_SECONDS",
        ge=0.0,
        le=60.0,
    )
    geoanalyst_elapsed_tick_seconds: float = Field(
        default=1.0,
        alias="GEOANALYST_ELAPSED_TICK_SECONDS",
        ge=0.01,
        le=60.0,
    )

    geoanalyst_imagery_opacity: float = Field(
        default=0.8, alias="GEOANALYST_IMAGERY_OPACITY", ge=0.0, le=1.0
    )
    geoanalyst_heatmap_opacity: float = Field(
        default=0.6, alias="GEOANALYST_HEATMAP_OPACITY", ge=0.0, le=1.0
    )
    geoanalyst_polygon_opacity: float = Field(
        default=0.3, alias="GEOANALYST_POLYGON_OPACITY", ge=0.0, le=1.0
    )

    geoanalyst_log_level: str = Field(default="INFO", alias="GEOANALYST_LOG_LEVEL")
    geoanalyst_log_json: bool = Field(default=False, alias="GEOANALYST_LOG_JSON")

    @property
    def service_url(self) -> str:
        return self.geoanalyst_service_url.strip().rstrip("/")

    @property
    def default_opacities(self) -> dict[str, float]:
        return {
            "imagery": self.geoanalyst_imagery_opacity,
            "heatmap": self.geoanalyst_heatmap_opacity,
            "polygon": self.geoanalyst_polygon_opacity,
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()
