"""
config.py — pydantic-settings Settings class.

All environment variables for the opendata ingestion core are declared here.
The pipeline package and the CLI import `settings` from this module.

Usage:
    from opendata_shared.config import settings
    print(settings.max_download_bytes)
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_dotenv() -> Path | None:
    """Walk up from CWD to find the nearest .env file."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / ".env"
        if candidate.is_file():
            return candidate
    return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=_find_dotenv() or ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    user_agent: str = Field(default="opendata-ingest/0.1")
    request_timeout_s: float = Field(default=30.0, gt=0)
    max_download_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    http_retry_attempts: int = Field(default=2, ge=1)
    http_retry_base_delay_s: float = Field(default=0.5, ge=0)

    # Hosts whose real download URL only appears after running page scripts
    browser_fetch_hosts: str = Field(default="statistik-berlin-brandenburg.de")

    # -------------------------------------------------------------------------
    # WFS
    # -------------------------------------------------------------------------
    wfs_page_size: int = Field(default=1000, gt=0)
    wfs_max_download_features: int = Field(default=5000, gt=0)
    wfs_small_dataset_threshold: int = Field(default=500, gt=0)
    wfs_sample_size: int = Field(default=10, gt=0)
    # Hosts known to honour the srsName override on GetFeature
    srs_override_hosts: str = Field(default="gdi.berlin.de")

    # -------------------------------------------------------------------------
    # Geometry
    # -------------------------------------------------------------------------
    target_crs: str = Field(default="EPSG:4326")
    coordinate_precision: int = Field(default=7, ge=0)

    # -------------------------------------------------------------------------
    # Sampling / aggregation
    # -------------------------------------------------------------------------
    preview_rows: int = Field(default=10, gt=0)
    type_inference_sample: int = Field(default=100, gt=0)
    aggregation_default_rows: int = Field(default=100, gt=0)
    aggregation_max_rows: int = Field(default=1000, gt=0)

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------
    cache_ttl_s: float = Field(default=600.0, gt=0)

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_format: Literal["json", "console"] = Field(default="console")

    # -------------------------------------------------------------------------
    # Derived / computed
    # -------------------------------------------------------------------------
    @property
    def browser_fetch_hosts_list(self) -> list[str]:
        return [h.strip().lower() for h in self.browser_fetch_hosts.split(",") if h.strip()]

    @property
    def srs_override_hosts_list(self) -> list[str]:
        return [h.strip().lower() for h in self.srs_override_hosts.split(",") if h.strip()]

    @field_validator("target_crs", mode="before")
    @classmethod
    def upper_crs(cls, v: str) -> str:
        return v.strip().upper() if isinstance(v, str) else v


# ---------------------------------------------------------------------------
# Module-level singleton: import this everywhere
# ---------------------------------------------------------------------------
settings = Settings()
