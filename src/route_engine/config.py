"""Application configuration and settings management."""

from pathlib import Path
from typing import Any, Literal, Optional

import json
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PRIORITY_LEVELS: tuple[str, ...] = ("low", "normal", "high", "urgent")


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables or defaults."""

    model_config = SettingsConfigDict(
        env_prefix="ROUTE_ENGINE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
    )

    app_name: str = "Persistent Route Optimization Engine"
    api_prefix: str = "/api"
    data_root: Path = Field(default=Path("data"), description="Root directory for the file-backed route store.")

    # Estimation
    average_speed_kmh: float = Field(default=35.0, gt=0.0, description="Average urban speed used for time estimates.")
    traffic_buffer_min_per_km: float = Field(default=2.0, ge=0.0)
    traffic_buffer_cap_min: float = Field(default=10.0, ge=0.0)
    distance_model: Literal["road_adjusted", "haversine"] = Field(
        default="road_adjusted",
        description="Straight-line haversine or a road-adjusted Manhattan/haversine blend.",
    )

    # Ordering
    priority_bonus_km: dict[str, float] = Field(
        default={"low": 0.0, "normal": 0.5, "high": 1.5, "urgent": 3.0},
        description="Cost reduction (km) granted to a stop of each priority during ordering.",
    )

    # Route lifecycle
    shift_window_hours: float = Field(default=24.0, ge=0.0, description="Age limit for the current route lookup.")
    max_conflict_retries: int = Field(default=3, ge=0)

    # Persistence
    route_store: Literal["memory", "file", "supabase"] = Field(default="memory")
    supabase_url: Optional[str] = Field(
        default=None,
        description="Supabase project URL (e.g., https://xxx.supabase.co).",
    )
    supabase_key: Optional[str] = Field(
        default=None,
        description="Supabase service role key for backend operations.",
    )

    # External distance table
    osrm_base_url: Optional[str] = Field(
        default=None,
        description="Base URL for the OSRM routing service (e.g., http://localhost:5000).",
    )
    osrm_profile: Literal["driving", "driving-hgv"] = Field(default="driving")
    osrm_max_retries: int = Field(default=3, ge=0)
    osrm_backoff_seconds: float = Field(default=1.0, ge=0.0)
    osrm_timeout_seconds: float = Field(default=10.0, gt=0.0)

    frontend_allowed_origins: tuple[str, ...] = Field(
        default=(
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ),
        description="Permitted web origins for browser clients (CORS).",
    )

    @field_validator("data_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        path_value = value if isinstance(value, Path) else Path(str(value))
        return path_value.expanduser().resolve()

    @field_validator("priority_bonus_km", mode="after")
    @classmethod
    def _check_priority_bonus(cls, value: dict[str, float]) -> dict[str, float]:
        """Every priority needs a bonus and bonuses must rise with priority."""
        missing = [level for level in PRIORITY_LEVELS if level not in value]
        if missing:
            raise ValueError(f"priority_bonus_km is missing levels: {', '.join(missing)}")
        bonuses = [value[level] for level in PRIORITY_LEVELS]
        if any(lower >= higher for lower, higher in zip(bonuses, bonuses[1:])):
            raise ValueError("priority_bonus_km must be strictly increasing from low to urgent")
        return value

    @field_validator("frontend_allowed_origins", mode="before")
    @classmethod
    def _parse_str_tuple_from_env(cls, value: Any) -> tuple[str, ...]:
        """Parse string tuple from environment variable (comma-separated or JSON array)."""
        if isinstance(value, tuple):
            return value
        if isinstance(value, list):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
                if isinstance(parsed, list):
                    return tuple(str(item) for item in parsed)
            except (json.JSONDecodeError, TypeError):
                pass
            if "," in value:
                return tuple(item.strip() for item in value.split(",") if item.strip())
            if value.strip():
                return (value.strip(),)
        return tuple()


settings = Settings()
