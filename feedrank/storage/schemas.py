"""Validated configuration records for sources.

Admin-side writes go through these models so the core never sees an
out-of-range multiplier, a sub-5-minute frequency or a malformed mapping.
"""

from typing import Literal

from pydantic import BaseModel, Field, model_validator


class HighDynamicsConfig(BaseModel):
    enabled: bool = True
    growth_rate_threshold: float = Field(default=30.0, gt=0)  # views per minute
    min_data_points: int = Field(default=4, ge=2, le=50)


class SourceConfig(BaseModel):
    external_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    url: str = ""
    threshold_type: Literal["auto", "manual"] = "auto"
    threshold_method: Literal["average", "statistical"] = "statistical"
    statistical_multiplier: float = Field(default=1.5, ge=0.5, le=3.0)
    manual_threshold: int = Field(default=0, ge=0)
    check_frequency_minutes: int = Field(default=60, ge=5)
    posts_to_check: int = Field(default=50, ge=10, le=100)
    active: bool = True
    experimental_tracking_enabled: bool = False
    high_dynamics: HighDynamicsConfig = Field(default_factory=HighDynamicsConfig)


class MappingConfig(BaseModel):
    channel_id: int
    source_id: int | None = None
    group_id: int | None = None
    active: bool = True

    @model_validator(mode="after")
    def _exactly_one_subject(self) -> "MappingConfig":
        if (self.source_id is None) == (self.group_id is None):
            raise ValueError("Either source_id or group_id must be set, but not both")
        return self
