from typing import Literal

from pydantic import BaseModel, Field

ThresholdMethod = Literal["average", "statistical"]


class Percentiles(BaseModel):
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


class ThresholdStats(BaseModel):
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0
    std_dev: float = 0.0
    percentiles: Percentiles = Field(default_factory=Percentiles)
    threshold: int = 0
    method: ThresholdMethod = "statistical"
    multiplier: float | None = None  # only set for the statistical method

    def rounded(self) -> "ThresholdStats":
        """Copy with every statistic rounded to whole views, as persisted on the source."""
        return self.model_copy(
            update={
                "mean": round(self.mean),
                "median": round(self.median),
                "std_dev": round(self.std_dev),
                "percentiles": Percentiles(
                    **{k: round(v) for k, v in self.percentiles.model_dump().items()}
                ),
            }
        )


class ThresholdRequest(BaseModel):
    method: ThresholdMethod = "statistical"
    sample_size: int = Field(default=200, ge=50, le=1000)
    multiplier: float | None = Field(default=None, ge=0.5, le=3.0)


class ThresholdReport(BaseModel):
    source_id: int
    threshold_type: str
    effective_threshold: int
    calculated_threshold: int
    manual_threshold: int
    statistical_multiplier: float
    stats: ThresholdStats | None = None
