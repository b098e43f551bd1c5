from pydantic import BaseModel, Field
from typing import Any, Literal
from datetime import datetime

MetricType = Literal["conversion", "continuous", "revenue", "engagement", "retention"]

class ResultCreate(BaseModel):
    """Schema for recording a metric observation via POST /results."""
    test_name: str
    variant_name: str
    user_id: str | None = None
    session_id: str | None = None
    metric_name: str = "conversion"
    metric_value: float = Field(..., description="Values above zero count as conversions.")
    metric_type: MetricType = "conversion"
    event_data: dict[str, Any] | None = None

class ResultResponse(BaseModel):
    id: int
    test_id: int
    variant_id: int
    metric_name: str
    metric_value: float
    metric_type: str
    recorded_at: datetime

    class Config:
        from_attributes = True

class MetricStatistics(BaseModel):
    """Roll-up of one (variant, metric) group."""
    metric_type: str
    sample_size: int
    mean_value: float
    std_dev: float  # population standard deviation
    min_value: float
    max_value: float
    conversions: int
    total_events: int
    conversion_rate: float  # conversions / sample_size * 100

class VariantResults(BaseModel):
    variant_name: str
    variant_display_name: str
    is_control: bool
    # Metrics without any recorded event are absent
    metrics: dict[str, MetricStatistics] = Field(default_factory=dict)

class DateRange(BaseModel):
    start: datetime | None = None
    end: datetime | None = None

class ResultsReport(BaseModel):
    """Schema returned by GET /tests/{name}/results."""
    test_name: str
    report_generated_at: datetime
    date_range: DateRange
    results: list[VariantResults]

class SignificanceResult(BaseModel):
    """Pooled two-proportion z-test of one treatment against the control."""
    variant_name: str
    control_rate: float
    treatment_rate: float
    lift_percentage: float
    z_score: float
    p_value: float
    is_significant: bool
    confidence_level: float
    control_sample_size: int
    treatment_sample_size: int
    meets_minimum_sample: bool

class SignificanceReport(BaseModel):
    """Schema returned by GET /tests/{name}/significance."""
    test_name: str
    metric_name: str
    control_variant: str
    alpha: float
    statistical_analysis: list[SignificanceResult]

class RecentResult(BaseModel):
    value: float
    subject_kind: str | None = None
    subject_id: str | None = None
    timestamp: datetime
