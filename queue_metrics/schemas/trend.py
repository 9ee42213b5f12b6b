"""
Trend analysis schemas
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TrendPoint(BaseModel):
    timestamp: float
    value: float


class TrendLine(BaseModel):
    slope: float = 0.0
    intercept: float = 0.0
    r_squared: float = 0.0


class SeriesStatistics(BaseModel):
    current: float
    average: float
    min: float
    max: float
    std_dev: float


class TrendForecast(BaseModel):
    next_value: float
    next_timestamp: float


class TrendAnalysis(BaseModel):
    """
    Outcome of analysing one series.

    ``available`` is False (with a message) when there are fewer than two points.
    """
    available: bool
    message: Optional[str] = None
    sample_count: int = 0
    window_seconds: Optional[int] = None
    analyzed_at: Optional[datetime] = None
    statistics: Optional[SeriesStatistics] = None
    trend: Optional[TrendLine] = None
    direction: Optional[str] = None
    forecast: Optional[TrendForecast] = None


class ThroughputAnalysis(TrendAnalysis):
    total_jobs: float = 0.0
    jobs_per_minute: float = 0.0
    jobs_per_hour: float = 0.0


class EfficiencyAnalysis(TrendAnalysis):
    avg_memory_mb: float = 0.0
    avg_cpu_percent: float = 0.0
