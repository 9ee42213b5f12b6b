"""
Pydantic schemas returned by the query surface
"""
from queue_metrics.schemas.baseline import AGGREGATED_JOB_CLASS, BaselineData
from queue_metrics.schemas.job import (
    DurationStats,
    FailureInfo,
    JobExecutionData,
    JobMetricsCounter,
    JobMetricsData,
    MemoryStats,
    ThroughputStats,
    WindowStats,
)
from queue_metrics.schemas.queue import HealthStats, QueueMetricsData
from queue_metrics.schemas.trend import TrendAnalysis, TrendLine, TrendPoint
from queue_metrics.schemas.worker import WorkerHeartbeat, WorkersSummary, WorkerState

__all__ = [
    "AGGREGATED_JOB_CLASS",
    "BaselineData",
    "DurationStats",
    "FailureInfo",
    "HealthStats",
    "JobExecutionData",
    "JobMetricsCounter",
    "JobMetricsData",
    "MemoryStats",
    "QueueMetricsData",
    "ThroughputStats",
    "TrendAnalysis",
    "TrendLine",
    "TrendPoint",
    "WindowStats",
    "WorkerHeartbeat",
    "WorkersSummary",
    "WorkerState",
]
