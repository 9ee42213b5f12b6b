"""
Job metrics schemas
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from queue_metrics.utils.coerce import as_datetime, as_float, as_int, as_str


class JobMetricsCounter(BaseModel):
    """Cumulative counters for one (connection, queue, job class)."""
    total_processed: int = 0
    total_failed: int = 0
    total_queued: int = 0
    total_retries: int = 0
    total_timeouts: int = 0
    total_duration_ms: float = 0.0
    total_memory_mb: float = 0.0
    total_cpu_time_ms: float = 0.0
    last_processed_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    last_timeout_at: Optional[datetime] = None
    last_exception: Optional[str] = None

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "JobMetricsCounter":
        return cls(
            total_processed=as_int(data.get("total_processed"), field="total_processed"),
            total_failed=as_int(data.get("total_failed"), field="total_failed"),
            total_queued=as_int(data.get("total_queued"), field="total_queued"),
            total_retries=as_int(data.get("total_retries"), field="total_retries"),
            total_timeouts=as_int(data.get("total_timeouts"), field="total_timeouts"),
            total_duration_ms=as_float(data.get("total_duration_ms"), field="total_duration_ms"),
            total_memory_mb=as_float(data.get("total_memory_mb"), field="total_memory_mb"),
            total_cpu_time_ms=as_float(data.get("total_cpu_time_ms"), field="total_cpu_time_ms"),
            last_processed_at=as_datetime(data.get("last_processed_at"), field="last_processed_at"),
            last_failed_at=as_datetime(data.get("last_failed_at"), field="last_failed_at"),
            last_timeout_at=as_datetime(data.get("last_timeout_at"), field="last_timeout_at"),
            last_exception=as_str(data.get("last_exception")),
        )


class JobExecutionData(BaseModel):
    total_processed: int
    total_failed: int
    total_queued: int
    success_rate: float
    failure_rate: float

    @classmethod
    def from_counter(cls, counter: JobMetricsCounter) -> "JobExecutionData":
        attempts = counter.total_processed + counter.total_failed
        success_rate = counter.total_processed / attempts * 100 if attempts else 0.0
        failure_rate = counter.total_failed / attempts * 100 if attempts else 0.0
        return cls(
            total_processed=counter.total_processed,
            total_failed=counter.total_failed,
            total_queued=counter.total_queued,
            success_rate=round(success_rate, 2),
            failure_rate=round(failure_rate, 2),
        )


class DurationStats(BaseModel):
    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    stddev: float = 0.0


class MemoryStats(BaseModel):
    avg: float = 0.0
    peak: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


class ThroughputStats(BaseModel):
    per_minute: float = 0.0
    per_hour: float = 0.0
    per_day: float = 0.0


class FailureInfo(BaseModel):
    count: int = 0
    rate: float = 0.0
    last_failed_at: Optional[datetime] = None
    last_exception: Optional[str] = None

    @classmethod
    def from_counter(cls, counter: JobMetricsCounter) -> "FailureInfo":
        attempts = counter.total_processed + counter.total_failed
        rate = counter.total_failed / attempts * 100 if attempts else 0.0
        return cls(
            count=counter.total_failed,
            rate=round(rate, 2),
            last_failed_at=counter.last_failed_at,
            last_exception=counter.last_exception,
        )


class WindowStats(BaseModel):
    window_seconds: int
    jobs_processed: int
    avg_duration: float
    throughput: float  # jobs per minute

    @property
    def label(self) -> str:
        if self.window_seconds < 60:
            return f"{self.window_seconds}s"
        if self.window_seconds < 3600:
            return f"{self.window_seconds // 60}m"
        if self.window_seconds < 86400:
            return f"{self.window_seconds // 3600}h"
        return f"{self.window_seconds // 86400}d"


class JobMetricsData(BaseModel):
    """Rollup for a single job class."""
    job_class: str
    connection: str
    queue: str
    execution: JobExecutionData
    duration: DurationStats
    memory: MemoryStats
    cpu_time: DurationStats
    throughput: ThroughputStats
    failures: FailureInfo
    window_stats: List[WindowStats]
    calculated_at: datetime
