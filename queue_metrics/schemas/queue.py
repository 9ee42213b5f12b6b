"""
Queue metrics schemas
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class HealthStats(BaseModel):
    status: str  # healthy / warning / critical / unknown
    score: float
    depth: int = 0
    oldest_job_age: int = 0
    failure_rate: float = 0.0
    utilization_rate: float = 0.0

    def is_healthy(self) -> bool:
        return self.status == "healthy"

    def is_critical(self) -> bool:
        return self.status == "critical"


class QueueMetricsData(BaseModel):
    connection: str
    queue: str
    depth: int = 0
    oldest_job_age: int = 0
    throughput_per_minute: float = 0.0
    avg_duration_ms: float = 0.0
    failure_rate: float = 0.0
    utilization_rate: float = 0.0
    active_workers: int = 0
    total_processed: int = 0
    total_failed: int = 0
    last_processed_at: Optional[datetime] = None
    health: HealthStats
    calculated_at: Optional[datetime] = None

    def is_backlogged(self, threshold: int = 100) -> bool:
        return self.depth > threshold

    def has_active_workers(self) -> bool:
        return self.active_workers > 0
