"""
Baseline schema
"""
from datetime import datetime, timezone
from typing import Dict

from pydantic import BaseModel

from queue_metrics.utils.coerce import as_datetime, as_float, as_int

# empty job class marks the queue-level aggregate
AGGREGATED_JOB_CLASS = ""


class BaselineData(BaseModel):
    """Expected per-job cost for a job class, or for a whole queue."""
    connection: str
    queue: str
    job_class: str = AGGREGATED_JOB_CLASS
    cpu_percent_per_job: float
    memory_mb_per_job: float
    avg_duration_ms: float
    sample_count: int
    confidence_score: float
    calculated_at: datetime

    @property
    def is_aggregated(self) -> bool:
        return self.job_class == AGGREGATED_JOB_CLASS

    def is_reliable(self) -> bool:
        return self.sample_count >= 50 and self.confidence_score >= 0.7

    def needs_more_samples(self) -> bool:
        return self.sample_count < 100

    def estimate_capacity(self, available_cpu_percent: float, available_memory_mb: float) -> int:
        """Jobs per hour that fit into the given CPU and memory headroom."""
        if self.cpu_percent_per_job <= 0 or self.memory_mb_per_job <= 0 or self.avg_duration_ms <= 0:
            return 0

        cpu_capacity = int(available_cpu_percent / self.cpu_percent_per_job)
        memory_capacity = int(available_memory_mb / self.memory_mb_per_job)
        parallel_jobs = min(cpu_capacity, memory_capacity)

        return int(parallel_jobs * 3_600_000 / self.avg_duration_ms)

    def to_hash(self) -> Dict[str, str]:
        return {
            "connection": self.connection,
            "queue": self.queue,
            "job_class": self.job_class,
            "cpu_percent_per_job": str(self.cpu_percent_per_job),
            "memory_mb_per_job": str(self.memory_mb_per_job),
            "avg_duration_ms": str(self.avg_duration_ms),
            "sample_count": str(self.sample_count),
            "confidence_score": str(self.confidence_score),
            "calculated_at": str(self.calculated_at.timestamp()),
        }

    @classmethod
    def from_hash(cls, data: Dict[str, str], connection: str, queue: str) -> "BaselineData":
        calculated_at = as_datetime(data.get("calculated_at"), field="calculated_at")
        return cls(
            connection=data.get("connection") or connection,
            queue=data.get("queue") or queue,
            job_class=data.get("job_class", AGGREGATED_JOB_CLASS),
            cpu_percent_per_job=as_float(data.get("cpu_percent_per_job"), field="cpu_percent_per_job"),
            memory_mb_per_job=as_float(data.get("memory_mb_per_job"), field="memory_mb_per_job"),
            avg_duration_ms=as_float(data.get("avg_duration_ms"), field="avg_duration_ms"),
            sample_count=as_int(data.get("sample_count"), field="sample_count"),
            confidence_score=as_float(data.get("confidence_score"), field="confidence_score"),
            calculated_at=calculated_at or datetime.now(timezone.utc),
        )
