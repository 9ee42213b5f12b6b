"""
Per-job-class metric rollups built from the ledger.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from queue_metrics.schemas.job import (
    DurationStats,
    FailureInfo,
    JobExecutionData,
    JobMetricsData,
    MemoryStats,
    ThroughputStats,
    WindowStats,
)
from queue_metrics.services.job_ledger import JobMetricsLedger
from queue_metrics.utils.percentiles import mean, percentiles, stddev

logger = logging.getLogger(__name__)

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400


def duration_stats(samples: List[float]) -> DurationStats:
    if not samples:
        return DurationStats()
    ps = percentiles(samples, [50, 95, 99])
    return DurationStats(
        avg=mean(samples),
        min=min(samples),
        max=max(samples),
        p50=ps["p50"],
        p95=ps["p95"],
        p99=ps["p99"],
        stddev=stddev(samples),
    )


def memory_stats(samples: List[float]) -> MemoryStats:
    if not samples:
        return MemoryStats()
    ps = percentiles(samples, [95, 99])
    return MemoryStats(avg=mean(samples), peak=max(samples), p95=ps["p95"], p99=ps["p99"])


class MetricsAggregator:
    def __init__(self, ledger: JobMetricsLedger) -> None:
        self.ledger = ledger
        self.settings = ledger.settings

    def get_job_metrics(self, job_class: str, connection: str = "default",
                        queue: str = "default") -> JobMetricsData:
        counter = self.ledger.get_counters(job_class, connection, queue)
        limit = self.settings.percentile_samples

        return JobMetricsData(
            job_class=job_class,
            connection=connection,
            queue=queue,
            execution=JobExecutionData.from_counter(counter),
            duration=duration_stats(self.ledger.get_duration_samples(job_class, connection, queue, limit)),
            memory=memory_stats(self.ledger.get_memory_samples(job_class, connection, queue, limit)),
            cpu_time=duration_stats(self.ledger.get_cpu_time_samples(job_class, connection, queue, limit)),
            throughput=self.throughput(job_class, connection, queue),
            failures=FailureInfo.from_counter(counter),
            window_stats=self.window_stats(job_class, connection, queue),
            calculated_at=datetime.now(timezone.utc),
        )

    def throughput(self, job_class: str, connection: str, queue: str) -> ThroughputStats:
        return ThroughputStats(
            per_minute=float(self.ledger.get_throughput(job_class, connection, queue, SECONDS_PER_MINUTE)),
            per_hour=float(self.ledger.get_throughput(job_class, connection, queue, SECONDS_PER_HOUR)),
            per_day=float(self.ledger.get_throughput(job_class, connection, queue, SECONDS_PER_DAY)),
        )

    def window_stats(self, job_class: str, connection: str, queue: str,
                     windows: Optional[List[int]] = None) -> List[WindowStats]:
        stats = []
        for window_seconds in windows or self.settings.windows():
            jobs = self.ledger.get_throughput(job_class, connection, queue, window_seconds)
            _, avg_duration = self.ledger.get_average_duration_in_window(job_class, connection, queue, window_seconds)
            stats.append(WindowStats(
                window_seconds=window_seconds,
                jobs_processed=jobs,
                avg_duration=round(avg_duration, 2),
                throughput=round(jobs / (window_seconds / SECONDS_PER_MINUTE), 2) if window_seconds > 0 else 0.0,
            ))
        return stats

    def get_queue_job_metrics(self, connection: str, queue: str) -> List[JobMetricsData]:
        """Rollups for every job class seen on the queue."""
        return [
            self.get_job_metrics(job_class, connection, queue)
            for job_class in self.ledger.list_job_classes(connection, queue)
        ]

    def get_all_job_metrics(self) -> List[JobMetricsData]:
        return [
            self.get_job_metrics(job.job_class, job.connection, job.queue)
            for job in self.ledger.list_jobs()
        ]
