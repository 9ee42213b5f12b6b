"""
基线计算服务

Sliding-window baselines with exponential decay, per job class and aggregated
per queue. Confidence grows logarithmically with sample count and saturates at
the configured target size. Each baseline is compared with the value it
replaces so consumers can react to significant changes.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from queue_metrics.events import BaselineRecalculated, EventDispatcher, default_dispatcher
from queue_metrics.schemas.baseline import AGGREGATED_JOB_CLASS, BaselineData
from queue_metrics.services.job_ledger import (
    SERIES_CPU,
    SERIES_DURATIONS,
    SERIES_MEMORY,
    JobMetricsLedger,
)
from queue_metrics.utils.coerce import split_tagged
from queue_metrics.utils.store import TimeSeriesStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def weighted_average(samples: Sequence[float], window_days: int, decay_factor: float) -> float:
    """
    Exponentially decayed average of chronologically ordered samples.

    Ages are approximated from position: the newest (last) sample has age 0 and
    the oldest approaches the full window. weight = exp(-decay * age_in_days).
    """
    if not samples:
        return 0.0

    count = len(samples)
    window_seconds = window_days * SECONDS_PER_DAY
    total_weight = 0.0
    weighted_sum = 0.0

    for index, value in enumerate(samples):
        age_seconds = (count - 1 - index) / count * window_seconds
        weight = math.exp(-decay_factor * age_seconds / SECONDS_PER_DAY)
        weighted_sum += value * weight
        total_weight += weight

    return weighted_sum / total_weight if total_weight > 0 else 0.0


def confidence_score(sample_count: int, target_sample_size: int) -> float:
    """log(n + 1) / log(target + 1), rounded to 2 places and capped at 1.0."""
    if sample_count >= target_sample_size:
        return 1.0
    if sample_count <= 0:
        return 0.0
    confidence = math.log(sample_count + 1) / math.log(target_sample_size + 1)
    return round(min(1.0, max(0.0, confidence)), 2)


def has_significant_change(previous: Optional[BaselineData], current: BaselineData, ratio: float = 0.2) -> bool:
    """True when duration, CPU or memory moved by more than ``ratio`` relative to the previous baseline."""
    if previous is None:
        return False

    pairs = (
        (previous.avg_duration_ms, current.avg_duration_ms),
        (previous.cpu_percent_per_job, current.cpu_percent_per_job),
        (previous.memory_mb_per_job, current.memory_mb_per_job),
    )
    for old, new in pairs:
        if abs(new - old) / max(old, 1) > ratio:
            return True
    return False


def aggregate_baselines(connection: str, queue: str, baselines: List[BaselineData],
                        target_sample_size: int) -> BaselineData:
    """Queue-level baseline: per-class values weighted by their sample counts."""
    total_samples = sum(baseline.sample_count for baseline in baselines)

    def weighted(attr: str) -> float:
        if total_samples <= 0:
            return 0.0
        return sum(getattr(baseline, attr) * baseline.sample_count for baseline in baselines) / total_samples

    return BaselineData(
        connection=connection,
        queue=queue,
        job_class=AGGREGATED_JOB_CLASS,
        cpu_percent_per_job=round(weighted("cpu_percent_per_job"), 2),
        memory_mb_per_job=round(weighted("memory_mb_per_job"), 2),
        avg_duration_ms=round(weighted("avg_duration_ms"), 2),
        sample_count=total_samples,
        confidence_score=confidence_score(total_samples, target_sample_size),
        calculated_at=datetime.now(timezone.utc),
    )


class BaselineEngine:
    def __init__(self, store: TimeSeriesStore, ledger: JobMetricsLedger,
                 dispatcher: Optional[EventDispatcher] = None) -> None:
        self.store = store
        self.ledger = ledger
        self.settings = store.settings
        self.dispatcher = default_dispatcher(dispatcher)

    # Repository

    def baseline_key(self, connection: str, queue: str, job_class: str = AGGREGATED_JOB_CLASS) -> str:
        if job_class == AGGREGATED_JOB_CLASS:
            return self.store.key("baseline", connection, queue)
        return self.store.key("baseline", connection, queue, job_class)

    def store_baseline(self, baseline: BaselineData) -> None:
        key = self.baseline_key(baseline.connection, baseline.queue, baseline.job_class)
        ttl = self.store.ttl("baseline")

        def queue_commands(pipe) -> None:
            pipe.delete(key)
            pipe.hset(key, mapping=baseline.to_hash())
            pipe.expire(key, ttl)

        self.store.transaction(queue_commands)

    def get_baseline(self, connection: str, queue: str,
                     job_class: str = AGGREGATED_JOB_CLASS) -> Optional[BaselineData]:
        data = self.store.hash(self.baseline_key(connection, queue, job_class))
        if not data:
            return None
        return BaselineData.from_hash(data, connection, queue)

    def has_recent_baseline(self, connection: str, queue: str, max_age_seconds: int = SECONDS_PER_DAY) -> bool:
        baseline = self.get_baseline(connection, queue)
        if baseline is None:
            return False
        age = self.store.now() - baseline.calculated_at.timestamp()
        return age <= max_age_seconds

    def delete_baseline(self, connection: str, queue: str, job_class: str = AGGREGATED_JOB_CLASS) -> bool:
        return self.store.delete(self.baseline_key(connection, queue, job_class)) > 0

    # Calculation

    def collect_samples(self, job_class: str, connection: str, queue: str, limit: int) -> Dict[str, List[float]]:
        """Newest ``limit`` duration, memory and CPU samples in one round trip."""
        series = (SERIES_DURATIONS, SERIES_MEMORY, SERIES_CPU)

        def queue_commands(pipe) -> None:
            for name in series:
                pipe.zrange(self.ledger.series_key(name, job_class, connection, queue), -limit, -1)

        results = self.store.pipeline(queue_commands)
        return {
            name: [split_tagged(member) for member in members or []]
            for name, members in zip(series, results)
        }

    def calculate_job_class_baseline(self, connection: str, queue: str, job_class: str) -> Optional[BaselineData]:
        samples = self.collect_samples(job_class, connection, queue, self.settings.baseline_samples)
        durations = samples[SERIES_DURATIONS]
        if not durations:
            return None

        window_days = self.settings.baseline_sliding_window_days
        decay = self.settings.baseline_decay_factor
        weighted_duration = weighted_average(durations, window_days, decay)
        weighted_memory = weighted_average(samples[SERIES_MEMORY], window_days, decay)
        weighted_cpu = weighted_average(samples[SERIES_CPU], window_days, decay)

        return BaselineData(
            connection=connection,
            queue=queue,
            job_class=job_class,
            # CPU time (ms) per job expressed as CPU-seconds percentage
            cpu_percent_per_job=round(weighted_cpu / 1000, 2) if weighted_cpu > 0 else 0.0,
            memory_mb_per_job=round(weighted_memory, 2),
            avg_duration_ms=round(weighted_duration, 2),
            sample_count=len(durations),
            confidence_score=confidence_score(len(durations), self.settings.baseline_target_sample_size),
            calculated_at=datetime.now(timezone.utc),
        )

    def _replace(self, baseline: BaselineData) -> None:
        previous = self.get_baseline(baseline.connection, baseline.queue, baseline.job_class)
        significant = has_significant_change(previous, baseline, self.settings.baseline_significant_change_ratio)
        self.store_baseline(baseline)

        if significant:
            logger.info(
                f"基线显著变化 {baseline.connection}:{baseline.queue}:{baseline.job_class or '*'} "
                f"duration={baseline.avg_duration_ms}ms"
            )
        self.dispatcher.dispatch(BaselineRecalculated(
            connection=baseline.connection,
            queue=baseline.queue,
            baseline=baseline,
            significant_change=significant,
        ))

    def _calculate_queue(self, connection: str, queue: str) -> List[BaselineData]:
        """Per-class baselines followed by the aggregate; every one is stored."""
        per_class = []
        for job_class in self.ledger.list_job_classes(connection, queue):
            baseline = self.calculate_job_class_baseline(connection, queue, job_class)
            if baseline is None:
                continue
            self._replace(baseline)
            per_class.append(baseline)

        if not per_class:
            return []

        aggregated = aggregate_baselines(connection, queue, per_class, self.settings.baseline_target_sample_size)
        self._replace(aggregated)
        return per_class + [aggregated]

    def calculate_for_queue(self, connection: str, queue: str) -> Optional[BaselineData]:
        """Recalculate one queue; returns its aggregated baseline."""
        calculated = self._calculate_queue(connection, queue)
        return calculated[-1] if calculated else None

    def calculate_all(self) -> Dict[str, float]:
        queues = self.ledger.list_queues()
        calculated = 0
        total_confidence = 0.0

        for connection, queue in queues:
            for baseline in self._calculate_queue(connection, queue):
                calculated += 1
                total_confidence += baseline.confidence_score

        logger.info(f"基线计算完成: queues={len(queues)} baselines={calculated}")
        return {
            "queues_processed": len(queues),
            "baselines_calculated": calculated,
            "avg_confidence": round(total_confidence / calculated, 2) if calculated else 0.0,
        }
