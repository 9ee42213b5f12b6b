"""
Baseline deviation detection

Compares the newest samples of a queue with its aggregated baseline. Queues
that drifted are recommended for faster baseline recalculation.
"""
import logging
import math
from typing import Dict, List, Sequence

from pydantic import BaseModel

from queue_metrics.services.baseline_service import BaselineEngine
from queue_metrics.services.job_ledger import JobMetricsLedger
from queue_metrics.utils.percentiles import mean, stddev

logger = logging.getLogger(__name__)


class DeviationResult(BaseModel):
    has_deviation: bool = False
    deviation_score: float = 0.0
    threshold: float = 0.0


def metric_deviation(baseline_value: float, samples: Sequence[float]) -> float:
    """|mean(samples) - baseline| in population standard deviations of the samples."""
    if not samples or baseline_value <= 0:
        return 0.0
    spread = stddev(samples)
    if spread <= 0:
        return 0.0
    return abs(mean(samples) - baseline_value) / spread


class DeviationDetector:
    def __init__(self, ledger: JobMetricsLedger, baselines: BaselineEngine) -> None:
        self.ledger = ledger
        self.baselines = baselines
        self.settings = ledger.settings

    def recent_samples(self, connection: str, queue: str, limit: int) -> Dict[str, List[float]]:
        """
        Up to ``limit`` recent samples per metric across the queue's job classes.

        Each class contributes ``ceil(limit / classes)`` samples. CPU time is
        converted to the baseline's unit (ms / 1000).
        """
        samples: Dict[str, List[float]] = {"duration": [], "memory": [], "cpu": []}
        job_classes = self.ledger.list_job_classes(connection, queue)
        if not job_classes:
            return samples

        per_class = max(1, math.ceil(limit / len(job_classes)))
        for job_class in job_classes:
            samples["duration"].extend(self.ledger.get_duration_samples(job_class, connection, queue, per_class))
            samples["memory"].extend(self.ledger.get_memory_samples(job_class, connection, queue, per_class))
            samples["cpu"].extend(
                value / 1000 for value in self.ledger.get_cpu_time_samples(job_class, connection, queue, per_class)
            )

        return {name: values[-limit:] for name, values in samples.items()}

    def detect_deviation(self, connection: str, queue: str) -> DeviationResult:
        if not self.settings.deviation_enabled:
            return DeviationResult()

        baseline = self.baselines.get_baseline(connection, queue)
        if baseline is None:
            return DeviationResult()

        recent = self.recent_samples(connection, queue, self.settings.deviation_recent_samples)
        if not any(recent.values()):
            return DeviationResult()

        score = max(
            metric_deviation(baseline.cpu_percent_per_job, recent["cpu"]),
            metric_deviation(baseline.memory_mb_per_job, recent["memory"]),
            metric_deviation(baseline.avg_duration_ms, recent["duration"]),
        )
        threshold = self.settings.deviation_threshold
        result = DeviationResult(
            has_deviation=score > threshold,
            deviation_score=round(score, 2),
            threshold=threshold,
        )
        if result.has_deviation:
            logger.info(f"检测到基线偏差 {connection}:{queue} score={result.deviation_score}")
        return result

    def should_recalculate(self, connection: str, queue: str) -> bool:
        return self.detect_deviation(connection, queue).has_deviation

    def interval_for_confidence(self, confidence: float) -> int:
        if confidence >= 0.9:
            return self.settings.interval_very_high_confidence
        if confidence >= 0.7:
            return self.settings.interval_high_confidence
        if confidence >= 0.5:
            return self.settings.interval_medium_confidence
        return self.settings.interval_low_confidence

    def get_recommended_interval(self, connection: str, queue: str) -> int:
        """Minutes until the queue's baseline should be recalculated."""
        baseline = self.baselines.get_baseline(connection, queue)
        if baseline is None:
            return self.settings.interval_no_baseline

        if self.detect_deviation(connection, queue).has_deviation:
            return self.settings.deviation_trigger_interval

        return self.interval_for_confidence(baseline.confidence_score)
