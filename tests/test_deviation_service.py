from datetime import datetime, timezone

import pytest

from queue_metrics.config import Settings
from queue_metrics.schemas.baseline import BaselineData
from queue_metrics.services.baseline_service import BaselineEngine
from queue_metrics.services.deviation_service import DeviationDetector, metric_deviation
from queue_metrics.services.job_ledger import JobMetricsLedger
from queue_metrics.utils.store import TimeSeriesStore

JOB = "app.jobs.Report"


def store_baseline(baselines, confidence=1.0, duration=100.0):
    baselines.store_baseline(BaselineData(
        connection="redis",
        queue="default",
        cpu_percent_per_job=0.05,
        memory_mb_per_job=10.0,
        avg_duration_ms=duration,
        sample_count=200,
        confidence_score=confidence,
        calculated_at=datetime.now(timezone.utc),
    ))


def record(ledger, durations, job_class=JOB):
    ledger.record_start("start", job_class, "redis", "default")
    for i, duration in enumerate(durations):
        ledger.record_completion(f"{job_class}-{i}", job_class, "redis", "default",
                                 duration, 10.0, 50.0, at=1000.0 + i)


def test_metric_deviation_edge_cases():
    assert metric_deviation(100.0, []) == 0.0
    assert metric_deviation(0.0, [1.0, 2.0]) == 0.0
    assert metric_deviation(100.0, [5.0, 5.0]) == 0.0
    assert metric_deviation(100.0, [90.0, 110.0]) == 0.0
    assert metric_deviation(100.0, [110.0, 130.0]) == pytest.approx(2.0)


def test_no_baseline_means_no_deviation(ledger, detector):
    record(ledger, [500.0, 600.0])

    result = detector.detect_deviation("redis", "default")
    assert result.has_deviation is False
    assert result.deviation_score == 0.0


def test_no_recent_samples_means_no_deviation(baselines, detector):
    store_baseline(baselines)

    assert detector.detect_deviation("redis", "default").has_deviation is False


def test_slow_jobs_are_flagged(ledger, baselines, detector):
    store_baseline(baselines)
    record(ledger, [500.0, 510.0, 520.0, 530.0, 540.0])

    result = detector.detect_deviation("redis", "default")
    assert result.has_deviation is True
    assert result.deviation_score == pytest.approx(29.7, abs=0.01)
    assert result.threshold == 2.0
    assert detector.should_recalculate("redis", "default")


def test_stable_jobs_are_not_flagged(ledger, baselines, detector):
    store_baseline(baselines)
    record(ledger, [90.0, 100.0, 110.0])

    assert detector.detect_deviation("redis", "default").has_deviation is False


def test_recent_samples_are_shared_between_classes(ledger, detector):
    record(ledger, [float(i) for i in range(20)], job_class="app.jobs.A")
    record(ledger, [float(i) for i in range(100, 120)], job_class="app.jobs.B")

    samples = detector.recent_samples("redis", "default", 10)
    assert len(samples["duration"]) == 10
    assert set(samples["duration"]) == {15.0, 16.0, 17.0, 18.0, 19.0, 115.0, 116.0, 117.0, 118.0, 119.0}
    # cpu time is reported in the baseline's unit
    assert set(samples["cpu"]) == {0.05}


def test_recommended_intervals(ledger, baselines, detector):
    assert detector.get_recommended_interval("redis", "default") == 1

    store_baseline(baselines, confidence=0.95)
    assert detector.get_recommended_interval("redis", "default") == 60

    store_baseline(baselines, confidence=0.75)
    assert detector.get_recommended_interval("redis", "default") == 30

    store_baseline(baselines, confidence=0.55)
    assert detector.get_recommended_interval("redis", "default") == 10

    store_baseline(baselines, confidence=0.2)
    assert detector.get_recommended_interval("redis", "default") == 5

    store_baseline(baselines, confidence=0.95)
    record(ledger, [500.0, 510.0, 520.0])
    assert detector.get_recommended_interval("redis", "default") == 5


def test_disabled_detection(client):
    settings = Settings(_env_file=None, deviation_enabled=False)
    store = TimeSeriesStore(client, settings)
    ledger = JobMetricsLedger(store)
    baselines = BaselineEngine(store, ledger)
    detector = DeviationDetector(ledger, baselines)
    store_baseline(baselines)
    record(ledger, [500.0, 510.0, 520.0])

    assert detector.detect_deviation("redis", "default").has_deviation is False
