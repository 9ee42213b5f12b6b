import pytest

from queue_metrics.events import HealthScoreChanged
from queue_metrics.schemas.worker import WorkerState
from queue_metrics.services.queue_metrics_service import health_score, health_status

JOB = "app.jobs.Import"


def record_jobs(ledger, completions, failures=0, queue="default"):
    ledger.record_start("start", JOB, "redis", queue)
    for i, duration in enumerate(completions):
        ledger.record_completion(f"ok-{i}", JOB, "redis", queue, duration, 10.0, 5.0)
    for i in range(failures):
        ledger.record_failure(f"fail-{i}", JOB, "redis", queue, "boom")


def test_health_score_rules():
    assert health_score(0, 0, 0.0, 1) == 100.0
    assert health_score(200, 0, 0.0, 1) == 90.0
    assert health_score(1000, 0, 0.0, 1) == 70.0
    assert health_score(0, 900, 0.0, 1) == 90.0
    assert health_score(0, 0, 50.0, 1) == 80.0
    assert health_score(5, 0, 0.0, 0) == 80.0
    assert health_score(10000, 100000, 100.0, 0) == 0.0


def test_health_status_bands():
    assert health_status(80.0) == "healthy"
    assert health_status(79.9) == "warning"
    assert health_status(50.0) == "warning"
    assert health_status(49.9) == "critical"


def test_unknown_queue_has_unknown_health(queues):
    data = queues.get_queue_metrics("redis", "nowhere")
    assert data.health.status == "unknown"
    assert data.health.score == 0.0


def test_calculate_aggregates_job_classes(ledger, queues):
    record_jobs(ledger, [100.0, 200.0, 300.0], failures=1)

    data = queues.calculate("redis", "default")

    assert data.throughput_per_minute == 3.0
    assert data.avg_duration_ms == pytest.approx(200.0)
    assert data.failure_rate == 25.0
    assert data.total_processed == 3
    assert data.total_failed == 1
    assert data.active_workers == 0
    assert data.last_processed_at is not None
    assert data.health.score == 80.0
    assert data.health.is_healthy()

    stored = queues.get_queue_metrics("redis", "default")
    assert stored.throughput_per_minute == 3.0
    assert stored.failure_rate == 25.0
    assert stored.health.status == "healthy"
    assert stored.calculated_at is not None


def test_utilization_from_worker_states(ledger, heartbeats, queues, store):
    record_jobs(ledger, [50.0])
    now = store.now()
    heartbeats.record_heartbeat("w1", "redis", "default", WorkerState.BUSY, current_job_id="x", at=now)
    heartbeats.record_heartbeat("w2", "redis", "default", WorkerState.IDLE, at=now)
    heartbeats.record_heartbeat("w3", "redis", "other", WorkerState.BUSY, current_job_id="y", at=now)

    data = queues.calculate("redis", "default", depth=10)

    assert data.active_workers == 2
    assert data.utilization_rate == 50.0
    assert data.has_active_workers()


def test_health_change_notification(ledger, queues, recorder):
    record_jobs(ledger, [100.0])
    queues.calculate("redis", "default", depth=0)
    assert recorder.of_type(HealthScoreChanged) == []

    queues.calculate("redis", "default", depth=1000, oldest_job_age=600)

    [event] = recorder.of_type(HealthScoreChanged)
    assert event.previous_score == 100.0
    # depth -30, age -5, no workers with backlog -20
    assert event.current_score == 45.0
    assert event.status == "critical"
    assert event.severity == "critical"

    stored = queues.get_queue_metrics("redis", "default")
    assert stored.health.is_critical()


def test_small_health_moves_are_quiet(ledger, queues, recorder):
    record_jobs(ledger, [100.0])
    queues.calculate("redis", "default", depth=0)
    queues.calculate("redis", "default", oldest_job_age=900)

    assert recorder.of_type(HealthScoreChanged) == []


def test_snapshot_history_is_bounded(ledger, queues, client):
    record_jobs(ledger, [100.0])
    for depth in range(5):
        queues.calculate("redis", "default", depth=depth)

    assert 1 <= client.zcard(queues.history_key("redis", "default")) <= 5


def test_calculate_all_uses_reported_depths(ledger, queues):
    record_jobs(ledger, [100.0], queue="default")
    record_jobs(ledger, [100.0], queue="emails")

    results = {data.queue: data for data in queues.calculate_all({"redis:emails": 500})}

    assert set(results) == {"default", "emails"}
    assert results["emails"].depth == 500
    assert results["emails"].is_backlogged()
    assert results["default"].depth == 0


def test_severity_bands():
    def severity(previous, current):
        return HealthScoreChanged(connection="c", queue="q", current_score=current,
                                  previous_score=previous, status="warning").severity

    assert severity(100, 65) == "critical"
    assert severity(100, 78) == "warning"
    assert severity(100, 88) == "info"
    assert severity(100, 95) == "normal"
