from datetime import datetime, timezone

import pytest

from queue_metrics.events import QueueDepthThresholdExceeded, WorkerEfficiencyChanged
from queue_metrics.schemas.trend import TrendPoint
from queue_metrics.schemas.worker import WorkerHeartbeat, WorkerState
from queue_metrics.services.trend_service import analyze, classify_direction, fleet_efficiency, linear_trend


def points(values, start=0.0, step=1.0):
    return [TrendPoint(timestamp=start + i * step, value=value) for i, value in enumerate(values)]


def worker(worker_id, state, memory=64.0, cpu=10.0):
    return WorkerHeartbeat(
        worker_id=worker_id,
        connection="redis",
        queue="default",
        state=state,
        memory_usage_mb=memory,
        cpu_usage_percent=cpu,
        last_heartbeat=datetime.now(timezone.utc),
    )


def test_fewer_than_two_points_is_unavailable():
    assert analyze([]).available is False
    result = analyze(points([5.0]))
    assert result.available is False
    assert result.sample_count == 1
    assert result.message


def test_perfectly_linear_series():
    series = points([2.0 * x for x in range(10)])

    line = linear_trend(series)
    assert line.slope == pytest.approx(2.0)
    assert line.intercept == pytest.approx(0.0)
    assert line.r_squared == pytest.approx(1.0)

    result = analyze(series, interval_seconds=1)
    assert result.available is True
    assert result.direction == "increasing"
    assert result.forecast.next_value == pytest.approx(20.0)
    assert result.forecast.next_timestamp == 10.0
    assert result.statistics.current == 18.0
    assert result.statistics.average == 9.0


def test_forecast_never_negative():
    result = analyze(points([10.0, 5.0, 0.0]), interval_seconds=5)
    assert result.direction == "decreasing"
    assert result.forecast.next_value == 0.0


def test_degenerate_timestamps_give_flat_line():
    line = linear_trend([TrendPoint(timestamp=5.0, value=1.0), TrendPoint(timestamp=5.0, value=3.0)])
    assert (line.slope, line.intercept, line.r_squared) == (0.0, 0.0, 0.0)


def test_r_squared_is_zero_for_constant_series():
    line = linear_trend(points([4.0, 4.0, 4.0]))
    assert line.slope == 0.0
    assert line.r_squared == 0.0


def test_direction_tolerance():
    assert classify_direction(0.05) == "stable"
    assert classify_direction(-0.2) == "decreasing"
    assert classify_direction(0.05, tolerance=0.0) == "increasing"


def test_queue_depth_recording_and_analysis(trends, store):
    now = store.now()
    for i, depth in enumerate([10, 20, 30, 40]):
        trends.record_queue_depth("redis", "default", depth, at=now - 300 + i * 60)

    result = trends.analyze_queue_depth("redis", "default", period_seconds=3600, interval_seconds=60, now=now)
    assert result.available is True
    assert result.sample_count == 4
    assert result.window_seconds == 3600
    assert result.trend.slope == pytest.approx(10 / 60, abs=1e-4)
    assert result.direction == "increasing"
    assert result.forecast.next_value == pytest.approx(50.0)


def test_old_depth_points_are_trimmed(trends, store, client):
    now = store.now()
    trends.record_queue_depth("redis", "default", 5, at=now - 90000)
    trends.record_queue_depth("redis", "default", 6, at=now)

    key = trends.depth_key("redis", "default")
    assert client.zcard(key) == 1
    assert 0 < client.ttl(key) <= 172800


def test_depth_threshold_notification(trends, recorder):
    trends.record_queue_depth("redis", "default", 100)
    assert recorder.of_type(QueueDepthThresholdExceeded) == []

    trends.record_queue_depth("redis", "default", 150)
    [event] = recorder.of_type(QueueDepthThresholdExceeded)
    assert event.depth == 150
    assert event.threshold == 100
    assert event.percentage_over == 50.0


def test_throughput_direction_uses_strict_sign(trends, store):
    now = store.now()
    trends.record_throughput("redis", "default", 0, at=now - 60)
    trends.record_throughput("redis", "default", 3, at=now)

    result = trends.analyze_throughput("redis", "default", period_seconds=3600, now=now)
    assert result.direction == "increasing"
    assert result.total_jobs == 3
    assert result.jobs_per_minute == 0.05
    assert result.jobs_per_hour == 3.0


def test_throughput_without_data(trends):
    result = trends.analyze_throughput("redis", "default")
    assert result.available is False
    assert result.total_jobs == 0.0


def test_fleet_efficiency():
    snapshot = fleet_efficiency([
        worker("a", WorkerState.BUSY, memory=100.0),
        worker("b", WorkerState.IDLE, memory=50.0),
        worker("c", WorkerState.CRASHED, memory=999.0),
    ])
    assert snapshot["efficiency"] == 50.0
    assert snapshot["avg_memory_mb"] == 75.0
    assert snapshot["active_workers"] == 2
    assert fleet_efficiency([])["efficiency"] == 0.0


def test_efficiency_swing_notification(trends, store, recorder):
    now = store.now()
    trends.record_worker_efficiency([worker("a", WorkerState.BUSY), worker("b", WorkerState.BUSY)], at=now - 120)
    assert recorder.of_type(WorkerEfficiencyChanged) == []

    trends.record_worker_efficiency([worker("a", WorkerState.BUSY), worker("b", WorkerState.BUSY)], at=now - 60)
    assert recorder.of_type(WorkerEfficiencyChanged) == []

    trends.record_worker_efficiency(
        [worker("a", WorkerState.IDLE), worker("b", WorkerState.IDLE), worker("c", WorkerState.IDLE)], at=now
    )
    [event] = recorder.of_type(WorkerEfficiencyChanged)
    assert event.previous_efficiency == 100.0
    assert event.current_efficiency == 0.0
    assert event.change_percentage == -100.0
    assert event.scaling_recommendation == "scale_down"

    result = trends.analyze_worker_efficiency(period_seconds=3600, now=now)
    assert result.available is True
    assert result.sample_count == 3
    assert result.statistics.max == 100.0
    assert result.avg_memory_mb == 64.0


def test_scaling_recommendations():
    busy = WorkerEfficiencyChanged(current_efficiency=95.0, previous_efficiency=70.0, change_percentage=25.0,
                                   active_workers=4, idle_workers=0)
    steady = WorkerEfficiencyChanged(current_efficiency=60.0, previous_efficiency=80.0, change_percentage=-20.0,
                                     active_workers=4, idle_workers=2)
    assert busy.scaling_recommendation == "scale_up"
    assert steady.scaling_recommendation == "maintain"
