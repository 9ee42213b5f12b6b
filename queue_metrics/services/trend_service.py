"""
趋势分析服务

Records queue depth, throughput and worker efficiency as time-windowed series
and analyses them with an ordinary least squares fit and a one-step forecast.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from queue_metrics.events import (
    EventDispatcher,
    QueueDepthThresholdExceeded,
    WorkerEfficiencyChanged,
    default_dispatcher,
)
from queue_metrics.schemas.trend import (
    EfficiencyAnalysis,
    SeriesStatistics,
    ThroughputAnalysis,
    TrendAnalysis,
    TrendForecast,
    TrendLine,
    TrendPoint,
)
from queue_metrics.schemas.worker import WorkerHeartbeat, WorkerState
from queue_metrics.utils.coerce import as_float
from queue_metrics.utils.percentiles import mean, stddev
from queue_metrics.utils.store import TimeSeriesStore

logger = logging.getLogger(__name__)

DEPTH_SLOPE_TOLERANCE = 0.1


def linear_trend(points: Sequence[TrendPoint]) -> TrendLine:
    """OLS fit over (timestamp - first timestamp, value); R² clamped to [0, 1]."""
    n = len(points)
    if n < 2:
        return TrendLine()

    first = points[0].timestamp
    xs = [point.timestamp - first for point in points]
    ys = [point.value for point in points]

    sum_x = sum(xs)
    sum_y = sum(ys)
    sum_xy = sum(x * y for x, y in zip(xs, ys))
    sum_x2 = sum(x * x for x in xs)

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        return TrendLine()

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    mean_y = sum_y / n
    ss_total = sum((y - mean_y) ** 2 for y in ys)
    ss_residual = sum((y - (slope * x + intercept)) ** 2 for x, y in zip(xs, ys))
    r_squared = 1 - ss_residual / ss_total if ss_total > 0 else 0.0

    return TrendLine(slope=slope, intercept=intercept, r_squared=max(0.0, min(1.0, r_squared)))


def classify_direction(slope: float, tolerance: float = DEPTH_SLOPE_TOLERANCE) -> str:
    if slope > tolerance:
        return "increasing"
    if slope < -tolerance:
        return "decreasing"
    return "stable"


def forecast_next(points: Sequence[TrendPoint], line: TrendLine, interval_seconds: int) -> TrendForecast:
    """Extrapolate ``line`` to one interval after the last point, never below zero."""
    first, last = points[0].timestamp, points[-1].timestamp
    value = line.slope * (last - first + interval_seconds) + line.intercept
    return TrendForecast(next_value=round(max(0.0, value), 2), next_timestamp=last + interval_seconds)


def analyze(points: Sequence[TrendPoint], interval_seconds: int = 60,
            tolerance: float = DEPTH_SLOPE_TOLERANCE) -> TrendAnalysis:
    """Statistics, fitted line, direction and forecast for a chronological series."""
    if len(points) < 2:
        return TrendAnalysis(
            available=False,
            message="Not enough data points for trend analysis",
            sample_count=len(points),
        )

    values = [point.value for point in points]
    line = linear_trend(points)

    return TrendAnalysis(
        available=True,
        sample_count=len(points),
        analyzed_at=datetime.now(timezone.utc),
        statistics=SeriesStatistics(
            current=values[-1],
            average=round(mean(values), 2),
            min=min(values),
            max=max(values),
            std_dev=round(stddev(values), 2),
        ),
        trend=TrendLine(
            slope=round(line.slope, 4),
            intercept=round(line.intercept, 4),
            r_squared=round(line.r_squared, 3),
        ),
        direction=classify_direction(line.slope, tolerance),
        forecast=forecast_next(points, line, interval_seconds),
    )


def fleet_efficiency(workers: Sequence[WorkerHeartbeat]) -> Dict[str, float]:
    """Busy share of active workers plus their average memory and CPU."""
    active = [worker for worker in workers if worker.state.is_active]
    busy = sum(1 for worker in active if worker.state == WorkerState.BUSY)
    idle = sum(1 for worker in active if worker.state == WorkerState.IDLE)

    return {
        "efficiency": round(busy / (busy + idle) * 100, 2) if busy + idle else 0.0,
        "avg_memory_mb": round(mean([worker.memory_usage_mb for worker in active]), 2),
        "avg_cpu_percent": round(mean([worker.cpu_usage_percent for worker in active]), 2),
        "active_workers": len(active),
        "busy_workers": busy,
        "idle_workers": idle,
    }


class TrendEngine:
    def __init__(self, store: TimeSeriesStore, dispatcher: Optional[EventDispatcher] = None) -> None:
        self.store = store
        self.settings = store.settings
        self.dispatcher = default_dispatcher(dispatcher)

    def depth_key(self, connection: str, queue: str) -> str:
        return self.store.key("queue_depth_history", connection, queue)

    def throughput_key(self, connection: str, queue: str) -> str:
        return self.store.key("throughput_history", connection, queue)

    def efficiency_key(self) -> str:
        return self.store.key("worker_efficiency_history")

    # Recording

    def _append(self, key: str, point: Dict[str, float], at: float, retention: int, ttl: int) -> None:
        member = json.dumps(point, sort_keys=True)

        def queue_commands(pipe) -> None:
            pipe.zadd(key, {member: at})
            pipe.zremrangebyscore(key, "-inf", f"({at - retention}")
            pipe.expire(key, ttl)

        self.store.transaction(queue_commands)

    def record_queue_depth(self, connection: str, queue: str, depth: int, at: Optional[float] = None) -> None:
        at = self.store.now() if at is None else at
        self._append(
            self.depth_key(connection, queue),
            {"timestamp": at, "depth": depth},
            at,
            self.settings.trend_retention_seconds,
            self.settings.trend_key_ttl,
        )

        threshold = self.settings.queue_depth_threshold
        if depth > threshold:
            percentage_over = (depth - threshold) / threshold * 100 if threshold > 0 else 100.0
            logger.warning(f"队列积压 {connection}:{queue} depth={depth} threshold={threshold}")
            self.dispatcher.dispatch(QueueDepthThresholdExceeded(
                connection=connection,
                queue=queue,
                depth=depth,
                threshold=threshold,
                percentage_over=round(percentage_over, 2),
            ))

    def record_throughput(self, connection: str, queue: str, jobs_processed: int, at: Optional[float] = None) -> None:
        at = self.store.now() if at is None else at
        self._append(
            self.throughput_key(connection, queue),
            {"timestamp": at, "jobs_processed": jobs_processed},
            at,
            self.settings.trend_retention_seconds,
            self.settings.trend_key_ttl,
        )

    def record_worker_efficiency(self, workers: Sequence[WorkerHeartbeat], at: Optional[float] = None) -> Dict[str, float]:
        at = self.store.now() if at is None else at
        key = self.efficiency_key()
        snapshot = fleet_efficiency(workers)

        previous = None
        latest = self.store.range_by_rank(key, -1, -1)
        if latest:
            previous = self._decode(latest[0], "efficiency")

        self._append(
            key,
            {"timestamp": at, **snapshot},
            at,
            self.settings.efficiency_retention_seconds,
            self.settings.efficiency_key_ttl,
        )

        if previous is not None:
            change = snapshot["efficiency"] - previous.value
            if abs(change) >= self.settings.efficiency_change_threshold:
                event = WorkerEfficiencyChanged(
                    current_efficiency=snapshot["efficiency"],
                    previous_efficiency=previous.value,
                    change_percentage=round(change, 2),
                    active_workers=int(snapshot["active_workers"]),
                    idle_workers=int(snapshot["idle_workers"]),
                )
                logger.info(f"Worker 效率变化 {previous.value}% -> {snapshot['efficiency']}% "
                            f"({event.scaling_recommendation})")
                self.dispatcher.dispatch(event)

        return snapshot

    # Reading

    @staticmethod
    def _decode(member: str, field: str) -> Optional[TrendPoint]:
        try:
            data = json.loads(member)
            return TrendPoint(timestamp=float(data["timestamp"]), value=float(data[field]))
        except (ValueError, TypeError, KeyError) as e:
            logger.debug(f"跳过无效趋势数据 {member!r}: {e}")
            return None

    def load_points(self, key: str, field: str, period_seconds: int, now: Optional[float] = None) -> List[TrendPoint]:
        now = self.store.now() if now is None else now
        members = self.store.range_by_score(key, now - period_seconds, now)
        points = [self._decode(member, field) for member in members]
        return [point for point in points if point is not None]

    def analyze_queue_depth(self, connection: str, queue: str, period_seconds: int = 3600,
                            interval_seconds: int = 60, now: Optional[float] = None) -> TrendAnalysis:
        points = self.load_points(self.depth_key(connection, queue), "depth", period_seconds, now)
        result = analyze(points, interval_seconds)
        result.window_seconds = period_seconds
        return result

    def analyze_throughput(self, connection: str, queue: str, period_seconds: int = 3600,
                           now: Optional[float] = None) -> ThroughputAnalysis:
        points = self.load_points(self.throughput_key(connection, queue), "jobs_processed", period_seconds, now)
        # throughput direction follows the strict sign of the slope
        result = ThroughputAnalysis(**analyze(points, tolerance=0.0).model_dump())
        result.window_seconds = period_seconds
        if not points:
            return result

        total = sum(point.value for point in points)
        per_minute = total / period_seconds * 60 if period_seconds > 0 else 0.0
        result.total_jobs = total
        result.jobs_per_minute = round(per_minute, 2)
        result.jobs_per_hour = round(per_minute * 60, 2)
        return result

    def analyze_worker_efficiency(self, period_seconds: int = 3600, now: Optional[float] = None) -> EfficiencyAnalysis:
        now = self.store.now() if now is None else now
        members = self.store.range_by_score(self.efficiency_key(), now - period_seconds, now)

        points: List[TrendPoint] = []
        memory: List[float] = []
        cpu: List[float] = []
        for member in members:
            point = self._decode(member, "efficiency")
            if point is None:
                continue
            data = json.loads(member)
            points.append(point)
            memory.append(as_float(data.get("avg_memory_mb"), field="avg_memory_mb"))
            cpu.append(as_float(data.get("avg_cpu_percent"), field="avg_cpu_percent"))

        result = EfficiencyAnalysis(**analyze(points).model_dump())
        result.window_seconds = period_seconds
        if points:
            result.avg_memory_mb = round(mean(memory), 2)
            result.avg_cpu_percent = round(mean(cpu), 2)
        return result
