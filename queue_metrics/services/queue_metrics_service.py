"""
队列指标服务

Queue-level snapshots aggregated from the job classes of a queue, with a
health score derived from backlog, job age, failures and worker presence.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from queue_metrics.events import EventDispatcher, HealthScoreChanged, default_dispatcher
from queue_metrics.schemas.queue import HealthStats, QueueMetricsData
from queue_metrics.schemas.worker import WorkerState
from queue_metrics.services.heartbeat_service import WorkerHeartbeatEngine
from queue_metrics.services.job_ledger import JobMetricsLedger
from queue_metrics.utils.coerce import as_datetime, as_float, as_int

logger = logging.getLogger(__name__)

SNAPSHOT_WINDOW_SECONDS = 60
SNAPSHOT_HISTORY_SIZE = 1000


def health_score(depth: int, oldest_job_age: int, failure_rate: float, active_workers: int) -> float:
    score = 100.0
    if depth > 100:
        score -= min(30, (depth - 100) / 10)
    if oldest_job_age > 300:
        score -= min(30, (oldest_job_age - 300) / 60)
    score -= min(20, failure_rate)
    if active_workers == 0 and depth > 0:
        score -= 20
    return max(0.0, score)


def health_status(score: float) -> str:
    if score >= 80:
        return "healthy"
    if score >= 50:
        return "warning"
    return "critical"


class QueueMetricsService:
    def __init__(self, ledger: JobMetricsLedger, heartbeats: WorkerHeartbeatEngine,
                 dispatcher: Optional[EventDispatcher] = None) -> None:
        self.ledger = ledger
        self.store = ledger.store
        self.settings = ledger.settings
        self.heartbeats = heartbeats
        self.dispatcher = default_dispatcher(dispatcher)

    def snapshot_key(self, connection: str, queue: str) -> str:
        return self.store.key("queue_snapshot", connection, queue)

    def history_key(self, connection: str, queue: str) -> str:
        return self.store.key("queue_snapshots", connection, queue)

    def calculate(self, connection: str, queue: str, depth: int = 0, oldest_job_age: int = 0) -> QueueMetricsData:
        """
        Aggregate the queue's job classes into a snapshot and persist it.

        Throughput and average duration share the same 60 second window; the
        failure rate uses lifetime totals. ``depth`` and ``oldest_job_age`` come
        from the host queue backend.
        """
        throughput = 0
        weighted_duration = 0.0
        total_processed = 0
        total_failed = 0
        last_processed_at: Optional[datetime] = None

        for job_class in self.ledger.list_job_classes(connection, queue):
            jobs = self.ledger.get_throughput(job_class, connection, queue, SNAPSHOT_WINDOW_SECONDS)
            _, avg_duration = self.ledger.get_average_duration_in_window(
                job_class, connection, queue, SNAPSHOT_WINDOW_SECONDS
            )
            throughput += jobs
            weighted_duration += avg_duration * jobs

            counter = self.ledger.get_counters(job_class, connection, queue)
            total_processed += counter.total_processed
            total_failed += counter.total_failed
            if counter.last_processed_at and (last_processed_at is None or counter.last_processed_at > last_processed_at):
                last_processed_at = counter.last_processed_at

        attempts = total_processed + total_failed
        failure_rate = total_failed / attempts * 100 if attempts else 0.0

        workers = self.heartbeats.get_active_workers(connection, queue)
        busy = sum(1 for worker in workers if worker.state == WorkerState.BUSY)
        utilization = busy / len(workers) * 100 if workers else 0.0

        score = health_score(depth, oldest_job_age, failure_rate, len(workers))
        data = QueueMetricsData(
            connection=connection,
            queue=queue,
            depth=depth,
            oldest_job_age=oldest_job_age,
            throughput_per_minute=float(throughput),
            avg_duration_ms=round(weighted_duration / throughput, 2) if throughput else 0.0,
            failure_rate=round(failure_rate, 2),
            utilization_rate=round(utilization, 2),
            active_workers=len(workers),
            total_processed=total_processed,
            total_failed=total_failed,
            last_processed_at=last_processed_at,
            health=HealthStats(
                status=health_status(score),
                score=round(score, 2),
                depth=depth,
                oldest_job_age=oldest_job_age,
                failure_rate=round(failure_rate, 2),
                utilization_rate=round(utilization, 2),
            ),
            calculated_at=datetime.now(timezone.utc),
        )

        previous = self.store.hash_field(self.snapshot_key(connection, queue), "health_score")
        self._record_snapshot(data)
        self._check_health_change(data, previous)
        return data

    def _record_snapshot(self, data: QueueMetricsData) -> None:
        at = data.calculated_at.timestamp()
        fields: Dict[str, str] = {
            "depth": str(data.depth),
            "oldest_job_age": str(data.oldest_job_age),
            "throughput_per_minute": str(data.throughput_per_minute),
            "avg_duration": str(data.avg_duration_ms),
            "failure_rate": str(data.failure_rate),
            "utilization_rate": str(data.utilization_rate),
            "active_workers": str(data.active_workers),
            "total_processed": str(data.total_processed),
            "total_failed": str(data.total_failed),
            "last_processed_at": str(data.last_processed_at.timestamp()) if data.last_processed_at else "",
            "health_score": str(data.health.score),
            "recorded_at": str(at),
        }
        snapshot_key = self.snapshot_key(data.connection, data.queue)
        history_key = self.history_key(data.connection, data.queue)
        ttl = self.store.ttl("aggregated")

        def queue_commands(pipe) -> None:
            pipe.hset(snapshot_key, mapping=fields)
            pipe.expire(snapshot_key, ttl)
            pipe.zadd(history_key, {json.dumps(fields, sort_keys=True): at})
            pipe.expire(history_key, ttl)
            pipe.zremrangebyrank(history_key, 0, -(SNAPSHOT_HISTORY_SIZE + 1))

        self.store.transaction(queue_commands)

    def _check_health_change(self, data: QueueMetricsData, previous: Optional[str]) -> None:
        if previous is None:
            return
        previous_score = as_float(previous, field="health_score")
        if abs(data.health.score - previous_score) < self.settings.health_score_change_threshold:
            return

        event = HealthScoreChanged(
            connection=data.connection,
            queue=data.queue,
            current_score=data.health.score,
            previous_score=previous_score,
            status=data.health.status,
        )
        logger.warning(
            f"队列健康度变化 {data.connection}:{data.queue} "
            f"{previous_score} -> {data.health.score} ({event.severity})"
        )
        self.dispatcher.dispatch(event)

    def get_queue_metrics(self, connection: str, queue: str) -> QueueMetricsData:
        """Latest stored snapshot; health is ``unknown`` when none exists."""
        data = self.store.hash(self.snapshot_key(connection, queue))
        if not data:
            return QueueMetricsData(
                connection=connection,
                queue=queue,
                health=HealthStats(status="unknown", score=0.0),
            )

        depth = as_int(data.get("depth"), field="depth")
        oldest_job_age = as_int(data.get("oldest_job_age"), field="oldest_job_age")
        failure_rate = as_float(data.get("failure_rate"), field="failure_rate")
        utilization = as_float(data.get("utilization_rate"), field="utilization_rate")
        active_workers = as_int(data.get("active_workers"), field="active_workers")
        score = health_score(depth, oldest_job_age, failure_rate, active_workers)

        return QueueMetricsData(
            connection=connection,
            queue=queue,
            depth=depth,
            oldest_job_age=oldest_job_age,
            throughput_per_minute=as_float(data.get("throughput_per_minute"), field="throughput_per_minute"),
            avg_duration_ms=as_float(data.get("avg_duration"), field="avg_duration"),
            failure_rate=failure_rate,
            utilization_rate=utilization,
            active_workers=active_workers,
            total_processed=as_int(data.get("total_processed"), field="total_processed"),
            total_failed=as_int(data.get("total_failed"), field="total_failed"),
            last_processed_at=as_datetime(data.get("last_processed_at"), field="last_processed_at"),
            health=HealthStats(
                status=health_status(score),
                score=round(score, 2),
                depth=depth,
                oldest_job_age=oldest_job_age,
                failure_rate=failure_rate,
                utilization_rate=utilization,
            ),
            calculated_at=as_datetime(data.get("recorded_at"), field="recorded_at"),
        )

    def calculate_all(self, depths: Optional[Dict[str, int]] = None) -> List[QueueMetricsData]:
        """Snapshot every discovered queue; ``depths`` maps ``connection:queue`` to its backlog."""
        depths = depths or {}
        return [
            self.calculate(connection, queue, depth=depths.get(f"{connection}:{queue}", 0))
            for connection, queue in self.ledger.list_queues()
        ]
