"""
Worker 心跳服务

Atomic worker state machine. Each heartbeat is one server-side script that
credits the elapsed time to the state the worker was in during the interval.
A sorted index scored by last heartbeat keeps staleness sweeps proportional to
the number of stale workers.
"""
import logging
from typing import List, Optional

from queue_metrics.schemas.worker import WorkerHeartbeat, WorkersSummary, WorkerState
from queue_metrics.utils import lua_scripts
from queue_metrics.utils.coerce import as_int
from queue_metrics.utils.process import get_process_snapshot
from queue_metrics.utils.store import TimeSeriesStore

logger = logging.getLogger(__name__)


class WorkerHeartbeatEngine:
    def __init__(self, store: TimeSeriesStore) -> None:
        self.store = store
        self.settings = store.settings

    def worker_key(self, worker_id: str) -> str:
        return self.store.key("worker", worker_id)

    def index_key(self) -> str:
        return self.store.key("workers", "all")

    def record_heartbeat(self, worker_id: str, connection: str, queue: str, state: WorkerState,
                         current_job_id: Optional[str] = None, current_job_class: Optional[str] = None,
                         pid: int = 0, hostname: str = "unknown", memory_usage_mb: float = 0.0,
                         cpu_usage_percent: float = 0.0, at: Optional[float] = None) -> int:
        """Record one heartbeat; returns the worker's jobs processed so far."""
        at = self.store.now() if at is None else at
        result = self.store.eval_atomic(
            "update_worker_heartbeat",
            lua_scripts.UPDATE_WORKER_HEARTBEAT,
            keys=[self.worker_key(worker_id), self.index_key()],
            args=[
                worker_id,
                connection,
                queue,
                WorkerState(state).value,
                current_job_id or "",
                current_job_class or "",
                pid,
                hostname,
                memory_usage_mb,
                cpu_usage_percent,
                at,
                self.store.ttl("raw"),
            ],
        )
        return as_int(result, field="jobs_processed")

    def beat(self, worker_id: str, connection: str, queue: str, state: WorkerState,
             current_job_id: Optional[str] = None, current_job_class: Optional[str] = None) -> int:
        """Heartbeat from the calling process, with pid, host, memory and CPU filled in."""
        snapshot = get_process_snapshot()
        return self.record_heartbeat(
            worker_id,
            connection,
            queue,
            state,
            current_job_id=current_job_id,
            current_job_class=current_job_class,
            pid=snapshot.pid,
            hostname=snapshot.hostname,
            memory_usage_mb=snapshot.memory_usage_mb,
            cpu_usage_percent=snapshot.cpu_usage_percent,
        )

    def transition_state(self, worker_id: str, new_state: WorkerState, at: Optional[float] = None) -> bool:
        """Overwrite state and state-change time without time accounting."""
        at = self.store.now() if at is None else at
        updated = self.store.eval_atomic(
            "transition_worker_state",
            lua_scripts.TRANSITION_WORKER_STATE,
            keys=[self.worker_key(worker_id)],
            args=[WorkerState(new_state).value, at, self.store.ttl("raw")],
        )
        return bool(as_int(updated, field="transitioned"))

    def detect_stale_workers(self, threshold_seconds: Optional[int] = None, now: Optional[float] = None) -> int:
        """Mark active workers whose last heartbeat is older than the threshold as crashed."""
        threshold = self.settings.stale_threshold_seconds if threshold_seconds is None else threshold_seconds
        now = self.store.now() if now is None else now
        cutoff = now - threshold
        stale_ids = self.store.range_by_score(self.index_key(), "-inf", f"({cutoff}")

        marked = 0
        for worker_id in stale_ids:
            # a heartbeat landing after the range query keeps the worker alive
            marked += as_int(self.store.eval_atomic(
                "mark_worker_crashed",
                lua_scripts.MARK_WORKER_CRASHED,
                keys=[self.worker_key(worker_id)],
                args=[cutoff, now, self.store.ttl("raw")],
            ), field="marked")

        if marked:
            logger.warning(f"检测到 {marked} 个失联 worker，已标记为 crashed")
        return marked

    def cleanup(self, older_than_seconds: int, now: Optional[float] = None) -> int:
        """Remove workers (hash and index entry) not heard from in ``older_than_seconds``."""
        now = self.store.now() if now is None else now
        stale_ids = self.store.range_by_score(self.index_key(), "-inf", f"({now - older_than_seconds}")
        if not stale_ids:
            return 0

        def queue_commands(pipe) -> None:
            pipe.delete(*[self.worker_key(worker_id) for worker_id in stale_ids])
            pipe.zrem(self.index_key(), *stale_ids)

        self.store.transaction(queue_commands)
        logger.info(f"清理 {len(stale_ids)} 个过期 worker 记录")
        return len(stale_ids)

    def remove_worker(self, worker_id: str) -> None:
        def queue_commands(pipe) -> None:
            pipe.delete(self.worker_key(worker_id))
            pipe.zrem(self.index_key(), worker_id)

        self.store.transaction(queue_commands)

    # Queries

    def get_worker(self, worker_id: str) -> Optional[WorkerHeartbeat]:
        data = self.store.hash(self.worker_key(worker_id))
        if not data:
            return None
        return WorkerHeartbeat.from_hash(data)

    def get_all_workers(self) -> List[WorkerHeartbeat]:
        worker_ids = self.store.range_by_rank(self.index_key(), 0, -1)
        if not worker_ids:
            return []

        def queue_commands(pipe) -> None:
            for worker_id in worker_ids:
                pipe.hgetall(self.worker_key(worker_id))

        # index entries may outlive an expired hash
        return [WorkerHeartbeat.from_hash(data) for data in self.store.pipeline(queue_commands) if data]

    def get_active_workers(self, connection: Optional[str] = None, queue: Optional[str] = None,
                           now: Optional[float] = None) -> List[WorkerHeartbeat]:
        """Workers in an active state that heartbeated within the stale threshold."""
        now = self.store.now() if now is None else now
        threshold = self.settings.stale_threshold_seconds
        return [
            worker for worker in self.get_all_workers()
            if worker.state.is_active
            and not worker.is_stale(threshold, now)
            and (connection is None or worker.connection == connection)
            and (queue is None or worker.queue == queue)
        ]

    def get_workers_by_state(self, state: WorkerState) -> List[WorkerHeartbeat]:
        return [worker for worker in self.get_all_workers() if worker.state == state]

    def summary(self, now: Optional[float] = None) -> WorkersSummary:
        workers = self.get_active_workers(now=now)
        if not workers:
            return WorkersSummary()

        busy = sum(1 for worker in workers if worker.state == WorkerState.BUSY)
        idle = sum(1 for worker in workers if worker.state == WorkerState.IDLE)
        paused = sum(1 for worker in workers if worker.state == WorkerState.PAUSED)
        total_jobs = sum(worker.jobs_processed for worker in workers)

        idle_percentages = []
        for worker in workers:
            tracked = worker.idle_time_seconds + worker.busy_time_seconds
            if tracked > 0:
                idle_percentages.append(worker.idle_time_seconds / tracked * 100)

        return WorkersSummary(
            total=len(workers),
            busy=busy,
            idle=idle,
            paused=paused,
            total_jobs_processed=total_jobs,
            avg_jobs_per_worker=round(total_jobs / len(workers), 2),
            efficiency=round(busy / (busy + idle) * 100, 2) if busy + idle else 0.0,
            avg_idle_percentage=round(sum(idle_percentages) / len(idle_percentages), 2) if idle_percentages else 0.0,
            avg_memory_mb=round(sum(worker.memory_usage_mb for worker in workers) / len(workers), 2),
            avg_cpu_percent=round(sum(worker.cpu_usage_percent for worker in workers) / len(workers), 2),
        )
