"""
Worker heartbeat schemas
"""
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel

from queue_metrics.utils.coerce import as_datetime, as_float, as_int, as_str


class WorkerState(str, Enum):
    """Worker states; crashed and terminated stay put until the worker registers again."""
    IDLE = "idle"
    BUSY = "busy"
    PAUSED = "paused"
    CRASHED = "crashed"
    TERMINATED = "terminated"

    @property
    def is_active(self) -> bool:
        return self in (WorkerState.IDLE, WorkerState.BUSY, WorkerState.PAUSED)


def parse_state(value: Optional[str]) -> WorkerState:
    try:
        return WorkerState(value)
    except ValueError:
        # unknown values are treated as a dead worker
        return WorkerState.CRASHED


class WorkerHeartbeat(BaseModel):
    worker_id: str
    connection: str
    queue: str
    state: WorkerState
    current_job_id: Optional[str] = None
    current_job_class: Optional[str] = None
    idle_time_seconds: float = 0.0
    busy_time_seconds: float = 0.0
    jobs_processed: int = 0
    pid: int = 0
    hostname: str = "unknown"
    memory_usage_mb: float = 0.0
    cpu_usage_percent: float = 0.0
    peak_memory_usage_mb: float = 0.0
    last_heartbeat: datetime
    last_state_change: Optional[datetime] = None

    @classmethod
    def from_hash(cls, data: Dict[str, str]) -> "WorkerHeartbeat":
        last_heartbeat = as_datetime(data.get("last_heartbeat"), field="last_heartbeat")
        return cls(
            worker_id=data.get("worker_id", ""),
            connection=data.get("connection", ""),
            queue=data.get("queue", ""),
            state=parse_state(data.get("state")),
            current_job_id=as_str(data.get("current_job_id")),
            current_job_class=as_str(data.get("current_job_class")),
            idle_time_seconds=as_float(data.get("idle_time_seconds"), field="idle_time_seconds"),
            busy_time_seconds=as_float(data.get("busy_time_seconds"), field="busy_time_seconds"),
            jobs_processed=as_int(data.get("jobs_processed"), field="jobs_processed"),
            pid=as_int(data.get("pid"), field="pid"),
            hostname=data.get("hostname") or "unknown",
            memory_usage_mb=as_float(data.get("memory_usage_mb"), field="memory_usage_mb"),
            cpu_usage_percent=as_float(data.get("cpu_usage_percent"), field="cpu_usage_percent"),
            peak_memory_usage_mb=as_float(data.get("peak_memory_usage_mb"), field="peak_memory_usage_mb"),
            last_heartbeat=last_heartbeat or datetime.fromtimestamp(0, tz=timezone.utc),
            last_state_change=as_datetime(data.get("last_state_change"), field="last_state_change"),
        )

    def seconds_since_last_heartbeat(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.last_heartbeat.timestamp())

    def is_stale(self, threshold_seconds: int = 60, now: Optional[float] = None) -> bool:
        return self.seconds_since_last_heartbeat(now) > threshold_seconds

    @property
    def utilization_percent(self) -> float:
        total = self.idle_time_seconds + self.busy_time_seconds
        return self.busy_time_seconds / total * 100 if total > 0 else 0.0


class WorkersSummary(BaseModel):
    total: int = 0
    busy: int = 0
    idle: int = 0
    paused: int = 0
    total_jobs_processed: int = 0
    avg_jobs_per_worker: float = 0.0
    efficiency: float = 0.0
    avg_idle_percentage: float = 0.0
    avg_memory_mb: float = 0.0
    avg_cpu_percent: float = 0.0
