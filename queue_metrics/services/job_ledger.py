"""
Job metrics ledger

Records job lifecycle events (start, completion, failure, retry, timeout) as
cumulative counters plus bounded, job-id-tagged sample series. Every multi-key
mutation runs in one MULTI/EXEC transaction.
"""
import json
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Dict, List, Optional, Set, Tuple

from queue_metrics.schemas.job import JobMetricsCounter
from queue_metrics.utils import lua_scripts
from queue_metrics.utils.coerce import as_float, as_int, split_tagged, truncate_text
from queue_metrics.utils.store import TimeSeriesStore

logger = logging.getLogger(__name__)

SERIES_DURATIONS = "durations"
SERIES_MEMORY = "memory"
SERIES_CPU = "cpu"


def when_enabled(method):
    """Skip recording entirely when metrics are switched off."""

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        if not self.settings.enabled:
            return None
        return method(self, *args, **kwargs)

    return wrapper


@dataclass(frozen=True)
class JobKey:
    connection: str
    queue: str
    job_class: str

    @classmethod
    def parse(cls, member: str) -> Optional["JobKey"]:
        parts = member.split(":", 2)
        if len(parts) != 3:
            logger.warning("Malformed job discovery entry %r", member)
            return None
        return cls(*parts)

    def __str__(self) -> str:
        return f"{self.connection}:{self.queue}:{self.job_class}"


class JobMetricsLedger:
    def __init__(self, store: TimeSeriesStore) -> None:
        self.store = store
        self.settings = store.settings

    # Keys

    def counter_key(self, job_class: str, connection: str, queue: str) -> str:
        return self.store.key("jobs", connection, queue, job_class)

    def series_key(self, series: str, job_class: str, connection: str, queue: str) -> str:
        return self.store.key(series, connection, queue, job_class)

    def _series_keys(self, job_class: str, connection: str, queue: str) -> List[str]:
        return [
            self.series_key(series, job_class, connection, queue)
            for series in (SERIES_DURATIONS, SERIES_MEMORY, SERIES_CPU)
        ]

    def _retries_key(self, job_class: str, connection: str, queue: str) -> str:
        return self.store.key("retries", connection, queue, job_class)

    def _marker_key(self, job_id: str) -> str:
        return self.store.key("job", job_id)

    def _queues_discovery_key(self) -> str:
        return self.store.key("discovery", "queues")

    def _jobs_discovery_key(self) -> str:
        return self.store.key("discovery", "jobs")

    def _server_key(self, hostname: str, job_class: str, connection: str, queue: str) -> str:
        return self.store.key("server_jobs", hostname, connection, queue, job_class)

    def _server_discovery_key(self, hostname: str) -> str:
        return self.store.key("discovery", "server_jobs", hostname)

    # Recording

    @when_enabled
    def record_start(self, job_id: str, job_class: str, connection: str, queue: str,
                     at: Optional[float] = None) -> None:
        at = self.store.now() if at is None else at
        counter_key = self.counter_key(job_class, connection, queue)
        marker_key = self._marker_key(job_id)
        raw_ttl = self.store.ttl("raw")
        aggregated_ttl = self.store.ttl("aggregated")

        def queue_commands(pipe) -> None:
            pipe.sadd(self._queues_discovery_key(), f"{connection}:{queue}")
            pipe.expire(self._queues_discovery_key(), aggregated_ttl)
            pipe.sadd(self._jobs_discovery_key(), f"{connection}:{queue}:{job_class}")
            pipe.expire(self._jobs_discovery_key(), aggregated_ttl)
            pipe.hincrby(counter_key, "total_queued", 1)
            pipe.hset(marker_key, mapping={
                "job_class": job_class,
                "connection": connection,
                "queue": queue,
                "started_at": str(at),
            })
            pipe.expire(marker_key, raw_ttl)
            pipe.expire(counter_key, aggregated_ttl)

        self.store.transaction(queue_commands)

    @when_enabled
    def record_completion(self, job_id: str, job_class: str, connection: str, queue: str,
                          duration_ms: float, memory_mb: float, cpu_time_ms: float,
                          at: Optional[float] = None, hostname: Optional[str] = None) -> None:
        at = self.store.now() if at is None else at
        counter_key = self.counter_key(job_class, connection, queue)
        durations_key, memory_key, cpu_key = self._series_keys(job_class, connection, queue)
        raw_ttl = self.store.ttl("raw")
        aggregated_ttl = self.store.ttl("aggregated")
        cap = self.settings.max_samples_per_series

        def queue_commands(pipe) -> None:
            pipe.hincrby(counter_key, "total_processed", 1)
            pipe.hincrbyfloat(counter_key, "total_duration_ms", duration_ms)
            pipe.hincrbyfloat(counter_key, "total_memory_mb", memory_mb)
            pipe.hincrbyfloat(counter_key, "total_cpu_time_ms", cpu_time_ms)
            pipe.hset(counter_key, "last_processed_at", str(at))
            pipe.expire(counter_key, aggregated_ttl)

            # job id prefix keeps members unique when values collide
            for series_key, value in ((durations_key, duration_ms), (memory_key, memory_mb), (cpu_key, cpu_time_ms)):
                pipe.zadd(series_key, {f"{job_id}:{value}": at})
                pipe.expire(series_key, raw_ttl)
                pipe.zremrangebyrank(series_key, 0, -(cap + 1))

            pipe.delete(self._marker_key(job_id))

        self.store.transaction(queue_commands)

        if hostname:
            self._record_server_completion(hostname, job_class, connection, queue, duration_ms, at)

    def _record_server_completion(self, hostname: str, job_class: str, connection: str, queue: str,
                                  duration_ms: float, at: float) -> None:
        server_key = self._server_key(hostname, job_class, connection, queue)
        discovery_key = self._server_discovery_key(hostname)
        ttl = self.store.ttl("aggregated")

        def queue_commands(pipe) -> None:
            pipe.hincrby(server_key, "total_processed", 1)
            pipe.hincrbyfloat(server_key, "total_duration_ms", duration_ms)
            pipe.hset(server_key, "last_updated_at", str(at))
            pipe.expire(server_key, ttl)
            pipe.sadd(discovery_key, f"{connection}:{queue}:{job_class}")
            pipe.expire(discovery_key, ttl)

        self.store.transaction(queue_commands)

    @when_enabled
    def record_failure(self, job_id: str, job_class: str, connection: str, queue: str,
                       exception: str, at: Optional[float] = None, hostname: Optional[str] = None) -> None:
        at = self.store.now() if at is None else at
        counter_key = self.counter_key(job_class, connection, queue)
        aggregated_ttl = self.store.ttl("aggregated")
        message = truncate_text(exception or "", self.settings.max_exception_length)

        def queue_commands(pipe) -> None:
            pipe.hincrby(counter_key, "total_failed", 1)
            pipe.hset(counter_key, mapping={
                "last_failed_at": str(at),
                "last_exception": message,
            })
            pipe.expire(counter_key, aggregated_ttl)
            pipe.delete(self._marker_key(job_id))

        self.store.transaction(queue_commands)

        if hostname:
            server_key = self._server_key(hostname, job_class, connection, queue)
            discovery_key = self._server_discovery_key(hostname)

            def queue_server_commands(pipe) -> None:
                pipe.hincrby(server_key, "total_failed", 1)
                pipe.hset(server_key, "last_updated_at", str(at))
                pipe.expire(server_key, aggregated_ttl)
                pipe.sadd(discovery_key, f"{connection}:{queue}:{job_class}")
                pipe.expire(discovery_key, aggregated_ttl)

            self.store.transaction(queue_server_commands)

    @when_enabled
    def record_retry_requested(self, job_id: str, job_class: str, connection: str, queue: str,
                               attempt: int, at: Optional[float] = None) -> None:
        at = self.store.now() if at is None else at
        counter_key = self.counter_key(job_class, connection, queue)
        retries_key = self._retries_key(job_class, connection, queue)
        raw_ttl = self.store.ttl("raw")
        aggregated_ttl = self.store.ttl("aggregated")
        cap = self.settings.max_samples_per_series
        event = json.dumps({"job_id": job_id, "attempt": attempt, "timestamp": at})

        def queue_commands(pipe) -> None:
            pipe.hincrby(counter_key, "total_retries", 1)
            pipe.expire(counter_key, aggregated_ttl)
            pipe.zadd(retries_key, {event: at})
            pipe.expire(retries_key, raw_ttl)
            pipe.zremrangebyrank(retries_key, 0, -(cap + 1))

        self.store.transaction(queue_commands)

    @when_enabled
    def record_timeout(self, job_id: str, job_class: str, connection: str, queue: str,
                       at: Optional[float] = None) -> None:
        at = self.store.now() if at is None else at
        counter_key = self.counter_key(job_class, connection, queue)
        aggregated_ttl = self.store.ttl("aggregated")

        def queue_commands(pipe) -> None:
            pipe.hincrby(counter_key, "total_timeouts", 1)
            pipe.hset(counter_key, "last_timeout_at", str(at))
            pipe.expire(counter_key, aggregated_ttl)
            pipe.delete(self._marker_key(job_id))

        self.store.transaction(queue_commands)

    # Reads

    def get_counters(self, job_class: str, connection: str, queue: str) -> JobMetricsCounter:
        return JobMetricsCounter.from_hash(self.store.hash(self.counter_key(job_class, connection, queue)))

    def _samples(self, series: str, job_class: str, connection: str, queue: str, limit: int) -> List[float]:
        if limit < 1:
            return []
        # ascending by score, so the last ``limit`` members are the newest
        members = self.store.range_by_rank(self.series_key(series, job_class, connection, queue), -limit, -1)
        return [split_tagged(member) for member in members]

    def get_duration_samples(self, job_class: str, connection: str, queue: str, limit: int = 1000) -> List[float]:
        return self._samples(SERIES_DURATIONS, job_class, connection, queue, limit)

    def get_memory_samples(self, job_class: str, connection: str, queue: str, limit: int = 1000) -> List[float]:
        return self._samples(SERIES_MEMORY, job_class, connection, queue, limit)

    def get_cpu_time_samples(self, job_class: str, connection: str, queue: str, limit: int = 1000) -> List[float]:
        return self._samples(SERIES_CPU, job_class, connection, queue, limit)

    def get_throughput(self, job_class: str, connection: str, queue: str, window_seconds: int) -> int:
        """Completions within the last ``window_seconds``, cut off on the server clock."""
        result = self.store.eval_atomic(
            "throughput_in_window",
            lua_scripts.THROUGHPUT_IN_WINDOW,
            keys=[self.series_key(SERIES_DURATIONS, job_class, connection, queue)],
            args=[window_seconds],
        )
        return as_int(result, field="throughput")

    def get_average_duration_in_window(self, job_class: str, connection: str, queue: str,
                                       window_seconds: int) -> Tuple[int, float]:
        """``(count, average duration ms)`` over the last ``window_seconds``."""
        result = self.store.eval_atomic(
            "average_in_window",
            lua_scripts.AVERAGE_IN_WINDOW,
            keys=[self.series_key(SERIES_DURATIONS, job_class, connection, queue)],
            args=[window_seconds],
        )
        if not result or len(result) < 2:
            return 0, 0.0
        return as_int(result[0], field="count"), as_float(result[1], field="average")

    # Discovery

    def list_jobs(self) -> List[JobKey]:
        keys = [JobKey.parse(member) for member in self.store.members(self._jobs_discovery_key())]
        return sorted((key for key in keys if key is not None), key=str)

    def list_queues(self) -> List[Tuple[str, str]]:
        queues: Set[Tuple[str, str]] = set()
        for member in self.store.members(self._queues_discovery_key()):
            connection, sep, queue = member.partition(":")
            if not sep:
                logger.warning("Malformed queue discovery entry %r", member)
                continue
            queues.add((connection, queue))
        return sorted(queues)

    def list_job_classes(self, connection: str, queue: str) -> List[str]:
        return [job.job_class for job in self.list_jobs() if job.connection == connection and job.queue == queue]

    def get_hostname_job_metrics(self, hostname: str) -> Dict[str, Dict[str, float]]:
        """Per-job rollup of everything ``hostname`` processed, keyed ``connection:queue:job_class``."""
        job_keys = [JobKey.parse(member) for member in self.store.members(self._server_discovery_key(hostname))]
        job_keys = sorted((key for key in job_keys if key is not None), key=str)
        if not job_keys:
            return {}

        def queue_commands(pipe) -> None:
            for key in job_keys:
                pipe.hgetall(self._server_key(hostname, key.job_class, key.connection, key.queue))

        hashes = self.store.pipeline(queue_commands)

        metrics: Dict[str, Dict[str, float]] = {}
        for key, data in zip(job_keys, hashes):
            if not data:
                continue
            processed = as_int(data.get("total_processed"), field="total_processed")
            failed = as_int(data.get("total_failed"), field="total_failed")
            total_duration = as_float(data.get("total_duration_ms"), field="total_duration_ms")
            attempts = processed + failed
            metrics[str(key)] = {
                "total_processed": processed,
                "total_failed": failed,
                "failure_rate": round(failed / attempts * 100, 2) if attempts else 0.0,
                "avg_duration_ms": round(total_duration / processed, 2) if processed else 0.0,
            }
        return metrics

    def cleanup(self, older_than_seconds: int, now: Optional[float] = None) -> int:
        """Drop job classes not processed within ``older_than_seconds``."""
        now = self.store.now() if now is None else now
        cutoff = now - older_than_seconds
        removed = 0

        for job in self.list_jobs():
            counter_key = self.counter_key(job.job_class, job.connection, job.queue)
            last_processed = self.store.hash_field(counter_key, "last_processed_at")
            # never-completed entries age out with their TTL instead
            if last_processed is None or as_float(last_processed, field="last_processed_at") >= cutoff:
                continue

            keys = [counter_key, self._retries_key(job.job_class, job.connection, job.queue)]
            keys.extend(self._series_keys(job.job_class, job.connection, job.queue))

            def queue_commands(pipe, keys=keys, member=str(job)) -> None:
                pipe.delete(*keys)
                pipe.srem(self._jobs_discovery_key(), member)

            self.store.transaction(queue_commands)
            removed += 1

        if removed:
            logger.info("Removed %d stale job metric entries", removed)
        return removed
