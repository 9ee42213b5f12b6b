import os

import pytest

from queue_metrics.schemas.worker import WorkerState
from queue_metrics.services import heartbeat_service
from queue_metrics.utils.process import ProcessSnapshot, get_process_snapshot


def beat(heartbeats, worker_id, state, at, job_id=None, memory=64.0, queue="default"):
    return heartbeats.record_heartbeat(
        worker_id, "redis", queue, state,
        current_job_id=job_id,
        current_job_class="app.jobs.A" if job_id else None,
        pid=4242,
        hostname="worker-host",
        memory_usage_mb=memory,
        cpu_usage_percent=12.5,
        at=at,
    )


def test_elapsed_time_goes_to_previous_state(heartbeats):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    beat(heartbeats, "w1", WorkerState.IDLE, at=1010.0)
    beat(heartbeats, "w1", WorkerState.BUSY, at=1025.0, job_id="job-1")

    worker = heartbeats.get_worker("w1")
    assert worker.idle_time_seconds == pytest.approx(25.0)
    assert worker.busy_time_seconds == 0.0
    assert worker.state == WorkerState.BUSY
    assert worker.current_job_id == "job-1"

    beat(heartbeats, "w1", WorkerState.IDLE, at=1040.0)
    worker = heartbeats.get_worker("w1")
    assert worker.busy_time_seconds == pytest.approx(15.0)
    assert worker.idle_time_seconds + worker.busy_time_seconds == pytest.approx(40.0)
    assert worker.utilization_percent == pytest.approx(37.5)


def test_jobs_processed_counts_busy_to_idle(heartbeats):
    beat(heartbeats, "w1", WorkerState.BUSY, at=1000.0, job_id="X")
    beat(heartbeats, "w1", WorkerState.BUSY, at=1005.0, job_id="X")
    assert heartbeats.get_worker("w1").jobs_processed == 0

    assert beat(heartbeats, "w1", WorkerState.IDLE, at=1010.0) == 1
    assert beat(heartbeats, "w1", WorkerState.IDLE, at=1015.0) == 1


def test_state_change_time_only_moves_on_change(heartbeats):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    beat(heartbeats, "w1", WorkerState.IDLE, at=1030.0)
    assert heartbeats.get_worker("w1").last_state_change.timestamp() == 1000.0

    beat(heartbeats, "w1", WorkerState.BUSY, at=1045.0, job_id="X")
    assert heartbeats.get_worker("w1").last_state_change.timestamp() == 1045.0


def test_clock_going_backwards_adds_no_time(heartbeats):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    beat(heartbeats, "w1", WorkerState.IDLE, at=990.0)

    assert heartbeats.get_worker("w1").idle_time_seconds == 0.0


def test_peak_memory_is_tracked(heartbeats):
    beat(heartbeats, "w1", WorkerState.BUSY, at=1000.0, job_id="X", memory=128.0)
    beat(heartbeats, "w1", WorkerState.BUSY, at=1005.0, job_id="X", memory=96.0)

    worker = heartbeats.get_worker("w1")
    assert worker.memory_usage_mb == 96.0
    assert worker.peak_memory_usage_mb == 128.0
    assert worker.pid == 4242
    assert worker.hostname == "worker-host"


def test_stale_busy_worker_is_marked_crashed(heartbeats):
    beat(heartbeats, "stale", WorkerState.BUSY, at=1000.0, job_id="X")
    beat(heartbeats, "fresh", WorkerState.BUSY, at=1050.0, job_id="Y")

    assert heartbeats.detect_stale_workers(60, now=1061.0) == 1
    assert heartbeats.get_worker("stale").state == WorkerState.CRASHED
    assert heartbeats.get_worker("fresh").state == WorkerState.BUSY

    # already crashed workers are not counted again
    assert heartbeats.detect_stale_workers(60, now=1062.0) == 0


def test_transition_unknown_worker_is_noop(heartbeats, client):
    assert heartbeats.transition_state("ghost", WorkerState.PAUSED) is False
    assert not client.exists(heartbeats.worker_key("ghost"))


def test_transition_overwrites_state_without_accounting(heartbeats):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    assert heartbeats.transition_state("w1", WorkerState.PAUSED, at=1500.0)

    worker = heartbeats.get_worker("w1")
    assert worker.state == WorkerState.PAUSED
    assert worker.idle_time_seconds == 0.0
    assert worker.last_state_change.timestamp() == 1500.0


def test_cleanup_removes_old_entries(heartbeats, client):
    beat(heartbeats, "old", WorkerState.IDLE, at=1000.0)
    beat(heartbeats, "new", WorkerState.IDLE, at=5000.0)

    assert heartbeats.cleanup(3600, now=5000.0) == 1
    assert heartbeats.get_worker("old") is None
    assert client.zrange(heartbeats.index_key(), 0, -1) == ["new"]
    assert heartbeats.cleanup(3600, now=5000.0) == 0


def test_active_workers_and_summary(heartbeats, store):
    now = store.now()
    beat(heartbeats, "busy", WorkerState.BUSY, at=now - 20, job_id="X")
    beat(heartbeats, "busy", WorkerState.BUSY, at=now - 10, job_id="X")
    beat(heartbeats, "idle", WorkerState.IDLE, at=now - 10, queue="emails")
    beat(heartbeats, "idle", WorkerState.IDLE, at=now - 5, queue="emails")
    beat(heartbeats, "gone", WorkerState.BUSY, at=now - 500, job_id="Z")

    active = heartbeats.get_active_workers(now=now)
    assert sorted(worker.worker_id for worker in active) == ["busy", "idle"]
    assert [w.worker_id for w in heartbeats.get_active_workers(queue="emails", now=now)] == ["idle"]
    assert [w.worker_id for w in heartbeats.get_workers_by_state(WorkerState.BUSY)] == ["gone", "busy"]

    summary = heartbeats.summary(now=now)
    assert summary.total == 2
    assert summary.busy == 1
    assert summary.idle == 1
    assert summary.efficiency == 50.0
    assert summary.avg_idle_percentage == 50.0


def test_remove_worker(heartbeats, client):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    heartbeats.remove_worker("w1")

    assert heartbeats.get_worker("w1") is None
    assert client.zcard(heartbeats.index_key()) == 0


def test_staleness_helpers(heartbeats):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    worker = heartbeats.get_worker("w1")

    assert worker.seconds_since_last_heartbeat(now=1030.0) == 30.0
    assert not worker.is_stale(60, now=1060.0)
    assert worker.is_stale(60, now=1061.0)


def test_beat_uses_process_snapshot(heartbeats, monkeypatch):
    monkeypatch.setattr(
        heartbeat_service,
        "get_process_snapshot",
        lambda: ProcessSnapshot(pid=77, hostname="box", memory_usage_mb=256.0, cpu_usage_percent=3.0),
    )
    heartbeats.beat("w1", "redis", "default", WorkerState.IDLE)

    worker = heartbeats.get_worker("w1")
    assert worker.pid == 77
    assert worker.hostname == "box"
    assert worker.memory_usage_mb == 256.0


def test_process_snapshot_describes_current_process():
    snapshot = get_process_snapshot()
    assert snapshot.pid == os.getpid()
    assert snapshot.memory_usage_mb > 0
    assert snapshot.hostname


def test_unknown_state_reads_as_crashed(heartbeats, client):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    client.hset(heartbeats.worker_key("w1"), "state", "zombie")

    assert heartbeats.get_worker("w1").state == WorkerState.CRASHED
    assert not WorkerState.CRASHED.is_active
    assert WorkerState.PAUSED.is_active


def test_transition_after_concurrent_removal_leaves_no_hash(heartbeats, store, client, monkeypatch):
    beat(heartbeats, "w1", WorkerState.IDLE, at=1000.0)
    eval_atomic = store.eval_atomic

    def removed_first(*args, **kwargs):
        heartbeats.remove_worker("w1")
        return eval_atomic(*args, **kwargs)

    monkeypatch.setattr(store, "eval_atomic", removed_first)

    assert heartbeats.transition_state("w1", WorkerState.PAUSED, at=1500.0) is False
    assert client.hgetall(heartbeats.worker_key("w1")) == {}


def test_heartbeat_during_sweep_keeps_worker_alive(heartbeats, store, monkeypatch):
    beat(heartbeats, "w1", WorkerState.BUSY, at=1000.0, job_id="X")
    range_by_score = store.range_by_score

    def heartbeat_after_query(*args, **kwargs):
        stale_ids = range_by_score(*args, **kwargs)
        beat(heartbeats, "w1", WorkerState.BUSY, at=1100.0, job_id="X")
        return stale_ids

    monkeypatch.setattr(store, "range_by_score", heartbeat_after_query)

    assert heartbeats.detect_stale_workers(60, now=1100.0) == 0
    worker = heartbeats.get_worker("w1")
    assert worker.state == WorkerState.BUSY
    assert worker.last_heartbeat.timestamp() == 1100.0
