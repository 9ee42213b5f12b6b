"""
Wires the engines around one store and one event dispatcher.
"""
from typing import Optional

import redis

from queue_metrics.config import Settings, get_settings
from queue_metrics.events import EventDispatcher
from queue_metrics.services.aggregator import MetricsAggregator
from queue_metrics.services.baseline_service import BaselineEngine
from queue_metrics.services.deviation_service import DeviationDetector
from queue_metrics.services.heartbeat_service import WorkerHeartbeatEngine
from queue_metrics.services.job_ledger import JobMetricsLedger
from queue_metrics.services.queue_metrics_service import QueueMetricsService
from queue_metrics.services.trend_service import TrendEngine
from queue_metrics.utils.redis_client import create_redis_client
from queue_metrics.utils.store import TimeSeriesStore


class QueueMetrics:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[redis.Redis] = None,
                 dispatcher: Optional[EventDispatcher] = None) -> None:
        self.settings = settings or get_settings()
        self.settings.validate_settings()
        self.events = dispatcher or EventDispatcher()
        self.store = TimeSeriesStore(client or create_redis_client(self.settings), self.settings)

        self.ledger = JobMetricsLedger(self.store)
        self.aggregator = MetricsAggregator(self.ledger)
        self.baselines = BaselineEngine(self.store, self.ledger, self.events)
        self.deviations = DeviationDetector(self.ledger, self.baselines)
        self.trends = TrendEngine(self.store, self.events)
        self.workers = WorkerHeartbeatEngine(self.store)
        self.queues = QueueMetricsService(self.ledger, self.workers, self.events)

    def record_trends(self, connection: str, queue: str, depth: int) -> None:
        """Scheduled snapshot: depth, last-minute throughput and fleet efficiency."""
        self.trends.record_queue_depth(connection, queue, depth)
        throughput = sum(
            self.ledger.get_throughput(job_class, connection, queue, 60)
            for job_class in self.ledger.list_job_classes(connection, queue)
        )
        self.trends.record_throughput(connection, queue, throughput)
        self.trends.record_worker_efficiency(self.workers.get_all_workers())
