import fakeredis
import pytest

from queue_metrics.config import Settings
from queue_metrics.events import (
    BaselineRecalculated,
    EventDispatcher,
    HealthScoreChanged,
    QueueDepthThresholdExceeded,
    WorkerEfficiencyChanged,
)
from queue_metrics.services.aggregator import MetricsAggregator
from queue_metrics.services.baseline_service import BaselineEngine
from queue_metrics.services.deviation_service import DeviationDetector
from queue_metrics.services.heartbeat_service import WorkerHeartbeatEngine
from queue_metrics.services.job_ledger import JobMetricsLedger
from queue_metrics.services.queue_metrics_service import QueueMetricsService
from queue_metrics.services.trend_service import TrendEngine
from queue_metrics.utils.store import TimeSeriesStore


class EventRecorder:
    def __init__(self) -> None:
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def client(server):
    return fakeredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def store(client, settings):
    return TimeSeriesStore(client, settings)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def dispatcher(recorder):
    events = EventDispatcher()
    for event_type in (BaselineRecalculated, HealthScoreChanged, QueueDepthThresholdExceeded, WorkerEfficiencyChanged):
        events.listen(event_type, recorder)
    return events


@pytest.fixture
def ledger(store):
    return JobMetricsLedger(store)


@pytest.fixture
def aggregator(ledger):
    return MetricsAggregator(ledger)


@pytest.fixture
def baselines(store, ledger, dispatcher):
    return BaselineEngine(store, ledger, dispatcher)


@pytest.fixture
def detector(ledger, baselines):
    return DeviationDetector(ledger, baselines)


@pytest.fixture
def heartbeats(store):
    return WorkerHeartbeatEngine(store)


@pytest.fixture
def trends(store, dispatcher):
    return TrendEngine(store, dispatcher)


@pytest.fixture
def queues(ledger, heartbeats, dispatcher):
    return QueueMetricsService(ledger, heartbeats, dispatcher)
