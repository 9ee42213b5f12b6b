"""
Queue job metrics: recording, aggregation, baselines and trends over Redis.
"""
from queue_metrics.config import Settings, get_settings
from queue_metrics.container import QueueMetrics
from queue_metrics.events import (
    BaselineRecalculated,
    EventDispatcher,
    HealthScoreChanged,
    QueueDepthThresholdExceeded,
    WorkerEfficiencyChanged,
)
from queue_metrics.exceptions import (
    ConfigurationError,
    QueueMetricsError,
    ScriptError,
    StorageUnavailableError,
    best_effort,
)
from queue_metrics.schemas.worker import WorkerState

__version__ = "1.0.0"

__all__ = [
    "BaselineRecalculated",
    "ConfigurationError",
    "EventDispatcher",
    "HealthScoreChanged",
    "QueueDepthThresholdExceeded",
    "QueueMetrics",
    "QueueMetricsError",
    "ScriptError",
    "Settings",
    "StorageUnavailableError",
    "WorkerEfficiencyChanged",
    "WorkerState",
    "best_effort",
    "get_settings",
]
