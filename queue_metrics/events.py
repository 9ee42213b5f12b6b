"""
Notifications raised by the engines.

Consumers (autoscalers, alerting) register handlers on an ``EventDispatcher``
and the engines dispatch to it. A failing handler is logged and skipped.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, DefaultDict, List, Optional, Type

from pydantic import BaseModel, Field

from queue_metrics.schemas.baseline import BaselineData

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricsEvent(BaseModel):
    occurred_at: datetime = Field(default_factory=_utcnow)


class BaselineRecalculated(MetricsEvent):
    connection: str
    queue: str
    baseline: BaselineData
    significant_change: bool


class QueueDepthThresholdExceeded(MetricsEvent):
    connection: str
    queue: str
    depth: int
    threshold: int
    percentage_over: float


class WorkerEfficiencyChanged(MetricsEvent):
    current_efficiency: float
    previous_efficiency: float
    change_percentage: float
    active_workers: int
    idle_workers: int

    @property
    def scaling_recommendation(self) -> str:
        if self.current_efficiency > 90:
            return "scale_up"
        if self.current_efficiency < 50 and self.idle_workers > 1:
            return "scale_down"
        return "maintain"


class HealthScoreChanged(MetricsEvent):
    connection: str
    queue: str
    current_score: float
    previous_score: float
    status: str

    @property
    def change(self) -> float:
        return self.current_score - self.previous_score

    @property
    def severity(self) -> str:
        delta = abs(self.change)
        if delta >= 30:
            return "critical"
        if delta >= 20:
            return "warning"
        if delta >= 10:
            return "info"
        return "normal"


Handler = Callable[[MetricsEvent], None]


class EventDispatcher:
    """In-process fan-out of metrics events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[MetricsEvent], List[Handler]] = defaultdict(list)

    def listen(self, event_type: Type[MetricsEvent], handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def has_listeners(self, event_type: Type[MetricsEvent]) -> bool:
        return bool(self._handlers.get(event_type))

    def dispatch(self, event: MetricsEvent) -> int:
        """Deliver ``event``; returns how many handlers ran without error."""
        delivered = 0
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(f"事件处理失败 {type(event).__name__}: {e}", exc_info=True)
        return delivered


def default_dispatcher(dispatcher: Optional[EventDispatcher]) -> EventDispatcher:
    return dispatcher if dispatcher is not None else EventDispatcher()
