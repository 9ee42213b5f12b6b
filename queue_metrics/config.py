"""
配置管理模块

Queue metrics settings, loaded from the environment (prefix ``QUEUE_METRICS_``)
and validated once at startup.
"""
import logging
from typing import List
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

from queue_metrics.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """应用配置"""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="QUEUE_METRICS_",
        extra="ignore",
    )
    enabled: bool = True

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "queue_metrics"
    log_level: str = "INFO"

    # TTL（秒）
    ttl_raw: int = 3600                # 1 hour
    ttl_aggregated: int = 604800       # 7 days
    ttl_baseline: int = 2592000        # 30 days

    # Sampling
    max_samples_per_series: int = 10000
    percentile_samples: int = 1000
    baseline_samples: int = 100
    max_exception_length: int = 1000

    # Windows（秒）
    windows_short: List[int] = [60, 300, 900]
    windows_medium: List[int] = [3600]
    windows_long: List[int] = [86400]

    # Baseline
    baseline_sliding_window_days: int = 7
    baseline_decay_factor: float = 0.1
    baseline_target_sample_size: int = 200
    baseline_significant_change_ratio: float = 0.2

    # Deviation
    deviation_enabled: bool = True
    deviation_threshold: float = 2.0
    deviation_trigger_interval: int = 5
    deviation_recent_samples: int = 10

    # Recalculation intervals（分钟）
    interval_no_baseline: int = 1
    interval_low_confidence: int = 5
    interval_medium_confidence: int = 10
    interval_high_confidence: int = 30
    interval_very_high_confidence: int = 60

    # Workers
    stale_threshold_seconds: int = 60

    # Trends
    trend_retention_seconds: int = 86400
    trend_key_ttl: int = 86400 * 2
    efficiency_retention_seconds: int = 86400 * 7
    efficiency_key_ttl: int = 86400 * 8

    # Notification thresholds
    queue_depth_threshold: int = 100
    efficiency_change_threshold: float = 10.0   # percent
    health_score_change_threshold: float = 15.0  # points

    def windows(self) -> List[int]:
        """Short, medium and long windows in one list."""
        return [*self.windows_short, *self.windows_medium, *self.windows_long]

    def ttl_for(self, kind: str) -> int:
        ttls = {
            "raw": self.ttl_raw,
            "aggregated": self.ttl_aggregated,
            "baseline": self.ttl_baseline,
        }
        if kind not in ttls:
            raise ConfigurationError(f"Unknown TTL kind: {kind}")
        return ttls[kind]

    def validate_settings(self) -> None:
        """
        校验配置，所有问题一次性报告
        """
        problems: List[str] = []

        if not self.key_prefix.strip():
            problems.append("KEY_PREFIX must be a non-empty string")
        for name in ("ttl_raw", "ttl_aggregated", "ttl_baseline", "trend_key_ttl", "efficiency_key_ttl"):
            if getattr(self, name) <= 0:
                problems.append(f"{name.upper()} must be positive")
        for name in ("max_samples_per_series", "percentile_samples", "baseline_samples", "deviation_recent_samples"):
            if getattr(self, name) < 1:
                problems.append(f"{name.upper()} must be at least 1")
        if self.baseline_sliding_window_days < 1:
            problems.append("BASELINE_SLIDING_WINDOW_DAYS must be at least 1 day")
        if not 0 < self.baseline_decay_factor <= 1:
            problems.append("BASELINE_DECAY_FACTOR must be in (0, 1]")
        if self.baseline_target_sample_size < 1:
            problems.append("BASELINE_TARGET_SAMPLE_SIZE must be at least 1")
        if self.deviation_threshold <= 0:
            problems.append("DEVIATION_THRESHOLD must be positive")
        if self.stale_threshold_seconds < 1:
            problems.append("STALE_THRESHOLD_SECONDS must be at least 1 second")
        if any(window <= 0 for window in self.windows()):
            problems.append("WINDOWS_* entries must be positive")

        if problems:
            raise ConfigurationError("Invalid queue metrics configuration: " + "; ".join(problems))


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    settings = Settings()
    settings.validate_settings()
    return settings
