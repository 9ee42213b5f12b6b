"""
Time series store over Redis.

Namespaced keys, MULTI/EXEC transactions, non-atomic pipelines and cached
server-side scripts. Every Redis failure is re-raised as
``StorageUnavailableError`` so callers only deal with one infrastructure error.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Set

import redis

from queue_metrics.config import Settings
from queue_metrics.exceptions import ScriptError, StorageUnavailableError

logger = logging.getLogger(__name__)

PipelineCallback = Callable[[Any], None]


class TimeSeriesStore:
    def __init__(self, client: redis.Redis, settings: Settings) -> None:
        self._client = client
        self._settings = settings
        self._prefix = settings.key_prefix
        self._scripts: Dict[str, Any] = {}

    @property
    def client(self) -> redis.Redis:
        return self._client

    @property
    def settings(self) -> Settings:
        return self._settings

    def key(self, *parts: Any) -> str:
        return ":".join([self._prefix, *(str(part) for part in parts)])

    def ttl(self, kind: str) -> int:
        return self._settings.ttl_for(kind)

    @staticmethod
    def now() -> float:
        return time.time()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            logger.warning("Redis %s failed: %s", operation, exc)
            raise StorageUnavailableError(f"Redis {operation} failed: {exc}") from exc

    def transaction(self, callback: PipelineCallback) -> List[Any]:
        """Queue commands inside MULTI/EXEC; all of them apply or none do."""
        with self._guard("transaction"):
            with self._client.pipeline(transaction=True) as pipe:
                callback(pipe)
                return pipe.execute()

    def pipeline(self, callback: PipelineCallback) -> List[Any]:
        """Batch commands in one round trip. No atomicity."""
        with self._guard("pipeline"):
            with self._client.pipeline(transaction=False) as pipe:
                callback(pipe)
                return pipe.execute()

    def eval_atomic(self, name: str, script: str, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Run a Lua script atomically, registered once and invoked through EVALSHA."""
        if name not in self._scripts:
            self._scripts[name] = self._client.register_script(script)
        try:
            return self._scripts[name](keys=list(keys), args=list(args))
        except redis.exceptions.ResponseError as exc:
            logger.warning("Lua script %s failed: %s", name, exc)
            raise ScriptError(name, str(exc)) from exc
        except redis.RedisError as exc:
            logger.warning("Lua script %s could not run: %s", name, exc)
            raise StorageUnavailableError(f"Redis eval {name} failed: {exc}") from exc

    # Read helpers

    def hash(self, key: str) -> Dict[str, str]:
        with self._guard("hgetall"):
            return self._client.hgetall(key) or {}

    def hash_field(self, key: str, field: str) -> Optional[str]:
        with self._guard("hget"):
            return self._client.hget(key, field)

    def range_by_rank(self, key: str, start: int, stop: int) -> List[str]:
        with self._guard("zrange"):
            return self._client.zrange(key, start, stop)

    def range_by_score(self, key: str, min_score: Any, max_score: Any) -> List[str]:
        with self._guard("zrangebyscore"):
            return self._client.zrangebyscore(key, min_score, max_score)

    def members(self, key: str) -> Set[str]:
        with self._guard("smembers"):
            return set(self._client.smembers(key) or ())

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._guard("delete"):
            return int(self._client.delete(*keys))
