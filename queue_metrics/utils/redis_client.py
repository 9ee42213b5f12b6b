"""
Redis 客户端

Synchronous client shared by recorders running inside worker processes and
by the periodic recalculation jobs.
"""
import redis

from queue_metrics.config import Settings


def create_redis_client(settings: Settings) -> redis.Redis:
    # 连接池与超时配置，防止高并发下连接池耗尽
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
        socket_timeout=5,
        socket_connect_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )
