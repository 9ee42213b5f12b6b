"""
当前进程资源快照
"""
import logging
import os
import socket
from dataclasses import dataclass

import psutil

logger = logging.getLogger(__name__)


@dataclass
class ProcessSnapshot:
    """进程资源统计"""
    pid: int
    hostname: str
    memory_usage_mb: float
    cpu_usage_percent: float


def get_process_snapshot() -> ProcessSnapshot:
    """获取当前进程的 pid、主机名、内存与 CPU 使用率"""
    pid = os.getpid()
    hostname = socket.gethostname()
    try:
        process = psutil.Process(pid)
        memory_mb = process.memory_info().rss / (1024 ** 2)
        # 非阻塞采样，首次调用返回 0.0
        cpu_percent = process.cpu_percent(interval=None)
    except psutil.Error as e:
        logger.warning(f"获取进程资源信息失败: {e}")
        memory_mb = 0.0
        cpu_percent = 0.0

    return ProcessSnapshot(
        pid=pid,
        hostname=hostname,
        memory_usage_mb=round(memory_mb, 2),
        cpu_usage_percent=round(cpu_percent, 2),
    )
