"""
Server identity and system load snapshot for health reporting
"""

import os
import socket
import time

import psutil

PROCESS_START = time.time()


def server_identity(region: str = 'primary') -> dict:
    return {
        'name': socket.gethostname(),
        'region': region,
        'pid': os.getpid(),
    }


def system_load() -> dict:
    """CPU count, 1-minute load average and free memory percentage"""
    memory = psutil.virtual_memory()
    return {
        'cpuCount': psutil.cpu_count() or 1,
        'avgLoad': round(psutil.getloadavg()[0], 2),
        'memoryFree': round(memory.available / memory.total * 100, 2),
    }


def uptime() -> float:
    return round(time.time() - PROCESS_START, 1)
