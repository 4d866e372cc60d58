"""
Profiling hooks for scan and scheduling phases.

Provides simple decorators to measure latency per phase.
"""

import asyncio
import time
import functools
import logging
from typing import Callable, Any

logger = logging.getLogger(__name__)


def profile_latency(phase_name: str = "operation"):
    """
    Decorator to profile latency of a function or coroutine function.

    Usage:
        @profile_latency("scan")
        async def scan(...):
            ...

    Logs: "[LATENCY] scan: 45.3ms"
    """
    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    elapsed_ms = (time.perf_counter() - start) * 1000
                    logger.info(f"[LATENCY] {phase_name}: {elapsed_ms:.1f}ms")
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.info(f"[LATENCY] {phase_name}: {elapsed_ms:.1f}ms")
        return wrapper
    return decorator


class LatencyTracker:
    """
    Context manager to track latency for a code block.

    Usage:
        with LatencyTracker("flush") as tracker:
            ...
        tracker.elapsed_ms
    """
    def __init__(self, phase_name: str = "operation"):
        self.phase_name = phase_name
        self.start_time: float = 0.0
        self.elapsed_ms: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        logger.debug(f"[LATENCY] {self.phase_name}: {self.elapsed_ms:.1f}ms")
