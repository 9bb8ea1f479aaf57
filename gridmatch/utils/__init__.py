"""
Utility modules for the energy marketplace.

This module provides logging and performance monitoring.
"""

from .logger import setup_logging, get_logger
from .performance import PerformanceMonitor, measure_latency

__all__ = [
    "setup_logging",
    "get_logger",
    "PerformanceMonitor",
    "measure_latency",
]
