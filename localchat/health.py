"""
Process health reporting around model loads.

Model weights can take gigabytes of memory; resident memory is logged before
and after an engine is built so the cost of each backend is visible.
"""

import logging
import threading
from typing import Dict

import psutil

logger = logging.getLogger(__name__)


def get_current_metrics() -> Dict:
    """
    Get current process metrics.

    Returns:
        Dictionary with memory and thread count, empty on failure
    """
    try:
        memory_info = psutil.Process().memory_info()
        return {
            "memory_mb": round(memory_info.rss / (1024 * 1024), 2),
            "thread_count": threading.active_count(),
        }
    except Exception as e:
        logger.error(f"Error collecting metrics: {e}")
        return {}


def log_memory_usage(label: str) -> Dict:
    """Log resident memory with a short label and return the metrics."""
    metrics = get_current_metrics()
    if metrics:
        logger.info(
            f"Memory usage {label}: {metrics['memory_mb']:.1f}MB "
            f"({metrics['thread_count']} threads)"
        )
    return metrics
