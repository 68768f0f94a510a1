"""Per-stage timing for scan passes."""

import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class Profiler:
    """Singleton collecting stage durations; a no-op until enabled."""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super(Profiler, cls).__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self.enabled = False
        self.output_file: Optional[str] = None
        self.metrics: Dict[str, List[float]] = defaultdict(list)
        self.start_time: Optional[float] = None
        self._initialized = True

    def enable(self, output_file: Optional[str] = None) -> None:
        self.enabled = True
        self.output_file = output_file
        self.start_time = time.monotonic()
        if output_file:
            logger.info(f"Profiling enabled. Output will be written to {output_file}")

    def disable(self) -> None:
        self.enabled = False

    def reset(self) -> None:
        with self._lock:
            self.metrics.clear()
        self.start_time = time.monotonic()

    @contextmanager
    def timer(self, key: str) -> Iterator[None]:
        """Record how long the wrapped block takes under key."""
        if not self.enabled:
            yield
            return
        start = time.monotonic()
        try:
            yield
        finally:
            self.add_metric(key, time.monotonic() - start)

    def add_metric(self, key: str, value: float) -> None:
        if not self.enabled:
            return
        with self._lock:
            self.metrics[key].append(value)

    def summary(self) -> Dict[str, Any]:
        elapsed = time.monotonic() - self.start_time if self.start_time else 0.0
        stages = {}
        with self._lock:
            for key, values in self.metrics.items():
                if not values:
                    continue
                stages[key] = {
                    "count": len(values),
                    "total": sum(values),
                    "avg": sum(values) / len(values),
                    "min": min(values),
                    "max": max(values),
                }
        return {"total_duration": elapsed, "stages": stages}

    def save_results(self) -> None:
        """Write the summary as JSON to the configured output file."""
        if not self.enabled or not self.output_file:
            return
        try:
            with open(self.output_file, 'w') as f:
                json.dump(self.summary(), f, indent=2)
            logger.info(f"Profiling results saved to {self.output_file}")
        except OSError as e:
            logger.error(f"Failed to save profiling results: {e}")


# Global instance
profiler = Profiler()
