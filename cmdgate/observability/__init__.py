"""
cmdgate Observability

Structured logging setup and an in-process metrics collector.
"""

import json
import logging
import logging.handlers
import time
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Generator, List, Optional, Tuple

from ..core.config import LoggingConfig

# Record attributes copied into structured log lines when present
CONTEXT_FIELDS = ("client_id", "command", "operation", "decision", "error_id")

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Recent observations kept per histogram for percentiles
HISTOGRAM_SAMPLE_SIZE = 1024


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure root logging for cmdgate processes.

    Args:
        level: Log level name
        json_format: Emit one JSON object per line
        log_file: Optional rotating log file
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    if json_format:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def configure_from(config: LoggingConfig) -> None:
    setup_logging(config.level, config.json_format, config.log_file)


class _Histogram:
    """Running count and sum with a bounded sample window."""

    def __init__(self):
        self.count = 0
        self.total = 0.0
        self.samples: Deque[float] = deque(maxlen=HISTOGRAM_SAMPLE_SIZE)

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.samples.append(value)

    def summary(self) -> Dict[str, float]:
        if not self.count:
            return {"count": 0, "sum": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}
        ordered = sorted(self.samples)
        return {
            "count": self.count,
            "sum": self.total,
            "avg": self.total / self.count,
            "min": ordered[0],
            "max": ordered[-1],
            "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
        }


class MetricsCollector:
    """
    Counters, gauges and histograms keyed by name and labels.

    Histograms keep exact counts and sums; min, max and p95 are taken over
    the most recent HISTOGRAM_SAMPLE_SIZE observations.
    """

    def __init__(self):
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, _Histogram] = {}

    @staticmethod
    def _make_key(name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def counter_inc(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        key = self._make_key(name, labels)
        self._counters[key] = self._counters.get(key, 0) + value

    def gauge_set(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        self._gauges[self._make_key(name, labels)] = value

    def histogram_observe(
        self,
        name: str,
        value: float,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        self._histograms.setdefault(self._make_key(name, labels), _Histogram()).observe(value)

    def counter_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._make_key(name, labels), 0)

    @contextmanager
    def timer(
        self,
        name: str,
        labels: Optional[Dict[str, str]] = None,
    ) -> Generator[None, None, None]:
        """Observe the wall-clock duration of the block, in milliseconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.histogram_observe(name, (time.perf_counter() - start) * 1000, labels)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": {k: h.summary() for k, h in self._histograms.items()},
        }

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines: List[str] = []
        typed = set()

        def declare(key: str, kind: str) -> Tuple[str, str]:
            base, _, rest = key.partition("{")
            labels = "{" + rest if rest else ""
            if base not in typed:
                lines.append(f"# TYPE {base} {kind}")
                typed.add(base)
            return base, labels

        for key, value in sorted(self._counters.items()):
            base, labels = declare(key, "counter")
            lines.append(f"{base}{labels} {value}")

        for key, value in sorted(self._gauges.items()):
            base, labels = declare(key, "gauge")
            lines.append(f"{base}{labels} {value}")

        for key, histogram in sorted(self._histograms.items()):
            base, labels = declare(key, "summary")
            lines.append(f"{base}_count{labels} {histogram.count}")
            lines.append(f"{base}_sum{labels} {histogram.total}")

        return "\n".join(lines)

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()


__all__ = [
    "JSONFormatter",
    "setup_logging",
    "configure_from",
    "MetricsCollector",
    "CONTEXT_FIELDS",
]
