"""
Engine Metrics: In-Process Counters With Prometheus Export

What gets measured (one EngineMetrics per BucketClient):

    cloudcore_operations_total{operation,outcome}   engine calls, ok / error
    cloudcore_retries_total{operation}              store calls retried
    cloudcore_bytes_total{direction}                upload / download bytes
    cloudcore_operation_seconds{operation}          engine call latency
    cloudcore_inflight_permits{category}            rate limiter permits held

Series are keyed by the tuple of label values in declaration order;
labels a caller leaves out are recorded as "". Reads and writes take
a per-metric lock so the registry can be scraped from another thread
while the event loop records.
"""

from __future__ import annotations

import math
import threading
from typing import Any, Iterator, Optional, Sequence

LabelKey = tuple[str, ...]

LATENCY_BUCKETS: tuple[float, ...] = (
    0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5,
    1.0, 2.5, 5.0, 10.0, 30.0, 60.0, math.inf,
)


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _format_labels(pairs: Sequence[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    body = ",".join(f'{name}="{value}"' for name, value in sorted(pairs))
    return "{" + body + "}"


class _Series:
    """Base for a named metric with fixed label names."""

    kind = "untyped"

    __slots__ = ("name", "help_text", "label_names", "_lock")

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _key(self, labels: dict[str, Any]) -> LabelKey:
        unknown = set(labels) - set(self.label_names)
        if unknown:
            raise ValueError(f"{self.name}: unknown labels {sorted(unknown)}")
        return tuple(str(labels.get(n, "")) for n in self.label_names)

    def _pairs(self, key: LabelKey) -> list[tuple[str, str]]:
        return list(zip(self.label_names, key))

    def header(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help_text}"] if self.help_text else []
        lines.append(f"# TYPE {self.name} {self.kind}")
        return lines

    def render(self) -> list[str]:
        raise NotImplementedError


class Counter(_Series):
    """Monotonic counter, e.g. ``retries.inc(operation="upload_part")``."""

    kind = "counter"

    __slots__ = ("_values",)

    def __init__(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> None:
        super().__init__(name, label_names, help_text)
        self._values: dict[LabelKey, float] = {}

    def inc(self, amount: float = 1.0, **labels: Any) -> None:
        if amount < 0:
            raise ValueError(f"{self.name}: counters only go up")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def get(self, **labels: Any) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> list[str]:
        with self._lock:
            items = sorted(self._values.items())
        return [
            f"{self.name}{_format_labels(self._pairs(k))} {_format_value(v)}"
            for k, v in items
        ]


class Gauge(Counter):
    """A value that moves both ways (permits in flight)."""

    kind = "gauge"

    __slots__ = ()

    def inc(self, amount: float = 1.0, **labels: Any) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, **labels: Any) -> None:
        self.inc(-amount, **labels)

    def set(self, value: float, **labels: Any) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = value


class Histogram(_Series):
    """
    Cumulative-bucket histogram.

    Bucket bounds are sorted and always end in +Inf, so the last
    bucket count equals the observation count.
    """

    kind = "histogram"

    __slots__ = ("bounds", "_series")

    def __init__(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> None:
        super().__init__(name, label_names, help_text)
        bounds = sorted(set(buckets or LATENCY_BUCKETS))
        if bounds[-1] != math.inf:
            bounds.append(math.inf)
        self.bounds = tuple(bounds)
        # key -> [bucket counts..., sum, count]
        self._series: dict[LabelKey, list[float]] = {}

    def observe(self, value: float, **labels: Any) -> None:
        key = self._key(labels)
        with self._lock:
            row = self._series.setdefault(key, [0.0] * (len(self.bounds) + 2))
            for i, bound in enumerate(self.bounds):
                if value <= bound:
                    row[i] += 1
            row[-2] += value
            row[-1] += 1

    def count(self, **labels: Any) -> int:
        key = self._key(labels)
        with self._lock:
            row = self._series.get(key)
            return int(row[-1]) if row else 0

    def total(self, **labels: Any) -> float:
        key = self._key(labels)
        with self._lock:
            row = self._series.get(key)
            return row[-2] if row else 0.0

    def render(self) -> list[str]:
        with self._lock:
            items = sorted((k, list(row)) for k, row in self._series.items())
        lines: list[str] = []
        for key, row in items:
            pairs = self._pairs(key)
            for bound, hits in zip(self.bounds, row):
                bucket = _format_labels(pairs + [("le", _format_value(bound))])
                lines.append(f"{self.name}_bucket{bucket} {_format_value(hits)}")
            lines.append(f"{self.name}_sum{_format_labels(pairs)} {_format_value(row[-2])}")
            lines.append(f"{self.name}_count{_format_labels(pairs)} {_format_value(row[-1])}")
        return lines


class MetricsCollector:
    """
    Registry of named metrics. Asking twice for the same name returns
    the same object; asking for it as a different type is an error.
    """

    __slots__ = ("_metrics", "_lock")

    def __init__(self) -> None:
        self._metrics: dict[str, _Series] = {}
        self._lock = threading.Lock()

    def _register(self, cls: type, name: str, *args: Any) -> Any:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is None:
                existing = self._metrics[name] = cls(name, *args)
            elif type(existing) is not cls:
                raise ValueError(f"Metric {name} already registered as {existing.kind}")
            return existing

    def counter(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Counter:
        return self._register(Counter, name, label_names, help_text)

    def gauge(self, name: str, label_names: Sequence[str] = (), help_text: str = "") -> Gauge:
        return self._register(Gauge, name, label_names, help_text)

    def histogram(
        self,
        name: str,
        label_names: Sequence[str] = (),
        help_text: str = "",
        buckets: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._register(Histogram, name, label_names, help_text, buckets)

    def __iter__(self) -> Iterator[_Series]:
        with self._lock:
            return iter(list(self._metrics.values()))

    def export_prometheus(self) -> str:
        """Render every metric in the Prometheus text exposition format."""
        lines: list[str] = []
        for metric in self:
            lines.extend(metric.header())
            lines.extend(metric.render())
        return "\n".join(lines)


class EngineMetrics:
    """The fixed metric set recorded by the bucket engine."""

    __slots__ = ("collector", "operations", "retries", "bytes", "latency", "inflight")

    def __init__(self, collector: Optional[MetricsCollector] = None) -> None:
        self.collector = collector or MetricsCollector()
        self.operations = self.collector.counter(
            "cloudcore_operations_total", ["operation", "outcome"],
            "Engine operations by outcome",
        )
        self.retries = self.collector.counter(
            "cloudcore_retries_total", ["operation"],
            "Store calls retried after a transient failure",
        )
        self.bytes = self.collector.counter(
            "cloudcore_bytes_total", ["direction"],
            "Bytes uploaded or downloaded",
        )
        self.latency = self.collector.histogram(
            "cloudcore_operation_seconds", ["operation"],
            "Engine operation latency",
        )
        self.inflight = self.collector.gauge(
            "cloudcore_inflight_permits", ["category"],
            "Rate limiter permits currently held",
        )

    def record_outcome(self, operation: str, ok: bool) -> None:
        self.operations.inc(operation=operation, outcome="ok" if ok else "error")

    def export_prometheus(self) -> str:
        return self.collector.export_prometheus()
