"""A small metrics registry with Prometheus text exposition."""

from __future__ import annotations

import bisect
import itertools
import math
import re
import threading
import time
from typing import Iterable, Iterator, Protocol

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")


class AlreadyRegisteredError(ValueError):
    """Raised when a collector or one of its metric names is registered twice."""


class Counter:
    """A value that only goes up."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class Gauge:
    """A value that can go up and down."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    def set_to_current_time(self) -> None:
        self.set(time.time())


class Histogram:
    """Observations counted into cumulative buckets."""

    def __init__(self, buckets: Iterable[float] = DEFAULT_BUCKETS) -> None:
        self._bounds = sorted(float(b) for b in buckets if not math.isinf(b))
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def bucket_counts(self) -> list[tuple[float, int]]:
        """Upper bounds with cumulative counts, ending with +Inf."""
        cumulative = list(itertools.accumulate(self._counts))
        return [*zip(self._bounds, cumulative), (math.inf, self._count)]

    def observe(self, value: float) -> None:
        with self._lock:
            index = bisect.bisect_left(self._bounds, value)
            if index < len(self._bounds):
                self._counts[index] += 1
            self._sum += value
            self._count += 1


_KINDS = {"counter": Counter, "gauge": Gauge, "histogram": Histogram}


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _sample_line(name: str, labels: list[tuple[str, str]], value: float) -> str:
    if labels:
        inner = ",".join(f'{k}="{_escape_label(v)}"' for k, v in labels)
        return f"{name}{{{inner}}} {_format_value(value)}"
    return f"{name} {_format_value(value)}"


class MetricFamily:
    """A named metric with a fixed set of label names and one child per label set."""

    def __init__(
        self,
        name: str,
        documentation: str,
        kind: str,
        label_names: Iterable[str] = (),
        buckets: Iterable[float] = DEFAULT_BUCKETS,
    ) -> None:
        if not _NAME.match(name):
            raise ValueError(f"invalid metric name: {name!r}")
        if kind not in _KINDS:
            raise ValueError(f"unknown metric kind: {kind!r}")
        self.name = name
        self.documentation = documentation
        self.kind = kind
        self.label_names = tuple(label_names)
        self._buckets = tuple(buckets)
        self._children: dict[tuple[str, ...], Counter | Gauge | Histogram] = {}
        self._lock = threading.Lock()

    def _new_child(self) -> Counter | Gauge | Histogram:
        if self.kind == "histogram":
            return Histogram(self._buckets)
        return _KINDS[self.kind]()

    def labels(self, *args: object):
        """Return the child for these label values, creating it when new."""
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        key = tuple(str(a) for a in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
            return child

    def describe(self) -> list[str]:
        return [self.name]

    def collect(self) -> Iterator["MetricFamily"]:
        yield self

    def _render(self) -> list[str]:
        with self._lock:
            children = sorted(self._children.items())
        lines = []
        for key, child in children:
            labels = list(zip(self.label_names, key))
            if isinstance(child, Histogram):
                for bound, count in child.bucket_counts:
                    lines.append(
                        _sample_line(
                            f"{self.name}_bucket", [*labels, ("le", _format_value(bound))], count
                        )
                    )
                lines.append(_sample_line(f"{self.name}_sum", labels, child.sum))
                lines.append(_sample_line(f"{self.name}_count", labels, child.count))
            else:
                lines.append(_sample_line(self.name, labels, child.value))
        return lines


class _Collector(Protocol):
    def describe(self) -> Iterable[str]: ...

    def collect(self) -> Iterable[MetricFamily]: ...


class Registry:
    """Holds collectors and renders their metrics."""

    def __init__(self) -> None:
        self._collectors: list[_Collector] = []
        self._names: dict[int, set[str]] = {}
        self._lock = threading.Lock()

    def register(self, collector: _Collector) -> None:
        names = set(collector.describe())
        with self._lock:
            taken = set().union(*self._names.values()) if self._names else set()
            if any(c is collector for c in self._collectors) or names & taken:
                raise AlreadyRegisteredError("duplicate metrics collector registration attempted")
            self._collectors.append(collector)
            self._names[id(collector)] = names

    def must_register(self, *args: _Collector) -> None:
        for collector in args:
            self.register(collector)

    def unregister(self, collector: _Collector) -> bool:
        with self._lock:
            for index, existing in enumerate(self._collectors):
                if existing is collector:
                    del self._collectors[index]
                    self._names.pop(id(collector), None)
                    return True
        return False

    def collect(self) -> Iterator[MetricFamily]:
        with self._lock:
            collectors = list(self._collectors)
        for collector in collectors:
            yield from collector.collect()

    def expose(self) -> str:
        """Render all metrics in the Prometheus text format."""
        out = []
        for family in sorted(self.collect(), key=lambda f: f.name):
            lines = family._render()
            if not lines:
                continue
            out.append(f"# HELP {family.name} {_escape_help(family.documentation)}")
            out.append(f"# TYPE {family.name} {family.kind}")
            out.extend(lines)
        return "".join(line + "\n" for line in out)