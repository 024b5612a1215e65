import math
from collections import Counter
from typing import Dict, Iterable, Iterator, List, NamedTuple, Optional, Tuple

from config import OUTLIER_THRESHOLD, STABLE_THRESHOLD

SUCCESS = "success"
FAILURE = "failure"

# Failure reasons recorded on Sample.reason
CONNECT_ERROR = "connect-error"
TLS_ERROR = "tls-error"
PROXY_UPSTREAM_ERROR = "proxy-upstream-error"
PROTOCOL_ERROR = "protocol-error"
STATUS_ERROR = "status-error"
INTERNAL_ERROR = "internal-error"

PERCENTILES = (50, 90, 95, 99)


class Sample(NamedTuple):
    attempt_index: int
    started_at: float  # Monotonic clock readings, seconds
    ended_at: float
    outcome: str
    reason: Optional[str] = None
    status_code: Optional[int] = None
    response_size: int = 0

    @classmethod
    def success(cls, attempt_index: int, started_at: float, ended_at: float,
                status_code: Optional[int] = None, response_size: int = 0) -> "Sample":
        return cls(attempt_index, started_at, ended_at, SUCCESS, None, status_code, response_size)

    @classmethod
    def failure(cls, attempt_index: int, started_at: float, ended_at: float, reason: str,
                status_code: Optional[int] = None) -> "Sample":
        return cls(attempt_index, started_at, ended_at, FAILURE, reason, status_code, 0)

    @property
    def succeeded(self) -> bool:
        return self.outcome == SUCCESS

    @property
    def elapsed(self) -> float:
        return self.ended_at - self.started_at

    @property
    def latency(self) -> Optional[float]:
        # Failed attempts keep their timing for diagnostics but have no latency
        return self.elapsed if self.succeeded else None


class ResultSet:
    """Samples of one run, stored in slots keyed by attempt index.

    Each slot is written once. With a fixed capacity the slots are allocated
    up front; without one (proxy instrumentation) they grow as indices arrive.
    """

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self._slots: List[Optional[Sample]] = [None] * capacity if capacity is not None else []
        self._count = 0
        self._closed = False
        self.abandoned: List[int] = []
        self.cancelled = False

    def append(self, sample: Sample):
        if self._closed:
            raise RuntimeError(f"ResultSet is closed; attempt {sample.attempt_index} arrived too late")
        index = sample.attempt_index
        if index < 0 or (self.capacity is not None and index >= self.capacity):
            raise IndexError(f"Attempt index {index} outside 0..{self.capacity}")
        if self.capacity is None and index >= len(self._slots):
            self._slots.extend([None] * (index + 1 - len(self._slots)))
        if self._slots[index] is not None:
            raise ValueError(f"Attempt {index} already has a sealed sample")
        self._slots[index] = sample
        self._count += 1

    def mark_abandoned(self, attempt_index: int):
        self.abandoned.append(attempt_index)

    def close(self):
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, attempt_index: int) -> Optional[Sample]:
        if 0 <= attempt_index < len(self._slots):
            return self._slots[attempt_index]
        return None

    def __len__(self) -> int:
        return self._count

    def __iter__(self) -> Iterator[Sample]:
        return (s for s in self._slots if s is not None)

    def samples(self) -> Tuple[Sample, ...]:
        return tuple(self)

    def latencies(self) -> List[float]:
        return [s.latency for s in self if s.succeeded]

    @classmethod
    def from_samples(cls, samples: Iterable[Sample]) -> "ResultSet":
        result_set = cls()
        for sample in samples:
            result_set.append(sample)
        result_set.close()
        return result_set


class Summary(NamedTuple):
    total: int
    succeeded: int
    failed: int
    abandoned: int
    mean_latency: Optional[float]  # Seconds; None when nothing succeeded
    min_latency: Optional[float]
    max_latency: Optional[float]
    trimmed_mean_latency: Optional[float]
    percentiles: Dict[str, Optional[float]]
    failure_reasons: Dict[str, int]
    latencies: Tuple[Tuple[int, float], ...]  # (attempt_index, latency) for plotting

    def as_row(self) -> Dict[str, object]:
        row: Dict[str, object] = {
            "total": self.total, "succeeded": self.succeeded,
            "failed": self.failed, "abandoned": self.abandoned,
            "mean_latency_ms": format_latency(self.mean_latency),
            "min_latency_ms": format_latency(self.min_latency),
            "max_latency_ms": format_latency(self.max_latency),
            "trimmed_mean_latency_ms": format_latency(self.trimmed_mean_latency),
        }
        for name, value in self.percentiles.items():
            row[f"{name}_latency_ms"] = format_latency(value)
        return row


def percentile_values(latencies: List[float]) -> Dict[str, Optional[float]]:
    if not latencies:
        return {f"p{p}": None for p in PERCENTILES}
    sorted_latencies = sorted(latencies)
    result = {}
    for p_val in PERCENTILES:
        idx = min(int(len(sorted_latencies) * (p_val / 100.0)), len(sorted_latencies) - 1)
        result[f"p{p_val}"] = sorted_latencies[idx]
    return result


def _mean_and_std(values: List[float]) -> Tuple[float, float]:
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def trim_outliers(latencies: List[float], threshold: float = OUTLIER_THRESHOLD) -> List[float]:
    """Drop values more than `threshold` standard deviations from the mean."""
    if len(latencies) < 3:
        return list(latencies)
    mean, std_dev = _mean_and_std(latencies)
    if std_dev == 0:
        return list(latencies)
    return [v for v in latencies if abs(v - mean) / std_dev <= threshold]


def is_stable(latencies: List[float], min_count: int,
              threshold: float = STABLE_THRESHOLD) -> bool:
    trimmed = trim_outliers(latencies)
    if len(trimmed) <= min_count:
        return False
    mean, _ = _mean_and_std(trimmed)
    if mean == 0:
        return True
    return all(abs(v - mean) / mean <= threshold for v in trimmed)


def summarize(result_set: ResultSet) -> Summary:
    samples = result_set.samples()
    successes = [s for s in samples if s.succeeded]
    latencies = [s.latency for s in successes]
    reasons = Counter(s.reason for s in samples if not s.succeeded)

    trimmed = trim_outliers(latencies)
    return Summary(
        total=len(samples),
        succeeded=len(successes),
        failed=len(samples) - len(successes),
        abandoned=len(result_set.abandoned),
        mean_latency=sum(latencies) / len(latencies) if latencies else None,
        min_latency=min(latencies) if latencies else None,
        max_latency=max(latencies) if latencies else None,
        trimmed_mean_latency=sum(trimmed) / len(trimmed) if trimmed else None,
        percentiles=percentile_values(latencies),
        failure_reasons=dict(sorted(reasons.items())),
        latencies=tuple((s.attempt_index, s.latency) for s in successes),
    )


def format_latency(seconds: Optional[float]) -> str:
    if seconds is None:
        return "n/a"
    return f"{seconds * 1000:.3f}"


def format_size(size_in_bytes: int) -> str:
    kb = 1024
    mb = kb * 1024
    if size_in_bytes >= mb:
        return f"{size_in_bytes / mb:.1f}mb"
    if size_in_bytes >= kb:
        return f"{size_in_bytes / kb:.1f}kb"
    return f"{size_in_bytes}b"
