"""Token usage metrics."""

import threading
import time
from dataclasses import dataclass, field

from vibey.llm import TokenUsage


@dataclass
class MetricSample:
    metric_id: str
    value: float
    timestamp: float = field(default_factory=time.time)


class MetricsCollector:
    """Accumulates metric samples; ``record_usage`` plugs in as a backend usage sink."""

    TOKENS_SENT = "tokens_sent"
    TOKENS_RECEIVED = "tokens_received"

    def __init__(self, max_samples: int = 1000):
        self.max_samples = max_samples
        self._samples: list[MetricSample] = []
        self._totals: dict[str, float] = {}
        self._lock = threading.Lock()

    def record(self, metric_id: str, value: float) -> None:
        with self._lock:
            self._samples.append(MetricSample(metric_id=metric_id, value=value))
            if len(self._samples) > self.max_samples:
                del self._samples[: len(self._samples) - self.max_samples]
            self._totals[metric_id] = self._totals.get(metric_id, 0) + value

    def record_usage(self, usage: TokenUsage) -> None:
        self.record(self.TOKENS_SENT, usage.prompt_tokens)
        self.record(self.TOKENS_RECEIVED, usage.completion_tokens)

    def total(self, metric_id: str) -> float:
        with self._lock:
            return self._totals.get(metric_id, 0)

    def samples(self, metric_id: str | None = None) -> list[MetricSample]:
        with self._lock:
            if metric_id is None:
                return list(self._samples)
            return [sample for sample in self._samples if sample.metric_id == metric_id]

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._totals.clear()
