from vibey.llm import TokenUsage
from vibey.metrics import MetricsCollector


def test_record_usage_accumulates_token_totals():
    metrics = MetricsCollector()

    metrics.record_usage(TokenUsage(prompt_tokens=10, completion_tokens=4))
    metrics.record_usage(TokenUsage(prompt_tokens=6, completion_tokens=1))

    assert metrics.total(MetricsCollector.TOKENS_SENT) == 16
    assert metrics.total(MetricsCollector.TOKENS_RECEIVED) == 5
    assert [s.value for s in metrics.samples(MetricsCollector.TOKENS_SENT)] == [10, 6]


def test_samples_are_bounded_but_totals_are_not():
    metrics = MetricsCollector(max_samples=3)

    for _ in range(5):
        metrics.record("requests", 1)

    assert len(metrics.samples()) == 3
    assert metrics.total("requests") == 5

    metrics.reset()
    assert metrics.total("requests") == 0
    assert metrics.samples() == []
