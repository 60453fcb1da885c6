"""
Assertions on Prometheus metric changes around a block of engine code.
"""

from contextlib import contextmanager


def _value(metric) -> float:
    if not hasattr(metric, "_value"):
        raise ValueError(f"Metric {metric} doesn't have a _value attribute")
    return metric._value.get()


@contextmanager
def metric_delta(metric, expected_delta=1):
    """
    Fail unless `metric` (a counter or gauge child) changes by exactly `expected_delta`.

    Usage:
        with metric_delta(METRICS["capacity_rejections_total"].labels(pool="general")):
            await pool.submit(endpoint)
    """
    initial_value = _value(metric)
    yield
    actual_delta = _value(metric) - initial_value
    if actual_delta != expected_delta:
        raise AssertionError(
            f"Expected metric to change by {expected_delta}, but it changed by {actual_delta}"
        )


def histogram_count(histogram) -> float:
    for family in histogram.collect():
        for sample in family.samples:
            if sample.name.endswith("_count"):
                return sample.value
    return 0.0


@contextmanager
def histogram_observes(histogram, min_observations=1):
    """Fail unless the histogram records at least `min_observations` new values."""
    initial_count = histogram_count(histogram)
    yield
    observed = histogram_count(histogram) - initial_count
    if observed < min_observations:
        raise AssertionError(f"Expected at least {min_observations} histogram observations, got {observed}")
