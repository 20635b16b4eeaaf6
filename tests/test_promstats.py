import time

import pytest

from cmddaemon.promstats import (
    AlreadyRegisteredError,
    Counter,
    Gauge,
    Histogram,
    MetricFamily,
    Registry,
)


def test_counter_increments():
    counter = Counter()
    counter.inc()
    counter.inc(2)
    assert counter.value == 3


def test_counter_rejects_negative():
    with pytest.raises(ValueError):
        Counter().inc(-1)


def test_gauge_set_and_inc():
    gauge = Gauge()
    gauge.set(5)
    gauge.inc(-2)
    assert gauge.value == 3


def test_gauge_set_to_current_time():
    gauge = Gauge()
    before = time.time()
    gauge.set_to_current_time()
    assert before <= gauge.value <= time.time()


def test_histogram_buckets_are_cumulative():
    hist = Histogram([1, 5, 10])
    for value in (0.5, 3, 3, 7, 100):
        hist.observe(value)
    counts = [c for _, c in hist.bucket_counts]
    assert counts == sorted(counts)
    assert counts[-1] == hist.count == 5
    assert hist.sum == pytest.approx(113.5)


def test_family_labels_reuse_child():
    fam = MetricFamily("requests_total", "help", "counter", ["method"])
    fam.labels("GET").inc()
    fam.labels("GET").inc()
    assert fam.labels("GET").value == 2
    assert fam.labels("PUT").value == 0


def test_family_labels_wrong_count():
    fam = MetricFamily("requests_total", "help", "counter", ["method", "code"])
    with pytest.raises(ValueError):
        fam.labels("GET")


def test_family_rejects_bad_name_and_kind():
    with pytest.raises(ValueError):
        MetricFamily("bad name", "help", "counter")
    with pytest.raises(ValueError):
        MetricFamily("ok_name", "help", "summary")


def test_registry_duplicate_names():
    reg = Registry()
    reg.register(MetricFamily("dup_metric", "a", "gauge"))
    with pytest.raises(AlreadyRegisteredError):
        reg.register(MetricFamily("dup_metric", "b", "gauge"))


def test_registry_same_collector_twice():
    reg = Registry()
    fam = MetricFamily("once_metric", "a", "gauge")
    reg.must_register(fam)
    with pytest.raises(AlreadyRegisteredError):
        reg.must_register(fam)


def test_unregister_allows_reregister():
    reg = Registry()
    fam = MetricFamily("again_metric", "a", "gauge")
    reg.register(fam)
    assert reg.unregister(fam) is True
    assert reg.unregister(fam) is False
    reg.register(MetricFamily("again_metric", "b", "gauge"))
    assert [f.name for f in reg.collect()] == ["again_metric"]


def test_expose_text_format():
    reg = Registry()
    fam = MetricFamily("http_requests_total", "Total number of HTTP requests", "counter",
                       ["method"])
    reg.register(fam)
    fam.labels("GET").inc()
    text = reg.expose()
    assert "# HELP http_requests_total Total number of HTTP requests\n" in text
    assert "# TYPE http_requests_total counter\n" in text
    assert 'http_requests_total{method="GET"} 1\n' in text


def test_expose_histogram_has_inf_bucket_and_count():
    reg = Registry()
    fam = MetricFamily("http_request_duration_seconds", "d", "histogram", ["endpoint"])
    reg.register(fam)
    fam.labels("/list").observe(0.2)
    text = reg.expose()
    assert 'http_request_duration_seconds_bucket{endpoint="/list",le="+Inf"} 1' in text
    assert 'http_request_duration_seconds_count{endpoint="/list"} 1' in text


def test_expose_skips_empty_family():
    reg = Registry()
    reg.register(MetricFamily("unused_metric", "x", "gauge", ["a"]))
    assert reg.expose() == ""