from tourworker import metrics


def test_generation_summary_is_empty_before_any_work():
    summary = metrics.get_snapshot()["generation"]
    assert summary == {"unit_success_rate": None, "job_success_rate": None, "retries_per_unit": None}


def test_generation_summary_rates():
    metrics.inc_counter("units.completed", 3)
    metrics.inc_counter("units.failed")
    metrics.inc_counter("units.retries", 2)
    metrics.inc_counter("jobs.completed")
    metrics.inc_counter("jobs.failed")

    summary = metrics.get_snapshot()["generation"]

    assert summary["unit_success_rate"] == 0.75
    assert summary["job_success_rate"] == 0.5
    assert summary["retries_per_unit"] == 0.5


def test_latency_keeps_only_recent_samples():
    for ms in range(metrics.MAX_SAMPLES + 20):
        metrics.record_latency("composition", float(ms))

    stats = metrics.get_snapshot()["latency"]["composition"]
    assert stats["count"] == metrics.MAX_SAMPLES
    # samples 20..119 survive
    assert stats["p50"] == 70.0
    assert stats["p95"] == 115.0
