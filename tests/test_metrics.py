import pytest

from thinkspace.utils import metrics


def test_queue_depth_becomes_gauges():
    metrics.record_queue_depth({"waiting": 3, "delayed": 1, "active": 2, "completed": 0, "failed": 0})

    assert metrics.get_gauge("queue.waiting") == 3
    assert metrics.get_snapshot()["gauges"]["queue.active"] == 2


def test_fanout_histogram_summary():
    for delivered in (1, 2, 2, 5):
        metrics.record_fanout(delivered)

    summary = metrics.get_snapshot()["histograms"][metrics.FANOUT_HISTOGRAM]

    assert summary["count"] == 4
    assert summary["max"] == 5


def test_histogram_keeps_a_rolling_window():
    for n in range(metrics.MAX_HISTOGRAM_SAMPLES + 10):
        metrics.observe("processor.process.duration_ms", n)

    assert metrics.get_snapshot()["histograms"]["processor.process.duration_ms"]["count"] == metrics.MAX_HISTOGRAM_SAMPLES


async def test_track_duration_counts_success_and_error():
    async with metrics.track_duration("processor", "process"):
        pass
    with pytest.raises(RuntimeError):
        async with metrics.track_duration("processor", "process"):
            raise RuntimeError("boom")

    assert metrics.get_counter("processor.process.success") == 1
    assert metrics.get_counter("processor.process.error") == 1
    assert metrics.get_snapshot()["histograms"]["processor.process.duration_ms"]["count"] == 2


def test_reset_clears_every_series():
    metrics.inc("broadcast.events")
    metrics.set_gauge("connections", 4)
    metrics.reset()

    assert metrics.get_snapshot() == {"counters": {}, "gauges": {}, "histograms": {}}
