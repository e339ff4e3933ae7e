"""Tests for throttled progress reporting."""

from label_propagation.progress import ProgressReporter


class TestProgressReporter:
    """Tests for report throttling."""

    def test_reports_every_interval(self):
        calls = []
        reporter = ProgressReporter(lambda *a: calls.append(a), "image", 10, interval=3)
        for _ in range(10):
            reporter.tick()
        assert calls == [("image", 3, 10), ("image", 6, 10), ("image", 9, 10)]

    def test_finish_forces_total(self):
        calls = []
        reporter = ProgressReporter(lambda *a: calls.append(a), "tracking", 5, interval=250)
        reporter.tick(2)
        reporter.finish()
        assert calls == [("tracking", 5, 5)]

    def test_bulk_tick_crossing_interval(self):
        calls = []
        reporter = ProgressReporter(lambda *a: calls.append(a), "image", 100, interval=10)
        reporter.tick(25)
        assert calls == [("image", 25, 100)]

    def test_no_callback(self):
        reporter = ProgressReporter(None, "image", 10, interval=1)
        reporter.tick()
        reporter.finish()
        assert reporter.current == 1

    def test_zero_total_is_silent(self):
        calls = []
        reporter = ProgressReporter(lambda *a: calls.append(a), "image", 0, interval=1)
        reporter.tick()
        reporter.finish()
        assert calls == []

    def test_failing_callback_does_not_raise(self):
        def broken(phase, current, total):
            raise RuntimeError("sink closed")

        reporter = ProgressReporter(broken, "image", 2, interval=1)
        reporter.tick()
        reporter.finish()
        assert reporter.current == 1
