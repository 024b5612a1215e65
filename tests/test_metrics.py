import pytest
import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from metrics import (
    CONNECT_ERROR, TLS_ERROR, ResultSet, Sample, format_latency, format_size, is_stable,
    percentile_values, summarize, trim_outliers,
)


def ok(index, latency, start=100.0):
    return Sample.success(index, start, start + latency, 200, 2)


def failed(index, reason=CONNECT_ERROR, elapsed=0.25, start=100.0):
    return Sample.failure(index, start, start + elapsed, reason)


class TestSample:
    def test_success_has_latency(self):
        sample = ok(0, 0.005)
        assert sample.succeeded
        assert sample.latency == pytest.approx(0.005)

    def test_failure_keeps_timing_but_no_latency(self):
        sample = failed(3, elapsed=1.5)
        assert not sample.succeeded
        assert sample.latency is None
        assert sample.elapsed == pytest.approx(1.5)
        assert sample.reason == CONNECT_ERROR

    def test_sample_is_sealed(self):
        sample = ok(0, 0.01)
        with pytest.raises(AttributeError):
            sample.outcome = "failure"


class TestResultSet:
    def test_iterates_in_attempt_order_regardless_of_append_order(self):
        result_set = ResultSet(4)
        for index in (2, 0, 3, 1):
            result_set.append(ok(index, 0.001 * (index + 1)))
        assert [s.attempt_index for s in result_set] == [0, 1, 2, 3]
        assert len(result_set) == 4

    def test_slot_written_once(self):
        result_set = ResultSet(2)
        first = ok(1, 0.002)
        result_set.append(first)
        with pytest.raises(ValueError):
            result_set.append(failed(1))
        assert result_set.get(1) == first

    def test_index_outside_capacity(self):
        result_set = ResultSet(2)
        with pytest.raises(IndexError):
            result_set.append(ok(2, 0.001))
        with pytest.raises(IndexError):
            result_set.append(ok(-1, 0.001))

    def test_closed_set_rejects_appends(self):
        result_set = ResultSet(3)
        result_set.append(ok(0, 0.001))
        result_set.close()
        with pytest.raises(RuntimeError):
            result_set.append(ok(1, 0.001))
        assert len(result_set) == 1

    def test_open_ended_set_grows(self):
        result_set = ResultSet()
        result_set.append(ok(0, 0.001))
        result_set.append(ok(5, 0.001))
        assert len(result_set) == 2
        assert result_set.get(3) is None
        assert [s.attempt_index for s in result_set] == [0, 5]

    def test_latencies_only_from_successes(self):
        result_set = ResultSet.from_samples([ok(0, 0.002), failed(1), ok(2, 0.004)])
        assert result_set.latencies() == pytest.approx([0.002, 0.004])
        assert result_set.closed


class TestSummarize:
    def test_counts_and_latency_stats(self):
        result_set = ResultSet.from_samples([ok(0, 0.002), failed(1), ok(2, 0.004), failed(3, TLS_ERROR)])
        summary = summarize(result_set)
        assert summary.total == 4
        assert summary.succeeded == 2
        assert summary.failed == 2
        assert summary.mean_latency == pytest.approx(0.003)
        assert summary.min_latency == pytest.approx(0.002)
        assert summary.max_latency == pytest.approx(0.004)
        assert summary.failure_reasons == {CONNECT_ERROR: 1, TLS_ERROR: 1}

    def test_keeps_per_sample_latencies_for_plotting(self):
        result_set = ResultSet.from_samples([ok(0, 0.002), failed(1), ok(2, 0.004)])
        summary = summarize(result_set)
        assert [index for index, _ in summary.latencies] == [0, 2]
        assert [value for _, value in summary.latencies] == pytest.approx([0.002, 0.004])

    def test_no_successes_reports_na(self):
        result_set = ResultSet.from_samples([failed(i) for i in range(10)])
        summary = summarize(result_set)
        assert summary.succeeded == 0
        assert summary.failed == 10
        assert summary.mean_latency is None
        assert summary.min_latency is None
        assert summary.max_latency is None
        assert format_latency(summary.mean_latency) == "n/a"
        row = summary.as_row()
        assert row["mean_latency_ms"] == "n/a"
        assert row["p50_latency_ms"] == "n/a"

    def test_empty_result_set(self):
        summary = summarize(ResultSet(0))
        assert summary.total == 0
        assert summary.mean_latency is None

    def test_idempotent(self):
        result_set = ResultSet.from_samples([ok(i, 0.001 * (i + 1)) for i in range(7)] + [failed(7)])
        assert summarize(result_set) == summarize(result_set)

    def test_counts_abandoned_attempts(self):
        result_set = ResultSet(4)
        result_set.append(ok(0, 0.001))
        result_set.mark_abandoned(1)
        result_set.close()
        summary = summarize(result_set)
        assert summary.total == 1
        assert summary.abandoned == 1


class TestStatistics:
    def test_percentiles(self):
        latencies = [float(v) for v in range(1, 101)]
        values = percentile_values(latencies)
        assert values["p50"] == 51.0
        assert values["p99"] == 100.0
        assert percentile_values([]) == {"p50": None, "p90": None, "p95": None, "p99": None}

    def test_trim_outliers_drops_spike(self):
        latencies = [1.0] * 20 + [100.0]
        assert trim_outliers(latencies) == [1.0] * 20

    def test_trim_outliers_leaves_flat_series(self):
        assert trim_outliers([0.5] * 5) == [0.5] * 5

    def test_flat_series_is_stable(self):
        assert is_stable([0.01] * 12, min_count=10)

    def test_too_few_samples_not_stable(self):
        assert not is_stable([0.01] * 10, min_count=10)

    def test_widely_spread_series_not_stable(self):
        assert not is_stable([0.001] * 8 + [0.1] * 4, min_count=10)


def test_formatting():
    assert format_latency(None) == "n/a"
    assert format_latency(0.005) == "5.000"
    assert format_size(512) == "512b"
    assert format_size(1536) == "1.5kb"
    assert format_size(8 * 1024 * 1024) == "8.0mb"
