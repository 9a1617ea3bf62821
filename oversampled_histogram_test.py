"""
Oversampled Histogram Action Tests
==================================

End-to-end behaviour of the host-facing action: value dispatch,
oversampling scale, lifecycle, jackknife outputs, implicit MT and
concurrent lanes.
"""

import threading

import pytest
import numpy as np
import polars as pl

from oversampled_histogram import (
    OversampledHistogram, OversamplingConfig, UsageError, ValueKind,
    classify_value, enable_implicit_mt, get_thread_pool_size, is_implicit_mt_enabled,
    route_values,
)
from oversampled_histogram.config import NUM_THREADS_ENV
from conftest import round_robin


# ============================================================================
# Value dispatch
# ============================================================================

class TestValueRouting:

    @pytest.mark.parametrize("value", [2.5, 3, np.float32(1.25), np.int64(7), np.array(4.0)])
    def test_scalars(self, value):
        assert classify_value(value) is ValueKind.SCALAR
        routed = route_values(value)
        assert routed.shape == (1,)
        assert routed.dtype == np.float64

    @pytest.mark.parametrize("value", [
        [1.0, 2.0, 3.0],
        (1.0, 2.0, 3.0),
        np.array([1.0, 2.0, 3.0], dtype=np.float32),
        pl.Series("x", [1.0, 2.0, 3.0]),
    ])
    def test_sequences(self, value):
        assert classify_value(value) is ValueKind.SEQUENCE
        np.testing.assert_allclose(route_values(value), [1.0, 2.0, 3.0])

    def test_nested_array_is_flattened(self):
        np.testing.assert_allclose(route_values(np.ones((2, 3))), np.ones(6))

    def test_empty_sequence(self):
        assert classify_value([]) is ValueKind.SEQUENCE
        assert route_values([]).size == 0

    @pytest.mark.parametrize("value", ["1.5", b"1.5"])
    def test_text_rejected(self, value):
        with pytest.raises(TypeError):
            classify_value(value)


# ============================================================================
# Construction
# ============================================================================

class TestConfiguration:

    @pytest.mark.parametrize("kwargs", [
        dict(n_bins=0),
        dict(x_min=5.0, x_max=5.0),
        dict(x_min=5.0, x_max=1.0),
        dict(x_max=float("inf")),
        dict(oversampling_factor=0.0),
        dict(oversampling_factor=-3.0),
        dict(oversampling_factor=float("nan")),
        dict(jackknife_groups=-1),
    ])
    def test_invalid_parameters(self, kwargs):
        params = dict(name="h", title="h", n_bins=10, x_min=0.0, x_max=10.0)
        params.update(kwargs)
        with pytest.raises(ValueError):
            OversamplingConfig(**params)
        with pytest.raises(ValueError):
            OversampledHistogram(**params)

    @pytest.mark.parametrize("groups,enabled", [(0, False), (1, False), (2, True), (10, True)])
    def test_jackknife_switch(self, make_histogram, groups, enabled):
        assert make_histogram(jackknife_groups=groups).jackknife_enabled is enabled

    def test_invalid_lane_count(self, make_histogram):
        with pytest.raises(ValueError):
            make_histogram(n_lanes=0)

    def test_action_name(self, make_histogram):
        assert make_histogram().get_action_name() == "OversampledTH"

    def test_result_binning(self, make_histogram):
        result = make_histogram(n_bins=20, x_min=-1.0, x_max=1.0, name="mbc").get_result_ptr()
        assert result.name == "mbc"
        assert result.n_bins == 20
        assert result.get_bin_center(1) == pytest.approx(-0.95)
        assert result.integral() == 0.0


class TestImplicitMT:

    def test_disabled_gives_single_lane(self):
        assert not is_implicit_mt_enabled()
        action = OversampledHistogram("h", "h", 10, 0.0, 10.0)
        assert action.n_lanes == 1

    def test_explicit_pool_size(self):
        assert enable_implicit_mt(3) == 3
        assert is_implicit_mt_enabled()
        assert OversampledHistogram("h", "h", 10, 0.0, 10.0).n_lanes == 3
        # explicit lane count wins
        assert OversampledHistogram("h", "h", 10, 0.0, 10.0, n_lanes=2).n_lanes == 2

    def test_pool_size_from_environment(self, monkeypatch):
        monkeypatch.setenv(NUM_THREADS_ENV, "5")
        assert enable_implicit_mt() == 5
        assert get_thread_pool_size() == 5

    def test_pool_size_from_cpu_count(self, monkeypatch):
        monkeypatch.delenv(NUM_THREADS_ENV, raising=False)
        assert enable_implicit_mt() >= 1

    def test_invalid_environment(self, monkeypatch):
        monkeypatch.setenv(NUM_THREADS_ENV, "many")
        with pytest.raises(ValueError, match=NUM_THREADS_ENV):
            enable_implicit_mt()

    def test_negative_thread_count(self):
        with pytest.raises(ValueError):
            enable_implicit_mt(-2)


# ============================================================================
# Filling and end of stream
# ============================================================================

class TestFilling:

    def test_one_value_per_event_over_three_lanes(self, make_histogram):
        action = make_histogram(n_lanes=3)
        action.initialize()
        for lane in range(3):
            action.init_task(None, lane)
        round_robin(action, range(10), lambda event: 4.2)
        action.finalize()

        result = action.get_result_ptr()
        assert result.get_entries() == pytest.approx(10.0)
        assert result.get_mean() == pytest.approx(4.2)
        assert result.get_bin_content(5) == pytest.approx(10.0)

    def test_sequence_divided_by_factor(self, make_histogram):
        action = make_histogram(oversampling_factor=3.0)
        action.exec(0, 0, [1.0, 2.0, 3.0])
        action.finalize()
        result = action.get_result_ptr()
        assert result.integral() == pytest.approx(1.0)
        for bin_index in (2, 3, 4):
            assert result.get_bin_content(bin_index) == pytest.approx(1.0 / 3.0)

    def test_scalar_variations_on_separate_calls(self, make_histogram):
        action = make_histogram(oversampling_factor=4.0)
        for value in (0.5, 1.5, 2.5, 3.5):
            action.exec(0, 11, value, weight=2.0)
        action.finalize()
        assert action.get_result_ptr().integral() == pytest.approx(2.0)

    def test_empty_sequence_does_nothing(self, make_histogram):
        action = make_histogram()
        action.exec(0, 0, [])
        assert len(action.engine) == 0
        action.finalize()
        assert action.get_result_ptr().get_entries() == 0

    def test_text_value_raises(self, make_histogram):
        action = make_histogram()
        with pytest.raises(TypeError):
            action.exec(0, 0, "4.5")

    @pytest.mark.parametrize("event", [0.5, 2.7, float("nan")])
    def test_non_integral_event_id_rejected(self, make_histogram, event):
        action = make_histogram()
        with pytest.raises(ValueError):
            action.exec(0, event, 1.5)
        assert len(action.engine) == 0

    def test_integral_float_event_ids(self, make_histogram):
        action = make_histogram()
        action.exec(0, 3.0, 1.5)
        action.exec(0, np.int64(4), 1.5)
        assert action.engine.pending_event_ids == [4]
        assert action.engine.watermark == 3

    def test_bad_task_lane(self, make_histogram):
        action = make_histogram(n_lanes=2)
        with pytest.raises(IndexError):
            action.init_task(None, 2)

    def test_intermediate_flush(self, make_histogram):
        action = make_histogram()
        round_robin(action, range(5), lambda event: [event + 0.5])
        # events 0..3 are already below the single lane's watermark
        assert action.get_result_ptr().integral() == pytest.approx(4.0)
        assert action.flush() == 0
        action.finalize()
        assert action.get_result_ptr().integral() == pytest.approx(5.0)

    def test_performance_stats(self, make_histogram):
        action = make_histogram(n_lanes=2)
        action.initialize()
        action.init_task(None, 0)
        action.init_task(None, 1)
        round_robin(action, range(6), lambda event: [1.5, 2.5])
        action.finalize()

        stats = action.get_performance_stats()
        assert stats['n_lanes'] == 2
        assert stats['pending_events'] == 0
        assert stats['contributions'] == 12
        assert stats['initialized_tasks'] == 2
        assert stats['watermark'] == 5
        assert stats['execution_time'] >= 0.0

    def test_repr(self, make_histogram):
        assert "lanes=2" in repr(make_histogram(n_lanes=2))


# ============================================================================
# Jackknife outputs
# ============================================================================

class TestJackknifeOutputs:

    def test_finalize_rejected_without_mutation(self, make_histogram):
        action = make_histogram(jackknife_groups=4)
        round_robin(action, range(3), lambda event: 1.5)
        before = action.get_result_ptr().values(flow=True)

        with pytest.raises(UsageError) as excinfo:
            action.finalize()

        assert excinfo.value.operation == 'finalize'
        np.testing.assert_array_equal(action.get_result_ptr().values(flow=True), before)
        assert len(action.engine) == 1

    def test_drain_balances_groups(self, make_histogram):
        action = make_histogram(jackknife_groups=4)
        round_robin(action, range(8), lambda event: [event + 0.5])
        action.drain()
        assert action.group_event_counts == (2, 2, 2, 2)
        assert sum(group.integral() for group in action.get_jackknife_groups()) == pytest.approx(8.0)

    def test_average_matches_result(self, make_histogram):
        action = make_histogram(n_lanes=2, jackknife_groups=3)
        round_robin(action, range(12), lambda event: [event % 10 + 0.5, 9.5 - event % 10])
        action.drain()

        covariance = action.get_jackknife_covariance()
        np.testing.assert_allclose(
            action.get_jackknife_average().values(),
            action.get_result_ptr().values(),
            rtol=1e-12,
        )
        assert covariance.n_bins == 10
        np.testing.assert_allclose(covariance.values(), covariance.values().T)

    def test_groups_hold_unscaled_event_totals(self, make_histogram):
        action = make_histogram(oversampling_factor=2.0, jackknife_groups=2)
        round_robin(action, range(4), lambda event: [3.5, 3.5])
        action.drain()
        assert action.get_result_ptr().integral() == pytest.approx(4.0)
        assert sum(group.integral() for group in action.get_jackknife_groups()) == pytest.approx(8.0)

    def test_rescaling_average_does_not_touch_cache(self, make_histogram):
        action = make_histogram(oversampling_factor=2.0, jackknife_groups=4)
        round_robin(action, range(8), lambda event: [4.5, 5.5])
        action.drain()
        action.get_jackknife_covariance()

        action.get_jackknife_average().scale(1.0 / 2.0)

        assert action.get_jackknife_average().integral() == pytest.approx(16.0)

    def test_returned_groups_are_copies(self, make_histogram):
        action = make_histogram(jackknife_groups=2)
        round_robin(action, range(4), lambda event: 2.5)
        action.drain()
        action.get_jackknife_covariance()

        for group in action.get_jackknife_groups():
            group.fill(2.5, 100.0)

        assert sum(group.integral() for group in action.get_jackknife_groups()) == pytest.approx(4.0)
        assert action.get_performance_stats()['jackknife_state'] == 'VALID'

    def test_average_before_covariance(self, make_histogram):
        action = make_histogram(jackknife_groups=3)
        with pytest.raises(UsageError):
            action.get_jackknife_average()

    def test_outputs_require_groups(self, make_histogram):
        action = make_histogram(jackknife_groups=1)
        with pytest.raises(UsageError):
            action.get_jackknife_covariance()
        with pytest.raises(UsageError):
            action.get_jackknife_pseudo_totals()

    def test_stats_track_cache_state(self, make_histogram):
        action = make_histogram(jackknife_groups=2)
        round_robin(action, range(4), lambda event: 2.5)
        assert action.get_performance_stats()['jackknife_state'] == 'EMPTY'
        action.get_jackknife_covariance()
        assert action.get_performance_stats()['jackknife_state'] == 'VALID'
        action.drain()
        assert action.get_performance_stats()['jackknife_state'] == 'STALE'


# ============================================================================
# Concurrency
# ============================================================================

@pytest.mark.concurrency
class TestConcurrentLanes:

    @pytest.mark.parametrize("n_lanes", [2, 4, 8])
    def test_threads_match_sequential(self, make_histogram, n_lanes):
        n_events = 400
        rng = np.random.default_rng(7)
        values = [rng.uniform(0.0, 10.0, size=5) for _ in range(n_events)]

        sequential = make_histogram(oversampling_factor=5.0)
        for event in range(n_events):
            sequential.exec(0, event, values[event])
        sequential.finalize()

        concurrent = make_histogram(n_lanes=n_lanes, oversampling_factor=5.0)
        barrier = threading.Barrier(n_lanes)
        errors = []

        def lane_worker(lane):
            try:
                barrier.wait()
                for event in range(lane, n_events, n_lanes):
                    concurrent.exec(lane, event, values[event])
            except Exception as exc:  # surfaced in the main thread
                errors.append(exc)

        threads = [threading.Thread(target=lane_worker, args=(lane,)) for lane in range(n_lanes)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert not errors

        concurrent.finalize()
        np.testing.assert_allclose(
            concurrent.get_result_ptr().values(flow=True),
            sequential.get_result_ptr().values(flow=True),
            atol=1e-9,
        )
        assert concurrent.get_result_ptr().integral() == pytest.approx(n_events)
        assert concurrent.get_performance_stats()['peak_pending_events'] >= 1

    def test_threads_with_jackknife_drain(self, make_histogram):
        n_lanes, n_events = 4, 200
        action = make_histogram(n_lanes=n_lanes, jackknife_groups=5)

        def lane_worker(lane):
            for event in range(lane, n_events, n_lanes):
                action.exec(lane, event, [event % 10 + 0.5])

        threads = [threading.Thread(target=lane_worker, args=(lane,)) for lane in range(n_lanes)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        action.drain()
        assert action.group_event_counts == (40,) * 5
        assert action.get_result_ptr().integral() == pytest.approx(n_events)
