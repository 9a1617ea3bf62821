"""
Oversampled Histogram Action
============================

Host-facing action that books a 1-D histogram over oversampled events.

Every event may be delivered several times (correlated variations, e.g.
re-drawn systematics), possibly spread over several lanes. All
variations of one event are collapsed into a single contribution and
divided by the oversampling factor before being merged into the result,
so the statistical weight of the histogram is that of the original
events.

Lifecycle (driven by the host):
    initialize() -> init_task(reader, lane) per task -> exec(...) per row
    -> finalize() (or drain() with jackknife groups) -> get_result_ptr()

Optional jackknife resampling (jackknife_groups > 1) partitions the
flushed events into balanced groups and provides a bin-by-bin
covariance matrix of the result.
"""

from __future__ import annotations
import time
from typing import Any, Dict, List, Optional

import numpy as np

from .binned_accumulator import BinnedAccumulator, BinnedMatrix
from .config import OversamplingConfig, PRINT_RUNTIME_INFO, resolve_lane_count
from .core_types import ValueKind
from .flush_engine import WatermarkFlushEngine
from .jackknife import JackknifeEstimator, JackknifePartitioner


# ============================================================================
# VALUE ROUTING
# ============================================================================

def classify_value(value: Any) -> ValueKind:
    """Scalar or sequence, by capability rather than concrete type."""
    if isinstance(value, (str, bytes)):
        raise TypeError(f"Cannot histogram a {type(value).__name__} value")
    if np.ndim(value) == 0:
        return ValueKind.SCALAR
    return ValueKind.SEQUENCE


def route_values(value: Any) -> np.ndarray:
    """Flatten a scalar or a sequence into the float64 values to fill."""
    if classify_value(value) is ValueKind.SCALAR:
        return np.array([value], dtype=np.float64)
    return np.asarray(value, dtype=np.float64).ravel()


def coerce_event_id(event: Any) -> int:
    """Integer event id; float ids must be integral."""
    event_id = int(event)
    if event_id != event:
        raise ValueError(f"Event id must be integral, got {event!r}")
    return event_id


# ============================================================================
# ACTION
# ============================================================================

class OversampledHistogram:
    """
    1-D histogram of oversampled events, filled concurrently from N lanes.

    Parameters
    ----------
    name, title, n_bins, x_min, x_max:
        Binning of the result histogram.
    oversampling_factor:
        Number of variations drawn per event; each event's total is
        divided by it.
    jackknife_groups:
        Number of jackknife groups J; resampling is enabled for J > 1.
    n_lanes:
        Number of lanes. Defaults to the implicit-MT pool size, or 1 when
        implicit MT is disabled.
    """

    ACTION_NAME = "OversampledTH"

    def __init__(self,
                 name: str,
                 title: str,
                 n_bins: int,
                 x_min: float,
                 x_max: float,
                 oversampling_factor: float = 1.0,
                 jackknife_groups: int = 0,
                 n_lanes: Optional[int] = None):
        self.config = OversamplingConfig(
            name=name, title=title, n_bins=n_bins, x_min=x_min, x_max=x_max,
            oversampling_factor=oversampling_factor, jackknife_groups=jackknife_groups
        )
        self.n_lanes = resolve_lane_count(n_lanes)

        self._result = BinnedAccumulator(name, title, n_bins, x_min, x_max)
        self._partitioner = JackknifePartitioner(self._result, jackknife_groups)
        self._engine = WatermarkFlushEngine(
            self._result, self.n_lanes, oversampling_factor,
            partitioner=self._partitioner
        )
        self._estimator = JackknifeEstimator(self._partitioner, lock=self._engine.lock)

        self._initialized_tasks: List[int] = []
        self._start_time: Optional[float] = None
        self._finalize_time: Optional[float] = None

        if PRINT_RUNTIME_INFO:
            print(f"📊 {self.ACTION_NAME} '{name}' booked: {n_bins} bins in [{x_min}, {x_max}), "
                  f"oversampling={oversampling_factor}, lanes={self.n_lanes}, "
                  f"jackknife={'J=' + str(jackknife_groups) if self.jackknife_enabled else 'off'}")

    # ------------------------------------------------------------------
    # Host lifecycle
    # ------------------------------------------------------------------

    def get_result_ptr(self) -> BinnedAccumulator:
        """Shared final histogram; complete once the stream was finalized."""
        return self._result

    def initialize(self) -> None:
        self._start_time = time.perf_counter()

    def init_task(self, reader: Any, lane: int) -> None:
        if not 0 <= lane < self.n_lanes:
            raise IndexError(f"Lane {lane} out of range for {self.n_lanes} lanes")
        with self._engine.lock:
            self._initialized_tasks.append(lane)

    def exec(self, lane: int, event: int, values: Any, weight: float = 1.0) -> None:
        """Fill one scalar or every element of a sequence for ``event`` on ``lane``."""
        self._engine.record(lane, coerce_event_id(event), route_values(values), float(weight))

    def finalize(self) -> None:
        """Merge every pending event; rejected while jackknife groups are enabled."""
        n_flushed = self._engine.finalize()
        self._report_end_of_stream('finalize', n_flushed)

    def drain(self) -> None:
        """Flush every pending event individually (jackknife-safe end of stream)."""
        n_flushed = self._engine.drain()
        self._report_end_of_stream('drain', n_flushed)

    def flush(self) -> int:
        """Merge events under the current watermark."""
        return self._engine.flush()

    def get_action_name(self) -> str:
        return self.ACTION_NAME

    # ------------------------------------------------------------------
    # Jackknife
    # ------------------------------------------------------------------

    @property
    def jackknife_enabled(self) -> bool:
        return self.config.jackknife_enabled

    @property
    def group_event_counts(self):
        with self._engine.lock:
            return self._partitioner.event_counts

    def get_jackknife_covariance(self) -> BinnedMatrix:
        return self._estimator.covariance()

    def get_jackknife_average(self) -> BinnedAccumulator:
        return self._estimator.average()

    def get_jackknife_pseudo_totals(self) -> List[BinnedAccumulator]:
        return self._estimator.pseudo_totals()

    def get_jackknife_groups(self) -> List[BinnedAccumulator]:
        with self._engine.lock:
            return [group.clone() for group in self._partitioner.groups]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def engine(self) -> WatermarkFlushEngine:
        return self._engine

    def get_performance_stats(self) -> Dict[str, Any]:
        with self._engine.lock:
            stats = self._engine.stats.to_dict()
            stats.update({
                'n_lanes': self.n_lanes,
                'pending_events': len(self._engine),
                'watermark': self._engine.watermark,
                'jackknife_state': self._estimator.state.name,
                'group_event_counts': self._partitioner.event_counts,
                'initialized_tasks': len(self._initialized_tasks),
            })
        if self._start_time is not None and self._finalize_time is not None:
            stats['execution_time'] = self._finalize_time - self._start_time
        return stats

    def _report_end_of_stream(self, operation: str, n_flushed: int) -> None:
        self._finalize_time = time.perf_counter()
        if PRINT_RUNTIME_INFO:
            print(f"✅ {self.ACTION_NAME} '{self.config.name}' {operation}: "
                  f"{n_flushed} events drained, entries={self._result.get_entries():g}, "
                  f"integral={self._result.integral():g}")

    def __repr__(self) -> str:
        return (f"OversampledHistogram(name={self.config.name!r}, lanes={self.n_lanes}, "
                f"oversampling={self.config.oversampling_factor}, "
                f"jackknife_groups={self.config.jackknife_groups})")
