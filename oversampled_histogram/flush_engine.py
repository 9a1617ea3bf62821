"""
Watermark Flush Engine
======================

Streams per-event contributions from N lanes into one final histogram.

Each lane delivers its events in non-decreasing id order, so the minimum
of the lanes' current event ids is a safe low watermark: no lane can
still produce a contribution for an id below it. Every pending event
under the watermark is merged into the final result, scaled by
1/oversampling_factor, and its transient accumulators are dropped.

Locking:
    One re-entrant lock guards the pending table, the lane state, the
    final result and the jackknife groups. Every public method takes it.
"""

from __future__ import annotations
import threading
import warnings
from typing import Dict, List, Optional, Tuple

import numpy as np

from .binned_accumulator import BinnedAccumulator
from .core_types import NO_EVENT, FlushStatistics, UsageError
from .jackknife import JackknifePartitioner
from .merge_buffer import LaneAccumulators, PendingEventTable


class WatermarkFlushEngine:
    """Per-event deduplication and watermark-driven merging across lanes."""

    def __init__(self,
                 result: BinnedAccumulator,
                 n_lanes: int,
                 oversampling_factor: float = 1.0,
                 partitioner: Optional[JackknifePartitioner] = None):
        if n_lanes < 1:
            raise ValueError(f"Invalid lane count: {n_lanes}")
        if oversampling_factor <= 0:
            raise ValueError(f"Invalid oversampling factor: {oversampling_factor}")

        self.lock = threading.RLock()
        self.n_lanes = n_lanes
        self.oversampling_factor = float(oversampling_factor)
        self._result = result
        self._partitioner = partitioner
        self._pending = PendingEventTable(result)
        self._lane_events: List[int] = [NO_EVENT] * n_lanes
        self._last_flushed = NO_EVENT
        self._warned_idle_lanes = False
        self.stats = FlushStatistics()

    # ------------------------------------------------------------------
    # Contributions
    # ------------------------------------------------------------------

    def record(self, lane: int, event_id: int, values: np.ndarray, weight: float = 1.0) -> None:
        """Fill ``values`` into the (event, lane) accumulator and advance the lane."""
        if not 0 <= lane < self.n_lanes:
            raise IndexError(f"Lane {lane} out of range for {self.n_lanes} lanes")
        if len(values) == 0:
            return

        with self.lock:
            self._pending.accumulator_for(event_id, lane).fill_n(values, weight)
            self.stats.contributions += len(values)
            if len(self._pending) > self.stats.peak_pending_events:
                self.stats.peak_pending_events = len(self._pending)

            if event_id != self._lane_events[lane]:
                self._lane_events[lane] = event_id
                self.stats.lane_switches[lane] = self.stats.lane_switches.get(lane, 0) + 1
                self._flush_below(min(self._lane_events))

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def flush(self) -> int:
        """Merge every pending event under the current watermark; returns the count."""
        with self.lock:
            return self._flush_below(min(self._lane_events))

    def finalize(self) -> int:
        """
        Merge every remaining pending event, regardless of the watermark.

        Bulk merging bypasses per-event group assignment, so this is
        rejected while jackknife partitioning is enabled; use ``drain``.
        """
        if self.jackknife_enabled:
            raise UsageError(
                "Forced finalize is not allowed with jackknife partitioning enabled; "
                "use drain() to flush events one at a time",
                operation='finalize'
            )

        with self.lock:
            self._warn_idle_lanes()
            drained = self._pending.pop_all()
            for event_id, lanes in drained:
                for accumulator in lanes.values():
                    self._result.add(accumulator, 1.0 / self.oversampling_factor)
                self._last_flushed = max(self._last_flushed, event_id)
            if drained:
                self.stats.forced_drains += 1
                self.stats.events_flushed += len(drained)
            return len(drained)

    def drain(self) -> int:
        """Flush every remaining event one at a time, in ascending id order."""
        with self.lock:
            self._warn_idle_lanes()
            drained = self._pending.pop_all()
            for event_id, lanes in drained:
                self._merge_event(event_id, lanes)
            if drained:
                self.stats.forced_drains += 1
                self.stats.events_flushed += len(drained)
            return len(drained)

    def _flush_below(self, boundary: int) -> int:
        # Everything up to the last flushed id is already merged.
        if self._last_flushed >= boundary - 1:
            return 0

        ready = self._pending.pop_below(boundary)
        for event_id, lanes in ready:
            self._merge_event(event_id, lanes)

        if ready:
            self.stats.flush_passes += 1
            self.stats.events_flushed += len(ready)
        return len(ready)

    def _merge_event(self, event_id: int, lanes: LaneAccumulators) -> None:
        scale = 1.0 / self.oversampling_factor

        if self.jackknife_enabled:
            accumulators = [lanes[lane] for lane in sorted(lanes)]
            contribution = accumulators[0]
            for accumulator in accumulators[1:]:
                contribution.add(accumulator)
            self._partitioner.assign(contribution)
            self._result.add(contribution, scale)
        else:
            for accumulator in lanes.values():
                self._result.add(accumulator, scale)

        self._last_flushed = max(self._last_flushed, event_id)

    def _warn_idle_lanes(self) -> None:
        if self._warned_idle_lanes or self.stats.contributions == 0:
            return
        idle = sum(1 for event_id in self._lane_events if event_id == NO_EVENT)
        if idle:
            warnings.warn(
                f"{idle} of {self.n_lanes} lanes received no contributions; "
                f"all {len(self._pending)} pending events were held until end of stream"
            )
            self._warned_idle_lanes = True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def jackknife_enabled(self) -> bool:
        return self._partitioner is not None and self._partitioner.enabled

    @property
    def watermark(self) -> int:
        """Highest event id merged so far (-1 before any flush)."""
        with self.lock:
            return self._last_flushed

    @property
    def lane_events(self) -> Tuple[int, ...]:
        with self.lock:
            return tuple(self._lane_events)

    @property
    def pending_event_ids(self) -> List[int]:
        with self.lock:
            return self._pending.event_ids()

    @property
    def pending_lanes(self) -> Dict[int, List[int]]:
        with self.lock:
            return {event_id: self._pending.lanes_for(event_id) for event_id in self._pending}

    def __len__(self) -> int:
        with self.lock:
            return len(self._pending)
