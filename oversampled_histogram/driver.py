"""
Lane Driver
===========

Minimal host event loop for booked actions over a polars frame.

The frame is sorted by event id and split into chunks of whole events.
One worker per lane pulls chunks from a FIFO queue in ascending order,
so every lane sees non-decreasing event ids, and routes each row to
every booked action. At end of stream, plain actions are finalized and
jackknife actions are drained event by event.
"""

from __future__ import annotations
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import polars as pl

from .action import OversampledHistogram
from .config import PRINT_RUNTIME_INFO

_CHUNK_COLUMN = "__lane_chunk__"


@dataclass
class DriverReport:
    """Summary of one event loop."""
    n_rows: int
    n_events: int
    n_chunks: int
    n_lanes: int
    execution_time: float
    rows_per_lane: Dict[int, int] = field(default_factory=dict)

    @property
    def throughput_rps(self) -> float:
        """Rows per second."""
        if self.execution_time > 0:
            return self.n_rows / self.execution_time
        return 0.0


class LaneDriver:
    """Runs booked actions over a frame of (event, value[, weight]) rows."""

    def __init__(self,
                 frame: Union[pl.DataFrame, pl.LazyFrame],
                 value_column: str,
                 event_column: str = "event",
                 weight_column: Optional[str] = None,
                 n_lanes: Optional[int] = None,
                 chunk_events: Optional[int] = None):
        if n_lanes is not None and n_lanes < 1:
            raise ValueError(f"Invalid lane count: {n_lanes}")
        if chunk_events is not None and chunk_events < 1:
            raise ValueError(f"Invalid chunk size: {chunk_events}")

        self._frame = frame
        self.value_column = value_column
        self.event_column = event_column
        self.weight_column = weight_column
        self.n_lanes = n_lanes
        self.chunk_events = chunk_events
        self._actions: List[OversampledHistogram] = []

    def book(self, action: OversampledHistogram) -> OversampledHistogram:
        """Register an action for the next run; returns it for chaining."""
        self._actions.append(action)
        return action

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------

    def run(self) -> DriverReport:
        if not self._actions:
            raise ValueError("No actions booked")

        n_lanes = self._resolve_lanes()
        chunks = self._split_chunks(n_lanes)
        n_rows = sum(chunk.height for chunk in chunks)
        n_events = sum(chunk[self.event_column].n_unique() for chunk in chunks)

        work: "queue.Queue[pl.DataFrame]" = queue.Queue()
        for chunk in chunks:
            work.put(chunk)

        rows_per_lane = {lane: 0 for lane in range(n_lanes)}
        counter_lock = threading.Lock()

        def lane_loop(lane: int) -> None:
            for action in self._actions:
                action.init_task(None, lane)
            while True:
                try:
                    chunk = work.get_nowait()
                except queue.Empty:
                    return
                n_processed = self._process_chunk(lane, chunk)
                with counter_lock:
                    rows_per_lane[lane] += n_processed

        for action in self._actions:
            action.initialize()

        start = time.perf_counter()
        with ThreadPoolExecutor(max_workers=n_lanes, thread_name_prefix="lane") as executor:
            futures = [executor.submit(lane_loop, lane) for lane in range(n_lanes)]
            for future in futures:
                future.result()

        for action in self._actions:
            if action.jackknife_enabled:
                action.drain()
            else:
                action.finalize()
        elapsed = time.perf_counter() - start

        report = DriverReport(
            n_rows=n_rows,
            n_events=n_events,
            n_chunks=len(chunks),
            n_lanes=n_lanes,
            execution_time=elapsed,
            rows_per_lane=rows_per_lane,
        )
        if PRINT_RUNTIME_INFO:
            print(f"🚀 Event loop: {n_rows:,} rows / {n_events:,} events in {len(chunks)} chunks "
                  f"on {n_lanes} lanes, {elapsed:.3f}s ({report.throughput_rps:,.0f} rows/s)")
        return report

    def _resolve_lanes(self) -> int:
        smallest = min(action.n_lanes for action in self._actions)
        n_lanes = self.n_lanes if self.n_lanes is not None else smallest
        if n_lanes > smallest:
            raise ValueError(f"Driver uses {n_lanes} lanes but an action only has {smallest}")
        return n_lanes

    def _split_chunks(self, n_lanes: int) -> List[pl.DataFrame]:
        frame = self._frame
        if isinstance(frame, pl.LazyFrame):
            frame = frame.collect()

        columns = [self.event_column, self.value_column]
        if self.weight_column is not None:
            columns.append(self.weight_column)
        frame = frame.select(columns).sort(self.event_column, maintain_order=True)
        if frame.height == 0:
            return []

        n_events = frame[self.event_column].n_unique()
        chunk_events = self.chunk_events or max(1, n_events // (4 * n_lanes))

        frame = frame.with_columns(
            ((pl.col(self.event_column).rank("dense") - 1) // chunk_events).alias(_CHUNK_COLUMN)
        )
        return [
            chunk.drop(_CHUNK_COLUMN)
            for chunk in frame.partition_by(_CHUNK_COLUMN, maintain_order=True)
        ]

    def _process_chunk(self, lane: int, chunk: pl.DataFrame) -> int:
        events = chunk[self.event_column].to_list()
        values = chunk[self.value_column].to_list()
        if self.weight_column is not None:
            weights = chunk[self.weight_column].to_list()
        else:
            weights = [1.0] * chunk.height

        n_processed = 0
        for event, value, weight in zip(events, values, weights):
            if event is None or value is None or weight is None:
                continue
            for action in self._actions:
                action.exec(lane, event, value, weight)
            n_processed += 1
        return n_processed
