from __future__ import annotations
from typing import Dict, Iterator, List, Optional, Tuple

from .binned_accumulator import BinnedAccumulator

LaneAccumulators = Dict[int, BinnedAccumulator]


class PendingEventTable:
    """
    Per-event merge buffer: event id -> (lane -> transient accumulator).

    Each lane that touches an event gets its own accumulator, created
    empty from the template binning on first touch. Entries leave the
    table only through the ``pop_*`` methods, which hand ownership of the
    accumulators to the caller.

    The table does no locking; the flush engine holds its lock around
    every call.
    """

    def __init__(self, template: BinnedAccumulator):
        self._template = template
        self._events: Dict[int, LaneAccumulators] = {}

    def accumulator_for(self, event_id: int, lane: int) -> BinnedAccumulator:
        lanes = self._events.get(event_id)
        if lanes is None:
            lanes = self._events[event_id] = {}
        accumulator = lanes.get(lane)
        if accumulator is None:
            accumulator = self._template.clone(f"{self._template.name}_e{event_id}_l{lane}")
            accumulator.reset()
            lanes[lane] = accumulator
        return accumulator

    def pop_below(self, boundary: int) -> List[Tuple[int, LaneAccumulators]]:
        """Remove and return every event with id < boundary, ascending."""
        ready = sorted(event_id for event_id in self._events if event_id < boundary)
        return [(event_id, self._events.pop(event_id)) for event_id in ready]

    def pop_all(self) -> List[Tuple[int, LaneAccumulators]]:
        ready = sorted(self._events)
        drained = [(event_id, self._events[event_id]) for event_id in ready]
        self._events.clear()
        return drained

    def lanes_for(self, event_id: int) -> Optional[List[int]]:
        lanes = self._events.get(event_id)
        return sorted(lanes) if lanes is not None else None

    def event_ids(self) -> List[int]:
        return sorted(self._events)

    def __contains__(self, event_id: int) -> bool:
        return event_id in self._events

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[int]:
        return iter(self.event_ids())
