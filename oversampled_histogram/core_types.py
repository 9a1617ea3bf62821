from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Optional

# Lane state before the lane has seen any event. Event ids are non-negative
# integers; the action rejects non-integral ids.
NO_EVENT = -1


# ============================================================================
# EXCEPTIONS
# ============================================================================

class UsageError(RuntimeError):
    """Operation requested in a state where it is not allowed."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


# ============================================================================
# STATE TAGS
# ============================================================================

class ValueKind(Enum):
    """Shape of a value handed to the action."""
    SCALAR = auto()
    SEQUENCE = auto()


class CacheState(Enum):
    """Jackknife cache state."""
    EMPTY = auto()    # never computed
    VALID = auto()    # matches the current groups
    STALE = auto()    # groups changed since the last computation


# ============================================================================
# FLUSH METRICS
# ============================================================================

@dataclass
class FlushStatistics:
    """Counters collected by the flush engine."""
    contributions: int = 0
    flush_passes: int = 0
    events_flushed: int = 0
    forced_drains: int = 0
    peak_pending_events: int = 0
    lane_switches: Dict[int, int] = field(default_factory=dict)

    @property
    def events_per_pass(self) -> float:
        if self.flush_passes > 0:
            return self.events_flushed / self.flush_passes
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'contributions': self.contributions,
            'flush_passes': self.flush_passes,
            'events_flushed': self.events_flushed,
            'events_per_pass': self.events_per_pass,
            'forced_drains': self.forced_drains,
            'peak_pending_events': self.peak_pending_events,
            'lane_switches': dict(self.lane_switches),
        }
