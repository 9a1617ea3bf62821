# oversampled_histogram/__init__.py
from __future__ import annotations
from .action import OversampledHistogram, classify_value, coerce_event_id, route_values
from .binned_accumulator import BinAxis, BinnedAccumulator, BinnedMatrix
from .config import (
    OversamplingConfig,
    enable_implicit_mt, disable_implicit_mt,
    is_implicit_mt_enabled, get_thread_pool_size, resolve_lane_count,
)
from .core_types import NO_EVENT, CacheState, FlushStatistics, UsageError, ValueKind
from .driver import DriverReport, LaneDriver
from .flush_engine import WatermarkFlushEngine
from .jackknife import JackknifeEstimator, JackknifePartitioner
from .merge_buffer import PendingEventTable

__all__ = [
    'OversampledHistogram',
    'classify_value',
    'route_values',
    'coerce_event_id',
    'BinAxis',
    'BinnedAccumulator',
    'BinnedMatrix',
    'OversamplingConfig',
    'enable_implicit_mt',
    'disable_implicit_mt',
    'is_implicit_mt_enabled',
    'get_thread_pool_size',
    'resolve_lane_count',
    'NO_EVENT',
    'CacheState',
    'FlushStatistics',
    'UsageError',
    'ValueKind',
    'DriverReport',
    'LaneDriver',
    'WatermarkFlushEngine',
    'JackknifeEstimator',
    'JackknifePartitioner',
    'PendingEventTable',
]
