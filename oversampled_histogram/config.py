"""
Runtime Configuration
=====================

Process-wide implicit multi-threading switch and the validated
construction parameters of an oversampled histogram.

The lane count of an action follows the host convention: when implicit
multi-threading is enabled every action gets one lane per pool thread,
otherwise a single lane.
"""

import math
import os
import threading
from dataclasses import dataclass
from typing import Optional

import psutil

# Set OVERSAMPLED_VERBOSE=1 to enable runtime prints (quiet by default)
PRINT_RUNTIME_INFO = os.environ.get('OVERSAMPLED_VERBOSE', '0') == '1'

NUM_THREADS_ENV = 'OVERSAMPLED_NUM_THREADS'

_implicit_mt_lock = threading.Lock()
_thread_pool_size = 0  # 0 means implicit MT disabled
_PRINTED_IMPLICIT_MT = False


def enable_implicit_mt(n_threads: int = 0) -> int:
    """
    Enable implicit multi-threading for subsequently created actions.

    With ``n_threads == 0`` the pool size is taken from
    ``OVERSAMPLED_NUM_THREADS`` if set, otherwise from the logical CPU count.
    Returns the pool size in effect.
    """
    global _thread_pool_size, _PRINTED_IMPLICIT_MT
    if n_threads < 0:
        raise ValueError(f"Invalid thread count: {n_threads}")

    if n_threads == 0:
        env_value = os.environ.get(NUM_THREADS_ENV)
        if env_value:
            try:
                n_threads = int(env_value)
            except ValueError:
                raise ValueError(f"{NUM_THREADS_ENV} must be an integer, got {env_value!r}")
        else:
            n_threads = psutil.cpu_count(logical=True) or 1
    n_threads = max(1, n_threads)

    with _implicit_mt_lock:
        _thread_pool_size = n_threads

    if PRINT_RUNTIME_INFO and not _PRINTED_IMPLICIT_MT:
        print(f"🔧 Implicit MT enabled with {n_threads} threads")
        _PRINTED_IMPLICIT_MT = True
    return n_threads


def disable_implicit_mt() -> None:
    """Disable implicit multi-threading; new actions get a single lane."""
    global _thread_pool_size
    with _implicit_mt_lock:
        _thread_pool_size = 0


def is_implicit_mt_enabled() -> bool:
    with _implicit_mt_lock:
        return _thread_pool_size > 0


def get_thread_pool_size() -> int:
    """Pool size, or 0 while implicit MT is disabled."""
    with _implicit_mt_lock:
        return _thread_pool_size


def resolve_lane_count(n_lanes: Optional[int] = None) -> int:
    """Lane count for a new action: explicit value, else pool size, else 1."""
    if n_lanes is not None:
        if n_lanes < 1:
            raise ValueError(f"Invalid lane count: {n_lanes}")
        return int(n_lanes)
    pool_size = get_thread_pool_size()
    return pool_size if pool_size > 0 else 1


@dataclass(frozen=True)
class OversamplingConfig:
    """Construction parameters of an oversampled histogram."""
    name: str
    title: str
    n_bins: int
    x_min: float
    x_max: float
    oversampling_factor: float = 1.0
    jackknife_groups: int = 0

    def __post_init__(self):
        if self.n_bins < 1:
            raise ValueError(f"Invalid bin count: {self.n_bins}")
        if not (math.isfinite(self.x_min) and math.isfinite(self.x_max)) or self.x_max <= self.x_min:
            raise ValueError(f"Invalid range: [{self.x_min}, {self.x_max})")
        if not math.isfinite(self.oversampling_factor) or self.oversampling_factor <= 0:
            raise ValueError(f"Invalid oversampling factor: {self.oversampling_factor}")
        if self.jackknife_groups < 0:
            raise ValueError(f"Invalid jackknife group count: {self.jackknife_groups}")

    @property
    def jackknife_enabled(self) -> bool:
        return self.jackknife_groups > 1
