"""
Jackknife Resampling
====================

Delete-one-group jackknife over flushed events.

Partitioning:
    Every individually flushed event is assigned, as one summed
    contribution, to the group with the fewest events (lowest index on
    ties). Groups therefore stay balanced and hold disjoint event sets,
    ordered by flush order rather than event id.

Estimation:
    pseudo_i   = J/(J-1) * Σ_{j≠i} group_j
    average    = (1/J) Σ_i pseudo_i
    cov[a, b]  = (J-1)/J * Σ_i (pseudo_i[a] - average[a]) * (pseudo_i[b] - average[b])

The (average, covariance) pair is cached and tagged with a CacheState;
every group assignment moves a valid cache to STALE.
"""

from __future__ import annotations
import threading
from typing import Callable, List, Optional, Tuple

import numpy as np
from numba import njit

from .binned_accumulator import BinnedAccumulator, BinnedMatrix
from .core_types import CacheState, UsageError


# ============================================================================
# COVARIANCE KERNEL
# ============================================================================

@njit(cache=True)
def _jackknife_covariance_kernel(pseudo: np.ndarray, average: np.ndarray) -> np.ndarray:
    """Jackknife covariance of the rows of ``pseudo`` (J × N) around ``average``."""
    n_groups = pseudo.shape[0]
    n_bins = pseudo.shape[1]
    cov = np.zeros((n_bins, n_bins))
    norm = (n_groups - 1) / n_groups

    for a in range(n_bins):
        for b in range(a, n_bins):
            acc = 0.0
            for i in range(n_groups):
                acc += (pseudo[i, a] - average[a]) * (pseudo[i, b] - average[b])
            cov[a, b] = norm * acc
            cov[b, a] = cov[a, b]

    return cov


# ============================================================================
# PARTITIONER
# ============================================================================

class JackknifePartitioner:
    """Balanced assignment of per-event contributions to J groups."""

    def __init__(self, template: BinnedAccumulator, n_groups: int):
        if n_groups < 0:
            raise ValueError(f"Invalid jackknife group count: {n_groups}")
        self.n_groups = n_groups
        self._groups: List[BinnedAccumulator] = []
        self._counts: List[int] = [0] * n_groups if n_groups > 1 else []
        self._listeners: List[Callable[[], None]] = []

        if self.enabled:
            for i in range(n_groups):
                group = template.clone(f"{template.name}_jackknife_group_{i}")
                group.reset()
                self._groups.append(group)

    @property
    def enabled(self) -> bool:
        return self.n_groups > 1

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after every group mutation."""
        self._listeners.append(callback)

    def assign(self, contribution: BinnedAccumulator) -> int:
        """Add one event's summed contribution to the least-populated group."""
        if not self.enabled:
            raise UsageError("Jackknife partitioning is disabled", operation='assign')

        index = self._counts.index(min(self._counts))
        self._groups[index].add(contribution)
        self._counts[index] += 1

        for callback in self._listeners:
            callback()
        return index

    @property
    def groups(self) -> List[BinnedAccumulator]:
        return list(self._groups)

    @property
    def event_counts(self) -> Tuple[int, ...]:
        return tuple(self._counts)

    @property
    def total_events(self) -> int:
        return sum(self._counts)


# ============================================================================
# ESTIMATOR
# ============================================================================

class JackknifeEstimator:
    """
    Lazily computed jackknife average, pseudo-totals and covariance.

    Accessors hand out copies; the cached objects never leave the estimator.
    """

    def __init__(self, partitioner: JackknifePartitioner, lock: Optional[threading.RLock] = None):
        self._partitioner = partitioner
        self._lock = lock if lock is not None else threading.RLock()
        self.state = CacheState.EMPTY

        self._average: Optional[BinnedAccumulator] = None
        self._covariance: Optional[BinnedMatrix] = None
        self._pseudo_totals: List[BinnedAccumulator] = []

        partitioner.subscribe(self.invalidate)

    def invalidate(self) -> None:
        if self.state is CacheState.VALID:
            self.state = CacheState.STALE

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def covariance(self) -> BinnedMatrix:
        self._require_enabled('covariance')
        with self._lock:
            if self.state is not CacheState.VALID:
                self._compute()
            return self._covariance.clone()

    def pseudo_totals(self) -> List[BinnedAccumulator]:
        self._require_enabled('pseudo_totals')
        with self._lock:
            if self.state is not CacheState.VALID:
                self._compute()
            return [pseudo.clone() for pseudo in self._pseudo_totals]

    def average(self) -> BinnedAccumulator:
        """Average of the pseudo-totals; only available once a covariance was computed."""
        self._require_enabled('average')
        with self._lock:
            if self.state is CacheState.EMPTY:
                raise UsageError(
                    "Jackknife average not yet available: compute the covariance first",
                    operation='average'
                )
            if self.state is CacheState.STALE:
                self._compute()
            return self._average.clone()

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def _require_enabled(self, operation: str) -> None:
        if not self._partitioner.enabled:
            raise UsageError(
                f"Jackknife resampling is disabled (groups={self._partitioner.n_groups})",
                operation=operation
            )

    def _compute(self) -> None:
        groups = self._partitioner.groups
        n_groups = len(groups)
        template = groups[0]
        base_name = template.name.rsplit('_jackknife_group_', 1)[0]
        factor = n_groups / (n_groups - 1)

        pseudo_totals = []
        for i in range(n_groups):
            pseudo = template.clone(f"{base_name}_jackknife_pseudo_{i}")
            pseudo.reset()
            for j, group in enumerate(groups):
                if j != i:
                    pseudo.add(group)
            pseudo.scale(factor)
            pseudo_totals.append(pseudo)

        average = template.clone(f"{base_name}_jackknife_average")
        average.reset()
        for pseudo in pseudo_totals:
            average.add(pseudo)
        average.scale(1.0 / n_groups)

        pseudo_values = np.stack([pseudo.values() for pseudo in pseudo_totals])
        cov_values = _jackknife_covariance_kernel(pseudo_values, average.values())

        self._pseudo_totals = pseudo_totals
        self._average = average
        self._covariance = BinnedMatrix(
            f"{base_name}_jackknife_covariance",
            f"{average.title} jackknife covariance",
            average.axis,
            cov_values
        )
        self.state = CacheState.VALID
