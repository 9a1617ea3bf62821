"""
Binned Accumulators
===================

Fixed-width 1-D weighted histogram storage and the N×N binned matrix that
carries jackknife covariances.

Bin numbering follows the usual HEP convention:
- bin 0: underflow
- bins 1..N: in range, [x_min, x_max) split into N equal-width bins
- bin N+1: overflow

Summary statistics (sum of weights, weighted first and second moments)
only include in-range fills; the entry count includes every fill.
"""

from __future__ import annotations
import math
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np
from numba import njit


# ============================================================================
# FILL KERNEL
# ============================================================================

@njit(cache=True)
def _fill_kernel(contents: np.ndarray,
                 sumw2: np.ndarray,
                 values: np.ndarray,
                 weights: np.ndarray,
                 x_min: float,
                 x_max: float,
                 n_bins: int) -> Tuple[float, float, float, float, float]:
    """
    Accumulate weighted values into ``contents`` (length n_bins + 2).

    Returns (entries, sumw, sumw2, sumwx, sumwx2). The entry count covers
    every non-NaN fill, the sums only the in-range ones; NaN values are
    ignored.
    """
    entries = 0.0
    tsumw = 0.0
    tsumw2 = 0.0
    tsumwx = 0.0
    tsumwx2 = 0.0
    width = (x_max - x_min) / n_bins

    for i in range(values.shape[0]):
        x = values[i]
        w = weights[i]
        if math.isnan(x):
            continue

        if x < x_min:
            b = 0
        elif x >= x_max:
            b = n_bins + 1
        else:
            b = int((x - x_min) / width) + 1
            if b > n_bins:
                b = n_bins

        contents[b] += w
        sumw2[b] += w * w
        entries += 1.0

        if 0 < b <= n_bins:
            tsumw += w
            tsumw2 += w * w
            tsumwx += w * x
            tsumwx2 += w * x * x

    return entries, tsumw, tsumw2, tsumwx, tsumwx2


# ============================================================================
# AXIS
# ============================================================================

@dataclass(frozen=True)
class BinAxis:
    """Equal-width binning of [x_min, x_max)."""
    n_bins: int
    x_min: float
    x_max: float

    def __post_init__(self):
        if self.n_bins < 1:
            raise ValueError(f"Invalid bin count: {self.n_bins}")
        if not self.x_max > self.x_min:
            raise ValueError(f"Invalid range: [{self.x_min}, {self.x_max})")

    @property
    def width(self) -> float:
        return (self.x_max - self.x_min) / self.n_bins

    @property
    def edges(self) -> np.ndarray:
        return np.linspace(self.x_min, self.x_max, self.n_bins + 1)

    @property
    def centers(self) -> np.ndarray:
        return self.x_min + (np.arange(1, self.n_bins + 1) - 0.5) * self.width

    def center(self, bin_index: int) -> float:
        return self.x_min + (bin_index - 0.5) * self.width

    def find_bin(self, x: float) -> int:
        if x < self.x_min:
            return 0
        if x >= self.x_max:
            return self.n_bins + 1
        return min(int((x - self.x_min) / self.width) + 1, self.n_bins)

    def check_compatible(self, other: BinAxis) -> None:
        if (self.n_bins, self.x_min, self.x_max) != (other.n_bins, other.x_min, other.x_max):
            raise ValueError(
                f"Incompatible binning: ({self.n_bins}, {self.x_min}, {self.x_max}) vs "
                f"({other.n_bins}, {other.x_min}, {other.x_max})"
            )


# ============================================================================
# 1-D ACCUMULATOR
# ============================================================================

class BinnedAccumulator:
    """
    Weighted 1-D histogram with per-bin sum of squared weights.

    Not thread-safe on its own; owners serialise access.
    """

    def __init__(self, name: str, title: str, n_bins: int, x_min: float, x_max: float):
        self.name = name
        self.title = title
        self.axis = BinAxis(int(n_bins), float(x_min), float(x_max))
        self._contents = np.zeros(self.axis.n_bins + 2, dtype=np.float64)
        self._sumw2 = np.zeros(self.axis.n_bins + 2, dtype=np.float64)
        self._entries = 0.0
        self._tsumw = 0.0
        self._tsumw2 = 0.0
        self._tsumwx = 0.0
        self._tsumwx2 = 0.0

    # ------------------------------------------------------------------
    # Filling
    # ------------------------------------------------------------------

    def fill(self, value: float, weight: float = 1.0) -> int:
        """Fill one value; returns the bin it landed in (-1 for NaN)."""
        self.fill_n([value], weight)
        if math.isnan(value):
            return -1
        return self.axis.find_bin(value)

    def fill_n(self, values, weights: Union[float, np.ndarray] = 1.0) -> None:
        """Fill many values, with one shared weight or one weight per value."""
        values = np.ascontiguousarray(values, dtype=np.float64).ravel()
        if values.size == 0:
            return
        weights = np.ascontiguousarray(
            np.broadcast_to(np.asarray(weights, dtype=np.float64), values.shape)
        )

        entries, tsumw, tsumw2, tsumwx, tsumwx2 = _fill_kernel(
            self._contents, self._sumw2, values, weights,
            self.axis.x_min, self.axis.x_max, self.axis.n_bins
        )
        self._entries += entries
        self._tsumw += tsumw
        self._tsumw2 += tsumw2
        self._tsumwx += tsumwx
        self._tsumwx2 += tsumwx2

    def reset(self) -> None:
        """Zero contents and statistics, keep the binning."""
        self._contents[:] = 0.0
        self._sumw2[:] = 0.0
        self._entries = 0.0
        self._tsumw = 0.0
        self._tsumw2 = 0.0
        self._tsumwx = 0.0
        self._tsumwx2 = 0.0

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def clone(self, name: Optional[str] = None) -> BinnedAccumulator:
        other = BinnedAccumulator.__new__(BinnedAccumulator)
        other.name = name if name is not None else self.name
        other.title = self.title
        other.axis = self.axis
        other._contents = self._contents.copy()
        other._sumw2 = self._sumw2.copy()
        other._entries = self._entries
        other._tsumw = self._tsumw
        other._tsumw2 = self._tsumw2
        other._tsumwx = self._tsumwx
        other._tsumwx2 = self._tsumwx2
        return other

    def add(self, other: BinnedAccumulator, scale: float = 1.0) -> None:
        """this += scale * other, bin by bin including flow bins."""
        self.axis.check_compatible(other.axis)
        self._contents += scale * other._contents
        self._sumw2 += scale * scale * other._sumw2
        self._entries = abs(self._entries + scale * other._entries)
        self._tsumw += scale * other._tsumw
        self._tsumw2 += scale * scale * other._tsumw2
        self._tsumwx += scale * other._tsumwx
        self._tsumwx2 += scale * other._tsumwx2

    def scale(self, factor: float) -> None:
        """Multiply contents by ``factor``; the entry count is unchanged."""
        self._contents *= factor
        self._sumw2 *= factor * factor
        self._tsumw *= factor
        self._tsumw2 *= factor * factor
        self._tsumwx *= factor
        self._tsumwx2 *= factor

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def n_bins(self) -> int:
        return self.axis.n_bins

    def get_bin_center(self, bin_index: int) -> float:
        return self.axis.center(bin_index)

    def get_bin_content(self, bin_index: int) -> float:
        return float(self._contents[bin_index])

    def get_bin_error(self, bin_index: int) -> float:
        return float(np.sqrt(self._sumw2[bin_index]))

    def find_bin(self, x: float) -> int:
        return self.axis.find_bin(x)

    def values(self, flow: bool = False) -> np.ndarray:
        """Copy of the bin contents (in-range only unless ``flow``)."""
        if flow:
            return self._contents.copy()
        return self._contents[1:-1].copy()

    def variances(self, flow: bool = False) -> np.ndarray:
        if flow:
            return self._sumw2.copy()
        return self._sumw2[1:-1].copy()

    def integral(self) -> float:
        """Sum of in-range bin contents."""
        return float(self._contents[1:-1].sum())

    def get_entries(self) -> float:
        return self._entries

    def get_sum_of_weights(self) -> float:
        return self._tsumw

    def get_mean(self) -> float:
        if self._tsumw == 0:
            return 0.0
        return self._tsumwx / self._tsumw

    def get_std_dev(self) -> float:
        if self._tsumw == 0:
            return 0.0
        mean = self._tsumwx / self._tsumw
        return math.sqrt(abs(self._tsumwx2 / self._tsumw - mean * mean))

    def get_effective_entries(self) -> float:
        if self._tsumw2 == 0:
            return 0.0
        return self._tsumw * self._tsumw / self._tsumw2

    def __repr__(self) -> str:
        return (f"BinnedAccumulator(name={self.name!r}, bins={self.n_bins}, "
                f"range=[{self.axis.x_min}, {self.axis.x_max}), entries={self._entries:g}, "
                f"integral={self.integral():g})")


# ============================================================================
# 2-D MATRIX
# ============================================================================

class BinnedMatrix:
    """N×N matrix whose two axes share one 1-D binning."""

    def __init__(self, name: str, title: str, axis: BinAxis,
                 values: Optional[np.ndarray] = None):
        self.name = name
        self.title = title
        self.axis = axis
        n = axis.n_bins
        if values is None:
            self._values = np.zeros((n, n), dtype=np.float64)
        else:
            values = np.asarray(values, dtype=np.float64)
            if values.shape != (n, n):
                raise ValueError(f"Matrix shape {values.shape} does not match {n} bins")
            self._values = values.copy()

    @property
    def n_bins(self) -> int:
        return self.axis.n_bins

    def get_bin_center(self, bin_index: int) -> float:
        return self.axis.center(bin_index)

    def get_bin_content(self, bin_x: int, bin_y: int) -> float:
        """Content at (bin_x, bin_y); flow bins are always 0."""
        n = self.axis.n_bins
        if not (1 <= bin_x <= n and 1 <= bin_y <= n):
            return 0.0
        return float(self._values[bin_x - 1, bin_y - 1])

    def clone(self, name: Optional[str] = None) -> BinnedMatrix:
        return BinnedMatrix(name if name is not None else self.name, self.title, self.axis, self._values)

    def values(self) -> np.ndarray:
        return self._values.copy()

    def diagonal(self) -> np.ndarray:
        return np.diag(self._values).copy()

    def correlation(self) -> np.ndarray:
        """Correlation matrix; rows/columns with zero variance give 0."""
        sigma = np.sqrt(np.clip(np.diag(self._values), 0.0, None))
        norm = np.outer(sigma, sigma)
        with np.errstate(divide='ignore', invalid='ignore'):
            return np.where(norm > 0, self._values / norm, 0.0)

    def __repr__(self) -> str:
        return f"BinnedMatrix(name={self.name!r}, shape={self._values.shape})"
