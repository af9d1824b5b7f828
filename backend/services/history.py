"""Fixed-length rolling energy history per frequency band."""

import math
from collections import namedtuple

import numpy as np

HISTORY_LENGTH = 16

BandStats = namedtuple("BandStats", "current previous delta mean stddev peak")


class RollingStatistics:
    """Circular buffer of the last H per-tick energies for each band.

    The analysis loop records every band once per tick through
    ``push_all()``, which keeps all write indices in lockstep.
    """

    def __init__(self, band_names, length=HISTORY_LENGTH):
        if length < 2:
            raise ValueError("history length must be at least 2")
        self.length = length
        self._history = {name: np.zeros(length, dtype=np.float64) for name in band_names}
        self._index = {name: 0 for name in band_names}

    @property
    def band_names(self):
        return list(self._history)

    def write_index(self, band):
        return self._index[band]

    def history(self, band):
        """Return a copy of the band's window, oldest value first."""
        return np.roll(self._history[band], -self._index[band])

    def push(self, band, value):
        """Overwrite the slot at the band's write index and advance it."""
        index = self._index[band]
        self._history[band][index] = value
        self._index[band] = (index + 1) % self.length

    def push_all(self, values):
        """Record one tick for every band and return their stats."""
        missing = set(self._history) - set(values)
        if missing:
            raise KeyError(f"no value for band(s): {', '.join(sorted(missing))}")
        for band in self._history:
            self.push(band, values[band])
        return {band: self.stats(band) for band in self._history}

    def stats(self, band):
        """Stats for the most recently pushed value of ``band``.

        ``previous`` is the value pushed one tick earlier; mean and stddev
        use the population formula over the whole window.
        """
        window = self._history[band]
        current_slot = (self._index[band] - 1) % self.length
        current = float(window[current_slot])
        previous = float(window[(current_slot - 1) % self.length])
        mean = float(window.mean())
        variance = float(((window - mean) ** 2).sum()) / self.length
        if not variance > 0.0:
            # also catches NaN
            variance = 0.0
        return BandStats(
            current=current,
            previous=previous,
            delta=current - previous,
            mean=mean,
            stddev=math.sqrt(variance),
            peak=float(window.max()),
        )
