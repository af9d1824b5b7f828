"""Frequency bands and per-tick band energy accumulation.

A band is a static window of FFT bins derived once from its frequency
limits. Each audio tick the squared magnitudes of the bins inside a band
are summed into that band's accumulator; ``commit()`` hands the totals to
the rolling history and resets the accumulators.
"""

import logging
from collections import namedtuple

import numpy as np

logger = logging.getLogger(__name__)

# FFT bin resolution in Hz (sample rate / FFT size, 44100 / 16384 ~ 2.69)
DEFAULT_BIN_HZ = 2.69

FrequencyBand = namedtuple("FrequencyBand", "name low_hz high_hz activation_delta")

# Evaluation order matters: "total" must be seen before "kick"/"snareattack"
DEFAULT_BANDS = (
    FrequencyBand("midrange", 250.0, 2000.0, 0.025),
    FrequencyBand("total", 60.0, 2000.0, 0.05),
    FrequencyBand("kick", 40.0, 50.0, 0.001),
    FrequencyBand("snareattack", 1500.0, 2500.0, 0.001),
)


def freq_to_bin(freq_hz, bin_hz=DEFAULT_BIN_HZ):
    return int(freq_hz // bin_hz)


class BandEnergyTracker:
    """Accumulates squared spectrum magnitude per band."""

    def __init__(self, bands=DEFAULT_BANDS, bin_hz=DEFAULT_BIN_HZ):
        if not bin_hz > 0:
            raise ValueError(f"bin width must be positive, got {bin_hz}")
        self.bands = tuple(bands)
        self.bin_hz = bin_hz
        self.windows = {
            band.name: (freq_to_bin(band.low_hz, bin_hz), freq_to_bin(band.high_hz, bin_hz))
            for band in self.bands
        }
        self._energy = {band.name: 0.0 for band in self.bands}
        self._bad_input = False

    @property
    def band_names(self):
        return [band.name for band in self.bands]

    def energy(self, name):
        return self._energy[name]

    def accumulate(self, spectrum):
        """Add one spectrum frame's energy to every band it overlaps.

        Only bins 1 .. len/2 - 1 are considered (bin 0 is DC, the upper half
        mirrors the lower). An empty or non-finite spectrum zeroes this
        tick's energy instead of raising.
        """
        spectrum = np.asarray(spectrum, dtype=np.float64)
        if spectrum.ndim != 1 or spectrum.size == 0 or not np.all(np.isfinite(spectrum)):
            if not self._bad_input:
                logger.warning("Ignoring invalid spectrum frame (size=%d); tick counts as silence",
                               spectrum.size)
            self._bad_input = True
            self.reset()
            return
        self._bad_input = False

        last = spectrum.size // 2 - 1
        power = spectrum * spectrum
        for name, (low, high) in self.windows.items():
            lo = max(low, 1)
            hi = min(high, last)
            if hi < lo:
                continue
            self._energy[name] += float(power[lo:hi + 1].sum())

    def commit(self, history):
        """Push every band's energy into ``history`` and reset accumulators.

        Returns the per-band stats produced by the history.
        """
        stats = history.push_all(self._energy)
        self.reset()
        return stats

    def reset(self):
        for name in self._energy:
            self._energy[name] = 0.0
