"""Musical event detection from per-band energy statistics.

Runs once per audio tick: the spectrum is folded into band energies, the
rolling history produces per-band stats, and threshold rules raise sticky
flags on the shared DetectionState:

  total        one-tick "peak" pulse when energy turns down after a local
               maximum; a "drop" when that maximum was also a big jump out
               of a quiet stretch
  kick         kick onset pending
  snareattack  snare onset pending

The light sequencer consumes (and clears) the pending flags on its own,
slower tick.
"""

import logging
import threading

from services.bands import DEFAULT_BANDS, BandEnergyTracker
from services.history import HISTORY_LENGTH, RollingStatistics

logger = logging.getLogger(__name__)

SILENCE_VOLUME = 0.01
MIN_ONSET_ENERGY = 0.001
MIN_DROP_ENERGY = 0.26
DROP_JUMP_FACTOR = 3.0


class DetectionState:
    """Flags shared between the audio tick and the light tick.

    ``lock`` must be held by whichever tick is reading or writing.
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.total_max_possible = False
        self.total_max = False
        self.drop_possible = False
        self.drop = False
        self.kick_pending = False
        self.snare_pending = False
        # True until a non-silent audio sample arrives in the current light window
        self.silence = True
        self.volume = 0.0

    def snapshot(self):
        return {
            "total_max_possible": self.total_max_possible,
            "total_max": self.total_max,
            "drop_possible": self.drop_possible,
            "drop": self.drop,
            "kick_pending": self.kick_pending,
            "snare_pending": self.snare_pending,
            "silence": self.silence,
            "volume": self.volume,
        }


def probe(band, stats):
    return "band:%s cur:%.4f avg:%.4f sd:%.4f delta:%.4f" % (
        band, stats.current, stats.mean, stats.stddev, stats.delta)


class EventDetector:
    """Turns spectrum frames into edge-triggered events on a DetectionState."""

    def __init__(self, config, state, bands=DEFAULT_BANDS, history_length=HISTORY_LENGTH):
        self.config = config
        self.state = state
        self.tracker = BandEnergyTracker(bands, config.fft_bin_hz)
        self.history = RollingStatistics(self.tracker.band_names, history_length)

    def process(self, spectrum, volume):
        """Run one audio tick: accumulate, commit, detect.

        The caller must hold ``state.lock``. Returns the per-band stats.
        """
        self.tracker.accumulate(spectrum)
        stats = self.tracker.commit(self.history)
        self.detect(stats)
        self.state.volume = volume
        self.state.silence = volume < SILENCE_VOLUME and self.state.silence
        return stats

    def detect(self, stats):
        thresholds = self.config.thresholds()
        if "total" in stats:
            self._detect_total(stats["total"], thresholds)
        if "kick" in stats:
            s = stats["kick"]
            if self._onset(s, thresholds["kick_t"], thresholds["kick_q"]):
                if self.state.total_max:
                    logger.debug(probe("kick", s))
                self.state.kick_pending = True
        if "snareattack" in stats:
            s = stats["snareattack"]
            if self._onset(s, thresholds["snare_t"], thresholds["snare_q"]):
                if self.state.total_max:
                    logger.debug(probe("snareattack", s))
                self.state.snare_pending = True

    def _detect_total(self, s, thresholds):
        state = self.state
        if state.total_max_possible and s.delta < 0:
            state.total_max = True
            state.total_max_possible = False
            if state.drop_possible:
                state.drop = True
                state.drop_possible = False
                logger.info("Drop detected")

        if s.current >= s.peak and s.current > s.mean + thresholds["peak_c"] * s.stddev:
            if (s.current > DROP_JUMP_FACTOR * s.mean
                    and s.mean < thresholds["drop_q"]
                    and s.delta > thresholds["drop_t"]
                    and s.current > MIN_DROP_ENERGY):
                logger.debug(probe("total", s))
                state.drop_possible = True
            state.total_max_possible = True
        else:
            state.drop_possible = False
            state.total_max_possible = False

    @staticmethod
    def _onset(s, stddev_factor, mean_ceiling):
        return (s.current > s.mean + stddev_factor * s.stddev
                and s.mean < mean_ceiling
                and s.current > MIN_ONSET_ENERGY)
