"""PCM pipe reader producing one spectrum frame per audio tick.

Reads 16-bit signed little-endian stereo PCM from a named pipe (e.g. the
output of librespot, snapclient or ``parec --format=s16le > fifo``), mixes
it to mono and keeps a rolling FFT_SIZE window. Every HOP_SIZE new samples
an AudioFrame is published:

  spectrum  full-length FFT magnitude of the Hann-windowed window, divided
            by FFT_SIZE (bin 0 is DC, the upper half mirrors the lower)
  volume    peak absolute sample of the newest hop, 0-1

The pipe is reopened whenever the writer goes away, so the visualizer can
be enabled before any audio is playing.
"""

import logging
import os
import select
import threading
import time
from collections import namedtuple

import numpy as np

logger = logging.getLogger(__name__)

# -- Audio constants -------------------------------------------------------
SAMPLE_RATE = 44100
CHANNELS = 2
BYTES_PER_SAMPLE = 2  # 16-bit signed LE
FFT_SIZE = 16384  # 44100 / 16384 ~ 2.69 Hz per bin
HOP_SIZE = 1024  # ~23 ms of new audio per frame
FULL_SCALE = 32768.0

POLL_TIMEOUT = 0.1  # seconds to wait for pipe data per call
REOPEN_DELAY = 0.5  # seconds to back off after EOF / missing pipe

AudioFrame = namedtuple("AudioFrame", "spectrum volume")


class AudioInput:
    """Turns a PCM pipe into AudioFrames.

    In inline mode ``next_frame()`` reads the pipe itself; with
    ``separate_thread=True`` a reader thread does that and ``next_frame()``
    just waits for the next published frame.
    """

    def __init__(self, pipe_path, fft_size=FFT_SIZE, hop_size=HOP_SIZE, separate_thread=False):
        if fft_size % 2 or hop_size <= 0 or hop_size > fft_size:
            raise ValueError("fft_size must be even and hop_size within (0, fft_size]")
        self.pipe_path = pipe_path
        self.fft_size = fft_size
        self.hop_size = hop_size
        self.separate_thread = separate_thread
        self._hop_bytes = hop_size * CHANNELS * BYTES_PER_SAMPLE
        self._ring = np.zeros(fft_size, dtype=np.float64)
        self._window = np.hanning(fft_size)
        self._partial = bytearray()
        self._fd = None
        self._cond = threading.Condition()
        self._frame = None
        self._published = 0
        self._consumed = 0
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def connected(self):
        return self._fd is not None

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, samples):
        """Push mono samples (float, full scale = 1.0) and return a frame."""
        samples = np.asarray(samples, dtype=np.float64)
        n = len(samples)
        if n >= self.fft_size:
            self._ring[:] = samples[-self.fft_size:]
        elif n:
            self._ring = np.roll(self._ring, -n)
            self._ring[-n:] = samples
        spectrum = np.abs(np.fft.fft(self._ring * self._window)) / self.fft_size
        volume = float(np.max(np.abs(samples))) if n else 0.0
        return AudioFrame(spectrum, min(volume, 1.0))

    def publish(self, frame):
        with self._cond:
            self._frame = frame
            self._published += 1
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Consumer API
    # ------------------------------------------------------------------

    def next_frame(self, timeout=POLL_TIMEOUT):
        """Return the newest frame not yet handed out, or None after ``timeout``.

        Frames published faster than they are consumed are skipped; only the
        latest one is returned.
        """
        if not self.separate_thread:
            self.update(timeout)
        with self._cond:
            if self._published == self._consumed and self.separate_thread:
                self._cond.wait(timeout)
            if self._published == self._consumed:
                return None
            self._consumed = self._published
            return self._frame

    # ------------------------------------------------------------------
    # Pipe reader
    # ------------------------------------------------------------------

    def update(self, timeout=POLL_TIMEOUT):
        """Read up to one hop from the pipe; publish a frame when a hop completes.

        Returns True if a frame was published.
        """
        if self._fd is None and not self._open():
            return False

        ready, _, _ = select.select([self._fd], [], [], timeout)
        if not ready:
            return False
        try:
            data = os.read(self._fd, self._hop_bytes - len(self._partial))
        except BlockingIOError:
            return False
        except OSError as exc:
            logger.warning("Audio pipe read failed: %s", exc)
            self._close()
            return False
        if not data:
            logger.info("Audio pipe writer closed, waiting to reconnect")
            self._close()
            time.sleep(REOPEN_DELAY)
            return False

        self._partial.extend(data)
        if len(self._partial) < self._hop_bytes:
            return False
        raw = bytes(self._partial)
        self._partial.clear()
        stereo = np.frombuffer(raw, dtype="<i2").reshape(-1, CHANNELS)
        mono = stereo.mean(axis=1) / FULL_SCALE
        self.publish(self.analyze(mono))
        return True

    def _open(self):
        if not os.path.exists(self.pipe_path):
            time.sleep(REOPEN_DELAY)
            return False
        try:
            self._fd = os.open(self.pipe_path, os.O_RDONLY | os.O_NONBLOCK)
        except OSError as exc:
            logger.debug("Audio pipe %s not ready: %s", self.pipe_path, exc)
            time.sleep(REOPEN_DELAY)
            return False
        self._partial.clear()
        logger.info("Audio pipe connected: %s", self.pipe_path)
        return True

    def _close(self):
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        self._partial.clear()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if not self.separate_thread or self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._reader_loop, name="audio-input", daemon=True)
        self._thread.start()

    def stop(self):
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join()
            self._thread = None
        self._close()

    def _reader_loop(self):
        while not self._stop_event.is_set():
            try:
                self.update()
            except Exception:
                logger.exception("Audio reader error")
                self._close()
                time.sleep(REOPEN_DELAY)
