"""Audio-reactive light controller: owns the audio and light worker loops.

Two independent loops run while the visualizer is enabled:

  audio loop   as fast as audio frames arrive: band energies -> rolling
               stats -> event flags (EventDetector)
  light loop   every 100 ms (the Hue bridge takes ~10 changes/s): consume
               the flags, send bulb commands, render the LED matrix
               (LightSequencer), then deliver inline outputs

The bulb output and the LED link can each run their own delivery thread
instead; otherwise the light loop delivers after every tick.

Usage:
    viz = build_visualizer(Configuration.from_env())
    viz.enable()
    ...
    viz.disable()
"""

import logging
import threading
import time

from drivers.teensy import CartesianPixelSurface, LinkError, TeensyOutput
from services.audio_input import AudioInput
from services.detector import DetectionState, EventDetector
from services.hue import HueOutput
from services.sequencer import LightSequencer

logger = logging.getLogger(__name__)

LIGHT_TICK = 0.1  # seconds between light ticks
AUDIO_WAIT = 0.1  # max seconds the audio loop blocks waiting for a frame
ERROR_BACKOFF = 0.5  # seconds a loop pauses after an unexpected error
DEFAULT_REFRESH = 5  # bulb updates pushed after an override change


class Visualizer:
    """Wires the detector and sequencer to their inputs and outputs.

    ``enabled`` is guarded by a lock, so concurrent toggles can never start
    a second pair of loops. Disabling waits for both loops to finish their
    current tick before the outputs are torn down.
    """

    def __init__(self, config, audio, hue, teensy=None, pixels=None, rng=None):
        self.config = config
        self.audio = audio
        self.hue = hue
        self.teensy = teensy
        if pixels is None and teensy is not None:
            pixels = CartesianPixelSurface(teensy, config.matrix_width, config.matrix_height)
        self.state = DetectionState()
        self.detector = EventDetector(config, self.state)
        self.sequencer = LightSequencer(config, self.state, hue, pixels, rng=rng)

        self._lock = threading.Lock()
        self._enabled = False
        self._stop_event = threading.Event()
        self._audio_thread = None
        self._light_thread = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def enabled(self):
        with self._lock:
            return self._enabled

    @enabled.setter
    def enabled(self, value):
        if value:
            self.enable()
        else:
            self.disable()

    def enable(self):
        with self._lock:
            if self._enabled:
                return
            self.audio.start()
            if self.teensy is not None:
                try:
                    self.teensy.start()
                except LinkError:
                    logger.exception("LED output unavailable, continuing with bulbs only")
            self.hue.start()

            self._stop_event.clear()
            self._audio_thread = threading.Thread(
                target=self._audio_loop, name="visualizer-audio", daemon=True
            )
            self._light_thread = threading.Thread(
                target=self._light_loop, name="visualizer-lights", daemon=True
            )
            self._audio_thread.start()
            self._light_thread.start()
            self._enabled = True
        logger.info("Visualizer enabled")

    def disable(self):
        with self._lock:
            if not self._enabled:
                return
            self._stop_event.set()
            self._audio_thread.join()
            self._light_thread.join()
            self._audio_thread = None
            self._light_thread = None

            self.hue.stop()
            if not self.hue.separate_thread:
                self.hue.update()
            if self.teensy is not None:
                try:
                    self.teensy.stop()
                except LinkError:
                    logger.exception("LED link failed during shutdown")
            self.audio.stop()
            self._enabled = False
        logger.info("Visualizer disabled")

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def process(self, spectrum, volume):
        """One audio tick: accumulate -> commit -> detect."""
        with self.state.lock:
            return self.detector.process(spectrum, volume)

    def update_lights(self):
        """One light tick: sequence -> render -> flush, then inline delivery."""
        with self.state.lock:
            self.sequencer.update()

        if not self.hue.separate_thread:
            self.hue.update()
        teensy = self.teensy
        # a closed link just discards what was queued
        if teensy is not None and (not teensy.separate_thread or not teensy.enabled):
            try:
                teensy.drain()
            except LinkError:
                logger.exception("LED link failed, closing %s", teensy.port)
                teensy.abort()

    def _audio_active(self):
        config = self.config
        return config.control_lights and not config.lights_off and not config.red_alert

    def _audio_loop(self):
        while not self._stop_event.is_set():
            try:
                frame = self.audio.next_frame(AUDIO_WAIT)
                if frame is not None and self._audio_active():
                    self.process(frame.spectrum, frame.volume)
            except Exception:
                logger.exception("Audio tick failed")
                self._stop_event.wait(ERROR_BACKOFF)

    def _light_loop(self):
        next_tick = time.monotonic() + LIGHT_TICK
        while not self._stop_event.wait(max(0.0, next_tick - time.monotonic())):
            try:
                self.update_lights()
            except Exception:
                logger.exception("Light tick failed")
            next_tick += LIGHT_TICK
            now = time.monotonic()
            if next_tick < now:
                # Behind schedule; skip ahead instead of bursting
                next_tick = now + LIGHT_TICK

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_refresh(self, count=DEFAULT_REFRESH):
        """Push ``count`` override updates to the bulbs (lights off, red alert, ...)."""
        with self.state.lock:
            ctx = self.sequencer.context
            ctx.pending_updates = max(ctx.pending_updates, count)

    def get_status(self):
        with self.state.lock:
            detection = self.state.snapshot()
            sequencer = self.sequencer.context.snapshot()
        return {
            "enabled": self.enabled,
            "leds_connected": self.teensy is not None and self.teensy.enabled,
            "audio_connected": getattr(self.audio, "connected", False),
            "detection": detection,
            "sequencer": sequencer,
            "config": self.config.to_dict(),
        }


def build_visualizer(config):
    """Create a Visualizer with real collaborators from ``config``."""
    audio = AudioInput(
        config.audio_pipe,
        fft_size=config.fft_size,
        separate_thread=config.audio_input_in_separate_thread,
    )
    hue = HueOutput(
        config.hue_bridge_ip,
        config.hue_username,
        config.hue_light_ids,
        separate_thread=config.hue_output_in_separate_thread,
    )
    teensy = None
    if config.serial_port:
        teensy = TeensyOutput(
            config.serial_port,
            separate_thread=config.leds_output_in_separate_thread,
            baud_rate=config.baud_rate,
        )
    else:
        logger.info("No serial port configured, LED matrix output disabled")
    return Visualizer(config, audio, hue, teensy)
