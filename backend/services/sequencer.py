"""Light sequencing: turns detected events into bulb and LED matrix commands.

Runs once per light tick (100 ms). Exactly one branch fires per tick, in
priority order:

  1. silent / override   slow "breathing" colour walk across the bulbs
  2. drop                group alert, then hold for a few ticks; a flash it
                         interrupted gets its decay once the drop ends
  3. flash               two-phase flash: full brightness, then fast decay
                         on the same bulb the following tick (kick, then snare)
  4. idle                every few ticks switch the current bulb off

After the branch the LED matrix shows a volume meter and the per-window
bookkeeping (silence detection, saturation oscillator) rolls over.
"""

import logging
import random
from collections import namedtuple
from dataclasses import dataclass
from typing import Optional

from services.hue import LightCommand

logger = logging.getLogger(__name__)

# -- Silent mode animation ---------------------------------------------------
HUE_STEP = 10000
HUE_RANGE = 65535
SAT_START = 254
SAT_LOW = 127
SAT_HIGH = 380
MAX_SAT = 254

# -- Drop --------------------------------------------------------------------
DROP_GROUP = 0
DROP_HOLD_TICKS = 8

# -- Idle --------------------------------------------------------------------
IDLE_OFF_AFTER = 2

# -- LED matrix meter ----------------------------------------------------------
METER_ON = 0x111111
METER_OFF = 0x000000

FlashProfile = namedtuple("FlashProfile", "name hue pending_flag")

KICK = FlashProfile("kick", 300, "kick_pending")
SNARE = FlashProfile("snare", 43000, "snare_pending")


class Idle:
    """No flash or drop in progress."""

    def __repr__(self):
        return "Idle"


IDLE = Idle()


@dataclass(frozen=True)
class Flashing:
    """Phase 1 of a flash has been sent to ``target``; the decay is owed."""

    target: int
    profile: FlashProfile


@dataclass(frozen=True)
class Dropping:
    """A drop sequence is running; ``duration`` ticks have elapsed.

    ``pending_flash`` holds a flash the drop interrupted; its decay is sent
    once the drop is over.
    """

    duration: int
    pending_flash: Optional[Flashing] = None


class SequencerContext:
    """Counters and animation state carried from one light tick to the next."""

    def __init__(self):
        self.mode = IDLE
        self.target = 0
        self.idle_counter = 0
        self.silent_counter = 0
        self.silent_mode = True
        self.silent_flag = False
        self.silent_hue_index = 0
        self.silent_light_index = 0
        self.silent_sat_index = SAT_START
        self.silent_sat_falling = False
        # Override updates still owed to the bulbs (lights off, red alert, ...)
        self.pending_updates = 0

    @property
    def drop_duration(self):
        return self.mode.duration if isinstance(self.mode, Dropping) else None

    def snapshot(self):
        return {
            "mode": repr(self.mode),
            "target": self.target,
            "silent_mode": self.silent_mode,
            "silent_counter": self.silent_counter,
            "idle_counter": self.idle_counter,
            "pending_updates": self.pending_updates,
        }


class LightSequencer:
    """Decides the next bulb command and LED frame on every light tick.

    Args:
        config: Configuration (toggles, light count, silence run length).
        state: DetectionState written by the EventDetector.
        hue: bulb output exposing send_light_command / send_group_command.
        pixels: CartesianPixelSurface for the LED matrix, or None.
        context: SequencerContext to continue from (a fresh one by default).
        rng: random.Random used to pick flash targets.
    """

    def __init__(self, config, state, hue, pixels=None, context=None, rng=None):
        self.config = config
        self.state = state
        self.hue = hue
        self.pixels = pixels
        self.context = context or SequencerContext()
        self.rng = rng or random.Random()

    def update(self):
        """Run one light tick. The caller must hold ``state.lock``."""
        ctx = self.context
        state = self.state

        if self._owed_flash() is None:
            # A kick or snare only counts if it landed in the same window as a peak
            state.kick_pending = state.kick_pending and state.total_max
            state.snare_pending = state.snare_pending and state.total_max
            ctx.target = self.rng.randrange(self.config.light_count)

        if ctx.silent_mode or self._overridden():
            self._silent_tick()
        elif state.drop:
            self._drop_tick()
        elif isinstance(ctx.mode, Flashing):
            self._finish_flash(ctx.mode)
        elif state.kick_pending:
            self._start_flash(KICK)
        elif state.snare_pending:
            self._start_flash(SNARE)
        else:
            self._idle_tick()

        self.render_meter()
        self.post_update()

    def _owed_flash(self):
        """The flash whose decay has not been sent yet, if any."""
        mode = self.context.mode
        if isinstance(mode, Flashing):
            return mode
        if isinstance(mode, Dropping):
            return mode.pending_flash
        return None

    def _overridden(self):
        config = self.config
        return not config.control_lights or config.lights_off or config.red_alert

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _silent_tick(self):
        ctx = self.context
        if not (ctx.silent_mode or ctx.pending_updates > 0):
            return
        ctx.silent_flag = not ctx.silent_flag
        # In silent mode only every other tick sends, to stay gentle on the bridge
        if ctx.silent_mode and not ctx.silent_flag:
            return
        ctx.silent_hue_index = (ctx.silent_hue_index + HUE_STEP) % HUE_RANGE
        ctx.silent_light_index = (ctx.silent_light_index + 1) % self.config.light_count
        self.hue.send_light_command(ctx.silent_light_index, self.silent_command(ctx.silent_hue_index))
        ctx.pending_updates = max(0, ctx.pending_updates - 1)
        logger.debug("Silent update on light %d (%d pending, silent_mode=%s)",
                     ctx.silent_light_index, ctx.pending_updates, ctx.silent_mode)

    def _drop_tick(self):
        ctx = self.context
        duration = ctx.mode.duration if isinstance(ctx.mode, Dropping) else 0
        pending_flash = self._owed_flash()
        if duration == 0:
            logger.info("Drop on")
            self.hue.send_group_command(DROP_GROUP, LightCommand(alert="select"))
        # ticks 1..DROP_HOLD_TICKS hold whatever the alert left behind
        if duration > DROP_HOLD_TICKS:
            logger.info("Drop off")
            self.state.drop = False
            ctx.mode = pending_flash or IDLE
        else:
            ctx.mode = Dropping(duration + 1, pending_flash)

    def _start_flash(self, profile):
        ctx = self.context
        logger.debug("%s on (light %d)", profile.name, ctx.target)
        self.hue.send_light_command(ctx.target, LightCommand(
            on=True, brightness=254, hue=profile.hue, saturation=254,
            transition_ticks=1, alert="none",
        ))
        ctx.mode = Flashing(ctx.target, profile)

    def _finish_flash(self, flash):
        self.hue.send_light_command(flash.target, LightCommand(
            on=True, brightness=1, hue=flash.profile.hue, saturation=254,
            transition_ticks=2, alert="none",
        ))
        setattr(self.state, flash.profile.pending_flag, False)
        self.context.mode = IDLE

    def _idle_tick(self):
        ctx = self.context
        ctx.idle_counter += 1
        if ctx.idle_counter > IDLE_OFF_AFTER:
            self.hue.send_light_command(ctx.target, LightCommand(
                on=False, brightness=0, saturation=254, transition_ticks=20,
                alert="none", effect="colorloop",
            ))
            ctx.idle_counter = 0

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def silent_command(self, hue_index):
        """The command sent by the silent/override animation."""
        config = self.config
        if config.lights_off:
            return LightCommand(on=False)
        if config.red_alert:
            return LightCommand(on=True, brightness=1, hue=1, saturation=254, effect="none")
        if config.control_lights:
            return LightCommand(
                on=True,
                brightness=1,
                hue=hue_index + 1,
                saturation=min(self.context.silent_sat_index, MAX_SAT),
                transition_ticks=12,
                effect="none",
            )
        return LightCommand(
            on=True,
            brightness=_clamp(254 + 64 * config.brighten, 1, 254),
            hue=_clamp(16384 + 4096 * config.colorslide, 0, 65535),
            saturation=_clamp(126 + 63 * config.sat, 0, 254),
            effect="none",
        )

    # ------------------------------------------------------------------
    # LED matrix + bookkeeping
    # ------------------------------------------------------------------

    def render_meter(self):
        """Light a number of columns proportional to volume, then flush."""
        if self.pixels is None:
            return
        width = self.pixels.width
        lit = int(self.state.volume * width)
        for y in range(self.pixels.height):
            for x in range(width):
                self.pixels.set_xy(x, y, METER_ON if x < lit else METER_OFF)
        self.pixels.flush()

    def post_update(self):
        ctx = self.context
        state = self.state
        if state.silence:
            ctx.silent_counter += 1
            if (self.config.control_lights and not ctx.silent_mode
                    and ctx.silent_counter > self.config.silent_run_length):
                logger.info("Silence detected, switching to idle animation")
                ctx.silent_mode = True
        else:
            ctx.silent_counter = 0
            ctx.silent_mode = False

        if ctx.silent_flag:
            if ctx.silent_sat_index < SAT_LOW:
                ctx.silent_sat_falling = False
            if ctx.silent_sat_index > SAT_HIGH:
                ctx.silent_sat_falling = True
            ctx.silent_sat_index += -1 if ctx.silent_sat_falling else 1

        # silence stays True only if every audio tick until the next light tick is quiet
        state.silence = True
        state.total_max = False


def _clamp(value, lo, hi):
    return max(lo, min(hi, value))
