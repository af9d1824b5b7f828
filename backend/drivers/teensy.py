"""Serial LED matrix driver for a Teensy running the pixel-frame firmware.

The Teensy has no notion of how many LEDs it drives; it just receives a
stream of small frames over the serial link:

    START      01                 enter streaming mode
    EXIT       00 00              leave streaming mode
    FLUSH      01 00              latch all pixels set since the last flush
    SET_PIXEL  ii ii cc cc cc     pixel (index + 2) as u16 LE, color as u24 LE

Pixel indices are sent offset by 2 so a SET_PIXEL frame can never start
with the EXIT (0) or FLUSH (1) words.

Frames are queued by producers (the light tick) and written to the port by
whoever drains: either a dedicated output thread or explicit ``drain()``
calls from the light loop.
"""

import logging
import struct
import threading
from collections import deque

import serial

logger = logging.getLogger(__name__)

# -- Wire protocol -----------------------------------------------------------
START_FRAME = b"\x01"
EXIT_FRAME = b"\x00\x00"
FLUSH_FRAME = b"\x01\x00"
PIXEL_FRAME_LEN = 5
PIXEL_INDEX_OFFSET = 2
MAX_PIXEL_INDEX = 0xFFFF - PIXEL_INDEX_OFFSET
MAX_COLOR = 0xFFFFFF

# -- Link defaults -------------------------------------------------------------
DEFAULT_BAUD_RATE = 1000000
DRAIN_IDLE_WAIT = 0.05  # seconds the output thread sleeps when nothing is queued


class LinkError(OSError):
    """The serial link failed to open or write; the session is over."""


def encode_pixel(index, color):
    """Encode a SET_PIXEL frame.

    Indices 65534 and 65535 are not addressable: with the +2 offset they
    would need words 0x10000 and 0x10001, which do not fit in the u16 field,
    and wrapping them would produce the EXIT and FLUSH words.

    Args:
        index: Pixel index, 0-65533.
        color: 24-bit 0xRRGGBB color.

    Returns:
        5 bytes: (index + 2) as little-endian u16, then color as little-endian u24.
    """
    if not 0 <= index <= MAX_PIXEL_INDEX:
        raise ValueError(f"pixel index {index} out of range 0-{MAX_PIXEL_INDEX}")
    if not 0 <= color <= MAX_COLOR:
        raise ValueError(f"color {color:#x} out of range 0-{MAX_COLOR:#x}")
    return struct.pack("<H", index + PIXEL_INDEX_OFFSET) + color.to_bytes(3, "little")


def decode_frame(frame):
    """Decode a single wire frame.

    Returns one of ("start",), ("exit",), ("flush",) or ("pixel", index, color).
    """
    if frame == START_FRAME:
        return ("start",)
    if frame == EXIT_FRAME:
        return ("exit",)
    if frame == FLUSH_FRAME:
        return ("flush",)
    if len(frame) == PIXEL_FRAME_LEN:
        (word,) = struct.unpack("<H", frame[:2])
        if word >= PIXEL_INDEX_OFFSET:
            return ("pixel", word - PIXEL_INDEX_OFFSET, int.from_bytes(frame[2:], "little"))
    raise ValueError(f"not a valid frame: {frame.hex()}")


def parse_stream(data):
    """Split a raw byte stream (as written to the port) back into frames.

    Mirrors the firmware's reader: the first byte after power-up is START,
    after that every frame begins with a little-endian u16 word.
    """
    frames = []
    pos = 0
    streaming = False
    while pos < len(data):
        if not streaming:
            if data[pos:pos + 1] != START_FRAME:
                raise ValueError(f"expected START at offset {pos}")
            frames.append(("start",))
            streaming = True
            pos += 1
            continue
        (word,) = struct.unpack_from("<H", data, pos)
        if word == 0:
            frames.append(("exit",))
            streaming = False
            pos += 2
        elif word == 1:
            frames.append(("flush",))
            pos += 2
        else:
            frames.append(decode_frame(bytes(data[pos:pos + PIXEL_FRAME_LEN])))
            pos += PIXEL_FRAME_LEN
    return frames


class TeensyOutput:
    """Queue of outbound frames plus the serial link that carries them.

    ``enqueue()`` never touches the link lock, so producers are never held
    up behind a blocking port write. ``start()``, ``stop()`` and ``drain()``
    all serialize on the link lock.

    Usage:
        teensy = TeensyOutput("/dev/ttyACM0", separate_thread=True)
        teensy.start()
        PixelSurface(teensy).set_pixel(0, 0xFF0000)
        ...
        teensy.stop()
    """

    def __init__(self, port, separate_thread=False, baud_rate=DEFAULT_BAUD_RATE, link=None):
        self.port = port
        self.separate_thread = separate_thread
        if link is None:
            link = serial.serial_for_url(port, baudrate=baud_rate, do_not_open=True)
        self._link = link
        self._lock = threading.Lock()
        self._queue = deque()
        self._pending = threading.Event()
        self._stop_event = threading.Event()
        self._thread = None
        self._open = False

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    def enqueue(self, frame: bytes):
        self._queue.append(frame)
        self._pending.set()

    @property
    def queued(self):
        return len(self._queue)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def enabled(self):
        with self._lock:
            return self._open

    @enabled.setter
    def enabled(self, value):
        if value:
            self.start()
        else:
            self.stop()

    def start(self):
        """Open the link and queue START; spawn the output thread if configured."""
        with self._lock:
            if self._open:
                return
            try:
                self._link.open()
            except (serial.SerialException, OSError) as exc:
                raise LinkError(f"could not open {self.port}: {exc}") from exc
            self._open = True
            self.enqueue(START_FRAME)
            if self.separate_thread:
                self._stop_event.clear()
                self._thread = threading.Thread(
                    target=self._output_loop, name="teensy-output", daemon=True
                )
                self._thread.start()
        logger.info("Teensy output started on %s (separate_thread=%s)",
                    self.port, self.separate_thread)

    def stop(self):
        """Write what is still queued, send EXIT and close the link.

        With an output thread the thread is signalled and joined first, so
        teardown never overlaps a write in progress.
        """
        thread = self._thread
        if thread is not None:
            self._stop_event.set()
            thread.join()
            self._thread = None
        with self._lock:
            if not self._open:
                return
            try:
                self._write_queued()
                self._write(EXIT_FRAME)
            finally:
                self._close()
        logger.info("Teensy output stopped on %s", self.port)

    def abort(self):
        """Tear down after a link failure: best-effort EXIT, close, drop the queue."""
        with self._lock:
            if not self._open:
                return
            self._queue.clear()
            try:
                self._write(EXIT_FRAME)
            except LinkError:
                logger.warning("Could not send EXIT to %s while aborting", self.port)
            finally:
                self._close()
        logger.warning("Teensy output aborted on %s", self.port)

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    def drain(self):
        """Write every frame queued right now in one blocking call.

        Returns the number of bytes written (0 if nothing was queued).
        Raises LinkError if the write fails.
        """
        with self._lock:
            if not self._open:
                self._queue.clear()
                return 0
            return self._write_queued()

    def _write_queued(self):
        count = len(self._queue)
        if count == 0:
            return 0
        frames = []
        for _ in range(count):
            try:
                frames.append(self._queue.popleft())
            except IndexError:
                raise RuntimeError("output queue drained by more than one consumer")
        data = b"".join(frames)
        self._write(data)
        return len(data)

    def _write(self, data):
        try:
            self._link.write(data)
        except (serial.SerialException, OSError) as exc:
            raise LinkError(f"write to {self.port} failed: {exc}") from exc

    def _close(self):
        self._open = False
        try:
            self._link.close()
        except (serial.SerialException, OSError):
            logger.debug("Error closing %s", self.port, exc_info=True)

    def _output_loop(self):
        while not self._stop_event.is_set():
            if not self._pending.wait(DRAIN_IDLE_WAIT):
                continue
            self._pending.clear()
            try:
                self.drain()
            except LinkError:
                logger.exception("Teensy link failed, closing %s", self.port)
                self.abort()
                return


class PixelSurface:
    """Translates pixel writes into frames on a TeensyOutput."""

    def __init__(self, output):
        self.output = output

    def set_pixel(self, index, color):
        self.output.enqueue(encode_pixel(index, color))

    def flush(self):
        self.output.enqueue(FLUSH_FRAME)


class CartesianPixelSurface(PixelSurface):
    """A PixelSurface laid out as a fixed width x height grid, row-major."""

    def __init__(self, output, width, height):
        super().__init__(output)
        if width * height - 1 > MAX_PIXEL_INDEX:
            raise ValueError(f"{width}x{height} grid exceeds the addressable pixel range")
        self.width = width
        self.height = height

    def set_xy(self, x, y, color):
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise ValueError(f"pixel ({x}, {y}) outside {self.width}x{self.height} grid")
        self.set_pixel(y * self.width + x, color)
