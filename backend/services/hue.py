"""Philips Hue bridge output over the v1 REST API.

Light and group commands are queued by the light tick and delivered by
``update()``, either inline right after each tick or from a dedicated
output thread. Delivery is fire-and-forget: a failed PUT is logged and the
command is dropped. The bridge itself accepts roughly 10 light changes per
second, which is why the sequencer runs on a 100 ms tick.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 2.0  # seconds per PUT
IDLE_WAIT = 0.1  # seconds the output thread waits for new commands

_PAYLOAD_KEYS = (
    ("on", "on"),
    ("brightness", "bri"),
    ("hue", "hue"),
    ("saturation", "sat"),
    ("transition_ticks", "transitiontime"),
    ("effect", "effect"),
    ("alert", "alert"),
)


@dataclass(frozen=True)
class LightCommand:
    """One state change for a light or group.

    Fields left as None are omitted from the request, so the bridge keeps
    its current value for them. ``transition_ticks`` is in bridge units of
    100 ms.
    """

    on: Optional[bool] = None
    brightness: Optional[int] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None
    transition_ticks: Optional[int] = None
    effect: Optional[str] = None
    alert: Optional[str] = None

    def to_payload(self):
        payload = {}
        for field, key in _PAYLOAD_KEYS:
            value = getattr(self, field)
            if value is not None:
                payload[key] = value
        return payload


class HueOutput:
    """Queues light/group commands and PUTs them to the bridge.

    Usage:
        hue = HueOutput("192.168.1.2", "app-username", ["1", "2", "3"])
        hue.send_light_command(0, LightCommand(on=True, brightness=254))
        hue.update()
    """

    def __init__(self, bridge_ip, username, light_ids, separate_thread=False, session=None):
        self.bridge_ip = bridge_ip
        self.username = username
        self.light_ids = list(light_ids)
        self.separate_thread = separate_thread
        self._http = session or requests.Session()
        self._queue = deque()
        self._pending = threading.Event()
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread = None

    @property
    def base_url(self):
        return f"http://{self.bridge_ip}/api/{self.username}"

    # ------------------------------------------------------------------
    # Fire-and-forget API
    # ------------------------------------------------------------------

    def send_light_command(self, index, command):
        """Queue ``command`` for the light at ``index`` in light_ids."""
        light_id = self.light_ids[index % len(self.light_ids)]
        self._queue.append((f"/lights/{light_id}/state", command))
        self._pending.set()

    def send_group_command(self, group_id, command):
        self._queue.append((f"/groups/{group_id}/action", command))
        self._pending.set()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def update(self):
        """Deliver every queued command, in order. Returns the number sent."""
        with self._lock:
            count = len(self._queue)
            batch = [self._queue.popleft() for _ in range(count)]
            if not batch:
                return 0
            if not self.bridge_ip:
                logger.debug("No Hue bridge configured, dropping %d command(s)", count)
                return 0
            sent = 0
            for path, command in batch:
                if self._put(path, command.to_payload()):
                    sent += 1
            return sent

    def _put(self, path, payload):
        try:
            resp = self._http.put(self.base_url + path, json=payload, timeout=REQUEST_TIMEOUT)
            resp.raise_for_status()
        except requests.RequestException:
            logger.debug("Hue command %s %s failed", path, payload, exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        if not self.separate_thread or self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._output_loop, name="hue-output", daemon=True)
        self._thread.start()
        logger.info("Hue output thread started for bridge %s", self.bridge_ip or "(none)")

    def stop(self):
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join()
        self._thread = None
        logger.info("Hue output thread stopped")

    def _output_loop(self):
        while not self._stop_event.is_set():
            if not self._pending.wait(IDLE_WAIT):
                continue
            self._pending.clear()
            try:
                self.update()
            except Exception:
                logger.exception("Hue output loop error")
