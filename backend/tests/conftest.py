import time
from collections import deque

import pytest
import serial

from config import Configuration
from drivers.teensy import TeensyOutput


class FakeLink:
    """Stands in for a pyserial port: records every write."""

    def __init__(self):
        self.is_open = False
        self.written = bytearray()
        self.writes = 0
        self.fail_open = False
        self.fail_write = False

    def open(self):
        if self.fail_open:
            raise serial.SerialException("no such device")
        self.is_open = True

    def write(self, data):
        if self.fail_write:
            raise serial.SerialException("device disconnected")
        self.written.extend(data)
        self.writes += 1
        return len(data)

    def close(self):
        self.is_open = False


class FakeHue:
    """Records bulb commands instead of talking to a bridge."""

    def __init__(self, separate_thread=False):
        self.separate_thread = separate_thread
        self.light_commands = []
        self.group_commands = []
        self.updates = 0
        self.started = False

    def send_light_command(self, index, command):
        self.light_commands.append((index, command))

    def send_group_command(self, group_id, command):
        self.group_commands.append((group_id, command))

    def update(self):
        self.updates += 1
        return 0

    def start(self):
        self.started = True

    def stop(self):
        self.started = False


class FakeAudio:
    """Hands out queued frames, then nothing."""

    def __init__(self, frames=()):
        self.frames = deque(frames)
        self.connected = False

    def next_frame(self, timeout=0.1):
        if self.frames:
            return self.frames.popleft()
        time.sleep(min(timeout, 0.01))
        return None

    def start(self):
        self.connected = True

    def stop(self):
        self.connected = False


@pytest.fixture
def config():
    return Configuration(hue_light_ids=["1", "2", "3"])


@pytest.fixture
def link():
    return FakeLink()


@pytest.fixture
def teensy(link):
    return TeensyOutput("/dev/ttyTEST", link=link)


@pytest.fixture
def hue():
    return FakeHue()


@pytest.fixture
def audio():
    return FakeAudio()
