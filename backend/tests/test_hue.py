import time

import requests

from services.hue import HueOutput, LightCommand


class FakeResponse:
    def __init__(self, status=200):
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")


class FakeSession:
    def __init__(self, status=200, error=None):
        self.calls = []
        self.status = status
        self.error = error

    def put(self, url, json=None, timeout=None):
        self.calls.append((url, json))
        if self.error is not None:
            raise self.error
        return FakeResponse(self.status)


def test_payload_omits_unset_fields():
    assert LightCommand(on=True, brightness=254).to_payload() == {"on": True, "bri": 254}
    assert LightCommand(on=False, transition_ticks=20, effect="colorloop").to_payload() == {
        "on": False,
        "transitiontime": 20,
        "effect": "colorloop",
    }
    assert LightCommand().to_payload() == {}


def test_update_puts_commands_in_order():
    session = FakeSession()
    hue = HueOutput("10.0.0.2", "user", ["3", "7"], session=session)
    hue.send_light_command(1, LightCommand(on=True))
    hue.send_light_command(2, LightCommand(hue=300))  # wraps to the first light
    hue.send_group_command(0, LightCommand(alert="select"))

    assert hue.update() == 3
    assert session.calls == [
        ("http://10.0.0.2/api/user/lights/7/state", {"on": True}),
        ("http://10.0.0.2/api/user/lights/3/state", {"hue": 300}),
        ("http://10.0.0.2/api/user/groups/0/action", {"alert": "select"}),
    ]
    assert hue.update() == 0


def test_failed_requests_are_dropped():
    session = FakeSession(error=requests.ConnectionError("bridge unreachable"))
    hue = HueOutput("10.0.0.2", "user", ["1"], session=session)
    hue.send_light_command(0, LightCommand(on=True))
    hue.send_light_command(0, LightCommand(on=False))

    assert hue.update() == 0
    assert len(session.calls) == 2
    assert hue.update() == 0
    assert len(session.calls) == 2


def test_bridge_error_status_is_not_counted():
    hue = HueOutput("10.0.0.2", "user", ["1"], session=FakeSession(status=500))
    hue.send_light_command(0, LightCommand(on=True))
    assert hue.update() == 0


def test_no_bridge_configured_drops_commands():
    session = FakeSession()
    hue = HueOutput("", "", ["1"], session=session)
    hue.send_light_command(0, LightCommand(on=True))
    assert hue.update() == 0
    assert session.calls == []


def test_output_thread_delivers_and_stops():
    session = FakeSession()
    hue = HueOutput("10.0.0.2", "user", ["1"], separate_thread=True, session=session)
    hue.start()
    hue.send_light_command(0, LightCommand(on=True))

    deadline = time.monotonic() + 2.0
    while not session.calls and time.monotonic() < deadline:
        time.sleep(0.01)
    hue.stop()
    assert session.calls == [("http://10.0.0.2/api/user/lights/1/state", {"on": True})]
