"""
Pytest configuration and shared fixtures.

Provides a manual clock, a scripted Device Link and a controller wired to
them, so control ticks can be driven one at a time without hardware.
"""

import pytest

from device_link import DeviceLink
from reflow_controller import ReflowController
from reflow_profiles import ProfileLibrary


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeLink(DeviceLink):
    """
    Scripted Device Link.

    read_errors / command_errors are consumed front to back, one entry per
    call; an entry of None lets that call succeed.
    """

    def __init__(self, clock, temperature=25.0):
        self.clock = clock
        self.temperature = temperature
        self.sample_age = 0.0
        self.port = None
        self.connected = False
        self.connect_error = None
        self.read_errors = []
        self.command_errors = []
        self.commands = []
        self.handshakes = 0

    def connect(self, port):
        if self.connect_error is not None:
            raise self.connect_error
        self.port = port
        self.connected = True
        return self

    def disconnect(self):
        self.connected = False

    def is_connected(self):
        return self.connected

    def handshake(self):
        self.handshakes += 1

    def send_command(self, intensity):
        if self.command_errors:
            error = self.command_errors.pop(0)
            if error is not None:
                raise error
        self.commands.append(intensity)
        return True

    def read_temperature(self):
        if self.read_errors:
            error = self.read_errors.pop(0)
            if error is not None:
                raise error
        return self.temperature, self.clock() - self.sample_age


TEST_CONFIG = {
    "device": {"timeout": 1.0},
    "safety": {"max_temp": 260.0, "stale_timeout": 5.0, "read_failure_limit": 2},
    "control": {"gain": 4.0, "base": 20.0, "tick_interval": 1.0, "command_retries": 1},
}

SCENARIO_PROFILE = {
    "name": "scenario",
    "points": [[0, 25], [60, 150], [120, 150], [180, 25]],
    "phases": [
        {"name": "preheat", "until": 60},
        {"name": "soak", "until": 120},
        {"name": "cooling", "until": 180},
    ],
}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def link(clock):
    return FakeLink(clock)


@pytest.fixture
def controller(link, clock):
    ctl = ReflowController(
        config=TEST_CONFIG,
        link_factory=lambda port, device_config: link,
        profiles=ProfileLibrary(None),
        clock=clock,
    )
    yield ctl
    ctl.shutdown()


@pytest.fixture
def running(controller, link, clock):
    """Controller with a run of the scenario profile just started (one tick done)"""
    controller.connect('COM1')
    controller.select_profile(SCENARIO_PROFILE)
    controller.start()
    controller.tick()
    clock.advance(1.0)
    return controller


def run_ticks(controller, clock, count):
    for _ in range(count):
        controller.tick()
        clock.advance(controller.tick_interval)
