"""
Tests for the Device Link bench check.
"""

import pytest

from conftest import FakeLink, ManualClock
from device_link import SIMULATOR_PORT, DeviceTimeout, SimulatedDeviceLink
from link_check import check_link


def test_simulator_heats_toward_target():
    clock = ManualClock()
    sim = SimulatedDeviceLink(clock=clock)
    lines = []

    readings = check_link(sim, SIMULATOR_PORT, 60.0, 20, sleep=clock.advance, out=lines.append)

    assert len(readings) == 20
    assert readings[-1][1] > readings[0][1]
    assert readings[0][2] == 100.0
    assert sim.intensity == 0.0
    assert not sim.is_connected()
    assert lines[-1] == "✓ Link closed"


def test_failure_still_turns_heater_off():
    clock = ManualClock()
    link = FakeLink(clock)
    link.read_errors = [None, DeviceTimeout('no answer')]

    with pytest.raises(DeviceTimeout):
        check_link(link, 'COM1', 60.0, 10, sleep=clock.advance, out=lambda line: None)

    assert link.handshakes == 1
    assert link.commands[-1] == 0.0
    assert not link.is_connected()
