"""
Tests for the serial and simulated Device Links.

The serial link is exercised against a fake serial.Serial so no port is needed.
"""

import pytest
import serial

import device_link
from conftest import ManualClock
from device_link import (
    SIMULATOR_PORT,
    CommandRejected,
    DeviceError,
    DeviceTimeout,
    DeviceUnavailable,
    ReadFailure,
    SerialDeviceLink,
    SimulatedDeviceLink,
    available_ports,
    open_link,
)


class FakeSerial:
    """Stands in for serial.Serial; answers 'tempshow' with queued lines"""

    def __init__(self, port, baud, **kwargs):
        self.port = port
        self.baud = baud
        self.kwargs = kwargs
        self.is_open = True
        self.written = []
        self.responses = []
        self.write_error = None

    def write(self, data):
        if self.write_error is not None:
            raise self.write_error
        self.written.append(data.decode('ascii'))
        return len(data)

    def flush(self):
        pass

    def reset_input_buffer(self):
        pass

    def readline(self):
        return self.responses.pop(0) if self.responses else b''

    def close(self):
        self.is_open = False


@pytest.fixture
def serial_link(monkeypatch):
    monkeypatch.setattr(device_link.serial, 'Serial', FakeSerial)
    link = SerialDeviceLink(baud=9600, timeout=0.5, clock=ManualClock())
    link.connect('/dev/ttyUSB0')
    return link


class TestParseTemperature:
    """Tests for response line parsing."""

    @pytest.mark.parametrize('line, expected', [
        ('+215.25C', 215.25),
        ('+ 25.00 C', 25.0),
        ('-3.5C', -3.5),
        ('Reflow,3,+183.00,C', 183.0),
    ])
    def test_readings(self, line, expected):
        assert SerialDeviceLink.parse_temperature(line) == expected

    @pytest.mark.parametrize('line', ['OK', 'manual 1', '', '215C'])
    def test_not_a_reading(self, line):
        assert SerialDeviceLink.parse_temperature(line) is None


class TestSerialDeviceLink:
    """Tests for the line protocol over a (fake) serial port."""

    def test_connect_opens_8n1_with_timeouts(self, serial_link):
        ser = serial_link.ser
        assert serial_link.is_connected()
        assert ser.port == '/dev/ttyUSB0'
        assert ser.kwargs['timeout'] == 0.5
        assert ser.kwargs['write_timeout'] == 0.5
        assert ser.kwargs['parity'] == serial.PARITY_NONE

    def test_connect_failure(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise serial.SerialException('port busy')
        monkeypatch.setattr(device_link.serial, 'Serial', refuse)
        link = SerialDeviceLink()
        with pytest.raises(DeviceUnavailable, match='port busy'):
            link.connect('COM7')
        assert not link.is_connected()

    def test_handshake_and_command(self, serial_link):
        serial_link.handshake()
        serial_link.send_command(42.4)
        assert serial_link.ser.written == ['manual 1\r\n', 'shot 42\r\n']

    @pytest.mark.parametrize('intensity', [-1, 100.5, float('nan'), None])
    def test_command_out_of_range(self, serial_link, intensity):
        with pytest.raises(CommandRejected):
            serial_link.send_command(intensity)
        assert serial_link.ser.written == []

    def test_write_timeout(self, serial_link):
        serial_link.ser.write_error = serial.SerialTimeoutException('slow')
        with pytest.raises(DeviceTimeout):
            serial_link.send_command(10)

    def test_write_error(self, serial_link):
        serial_link.ser.write_error = serial.SerialException('unplugged')
        with pytest.raises(CommandRejected):
            serial_link.send_command(10)

    def test_read_skips_unrelated_lines(self, serial_link):
        serial_link.ser.responses = [b'OK\r\n', b'+ 123.50 C\r\n']
        temperature, sampled_at = serial_link.read_temperature()
        assert temperature == 123.5
        assert sampled_at == serial_link.clock()
        assert serial_link.ser.written == ['tempshow\r\n']

    def test_read_without_answer_times_out(self, serial_link):
        with pytest.raises(DeviceTimeout):
            serial_link.read_temperature()

    def test_read_partial_line_times_out(self, serial_link):
        serial_link.ser.responses = [b'+12']
        with pytest.raises(DeviceTimeout):
            serial_link.read_temperature()

    def test_device_error_line(self, serial_link):
        serial_link.ser.responses = [b'ERR thermocouple open\r\n']
        with pytest.raises(ReadFailure):
            serial_link.read_temperature()

    def test_corrupted_reading(self, serial_link):
        serial_link.ser.responses = [b'+21.5.3C\r\n']
        with pytest.raises(ReadFailure):
            serial_link.read_temperature()

    def test_disconnect(self, serial_link):
        ser = serial_link.ser
        serial_link.disconnect()
        assert not ser.is_open
        assert not serial_link.is_connected()
        with pytest.raises(DeviceTimeout):
            serial_link.send_command(10)
        serial_link.disconnect()


class TestSimulatedDeviceLink:
    """Tests for the simulated oven."""

    def test_heats_under_full_power(self):
        clock = ManualClock()
        sim = SimulatedDeviceLink(clock=clock).connect(SIMULATOR_PORT)
        start, _ = sim.read_temperature()
        sim.send_command(100)
        for _ in range(30):
            clock.advance(1.0)
            sim.send_command(100)
        temperature, sampled_at = sim.read_temperature()
        assert temperature > start + 20
        assert sampled_at == clock()

    def test_cools_towards_ambient(self):
        clock = ManualClock()
        sim = SimulatedDeviceLink(clock=clock, start_temperature=200.0).connect(SIMULATOR_PORT)
        sim.send_command(0)
        clock.advance(60.0)
        temperature, _ = sim.read_temperature()
        assert SimulatedDeviceLink.AMBIENT <= temperature < 200.0

    def test_rejects_out_of_range(self):
        sim = SimulatedDeviceLink(clock=ManualClock()).connect(SIMULATOR_PORT)
        with pytest.raises(CommandRejected):
            sim.send_command(101)

    def test_requires_connection(self):
        sim = SimulatedDeviceLink(clock=ManualClock())
        with pytest.raises(DeviceError):
            sim.read_temperature()
        with pytest.raises(DeviceTimeout):
            sim.send_command(10)


class TestOpenLink:
    """Tests for link selection by port name."""

    def test_simulator_port(self):
        assert isinstance(open_link(SIMULATOR_PORT), SimulatedDeviceLink)

    def test_serial_port_uses_config(self):
        link = open_link('COM3', {'baud': 19200, 'timeout': 1.5})
        assert isinstance(link, SerialDeviceLink)
        assert link.baud == 19200
        assert link.timeout == 1.5
        assert not link.is_connected()

    def test_available_ports_include_simulator(self, monkeypatch):
        monkeypatch.setattr(device_link.list_ports, 'comports', lambda: [])
        assert available_ports() == [SIMULATOR_PORT]
