"""
Device Link for the Reflow Oven Controller

Connection to the oven's heater/thermocouple board. Every call either returns
a result or raises one of the DeviceError subclasses below within a bounded
time; retry decisions are left to the controller.

Two implementations are provided:
    SerialDeviceLink     - line protocol over a serial port (pyserial)
    SimulatedDeviceLink  - thermal model of an oven, for testing without hardware
"""

import logging
import re
import time

import serial
from serial.tools import list_ports

SIMULATOR_PORT = 'Simulator'

# Line protocol commands
CMD_MANUAL = 'manual'
CMD_TEMP_SHOW = 'tempshow'
CMD_SHOT = 'shot'

# "+215.25C" or "Reflow,3,+215.25,C" once spaces are removed
REGEX_TEMP = re.compile(r'^([+-][0-9.]+)C$')
REGEX_SHORT = re.compile(r'^([a-zA-Z0-9 ]+),([0-9]+),([+-][0-9.]+),C$')


class DeviceError(Exception):
    """Base class for Device Link failures."""


class DeviceUnavailable(DeviceError):
    """The link cannot be opened."""


class DeviceTimeout(DeviceError):
    """The device did not answer within the configured timeout."""


class ReadFailure(DeviceError):
    """A temperature reading was returned but is unusable."""


class CommandRejected(DeviceError):
    """The device or link refused an intensity command."""


def available_ports():
    """List serial ports that can be passed to connect(), plus the simulator"""
    ports = [p.device for p in list_ports.comports()]
    ports.append(SIMULATOR_PORT)
    return ports


def open_link(port, config=None):
    """
    Create an (unconnected) Device Link suited to a port name.

    Args:
        port: Serial port name, or SIMULATOR_PORT
        config: 'device' section of the controller configuration

    Returns:
        DeviceLink instance
    """
    config = config or {}
    if port == SIMULATOR_PORT:
        return SimulatedDeviceLink()
    return SerialDeviceLink(baud=config.get('baud', 9600), timeout=config.get('timeout', 2.0))


class DeviceLink:
    """
    Contract between the controller and the oven hardware.

    connect(port)        open the link, DeviceUnavailable on failure
    handshake()          put the device into host-controlled mode
    send_command(i)      set heater intensity 0-100, CommandRejected/DeviceTimeout
    read_temperature()   (temperature, sampled_at), ReadFailure/DeviceTimeout
    disconnect()         close the link, never raises
    """

    port = None

    def connect(self, port):
        raise NotImplementedError

    def disconnect(self):
        raise NotImplementedError

    def is_connected(self):
        raise NotImplementedError

    def handshake(self):
        pass

    def send_command(self, intensity):
        raise NotImplementedError

    def read_temperature(self):
        raise NotImplementedError


def _check_intensity(intensity):
    if intensity is None or not (0.0 <= intensity <= 100.0):
        raise CommandRejected(f"Intensity out of range: {intensity}")


class SerialDeviceLink(DeviceLink):
    """
    Oven controller board on a serial port (9600 8N1, CR/LF terminated lines).

    Intensity is sent as 'shot <percent>'; the board keeps the heater at that
    level for about a second, so the controller must repeat the command every
    tick. Temperatures are requested with 'tempshow'.
    """

    def __init__(self, baud=9600, timeout=2.0, clock=time.monotonic):
        self.baud = baud
        self.timeout = timeout
        self.clock = clock
        self.port = None
        self.ser = None

    def connect(self, port):
        if self.ser is not None and self.ser.is_open:
            return self
        try:
            self.ser = serial.Serial(
                port,
                self.baud,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=self.timeout,
                write_timeout=self.timeout,
            )
        except (serial.SerialException, ValueError, OSError) as e:
            self.ser = None
            raise DeviceUnavailable(f"Cannot open {port}: {e}") from e
        self.port = port
        logging.info(f"Serial link opened on {port} at {self.baud} baud")
        return self

    def disconnect(self):
        if self.ser is None:
            return
        try:
            self.ser.close()
        except (serial.SerialException, OSError) as e:
            logging.warning(f"Error closing {self.port}: {e}")
        finally:
            self.ser = None
            logging.info(f"Serial link on {self.port} closed")

    def is_connected(self):
        return self.ser is not None and self.ser.is_open

    def _write_line(self, line):
        if not self.is_connected():
            raise DeviceTimeout("Link is not open")
        try:
            self.ser.write(f"{line}\r\n".encode('ascii'))
            self.ser.flush()
        except serial.SerialTimeoutException as e:
            raise DeviceTimeout(f"Write timeout for '{line}'") from e
        except (serial.SerialException, OSError) as e:
            raise CommandRejected(f"Serial error for '{line}': {e}") from e

    def handshake(self):
        """Enable host-controlled (manual) mode on the board"""
        self._write_line(f"{CMD_MANUAL} 1")

    def send_command(self, intensity):
        _check_intensity(intensity)
        self._write_line(f"{CMD_SHOT} {int(round(intensity))}")
        return True

    @staticmethod
    def parse_temperature(line):
        """
        Extract a temperature from one response line.

        Returns:
            Temperature in Celsius, or None if the line is not a reading
        """
        data = line.replace(' ', '')
        match = REGEX_TEMP.match(data)
        if match:
            return float(match.group(1))
        match = REGEX_SHORT.match(data)
        if match:
            return float(match.group(3))
        return None

    def read_temperature(self):
        # Drop readings that arrived between ticks, only a fresh answer counts
        try:
            self.ser.reset_input_buffer()
        except (AttributeError, serial.SerialException, OSError) as e:
            raise ReadFailure(f"Cannot reset input on {self.port}: {e}") from e
        self._write_line(CMD_TEMP_SHOW)

        deadline = self.clock() + self.timeout
        while self.clock() < deadline:
            try:
                raw = self.ser.readline()
            except (serial.SerialException, OSError) as e:
                raise ReadFailure(f"Serial read error: {e}") from e
            if not raw or not raw.endswith(b'\n'):
                break
            try:
                line = raw.decode('ascii').strip()
            except UnicodeDecodeError:
                logging.debug(f"Ignoring undecodable line {raw!r}")
                continue
            if line.lower().startswith('err'):
                raise ReadFailure(f"Device reported '{line}'")
            try:
                temp = self.parse_temperature(line)
            except ValueError:
                raise ReadFailure(f"Corrupted reading '{line}'")
            if temp is not None:
                return temp, self.clock()
            logging.debug(f"Ignoring line '{line}'")

        raise DeviceTimeout(f"No temperature from {self.port} within {self.timeout}s")


class SimulatedDeviceLink(DeviceLink):
    """
    Simulated oven: first-order heating lag plus Newtonian cooling.

    The model advances whenever it is read or commanded, using the elapsed
    time of the supplied clock, so tests can drive it with a manual clock.
    """

    AMBIENT = 20.0
    HEATING_RATE = 3.0     # °C/s at full intensity
    LAG = 0.3              # fraction of the new heating rate applied per second
    COOLING = 0.01         # 1/s, loss proportional to temperature above ambient

    def __init__(self, clock=time.monotonic, start_temperature=None):
        self.clock = clock
        self.port = None
        self.connected = False
        self.temperature = start_temperature if start_temperature is not None else self.AMBIENT
        self.intensity = 0.0
        self._heating = 0.0
        self._last_update = None

    def connect(self, port):
        self.port = port
        self.connected = True
        self._last_update = self.clock()
        logging.info(f"Simulated oven connected on '{port}'")
        return self

    def disconnect(self):
        self.connected = False
        self.intensity = 0.0

    def is_connected(self):
        return self.connected

    def _advance(self):
        now = self.clock()
        dt = now - self._last_update if self._last_update is not None else 0.0
        self._last_update = now
        if dt <= 0:
            return
        lag = min(1.0, self.LAG * dt)
        self._heating += (self.HEATING_RATE * self.intensity / 100.0 - self._heating) * lag
        loss = self.COOLING * (self.temperature - self.AMBIENT)
        self.temperature = max(self.AMBIENT, self.temperature + (self._heating - loss) * dt)

    def send_command(self, intensity):
        if not self.connected:
            raise DeviceTimeout("Simulator is not connected")
        _check_intensity(intensity)
        self._advance()
        self.intensity = float(intensity)
        return True

    def read_temperature(self):
        if not self.connected:
            raise DeviceTimeout("Simulator is not connected")
        self._advance()
        return self.temperature, self.clock()
