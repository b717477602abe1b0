#!/usr/bin/env python3
"""
Reflow Oven Controller
Drives the oven's heater through a reflow profile over a serial Device Link
Implements a bounded proportional control loop with safety faults
Web interface for monitoring and control
"""

import copy
import json
import logging
import math
import os
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from simple_pid import PID

from device_link import (
    CommandRejected,
    DeviceError,
    DeviceTimeout,
    DeviceUnavailable,
    ReadFailure,
    available_ports,
    open_link,
)
from reflow_profiles import Profile, ProfileInvalid, ProfileLibrary, ProfilePoint, parse_profile, validate_profile
from session_recorder import MessageLog, Sample, SessionRecorder, sample_as_dict

# Default configuration
DEFAULT_CONFIG = {
    "device": {
        "port": None,
        "baud": 9600,
        "timeout": 2.0
    },
    "safety": {
        "max_temp": 260.0,
        "stale_timeout": 5.0,
        "read_failure_limit": 2
    },
    "control": {
        "gain": 4.0,
        "base": 20.0,
        "ki": 0.0,
        "kd": 0.0,
        "tick_interval": 1.0,
        "command_retries": 1
    },
    "profiles": {
        "directory": "profiles"
    },
    "web": {
        "host": "0.0.0.0",
        "port": 5000
    },
    "log": {
        "file": "reflow.log",
        "level": "INFO"
    }
}


class ConfigInvalid(ValueError):
    """Configuration value outside its allowed range."""


def merge_config(config):
    """Overlay a (possibly partial) configuration on the defaults"""
    merged = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in (config or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def load_config(config_file='config.json'):
    """Load configuration from file, create with defaults if doesn't exist"""
    if os.path.exists(config_file):
        try:
            with open(config_file, 'r') as f:
                config = json.load(f)
            logging.info(f"Configuration loaded from {config_file}")
            return merge_config(config)
        except (OSError, ValueError) as e:
            logging.error(f"Failed to load config: {e}, using defaults")
            return copy.deepcopy(DEFAULT_CONFIG)
    else:
        # Create default config file
        try:
            with open(config_file, 'w') as f:
                json.dump(DEFAULT_CONFIG, f, indent=4)
            logging.info(f"Created default configuration file: {config_file}")
        except OSError as e:
            logging.error(f"Failed to create config file: {e}, using defaults")
        return copy.deepcopy(DEFAULT_CONFIG)


def save_config(config, config_file='config.json'):
    """Save configuration to file"""
    try:
        with open(config_file, 'w') as f:
            json.dump(config, f, indent=4)
        logging.info(f"Configuration saved to {config_file}")
        return True
    except OSError as e:
        logging.error(f"Failed to save config: {e}")
        return False


def validate_config(config):
    """
    Check configuration bounds.

    Raises:
        ConfigInvalid: naming the first value out of range
    """
    def value(section, key):
        try:
            v = config[section][key]
        except (KeyError, TypeError):
            raise ConfigInvalid(f"Missing configuration value {section}.{key}")
        if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v):
            raise ConfigInvalid(f"{section}.{key} must be a finite number, got {v!r}")
        return v

    def positive(section, key):
        if value(section, key) <= 0:
            raise ConfigInvalid(f"{section}.{key} must be > 0")

    def non_negative(section, key):
        if value(section, key) < 0:
            raise ConfigInvalid(f"{section}.{key} must be >= 0")

    positive('device', 'timeout')
    positive('safety', 'max_temp')
    positive('safety', 'stale_timeout')
    if value('safety', 'read_failure_limit') < 1:
        raise ConfigInvalid("safety.read_failure_limit must be >= 1")
    non_negative('control', 'gain')
    non_negative('control', 'ki')
    non_negative('control', 'kd')
    positive('control', 'tick_interval')
    non_negative('control', 'command_retries')
    if not 0 <= value('control', 'base') <= 100:
        raise ConfigInvalid("control.base must be within [0, 100]")


def setup_logging(config):
    """Log to the configured file and to the console"""
    log_config = config.get('log', {})
    logging.basicConfig(
        level=getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_config.get('file', 'reflow.log')),
            logging.StreamHandler()
        ]
    )


class IntensityRegulator:
    """
    Heater intensity from temperature error.

    intensity = clamp(base + gain * (target - measured), 0, 100)

    The proportional term comes from a simple_pid controller whose output is
    limited to [-base, 100 - base]; optional integral and derivative gains
    are passed through. With ki = kd = 0 the output is monotonic in the error
    and saturates at both bounds for any error, infinite ones included.
    """

    def __init__(self, gain, base, ki=0.0, kd=0.0):
        self.base = float(base)
        self.pid = PID(gain, ki, kd, setpoint=0.0, sample_time=None,
                       output_limits=(-self.base, 100.0 - self.base))

    def reset(self):
        self.pid.reset()

    def __call__(self, target, measured, dt):
        error = target - measured
        if math.isnan(error):
            return 0.0
        if math.isinf(error):
            # gain * inf saturates for any positive gain
            if self.pid.Kp > 0:
                return 100.0 if error > 0 else 0.0
            return min(100.0, max(0.0, self.base))
        self.pid.setpoint = target
        output = self.base + self.pid(measured, dt=dt)
        return min(100.0, max(0.0, output))


class RunStatus(Enum):
    IDLE = 'Idle'
    CONNECTING = 'Connecting'
    RUNNING = 'Running'
    STOPPING = 'Stopping'
    FAULTED = 'Faulted'


class FaultReason(Enum):
    DEVICE_TIMEOUT = 'DeviceTimeout'
    READ_FAILURE = 'ReadFailure'
    COMMAND_FAILED = 'CommandFailed'
    OVER_TEMPERATURE = 'OverTemperature'
    DEVICE_DISCONNECTED = 'DeviceDisconnected'
    INTERNAL_ERROR = 'InternalError'


@dataclass(frozen=True)
class RunState:
    """Immutable snapshot of the controller; replaced on every change."""
    status: RunStatus = RunStatus.IDLE
    active_profile: Optional[Profile] = None
    elapsed_since_start: float = 0.0
    last_sample: Optional[Sample] = None
    last_command_time: Optional[float] = None
    port: Optional[str] = None
    connected: bool = False
    phase: Optional[str] = None
    target_temperature: Optional[float] = None
    intensity: float = 0.0
    fault_reason: Optional[FaultReason] = None
    last_error: Optional[str] = None
    manual: bool = False

    def to_dict(self):
        profile = self.active_profile
        return {
            'status': self.status.value,
            'profile': profile.name if profile else None,
            'profile_duration': profile.duration if profile else None,
            'elapsed': self.elapsed_since_start,
            'last_sample': sample_as_dict(self.last_sample),
            'temperature': self.last_sample.measured_temperature if self.last_sample else None,
            'target_temperature': self.target_temperature,
            'intensity': self.intensity,
            'phase': self.phase,
            'last_command_time': self.last_command_time,
            'port': self.port,
            'connected': self.connected,
            'fault_reason': self.fault_reason.value if self.fault_reason else None,
            'last_error': self.last_error,
            'manual': self.manual,
            'timestamp': datetime.now().isoformat(),
        }


# Operator intents, applied in arrival order at the start of a tick
@dataclass(frozen=True)
class Connect:
    port: str


@dataclass(frozen=True)
class Disconnect:
    pass


@dataclass(frozen=True)
class SelectProfile:
    profile: Any  # library name, profile dict or Profile


@dataclass(frozen=True)
class ManualTarget:
    temperature: float
    duration: Optional[float] = None  # seconds, None holds until Stop


@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class AcknowledgeFault:
    pass


@dataclass(frozen=True)
class StatusEvent:
    state: RunState
    sample: Optional[Sample] = None
    fault_reason: Optional[FaultReason] = None
    message: Optional[str] = None


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def fault_reason_for(error):
    if isinstance(error, ReadFailure):
        return FaultReason.READ_FAILURE
    if isinstance(error, CommandRejected):
        return FaultReason.COMMAND_FAILED
    if isinstance(error, DeviceUnavailable):
        return FaultReason.DEVICE_DISCONNECTED
    return FaultReason.DEVICE_TIMEOUT


class ReflowController:
    def __init__(self, config=None, link_factory=open_link, profiles=None, clock=time.monotonic):
        """
        Initialize the reflow controller

        Args:
            config: Configuration dictionary (uses defaults if None)
            link_factory: Callable (port, device_config) -> DeviceLink
            profiles: ProfileLibrary (loads the configured directory if None)
            clock: Monotonic time source used for sample age and command gaps
        """
        self.config = merge_config(config)
        validate_config(self.config)

        device_config = self.config['device']
        safety_config = self.config['safety']
        control_config = self.config['control']

        self.device_config = device_config
        self.device_timeout = device_config['timeout']

        # Safety parameters
        self.max_temp = safety_config['max_temp']
        self.stale_timeout = safety_config['stale_timeout']
        self.read_failure_limit = int(safety_config['read_failure_limit'])

        # Control parameters
        self.tick_interval = control_config['tick_interval']
        self.command_retries = int(control_config['command_retries'])
        self.regulator = IntensityRegulator(
            control_config['gain'],
            control_config['base'],
            control_config['ki'],
            control_config['kd'],
        )

        logging.info(f"Regulator: gain={control_config['gain']}, base={control_config['base']}%, "
                     f"ki={control_config['ki']}, kd={control_config['kd']}")
        logging.info(f"Safety: Max={self.max_temp}°C, stale timeout={self.stale_timeout}s, "
                     f"read failure limit={self.read_failure_limit}")

        self.link_factory = link_factory
        self.clock = clock
        self.profiles = profiles if profiles is not None else ProfileLibrary(self.config['profiles']['directory'])
        self.recorder = SessionRecorder()
        self.messages = MessageLog()
        self.link = None

        self._state = RunState()
        self._intents = queue.Queue()
        self._listeners = []
        self._profile_before_manual = None
        self._read_failures = 0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='device-link')
        self._shutdown = threading.Event()
        self._thread = None

    # ----- observation -----

    def snapshot(self):
        """Latest RunState; never mutated after it is returned"""
        return self._state

    def add_listener(self, callback):
        """Register callback(StatusEvent), called from the control loop"""
        self._listeners.append(callback)

    def _emit(self, sample=None, fault_reason=None, message=None):
        event = StatusEvent(self._state, sample, fault_reason, message)
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logging.exception("Status listener failed")

    def _note(self, message, level=logging.INFO):
        logging.log(level, message)
        self.messages.add(message)

    def _update(self, **changes):
        self._state = replace(self._state, **changes)

    def _transition(self, status, message=None, **changes):
        previous = self._state.status
        self._update(status=status, **changes)
        text = f"{previous.value} -> {status.value}" + (f": {message}" if message else "")
        self._note(text, logging.ERROR if status is RunStatus.FAULTED else logging.INFO)
        self._emit(fault_reason=self._state.fault_reason, message=text)

    def _reject(self, message):
        self._update(last_error=message)
        self._note(f"Rejected: {message}", logging.WARNING)
        self._emit(message=message)

    # ----- intents -----

    def submit(self, intent):
        """Queue an operator intent; it is applied at the next tick"""
        self._intents.put(intent)

    def connect(self, port):
        self.submit(Connect(port))

    def disconnect(self):
        self.submit(Disconnect())

    def select_profile(self, profile):
        self.submit(SelectProfile(profile))

    def start(self):
        self.submit(Start())

    def set_manual_target(self, temperature, duration=None):
        self.submit(ManualTarget(temperature, duration))

    def stop(self):
        self.submit(Stop())

    def acknowledge_fault(self):
        self.submit(AcknowledgeFault())

    def _drain_intents(self):
        while True:
            try:
                intent = self._intents.get_nowait()
            except queue.Empty:
                return
            logging.debug(f"Applying intent {intent}")
            if isinstance(intent, Connect):
                self._on_connect(intent.port)
            elif isinstance(intent, Disconnect):
                self._on_disconnect()
            elif isinstance(intent, SelectProfile):
                self._on_select_profile(intent.profile)
            elif isinstance(intent, Start):
                self._on_start()
            elif isinstance(intent, ManualTarget):
                self._on_manual_target(intent.temperature, intent.duration)
            elif isinstance(intent, Stop):
                self._on_stop()
            elif isinstance(intent, AcknowledgeFault):
                self._on_acknowledge()
            else:
                logging.warning(f"Ignoring unknown intent {intent!r}")

    def _on_connect(self, port):
        status = self._state.status
        if status not in (RunStatus.IDLE, RunStatus.CONNECTING):
            self._reject(f"Cannot connect while {status.value}")
            return

        if self.link is not None and self.link.is_connected() and self.link.port == port:
            if status is RunStatus.IDLE:
                self._transition(RunStatus.CONNECTING, f"Link on {port} already open", last_error=None)
            return

        self._close_link()
        link = self.link_factory(port, self.device_config)
        try:
            self._call(link.connect, port)
        except DeviceError as e:
            self._update(connected=False, port=None)
            if status is RunStatus.CONNECTING:
                self._transition(RunStatus.IDLE, "Link closed")
            self._reject(f"DeviceUnavailable: {e}")
            return

        self.link = link
        self._transition(RunStatus.CONNECTING, f"Connected to {port}",
                         port=port, connected=True, last_error=None)

    def _on_disconnect(self):
        status = self._state.status
        if status in (RunStatus.RUNNING, RunStatus.STOPPING):
            self._reject("Cannot disconnect during a run, stop it first")
            return
        self._close_link()
        if status is RunStatus.CONNECTING:
            self._transition(RunStatus.IDLE, "Disconnected")
        else:
            self._note("Disconnected")
            self._emit()

    def _close_link(self):
        if self.link is not None:
            try:
                self._call(self.link.disconnect)
            except DeviceError as e:
                logging.warning(f"Error while closing link: {e}")
            self.link = None
        self._update(connected=False, port=None)

    def _on_select_profile(self, selection):
        if self._state.status in (RunStatus.RUNNING, RunStatus.STOPPING):
            self._reject("Cannot change profile during a run")
            return
        try:
            if isinstance(selection, Profile):
                profile = selection
            elif isinstance(selection, dict):
                profile = parse_profile(selection)
            else:
                profile = self.profiles.get(selection)
        except ProfileInvalid as e:
            self._reject(f"ProfileInvalid: {e}")
            return

        if self._state.manual:
            # Faulted manual run: becomes the selection once acknowledged
            self._profile_before_manual = profile
        self._update(active_profile=profile, last_error=None)
        self._note(f"Profile '{profile.name}' selected ({len(profile.points)} points, "
                   f"{profile.duration:.0f}s, peak {profile.peak_temperature:.0f}°C)")
        self._emit()

    def _on_start(self):
        status = self._state.status
        if status is RunStatus.RUNNING:
            self._reject("Run already active")
            return
        if status is RunStatus.FAULTED:
            self._reject(f"Fault {self._state.fault_reason.value} must be acknowledged first")
            return
        if self.link is None or not self.link.is_connected():
            self._reject("Device not connected")
            return
        profile = self._state.active_profile
        if profile is None:
            self._reject("No profile selected")
            return

        self._begin_run(profile, f"Run started with profile '{profile.name}'")

    def _begin_run(self, profile, message, **changes):
        """Handshake and enter Running; the caller has checked link and status"""
        if self._state.status is RunStatus.IDLE:
            self._transition(RunStatus.CONNECTING, f"Reusing link on {self.link.port}")

        try:
            self._call(self.link.handshake)
            measured, _ = self._read_temperature()
        except DeviceError as e:
            self._fault(fault_reason_for(e), f"Handshake failed: {e}")
            return

        self.regulator.reset()
        self.recorder.clear()
        self._read_failures = 0
        self._transition(
            RunStatus.RUNNING,
            f"{message} at {measured:.1f}°C",
            active_profile=profile,
            elapsed_since_start=0.0,
            last_sample=None,
            last_command_time=None,
            phase=profile.phase_at(0.0),
            target_temperature=profile.interpolate(0.0),
            intensity=0.0,
            fault_reason=None,
            last_error=None,
            **changes,
        )

    def _on_manual_target(self, temperature, duration):
        state = self._state
        if state.status is RunStatus.FAULTED:
            self._reject(f"Fault {state.fault_reason.value} must be acknowledged first")
            return
        if not _is_number(temperature) or not (duration is None or _is_number(duration)):
            self._reject(f"Manual target needs numbers, got {temperature!r}, {duration!r}")
            return
        if state.status is RunStatus.RUNNING and not state.manual:
            self._reject("Cannot set a manual target during a profile run")
            return
        if not 0 <= temperature < self.max_temp:
            self._reject(f"Manual target {temperature}°C must be within [0, {self.max_temp:.0f})°C")
            return
        if duration is not None and not (duration > 0 and math.isfinite(duration)):
            self._reject(f"Manual duration must be a finite number > 0, got {duration}")
            return
        if self.link is None or not self.link.is_connected():
            self._reject("Device not connected")
            return

        elapsed = state.elapsed_since_start if state.manual else 0.0
        points = [ProfilePoint(0.0, temperature)]
        if duration is not None:
            points.append(ProfilePoint(elapsed + duration, temperature))
        profile = Profile('manual', points)

        if state.status is RunStatus.RUNNING:
            self._update(active_profile=profile, target_temperature=temperature, last_error=None)
            self._note(f"Manual target changed to {temperature:.1f}°C")
            self._emit()
            return

        self._profile_before_manual = state.active_profile
        limit = f" for {duration:.0f}s" if duration is not None else ""
        self._begin_run(profile, f"Manual run to {temperature:.1f}°C{limit} started", manual=True)

    def _end_manual(self):
        """State changes that put the selected profile back after a manual run"""
        if not self._state.manual:
            return {}
        profile, self._profile_before_manual = self._profile_before_manual, None
        return dict(active_profile=profile, manual=False)

    def _on_stop(self):
        status = self._state.status
        if status in (RunStatus.RUNNING, RunStatus.CONNECTING):
            self._transition(RunStatus.STOPPING, "Stop requested")
        else:
            logging.debug(f"Stop ignored while {status.value}")

    def _on_acknowledge(self):
        if self._state.status is not RunStatus.FAULTED:
            logging.debug("Nothing to acknowledge")
            return
        reason = self._state.fault_reason
        self._transition(RunStatus.IDLE, f"Fault {reason.value} acknowledged",
                         fault_reason=None, **self._run_reset(), **self._end_manual())

    @staticmethod
    def _run_reset():
        return dict(elapsed_since_start=0.0, last_sample=None, phase=None,
                    target_temperature=None, intensity=0.0)

    # ----- device access -----

    def _call(self, fn, *args):
        """Run a Device Link call, raising DeviceTimeout if it overruns"""
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.device_timeout)
        except FutureTimeout:
            future.cancel()
            raise DeviceTimeout(f"{getattr(fn, '__name__', fn)} did not return within {self.device_timeout}s")

    def _read_temperature(self):
        measured, sampled_at = self._call(self.link.read_temperature)
        if measured is None or math.isnan(measured):
            raise ReadFailure(f"Invalid temperature {measured}")
        age = self.clock() - sampled_at
        if age > self.stale_timeout:
            raise DeviceTimeout(f"Temperature sample is {age:.1f}s old")
        return measured, sampled_at

    def _send(self, intensity):
        """Send a command, retrying up to command_retries times"""
        attempts = 1 + self.command_retries
        for attempt in range(1, attempts + 1):
            try:
                self._call(self.link.send_command, intensity)
            except DeviceError as e:
                if attempt == attempts:
                    raise
                logging.warning(f"Command {intensity:.1f}% failed ({e}), retrying")
                continue
            self._update(intensity=intensity, last_command_time=self.clock())
            return

    def _send_best_effort(self, intensity):
        if self.link is None or not self.link.is_connected():
            return
        try:
            self._send(intensity)
        except DeviceError as e:
            logging.warning(f"Could not send {intensity:.0f}% command: {e}")

    # ----- control loop -----

    def tick(self):
        """One control step: apply queued intents, then advance the run"""
        self._drain_intents()

        status = self._state.status
        if status is RunStatus.RUNNING:
            self._run_tick()
        elif status is RunStatus.CONNECTING and not (self.link and self.link.is_connected()):
            self.link = None
            self._fault(FaultReason.DEVICE_DISCONNECTED, "Device link lost")

        if self._state.status is RunStatus.STOPPING:
            self._finish_stop()

    def _run_tick(self):
        profile = self._state.active_profile
        elapsed = self._state.elapsed_since_start

        if self.link is None or not self.link.is_connected():
            self._fault(FaultReason.DEVICE_DISCONNECTED, "Device link lost")
            return

        try:
            measured, _ = self._read_temperature()
        except DeviceError as e:
            self._read_failures += 1
            if self._read_failures >= self.read_failure_limit:
                self._fault(fault_reason_for(e),
                            f"Temperature read failed {self._read_failures} times: {e}")
                return
            logging.warning(f"Temperature read failed ({self._read_failures}/"
                            f"{self.read_failure_limit}): {e}")
            self._advance(elapsed)
            return
        self._read_failures = 0

        target = profile.interpolate(elapsed)
        phase = profile.phase_at(elapsed)
        if phase != self._state.phase:
            self._note(f"Phase '{phase}' started at {elapsed:.0f}s, {measured:.1f}°C")
        self._update(phase=phase, target_temperature=target)

        intensity = self.regulator(target, measured, self.tick_interval)
        logging.debug(f"t={elapsed:.0f}s Temp: {measured:.1f}°C | Target: {target:.1f}°C | "
                      f"Output: {intensity:.1f}%")

        if measured >= self.max_temp:
            self._send_best_effort(0.0)
            self._update(intensity=0.0)
            self._record(Sample(elapsed, measured, target, 0.0, phase))
            self._fault(FaultReason.OVER_TEMPERATURE,
                        f"Temperature {measured:.1f}°C reached the {self.max_temp:.0f}°C ceiling")
            return

        last_command = self._state.last_command_time
        if last_command is not None and self.clock() - last_command > self.stale_timeout:
            self._fault(FaultReason.DEVICE_TIMEOUT,
                        f"No command issued for {self.clock() - last_command:.1f}s")
            return

        try:
            self._send(intensity)
        except DeviceError as e:
            self._fault(FaultReason.COMMAND_FAILED, f"Command {intensity:.1f}% failed: {e}")
            return

        self._record(Sample(elapsed, measured, target, intensity, phase))
        self._advance(elapsed)

    def _record(self, sample):
        self.recorder.record(sample)
        self._update(last_sample=sample)
        self._emit(sample=sample)

    def _advance(self, elapsed):
        elapsed += self.tick_interval
        self._update(elapsed_since_start=elapsed)
        profile = self._state.active_profile
        if self._state.manual and profile.duration == 0:
            return  # held until Stop
        if elapsed > profile.duration:
            self._transition(RunStatus.STOPPING, f"Profile '{profile.name}' complete")

    def _finish_stop(self):
        # Shutting down: a failed zero command does not fault the run
        self._send_best_effort(0.0)
        self._read_failures = 0
        self._transition(RunStatus.IDLE, "Heater off", **self._run_reset(), **self._end_manual())

    def _fault(self, reason, message):
        if reason is FaultReason.INTERNAL_ERROR:
            self._send_best_effort(0.0)
        connected = self.link is not None and self.link.is_connected()
        self._transition(RunStatus.FAULTED, f"{reason.value}: {message}",
                         fault_reason=reason, intensity=0.0, connected=connected)

    def run(self):
        """Fixed-interval control loop; returns after shutdown()"""
        logging.info(f"Control loop started, tick interval {self.tick_interval}s")
        while not self._shutdown.is_set():
            started = time.monotonic()
            try:
                self.tick()
            except Exception as e:
                logging.exception("Control tick failed")
                self._fault(FaultReason.INTERNAL_ERROR, str(e))
            self._shutdown.wait(max(0.0, self.tick_interval - (time.monotonic() - started)))
        logging.info("Control loop stopped")

    def start_loop(self):
        """Run the control loop in a background thread"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self.run, name='reflow-control', daemon=True)
        self._thread.start()

    def shutdown(self):
        """Stop the loop, turn the heater off and close the link"""
        if self._shutdown.is_set() and self.link is None:
            return
        self._shutdown.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.tick_interval + self.device_timeout)
        self._send_best_effort(0.0)
        self._close_link()
        self._executor.shutdown(wait=False)
        logging.info("Heater powered off")

    def get_summary(self):
        profile = self._state.active_profile
        return self.recorder.summary(liquidus=profile.liquidus if profile else None)


# Global reflow controller instance
controller = None

# Flask web application
app = Flask(__name__)
CORS(app)


def _not_initialized():
    return jsonify({'error': 'Controller not initialized'}), 500


def _limit_arg():
    """'limit' query argument; None when absent, ValueError when not a positive integer"""
    raw = request.args.get('limit')
    if raw is None:
        return None
    limit = int(raw)
    if limit < 1:
        raise ValueError(f"limit must be >= 1, got {limit}")
    return limit


def _queued(message):
    return jsonify({
        'success': True,
        'message': message,
        'state': controller.snapshot().to_dict()
    }), 202


@app.route('/api/status')
def get_status():
    """Get current controller status"""
    if controller:
        return jsonify(controller.snapshot().to_dict())
    return _not_initialized()


@app.route('/api/data')
def get_data():
    """Get samples of the current run"""
    if not controller:
        return _not_initialized()
    try:
        limit = _limit_arg()
    except ValueError as e:
        return jsonify({'error': f"Invalid 'limit': {e}"}), 400
    return jsonify(controller.recorder.to_records(limit))


@app.route('/api/summary')
def get_summary():
    """Get summary of the current or last run"""
    if controller:
        summary = controller.get_summary()
        if summary is None:
            return jsonify({'error': 'No samples recorded'}), 404
        return jsonify(summary)
    return _not_initialized()


@app.route('/api/messages')
def get_messages():
    """Get operator messages"""
    if not controller:
        return _not_initialized()
    try:
        limit = _limit_arg()
    except ValueError as e:
        return jsonify({'error': f"Invalid 'limit': {e}"}), 400
    return jsonify(controller.messages.entries(limit))


@app.route('/api/ports')
def get_ports():
    """List ports a device can be connected on"""
    return jsonify({'ports': available_ports()})


@app.route('/api/profiles', methods=['GET'])
def list_profiles():
    """List all available profiles"""
    if controller:
        return jsonify(controller.profiles.list_profiles())
    return _not_initialized()


@app.route('/api/profiles', methods=['POST'])
def save_profile():
    """Validate a profile and add it to the library (saved in the profile directory)"""
    if not controller:
        return _not_initialized()
    data = request.get_json(silent=True) or {}
    try:
        profile = controller.profiles.add(data.get('profile'))
    except ProfileInvalid as e:
        return jsonify({'error': 'ProfileInvalid', 'issues': e.issues}), 400
    except OSError as e:
        logging.error(f"Failed to save profile: {e}")
        return jsonify({'error': f'Failed to save profile: {e}'}), 500
    return jsonify({'success': True, 'message': f"Profile '{profile.name}' saved",
                    'profile': profile.to_dict()}), 201


@app.route('/api/profiles/<name>', methods=['GET'])
def get_profile(name):
    """Get a profile's points and phases"""
    if not controller:
        return _not_initialized()
    try:
        return jsonify(controller.profiles.get(name).to_dict())
    except ProfileInvalid as e:
        return jsonify({'error': str(e), 'issues': e.issues}), 404


@app.route('/api/profiles/validate', methods=['POST'])
def validate_profile_endpoint():
    """Check profile data without selecting it"""
    data = request.get_json(silent=True) or {}
    issues = validate_profile(data.get('profile'))
    return jsonify({'valid': not issues, 'issues': issues})


@app.route('/api/connect', methods=['POST'])
def connect_device():
    """Open the Device Link on a port"""
    if not controller:
        return _not_initialized()
    data = request.get_json(silent=True) or {}
    port = data.get('port')
    if not port:
        return jsonify({'error': "Missing 'port'"}), 400
    controller.connect(port)
    return _queued(f'Connect to {port} queued')


@app.route('/api/disconnect', methods=['POST'])
def disconnect_device():
    """Close the Device Link"""
    if not controller:
        return _not_initialized()
    controller.disconnect()
    return _queued('Disconnect queued')


@app.route('/api/select-profile', methods=['POST'])
def select_profile():
    """Select a library profile by name, or a custom profile object"""
    if not controller:
        return _not_initialized()
    data = request.get_json(silent=True) or {}
    profile = data.get('profile')
    if isinstance(profile, dict):
        issues = validate_profile(profile)
        if issues:
            return jsonify({'error': 'ProfileInvalid', 'issues': issues}), 400
    elif isinstance(profile, str):
        if profile not in controller.profiles.names():
            return jsonify({'error': f"Unknown profile '{profile}'"}), 404
    else:
        return jsonify({'error': "Missing 'profile'"}), 400
    controller.select_profile(profile)
    return _queued('Profile selection queued')


@app.route('/api/start', methods=['POST'])
def start_run():
    """Start a reflow run"""
    if not controller:
        return _not_initialized()
    if controller.snapshot().status is RunStatus.RUNNING:
        return jsonify({'error': 'Run already active'}), 400
    controller.start()
    return _queued('Start queued')


@app.route('/api/manual', methods=['POST'])
def manual_target():
    """Hold a constant target temperature, optionally for 'duration' seconds"""
    if not controller:
        return _not_initialized()
    data = request.get_json(silent=True) or {}
    temperature = data.get('temperature')
    duration = data.get('duration')
    if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
        return jsonify({'error': "Missing or non-numeric 'temperature'"}), 400
    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, (int, float))):
        return jsonify({'error': "'duration' must be a number of seconds"}), 400
    if controller.snapshot().status is RunStatus.RUNNING and not controller.snapshot().manual:
        return jsonify({'error': 'Profile run active'}), 400
    controller.set_manual_target(float(temperature), None if duration is None else float(duration))
    return _queued(f'Manual target {temperature}°C queued')


@app.route('/api/stop', methods=['POST'])
def stop_run():
    """Stop the current run"""
    if not controller:
        return _not_initialized()
    controller.stop()
    return _queued('Stop queued')


@app.route('/api/acknowledge', methods=['POST'])
def acknowledge_fault():
    """Acknowledge a fault so a new run can start"""
    if not controller:
        return _not_initialized()
    controller.acknowledge_fault()
    return _queued('Acknowledge queued')


@app.route('/api/config', methods=['GET'])
def get_config():
    """Get the active configuration"""
    if controller:
        return jsonify(controller.config)
    return _not_initialized()


def start_web_server(port=5000, host='0.0.0.0'):
    """Start the Flask web server"""
    logging.info(f"Starting web server on {host}:{port}")
    app.run(host=host, port=port, debug=False, use_reloader=False)


if __name__ == "__main__":
    # Load configuration
    config = load_config('config.json')
    setup_logging(config)

    # Initialize reflow controller with config
    controller = ReflowController(config=config)

    # Connect right away when a port is configured
    if config['device'].get('port'):
        controller.connect(config['device']['port'])

    # Start web server in a separate thread
    web_config = config['web']
    web_thread = threading.Thread(
        target=start_web_server,
        args=(web_config['port'], web_config['host'])
    )
    web_thread.daemon = True
    web_thread.start()

    logging.info(f"Web interface available at http://[host]:{web_config['port']}")
    try:
        controller.run()
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
    finally:
        controller.shutdown()
