"""
Reflow Profiles for the Reflow Oven Controller

This module describes the time/temperature curve a reflow run follows. A
profile is an ordered list of (elapsed seconds, target temperature) points,
divided into named phases such as preheat, soak, reflow and cooling.

Profiles can be written either as explicit points or as a list of segments
(ramp to a target over a number of seconds, then hold it), which is how the
built-in solder profiles below are defined.
"""

import bisect
import json
import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


# Built-in solder paste profiles (temperatures in Celsius, times in seconds)
# Each segment ramps from the previous target to target_temperature over
# 'time' seconds, then holds for 'hold_for' seconds.
BUILTIN_PROFILES = {
    'lead-free': {
        'name': 'lead-free',
        'description': 'SAC305 lead-free paste (liquidus 217°C)',
        'start_temperature': 25,
        'liquidus': 217,
        'segments': [
            {'name': 'preheat', 'target_temperature': 150, 'time': 90, 'hold_for': 0},
            {'name': 'soak', 'target_temperature': 200, 'time': 90, 'hold_for': 0},
            {'name': 'reflow', 'target_temperature': 245, 'time': 40, 'hold_for': 20},
            {'name': 'cooling', 'target_temperature': 50, 'time': 120, 'hold_for': 0},
        ],
    },
    'leaded': {
        'name': 'leaded',
        'description': 'Sn63/Pb37 leaded paste (liquidus 183°C)',
        'start_temperature': 25,
        'liquidus': 183,
        'segments': [
            {'name': 'preheat', 'target_temperature': 100, 'time': 60, 'hold_for': 0},
            {'name': 'soak', 'target_temperature': 150, 'time': 120, 'hold_for': 0},
            {'name': 'reflow', 'target_temperature': 220, 'time': 40, 'hold_for': 20},
            {'name': 'cooling', 'target_temperature': 50, 'time': 120, 'hold_for': 0},
        ],
    },
}


# Names usable as <name>.json in the profile directory
SAFE_NAME = re.compile(r'^[A-Za-z0-9_\-][A-Za-z0-9 _.\-]*$')


class ProfileInvalid(ValueError):
    """Raised when profile data cannot be turned into a usable Profile."""

    def __init__(self, issues):
        if isinstance(issues, str):
            issues = [issues]
        self.issues = list(issues)
        super().__init__('; '.join(self.issues))


@dataclass(frozen=True)
class ProfilePoint:
    elapsed_seconds: float
    target_temperature: float


@dataclass(frozen=True)
class Phase:
    """A named sub-range [start, end) of a profile's elapsed time."""
    name: str
    start: float
    end: float

    def contains(self, elapsed: float) -> bool:
        return self.start <= elapsed < self.end


class Profile:
    """
    Target temperature curve for one reflow run.

    Points must start at 0 seconds and be strictly increasing in time. Phases
    must cover the whole range from 0 to the last point with no gaps or
    overlaps. Instances are read-only once built.
    """

    def __init__(self, name: str, points: List[ProfilePoint],
                 phases: Optional[List[Phase]] = None,
                 description: str = '', liquidus: Optional[float] = None):
        points = [p if isinstance(p, ProfilePoint) else ProfilePoint(float(p[0]), float(p[1]))
                  for p in points]
        end = points[-1].elapsed_seconds if points else 0.0
        if not phases:
            phases = [Phase(name, 0.0, end)]

        issues = _check_points(points) + _check_phases(phases, end)
        if issues:
            raise ProfileInvalid(issues)

        self.name = name
        self.description = description
        self.liquidus = liquidus
        self._points = tuple(points)
        self._phases = tuple(phases)
        self._times = [p.elapsed_seconds for p in self._points]

    @property
    def points(self) -> Tuple[ProfilePoint, ...]:
        return self._points

    @property
    def phases(self) -> Tuple[Phase, ...]:
        return self._phases

    @property
    def duration(self) -> float:
        """Elapsed seconds of the final point."""
        return self._points[-1].elapsed_seconds

    @property
    def peak_temperature(self) -> float:
        return max(p.target_temperature for p in self._points)

    def interpolate(self, elapsed: float) -> float:
        """
        Get the target temperature at an elapsed time.

        Linear interpolation between the two bracketing points. Times before
        the first point return the first temperature, times after the last
        point return the last temperature.

        Args:
            elapsed: Seconds since the run started

        Returns:
            Target temperature in Celsius
        """
        points = self._points
        if elapsed <= points[0].elapsed_seconds:
            return points[0].target_temperature
        if elapsed >= points[-1].elapsed_seconds:
            return points[-1].target_temperature

        i = bisect.bisect_right(self._times, elapsed)
        p1 = points[i - 1]
        p2 = points[i]
        if elapsed == p1.elapsed_seconds:
            return p1.target_temperature

        fraction = (elapsed - p1.elapsed_seconds) / (p2.elapsed_seconds - p1.elapsed_seconds)
        return p1.target_temperature + fraction * (p2.target_temperature - p1.target_temperature)

    def phase_at(self, elapsed: float) -> str:
        """
        Get the name of the phase active at an elapsed time.

        Times before 0 belong to the first phase, times at or after the end
        of the profile belong to the last phase.
        """
        if elapsed < self._phases[0].end:
            return self._phases[0].name
        for phase in self._phases:
            if phase.contains(elapsed):
                return phase.name
        return self._phases[-1].name

    def to_dict(self) -> Dict:
        """Convert profile to dictionary for JSON serialization"""
        return {
            'name': self.name,
            'description': self.description,
            'liquidus': self.liquidus,
            'points': [[p.elapsed_seconds, p.target_temperature] for p in self._points],
            'phases': [{'name': ph.name, 'until': ph.end} for ph in self._phases],
            'duration': self.duration,
            'max_temp': self.peak_temperature,
        }

    def __repr__(self):
        return f"Profile({self.name!r}, {len(self._points)} points, {self.duration:.0f}s)"

    @classmethod
    def from_segments(cls, name: str, start_temperature: float, segments: List[Dict],
                      description: str = '', liquidus: Optional[float] = None) -> 'Profile':
        """
        Build a profile from ramp/hold segments.

        Args:
            name: Profile name
            start_temperature: Target temperature at 0 seconds
            segments: List of {'name', 'target_temperature', 'time', 'hold_for'}
                where time is the ramp duration and hold_for the time spent at
                the target afterwards (both in seconds)

        Returns:
            Profile with one phase per segment
        """
        try:
            start_temperature = float(start_temperature)
        except (TypeError, ValueError):
            raise ProfileInvalid(f"start_temperature must be a number, got {start_temperature!r}")
        if not isinstance(segments, list):
            raise ProfileInvalid("segments must be a list")
        if not segments:
            raise ProfileInvalid("profile has no segments")

        points = [ProfilePoint(0.0, start_temperature)]
        phases = []
        issues = []
        t = 0.0

        for i, seg in enumerate(segments):
            if not isinstance(seg, dict):
                issues.append(f"segment {i + 1} must be an object, got {seg!r}")
                continue
            seg_name = seg.get('name') or f"phase-{i + 1}"
            try:
                target = float(seg['target_temperature'])
                ramp = float(seg.get('time', 0))
                hold = float(seg.get('hold_for', 0))
            except (KeyError, TypeError, ValueError) as e:
                issues.append(f"segment {i + 1} ({seg_name}): invalid field {e}")
                continue
            if ramp <= 0:
                issues.append(f"segment {i + 1} ({seg_name}): time must be > 0")
                continue
            if hold < 0:
                issues.append(f"segment {i + 1} ({seg_name}): hold_for must be >= 0")
                continue

            start = t
            t += ramp
            points.append(ProfilePoint(t, target))
            if hold > 0:
                t += hold
                points.append(ProfilePoint(t, target))
            phases.append(Phase(seg_name, start, t))

        if issues:
            raise ProfileInvalid(issues)
        return cls(name, points, phases, description=description, liquidus=liquidus)


def _check_points(points: List[ProfilePoint]) -> List[str]:
    issues = []
    if not points:
        return ["profile has no points"]
    if points[0].elapsed_seconds != 0:
        issues.append(f"first point must be at 0s, got {points[0].elapsed_seconds}s")
    for i, p in enumerate(points):
        if not (math.isfinite(p.elapsed_seconds) and math.isfinite(p.target_temperature)):
            issues.append(f"point {i + 1} is not a finite number")
        elif i > 0 and p.elapsed_seconds <= points[i - 1].elapsed_seconds:
            issues.append(f"point {i + 1} at {p.elapsed_seconds}s is not after "
                          f"{points[i - 1].elapsed_seconds}s")
    return issues


def _check_phases(phases: List[Phase], end: float) -> List[str]:
    issues = []
    expected_start = 0.0
    for ph in phases:
        if ph.start != expected_start:
            issues.append(f"phase '{ph.name}' starts at {ph.start}s, expected {expected_start}s")
        if ph.end <= ph.start and not (ph.end == ph.start == end):
            issues.append(f"phase '{ph.name}' is empty or reversed")
        expected_start = ph.end
    if phases and phases[-1].end != end:
        issues.append(f"phases end at {phases[-1].end}s but the profile ends at {end}s")
    return issues


def parse_profile(data: Dict, name: Optional[str] = None) -> Profile:
    """
    Build a Profile from its JSON representation.

    Accepts either the point form:
        {"name": "...", "points": [[0, 25], [60, 150]],
         "phases": [{"name": "preheat", "until": 60}]}
    or the segment form:
        {"name": "...", "start_temperature": 25,
         "segments": [{"name": "preheat", "target_temperature": 150,
                       "time": 60, "hold_for": 0}]}

    Raises:
        ProfileInvalid: if the data is malformed
    """
    if not isinstance(data, dict):
        raise ProfileInvalid("profile must be a JSON object")

    name = data.get('name') or name or 'Unnamed'
    if not isinstance(name, str):
        raise ProfileInvalid(f"name must be a string, got {name!r}")
    description = data.get('description', '')
    liquidus = data.get('liquidus')
    if liquidus is not None:
        if isinstance(liquidus, bool) or not isinstance(liquidus, (int, float)) or not math.isfinite(liquidus):
            raise ProfileInvalid(f"liquidus must be a number, got {liquidus!r}")

    if 'segments' in data:
        return Profile.from_segments(
            name,
            data.get('start_temperature', 25),
            data['segments'],
            description=description,
            liquidus=liquidus,
        )

    if 'points' not in data:
        raise ProfileInvalid("profile needs either 'points' or 'segments'")

    try:
        points = [ProfilePoint(float(t), float(temp)) for t, temp in data['points']]
    except (TypeError, ValueError) as e:
        raise ProfileInvalid(f"invalid point: {e}")

    phases = None
    if data.get('phases'):
        phases = []
        start = 0.0
        try:
            for i, ph in enumerate(data['phases']):
                until = float(ph['until'])
                phases.append(Phase(ph.get('name') or f"phase-{i + 1}", start, until))
                start = until
        except (KeyError, TypeError, ValueError) as e:
            raise ProfileInvalid(f"invalid phase: {e}")

    return Profile(name, points, phases, description=description, liquidus=liquidus)


def validate_profile(data: Dict) -> List[str]:
    """Return the list of problems with profile data (empty when valid)"""
    try:
        parse_profile(data)
    except ProfileInvalid as e:
        return e.issues
    return []


class ProfileLibrary:
    """
    Profiles available for selection: the built-ins plus every *.json file in
    a directory. Files are read as raw data and only parsed when selected or
    listed, so a broken file is reported instead of hiding the others.
    """

    def __init__(self, directory: Optional[str] = 'profiles'):
        self.directory = directory
        self._profiles: Dict[str, Dict] = {}
        self.reload()

    def reload(self):
        """Re-read the profile directory"""
        profiles = {name: dict(data) for name, data in BUILTIN_PROFILES.items()}

        if self.directory and os.path.isdir(self.directory):
            for filename in sorted(os.listdir(self.directory)):
                if not filename.endswith('.json'):
                    continue
                path = os.path.join(self.directory, filename)
                try:
                    with open(path, 'r') as f:
                        data = json.load(f)
                except (OSError, ValueError) as e:
                    logging.error(f"Failed to read profile {path}: {e}")
                    continue
                name = data.get('name') if isinstance(data, dict) else None
                if not isinstance(name, str):
                    name = None
                profiles[name or filename[:-5]] = data

        self._profiles = profiles
        logging.info(f"Profile library loaded with {len(profiles)} profiles")

    def names(self) -> List[str]:
        return sorted(self._profiles)

    def add(self, data: Dict) -> Profile:
        """
        Validate profile data and register it under its name.

        When the library has a directory the data is also written there as
        <name>.json, replacing a file of the same name.

        Raises:
            ProfileInvalid: if the data is malformed or the name cannot be a file name
            OSError: if the file cannot be written
        """
        profile = parse_profile(data)
        if not SAFE_NAME.fullmatch(profile.name):
            raise ProfileInvalid(f"profile name '{profile.name}' may only use letters, "
                                 f"digits, spaces, '_', '-' and '.'")

        if self.directory:
            os.makedirs(self.directory, exist_ok=True)
            path = os.path.join(self.directory, f"{profile.name}.json")
            with open(path, 'w') as f:
                json.dump(data, f, indent=2)
            logging.info(f"Saved profile {path}")

        self._profiles[profile.name] = data
        return profile

    def get(self, name: str) -> Profile:
        """
        Parse and return the named profile.

        Raises:
            ProfileInvalid: if the name is unknown or the data is malformed
        """
        if name not in self._profiles:
            raise ProfileInvalid(f"unknown profile '{name}'")
        return parse_profile(self._profiles[name], name=name)

    def list_profiles(self) -> List[Dict]:
        """Summaries of all profiles, including invalid ones"""
        summaries = []
        for name in self.names():
            try:
                profile = parse_profile(self._profiles[name], name=name)
            except ProfileInvalid as e:
                summaries.append({'name': name, 'valid': False, 'issues': e.issues})
                continue
            summaries.append({
                'name': name,
                'valid': True,
                'points': len(profile.points),
                'phases': [ph.name for ph in profile.phases],
                'duration': profile.duration,
                'max_temp': profile.peak_temperature,
                'issues': [],
            })
        return summaries
