"""
Session recording for the Reflow Oven Controller

Keeps the samples of the current run in memory and summarises them once the
run is over. Also holds the operator message log shown next to the chart.
"""

from collections import deque
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional


@dataclass(frozen=True)
class Sample:
    """One control tick. timestamp is in seconds since the run started."""
    timestamp: float
    measured_temperature: float
    target_temperature: float
    intensity: float
    phase: str

    def to_record(self) -> Dict:
        return {
            'timestamp': self.timestamp,
            'measured': self.measured_temperature,
            'target': self.target_temperature,
            'intensity': self.intensity,
            'phase': self.phase,
        }


class SampleView(Sequence):
    """
    Read-only view of the samples recorded when it was created.

    Iterating it any number of times yields the same samples; samples recorded
    later are not visible through it.
    """

    def __init__(self, samples, length):
        self._samples = samples
        self._length = length

    def __len__(self):
        return self._length

    def __getitem__(self, index):
        if isinstance(index, slice):
            return [self._samples[i] for i in range(*index.indices(self._length))]
        if index < 0:
            index += self._length
        if not 0 <= index < self._length:
            raise IndexError('sample index out of range')
        return self._samples[index]


class SessionRecorder:
    def __init__(self):
        self._samples: List[Sample] = []

    def __len__(self):
        return len(self._samples)

    def record(self, sample: Sample):
        """
        Append a sample.

        Raises:
            ValueError: if the timestamp is not after the previous sample's
        """
        if self._samples and sample.timestamp <= self._samples[-1].timestamp:
            raise ValueError(f"Sample at {sample.timestamp}s is not after "
                             f"{self._samples[-1].timestamp}s")
        self._samples.append(sample)

    def all_samples(self) -> SampleView:
        return SampleView(self._samples, len(self._samples))

    def clear(self):
        # A fresh list keeps views handed out earlier intact
        self._samples = []

    def to_records(self, limit: Optional[int] = None) -> List[Dict]:
        """Ordered export records, optionally only the last 'limit' samples (limit <= 0 means all)"""
        samples = self._samples[-limit:] if limit and limit > 0 else self._samples[:]
        return [s.to_record() for s in samples]

    def time_above(self, threshold: float) -> float:
        """
        Seconds spent at or above a temperature.

        Each sample counts for the time until the next sample; the last sample
        counts for nothing.
        """
        samples = self._samples
        total = 0.0
        for current, following in zip(samples, samples[1:]):
            if current.measured_temperature >= threshold:
                total += following.timestamp - current.timestamp
        return total

    def summary(self, liquidus: Optional[float] = None) -> Optional[Dict]:
        """
        Calculate run summary with peak temperature, rate and tracking error

        Args:
            liquidus: Optional solder liquidus temperature; adds time above it

        Returns:
            Summary dict, or None if nothing was recorded
        """
        samples = self._samples
        if not samples:
            return None

        peak = max(samples, key=lambda s: s.measured_temperature)
        first = samples[0]
        rise_time = peak.timestamp - first.timestamp
        avg_rate = (peak.measured_temperature - first.measured_temperature) / rise_time if rise_time > 0 else 0.0
        max_error = max(abs(s.target_temperature - s.measured_temperature) for s in samples)

        summary = {
            'created': datetime.now().isoformat(),
            'samples': len(samples),
            'duration': samples[-1].timestamp - first.timestamp,
            'peak_temp': peak.measured_temperature,
            'peak_temp_time': peak.timestamp,
            'peak_phase': peak.phase,
            'average_rate': avg_rate,
            'max_tracking_error': max_error,
            'phases': list(dict.fromkeys(s.phase for s in samples)),
        }
        if liquidus is not None:
            summary['liquidus'] = liquidus
            summary['time_above_liquidus'] = self.time_above(liquidus)
        return summary


class MessageLog:
    """Bounded log of operator-facing messages (newest last)"""

    def __init__(self, maxlen: int = 500):
        self._entries = deque(maxlen=maxlen)

    def __len__(self):
        return len(self._entries)

    def add(self, message: str):
        self._entries.append({'time': datetime.now().isoformat(), 'message': message})

    def entries(self, limit: Optional[int] = None) -> List[Dict]:
        entries = list(self._entries)
        return entries[-limit:] if limit and limit > 0 else entries

    def clear(self):
        self._entries.clear()


def sample_as_dict(sample: Optional[Sample]) -> Optional[Dict]:
    return asdict(sample) if sample is not None else None
