"""
Metric Sampler
==============

Synthetic telemetry for the canary slice. Produces one MetricSample per
tick into a bounded FIFO history. Samples are baseline-shaped before the
anomaly tick and anomaly-shaped from it onward; the branch chosen by tick
index is the contract, the noise is not.

The sampler does not own a timer. The release engine schedules the ticks
and calls tick() from its serialized entry point.
"""

import random
import time
from collections import deque
from typing import Callable, Optional

from canarypilot.config import (
    ANOMALY_DRIFT_USER_REGION,
    ANOMALY_ERROR_RATE,
    ANOMALY_LATENCY_MS,
    ANOMALY_TICK_INDEX,
    BASELINE_DRIFT_USER_REGION,
    BASELINE_ERROR_RATE,
    HISTORY_CAPACITY,
    WARMUP_SAMPLES,
)
from canarypilot.models import BASELINE_MODEL, MetricSample, ModelDescriptor

WARMUP_TICK_INDEX = -1


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class MetricSampler:
    """
    Generates canary telemetry and keeps the recent history.

    Args:
        rng: Random source (inject a seeded random.Random for reproducible runs)
        capacity: Maximum samples kept; the oldest is evicted first
        anomaly_tick_index: First tick index that produces anomaly-shaped values
        clock_ms: Returns the current time in milliseconds
        baseline: Model whose latency the baseline-shaped samples centre on
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        capacity: int = HISTORY_CAPACITY,
        anomaly_tick_index: int = ANOMALY_TICK_INDEX,
        clock_ms: Callable[[], int] = _wall_clock_ms,
        baseline: ModelDescriptor = BASELINE_MODEL,
    ):
        self.rng = rng or random.Random()
        self.capacity = capacity
        self.anomaly_tick_index = anomaly_tick_index
        self._clock_ms = clock_ms
        self.baseline = baseline
        self._history: deque[MetricSample] = deque(maxlen=capacity)
        self._tick_index = 0

    @property
    def tick_index(self) -> int:
        """Index the next live sample will carry."""
        return self._tick_index

    def history(self) -> tuple[MetricSample, ...]:
        """Read-only snapshot, oldest first."""
        return tuple(self._history)

    def latest(self) -> Optional[MetricSample]:
        return self._history[-1] if self._history else None

    def __len__(self) -> int:
        return len(self._history)

    def reset(self, warmup: int = WARMUP_SAMPLES) -> None:
        """Clear history, seed the warm-up window and rewind the tick counter."""
        self._history.clear()
        self._tick_index = 0
        now = self._clock_ms()
        for i in range(warmup):
            self._history.append(self._baseline_sample(now - (warmup - i) * 1000, WARMUP_TICK_INDEX))

    def tick(self, network_enabled: bool = True) -> Optional[MetricSample]:
        """
        Produce the sample for the current tick.

        With the network disabled nothing is produced and the tick counter
        does not move; the missed tick is simply absent from history.
        """
        if not network_enabled:
            return None

        index = self._tick_index
        now = self._clock_ms()
        if index >= self.anomaly_tick_index:
            sample = self._anomaly_sample(now, index)
        else:
            sample = self._baseline_sample(now, index)

        self._history.append(sample)
        self._tick_index += 1
        return sample

    def _baseline_sample(self, timestamp_ms: int, tick_index: int) -> MetricSample:
        return MetricSample(
            timestamp_ms=timestamp_ms,
            tick_index=tick_index,
            latency_ms=self.baseline.latency_ms + self.rng.uniform(-5, 5),
            error_rate=BASELINE_ERROR_RATE + self.rng.uniform(-0.001, 0.001),
            drift_user_region=BASELINE_DRIFT_USER_REGION + self.rng.uniform(0, 0.005),
        )

    def _anomaly_sample(self, timestamp_ms: int, tick_index: int) -> MetricSample:
        return MetricSample(
            timestamp_ms=timestamp_ms,
            tick_index=tick_index,
            latency_ms=ANOMALY_LATENCY_MS + self.rng.uniform(0, 10),
            error_rate=ANOMALY_ERROR_RATE + self.rng.uniform(0, 0.005),
            drift_user_region=ANOMALY_DRIFT_USER_REGION + self.rng.uniform(0, 0.02),
        )
