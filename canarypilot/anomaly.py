"""
Anomaly Evaluator
=================

Decides when a monitoring session must enter the anomaly state. The
predicate is edge-triggered on the tick index: it fires on the sample whose
tick_index equals the threshold and never again until re-armed by a new
monitoring session.
"""

import logging
from typing import Optional

from canarypilot.config import ANOMALY_TICK_INDEX
from canarypilot.models import MetricSample

logger = logging.getLogger(__name__)


class AnomalyEvaluator:
    """Edge-triggered anomaly detector, armed once per monitoring session."""

    def __init__(self, threshold_tick: int = ANOMALY_TICK_INDEX):
        self.threshold_tick = threshold_tick
        self._fired = False
        self.trigger_sample: Optional[MetricSample] = None

    @property
    def fired(self) -> bool:
        return self._fired

    def rearm(self) -> None:
        """Start a new session; the evaluator may fire once more."""
        self._fired = False
        self.trigger_sample = None

    def evaluate(self, sample: MetricSample) -> bool:
        """
        Check one freshly produced sample.

        Returns:
            True exactly once per session, on the threshold tick.
        """
        if self._fired or sample.tick_index != self.threshold_tick:
            return False
        self._fired = True
        self.trigger_sample = sample
        logger.debug("Anomaly confirmed at tick %d", sample.tick_index)
        return True
