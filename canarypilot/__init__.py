"""
canarypilot
===========

Guided canary releases for ML models: shadow test, canary rollout, anomaly
detection and an operator-confirmed rollback.
"""

from canarypilot.config import EngineConfig
from canarypilot.engine import ReleasePhaseMachine, ReleaseSession, Transition
from canarypilot.errors import InvalidConfiguration, InvalidTransition, ReleaseError, TimerConflict
from canarypilot.models import (
    BASELINE_MODEL,
    CANDIDATE_MODEL,
    AgentMessage,
    AnomalySnapshot,
    LogEntry,
    MetricSample,
    Phase,
    Trigger,
)
from canarypilot.scheduler import AsyncioScheduler, ManualScheduler

__version__ = "0.1.0"
