"""
Release Data Model
==================

Value types shared by every part of the release engine: phases, model
descriptors, metric samples, agent messages and audit log entries.

All records are immutable once created. Stores that hold them (metric
history, audit log, message feed) only ever append.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Phase(str, Enum):
    """Phases of a guided canary release."""
    IDLE = "idle"
    SHADOW_TEST = "shadow_test"
    CANARY_SETUP = "canary_setup"
    MONITORING = "monitoring"
    ANOMALY_DETECTED = "anomaly_detected"
    ROLLBACK_CONFIRM = "rollback_confirm"
    ROLLED_BACK = "rolled_back"

    @classmethod
    def from_string(cls, value: str) -> "Phase":
        """Parse a phase from its string value."""
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Unknown phase: {value}")


class Trigger(str, Enum):
    """Events that drive the release phase machine."""
    START_GUIDED_RELEASE = "start_guided_release"
    SHADOW_TEST_COMPLETE = "shadow_test_complete"
    CONTINUE_TO_SETUP = "continue_to_setup"
    START_CANARY = "start_canary"
    ANOMALY_CONFIRMED = "anomaly_confirmed"
    ROLLBACK_REQUESTED = "rollback_requested"
    ROLLBACK_CONFIRMED = "rollback_confirmed"
    ROLLBACK_CANCELLED = "rollback_cancelled"
    CONTINUE_ROLLOUT = "continue_rollout"
    REPLAY = "replay"


class ShadowTestStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"


class Sender(str, Enum):
    """Who authored an agent feed message."""
    AGENT = "agent"
    SYSTEM = "system"
    USER = "user"


class MessageKind(str, Enum):
    NORMAL = "normal"
    ALERT = "alert"
    RECOMMENDATION = "recommendation"
    SUCCESS = "success"


class Severity(str, Enum):
    """Severity of an audit log entry."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Models under release
# =============================================================================

@dataclass(frozen=True)
class ModelDescriptor:
    """Offline evaluation summary of one model version."""
    version: str
    accuracy: float
    recall: float
    latency_ms: float
    fairness: float

    def to_dict(self) -> dict:
        return asdict(self)


BASELINE_MODEL = ModelDescriptor(
    version="v2.1",
    accuracy=0.842,
    recall=0.72,
    latency_ms=210,
    fairness=0.91,
)

CANDIDATE_MODEL = ModelDescriptor(
    version="v3.0",
    accuracy=0.895,
    recall=0.79,
    latency_ms=232,
    fairness=0.898,
)


@dataclass(frozen=True)
class MetricDelta:
    """Baseline vs candidate difference for a single evaluation metric."""
    label: str
    baseline: float
    candidate: float
    lower_is_better: bool = False

    @property
    def diff(self) -> float:
        return self.candidate - self.baseline

    @property
    def percent(self) -> float:
        if self.baseline == 0:
            return 0.0
        return self.diff / self.baseline * 100

    @property
    def is_neutral(self) -> bool:
        return abs(self.diff) < 0.0001

    @property
    def is_better(self) -> bool:
        if self.is_neutral:
            return False
        return self.diff < 0 if self.lower_is_better else self.diff > 0

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "baseline": self.baseline,
            "candidate": self.candidate,
            "diff": self.diff,
            "percent": round(self.percent, 1),
            "is_better": self.is_better,
            "is_neutral": self.is_neutral,
        }


def compare_models(
    baseline: ModelDescriptor = BASELINE_MODEL,
    candidate: ModelDescriptor = CANDIDATE_MODEL,
) -> list[MetricDelta]:
    """Side-by-side deltas shown before a release is started."""
    return [
        MetricDelta("Accuracy", baseline.accuracy, candidate.accuracy),
        MetricDelta("Recall", baseline.recall, candidate.recall),
        MetricDelta("Latency (P95)", baseline.latency_ms, candidate.latency_ms, lower_is_better=True),
        MetricDelta("Fairness", baseline.fairness, candidate.fairness),
    ]


# =============================================================================
# Telemetry
# =============================================================================

@dataclass(frozen=True)
class MetricSample:
    """
    One telemetry point from the canary slice.

    Warm-up samples seeded before live ticking carry tick_index = -1.
    """
    timestamp_ms: int
    tick_index: int
    latency_ms: float
    error_rate: float
    drift_user_region: float

    @property
    def is_warmup(self) -> bool:
        return self.tick_index < 0

    def to_dict(self) -> dict:
        return asdict(self)


# Shown in the confirmation prompt when no telemetry has arrived yet
DEFAULT_SNAPSHOT_LATENCY_MS = 256.0
DEFAULT_SNAPSHOT_ERROR_RATE = 0.019
DEFAULT_SNAPSHOT_DRIFT = 0.18
DEFAULT_CONFIDENCE = 83


@dataclass(frozen=True)
class AnomalySnapshot:
    """Metrics captured when an anomaly is confirmed or a rollback is confirmed."""
    latency_ms: float
    error_rate: float
    drift_user_region: float
    confidence_percent: int

    @classmethod
    def capture(
        cls,
        history: "tuple[MetricSample, ...] | list[MetricSample]",
        confidence_percent: int = DEFAULT_CONFIDENCE,
    ) -> "AnomalySnapshot":
        """Build a snapshot from the newest sample, or sentinel values if empty."""
        if not history:
            return cls(
                latency_ms=DEFAULT_SNAPSHOT_LATENCY_MS,
                error_rate=DEFAULT_SNAPSHOT_ERROR_RATE,
                drift_user_region=DEFAULT_SNAPSHOT_DRIFT,
                confidence_percent=confidence_percent,
            )
        last = history[-1]
        return cls(
            latency_ms=last.latency_ms,
            error_rate=last.error_rate,
            drift_user_region=last.drift_user_region,
            confidence_percent=confidence_percent,
        )

    def describe(self) -> str:
        return (
            f"Latency {round(self.latency_ms)}ms, "
            f"error rate {self.error_rate * 100:.1f}%, "
            f"user_region drift {self.drift_user_region:.2f}"
        )

    def to_dict(self) -> dict:
        return asdict(self)


# =============================================================================
# Operator-visible records
# =============================================================================

@dataclass(frozen=True)
class AgentMessage:
    """A message in the release assistant feed."""
    text: str
    sender: Sender = Sender.AGENT
    kind: MessageKind = MessageKind.NORMAL
    metadata: Optional[dict[str, Any]] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
            "sender": self.sender.value,
            "kind": self.kind.value,
            "metadata": dict(self.metadata) if self.metadata else None,
        }


@dataclass(frozen=True)
class LogEntry:
    """A single audit log record."""
    event: str
    details: str
    severity: Severity = Severity.INFO
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event": self.event,
            "details": self.details,
            "severity": self.severity.value,
        }


# =============================================================================
# Session configuration
# =============================================================================

ALLOWED_CANARY_PERCENTS = (1, 5, 10)


@dataclass
class SessionConfig:
    """Operator-controlled release parameters."""
    canary_percent: int = 5
    rollout_duration_min: int = 20
    network_enabled: bool = True
    default_canary_percent: int = 5

    def traffic_split(self) -> str:
        """Baseline/candidate split, e.g. "95/5"."""
        return f"{100 - self.canary_percent}/{self.canary_percent}"

    def to_dict(self) -> dict:
        return asdict(self)
