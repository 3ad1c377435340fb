"""
Release Notes
=============

Incident report produced after a canary has been rolled back.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from canarypilot.models import AnomalySnapshot, ModelDescriptor
from canarypilot.recommendation import PRIMARY_DRIFT_FEATURE


@dataclass
class ReleaseNotes:
    candidate: ModelDescriptor
    baseline: ModelDescriptor
    canary_percent: int
    snapshot: AnomalySnapshot
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def latency_increase_percent(self) -> int:
        return round((self.snapshot.latency_ms - self.baseline.latency_ms) / self.baseline.latency_ms * 100)

    def render(self) -> str:
        lines = [
            "RELEASE NOTES - INCIDENT REPORT",
            f"Date: {self.created_at.date().isoformat()}",
            f"Target: {self.candidate.version} -> Rolled back to {self.baseline.version}",
            "Status: ROLLED BACK",
            "",
            "INCIDENT DETAILS",
            "----------------",
            f"Metric Anomaly Detected during {self.canary_percent}% Canary.",
            f"- Latency Drift: {self.latency_increase_percent:+d}% (Critical)",
            f"- Feature Drift ({PRIMARY_DRIFT_FEATURE}): {round(self.snapshot.drift_user_region * 100)}%",
            f"- Error Rate: {self.snapshot.error_rate * 100:.1f}%",
            "",
            "ACTION TAKEN",
            "------------",
            "Manual Rollback Confirmed by User.",
            f"Agent Confidence: {self.snapshot.confidence_percent}%",
        ]
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "created_at": self.created_at.isoformat(),
            "candidate": self.candidate.version,
            "baseline": self.baseline.version,
            "canary_percent": self.canary_percent,
            "snapshot": self.snapshot.to_dict(),
            "text": self.render(),
        }
