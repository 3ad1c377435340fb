"""
Recommendation Engine
=====================

Turns a confirmed anomaly into a human decision window.

When an anomaly is confirmed the engine opens an *episode*:

1. schedules a three-step advisory sequence (summary, quantified deltas,
   actionable recommendation with explicit confidence and risk),
2. starts a decision timeout. When it elapses without a decision the
   advisory framing escalates from "Action Required" to
   "Timeout: Action Required". Nothing else changes: rollback or continue
   remain the only ways to resolve the episode.

All timers of an episode live in one TimerGroup and are cancelled together
when the episode is resolved or abandoned, so no stale message or timeout
can fire afterwards.

The engine never decides on its own. It recommends; the operator confirms.
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from canarypilot.config import (
    ADVISORY_ALERT_OFFSET,
    ADVISORY_DETAIL_OFFSET,
    ADVISORY_RECOMMENDATION_OFFSET,
    BASELINE_DRIFT_USER_REGION,
    DECISION_TIMEOUT_SECONDS,
)
from canarypilot.errors import InvalidConfiguration, TimerConflict
from canarypilot.models import (
    BASELINE_MODEL,
    DEFAULT_CONFIDENCE,
    AgentMessage,
    MessageKind,
    MetricSample,
    ModelDescriptor,
)
from canarypilot.scheduler import Scheduler, TimerGroup

logger = logging.getLogger(__name__)

RISK_HIGH = "High"
PRIMARY_DRIFT_FEATURE = "user_region"

ACTION_REQUIRED = "Action Required"
TIMEOUT_ACTION_REQUIRED = "Timeout: Action Required"


def latency_increase_percent(sample: MetricSample, baseline: ModelDescriptor = BASELINE_MODEL) -> int:
    return round((sample.latency_ms - baseline.latency_ms) / baseline.latency_ms * 100)


def anomaly_summary(sample: MetricSample, baseline: ModelDescriptor = BASELINE_MODEL) -> str:
    """One-line audit summary of the breached thresholds."""
    return (
        f"Latency > threshold (+{latency_increase_percent(sample, baseline)}%), "
        f"Drift > threshold ({sample.drift_user_region:.2f})."
    )


def alert_message() -> AgentMessage:
    return AgentMessage(text="Early anomaly detected during canary rollout.", kind=MessageKind.ALERT)


def detail_message(sample: MetricSample, baseline: ModelDescriptor = BASELINE_MODEL) -> AgentMessage:
    text = (
        f"Latency rose {latency_increase_percent(sample, baseline)}% "
        f"({round(baseline.latency_ms)}ms → {round(sample.latency_ms)}ms). "
        f"Feature {PRIMARY_DRIFT_FEATURE} drift {round(sample.drift_user_region * 100)}% "
        f"vs baseline {round(BASELINE_DRIFT_USER_REGION * 100)}%. "
        f"Error rate increased to {sample.error_rate * 100:.1f}%."
    )
    return AgentMessage(text=text, kind=MessageKind.ALERT)


def recommendation_message(confidence: int, baseline: ModelDescriptor = BASELINE_MODEL) -> AgentMessage:
    text = (
        f"Recommendation: Rollback to {baseline.version}. Confidence: {confidence}%. "
        f"Options: [Continue Rollout] [Rollback to {baseline.version}]. "
        "I will not act without your confirmation."
    )
    return AgentMessage(
        text=text,
        kind=MessageKind.RECOMMENDATION,
        metadata={"confidence": confidence, "risk": RISK_HIGH, "primary_drift": PRIMARY_DRIFT_FEATURE},
    )


def validate_confidence(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidConfiguration("confidence", value, "must be a number between 0 and 100")
    if not 0 <= value <= 100:
        raise InvalidConfiguration("confidence", value, "must be between 0 and 100")
    return int(round(value))


@dataclass
class AnomalyEpisode:
    """From anomaly confirmation to its resolution."""
    episode_id: int
    trigger_sample: MetricSample
    opened_at: float
    timed_out: bool = False
    resolved_by: Optional[str] = None   # "rollback", "continue", "replay", "teardown"

    @property
    def is_open(self) -> bool:
        return self.resolved_by is None


class RecommendationEngine:
    """
    Manages anomaly episodes and the operator's confidence setting.

    Args:
        scheduler: Source of cancellable timers
        post_message: Appends an AgentMessage to the session feed
        serialize: Runs a callback inside the session's serialized entry point;
            every timer callback goes through it
        decision_timeout: Seconds before an undecided episode is marked timed out
        advisory_offsets: Delays of the alert, detail and recommendation messages
        baseline: Model the advisories compare against and recommend rolling back to
    """

    def __init__(
        self,
        scheduler: Scheduler,
        post_message: Callable[[AgentMessage], None],
        serialize: Callable[[Callable[[], None]], None],
        decision_timeout: float = DECISION_TIMEOUT_SECONDS,
        advisory_offsets: tuple = (
            ADVISORY_ALERT_OFFSET,
            ADVISORY_DETAIL_OFFSET,
            ADVISORY_RECOMMENDATION_OFFSET,
        ),
        baseline: ModelDescriptor = BASELINE_MODEL,
    ):
        self.scheduler = scheduler
        self._post = post_message
        self._serialize = serialize
        self.decision_timeout = decision_timeout
        self.advisory_offsets = tuple(advisory_offsets)
        self.baseline = baseline

        self._ids = itertools.count(1)
        self._episode: Optional[AnomalyEpisode] = None
        self._timers = TimerGroup("episode")
        self._confidence = DEFAULT_CONFIDENCE

    # ---------------------------------------------------------------- state

    @property
    def episode(self) -> Optional[AnomalyEpisode]:
        return self._episode

    @property
    def confidence(self) -> int:
        return self._confidence

    @property
    def decision_pending(self) -> bool:
        return self._episode is not None and self._episode.is_open

    @property
    def timed_out(self) -> bool:
        return self.decision_pending and self._episode.timed_out

    @property
    def advisory_title(self) -> Optional[str]:
        if not self.decision_pending:
            return None
        return TIMEOUT_ACTION_REQUIRED if self._episode.timed_out else ACTION_REQUIRED

    @property
    def pending_timers(self) -> int:
        return self._timers.active

    def to_dict(self) -> dict:
        return {
            "episode_id": self._episode.episode_id if self._episode else None,
            "confidence": self._confidence,
            "decision_pending": self.decision_pending,
            "timed_out": self.timed_out,
            "advisory_title": self.advisory_title,
            "resolved_by": self._episode.resolved_by if self._episode else None,
        }

    # ------------------------------------------------------------- episodes

    def begin_episode(self, sample: MetricSample) -> AnomalyEpisode:
        """
        Open a new anomaly episode for the triggering sample.

        Raises:
            TimerConflict: if the previous episode is still unresolved
        """
        if self.decision_pending:
            raise TimerConflict(
                f"Anomaly episode {self._episode.episode_id} is still awaiting a decision"
            )

        episode = AnomalyEpisode(
            episode_id=next(self._ids),
            trigger_sample=sample,
            opened_at=self.scheduler.now(),
        )
        self._episode = episode
        self._confidence = DEFAULT_CONFIDENCE

        alert_at, detail_at, recommend_at = self.advisory_offsets
        self._schedule(episode, alert_at, "advisory-alert", lambda: self._post(alert_message()))
        self._schedule(
            episode,
            detail_at,
            "advisory-detail",
            lambda: self._post(detail_message(sample, self.baseline)),
        )
        self._schedule(
            episode,
            recommend_at,
            "advisory-recommendation",
            lambda: self._post(recommendation_message(DEFAULT_CONFIDENCE, self.baseline)),
        )
        self._schedule(episode, self.decision_timeout, "decision-timeout", lambda: self._mark_timed_out(episode))

        logger.info("Opened anomaly episode %d", episode.episode_id)
        return episode

    def adjust_confidence(self, value: int) -> int:
        self._confidence = validate_confidence(value)
        return self._confidence

    def suspend(self) -> None:
        """
        The operator opened the rollback prompt: the decision window closes.

        Pending advisories and the timeout are cancelled; the episode stays
        open until the prompt is confirmed or cancelled.
        """
        self._timers.cancel_all()
        if self._episode is not None:
            self._episode.timed_out = False

    def resume(self) -> None:
        """The rollback prompt was cancelled: restart the decision timeout."""
        episode = self._episode
        if episode is None or not episode.is_open:
            return
        self._schedule(episode, self.decision_timeout, "decision-timeout", lambda: self._mark_timed_out(episode))

    def resolve(self, how: str) -> Optional[AnomalyEpisode]:
        """
        Close the current episode and cancel all of its timers.

        Safe to call when no episode is open; the timer group is cleared
        either way.
        """
        self._timers.cancel_all()
        episode = self._episode
        if episode is not None and episode.is_open:
            episode.resolved_by = how
            episode.timed_out = False
            logger.info("Anomaly episode %d resolved by %s", episode.episode_id, how)
        return episode

    # -------------------------------------------------------------- helpers

    def _schedule(self, episode: AnomalyEpisode, delay: float, name: str, action: Callable[[], None]) -> None:
        def _fire() -> None:
            def _run() -> None:
                # A timer that slipped past cancellation must not touch a newer episode
                if self._episode is episode and episode.is_open:
                    action()
            self._serialize(_run)

        self._timers.add(self.scheduler.call_later(delay, _fire, name=name))

    def _mark_timed_out(self, episode: AnomalyEpisode) -> None:
        episode.timed_out = True
        logger.warning("Anomaly episode %d: no decision after %.0fs", episode.episode_id, self.decision_timeout)
