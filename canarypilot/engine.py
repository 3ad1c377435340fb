"""
Release Orchestration Engine
============================

The phase state machine that drives a guided canary release, and the
ReleaseSession that owns all session state behind a single serialized entry
point.

Phases and triggers:

    IDLE --start_guided_release--> SHADOW_TEST
    SHADOW_TEST --shadow_test_complete--> SHADOW_TEST   (status -> complete)
    SHADOW_TEST --continue_to_setup--> CANARY_SETUP    (shadow test complete)
    CANARY_SETUP --start_canary--> MONITORING
    MONITORING --anomaly_confirmed--> ANOMALY_DETECTED
    ANOMALY_DETECTED --rollback_requested--> ROLLBACK_CONFIRM
    ROLLBACK_CONFIRM --rollback_confirmed--> ROLLED_BACK
    ANOMALY_DETECTED --rollback_confirmed--> ROLLED_BACK   (direct confirmation)
    ROLLBACK_CONFIRM --rollback_cancelled--> ANOMALY_DETECTED
    ANOMALY_DETECTED --continue_rollout--> ANOMALY_DETECTED  (decision pending)
    MONITORING | ANOMALY_DETECTED | ROLLED_BACK --replay--> MONITORING

Any other (phase, trigger) pair raises InvalidTransition and leaves the
session untouched.

Usage:
    from canarypilot.engine import ReleaseSession
    from canarypilot.scheduler import ManualScheduler

    scheduler = ManualScheduler()
    session = ReleaseSession(scheduler=scheduler)

    session.start_guided_release()
    scheduler.advance(2.0)              # shadow test completes
    session.continue_to_setup()
    session.start_canary(5, 20)
    scheduler.advance(4.0)              # anomaly on tick 3
    session.request_rollback()
    session.confirm_rollback()
"""

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from canarypilot.anomaly import AnomalyEvaluator
from canarypilot.audit import AuditLog
from canarypilot.config import EngineConfig
from canarypilot.errors import InvalidConfiguration, InvalidTransition, ReleaseError
from canarypilot.models import (
    ALLOWED_CANARY_PERCENTS,
    BASELINE_MODEL,
    CANDIDATE_MODEL,
    AgentMessage,
    AnomalySnapshot,
    LogEntry,
    MessageKind,
    MetricSample,
    ModelDescriptor,
    Phase,
    Sender,
    SessionConfig,
    Severity,
    ShadowTestStatus,
    Trigger,
)
from canarypilot.recommendation import RecommendationEngine, anomaly_summary
from canarypilot.release_notes import ReleaseNotes
from canarypilot.sampler import MetricSampler
from canarypilot.scheduler import AsyncioScheduler, Scheduler, TimerGroup, TimerHandle
from canarypilot.settings import ReleaseSettings, SettingsStore

logger = logging.getLogger(__name__)


# =============================================================================
# Transition table
# =============================================================================

TRANSITIONS: dict[tuple[Phase, Trigger], Phase] = {
    (Phase.IDLE, Trigger.START_GUIDED_RELEASE): Phase.SHADOW_TEST,
    (Phase.SHADOW_TEST, Trigger.SHADOW_TEST_COMPLETE): Phase.SHADOW_TEST,
    (Phase.SHADOW_TEST, Trigger.CONTINUE_TO_SETUP): Phase.CANARY_SETUP,
    (Phase.CANARY_SETUP, Trigger.START_CANARY): Phase.MONITORING,
    (Phase.MONITORING, Trigger.ANOMALY_CONFIRMED): Phase.ANOMALY_DETECTED,
    (Phase.ANOMALY_DETECTED, Trigger.ROLLBACK_REQUESTED): Phase.ROLLBACK_CONFIRM,
    (Phase.ROLLBACK_CONFIRM, Trigger.ROLLBACK_CONFIRMED): Phase.ROLLED_BACK,
    # The operator may confirm straight from the decision box without the prompt
    (Phase.ANOMALY_DETECTED, Trigger.ROLLBACK_CONFIRMED): Phase.ROLLED_BACK,
    (Phase.ROLLBACK_CONFIRM, Trigger.ROLLBACK_CANCELLED): Phase.ANOMALY_DETECTED,
    (Phase.ANOMALY_DETECTED, Trigger.CONTINUE_ROLLOUT): Phase.ANOMALY_DETECTED,
    (Phase.MONITORING, Trigger.REPLAY): Phase.MONITORING,
    (Phase.ANOMALY_DETECTED, Trigger.REPLAY): Phase.MONITORING,
    (Phase.ROLLED_BACK, Trigger.REPLAY): Phase.MONITORING,
}

# Phases in which the metric sampler is ticking
SAMPLING_PHASES = frozenset({Phase.MONITORING, Phase.ANOMALY_DETECTED})

# Phases in which an anomaly episode exists
EPISODE_PHASES = frozenset({Phase.ANOMALY_DETECTED, Phase.ROLLBACK_CONFIRM})

# Phases in which the canary percentage can still be chosen
CONFIGURABLE_PHASES = frozenset({Phase.IDLE, Phase.CANARY_SETUP})


@dataclass(frozen=True)
class Transition:
    """One applied transition."""
    source: Phase
    trigger: Trigger
    target: Phase


class ReleasePhaseMachine:
    """
    Owns the current Phase. The transition table is the only mutator.

    The machine itself has no side effects; ReleaseSession performs them
    around apply().
    """

    def __init__(
        self,
        initial: Phase = Phase.IDLE,
        on_transition: Optional[Callable[[Transition], None]] = None,
    ):
        self._phase = initial
        self._history: list[Transition] = []
        self._on_transition = on_transition

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def history(self) -> list[Transition]:
        return list(self._history)

    def can(self, trigger: Trigger) -> bool:
        return (self._phase, trigger) in TRANSITIONS

    def target(self, trigger: Trigger) -> Phase:
        """
        Phase that trigger would lead to.

        Raises:
            InvalidTransition: if the trigger is not allowed in the current phase
        """
        try:
            return TRANSITIONS[(self._phase, trigger)]
        except KeyError:
            raise InvalidTransition(self._phase, trigger) from None

    def apply(self, trigger: Trigger) -> Transition:
        target = self.target(trigger)
        transition = Transition(self._phase, trigger, target)
        self._phase = target
        self._history.append(transition)
        logger.debug("%s --%s--> %s", transition.source.value, trigger.value, target.value)
        if self._on_transition:
            self._on_transition(transition)
        return transition


def allowed_triggers(phase: Phase) -> list[Trigger]:
    """Triggers the table allows from phase."""
    return [trigger for (source, trigger) in TRANSITIONS if source == phase]


# =============================================================================
# Release session
# =============================================================================

def validate_canary_percent(percent: int) -> int:
    if isinstance(percent, bool) or percent not in ALLOWED_CANARY_PERCENTS:
        allowed = ", ".join(str(p) for p in ALLOWED_CANARY_PERCENTS)
        raise InvalidConfiguration("canary_percent", percent, f"must be one of {allowed}")
    return int(percent)


def validate_rollout_duration(duration_min: int) -> int:
    if isinstance(duration_min, bool) or not isinstance(duration_min, int):
        raise InvalidConfiguration("rollout_duration_min", duration_min, "must be a whole number of minutes")
    if duration_min <= 0:
        raise InvalidConfiguration("rollout_duration_min", duration_min, "must be positive")
    return duration_min


class ReleaseSession:
    """
    One guided canary release.

    All phase, metric, log and message state lives here. Operator actions
    and timer callbacks both enter through the same re-entrant lock, so
    transitions are applied one at a time. Actions never block: anything
    that happens later is a cancellable timer on the scheduler.

    Args:
        scheduler: Timer source (defaults to the running asyncio loop)
        config: Engine timing constants
        settings_store: Where network/default-percent settings are persisted
        rng: Random source for synthetic telemetry
        baseline: Model currently serving traffic
        candidate: Model being released
        on_log: Called with every new LogEntry
        on_message: Called with every new AgentMessage
        on_transition: Called after every applied Transition
    """

    def __init__(
        self,
        scheduler: Optional[Scheduler] = None,
        config: Optional[EngineConfig] = None,
        settings_store: Optional[SettingsStore] = None,
        rng: Optional[random.Random] = None,
        baseline: ModelDescriptor = BASELINE_MODEL,
        candidate: ModelDescriptor = CANDIDATE_MODEL,
        on_log: Optional[Callable[[LogEntry], None]] = None,
        on_message: Optional[Callable[[AgentMessage], None]] = None,
        on_transition: Optional[Callable[[Transition], None]] = None,
    ):
        self.engine_config = config or EngineConfig()
        self.scheduler = scheduler or AsyncioScheduler()
        self.settings_store = settings_store
        self.baseline = baseline
        self.candidate = candidate

        self._lock = threading.RLock()
        self._on_message = on_message

        settings = settings_store.load() if settings_store else ReleaseSettings()
        self.config = SessionConfig(
            canary_percent=settings.default_canary_percent,
            network_enabled=settings.network_enabled,
            default_canary_percent=settings.default_canary_percent,
        )

        if rng is None and self.engine_config.seed is not None:
            rng = random.Random(self.engine_config.seed)
        self.sampler = MetricSampler(
            rng=rng,
            capacity=self.engine_config.history_capacity,
            anomaly_tick_index=self.engine_config.anomaly_tick_index,
            baseline=baseline,
        )
        self.evaluator = AnomalyEvaluator(self.engine_config.anomaly_tick_index)
        self.audit = AuditLog(on_record=on_log)
        self.machine = ReleasePhaseMachine(on_transition=on_transition)
        self.recommendation = RecommendationEngine(
            scheduler=self.scheduler,
            post_message=self._post_message,
            serialize=self._serialize,
            decision_timeout=self.engine_config.decision_timeout,
            advisory_offsets=self.engine_config.advisory_offsets,
            baseline=baseline,
        )

        self._messages: list[AgentMessage] = []
        self._ticker: Optional[TimerHandle] = None
        self._session_timers = TimerGroup("session")

        self.shadow_test_status = ShadowTestStatus.IDLE
        self.active_model = baseline.version
        self.network_interrupted = False
        self._rollback_snapshot: Optional[AnomalySnapshot] = None

    # =========================================================================
    # Reads
    # =========================================================================

    def current_phase(self) -> Phase:
        return self.machine.phase

    def metric_history(self) -> tuple[MetricSample, ...]:
        return self.sampler.history()

    def audit_log(self) -> list[LogEntry]:
        """Audit entries, newest first."""
        return self.audit.entries()

    def agent_messages(self) -> tuple[AgentMessage, ...]:
        return tuple(self._messages)

    @property
    def tick_index(self) -> int:
        return self.sampler.tick_index

    @property
    def is_sampling(self) -> bool:
        return self._ticker is not None

    def rollback_snapshot(self) -> AnomalySnapshot:
        """Metrics to show in the rollback confirmation prompt."""
        with self._lock:
            return AnomalySnapshot.capture(self.sampler.history(), self.recommendation.confidence)

    @property
    def executed_rollback(self) -> Optional[AnomalySnapshot]:
        """Metrics recorded by the last confirmed rollback, if any."""
        return self._rollback_snapshot

    def snapshot(self) -> dict:
        """JSON-friendly view of the whole session."""
        with self._lock:
            return {
                "phase": self.machine.phase.value,
                "allowed_triggers": [t.value for t in allowed_triggers(self.machine.phase)],
                "shadow_test_status": self.shadow_test_status.value,
                "active_model": self.active_model,
                "tick_index": self.sampler.tick_index,
                "network_interrupted": self.network_interrupted,
                "config": self.config.to_dict(),
                "recommendation": self.recommendation.to_dict(),
                "metrics": [s.to_dict() for s in self.sampler.history()],
                "logs": [e.to_dict() for e in self.audit.entries()],
                "messages": [m.to_dict() for m in self._messages],
            }

    # =========================================================================
    # Release flow
    # =========================================================================

    def start_guided_release(self) -> None:
        with self._lock:
            self.machine.target(Trigger.START_GUIDED_RELEASE)
            # Timer first: if the scheduler fails nothing has changed yet
            shadow_test = self.scheduler.call_later(
                self.engine_config.shadow_test_seconds,
                lambda: self._serialize(self._complete_shadow_test),
                name="shadow-test",
            )
            self._session_timers.add(shadow_test)
            self.shadow_test_status = ShadowTestStatus.RUNNING
            self.audit.record("Shadow Test Initiated", "Checking candidate model stability against baseline.")
            self._post_message(AgentMessage(
                text=(
                    f"Hi, I'm your release assistant. I recommend a {self.config.default_canary_percent}% canary "
                    f"for {self.config.rollout_duration_min} minutes. I'll monitor latency, error rate, and "
                    "feature drift. I will not act without your confirmation."
                ),
            ))
            self.machine.apply(Trigger.START_GUIDED_RELEASE)

    def _complete_shadow_test(self) -> None:
        if self.machine.phase != Phase.SHADOW_TEST or self.shadow_test_status != ShadowTestStatus.RUNNING:
            return
        self.shadow_test_status = ShadowTestStatus.COMPLETE
        self.audit.record("Shadow Test Completed", "Result: Stable. No anomalies detected.", Severity.SUCCESS)
        self._post_message(AgentMessage(text="Shadow test stable. No anomalies detected.", kind=MessageKind.SUCCESS))
        self.machine.apply(Trigger.SHADOW_TEST_COMPLETE)

    def continue_to_setup(self) -> None:
        with self._lock:
            self.machine.target(Trigger.CONTINUE_TO_SETUP)
            if self.shadow_test_status != ShadowTestStatus.COMPLETE:
                raise InvalidTransition(self.machine.phase, Trigger.CONTINUE_TO_SETUP, "shadow test is still running")
            self.machine.apply(Trigger.CONTINUE_TO_SETUP)

    def start_canary(self, percent: Optional[int] = None, duration_min: Optional[int] = None) -> None:
        with self._lock:
            self.machine.target(Trigger.START_CANARY)
            percent = validate_canary_percent(self.config.canary_percent if percent is None else percent)
            duration = validate_rollout_duration(
                self.config.rollout_duration_min if duration_min is None else duration_min
            )
            ticker = self._new_ticker()

            self.config.canary_percent = percent
            self.config.rollout_duration_min = duration
            self.active_model = self._split_label()
            self.audit.record(
                "Canary Rollout Started",
                f"Traffic split: {self.config.traffic_split()}. Duration: {duration} min. Monitoring started.",
            )
            self.machine.apply(Trigger.START_CANARY)
            self._start_sampling(ticker)

    def request_rollback(self) -> AnomalySnapshot:
        """Open the confirmation prompt. Returns the metrics it should show."""
        with self._lock:
            self.machine.target(Trigger.ROLLBACK_REQUESTED)
            self.recommendation.suspend()
            self.machine.apply(Trigger.ROLLBACK_REQUESTED)
            return AnomalySnapshot.capture(self.sampler.history(), self.recommendation.confidence)

    def cancel_rollback(self) -> None:
        with self._lock:
            self.machine.apply(Trigger.ROLLBACK_CANCELLED)
            self.recommendation.resume()

    def confirm_rollback(self, adjusted_confidence: Optional[int] = None) -> AnomalySnapshot:
        with self._lock:
            self.machine.target(Trigger.ROLLBACK_CONFIRMED)
            if adjusted_confidence is not None:
                self.recommendation.adjust_confidence(adjusted_confidence)

            snapshot = AnomalySnapshot.capture(self.sampler.history(), self.recommendation.confidence)
            self._stop_sampling()
            self.recommendation.resolve("rollback")
            self.machine.apply(Trigger.ROLLBACK_CONFIRMED)

            self._rollback_snapshot = snapshot
            self.active_model = self.baseline.version
            self.network_interrupted = False
            self.audit.record(
                "Rollback Executed",
                f"Reverted to {self.baseline.version}. Reason: Anomaly Detection. "
                f"{snapshot.describe()}. Adjusted Confidence: {snapshot.confidence_percent}%.",
                Severity.ERROR,
            )
            self._post_message(AgentMessage(
                text=(
                    f"Rollback completed. Model {self.baseline.version} restored. "
                    "I've logged the event and can generate release notes."
                ),
                kind=MessageKind.SUCCESS,
            ))
            return snapshot

    def continue_rollout(self, adjusted_confidence: Optional[int] = None) -> None:
        """
        Override the rollback recommendation.

        One decision per episode: once the episode is resolved a second call
        raises InvalidTransition. Rollback stays available afterwards.
        """
        with self._lock:
            self.machine.target(Trigger.CONTINUE_ROLLOUT)
            if not self.recommendation.decision_pending:
                raise InvalidTransition(
                    self.machine.phase, Trigger.CONTINUE_ROLLOUT, "no decision is pending for this anomaly"
                )
            if adjusted_confidence is not None:
                self.recommendation.adjust_confidence(adjusted_confidence)

            self.recommendation.resolve("continue")
            self.audit.record(
                "Rollout Continued",
                f"User overrode rollback recommendation. Adjusted Confidence: {self.recommendation.confidence}%.",
                Severity.WARNING,
            )
            self._post_message(AgentMessage(
                text=(
                    "Continuing rollout. Monitoring extended to next 15 minutes. "
                    "I will notify you immediately if degradation accelerates."
                ),
            ))
            self.machine.apply(Trigger.CONTINUE_ROLLOUT)

    def replay(self) -> None:
        with self._lock:
            self.machine.target(Trigger.REPLAY)
            ticker = self._new_ticker()
            self.recommendation.resolve("replay")
            self.active_model = self._split_label()
            self.audit.record("Replay", "Replaying last session data.")
            self.machine.apply(Trigger.REPLAY)
            self._start_sampling(ticker)

    # =========================================================================
    # Operator controls outside the transition table
    # =========================================================================

    def adjust_confidence(self, value: int) -> int:
        with self._lock:
            if self.machine.phase not in EPISODE_PHASES:
                raise InvalidTransition(self.machine.phase, "adjust_confidence", "no anomaly episode")
            return self.recommendation.adjust_confidence(value)

    def set_canary_percent(self, percent: int) -> None:
        with self._lock:
            if self.machine.phase not in CONFIGURABLE_PHASES:
                raise InvalidTransition(self.machine.phase, "set_canary_percent")
            self.config.canary_percent = validate_canary_percent(percent)

    def set_rollout_duration(self, duration_min: int) -> None:
        with self._lock:
            if self.machine.phase not in CONFIGURABLE_PHASES:
                raise InvalidTransition(self.machine.phase, "set_rollout_duration")
            self.config.rollout_duration_min = validate_rollout_duration(duration_min)

    def set_network_enabled(self, enabled: bool) -> None:
        with self._lock:
            enabled = bool(enabled)
            if enabled == self.config.network_enabled:
                return
            self.config.network_enabled = enabled
            if enabled:
                self.network_interrupted = False
                self.audit.record("Network Restored", "Telemetry resumed.", Severity.SUCCESS)
            else:
                self.network_interrupted = self.machine.phase in SAMPLING_PHASES
                self.audit.record("Network Failure", "Telemetry stream interrupted manually.", Severity.WARNING)
            self._save_settings()

    def set_default_canary_percent(self, percent: int) -> None:
        with self._lock:
            self.config.default_canary_percent = validate_canary_percent(percent)
            if self.machine.phase == Phase.IDLE:
                self.config.canary_percent = self.config.default_canary_percent
            self._save_settings()

    def generate_release_notes(self) -> ReleaseNotes:
        with self._lock:
            if self.machine.phase != Phase.ROLLED_BACK:
                raise InvalidTransition(self.machine.phase, "generate_release_notes", "nothing has been rolled back")
            notes = ReleaseNotes(
                candidate=self.candidate,
                baseline=self.baseline,
                canary_percent=self.config.canary_percent,
                snapshot=self._rollback_snapshot or AnomalySnapshot.capture((), self.recommendation.confidence),
            )
            self.audit.record("Release Notes Generated", "Incident report created successfully.", Severity.SUCCESS)
            return notes

    def submit_chat(self, text: str) -> AgentMessage:
        """Post an operator message; the assistant acknowledges it shortly after."""
        with self._lock:
            if not text or not text.strip():
                raise InvalidConfiguration("text", text, "message is empty")
            message = AgentMessage(text=text.strip(), sender=Sender.USER)
            self._session_timers.add(self.scheduler.call_later(
                self.engine_config.chat_ack_seconds,
                lambda: self._serialize(lambda: self._post_message(AgentMessage(
                    text=(
                        "I've received your query. I am currently focusing on monitoring the active release, "
                        "but I can help you investigate logs or metrics if you need."
                    ),
                ))),
                name="chat-ack",
            ))
            self._post_message(message)
            return message

    def shutdown(self) -> None:
        """Tear the session down: every pending timer is cancelled."""
        with self._lock:
            self._stop_sampling()
            self.recommendation.resolve("teardown")
            self._session_timers.cancel_all()

    # =========================================================================
    # Internals
    # =========================================================================

    def _serialize(self, callback: Callable[[], None]) -> None:
        """Entry point for timer callbacks; runs them under the session lock."""
        with self._lock:
            try:
                callback()
            except ReleaseError:
                # No caller to report to; the session stays in its last valid phase
                logger.exception("Scheduled callback was rejected")

    def _post_message(self, message: AgentMessage) -> None:
        self._messages.append(message)
        if self._on_message:
            self._on_message(message)

    def _split_label(self) -> str:
        percent = self.config.canary_percent
        return f"{self.baseline.version} ({100 - percent}%) / {self.candidate.version} ({percent}%)"

    def _new_ticker(self) -> TimerHandle:
        return self.scheduler.call_every(
            self.engine_config.tick_interval,
            lambda: self._serialize(self._on_tick),
            name="metric-tick",
        )

    def _start_sampling(self, ticker: TimerHandle) -> None:
        self._stop_sampling()
        self.sampler.reset(self.engine_config.warmup_samples)
        self.evaluator.rearm()
        self._ticker = ticker

    def _stop_sampling(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _on_tick(self) -> None:
        if self.machine.phase not in SAMPLING_PHASES:
            return
        sample = self.sampler.tick(network_enabled=self.config.network_enabled)
        if sample is None:
            return
        if self.machine.phase == Phase.MONITORING and self.evaluator.evaluate(sample):
            self._confirm_anomaly(sample)

    def _confirm_anomaly(self, sample: MetricSample) -> None:
        self.machine.target(Trigger.ANOMALY_CONFIRMED)
        self.recommendation.begin_episode(sample)
        self.audit.record("Anomaly Detected", anomaly_summary(sample, self.baseline), Severity.WARNING)
        self.machine.apply(Trigger.ANOMALY_CONFIRMED)

    def _save_settings(self) -> None:
        if self.settings_store is None:
            return
        self.settings_store.save(ReleaseSettings(
            network_enabled=self.config.network_enabled,
            default_canary_percent=self.config.default_canary_percent,
        ))
