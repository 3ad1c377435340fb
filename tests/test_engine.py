"""
Tests for Release Orchestration Engine
======================================

Tests for engine.py - the phase state machine and ReleaseSession, driven on
a virtual clock.
"""

import json
import logging
import random

import pytest

from canarypilot.config import EngineConfig
from canarypilot.engine import (
    TRANSITIONS,
    ReleasePhaseMachine,
    ReleaseSession,
    allowed_triggers,
)
from canarypilot.errors import InvalidConfiguration, InvalidTransition
from canarypilot.models import (
    BASELINE_MODEL,
    MessageKind,
    ModelDescriptor,
    Phase,
    Sender,
    Severity,
    ShadowTestStatus,
    Trigger,
)
from canarypilot.scheduler import ManualScheduler
from canarypilot.settings import ReleaseSettings


# =============================================================================
# Phase machine
# =============================================================================

class TestReleasePhaseMachine:
    """Tests for the bare transition table."""

    def test_starts_idle(self):
        assert ReleasePhaseMachine().phase == Phase.IDLE

    def test_apply_records_history(self):
        seen = []
        machine = ReleasePhaseMachine(on_transition=seen.append)
        machine.apply(Trigger.START_GUIDED_RELEASE)
        machine.apply(Trigger.SHADOW_TEST_COMPLETE)

        assert machine.phase == Phase.SHADOW_TEST
        assert [t.trigger for t in machine.history] == [Trigger.START_GUIDED_RELEASE, Trigger.SHADOW_TEST_COMPLETE]
        assert seen == machine.history

    def test_illegal_trigger_names_phase_and_trigger(self):
        machine = ReleasePhaseMachine()
        with pytest.raises(InvalidTransition) as exc:
            machine.apply(Trigger.REPLAY)

        assert exc.value.phase == Phase.IDLE
        assert exc.value.trigger == Trigger.REPLAY
        assert "replay" in str(exc.value) and "idle" in str(exc.value)
        assert machine.phase == Phase.IDLE
        assert machine.history == []

    def test_every_table_row_applies(self):
        for (source, trigger), target in TRANSITIONS.items():
            machine = ReleasePhaseMachine(initial=source)
            assert machine.can(trigger)
            assert machine.apply(trigger).target == target

    def test_allowed_triggers(self):
        assert allowed_triggers(Phase.IDLE) == [Trigger.START_GUIDED_RELEASE]
        assert set(allowed_triggers(Phase.ANOMALY_DETECTED)) == {
            Trigger.ROLLBACK_REQUESTED,
            Trigger.ROLLBACK_CONFIRMED,
            Trigger.CONTINUE_ROLLOUT,
            Trigger.REPLAY,
        }
        assert set(allowed_triggers(Phase.ROLLED_BACK)) == {Trigger.REPLAY}


# =============================================================================
# Illegal actions on a live session
# =============================================================================

ILLEGAL_ACTIONS = [
    (Phase.IDLE, "continue_to_setup"),
    (Phase.IDLE, "start_canary"),
    (Phase.IDLE, "request_rollback"),
    (Phase.IDLE, "confirm_rollback"),
    (Phase.IDLE, "cancel_rollback"),
    (Phase.IDLE, "continue_rollout"),
    (Phase.IDLE, "replay"),
    (Phase.SHADOW_TEST, "start_guided_release"),
    (Phase.SHADOW_TEST, "start_canary"),
    (Phase.SHADOW_TEST, "replay"),
    (Phase.CANARY_SETUP, "start_guided_release"),
    (Phase.CANARY_SETUP, "request_rollback"),
    (Phase.CANARY_SETUP, "replay"),
    (Phase.MONITORING, "start_canary"),
    (Phase.MONITORING, "request_rollback"),
    (Phase.MONITORING, "confirm_rollback"),
    (Phase.MONITORING, "continue_rollout"),
    (Phase.ANOMALY_DETECTED, "start_canary"),
    (Phase.ANOMALY_DETECTED, "cancel_rollback"),
    (Phase.ANOMALY_DETECTED, "start_guided_release"),
    (Phase.ROLLBACK_CONFIRM, "replay"),
    (Phase.ROLLBACK_CONFIRM, "continue_rollout"),
    (Phase.ROLLBACK_CONFIRM, "request_rollback"),
    (Phase.ROLLED_BACK, "confirm_rollback"),
    (Phase.ROLLED_BACK, "continue_rollout"),
    (Phase.ROLLED_BACK, "request_rollback"),
    (Phase.ROLLED_BACK, "start_guided_release"),
]


class TestIllegalActions:
    """Every action outside the table raises and changes nothing."""

    @pytest.mark.parametrize("phase,action", ILLEGAL_ACTIONS)
    def test_rejected_without_side_effects(self, drive_to, session, phase, action):
        drive_to(phase)
        logs_before = len(session.audit_log())
        messages_before = len(session.agent_messages())
        history_before = session.metric_history()

        with pytest.raises(InvalidTransition):
            getattr(session, action)()

        assert session.current_phase() == phase
        assert len(session.audit_log()) == logs_before
        assert len(session.agent_messages()) == messages_before
        assert session.metric_history() == history_before


# =============================================================================
# Guided flow
# =============================================================================

class TestGuidedFlow:
    """Tests for the path from IDLE to MONITORING."""

    def test_start_guided_release(self, session):
        session.start_guided_release()

        assert session.current_phase() == Phase.SHADOW_TEST
        assert session.shadow_test_status == ShadowTestStatus.RUNNING
        assert session.audit_log()[0].event == "Shadow Test Initiated"
        greeting = session.agent_messages()[0]
        assert greeting.sender == Sender.AGENT
        assert "5% canary for 20 minutes" in greeting.text

    def test_shadow_test_completes_after_delay(self, session, scheduler):
        session.start_guided_release()

        scheduler.advance(1.0)
        assert session.shadow_test_status == ShadowTestStatus.RUNNING
        scheduler.advance(1.0)

        assert session.shadow_test_status == ShadowTestStatus.COMPLETE
        assert session.current_phase() == Phase.SHADOW_TEST
        entry = session.audit_log()[0]
        assert entry.event == "Shadow Test Completed"
        assert entry.severity == Severity.SUCCESS
        assert session.agent_messages()[-1].kind == MessageKind.SUCCESS

    def test_continue_to_setup_waits_for_shadow_test(self, session):
        session.start_guided_release()

        with pytest.raises(InvalidTransition):
            session.continue_to_setup()
        assert session.current_phase() == Phase.SHADOW_TEST

    def test_start_canary_begins_monitoring(self, drive_to, session, scheduler):
        drive_to(Phase.MONITORING)

        history = session.metric_history()
        assert len(history) == 10
        assert all(s.is_warmup for s in history)
        assert session.tick_index == 0
        assert session.is_sampling
        assert "metric-tick" in scheduler.pending_names()
        assert session.active_model == "v2.1 (95%) / v3.0 (5%)"

        entry = session.audit_log()[0]
        assert entry.event == "Canary Rollout Started"
        assert entry.details == "Traffic split: 95/5. Duration: 20 min. Monitoring started."

    @pytest.mark.parametrize("percent,duration", [(7, 20), (5, 0), (5, -3)])
    def test_start_canary_rejects_bad_parameters(self, drive_to, session, percent, duration):
        drive_to(Phase.CANARY_SETUP)

        with pytest.raises(InvalidConfiguration):
            session.start_canary(percent, duration)

        assert session.current_phase() == Phase.CANARY_SETUP
        assert not session.is_sampling

    def test_transition_callback(self, scheduler, settings_store):
        seen = []
        session = ReleaseSession(
            scheduler=scheduler,
            settings_store=settings_store,
            rng=random.Random(1),
            on_transition=seen.append,
        )
        session.start_guided_release()
        scheduler.advance(2.0)
        session.continue_to_setup()
        session.start_canary()

        assert [t.trigger for t in seen] == [
            Trigger.START_GUIDED_RELEASE,
            Trigger.SHADOW_TEST_COMPLETE,
            Trigger.CONTINUE_TO_SETUP,
            Trigger.START_CANARY,
        ]


# =============================================================================
# Monitoring and anomaly detection
# =============================================================================

class TestMonitoring:
    """Tests for sampling and the anomaly trigger."""

    def test_scenario_anomaly_then_rollback(self, drive_to, session, scheduler):
        drive_to(Phase.MONITORING)

        scheduler.advance(3.0)
        assert session.current_phase() == Phase.MONITORING
        assert [s.tick_index for s in session.metric_history()[-3:]] == [0, 1, 2]

        scheduler.advance(1.0)
        assert session.current_phase() == Phase.ANOMALY_DETECTED
        assert len(session.metric_history()) == 14
        assert session.metric_history()[-1].tick_index == 3
        entry = session.audit_log()[0]
        assert entry.event == "Anomaly Detected"
        assert entry.severity == Severity.WARNING

        session.confirm_rollback()

        assert session.current_phase() == Phase.ROLLED_BACK
        newest = session.audit_log()[0]
        assert newest.event == "Rollback Executed"
        assert newest.severity == Severity.ERROR
        assert "Adjusted Confidence: 83%" in newest.details

    def test_anomaly_fires_exactly_once(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        tick = session.tick_index

        scheduler.advance(20.0)

        assert session.current_phase() == Phase.ANOMALY_DETECTED
        assert session.tick_index == tick + 20
        assert len(session.audit.find("Anomaly Detected")) == 1
        assert session.recommendation.episode.episode_id == 1

    def test_history_fifo_eviction(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)

        scheduler.advance(28.0)

        history = session.metric_history()
        assert len(history) == 30
        assert history[0].tick_index == 2
        assert history[-1].tick_index == 31
        indices = [s.tick_index for s in history]
        assert indices == sorted(indices)

    def test_no_samples_after_rollback(self, drive_to, session, scheduler):
        drive_to(Phase.ROLLED_BACK)
        history = session.metric_history()

        scheduler.advance(30.0)

        assert session.metric_history() == history
        assert not session.is_sampling
        assert scheduler.pending() == 0

    def test_network_disabled_freezes_history(self, drive_to, session, scheduler, settings_store):
        drive_to(Phase.MONITORING)
        scheduler.advance(1.0)
        assert len(session.metric_history()) == 11

        session.set_network_enabled(False)
        assert session.audit_log()[0].event == "Network Failure"
        assert session.network_interrupted
        assert settings_store.load().network_enabled is False

        scheduler.advance(5.0)
        assert len(session.metric_history()) == 11
        assert session.tick_index == 1
        assert session.current_phase() == Phase.MONITORING

        session.set_network_enabled(True)
        assert session.audit_log()[0].event == "Network Restored"
        assert not session.network_interrupted

        scheduler.advance(1.0)
        assert len(session.metric_history()) == 12
        assert session.metric_history()[-1].tick_index == 1

    def test_network_toggle_to_same_value_is_noop(self, session):
        session.set_network_enabled(True)
        assert session.audit_log() == []


# =============================================================================
# Advisory sequence and the decision window
# =============================================================================

class TestDecisionWindow:
    """Tests for advisories, timeout, and the rollback prompt."""

    def test_advisory_sequence(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        before = len(session.agent_messages())

        scheduler.advance(0.5)
        assert session.agent_messages()[-1].kind == MessageKind.ALERT
        scheduler.advance(2.5)

        advisories = session.agent_messages()[before:]
        assert [m.kind for m in advisories] == [MessageKind.ALERT, MessageKind.ALERT, MessageKind.RECOMMENDATION]
        assert advisories[-1].metadata["confidence"] == 83
        assert advisories[-1].metadata["risk"] == "High"

    def test_timeout_only_changes_framing(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        assert session.recommendation.advisory_title == "Action Required"

        scheduler.advance(60.0)

        assert session.recommendation.timed_out
        assert session.recommendation.advisory_title == "Timeout: Action Required"
        assert session.current_phase() == Phase.ANOMALY_DETECTED
        session.confirm_rollback()
        assert session.current_phase() == Phase.ROLLED_BACK

    def test_request_rollback_returns_snapshot_and_pauses(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        messages = len(session.agent_messages())
        history = session.metric_history()

        snapshot = session.request_rollback()
        assert session.current_phase() == Phase.ROLLBACK_CONFIRM
        assert snapshot.confidence_percent == 83
        assert snapshot.latency_ms == history[-1].latency_ms

        scheduler.advance(100.0)
        assert len(session.agent_messages()) == messages
        assert session.metric_history() == history
        assert not session.recommendation.timed_out

    def test_cancel_rollback_restarts_timeout(self, drive_to, session, scheduler):
        drive_to(Phase.ROLLBACK_CONFIRM)
        scheduler.advance(10.0)

        session.cancel_rollback()
        assert session.current_phase() == Phase.ANOMALY_DETECTED
        assert session.recommendation.decision_pending

        scheduler.advance(59.0)
        assert not session.recommendation.timed_out
        scheduler.advance(1.0)
        assert session.recommendation.timed_out

    def test_confirm_from_prompt(self, drive_to, session):
        drive_to(Phase.ROLLBACK_CONFIRM)
        snapshot = session.confirm_rollback(adjusted_confidence=60)

        assert session.current_phase() == Phase.ROLLED_BACK
        assert snapshot.confidence_percent == 60
        assert "Adjusted Confidence: 60%" in session.audit_log()[0].details
        assert session.active_model == "v2.1"
        last = session.agent_messages()[-1]
        assert last.kind == MessageKind.SUCCESS
        assert last.text.startswith("Rollback completed. Model v2.1 restored.")

    def test_invalid_confidence_leaves_state(self, drive_to, session):
        drive_to(Phase.ANOMALY_DETECTED)

        with pytest.raises(InvalidConfiguration):
            session.confirm_rollback(adjusted_confidence=150)

        assert session.current_phase() == Phase.ANOMALY_DETECTED
        assert session.is_sampling
        assert session.recommendation.confidence == 83

    def test_adjust_confidence(self, drive_to, session):
        with pytest.raises(InvalidTransition):
            session.adjust_confidence(50)

        drive_to(Phase.ANOMALY_DETECTED)
        assert session.adjust_confidence(50) == 50
        assert session.rollback_snapshot().confidence_percent == 50


# =============================================================================
# Continue rollout
# =============================================================================

class TestContinueRollout:
    """Tests for overriding the recommendation."""

    def test_continue_resolves_episode(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        session.continue_rollout(adjusted_confidence=70)

        assert session.current_phase() == Phase.ANOMALY_DETECTED
        entry = session.audit_log()[0]
        assert entry.event == "Rollout Continued"
        assert entry.severity == Severity.WARNING
        assert "70%" in entry.details
        assert session.agent_messages()[-1].text.startswith("Continuing rollout.")

        tick = session.tick_index
        scheduler.advance(100.0)
        assert not session.recommendation.timed_out
        assert session.recommendation.advisory_title is None
        assert session.tick_index > tick

    def test_continue_is_one_shot(self, drive_to, session):
        drive_to(Phase.ANOMALY_DETECTED)
        session.continue_rollout()

        with pytest.raises(InvalidTransition):
            session.continue_rollout()
        assert len(session.audit.find("Rollout Continued")) == 1

    def test_rollback_still_available_after_continue(self, drive_to, session):
        drive_to(Phase.ANOMALY_DETECTED)
        session.continue_rollout(adjusted_confidence=70)

        snapshot = session.confirm_rollback()
        assert session.current_phase() == Phase.ROLLED_BACK
        assert snapshot.confidence_percent == 70


# =============================================================================
# Replay
# =============================================================================

class TestReplay:
    """Tests for restarting monitoring."""

    def test_replay_after_rollback(self, drive_to, session, scheduler):
        drive_to(Phase.ROLLED_BACK)
        previous = session.audit_log()

        session.replay()

        assert session.current_phase() == Phase.MONITORING
        history = session.metric_history()
        assert len(history) == 10
        assert all(s.is_warmup for s in history)
        assert session.tick_index == 0
        entries = session.audit_log()
        assert entries[0].event == "Replay"
        assert entries[1:] == previous

    def test_replay_detects_again(self, drive_to, session, scheduler):
        drive_to(Phase.ROLLED_BACK)
        session.replay()

        scheduler.advance(4.0)

        assert session.current_phase() == Phase.ANOMALY_DETECTED
        assert len(session.audit.find("Anomaly Detected")) == 2
        assert session.recommendation.episode.episode_id == 2

    def test_replay_abandons_open_episode(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        messages = len(session.agent_messages())

        session.replay()
        scheduler.advance(3.0)

        assert session.current_phase() == Phase.MONITORING
        assert len(session.agent_messages()) == messages
        assert session.recommendation.episode.resolved_by == "replay"

    def test_replay_from_monitoring_resets_window(self, drive_to, session, scheduler):
        drive_to(Phase.MONITORING)
        scheduler.advance(2.0)

        session.replay()

        assert len(session.metric_history()) == 10
        assert session.tick_index == 0
        assert scheduler.pending_names().count("metric-tick") == 1


# =============================================================================
# Settings and operator controls
# =============================================================================

class TestOperatorControls:
    """Tests for settings and configuration controls."""

    def test_settings_loaded_at_start(self, scheduler, settings_store):
        settings_store.save(ReleaseSettings(network_enabled=False, default_canary_percent=10))
        session = ReleaseSession(scheduler=scheduler, settings_store=settings_store)

        assert session.config.network_enabled is False
        assert session.config.canary_percent == 10
        assert session.config.default_canary_percent == 10

    def test_default_percent_tracks_while_idle(self, session, settings_store):
        session.set_default_canary_percent(1)

        assert session.config.canary_percent == 1
        assert settings_store.load().default_canary_percent == 1

    def test_default_percent_does_not_override_setup_choice(self, drive_to, session):
        drive_to(Phase.CANARY_SETUP)
        session.set_canary_percent(10)
        session.set_default_canary_percent(1)

        assert session.config.canary_percent == 10
        assert session.config.default_canary_percent == 1

    def test_default_percent_validated(self, session):
        with pytest.raises(InvalidConfiguration):
            session.set_default_canary_percent(7)
        assert session.config.default_canary_percent == 5

    def test_canary_percent_locked_after_setup(self, drive_to, session):
        session.set_canary_percent(10)
        drive_to(Phase.MONITORING)

        with pytest.raises(InvalidTransition):
            session.set_canary_percent(1)
        assert session.config.canary_percent == 5

    def test_rollout_duration(self, drive_to, session):
        drive_to(Phase.CANARY_SETUP)
        session.set_rollout_duration(30)
        session.start_canary()

        assert "Duration: 30 min." in session.audit_log()[0].details


# =============================================================================
# Release notes, chat, teardown
# =============================================================================

class TestReleaseNotes:
    """Tests for the incident report."""

    def test_requires_rollback(self, drive_to, session):
        drive_to(Phase.ANOMALY_DETECTED)
        with pytest.raises(InvalidTransition):
            session.generate_release_notes()

    def test_after_rollback(self, drive_to, session):
        drive_to(Phase.ROLLED_BACK)
        notes = session.generate_release_notes()
        text = notes.render()

        assert "Target: v3.0 -> Rolled back to v2.1" in text
        assert "Metric Anomaly Detected during 5% Canary." in text
        assert "Agent Confidence: 83%" in text
        assert notes.snapshot == session.executed_rollback
        assert session.audit_log()[0].event == "Release Notes Generated"


class TestChat:
    """Tests for operator chat."""

    def test_chat_is_acknowledged(self, session, scheduler):
        message = session.submit_chat("  why is latency up?  ")

        assert message.sender == Sender.USER
        assert message.text == "why is latency up?"
        assert session.agent_messages()[-1] == message

        scheduler.advance(1.0)
        ack = session.agent_messages()[-1]
        assert ack.sender == Sender.AGENT
        assert ack.text.startswith("I've received your query.")

    def test_acknowledged_chats_do_not_accumulate_timers(self, session, scheduler):
        for i in range(5):
            session.submit_chat(f"question {i}")
            scheduler.advance(1.0)

        assert len(session._session_timers) == 1
        assert scheduler.pending() == 0

    def test_empty_chat_rejected(self, session):
        with pytest.raises(InvalidConfiguration):
            session.submit_chat("   ")
        assert session.agent_messages() == ()


class TestTeardown:
    """Tests for shutdown and serialized callbacks."""

    def test_shutdown_cancels_every_timer(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        session.submit_chat("hello")

        session.shutdown()

        assert scheduler.pending() == 0
        assert not session.is_sampling

    def test_shutdown_before_shadow_test_completes(self, session, scheduler):
        session.start_guided_release()
        session.shutdown()
        scheduler.advance(5.0)

        assert session.shadow_test_status == ShadowTestStatus.RUNNING

    def test_rejected_callback_is_logged(self, session, caplog):
        def rejected():
            raise InvalidTransition(Phase.IDLE, Trigger.REPLAY)

        with caplog.at_level(logging.ERROR, logger="canarypilot.engine"):
            session._serialize(rejected)

        assert "Scheduled callback was rejected" in caplog.text

    def test_snapshot_is_json_serialisable(self, drive_to, session, scheduler):
        drive_to(Phase.ANOMALY_DETECTED)
        scheduler.advance(3.0)

        data = json.loads(json.dumps(session.snapshot()))

        assert data["phase"] == "anomaly_detected"
        assert data["recommendation"]["decision_pending"] is True
        assert len(data["metrics"]) == 17
        assert data["logs"][0]["event"] == "Anomaly Detected"
        assert "rollback_requested" in data["allowed_triggers"]


class TestScaledConfig:
    """A faster clock keeps the same shape."""

    def test_scaled_session(self, scheduler, settings_store):
        session = ReleaseSession(
            scheduler=scheduler,
            config=EngineConfig().scaled(0.5),
            settings_store=settings_store,
        )
        session.start_guided_release()
        scheduler.advance(1.0)
        session.continue_to_setup()
        session.start_canary()
        scheduler.advance(2.0)

        assert session.current_phase() == Phase.ANOMALY_DETECTED
        assert len(session.metric_history()) == 14


# =============================================================================
# Scheduler failures
# =============================================================================

class FlakyScheduler(ManualScheduler):
    """Virtual clock whose timer calls can be made to fail."""

    def __init__(self):
        super().__init__()
        self.fail_later = False
        self.fail_every = False

    def call_later(self, delay, callback, name=""):
        if self.fail_later:
            raise RuntimeError("no running event loop")
        return super().call_later(delay, callback, name)

    def call_every(self, interval, callback, name=""):
        if self.fail_every:
            raise RuntimeError("no running event loop")
        return super().call_every(interval, callback, name)


class TestSchedulerFailure:
    """A timer that cannot be created leaves the session as it was."""

    @pytest.fixture
    def flaky(self):
        return FlakyScheduler()

    @pytest.fixture
    def flaky_session(self, flaky, settings_store):
        return ReleaseSession(scheduler=flaky, settings_store=settings_store, rng=random.Random(7))

    def test_start_guided_release_untouched(self, flaky, flaky_session):
        flaky.fail_later = True

        with pytest.raises(RuntimeError):
            flaky_session.start_guided_release()

        assert flaky_session.current_phase() == Phase.IDLE
        assert flaky_session.shadow_test_status == ShadowTestStatus.IDLE
        assert flaky_session.audit_log() == []
        assert flaky_session.agent_messages() == ()

        flaky.fail_later = False
        flaky_session.start_guided_release()

        assert flaky_session.current_phase() == Phase.SHADOW_TEST
        assert [e.event for e in flaky_session.audit_log()] == ["Shadow Test Initiated"]
        assert len(flaky_session.agent_messages()) == 1

    def test_start_canary_untouched(self, flaky, flaky_session):
        flaky_session.start_guided_release()
        flaky.advance(2.0)
        flaky_session.continue_to_setup()
        logs_before = len(flaky_session.audit_log())
        model_before = flaky_session.active_model
        flaky.fail_every = True

        with pytest.raises(RuntimeError):
            flaky_session.start_canary(10, 30)

        assert flaky_session.current_phase() == Phase.CANARY_SETUP
        assert len(flaky_session.audit_log()) == logs_before
        assert flaky_session.active_model == model_before
        assert flaky_session.config.canary_percent == 5
        assert flaky_session.metric_history() == ()
        assert not flaky_session.is_sampling

        flaky.fail_every = False
        flaky_session.start_canary(10, 30)

        assert flaky_session.current_phase() == Phase.MONITORING
        assert flaky_session.is_sampling

    def test_submit_chat_untouched(self, flaky, flaky_session):
        flaky.fail_later = True

        with pytest.raises(RuntimeError):
            flaky_session.submit_chat("hello")

        assert flaky_session.agent_messages() == ()


# =============================================================================
# Custom baseline
# =============================================================================

class TestCustomBaseline:
    """Every message and sample refers to the baseline the session was given."""

    @pytest.fixture
    def legacy(self):
        return ModelDescriptor(version="v9.9", accuracy=0.8, recall=0.7, latency_ms=100, fairness=0.9)

    def test_advisories_and_rollback_agree(self, legacy, scheduler, settings_store):
        session = ReleaseSession(
            scheduler=scheduler,
            settings_store=settings_store,
            rng=random.Random(7),
            baseline=legacy,
        )
        session.start_guided_release()
        scheduler.advance(2.0)
        session.continue_to_setup()
        session.start_canary(5, 20)

        warmup = session.metric_history()
        assert all(95 <= s.latency_ms <= 105 for s in warmup)

        scheduler.advance(4.0)
        scheduler.advance(3.0)
        session.confirm_rollback()

        texts = [m.text for m in session.agent_messages()]
        detail = next(t for t in texts if t.startswith("Latency rose"))
        recommendation = next(t for t in texts if t.startswith("Recommendation:"))
        assert "(100ms →" in detail
        assert "Rollback to v9.9" in recommendation
        assert BASELINE_MODEL.version not in recommendation

        trigger = next(s for s in session.metric_history() if s.tick_index == 3)
        anomaly = session.audit.find("Anomaly Detected")[0]
        assert f"+{round(trigger.latency_ms - 100)}%" in anomaly.details
        assert session.audit_log()[0].details.startswith("Reverted to v9.9")
        assert session.active_model == "v9.9"
