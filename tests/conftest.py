"""
Shared fixtures for release engine tests.
"""

import random

import pytest

from canarypilot.config import EngineConfig
from canarypilot.engine import ReleaseSession
from canarypilot.models import Phase
from canarypilot.scheduler import ManualScheduler
from canarypilot.settings import SettingsStore


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def settings_store(tmp_path):
    return SettingsStore(tmp_path / "canarypilot_settings.json")


@pytest.fixture
def session(scheduler, settings_store):
    """A fresh session on a virtual clock, in IDLE."""
    return ReleaseSession(
        scheduler=scheduler,
        config=EngineConfig(),
        settings_store=settings_store,
        rng=random.Random(7),
    )


@pytest.fixture
def drive_to(session, scheduler):
    """
    Walk the session forward along the guided path until it reaches phase.

    Monitoring is entered with start_canary(5, 20); the anomaly is reached by
    four ticks (indices 0..3).
    """
    steps = [
        (Phase.SHADOW_TEST, lambda: session.start_guided_release()),
        (Phase.CANARY_SETUP, lambda: (scheduler.advance(2.0), session.continue_to_setup())),
        (Phase.MONITORING, lambda: session.start_canary(5, 20)),
        (Phase.ANOMALY_DETECTED, lambda: scheduler.advance(4.0)),
        (Phase.ROLLBACK_CONFIRM, lambda: session.request_rollback()),
    ]

    def _drive(phase: Phase) -> ReleaseSession:
        if phase == Phase.ROLLED_BACK:
            _drive(Phase.ANOMALY_DETECTED)
            session.confirm_rollback()
            return session
        for target, step in steps:
            if session.current_phase() == phase:
                break
            step()
            assert session.current_phase() == target
        assert session.current_phase() == phase
        return session

    return _drive
