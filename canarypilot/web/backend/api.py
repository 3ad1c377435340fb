from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from canarypilot.errors import InvalidConfiguration, InvalidTransition, ReleaseError, TimerConflict
from canarypilot.engine import ReleaseSession
from canarypilot.models import compare_models
from canarypilot.web.backend.hub import SessionHub

router = APIRouter()


class StartCanaryRequest(BaseModel):
    percent: Optional[int] = None
    duration_min: Optional[int] = None


class DecisionRequest(BaseModel):
    adjusted_confidence: Optional[int] = None


class ConfidenceRequest(BaseModel):
    value: int


class PercentRequest(BaseModel):
    percent: int


class DurationRequest(BaseModel):
    duration_min: int


class NetworkRequest(BaseModel):
    enabled: bool


class ChatRequest(BaseModel):
    text: str


class SettingsUpdate(BaseModel):
    network_enabled: Optional[bool] = None
    default_canary_percent: Optional[int] = None


class Settings(BaseModel):
    network_enabled: bool
    default_canary_percent: int


def get_hub(request: Request) -> SessionHub:
    return request.app.state.hub


def get_session(hub: SessionHub = Depends(get_hub)) -> ReleaseSession:
    return hub.session


def status_for(error: ReleaseError) -> int:
    if isinstance(error, InvalidConfiguration):
        return 422
    if isinstance(error, (InvalidTransition, TimerConflict)):
        return 409
    return 400


def run_action(action: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Call a session operation, mapping release errors to HTTP errors."""
    try:
        return action(*args, **kwargs)
    except ReleaseError as e:
        raise HTTPException(status_code=status_for(e), detail=str(e))


# =============================================================================
# Reads
# =============================================================================

@router.get("/session")
async def get_session_state(session: ReleaseSession = Depends(get_session)):
    """Full session view: phase, config, metrics, logs and messages."""
    return session.snapshot()


@router.post("/session/reset")
async def reset_session(hub: SessionHub = Depends(get_hub)):
    """Discard the current session and start over in IDLE."""
    return hub.reset().snapshot()


@router.get("/metrics")
async def get_metrics(session: ReleaseSession = Depends(get_session)):
    return [sample.to_dict() for sample in session.metric_history()]


@router.get("/logs")
async def get_logs(limit: Optional[int] = None, session: ReleaseSession = Depends(get_session)):
    """Audit log, newest first."""
    entries = session.audit_log()
    if limit is not None:
        entries = entries[:limit]
    return [entry.to_dict() for entry in entries]


@router.get("/messages")
async def get_messages(session: ReleaseSession = Depends(get_session)):
    return [message.to_dict() for message in session.agent_messages()]


@router.get("/models/comparison")
async def get_model_comparison(session: ReleaseSession = Depends(get_session)):
    return {
        "baseline": session.baseline.to_dict(),
        "candidate": session.candidate.to_dict(),
        "metrics": [delta.to_dict() for delta in compare_models(session.baseline, session.candidate)],
    }


# =============================================================================
# Release flow
# =============================================================================

@router.post("/actions/start_guided_release")
async def start_guided_release(session: ReleaseSession = Depends(get_session)):
    run_action(session.start_guided_release)
    return session.snapshot()


@router.post("/actions/continue_to_setup")
async def continue_to_setup(session: ReleaseSession = Depends(get_session)):
    run_action(session.continue_to_setup)
    return session.snapshot()


@router.post("/actions/start_canary")
async def start_canary(req: Optional[StartCanaryRequest] = None, session: ReleaseSession = Depends(get_session)):
    req = req or StartCanaryRequest()
    run_action(session.start_canary, req.percent, req.duration_min)
    return session.snapshot()


@router.post("/actions/request_rollback")
async def request_rollback(session: ReleaseSession = Depends(get_session)):
    """Open the rollback confirmation; returns the metrics to show in it."""
    snapshot = run_action(session.request_rollback)
    return {"rollback_snapshot": snapshot.to_dict(), "session": session.snapshot()}


@router.post("/actions/cancel_rollback")
async def cancel_rollback(session: ReleaseSession = Depends(get_session)):
    run_action(session.cancel_rollback)
    return session.snapshot()


@router.post("/actions/confirm_rollback")
async def confirm_rollback(req: Optional[DecisionRequest] = None, session: ReleaseSession = Depends(get_session)):
    req = req or DecisionRequest()
    snapshot = run_action(session.confirm_rollback, req.adjusted_confidence)
    return {"rollback_snapshot": snapshot.to_dict(), "session": session.snapshot()}


@router.post("/actions/continue_rollout")
async def continue_rollout(req: Optional[DecisionRequest] = None, session: ReleaseSession = Depends(get_session)):
    req = req or DecisionRequest()
    run_action(session.continue_rollout, req.adjusted_confidence)
    return session.snapshot()


@router.post("/actions/replay")
async def replay(session: ReleaseSession = Depends(get_session)):
    run_action(session.replay)
    return session.snapshot()


# =============================================================================
# Operator controls
# =============================================================================

@router.post("/actions/adjust_confidence")
async def adjust_confidence(req: ConfidenceRequest, session: ReleaseSession = Depends(get_session)):
    return {"confidence": run_action(session.adjust_confidence, req.value)}


@router.post("/actions/set_canary_percent")
async def set_canary_percent(req: PercentRequest, session: ReleaseSession = Depends(get_session)):
    run_action(session.set_canary_percent, req.percent)
    return session.config.to_dict()


@router.post("/actions/set_rollout_duration")
async def set_rollout_duration(req: DurationRequest, session: ReleaseSession = Depends(get_session)):
    run_action(session.set_rollout_duration, req.duration_min)
    return session.config.to_dict()


@router.post("/actions/set_network_enabled")
async def set_network_enabled(req: NetworkRequest, session: ReleaseSession = Depends(get_session)):
    run_action(session.set_network_enabled, req.enabled)
    return session.config.to_dict()


@router.post("/actions/set_default_canary_percent")
async def set_default_canary_percent(req: PercentRequest, session: ReleaseSession = Depends(get_session)):
    run_action(session.set_default_canary_percent, req.percent)
    return session.config.to_dict()


@router.post("/actions/generate_release_notes")
async def generate_release_notes(session: ReleaseSession = Depends(get_session)):
    notes = run_action(session.generate_release_notes)
    return notes.to_dict()


@router.post("/actions/submit_chat")
async def submit_chat(req: ChatRequest, session: ReleaseSession = Depends(get_session)):
    message = run_action(session.submit_chat, req.text)
    return message.to_dict()


# =============================================================================
# Settings
# =============================================================================

@router.get("/settings", response_model=Settings)
async def get_settings(session: ReleaseSession = Depends(get_session)):
    return Settings(
        network_enabled=session.config.network_enabled,
        default_canary_percent=session.config.default_canary_percent,
    )


@router.put("/settings", response_model=Settings)
async def update_settings(update: SettingsUpdate, session: ReleaseSession = Depends(get_session)):
    """Apply and persist operator settings. Fields left out are unchanged."""
    if update.default_canary_percent is not None:
        run_action(session.set_default_canary_percent, update.default_canary_percent)
    if update.network_enabled is not None:
        run_action(session.set_network_enabled, update.network_enabled)
    return Settings(
        network_enabled=session.config.network_enabled,
        default_canary_percent=session.config.default_canary_percent,
    )
