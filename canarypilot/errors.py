"""
Release Engine Errors
=====================

Every failure is raised synchronously to the caller of the action that
caused it. None of them is fatal: the session stays in its last valid phase
and the caller may issue a corrected action.
"""

from typing import Any, Optional


class ReleaseError(Exception):
    """Base class for release engine errors."""


class InvalidTransition(ReleaseError):
    """An action was attempted from a phase that does not permit it."""

    def __init__(self, phase: Any, trigger: Any, reason: Optional[str] = None):
        self.phase = phase
        self.trigger = trigger
        self.reason = reason
        phase_name = getattr(phase, "value", phase)
        trigger_name = getattr(trigger, "value", trigger)
        message = f"Cannot apply '{trigger_name}' in phase '{phase_name}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class InvalidConfiguration(ReleaseError):
    """A release parameter was outside its allowed range."""

    def __init__(self, field: str, value: Any, reason: str):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field}={value!r}: {reason}")


class TimerConflict(ReleaseError):
    """A new anomaly episode was started while another is still unresolved."""
