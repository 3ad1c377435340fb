"""
Session Hub
===========

Holds the live ReleaseSession served by the web backend and fans its
events (log entries, assistant messages, phase changes) out to websocket
subscribers.
"""

import asyncio
import logging
from typing import Any, Callable, Optional

from canarypilot.config import EngineConfig
from canarypilot.engine import ReleaseSession, Transition
from canarypilot.models import AgentMessage, LogEntry
from canarypilot.scheduler import AsyncioScheduler
from canarypilot.settings import SettingsStore

logger = logging.getLogger(__name__)

# Called with on_log/on_message/on_transition keyword callbacks
SessionFactory = Callable[..., ReleaseSession]


def default_session_factory(**callbacks: Any) -> ReleaseSession:
    return ReleaseSession(
        scheduler=AsyncioScheduler(),
        config=EngineConfig.load(),
        settings_store=SettingsStore(),
        **callbacks,
    )


class SessionHub:
    """One release session at a time, plus its event subscribers."""

    def __init__(self, factory: Optional[SessionFactory] = None):
        self._factory = factory or default_session_factory
        self._session: Optional[ReleaseSession] = None
        self._subscribers: list[tuple[asyncio.Queue, asyncio.AbstractEventLoop]] = []

    @property
    def session(self) -> ReleaseSession:
        if self._session is None:
            self._session = self._create()
        return self._session

    def reset(self) -> ReleaseSession:
        """Tear down the current session and start a fresh one in IDLE."""
        if self._session is not None:
            self._session.shutdown()
        self._session = self._create()
        self._publish("reset", self._session.snapshot())
        return self._session

    def shutdown(self) -> None:
        if self._session is not None:
            self._session.shutdown()
            self._session = None

    # =========================================================================
    # Subscribers
    # =========================================================================

    def subscribe(self) -> asyncio.Queue:
        """Must be called from the event loop that will consume the queue."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append((queue, asyncio.get_running_loop()))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers = [(q, loop) for q, loop in self._subscribers if q is not queue]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # =========================================================================
    # Internals
    # =========================================================================

    def _create(self) -> ReleaseSession:
        return self._factory(
            on_log=self._on_log,
            on_message=self._on_message,
            on_transition=self._on_transition,
        )

    def _on_log(self, entry: LogEntry) -> None:
        self._publish("log", entry.to_dict())

    def _on_message(self, message: AgentMessage) -> None:
        self._publish("message", message.to_dict())

    def _on_transition(self, transition: Transition) -> None:
        self._publish("phase", {
            "from": transition.source.value,
            "trigger": transition.trigger.value,
            "to": transition.target.value,
        })

    def _publish(self, kind: str, payload: dict) -> None:
        event = {"type": kind, "data": payload}
        for queue, loop in list(self._subscribers):
            if loop.is_closed():
                self.unsubscribe(queue)
                continue
            # Session callbacks may run off the loop thread
            loop.call_soon_threadsafe(queue.put_nowait, event)
