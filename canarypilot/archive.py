"""
Release Archive
===============

Persists finished release sessions to SQLite so their audit trail outlives
the process.

Usage:
    archive = await ReleaseArchive.open("runs.db")
    run_id = await archive.save_session(session)
    entries = await archive.load_audit_log(run_id)   # newest first
    await archive.close()
"""

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from canarypilot.db.connection import DEFAULT_DB_PATH, close_db, get_session_maker, init_db
from canarypilot.db.models import AuditRecord, MessageRecord, ReleaseRun, SampleRecord
from canarypilot.engine import ReleaseSession
from canarypilot.models import (
    AgentMessage,
    LogEntry,
    MessageKind,
    MetricSample,
    Phase,
    Sender,
    Severity,
)

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ReleaseArchive:
    """Async store of archived release runs."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    @classmethod
    async def open(cls, db_path: Union[str, Path] = DEFAULT_DB_PATH) -> "ReleaseArchive":
        maker = await init_db(db_path)
        return cls(maker)

    async def close(self) -> None:
        await close_db()
        self._session_maker = None

    def _maker(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_session_maker()

    # =========================================================================
    # Writes
    # =========================================================================

    async def save_session(self, session: ReleaseSession) -> str:
        """Archive the current state of session. Returns the run id."""
        phase = session.current_phase()
        entries = list(reversed(session.audit_log()))   # chronological
        messages = session.agent_messages()
        samples = session.metric_history()
        rollback = session.executed_rollback

        run = ReleaseRun(
            run_uuid=str(uuid.uuid4()),
            baseline_version=session.baseline.version,
            candidate_version=session.candidate.version,
            final_phase=phase.value,
            active_model=session.active_model,
            canary_percent=session.config.canary_percent,
            rollout_duration_min=session.config.rollout_duration_min,
            confidence=session.recommendation.confidence,
            rolled_back=phase == Phase.ROLLED_BACK,
            rollback_snapshot=rollback.to_dict() if rollback else None,
        )
        run.logs = [
            AuditRecord(
                position=i,
                entry_id=entry.id,
                timestamp=entry.timestamp,
                event=entry.event,
                details=entry.details,
                severity=entry.severity.value,
            )
            for i, entry in enumerate(entries)
        ]
        run.messages = [
            MessageRecord(
                position=i,
                message_id=message.id,
                created_at=message.created_at,
                sender=message.sender.value,
                kind=message.kind.value,
                text=message.text,
                metadata_json=dict(message.metadata) if message.metadata else None,
            )
            for i, message in enumerate(messages)
        ]
        run.samples = [
            SampleRecord(
                position=i,
                timestamp_ms=sample.timestamp_ms,
                tick_index=sample.tick_index,
                latency_ms=sample.latency_ms,
                error_rate=sample.error_rate,
                drift_user_region=sample.drift_user_region,
            )
            for i, sample in enumerate(samples)
        ]

        async with self._maker()() as db:
            db.add(run)
            await db.commit()
            run_id = run.run_uuid

        logger.info("Archived release run %s (%s, %d log entries)", run_id, phase.value, len(entries))
        return run_id

    async def delete_run(self, run_id: str) -> bool:
        async with self._maker()() as db:
            row = await self._get_run(db, run_id)
            if row is None:
                return False
            for table in (AuditRecord, MessageRecord, SampleRecord):
                await db.execute(delete(table).where(table.run_id == row.id))
            await db.execute(delete(ReleaseRun).where(ReleaseRun.id == row.id))
            await db.commit()
            return True

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_runs(self, limit: Optional[int] = 20) -> list[dict]:
        """Archived runs, most recent first."""
        async with self._maker()() as db:
            stmt = select(ReleaseRun).order_by(ReleaseRun.id.desc())
            if limit:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [
                {
                    "run_id": row.run_uuid,
                    "archived_at": _as_utc(row.archived_at).isoformat() if row.archived_at else None,
                    "baseline": row.baseline_version,
                    "candidate": row.candidate_version,
                    "final_phase": row.final_phase,
                    "canary_percent": row.canary_percent,
                    "rollout_duration_min": row.rollout_duration_min,
                    "confidence": row.confidence,
                    "rolled_back": row.rolled_back,
                    "rollback_snapshot": row.rollback_snapshot,
                }
                for row in result.scalars().all()
            ]

    async def load_audit_log(self, run_id: str) -> list[LogEntry]:
        """Audit entries of a run, newest first like AuditLog.entries()."""
        async with self._maker()() as db:
            row = await self._require_run(db, run_id)
            result = await db.execute(
                select(AuditRecord).where(AuditRecord.run_id == row.id).order_by(AuditRecord.position.desc())
            )
            return [
                LogEntry(
                    event=rec.event,
                    details=rec.details,
                    severity=Severity(rec.severity),
                    id=rec.entry_id,
                    timestamp=_as_utc(rec.timestamp),
                )
                for rec in result.scalars().all()
            ]

    async def load_messages(self, run_id: str) -> list[AgentMessage]:
        async with self._maker()() as db:
            row = await self._require_run(db, run_id)
            result = await db.execute(
                select(MessageRecord).where(MessageRecord.run_id == row.id).order_by(MessageRecord.position)
            )
            return [
                AgentMessage(
                    text=rec.text,
                    sender=Sender(rec.sender),
                    kind=MessageKind(rec.kind),
                    metadata=rec.metadata_json,
                    id=rec.message_id,
                    created_at=_as_utc(rec.created_at),
                )
                for rec in result.scalars().all()
            ]

    async def load_metric_history(self, run_id: str) -> list[MetricSample]:
        async with self._maker()() as db:
            row = await self._require_run(db, run_id)
            result = await db.execute(
                select(SampleRecord).where(SampleRecord.run_id == row.id).order_by(SampleRecord.position)
            )
            return [
                MetricSample(
                    timestamp_ms=rec.timestamp_ms,
                    tick_index=rec.tick_index,
                    latency_ms=rec.latency_ms,
                    error_rate=rec.error_rate,
                    drift_user_region=rec.drift_user_region,
                )
                for rec in result.scalars().all()
            ]

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    async def _get_run(db: AsyncSession, run_id: str) -> Optional[ReleaseRun]:
        result = await db.execute(select(ReleaseRun).where(ReleaseRun.run_uuid == run_id))
        return result.scalar_one_or_none()

    async def _require_run(self, db: AsyncSession, run_id: str) -> ReleaseRun:
        row = await self._get_run(db, run_id)
        if row is None:
            raise KeyError(f"Unknown release run: {run_id}")
        return row
