"""
Database Models for canarypilot
===============================

SQLAlchemy models for archiving finished release sessions: one row per run,
plus its audit log, assistant feed and metric history.
"""

import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Integer, Float, DateTime, ForeignKey, JSON, Text, Boolean
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    pass


class ReleaseRun(Base):
    """One archived release session."""
    __tablename__ = "release_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_uuid: Mapped[str] = mapped_column(String(36), unique=True, index=True, default=lambda: str(uuid.uuid4()))
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    baseline_version: Mapped[str] = mapped_column(String(20))
    candidate_version: Mapped[str] = mapped_column(String(20))
    final_phase: Mapped[str] = mapped_column(String(30))
    active_model: Mapped[str] = mapped_column(String(100))
    canary_percent: Mapped[int] = mapped_column(Integer)
    rollout_duration_min: Mapped[int] = mapped_column(Integer)
    confidence: Mapped[int] = mapped_column(Integer)
    rolled_back: Mapped[bool] = mapped_column(Boolean, default=False)

    # AnomalySnapshot at rollback time, when there was one
    rollback_snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    logs: Mapped[List["AuditRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    messages: Mapped[List["MessageRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    samples: Mapped[List["SampleRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")


class AuditRecord(Base):
    """An audit log entry of an archived run."""
    __tablename__ = "audit_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("release_runs.id"))
    position: Mapped[int] = mapped_column(Integer)  # insertion order within the run
    entry_id: Mapped[str] = mapped_column(String(36))
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    event: Mapped[str] = mapped_column(String(100))
    details: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(String(20))

    run: Mapped["ReleaseRun"] = relationship(back_populates="logs")


class MessageRecord(Base):
    """An assistant feed message of an archived run."""
    __tablename__ = "message_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("release_runs.id"))
    position: Mapped[int] = mapped_column(Integer)
    message_id: Mapped[str] = mapped_column(String(36))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    sender: Mapped[str] = mapped_column(String(20))
    kind: Mapped[str] = mapped_column(String(20))
    text: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    run: Mapped["ReleaseRun"] = relationship(back_populates="messages")


class SampleRecord(Base):
    """A metric sample of an archived run's history window."""
    __tablename__ = "sample_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("release_runs.id"))
    position: Mapped[int] = mapped_column(Integer)
    timestamp_ms: Mapped[int] = mapped_column(Integer)
    tick_index: Mapped[int] = mapped_column(Integer)
    latency_ms: Mapped[float] = mapped_column(Float)
    error_rate: Mapped[float] = mapped_column(Float)
    drift_user_region: Mapped[float] = mapped_column(Float)

    run: Mapped["ReleaseRun"] = relationship(back_populates="samples")
