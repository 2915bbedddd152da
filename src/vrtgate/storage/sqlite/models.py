"""SQLAlchemy ORM models for run sessions and their results."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class RunSession(Base):
    """One finished unit of pipeline work. Written once, never updated."""

    __tablename__ = "run_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    site_id: Mapped[str] = mapped_column(String(255), nullable=False)
    session_type: Mapped[str] = mapped_column(String(32), nullable=False)
    device: Mapped[Optional[str]] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="completed")

    page_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)
    threshold: Mapped[Optional[float]] = mapped_column(Float)
    summary: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)

    # Sessions a comparison was computed from
    baseline_session_id: Mapped[Optional[str]] = mapped_column(String(36))
    after_session_id: Mapped[Optional[str]] = mapped_column(String(36))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    pages: Mapped[list[CrawledPageRecord]] = relationship(
        "CrawledPageRecord", back_populates="session", cascade="all, delete-orphan"
    )
    snapshots: Mapped[list[SnapshotRecord]] = relationship(
        "SnapshotRecord", back_populates="session", cascade="all, delete-orphan"
    )
    comparisons: Mapped[list[ComparisonRecord]] = relationship(
        "ComparisonRecord", back_populates="session", cascade="all, delete-orphan"
    )
    errors: Mapped[list[ErrorRecordRow]] = relationship(
        "ErrorRecordRow", back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_run_sessions_site_type", "site_id", "session_type"),
        Index("ix_run_sessions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RunSession(id={self.id}, site_id={self.site_id}, "
            f"type={self.session_type}, created_at={self.created_at})>"
        )

    def __rich_repr__(self):
        """Rich-compatible representation that avoids circular references."""
        yield "id", self.id
        yield "site_id", self.site_id
        yield "session_type", self.session_type
        yield "device", self.device
        yield "status", self.status
        yield "page_count", self.page_count
        yield "error_count", self.error_count
        yield "created_at", self.created_at


class CrawledPageRecord(Base):
    __tablename__ = "crawled_pages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("run_sessions.id", ondelete="CASCADE"), nullable=False
    )
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    page_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(Text)
    depth: Mapped[int] = mapped_column(Integer, default=0)
    discovery_order: Mapped[int] = mapped_column(Integer, default=0)

    session: Mapped[RunSession] = relationship("RunSession", back_populates="pages")

    __table_args__ = (Index("ix_crawled_pages_session", "session_id"),)

    def __repr__(self) -> str:
        return f"<CrawledPageRecord(page_id={self.page_id}, url={self.url})>"


class SnapshotRecord(Base):
    """Metadata of a stored snapshot; the bytes live in the artifact store."""

    __tablename__ = "snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("run_sessions.id", ondelete="CASCADE"), nullable=False
    )
    site_id: Mapped[str] = mapped_column(String(255), nullable=False)
    device: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    page_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)

    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    artifact_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    width: Mapped[int] = mapped_column(Integer)
    height: Mapped[int] = mapped_column(Integer)
    image_format: Mapped[str] = mapped_column(String(8), default="png")
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    load_time_ms: Mapped[Optional[float]] = mapped_column(Float)
    from_cache: Mapped[bool] = mapped_column(Boolean, default=False)
    position: Mapped[int] = mapped_column(Integer, default=0)

    captured_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    session: Mapped[RunSession] = relationship("RunSession", back_populates="snapshots")

    __table_args__ = (
        Index("ix_snapshots_session", "session_id"),
        Index("ix_snapshots_site_device_kind", "site_id", "device", "kind"),
        Index("ix_snapshots_content_hash", "content_hash"),
    )

    def __repr__(self) -> str:
        return (
            f"<SnapshotRecord(page_id={self.page_id}, kind={self.kind}, "
            f"device={self.device})>"
        )

    def __rich_repr__(self):
        yield "page_id", self.page_id
        yield "kind", self.kind
        yield "device", self.device
        yield "url", self.url
        yield "artifact_key", self.artifact_key
        yield "captured_at", self.captured_at


class ComparisonRecord(Base):
    __tablename__ = "comparisons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("run_sessions.id", ondelete="CASCADE"), nullable=False
    )
    page_id: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), default="")

    status: Mapped[str] = mapped_column(String(8), nullable=False)
    diff_percentage: Mapped[Optional[float]] = mapped_column(Float)
    diff_pixel_count: Mapped[int] = mapped_column(Integer, default=0)
    threshold: Mapped[float] = mapped_column(Float)
    phase: Mapped[Optional[str]] = mapped_column(String(16))
    classification: Mapped[Optional[str]] = mapped_column(String(32))
    change_type: Mapped[Optional[str]] = mapped_column(String(16))
    confidence: Mapped[Optional[float]] = mapped_column(Float)
    regions: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSON)
    baseline_ref: Mapped[Optional[str]] = mapped_column(String(1024))
    after_ref: Mapped[Optional[str]] = mapped_column(String(1024))
    diff_ref: Mapped[Optional[str]] = mapped_column(String(1024))
    message: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    session: Mapped[RunSession] = relationship("RunSession", back_populates="comparisons")

    __table_args__ = (
        Index("ix_comparisons_session", "session_id"),
        Index("ix_comparisons_status", "status"),
        Index("ix_comparisons_page", "page_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ComparisonRecord(page_id={self.page_id}, status={self.status}, "
            f"diff={self.diff_percentage})>"
        )

    def __rich_repr__(self):
        yield "page_id", self.page_id
        yield "status", self.status
        yield "diff_percentage", self.diff_percentage
        yield "classification", self.classification
        yield "created_at", self.created_at


class ErrorRecordRow(Base):
    __tablename__ = "error_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("run_sessions.id", ondelete="CASCADE"), nullable=False
    )
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    classification: Mapped[str] = mapped_column(String(32), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1)
    message: Mapped[Optional[str]] = mapped_column(Text)
    context: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    session: Mapped[RunSession] = relationship("RunSession", back_populates="errors")

    __table_args__ = (
        Index("ix_error_records_session", "session_id"),
        Index("ix_error_records_classification", "classification"),
    )

    def __repr__(self) -> str:
        return (
            f"<ErrorRecordRow(operation={self.operation}, "
            f"classification={self.classification}, attempt={self.attempt})>"
        )
