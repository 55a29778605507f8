from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, TypeDecorator, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.session import Base
from app.domain.retry import utcnow
from app.domain.states import JobEvent, JobStatus, NotificationType

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


class UtcDateTime(TypeDecorator):
    """Timestamp stored in UTC and always read back timezone-aware, including on SQLite."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class GenerationJob(Base):
    __tablename__ = "generation_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    message_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, index=True)
    # Lower value = more urgent
    priority: Mapped[int] = mapped_column(Integer, default=0)

    # Model id, message history, context references. Opaque to the queue.
    payload: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)

    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow, onupdate=utcnow)
    available_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __table_args__ = (
        # Claim query: status=queued, available_at <= now, ordered by priority then age
        Index("ix_generation_jobs_claim", "status", "priority", "created_at"),
        Index("ix_generation_jobs_owner_status", "owner_id", "status"),
    )

    @property
    def attempt(self) -> int:
        return self.retry_count + 1


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("generation_jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)

    # Context (error message, retry count, reason)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)

    job: Mapped["GenerationJob"] = relationship("GenerationJob", back_populates="events")


class Message(Base):
    """Final conversation message produced by a completed job."""

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("generation_jobs.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    message_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    conversation_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String, nullable=False)

    content: Mapped[str] = mapped_column(Text, default="")
    thinking: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    products: Mapped[list[dict[str, Any]]] = mapped_column(JsonDocument, default=list)

    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)


class Notification(Base):
    """
    Write-once record of a terminal job outcome, published by the notification publisher.
    At most one per (job, type).
    """

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("generation_jobs.id", ondelete="CASCADE"), index=True)
    owner_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    type: Mapped[NotificationType] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonDocument, default=dict)

    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)  # PENDING, PUBLISHED
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(UtcDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "type", name="uq_notifications_job_type"),
    )
