"""
Database models for the AIVP research core.
Defines SQLAlchemy models for participants, consent, audit logs, consultation sessions and transcripts.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.types import TypeDecorator

from aivp.data.schemas import ConsentKind, MessageType, ParticipantRole, SessionStatus

Base = declarative_base()


# Database-agnostic JSON column type
class JSONColumn(TypeDecorator):
    """JSON column that uses JSONB for PostgreSQL and JSON for other databases."""

    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as an aware UTC datetime.

    Values are stored naive in UTC so SQLite and PostgreSQL behave the same;
    naive inputs are assumed to already be UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Participant(Base):
    """One real person using the platform; never deleted."""

    __tablename__ = "participants"

    id = Column(String(128), primary_key=True)
    role = Column(String(50), nullable=False, default=ParticipantRole.PILOT.value)
    anonymous_id = Column(String(64), unique=True, nullable=True, index=True)
    consent_withdrawn_at = Column(UTCDateTime, nullable=True)
    consent_declined_at = Column(UTCDateTime, nullable=True)
    profile_complete = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    updated_at = Column(UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    consent_records = relationship(
        "ConsentRecord", back_populates="participant", order_by="ConsentRecord.timestamp"
    )
    sessions = relationship("ConsultationSession", back_populates="participant")

    @validates("role")
    def validate_role(self, key, role):
        """Validate participant role."""
        if role not in [r.value for r in ParticipantRole]:
            raise ValueError(f"Invalid role: {role}")
        return role

    def __repr__(self):
        return f"<Participant(id={self.id}, role={self.role}, version={self.version})>"


class AnonymousIdentifier(Base):
    """
    Registry of every anonymous identifier ever issued.

    Deliberately holds no reference to a participant; its only job is to make
    reuse of an identifier impossible across the lifetime of the system.
    """

    __tablename__ = "anonymous_identifiers"

    anonymous_id = Column(String(64), primary_key=True)
    issued_at = Column(UTCDateTime, nullable=False, default=utc_now)
    retired_at = Column(UTCDateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self):
        return f"<AnonymousIdentifier(anonymous_id={self.anonymous_id}, active={self.is_active})>"


class ConsentRecord(Base):
    """Immutable record of one consent lifecycle transition."""

    __tablename__ = "consent_records"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    participant_id = Column(String(128), ForeignKey("participants.id"), nullable=False, index=True)
    anonymous_id = Column(String(64), nullable=True)
    kind = Column(String(50), nullable=False)
    consent_details = Column(JSONColumn, nullable=True)
    reason = Column(Text, nullable=True)
    timestamp = Column(UTCDateTime, nullable=False, default=utc_now)

    # Relationships
    participant = relationship("Participant", back_populates="consent_records")

    @validates("kind")
    def validate_kind(self, key, kind):
        """Validate consent kind."""
        if kind not in [k.value for k in ConsentKind]:
            raise ValueError(f"Invalid consent kind: {kind}")
        return kind

    def __repr__(self):
        return f"<ConsentRecord(participant_id={self.participant_id}, kind={self.kind})>"


class AuditLogEntry(Base):
    """Compliance log entry for one consent transition attempt."""

    __tablename__ = "audit_log_entries"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    participant_id = Column(String(128), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)
    success = Column(Boolean, nullable=False)
    details = Column(JSONColumn, nullable=True)
    error_message = Column(Text, nullable=True)
    timestamp = Column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (Index("idx_audit_participant_time", "participant_id", "timestamp"),)

    def __repr__(self):
        return f"<AuditLogEntry(action={self.action}, success={self.success})>"


class ConsultationSession(Base):
    """One active or completed consultation with the virtual patient."""

    __tablename__ = "consultation_sessions"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    participant_id = Column(String(128), ForeignKey("participants.id"), nullable=False, index=True)
    anonymous_id = Column(String(64), nullable=True)
    is_research_session = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=SessionStatus.ACTIVE.value)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=True)
    last_message_at = Column(UTCDateTime, nullable=True)
    message_count = Column(Integer, nullable=False, default=0)

    # Relationships
    participant = relationship("Participant", back_populates="sessions")
    messages = relationship(
        "SessionMessage",
        back_populates="session",
        order_by="SessionMessage.sequence",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index(
            "uq_one_active_session_per_participant",
            "participant_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    @validates("status")
    def validate_status(self, key, status):
        """Validate session status."""
        if status not in [s.value for s in SessionStatus]:
            raise ValueError(f"Invalid session status: {status}")
        return status

    def __repr__(self):
        return f"<ConsultationSession(id={self.id}, status={self.status})>"


class SessionMessage(Base):
    """One message of a consultation, ordered by insertion sequence."""

    __tablename__ = "session_messages"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(
        PostgresUUID(as_uuid=True), ForeignKey("consultation_sessions.id"), nullable=False
    )
    sequence = Column(Integer, nullable=False)
    message_type = Column(String(20), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)

    # Relationships
    session = relationship("ConsultationSession", back_populates="messages")

    __table_args__ = (UniqueConstraint("session_id", "sequence", name="uq_session_message_sequence"),)

    @validates("message_type")
    def validate_message_type(self, key, message_type):
        """Validate message type."""
        if message_type not in [m.value for m in MessageType]:
            raise ValueError(f"Invalid message type: {message_type}")
        return message_type


class Transcript(Base):
    """
    Immutable snapshot of a completed consultation plus derived metrics.

    ``participant_id`` is a plain column rather than a foreign key so that
    anonymization can overwrite it with the withdrawal sentinel.
    """

    __tablename__ = "transcripts"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    session_id = Column(PostgresUUID(as_uuid=True), nullable=False, unique=True)
    participant_id = Column(String(128), nullable=False, index=True)
    anonymous_id = Column(String(64), nullable=True, index=True)
    is_research_session = Column(Boolean, nullable=False)
    start_time = Column(UTCDateTime, nullable=False)
    end_time = Column(UTCDateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False, default=0)
    message_count = Column(Integer, nullable=False, default=0)
    messages = Column(JSONColumn, nullable=False)

    # Derived token metrics; totals are null when metering failed
    total_tokens = Column(Integer, nullable=True)
    total_cost = Column(Float, nullable=True)
    model = Column(String(100), nullable=False)
    metrics_error = Column(Text, nullable=True)

    withdrawn_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)

    def __repr__(self):
        return f"<Transcript(id={self.id}, anonymous_id={self.anonymous_id})>"


class ResearchProfile(Base):
    """Demographic and technology affinity answers owned by an anonymous identifier."""

    __tablename__ = "research_profiles"

    id = Column(PostgresUUID(as_uuid=True), primary_key=True, default=uuid4)
    participant_id = Column(String(128), nullable=False, index=True)
    anonymous_id = Column(String(64), nullable=False, index=True)
    demographics = Column(JSONColumn, nullable=False)
    ati_responses = Column(JSONColumn, nullable=False)
    ati_score = Column(Float, nullable=False)
    created_at = Column(UTCDateTime, nullable=False, default=utc_now)
    withdrawn_at = Column(UTCDateTime, nullable=True)
    withdrawal_reason = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ResearchProfile(id={self.id}, anonymous_id={self.anonymous_id})>"
