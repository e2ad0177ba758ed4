"""
Repository classes for data access layer.
Implements the repository pattern for the research entities; driver errors are
translated into the application's exception hierarchy at this boundary.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from aivp.exceptions import ConcurrentModificationError, StoreUnavailableError

from .database_factory import is_store_outage
from .models import (
    AnonymousIdentifier,
    AuditLogEntry,
    ConsentRecord,
    ConsultationSession,
    Participant,
    ResearchProfile,
    SessionMessage,
    Transcript,
)
from .schemas import ConsentKind, ParticipantRole, SessionStatus

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(operation: str, entity_type: str, identifier: Any = None):
    """Translate driver failures raised inside the block."""
    try:
        yield
    except StaleDataError as e:
        logger.warning(f"Stale write during {operation} on {entity_type} {identifier}")
        raise ConcurrentModificationError(entity_type, str(identifier), cause=e) from e
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        if is_store_outage(e):
            logger.error(f"Store unavailable during {operation}: {e}")
            raise StoreUnavailableError(operation, e.__class__.__name__, cause=e) from e
        logger.error(f"Error during {operation} on {entity_type}: {e}")
        raise


class BaseRepository:
    """Base repository with common read operations."""

    def __init__(self, session: Session, model_class):
        self.session = session
        self.model_class = model_class

    def get_by_id(self, id: Any) -> Any | None:
        """Get entity by primary key."""
        with store_errors("get_by_id", self.model_class.__name__, id):
            return self.session.get(self.model_class, id)

    def get_all(self, limit: int | None = None, offset: int | None = None) -> list[Any]:
        """Get all entities with optional pagination."""
        with store_errors("get_all", self.model_class.__name__):
            query = self.session.query(self.model_class)
            if offset:
                query = query.offset(offset)
            if limit:
                query = query.limit(limit)
            return query.all()

    def count(self) -> int:
        """Count total entities."""
        with store_errors("count", self.model_class.__name__):
            return self.session.query(self.model_class).count()

    def flush(self, operation: str, identifier: Any = None) -> None:
        with store_errors(operation, self.model_class.__name__, identifier):
            self.session.flush()


class ParticipantRepository(BaseRepository):
    """Repository for Participant entities with optimistic version checks."""

    def __init__(self, session: Session):
        super().__init__(session, Participant)

    def create(self, participant_id: str, created_at: datetime | None = None) -> Participant:
        """Create a new pilot participant."""
        participant = Participant(
            id=participant_id,
            role=ParticipantRole.PILOT.value,
            profile_complete=False,
        )
        if created_at is not None:
            participant.created_at = created_at
            participant.updated_at = created_at
        self.session.add(participant)
        self.flush("create_participant", participant_id)
        return participant

    def save(self, participant: Participant, expected_version: int | None = None) -> Participant:
        """
        Flush pending changes to a participant.

        Args:
            participant: Loaded participant with modifications applied
            expected_version: Version the caller read; a mismatch is a concurrent write

        Raises:
            ConcurrentModificationError: If another writer bumped the version first
        """
        if expected_version is not None and participant.version != expected_version:
            raise ConcurrentModificationError("Participant", participant.id)
        self.flush("save_participant", participant.id)
        return participant

    def touch(self, participant: Participant, at: datetime) -> Participant:
        """Bump the version without changing lifecycle fields."""
        participant.updated_at = at
        return self.save(participant)

    def count_by_role(self) -> dict[str, int]:
        """Count participants per role."""
        with store_errors("count_by_role", "Participant"):
            rows = (
                self.session.query(Participant.role, func.count(Participant.id))
                .group_by(Participant.role)
                .all()
            )
        counts = {role.value: 0 for role in ParticipantRole}
        counts.update({role: count for role, count in rows})
        return counts

    def count_ever_consented(self) -> int:
        """Count participants with at least one consent or reconsent record."""
        with store_errors("count_ever_consented", "Participant"):
            return (
                self.session.query(func.count(func.distinct(ConsentRecord.participant_id)))
                .filter(
                    ConsentRecord.kind.in_(
                        [ConsentKind.INITIAL_CONSENT.value, ConsentKind.RECONSENT.value]
                    )
                )
                .scalar()
                or 0
            )


class AnonymousIdentifierRepository(BaseRepository):
    """Registry of every anonymous identifier ever issued."""

    def __init__(self, session: Session):
        super().__init__(session, AnonymousIdentifier)

    def exists(self, anonymous_id: str) -> bool:
        """Check whether an identifier was ever issued."""
        return self.get_by_id(anonymous_id) is not None

    def register(self, anonymous_id: str, issued_at: datetime) -> AnonymousIdentifier:
        """
        Register a freshly minted identifier.

        Raises:
            ConcurrentModificationError: If another writer registered the same identifier first
        """
        record = AnonymousIdentifier(anonymous_id=anonymous_id, issued_at=issued_at, is_active=True)
        self.session.add(record)
        try:
            self.flush("register_anonymous_id", anonymous_id)
        except IntegrityError as e:
            logger.warning("Anonymous identifier registered concurrently")
            raise ConcurrentModificationError("AnonymousIdentifier", anonymous_id, cause=e) from e
        return record

    def retire(self, anonymous_id: str, retired_at: datetime) -> bool:
        """Mark an identifier as retired. Returns False if it was already retired."""
        record = self.get_by_id(anonymous_id)
        if record is None or not record.is_active:
            return False
        record.is_active = False
        record.retired_at = retired_at
        self.flush("retire_anonymous_id", anonymous_id)
        return True


class ConsentRecordRepository(BaseRepository):
    """Append-only repository for ConsentRecord entities."""

    def __init__(self, session: Session):
        super().__init__(session, ConsentRecord)

    def append(
        self,
        participant_id: str,
        kind: ConsentKind,
        timestamp: datetime,
        anonymous_id: str | None = None,
        reason: str | None = None,
        consent_details: dict[str, Any] | None = None,
    ) -> ConsentRecord:
        """Append a consent record."""
        record = ConsentRecord(
            participant_id=participant_id,
            kind=kind.value,
            anonymous_id=anonymous_id,
            reason=reason,
            consent_details=consent_details,
            timestamp=timestamp,
        )
        self.session.add(record)
        self.flush("append_consent_record", participant_id)
        return record

    def get_by_participant(self, participant_id: str) -> list[ConsentRecord]:
        """Get consent history for a participant, oldest first."""
        with store_errors("get_consent_history", "ConsentRecord", participant_id):
            return (
                self.session.query(ConsentRecord)
                .filter(ConsentRecord.participant_id == participant_id)
                .order_by(ConsentRecord.timestamp.asc())
                .all()
            )

    def get_by_kind(self, participant_id: str, kind: ConsentKind) -> list[ConsentRecord]:
        """Get consent records of one kind for a participant."""
        with store_errors("get_consent_by_kind", "ConsentRecord", participant_id):
            return (
                self.session.query(ConsentRecord)
                .filter(
                    ConsentRecord.participant_id == participant_id,
                    ConsentRecord.kind == kind.value,
                )
                .order_by(ConsentRecord.timestamp.asc())
                .all()
            )


class AuditLogRepository(BaseRepository):
    """Append-only repository for AuditLogEntry entities."""

    def __init__(self, session: Session):
        super().__init__(session, AuditLogEntry)

    def append(
        self,
        participant_id: str,
        action: str,
        success: bool,
        timestamp: datetime,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> AuditLogEntry:
        """Append an audit entry."""
        entry = AuditLogEntry(
            participant_id=participant_id,
            action=action,
            success=success,
            details=details,
            error_message=error_message,
            timestamp=timestamp,
        )
        self.session.add(entry)
        self.flush("append_audit_entry", participant_id)
        return entry

    def get_by_participant(self, participant_id: str) -> list[AuditLogEntry]:
        """Get audit entries for a participant in chronological order."""
        with store_errors("get_audit_entries", "AuditLogEntry", participant_id):
            return (
                self.session.query(AuditLogEntry)
                .filter(AuditLogEntry.participant_id == participant_id)
                .order_by(AuditLogEntry.timestamp.asc())
                .all()
            )

    def get_failures(self, limit: int = 100) -> list[AuditLogEntry]:
        """Get most recent failed transition attempts."""
        with store_errors("get_audit_failures", "AuditLogEntry"):
            return (
                self.session.query(AuditLogEntry)
                .filter(AuditLogEntry.success.is_(False))
                .order_by(AuditLogEntry.timestamp.desc())
                .limit(limit)
                .all()
            )


class SessionRepository(BaseRepository):
    """Repository for ConsultationSession and SessionMessage entities."""

    def __init__(self, session: Session):
        super().__init__(session, ConsultationSession)

    def create(
        self,
        participant_id: str,
        anonymous_id: str | None,
        is_research_session: bool,
        start_time: datetime,
    ) -> ConsultationSession:
        """Create an active session; a second active session fails the partial unique index."""
        consultation = ConsultationSession(
            participant_id=participant_id,
            anonymous_id=anonymous_id,
            is_research_session=is_research_session,
            status=SessionStatus.ACTIVE.value,
            start_time=start_time,
            message_count=0,
        )
        self.session.add(consultation)
        self.flush("create_session", participant_id)
        return consultation

    def get_active_for_participant(self, participant_id: str) -> ConsultationSession | None:
        """Get the participant's active session, if any."""
        with store_errors("get_active_session", "ConsultationSession", participant_id):
            return (
                self.session.query(ConsultationSession)
                .filter(
                    ConsultationSession.participant_id == participant_id,
                    ConsultationSession.status == SessionStatus.ACTIVE.value,
                )
                .first()
            )

    def add_message(
        self,
        consultation: ConsultationSession,
        message_type: str,
        content: str,
        timestamp: datetime,
    ) -> SessionMessage:
        """Append the next message in sequence."""
        sequence = consultation.message_count
        message = SessionMessage(
            session_id=consultation.id,
            sequence=sequence,
            message_type=message_type,
            content=content,
            timestamp=timestamp,
        )
        self.session.add(message)
        consultation.message_count = sequence + 1
        consultation.last_message_at = timestamp
        self.flush("append_message", consultation.id)
        return message

    def get_messages(self, session_id: UUID) -> list[SessionMessage]:
        """Get messages of a session in insertion order."""
        with store_errors("get_messages", "SessionMessage", session_id):
            return (
                self.session.query(SessionMessage)
                .filter(SessionMessage.session_id == session_id)
                .order_by(SessionMessage.sequence.asc())
                .all()
            )

    def complete(self, consultation: ConsultationSession, end_time: datetime) -> ConsultationSession:
        """Mark a session completed."""
        consultation.status = SessionStatus.COMPLETED.value
        consultation.end_time = end_time
        self.flush("complete_session", consultation.id)
        return consultation


class TranscriptRepository(BaseRepository):
    """Repository for Transcript entities."""

    def __init__(self, session: Session):
        super().__init__(session, Transcript)

    def create(self, **fields) -> Transcript:
        """Persist a finalized transcript."""
        transcript = Transcript(**fields)
        self.session.add(transcript)
        self.flush("create_transcript", fields.get("session_id"))
        return transcript

    def find_by_anonymous_id(self, anonymous_id: str) -> list[Transcript]:
        """Find every transcript owned by an anonymous identifier."""
        with store_errors("find_transcripts", "Transcript", anonymous_id):
            return (
                self.session.query(Transcript)
                .filter(Transcript.anonymous_id == anonymous_id)
                .order_by(Transcript.start_time.asc())
                .all()
            )

    def get_research_transcripts(self) -> list[Transcript]:
        """Get research-owned transcripts, oldest first."""
        with store_errors("get_research_transcripts", "Transcript"):
            return (
                self.session.query(Transcript)
                .filter(Transcript.is_research_session.is_(True))
                .order_by(Transcript.start_time.asc())
                .all()
            )


class ResearchProfileRepository(BaseRepository):
    """Repository for ResearchProfile entities."""

    def __init__(self, session: Session):
        super().__init__(session, ResearchProfile)

    def create(
        self,
        participant_id: str,
        anonymous_id: str,
        demographics: dict[str, Any],
        ati_responses: dict[str, int],
        ati_score: float,
        created_at: datetime,
    ) -> ResearchProfile:
        """Create a research profile record."""
        profile = ResearchProfile(
            participant_id=participant_id,
            anonymous_id=anonymous_id,
            demographics=demographics,
            ati_responses=ati_responses,
            ati_score=ati_score,
            created_at=created_at,
        )
        self.session.add(profile)
        self.flush("create_research_profile", anonymous_id)
        return profile

    def find_by_anonymous_id(self, anonymous_id: str) -> list[ResearchProfile]:
        """Find every research profile owned by an anonymous identifier."""
        with store_errors("find_research_profiles", "ResearchProfile", anonymous_id):
            return (
                self.session.query(ResearchProfile)
                .filter(ResearchProfile.anonymous_id == anonymous_id)
                .all()
            )
