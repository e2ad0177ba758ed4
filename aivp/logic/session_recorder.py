"""
Session recording logic for the AIVP research core.
Owns the start -> append -> end lifecycle of a consultation and produces transcripts.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from aivp.data.database_factory import database_transaction
from aivp.data.models import ConsultationSession, SessionMessage, Transcript
from aivp.data.repositories import (
    AnonymousIdentifierRepository,
    ParticipantRepository,
    SessionRepository,
    TranscriptRepository,
)
from aivp.data.schemas import (
    MessageSchema,
    MessageType,
    ParticipantRole,
    SessionSnapshot,
    SessionStatus,
    TokenMetrics,
    TranscriptResponse,
)
from aivp.exceptions import (
    RecordNotFoundError,
    SessionAlreadyActiveError,
    SessionNotActiveError,
    SessionNotFoundError,
)
from aivp.logic.audit import SessionFactory
from aivp.logic.consent_state_machine import ConsentStateMachine
from aivp.logic.metrics import MetricsAggregator, session_duration_seconds
from aivp.utils.clock import Clock
from aivp.utils.locks import KeyedLock, participant_locks, session_locks
from config.config import config

logger = logging.getLogger(__name__)


def message_schema(message: SessionMessage) -> MessageSchema:
    return MessageSchema(
        type=MessageType(message.message_type),
        content=message.content,
        timestamp=message.timestamp,
    )


def transcript_response(transcript: Transcript) -> TranscriptResponse:
    return TranscriptResponse(
        id=transcript.id,
        session_id=transcript.session_id,
        participant_id=transcript.participant_id,
        anonymous_id=transcript.anonymous_id,
        is_research_session=transcript.is_research_session,
        start_time=transcript.start_time,
        end_time=transcript.end_time,
        duration_seconds=transcript.duration_seconds,
        message_count=transcript.message_count,
        messages=[
            MessageSchema(
                type=MessageType(item["type"]),
                content=item["content"],
                timestamp=datetime.fromisoformat(item["timestamp"]),
            )
            for item in transcript.messages
        ],
        token_metrics=TokenMetrics(
            total_tokens=transcript.total_tokens,
            total_cost=transcript.total_cost,
            model=transcript.model,
            error=transcript.metrics_error,
        ),
        withdrawn_at=transcript.withdrawn_at,
    )


class SessionRecorder:
    """
    Records consultations and finalizes them into transcripts.

    ``start_session`` runs under the participant lock shared with the consent
    state machine; ``append_message`` and ``end_session`` run under a per-session
    lock so appends to one session apply in submission order while different
    sessions proceed independently.
    """

    def __init__(
        self,
        session_factory: SessionFactory = database_transaction,
        consent_state_machine: ConsentStateMachine | None = None,
        metrics: MetricsAggregator | None = None,
        clock: Clock | None = None,
        model: str | None = None,
        participant_lock: KeyedLock | None = None,
        session_lock: KeyedLock | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or Clock()
        self.consent_state_machine = consent_state_machine or ConsentStateMachine(
            session_factory, clock=self.clock
        )
        self.metrics = metrics or MetricsAggregator()
        self.model = model or config.completion.model
        self.participant_lock = participant_lock or participant_locks
        self.session_lock = session_lock or session_locks
        self.step = timedelta(milliseconds=config.research.monotonic_step_ms)

    def start_session(self, participant_id: str) -> UUID:
        """
        Start a consultation for a participant.

        The participant's role and anonymous identifier are snapshotted; the
        snapshot, not the live role, decides research ownership for the
        lifetime of the session.

        Returns:
            UUID: New session id

        Raises:
            SessionAlreadyActiveError: If the participant already has an active session
            ParticipantNotFoundError: If the participant is unknown
        """
        with self.participant_lock.hold(participant_id):
            with self.session_factory() as session:
                session_repo = SessionRepository(session)
                active = session_repo.get_active_for_participant(participant_id)
                if active is not None:
                    raise SessionAlreadyActiveError(participant_id, str(active.id))

                state = self.consent_state_machine.read_state(session, participant_id)
                is_research = state.role == ParticipantRole.RESEARCH_CONSENTED
                now = self.clock.now()

                # Version bump serializes with consent transitions in other processes
                participant_repo = ParticipantRepository(session)
                participant_repo.touch(participant_repo.get_by_id(participant_id), now)

                try:
                    consultation = session_repo.create(
                        participant_id=participant_id,
                        anonymous_id=state.anonymous_id if is_research else None,
                        is_research_session=is_research,
                        start_time=now,
                    )
                except IntegrityError as e:
                    raise SessionAlreadyActiveError(participant_id) from e
                session_id = consultation.id

        logger.info(f"Started {'research' if is_research else 'pilot'} session {session_id}")
        return session_id

    def append_message(self, session_id: UUID, message_type: MessageType, content: str) -> MessageSchema:
        """
        Append a message to an active session.

        Timestamps never go backwards: if the clock reads earlier than the
        previous message, the new message is stamped one step after it.

        Raises:
            SessionNotActiveError: If the session is completed
            SessionNotFoundError: If the session is unknown
        """
        message_type = MessageType(message_type)
        with self.session_lock.hold(session_id):
            with self.session_factory() as session:
                repo = SessionRepository(session)
                consultation = self._load_active(repo, session_id)

                timestamp = self._monotonic_now(consultation)
                message = repo.add_message(consultation, message_type.value, content, timestamp)
                result = message_schema(message)

        logger.debug(f"Appended {message_type.value} message to session {session_id}")
        return result

    def end_session(self, session_id: UUID) -> UUID:
        """
        Complete a session and persist its transcript.

        Duration is clamped to zero for clock anomalies. Token metering failure
        does not prevent finalization; the transcript records null totals and
        the error.

        Runs under the participant lock, then the session lock, so a concurrent
        withdrawal either sees the finished transcript or has already retired
        the identifier the transcript is checked against. Research sessions
        also bump the participant version, which fails a writer in another
        process that withdrew in between with ConcurrentModificationError.

        Returns:
            UUID: Transcript id

        Raises:
            SessionNotActiveError: If the session is already completed
            SessionNotFoundError: If the session is unknown
            ConcurrentModificationError: If the participant changed while finalizing
        """
        participant_id = self._participant_of(session_id)
        with self.participant_lock.hold(participant_id):
            with self.session_lock.hold(session_id):
                with self.session_factory() as session:
                    session_repo = SessionRepository(session)
                    consultation = self._load_active(session_repo, session_id)
                    participant_repo = ParticipantRepository(session)
                    participant = participant_repo.get_by_id(participant_id)

                    end_time = self._monotonic_now(consultation)
                    if end_time <= consultation.start_time:
                        end_time = consultation.start_time + self.step
                    messages = [message_schema(m) for m in session_repo.get_messages(consultation.id)]
                    token_metrics = self.metrics.transcript_metrics(messages, self.model)

                    session_repo.complete(consultation, end_time)
                    if consultation.is_research_session:
                        participant_repo.touch(participant, end_time)
                    owner, withdrawn_at = self._transcript_owner(session, consultation)
                    transcript = TranscriptRepository(session).create(
                        session_id=consultation.id,
                        participant_id=owner,
                        anonymous_id=consultation.anonymous_id,
                        is_research_session=consultation.is_research_session,
                        start_time=consultation.start_time,
                        end_time=end_time,
                        duration_seconds=session_duration_seconds(consultation.start_time, end_time),
                        message_count=len(messages),
                        messages=[
                            {
                                "type": m.type.value,
                                "content": m.content,
                                "timestamp": m.timestamp.isoformat(),
                            }
                            for m in messages
                        ],
                        total_tokens=token_metrics.total_tokens,
                        total_cost=token_metrics.total_cost,
                        model=token_metrics.model,
                        metrics_error=token_metrics.error,
                        withdrawn_at=withdrawn_at,
                        created_at=end_time,
                    )
                    transcript_id = transcript.id

        logger.info(f"Ended session {session_id} with {len(messages)} messages")
        return transcript_id

    def get_session(self, session_id: UUID) -> SessionSnapshot:
        """Read-only view of a session and its messages."""
        with self.session_factory() as session:
            repo = SessionRepository(session)
            consultation = repo.get_by_id(session_id)
            if consultation is None:
                raise SessionNotFoundError(str(session_id))
            return SessionSnapshot(
                id=consultation.id,
                participant_id=consultation.participant_id,
                anonymous_id=consultation.anonymous_id,
                is_research_session=consultation.is_research_session,
                status=SessionStatus(consultation.status),
                start_time=consultation.start_time,
                end_time=consultation.end_time,
                messages=[message_schema(m) for m in repo.get_messages(consultation.id)],
            )

    def get_transcript(self, transcript_id: UUID) -> TranscriptResponse:
        with self.session_factory() as session:
            transcript = TranscriptRepository(session).get_by_id(transcript_id)
            if transcript is None:
                raise RecordNotFoundError("Transcript", str(transcript_id))
            return transcript_response(transcript)

    def transcripts_for_anonymous_id(self, anonymous_id: str) -> list[TranscriptResponse]:
        with self.session_factory() as session:
            return [
                transcript_response(t)
                for t in TranscriptRepository(session).find_by_anonymous_id(anonymous_id)
            ]

    def all_transcripts(self) -> list[TranscriptResponse]:
        with self.session_factory() as session:
            return [transcript_response(t) for t in TranscriptRepository(session).get_all()]

    def research_transcripts(self) -> list[TranscriptResponse]:
        with self.session_factory() as session:
            return [transcript_response(t) for t in TranscriptRepository(session).get_research_transcripts()]

    # Internals

    def _participant_of(self, session_id: UUID) -> str:
        with self.session_factory() as session:
            consultation = SessionRepository(session).get_by_id(session_id)
            if consultation is None:
                raise SessionNotFoundError(str(session_id))
            return consultation.participant_id

    def _load_active(self, repo: SessionRepository, session_id: UUID) -> ConsultationSession:
        consultation = repo.get_by_id(session_id)
        if consultation is None:
            raise SessionNotFoundError(str(session_id))
        if consultation.status != SessionStatus.ACTIVE.value:
            raise SessionNotActiveError(str(session_id))
        return consultation

    def _monotonic_now(self, consultation: ConsultationSession) -> datetime:
        floor = consultation.last_message_at or consultation.start_time
        now = self.clock.now()
        if now < floor:
            logger.warning(f"Clock went backwards in session {consultation.id}, clamping")
            return floor + self.step
        return now

    def _transcript_owner(self, session, consultation: ConsultationSession) -> tuple[str, datetime | None]:
        """
        Owner reference for a new transcript.

        A research session whose identifier was retired while it was still
        running is born anonymized, so withdrawal leaves no linked transcript
        behind.
        """
        if not consultation.is_research_session or consultation.anonymous_id is None:
            return consultation.participant_id, None
        registered = AnonymousIdentifierRepository(session).get_by_id(consultation.anonymous_id)
        if registered is not None and not registered.is_active:
            return config.research.withdrawal_sentinel, registered.retired_at
        return consultation.participant_id, None
