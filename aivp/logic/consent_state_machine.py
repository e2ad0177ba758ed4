"""
Consent lifecycle logic for the AIVP research core.
Owns a participant's role and anonymous identifier and is the only writer of both.
"""

import logging
import time
from typing import Any, Callable

from sqlalchemy.orm import Session

from aivp.data.database_factory import database_transaction
from aivp.data.models import Participant
from aivp.data.repositories import (
    AnonymousIdentifierRepository,
    ConsentRecordRepository,
    ParticipantRepository,
    ResearchProfileRepository,
)
from aivp.data.schemas import (
    AuditAction,
    ConsentDetails,
    ConsentKind,
    ConsentRecordResponse,
    ConsentResult,
    ParticipantRole,
    ParticipantState,
    ParticipantStatistics,
    ResearchProfileCreate,
    WithdrawalResult,
)
from aivp.exceptions import (
    AnonymousIdExhaustedError,
    ConsentDetailsIncompleteError,
    InvalidTransitionError,
    ParticipantNotFoundError,
    ProfileAlreadyCompleteError,
    StoreUnavailableError,
)
from aivp.logic.anonymization import AnonymizationEngine
from aivp.logic.audit import AuditLog, SessionFactory
from aivp.utils.clock import Clock, IdGenerator
from aivp.utils.locks import KeyedLock, participant_locks
from aivp.utils.retry import RetryConfig
from config.config import config

logger = logging.getLogger(__name__)


def participant_state(participant: Participant) -> ParticipantState:
    return ParticipantState(
        id=participant.id,
        role=ParticipantRole(participant.role),
        anonymous_id=participant.anonymous_id,
        consent_withdrawn_at=participant.consent_withdrawn_at,
        profile_complete=participant.profile_complete,
        version=participant.version,
    )


class ConsentStateMachine:
    """
    Pilot / ResearchConsented / Withdrawn state machine.

    Every public transition runs under the participant's in-process lock and
    writes the participant through an optimistic version check, so concurrent
    writers in other processes fail with ConcurrentModificationError instead of
    minting a second identifier. Every attempt leaves an audit entry.
    """

    def __init__(
        self,
        session_factory: SessionFactory = database_transaction,
        clock: Clock | None = None,
        id_generator: IdGenerator | None = None,
        audit_log: AuditLog | None = None,
        anonymization_engine: AnonymizationEngine | None = None,
        locks: KeyedLock | None = None,
        withdraw_retry: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.clock = clock or Clock()
        self.id_generator = id_generator or IdGenerator(self.clock)
        self.audit_log = audit_log or AuditLog(session_factory, self.clock)
        self.anonymization_engine = anonymization_engine or AnonymizationEngine()
        self.locks = locks or participant_locks
        self.withdraw_retry = withdraw_retry or RetryConfig(
            max_attempts=config.research.withdraw_max_attempts,
            initial_delay=config.research.withdraw_initial_backoff,
            max_delay=config.research.withdraw_max_backoff,
        )
        self.sleep = sleep

    # Reads

    def register_participant(self, participant_id: str) -> ParticipantState:
        """Create a pilot participant; returns the existing state if already registered."""
        with self.locks.hold(participant_id):
            with self.session_factory() as session:
                repo = ParticipantRepository(session)
                participant = repo.get_by_id(participant_id)
                if participant is None:
                    participant = repo.create(participant_id, created_at=self.clock.now())
                    logger.info(f"Registered pilot participant {participant_id}")
                return participant_state(participant)

    def get_state(self, participant_id: str) -> ParticipantState:
        """Current role and identifier of a participant."""
        with self.session_factory() as session:
            return self.read_state(session, participant_id)

    def read_state(self, session: Session, participant_id: str) -> ParticipantState:
        """Current role and identifier, read within an open transaction."""
        return participant_state(self._load(session, participant_id))

    def can_reconsent(self, participant_id: str) -> bool:
        """A participant may rejoin the study only after withdrawing."""
        return self.get_state(participant_id).role == ParticipantRole.WITHDRAWN

    def consent_history(self, participant_id: str) -> list[ConsentRecordResponse]:
        """Consent records of a participant, oldest first."""
        with self.session_factory() as session:
            self._load(session, participant_id)
            records = ConsentRecordRepository(session).get_by_participant(participant_id)
            return [ConsentRecordResponse.model_validate(record) for record in records]

    def statistics(self) -> ParticipantStatistics:
        """Participant counts per role."""
        with self.session_factory() as session:
            repo = ParticipantRepository(session)
            counts = repo.count_by_role()
            return ParticipantStatistics(
                total=sum(counts.values()),
                pilot_participants=counts[ParticipantRole.PILOT.value],
                research_participants=counts[ParticipantRole.RESEARCH_CONSENTED.value],
                withdrawn_participants=counts[ParticipantRole.WITHDRAWN.value],
                consented_participants=repo.count_ever_consented(),
            )

    # Transitions

    def consent(self, participant_id: str, consent_details: ConsentDetails | dict[str, Any]) -> ConsentResult:
        """
        Enrol a pilot or withdrawn participant in the research study.

        A fresh identifier is minted on every call. A withdrawn participant's
        previous identifier is neither reused nor referenced.

        Args:
            participant_id: Participant giving consent
            consent_details: Acknowledged consent items

        Returns:
            ConsentResult: New state and the issued identifier

        Raises:
            InvalidTransitionError: If the participant is already consented
            ConsentDetailsIncompleteError: If a required item is not acknowledged
            ConcurrentModificationError: If another writer changed the participant first
            StoreUnavailableError: On transient store failure; nothing was written
        """
        if isinstance(consent_details, dict):
            consent_details = ConsentDetails(**consent_details)

        with self.locks.hold(participant_id):
            try:
                with self.session_factory() as session:
                    participant = self._load(session, participant_id)
                    current_role = ParticipantRole(participant.role)
                    if current_role == ParticipantRole.RESEARCH_CONSENTED:
                        raise InvalidTransitionError("consent", current_role.value)

                    missing = consent_details.missing_items(config.research.required_consent_items)
                    if missing:
                        raise ConsentDetailsIncompleteError(missing)

                    expected_version = participant.version
                    now = self.clock.now()
                    kind = (
                        ConsentKind.RECONSENT
                        if participant.consent_withdrawn_at is not None
                        else ConsentKind.INITIAL_CONSENT
                    )
                    anonymous_id = self._mint_anonymous_id(AnonymousIdentifierRepository(session), now)

                    participant.role = ParticipantRole.RESEARCH_CONSENTED.value
                    participant.anonymous_id = anonymous_id
                    participant.consent_withdrawn_at = None
                    # A returning participant keeps their earlier profile answers
                    participant.profile_complete = kind == ConsentKind.RECONSENT
                    participant.updated_at = now
                    ParticipantRepository(session).save(participant, expected_version)

                    ConsentRecordRepository(session).append(
                        participant_id=participant_id,
                        kind=kind,
                        timestamp=now,
                        anonymous_id=anonymous_id,
                        consent_details=consent_details.model_dump(),
                    )
                    self.audit_log.record_success(
                        session,
                        participant_id,
                        AuditAction(kind.value),
                        details={"previous_role": current_role.value, "consent_items": consent_details.model_dump()},
                    )
                    state = participant_state(participant)
            except Exception as e:
                logger.warning(f"Consent failed for participant {participant_id}: {e}")
                self.audit_log.record_failure(participant_id, AuditAction.CONSENT_FAILED, e)
                raise

        logger.info(f"Participant {participant_id} recorded {kind.value}")
        return ConsentResult(participant=state, anonymous_id=anonymous_id, kind=kind)

    def decline(self, participant_id: str) -> ParticipantState:
        """
        Record that a pilot participant declined the research study.

        Role is unchanged. Only the first decline writes a consent record;
        repeated declines are audited but leave the state untouched.

        Raises:
            InvalidTransitionError: If the participant is not a pilot
        """
        with self.locks.hold(participant_id):
            try:
                with self.session_factory() as session:
                    participant = self._load(session, participant_id)
                    current_role = ParticipantRole(participant.role)
                    if current_role != ParticipantRole.PILOT:
                        raise InvalidTransitionError("decline", current_role.value)

                    already_declined = participant.consent_declined_at is not None
                    if not already_declined:
                        now = self.clock.now()
                        expected_version = participant.version
                        participant.consent_declined_at = now
                        participant.updated_at = now
                        ParticipantRepository(session).save(participant, expected_version)
                        ConsentRecordRepository(session).append(
                            participant_id=participant_id, kind=ConsentKind.DECLINE, timestamp=now
                        )
                    self.audit_log.record_success(
                        session,
                        participant_id,
                        AuditAction.DECLINE,
                        details={"already_declined": already_declined},
                    )
                    state = participant_state(participant)
            except Exception as e:
                logger.warning(f"Decline failed for participant {participant_id}: {e}")
                self.audit_log.record_failure(participant_id, AuditAction.DECLINE_FAILED, e)
                raise

        logger.info(f"Participant {participant_id} declined research participation")
        return state

    def withdraw(self, participant_id: str, reason: str | None = None) -> WithdrawalResult:
        """
        Withdraw a consented participant and anonymize their research data.

        Anonymization and the role change are written in one transaction. On a
        transient store failure the whole unit is retried with backoff. A retry
        that finds the participant already withdrawn from the identifier this
        call was retiring resumes from anonymization instead of failing. Each
        failed attempt leaves its own audit entry.

        Args:
            participant_id: Participant withdrawing
            reason: Optional free-text reason

        Returns:
            WithdrawalResult: New state, retired identifier and anonymization counts

        Raises:
            InvalidTransitionError: If the participant is not consented
            StoreUnavailableError: If every attempt hit a store outage
        """
        retiring_id: str | None = None
        last_error: StoreUnavailableError | None = None

        with self.locks.hold(participant_id):
            for attempt in range(1, self.withdraw_retry.max_attempts + 1):
                try:
                    with self.session_factory() as session:
                        participant = self._load(session, participant_id)
                        current_role = ParticipantRole(participant.role)

                        if current_role == ParticipantRole.RESEARCH_CONSENTED:
                            retiring_id = participant.anonymous_id
                            result = self._apply_withdrawal(session, participant, reason, attempt)
                        elif self._withdrawal_already_applied(session, participant, retiring_id):
                            result = self._resume_withdrawal(session, participant, retiring_id, reason, attempt)
                        else:
                            raise InvalidTransitionError("withdraw", current_role.value)

                    logger.info(
                        f"Participant {participant_id} withdrew from research (attempt {attempt}, "
                        f"{result.anonymization.total} records anonymized)"
                    )
                    return result

                except StoreUnavailableError as e:
                    last_error = e
                    if attempt >= self.withdraw_retry.max_attempts:
                        break
                    self.audit_log.record_failure(
                        participant_id,
                        AuditAction.WITHDRAWAL_FAILED,
                        e,
                        details={"reason": reason, "attempts": attempt, "will_retry": True},
                    )
                    delay = self.withdraw_retry.delay_for(attempt)
                    logger.warning(
                        f"Withdrawal attempt {attempt}/{self.withdraw_retry.max_attempts} for participant "
                        f"{participant_id} hit store outage, retrying in {delay:.2f}s"
                    )
                    self.sleep(delay)

                except Exception as e:
                    logger.warning(f"Withdrawal failed for participant {participant_id}: {e}")
                    self.audit_log.record_failure(
                        participant_id,
                        AuditAction.WITHDRAWAL_FAILED,
                        e,
                        details={"reason": reason, "attempts": attempt},
                    )
                    raise

            logger.error(
                f"Withdrawal for participant {participant_id} gave up after "
                f"{self.withdraw_retry.max_attempts} attempts"
            )
            self.audit_log.record_failure(
                participant_id,
                AuditAction.WITHDRAWAL_FAILED,
                last_error,
                details={
                    "reason": reason,
                    "attempts": self.withdraw_retry.max_attempts,
                    "will_retry": False,
                    **self._anonymization_status(retiring_id),
                },
            )
            raise last_error

    def complete_research_profile(self, participant_id: str, profile: ResearchProfileCreate) -> ParticipantState:
        """
        Store demographic and technology affinity answers for a consented participant.

        The record is owned by the current anonymous identifier and is
        anonymized together with transcripts on withdrawal.

        Raises:
            InvalidTransitionError: If the participant is not consented
            ProfileAlreadyCompleteError: If the profile was already submitted
        """
        with self.locks.hold(participant_id):
            with self.session_factory() as session:
                participant = self._load(session, participant_id)
                if participant.role != ParticipantRole.RESEARCH_CONSENTED.value:
                    raise InvalidTransitionError("submit research profile", participant.role)
                if participant.profile_complete:
                    raise ProfileAlreadyCompleteError(participant_id)

                now = self.clock.now()
                expected_version = participant.version
                ResearchProfileRepository(session).create(
                    participant_id=participant_id,
                    anonymous_id=participant.anonymous_id,
                    demographics={
                        "year_group": profile.year_group,
                        "age_group": profile.age_group,
                        "gender": profile.gender,
                        "ethnicity": profile.ethnicity,
                    },
                    ati_responses={str(item): value for item, value in sorted(profile.ati_responses.items())},
                    ati_score=profile.ati_score(),
                    created_at=now,
                )
                participant.profile_complete = True
                participant.updated_at = now
                ParticipantRepository(session).save(participant, expected_version)
                state = participant_state(participant)

        logger.info("Research profile stored")
        return state

    # Internals

    def _load(self, session: Session, participant_id: str) -> Participant:
        participant = ParticipantRepository(session).get_by_id(participant_id)
        if participant is None:
            raise ParticipantNotFoundError(participant_id)
        return participant

    def _mint_anonymous_id(self, id_repo: AnonymousIdentifierRepository, issued_at) -> str:
        """Generate an identifier never issued before and register it."""
        attempts = config.research.max_id_attempts
        for _ in range(attempts):
            candidate = self.id_generator.new_anonymous_id()
            if id_repo.exists(candidate):
                logger.warning("Anonymous identifier collision, regenerating")
                continue
            id_repo.register(candidate, issued_at)
            return candidate
        raise AnonymousIdExhaustedError(attempts)

    def _apply_withdrawal(
        self, session: Session, participant: Participant, reason: str | None, attempt: int
    ) -> WithdrawalResult:
        retiring_id = participant.anonymous_id
        expected_version = participant.version
        now = self.clock.now()

        anonymization = self.anonymization_engine.anonymize(session, retiring_id, now, reason)

        participant.role = ParticipantRole.WITHDRAWN.value
        participant.anonymous_id = None
        participant.consent_withdrawn_at = now
        participant.updated_at = now
        ParticipantRepository(session).save(participant, expected_version)

        AnonymousIdentifierRepository(session).retire(retiring_id, now)
        ConsentRecordRepository(session).append(
            participant_id=participant.id,
            kind=ConsentKind.WITHDRAWAL,
            timestamp=now,
            anonymous_id=retiring_id,
            reason=reason,
        )
        self.audit_log.record_success(
            session,
            participant.id,
            AuditAction.WITHDRAWAL,
            details={
                "reason": reason,
                "attempts": attempt,
                "transcripts_anonymized": anonymization.transcripts_anonymized,
                "profiles_anonymized": anonymization.profiles_anonymized,
            },
        )
        return WithdrawalResult(
            participant=participant_state(participant),
            retired_anonymous_id=retiring_id,
            anonymization=anonymization,
            attempts=attempt,
        )

    def _withdrawal_already_applied(
        self, session: Session, participant: Participant, retiring_id: str | None
    ) -> bool:
        """True when an earlier attempt of this call committed before its outage surfaced."""
        if retiring_id is None or participant.role != ParticipantRole.WITHDRAWN.value:
            return False
        withdrawals = ConsentRecordRepository(session).get_by_kind(participant.id, ConsentKind.WITHDRAWAL)
        return bool(withdrawals) and withdrawals[-1].anonymous_id == retiring_id

    def _resume_withdrawal(
        self,
        session: Session,
        participant: Participant,
        retiring_id: str,
        reason: str | None,
        attempt: int,
    ) -> WithdrawalResult:
        anonymization = self.anonymization_engine.anonymize(
            session, retiring_id, participant.consent_withdrawn_at, reason
        )
        logger.info(f"Withdrawal for participant {participant.id} already committed, resumed")
        return WithdrawalResult(
            participant=participant_state(participant),
            retired_anonymous_id=retiring_id,
            anonymization=anonymization,
            attempts=attempt,
        )

    def _anonymization_status(self, anonymous_id: str | None) -> dict[str, Any]:
        """
        Re-check for the failure audit entry.

        ``anonymization_complete`` is None when the store could not be read or
        the identifier owns no records.
        """
        status = {"records_found": None, "anonymization_complete": None}
        if anonymous_id is None:
            return status
        try:
            with self.session_factory() as session:
                found, pending = self.anonymization_engine.count_records(session, anonymous_id)
        except StoreUnavailableError:
            return status
        status["records_found"] = found
        if found:
            status["anonymization_complete"] = pending == 0
        return status
