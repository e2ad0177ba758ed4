"""
Research participation service.
Wires the consent state machine, session recorder, metrics and completion
provider together behind one entry point for the surrounding application.
"""

import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable
from uuid import UUID

from aivp.data.database_factory import database_transaction
from aivp.data.schemas import (
    AnonymousParticipantSummary,
    ConsentDetails,
    ConsentRecordResponse,
    ConsentResult,
    MessageSchema,
    MessageType,
    ParticipantState,
    ParticipantStatistics,
    ResearchProfileCreate,
    SessionStatus,
    TranscriptResponse,
    UsageTotals,
    WithdrawalResult,
)
from aivp.exceptions import CompletionProviderError, SessionNotActiveError
from aivp.logic.audit import AuditLog, SessionFactory
from aivp.logic.consent_state_machine import ConsentStateMachine
from aivp.logic.conversation import chat_messages, strip_simulated_prefix
from aivp.logic.metrics import MetricsAggregator, PeriodCosts
from aivp.logic.session_recorder import SessionRecorder
from aivp.services.completion_provider import (
    CompletionProvider,
    CompletionRequest,
    OpenAICompatibleProvider,
)
from aivp.services.tokenizer import PricingTable, Tokenizer
from aivp.utils.clock import Clock, IdGenerator
from aivp.utils.logging import get_logger, log_extra
from aivp.utils.retry import RetryConfig, call_with_retry
from config.config import DIAGNOSIS_MODE_PROMPT, config

logger = get_logger(__name__)


@dataclass
class ResearchMetricsReport:
    """Aggregate usage over a set of transcripts."""

    transcript_count: int
    research_transcript_count: int
    pilot_transcript_count: int
    usage: UsageTotals
    average_duration_seconds: float
    average_duration_by_day: dict[date, float] = field(default_factory=dict)
    anonymous_summaries: list[AnonymousParticipantSummary] = field(default_factory=list)
    period_costs: PeriodCosts = field(default_factory=PeriodCosts)


class ResearchService:
    """
    Service layer for research participation and consultations.

    Consent and decline are retried on retryable errors (store outage,
    concurrent modification); each retry re-reads the participant, so a
    transition that meanwhile became illegal fails with InvalidTransitionError.
    Withdrawal retries internally.
    """

    def __init__(
        self,
        session_factory: SessionFactory = database_transaction,
        clock: Clock | None = None,
        id_generator: IdGenerator | None = None,
        tokenizer: Tokenizer | None = None,
        pricing: PricingTable | None = None,
        completion_provider: CompletionProvider | None = None,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.clock = clock or Clock()
        self.retry_config = retry_config or RetryConfig(
            max_attempts=config.research.withdraw_max_attempts,
            initial_delay=config.research.withdraw_initial_backoff,
            max_delay=config.research.withdraw_max_backoff,
        )
        self.sleep = sleep

        self.audit_log = AuditLog(session_factory, self.clock)
        self.consent = ConsentStateMachine(
            session_factory,
            clock=self.clock,
            id_generator=id_generator or IdGenerator(self.clock),
            audit_log=self.audit_log,
            withdraw_retry=self.retry_config,
            sleep=sleep,
        )
        self.metrics = MetricsAggregator(tokenizer=tokenizer, pricing=pricing)
        self.recorder = SessionRecorder(
            session_factory,
            consent_state_machine=self.consent,
            metrics=self.metrics,
            clock=self.clock,
        )
        self._completion_provider = completion_provider

    @property
    def completion_provider(self) -> CompletionProvider:
        """Lazily created so consent-only callers never need API credentials."""
        if self._completion_provider is None:
            self._completion_provider = OpenAICompatibleProvider()
        return self._completion_provider

    def _retry(self, operation, name: str):
        return call_with_retry(operation, self.retry_config, name, sleep=self.sleep)

    # Participants and consent

    def register_participant(self, participant_id: str) -> ParticipantState:
        return self.consent.register_participant(participant_id)

    def get_participant(self, participant_id: str) -> ParticipantState:
        return self.consent.get_state(participant_id)

    def give_consent(self, participant_id: str, consent_details: ConsentDetails | dict[str, Any]) -> ConsentResult:
        """Consent or reconsent, retried on retryable errors."""
        return self._retry(lambda: self.consent.consent(participant_id, consent_details), "consent")

    def decline_consent(self, participant_id: str) -> ParticipantState:
        return self._retry(lambda: self.consent.decline(participant_id), "decline")

    def withdraw_consent(self, participant_id: str, reason: str | None = None) -> WithdrawalResult:
        logger.info("Withdrawal requested", extra=log_extra(participant_id=participant_id, operation="withdraw"))
        return self.consent.withdraw(participant_id, reason)

    def can_reconsent(self, participant_id: str) -> bool:
        return self.consent.can_reconsent(participant_id)

    def consent_history(self, participant_id: str) -> list[ConsentRecordResponse]:
        return self.consent.consent_history(participant_id)

    def submit_research_profile(
        self, participant_id: str, profile: ResearchProfileCreate | dict[str, Any]
    ) -> ParticipantState:
        if isinstance(profile, dict):
            profile = ResearchProfileCreate(**profile)
        return self.consent.complete_research_profile(participant_id, profile)

    def participant_statistics(self) -> ParticipantStatistics:
        return self.consent.statistics()

    # Consultations

    def start_consultation(self, participant_id: str) -> UUID:
        return self.recorder.start_session(participant_id)

    def send_message(self, session_id: UUID, content: str) -> MessageSchema:
        """Record a participant-authored message."""
        return self.recorder.append_message(session_id, MessageType.PARTICIPANT, content)

    def generate_reply(self, session_id: UUID, diagnosis_mode: bool = False) -> MessageSchema:
        """
        Ask the completion provider for the simulated patient's next message.

        The reply is appended as a simulated message. Provider failures are not
        retried and nothing is appended.

        Args:
            session_id: Active session
            diagnosis_mode: Instruct the patient to ask the student for their diagnosis

        Returns:
            MessageSchema: Appended reply

        Raises:
            SessionNotActiveError: If the session is completed
            CompletionProviderError: If the provider fails
        """
        snapshot = self.recorder.get_session(session_id)
        if snapshot.status != SessionStatus.ACTIVE:
            raise SessionNotActiveError(str(session_id))

        system_prompt = config.completion.system_prompt
        if diagnosis_mode:
            system_prompt = f"{system_prompt}{DIAGNOSIS_MODE_PROMPT}"

        request = CompletionRequest(
            messages=chat_messages(snapshot.messages, system_prompt),
            model=self.recorder.model,
            temperature=config.completion.temperature,
            max_tokens=config.completion.max_tokens,
            stop=list(config.completion.stop_sequences),
        )
        try:
            response = self.completion_provider.generate(request)
        except CompletionProviderError:
            logger.error(
                f"Completion failed for session {session_id}",
                extra=log_extra(operation="generate_reply", request_id=request.request_id),
            )
            raise
        except Exception as e:
            logger.error(
                f"Unexpected completion error for session {session_id}: {e}",
                extra=log_extra(operation="generate_reply", request_id=request.request_id),
            )
            raise CompletionProviderError(str(e), cause=e) from e

        reply = strip_simulated_prefix(response.text)
        if not reply:
            raise CompletionProviderError("Empty completion")
        return self.recorder.append_message(session_id, MessageType.SIMULATED, reply)

    def end_consultation(self, session_id: UUID) -> TranscriptResponse:
        transcript_id = self.recorder.end_session(session_id)
        return self.recorder.get_transcript(transcript_id)

    # Research exports and metrics

    def export_research_transcripts(self) -> list[dict[str, Any]]:
        """Pseudonymous export of every research transcript."""
        return [t.to_export_dict() for t in self.recorder.research_transcripts()]

    def research_metrics(self, transcripts: list[TranscriptResponse] | None = None) -> ResearchMetricsReport:
        """Aggregate usage over the given transcripts, or all stored ones."""
        if transcripts is None:
            transcripts = self.recorder.all_transcripts()
        research = sum(1 for t in transcripts if t.is_research_session)
        return ResearchMetricsReport(
            transcript_count=len(transcripts),
            research_transcript_count=research,
            pilot_transcript_count=len(transcripts) - research,
            usage=self.metrics.usage_totals(transcripts),
            average_duration_seconds=self.metrics.average_duration_seconds(transcripts),
            average_duration_by_day=self.metrics.average_duration_by_day(transcripts),
            anonymous_summaries=self.metrics.anonymous_summaries(transcripts),
            period_costs=self.metrics.cost_by_period(transcripts),
        )
