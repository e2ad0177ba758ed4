"""
Pydantic schemas for data validation and serialization.
Provides the tagged enums and value objects shared by the research core.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ParticipantRole(str, Enum):
    """Participant role enumeration."""

    PILOT = "pilot_participant"
    RESEARCH_CONSENTED = "research_participant"
    WITHDRAWN = "withdrawn"


class SessionStatus(str, Enum):
    """Consultation session status enumeration."""

    ACTIVE = "active"
    COMPLETED = "completed"


class MessageType(str, Enum):
    """Author of a consultation message."""

    PARTICIPANT = "participant"
    SIMULATED = "simulated"


class ConsentKind(str, Enum):
    """Kind of consent lifecycle transition."""

    INITIAL_CONSENT = "initial_consent"
    RECONSENT = "reconsent"
    WITHDRAWAL = "withdrawal"
    DECLINE = "decline"


class AuditAction(str, Enum):
    """Audit log action enumeration."""

    INITIAL_CONSENT = "initial_consent"
    RECONSENT = "reconsent"
    DECLINE = "decline"
    WITHDRAWAL = "withdrawal"
    CONSENT_FAILED = "consent_failed"
    DECLINE_FAILED = "decline_failed"
    WITHDRAWAL_FAILED = "withdrawal_failed"


# Base schemas
class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        validate_assignment=True,
        arbitrary_types_allowed=True,
    )


class FrozenSchema(BaseModel):
    """Base schema for immutable value objects."""

    model_config = ConfigDict(from_attributes=True, frozen=True)


# Consent schemas
class ConsentDetails(BaseSchema):
    """Acknowledgement items a participant confirms when joining the study."""

    read_info: bool = False
    voluntary: bool = False
    platform_data: bool = False
    interview: bool = False
    data_storage: bool = False
    future_research: bool = False
    participation: bool = False
    future_contact: bool = False

    def missing_items(self, required: list[str]) -> list[str]:
        """Return required items that were not acknowledged."""
        return [item for item in required if not getattr(self, item, False)]


class ParticipantState(FrozenSchema):
    """Snapshot of a participant's lifecycle state."""

    id: str
    role: ParticipantRole
    anonymous_id: str | None = None
    consent_withdrawn_at: datetime | None = None
    profile_complete: bool = False
    version: int = 1

    @model_validator(mode="after")
    def check_identifier_matches_role(self):
        has_id = self.anonymous_id is not None
        if has_id != (self.role == ParticipantRole.RESEARCH_CONSENTED):
            raise ValueError("anonymous_id must be set if and only if role is research_participant")
        if self.consent_withdrawn_at is not None and self.role != ParticipantRole.WITHDRAWN:
            raise ValueError("consent_withdrawn_at is only set while withdrawn")
        return self


class ConsentRecordResponse(FrozenSchema):
    """Consent record response schema."""

    id: UUID
    participant_id: str
    anonymous_id: str | None
    kind: ConsentKind
    timestamp: datetime
    reason: str | None = None
    consent_details: dict[str, Any] | None = None


class ConsentResult(FrozenSchema):
    """Outcome of a successful consent or reconsent."""

    participant: ParticipantState
    anonymous_id: str
    kind: ConsentKind


class AnonymizationResult(FrozenSchema):
    """Counts of records rewritten for one anonymous identifier."""

    anonymous_id: str
    transcripts_anonymized: int = 0
    profiles_anonymized: int = 0

    @property
    def total(self) -> int:
        return self.transcripts_anonymized + self.profiles_anonymized


class WithdrawalResult(FrozenSchema):
    """Outcome of a successful withdrawal."""

    participant: ParticipantState
    retired_anonymous_id: str
    anonymization: AnonymizationResult
    attempts: int = 1


# Session schemas
class MessageSchema(FrozenSchema):
    """One consultation message."""

    type: MessageType
    content: str
    timestamp: datetime


class SessionSnapshot(FrozenSchema):
    """Read-only view of a consultation session."""

    id: UUID
    participant_id: str
    anonymous_id: str | None
    is_research_session: bool
    status: SessionStatus
    start_time: datetime
    end_time: datetime | None = None
    messages: list[MessageSchema] = Field(default_factory=list)


class TokenMetrics(FrozenSchema):
    """Derived token usage for a transcript; totals are None when metering failed."""

    total_tokens: int | None = 0
    total_cost: float | None = 0.0
    model: str
    error: str | None = None


class ModelPricing(FrozenSchema):
    """Rates per 1000 tokens for one model."""

    input_rate: float = Field(ge=0)
    output_rate: float = Field(ge=0)


class TranscriptResponse(FrozenSchema):
    """Finalized transcript with derived metrics."""

    id: UUID
    session_id: UUID
    participant_id: str
    anonymous_id: str | None
    is_research_session: bool
    start_time: datetime
    end_time: datetime
    duration_seconds: int
    message_count: int
    messages: list[MessageSchema]
    token_metrics: TokenMetrics
    withdrawn_at: datetime | None = None

    def to_export_dict(self) -> dict[str, Any]:
        """Pseudonymous export record; research transcripts never carry the participant id."""
        record = {
            "transcript_id": str(self.id),
            "anonymous_id": self.anonymous_id,
            "is_research_session": self.is_research_session,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration_seconds": self.duration_seconds,
            "message_count": self.message_count,
            "messages": [
                {
                    "type": message.type.value,
                    "content": message.content,
                    "timestamp": message.timestamp.isoformat(),
                }
                for message in self.messages
            ],
            "total_tokens": self.token_metrics.total_tokens,
            "total_cost": self.token_metrics.total_cost,
            "model": self.token_metrics.model,
        }
        if not self.is_research_session:
            record["participant_id"] = self.participant_id
        return record


# Research profile schemas
AGE_GROUPS = ("18-20", "21-23", "24-26", "27-29", "30+")
YEAR_GROUPS = ("2", "3", "4", "5")
GENDER_OPTIONS = ("male", "female", "non_binary", "prefer_not_to_say")
ETHNICITY_OPTIONS = (
    "asian_british",
    "black_british",
    "mixed",
    "white",
    "other",
    "prefer_not_to_say",
)

# Item ids of the affinity-for-technology-interaction scale that are reverse coded
ATI_ITEM_COUNT = 9
ATI_REVERSED_ITEMS = frozenset({3, 6, 8})


class ResearchProfileCreate(BaseSchema):
    """Demographic and technology affinity answers."""

    year_group: Literal["2", "3", "4", "5"]
    age_group: Literal["18-20", "21-23", "24-26", "27-29", "30+"]
    gender: Literal["male", "female", "non_binary", "prefer_not_to_say"]
    ethnicity: Literal[
        "asian_british", "black_british", "mixed", "white", "other", "prefer_not_to_say"
    ]
    ati_responses: dict[int, int]

    @field_validator("ati_responses")
    @classmethod
    def validate_ati_responses(cls, v):
        """Every scale item answered on a 1-6 scale."""
        expected = set(range(1, ATI_ITEM_COUNT + 1))
        if set(v) != expected:
            raise ValueError(f"ati_responses must answer items 1..{ATI_ITEM_COUNT}")
        for item, value in v.items():
            if not 1 <= value <= 6:
                raise ValueError(f"ATI item {item} must be between 1 and 6")
        return v

    def ati_score(self) -> float:
        """Mean item score with reverse-coded items flipped."""
        total = sum(
            (7 - value) if item in ATI_REVERSED_ITEMS else value
            for item, value in self.ati_responses.items()
        )
        return round(total / ATI_ITEM_COUNT, 2)


# Statistics schemas
class ParticipantStatistics(FrozenSchema):
    """Participant counts per role."""

    total: int
    pilot_participants: int
    research_participants: int
    withdrawn_participants: int
    consented_participants: int


class AnonymousParticipantSummary(FrozenSchema):
    """Usage summary for one anonymous identifier."""

    anonymous_id: str
    session_count: int
    total_duration_seconds: int
    average_duration_seconds: int
    total_messages: int
    average_messages: float


class UsageTotals(FrozenSchema):
    """Token and cost totals over a set of transcripts."""

    total_tokens: int = 0
    research_tokens: int = 0
    pilot_tokens: int = 0
    total_cost: float = 0.0
    research_cost: float = 0.0
    pilot_cost: float = 0.0
    transcripts_without_metrics: int = 0
