"""
Anonymization logic for research withdrawal.
Severs the link between a real participant and research data owned by an
anonymous identifier while retaining the data itself.
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from aivp.data.repositories import ResearchProfileRepository, TranscriptRepository
from aivp.data.schemas import AnonymizationResult
from config.config import config

logger = logging.getLogger(__name__)


class AnonymizationEngine:
    """
    Rewrites the owning participant reference of research records to a sentinel.

    Runs inside the withdrawing transaction. Only the participant reference and
    withdrawal bookkeeping change; anonymous identifier, message content and
    derived metrics are left untouched. Records already carrying the sentinel
    are skipped, which makes a repeated run a no-op.
    """

    def __init__(self, sentinel: str | None = None):
        self.sentinel = sentinel or config.research.withdrawal_sentinel

    def anonymize(
        self,
        session: Session,
        anonymous_id: str,
        withdrawn_at: datetime,
        reason: str | None = None,
    ) -> AnonymizationResult:
        """
        Anonymize every transcript and research profile owned by an identifier.

        Args:
            session: Open transaction shared with the consent transition
            anonymous_id: Identifier being retired
            withdrawn_at: Instant of withdrawal
            reason: Optional withdrawal reason, kept on research profiles

        Returns:
            AnonymizationResult: Number of records rewritten by this run
        """
        transcript_repo = TranscriptRepository(session)
        profile_repo = ResearchProfileRepository(session)

        transcripts = 0
        for transcript in transcript_repo.find_by_anonymous_id(anonymous_id):
            if transcript.participant_id == self.sentinel:
                continue
            transcript.participant_id = self.sentinel
            transcript.withdrawn_at = withdrawn_at
            transcripts += 1

        profiles = 0
        for profile in profile_repo.find_by_anonymous_id(anonymous_id):
            if profile.participant_id == self.sentinel:
                continue
            profile.participant_id = self.sentinel
            profile.withdrawn_at = withdrawn_at
            profile.withdrawal_reason = reason
            profiles += 1

        transcript_repo.flush("anonymize", anonymous_id)

        logger.info(
            f"Anonymized {transcripts} transcripts and {profiles} research profiles "
            f"for identifier {anonymous_id}"
        )
        return AnonymizationResult(
            anonymous_id=anonymous_id,
            transcripts_anonymized=transcripts,
            profiles_anonymized=profiles,
        )

    def count_records(self, session: Session, anonymous_id: str) -> tuple[int, int]:
        """Records owned by the identifier, and how many still reference a real participant."""
        transcripts = TranscriptRepository(session).find_by_anonymous_id(anonymous_id)
        profiles = ResearchProfileRepository(session).find_by_anonymous_id(anonymous_id)
        records = [*transcripts, *profiles]
        pending = sum(1 for record in records if record.participant_id != self.sentinel)
        return len(records), pending

    def is_complete(self, session: Session, anonymous_id: str) -> bool:
        """True when no record owned by the identifier still references a real participant."""
        return self.count_records(session, anonymous_id)[1] == 0
