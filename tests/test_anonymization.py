"""
Tests for withdrawal anonymization of research records.
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from aivp.data.models import ResearchProfile, Transcript
from aivp.logic.anonymization import AnonymizationEngine

NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WITHDRAWN_AT = NOW + timedelta(days=2)


def add_transcript(db_session, participant_id, anonymous_id, content="fever?"):
    transcript = Transcript(
        session_id=uuid4(),
        participant_id=participant_id,
        anonymous_id=anonymous_id,
        is_research_session=anonymous_id is not None,
        start_time=NOW,
        end_time=NOW + timedelta(minutes=4),
        duration_seconds=240,
        message_count=1,
        messages=[{"type": "participant", "content": content, "timestamp": NOW.isoformat()}],
        total_tokens=12,
        total_cost=0.018,
        model="gpt-3.5-turbo",
    )
    db_session.add(transcript)
    return transcript


def add_profile(db_session, participant_id, anonymous_id):
    profile = ResearchProfile(
        participant_id=participant_id,
        anonymous_id=anonymous_id,
        demographics={"year_group": "3"},
        ati_responses={"1": 4},
        ati_score=4.0,
        created_at=NOW,
    )
    db_session.add(profile)
    return profile


@pytest.fixture
def engine_under_test():
    return AnonymizationEngine(sentinel="withdrawn")


@pytest.fixture
def research_records(db_session):
    """Two transcripts and a profile for RP-A, plus unrelated records."""
    owned = [add_transcript(db_session, "p1", "RP-A"), add_transcript(db_session, "p1", "RP-A", "cough?")]
    profile = add_profile(db_session, "p1", "RP-A")
    other = add_transcript(db_session, "p2", "RP-B")
    pilot = add_transcript(db_session, "p1", None)
    db_session.flush()
    return {"owned": owned, "profile": profile, "other": other, "pilot": pilot}


def test_anonymize_rewrites_owner(db_session, engine_under_test, research_records):
    result = engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT, reason="too busy")

    assert result.transcripts_anonymized == 2
    assert result.profiles_anonymized == 1
    assert result.total == 3
    for transcript in research_records["owned"]:
        assert transcript.participant_id == "withdrawn"
        assert transcript.withdrawn_at == WITHDRAWN_AT
    assert research_records["profile"].participant_id == "withdrawn"
    assert research_records["profile"].withdrawal_reason == "too busy"


def test_research_content_retained(db_session, engine_under_test, research_records):
    engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT)

    transcript = research_records["owned"][1]
    assert transcript.anonymous_id == "RP-A"
    assert transcript.messages[0]["content"] == "cough?"
    assert transcript.total_tokens == 12
    assert transcript.total_cost == 0.018


def test_other_records_untouched(db_session, engine_under_test, research_records):
    engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT)

    assert research_records["other"].participant_id == "p2"
    assert research_records["other"].withdrawn_at is None
    assert research_records["pilot"].participant_id == "p1"


def test_second_run_is_noop(db_session, engine_under_test, research_records):
    engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT)

    again = engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT + timedelta(hours=1))

    assert again.total == 0
    assert research_records["owned"][0].withdrawn_at == WITHDRAWN_AT


def test_is_complete(db_session, engine_under_test, research_records):
    assert engine_under_test.is_complete(db_session, "RP-A") is False

    engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT)

    assert engine_under_test.is_complete(db_session, "RP-A") is True
    assert engine_under_test.is_complete(db_session, "RP-unused") is True


def test_count_records(db_session, engine_under_test, research_records):
    assert engine_under_test.count_records(db_session, "RP-A") == (3, 3)

    engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT)

    assert engine_under_test.count_records(db_session, "RP-A") == (3, 0)
    assert engine_under_test.count_records(db_session, "RP-unused") == (0, 0)


def test_no_records_for_identifier(db_session, engine_under_test):
    result = engine_under_test.anonymize(db_session, "RP-A", WITHDRAWN_AT)

    assert result.total == 0


def test_default_sentinel_from_config():
    from config.config import config

    assert AnonymizationEngine().sentinel == config.research.withdrawal_sentinel
