"""
Pytest configuration and fixtures for AIVP tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from functools import partial
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from aivp.data.database_factory import managed_session, setup_connection_events
from aivp.data.models import Base
from aivp.exceptions import TokenizerError
from aivp.logic.audit import AuditLog
from aivp.logic.consent_state_machine import ConsentStateMachine
from aivp.logic.metrics import MetricsAggregator
from aivp.logic.session_recorder import SessionRecorder
from aivp.services.completion_provider import MockCompletionProvider
from aivp.services.research_service import ResearchService
from aivp.services.tokenizer import PricingTable, Tokenizer
from aivp.utils.clock import FixedStepClock, IdGenerator
from aivp.utils.retry import RetryConfig

TEST_MODEL = "gpt-3.5-turbo"
TEST_SYSTEM_PROMPT = "SYSTEM"
START = datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)

FULL_CONSENT = {
    "read_info": True,
    "voluntary": True,
    "platform_data": True,
    "interview": True,
    "data_storage": True,
    "future_research": True,
    "participation": True,
    "future_contact": True,
}

PROFILE_ANSWERS = {
    "year_group": "3",
    "age_group": "21-23",
    "gender": "female",
    "ethnicity": "prefer_not_to_say",
    "ati_responses": {1: 4, 2: 5, 3: 2, 4: 4, 5: 5, 6: 1, 7: 4, 8: 3, 9: 5},
}


class WordTokenizer(Tokenizer):
    """Counts whitespace-separated words; deterministic and offline."""

    def __init__(self):
        self.calls = 0

    def count_tokens(self, text: str, model: str) -> int:
        self.calls += 1
        return len(text.split())


class FailingTokenizer(Tokenizer):
    def count_tokens(self, text: str, model: str) -> int:
        raise TokenizerError("encoding unavailable")


class SequenceIdGenerator(IdGenerator):
    """Issues RP-A, RP-B, ... then RP-<n>; an explicit list can force collisions."""

    def __init__(self, ids: list[str] | None = None):
        super().__init__(prefix="RP", suffix_length=6)
        self.ids = list(ids) if ids is not None else []
        self.issued = 0

    def new_anonymous_id(self) -> str:
        self.issued += 1
        if self.ids:
            return self.ids.pop(0)
        letter_index = self.issued - 1
        if letter_index < 26:
            return f"RP-{chr(ord('A') + letter_index)}"
        return f"RP-{self.issued}"


@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables."""
    engine = create_engine(
        "sqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )
    setup_connection_events(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_local(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_local):
    """Raw session for model-level tests."""
    session = session_local()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(session_local):
    """Transaction context factory equivalent to database_transaction."""
    return partial(managed_session, session_local)


@pytest.fixture
def clock():
    return FixedStepClock(START, step=timedelta(seconds=1))


@pytest.fixture
def id_generator():
    return SequenceIdGenerator()


@pytest.fixture
def tokenizer():
    return WordTokenizer()


@pytest.fixture
def pricing():
    return PricingTable(
        rates={
            "gpt-3.5-turbo": {"input_rate": 1.0, "output_rate": 2.0},
            "gpt-4": {"input_rate": 30.0, "output_rate": 60.0},
        },
        default_model="gpt-3.5-turbo",
    )


@pytest.fixture
def metrics(tokenizer, pricing):
    return MetricsAggregator(tokenizer=tokenizer, pricing=pricing, system_prompt=TEST_SYSTEM_PROMPT)


@pytest.fixture
def no_wait_retry():
    return RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def audit_log(session_factory, clock):
    return AuditLog(session_factory, clock)


@pytest.fixture
def consent_machine(session_factory, clock, id_generator, audit_log, no_wait_retry):
    return ConsentStateMachine(
        session_factory,
        clock=clock,
        id_generator=id_generator,
        audit_log=audit_log,
        withdraw_retry=no_wait_retry,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def recorder(session_factory, consent_machine, metrics, clock):
    return SessionRecorder(
        session_factory,
        consent_state_machine=consent_machine,
        metrics=metrics,
        clock=clock,
        model=TEST_MODEL,
    )


@pytest.fixture
def completion_provider():
    return MockCompletionProvider(responses=["Virtual Patient: yes, 3 days"])


@pytest.fixture
def service(session_factory, clock, id_generator, tokenizer, pricing, completion_provider, no_wait_retry):
    research_service = ResearchService(
        session_factory,
        clock=clock,
        id_generator=id_generator,
        tokenizer=tokenizer,
        pricing=pricing,
        completion_provider=completion_provider,
        retry_config=no_wait_retry,
        sleep=lambda seconds: None,
    )
    research_service.metrics.system_prompt = TEST_SYSTEM_PROMPT
    research_service.recorder.model = TEST_MODEL
    return research_service


@pytest.fixture
def pilot(consent_machine):
    """A registered pilot participant id."""
    consent_machine.register_participant("p1")
    return "p1"


@pytest.fixture
def consented(consent_machine, pilot):
    """A consented participant id holding RP-A."""
    consent_machine.consent(pilot, FULL_CONSENT)
    return pilot
