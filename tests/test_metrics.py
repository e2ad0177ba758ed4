"""
Tests for token metering and usage aggregates.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from aivp.data.schemas import MessageSchema, MessageType, TokenMetrics, TranscriptResponse
from aivp.logic.metrics import MetricsAggregator, round_cost, session_duration_seconds
from aivp.services.tokenizer import PricingTable
from tests.conftest import TEST_MODEL, FailingTokenizer

T0 = datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc)


def conversation(*turns):
    """Build messages from (type, content) pairs, one second apart."""
    return [
        MessageSchema(type=MessageType(kind), content=content, timestamp=T0 + timedelta(seconds=i))
        for i, (kind, content) in enumerate(turns)
    ]


def transcript(
    anonymous_id="RP-A",
    start=T0,
    duration=240,
    tokens=6,
    cost=0.009,
    message_count=2,
):
    return TranscriptResponse(
        id=uuid4(),
        session_id=uuid4(),
        participant_id="p1",
        anonymous_id=anonymous_id,
        is_research_session=anonymous_id is not None,
        start_time=start,
        end_time=start + timedelta(seconds=duration),
        duration_seconds=duration,
        message_count=message_count,
        messages=[],
        token_metrics=TokenMetrics(total_tokens=tokens, total_cost=cost, model=TEST_MODEL),
    )


class TestTranscriptMetrics:
    def test_single_exchange(self, metrics):
        messages = conversation(("participant", "fever?"), ("simulated", "yes, 3 days"))

        result = metrics.transcript_metrics(messages, TEST_MODEL)

        # "SYSTEM\nStudent: fever?" is 3 words, the reply another 3
        assert result.total_tokens == 6
        assert result.total_cost == 0.009
        assert result.model == TEST_MODEL
        assert result.error is None

    def test_each_turn_charged_for_full_prompt(self, metrics):
        messages = conversation(
            ("participant", "fever?"),
            ("simulated", "yes, 3 days"),
            ("participant", "any cough?"),
            ("simulated", "no"),
        )

        assert metrics.count_tokens(messages, TEST_MODEL) == 6 + 12

    def test_trailing_unanswered_turn_not_charged(self, metrics):
        messages = conversation(
            ("participant", "fever?"),
            ("simulated", "yes, 3 days"),
            ("participant", "any cough?"),
        )

        assert metrics.count_tokens(messages, TEST_MODEL) == 6

    @pytest.mark.parametrize(
        "messages",
        [
            [],
            conversation(("simulated", "hello doctor")),
        ],
    )
    def test_no_participant_messages_is_zero_without_tokenizing(self, metrics, tokenizer, messages):
        result = metrics.transcript_metrics(messages, TEST_MODEL)

        assert result.total_tokens == 0
        assert result.total_cost == 0.0
        assert tokenizer.calls == 0

    def test_tokenizer_failure_yields_null_totals(self, pricing):
        aggregator = MetricsAggregator(tokenizer=FailingTokenizer(), pricing=pricing, system_prompt="SYSTEM")
        messages = conversation(("participant", "fever?"), ("simulated", "yes, 3 days"))

        result = aggregator.transcript_metrics(messages, TEST_MODEL)

        assert result.total_tokens is None
        assert result.total_cost is None
        assert result.error == "encoding unavailable"

    def test_model_defaults_to_pricing_default(self, metrics):
        result = metrics.transcript_metrics(conversation(("participant", "hi"), ("simulated", "hello")))

        assert result.model == "gpt-3.5-turbo"


class TestCost:
    def test_mean_of_input_and_output_rates(self, metrics):
        assert metrics.calculate_cost(6, "gpt-4") == 0.27

    def test_unknown_model_uses_default_tier(self, metrics):
        assert metrics.calculate_cost(6, "some-future-model") == metrics.calculate_cost(6, "gpt-3.5-turbo")
        assert metrics.calculate_cost(6, None) == 0.009

    def test_rounds_half_up_to_four_places(self, tokenizer):
        aggregator = MetricsAggregator(
            tokenizer=tokenizer,
            pricing=PricingTable(rates={"cheap": {"input_rate": 0.1, "output_rate": 0.0}}, default_model="cheap"),
            system_prompt="SYSTEM",
        )

        # 1 token at a mean rate of 0.05 per 1000 is exactly 0.00005
        assert aggregator.calculate_cost(1, "cheap") == 0.0001

    def test_round_cost(self):
        assert round_cost(Decimal("0.00124999")) == 0.0012
        assert round_cost(Decimal("0.00125")) == 0.0013

    def test_pricing_requires_default_rates(self):
        with pytest.raises(ValueError, match="has no rates"):
            PricingTable(rates={"gpt-4": {"input_rate": 1.0, "output_rate": 1.0}}, default_model="missing")


@pytest.mark.parametrize(
    "start,end,expected",
    [
        (T0, T0 + timedelta(seconds=90, milliseconds=900), 90),
        (T0, T0, 0),
        (T0 + timedelta(seconds=5), T0, 0),
        (None, T0, 0),
        (T0, None, 0),
    ],
)
def test_session_duration_seconds(start, end, expected):
    assert session_duration_seconds(start, end) == expected


class TestAggregates:
    def test_usage_totals_split_by_session_kind(self, metrics):
        transcripts = [
            transcript(),
            transcript(anonymous_id=None, tokens=12, cost=0.018),
            transcript(tokens=None, cost=None),
        ]

        totals = metrics.usage_totals(transcripts)

        assert totals.total_tokens == 18
        assert totals.research_tokens == 6
        assert totals.pilot_tokens == 12
        assert totals.total_cost == 0.027
        assert totals.research_cost == 0.009
        assert totals.pilot_cost == 0.018
        assert totals.transcripts_without_metrics == 1

    def test_average_duration(self, metrics):
        transcripts = [transcript(duration=240), transcript(duration=61)]

        assert metrics.average_duration_seconds(transcripts) == 150.5
        assert metrics.average_duration_seconds([]) == 0.0

    def test_average_duration_by_day(self, metrics):
        transcripts = [
            transcript(duration=100),
            transcript(duration=200),
            transcript(start=T0 + timedelta(days=1), duration=30),
        ]

        assert metrics.average_duration_by_day(transcripts) == {
            date(2025, 1, 6): 150.0,
            date(2025, 1, 7): 30.0,
        }

    def test_anonymous_summaries_cover_research_only(self, metrics):
        transcripts = [
            transcript(duration=240, message_count=4),
            transcript(duration=61, message_count=3),
            transcript(anonymous_id="RP-B", duration=30, message_count=2),
            transcript(anonymous_id=None, duration=999, message_count=9),
        ]

        summaries = metrics.anonymous_summaries(transcripts)

        assert [s.anonymous_id for s in summaries] == ["RP-A", "RP-B"]
        first = summaries[0]
        assert first.session_count == 2
        assert first.total_duration_seconds == 301
        assert first.average_duration_seconds == 150
        assert first.total_messages == 7
        assert first.average_messages == 3.5

    def test_cost_by_period(self, metrics):
        transcripts = [
            transcript(cost=0.009),
            transcript(cost=0.018),
            transcript(start=T0 + timedelta(days=1), cost=0.02),
            transcript(start=T0 + timedelta(days=2), tokens=None, cost=None),
        ]

        period_costs = metrics.cost_by_period(transcripts)

        assert period_costs.costs == {date(2025, 1, 6): 0.027, date(2025, 1, 7): 0.02}
        assert period_costs.peak_period == date(2025, 1, 6)
        assert period_costs.peak_cost == 0.027

    def test_cost_by_period_empty(self, metrics):
        period_costs = metrics.cost_by_period([])

        assert period_costs.costs == {}
        assert period_costs.peak_period is None
