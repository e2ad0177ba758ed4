"""
Metrics logic for the AIVP research core.
Derives token, cost and duration statistics from transcripts.
"""

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from aivp.data.schemas import (
    AnonymousParticipantSummary,
    MessageSchema,
    MessageType,
    TokenMetrics,
    TranscriptResponse,
    UsageTotals,
)
from aivp.exceptions import TokenizerError
from aivp.logic.conversation import prompt_text
from aivp.services.tokenizer import PricingTable, TiktokenTokenizer, Tokenizer
from config.config import config

logger = logging.getLogger(__name__)

_COST_QUANTUM = Decimal("0.0001")


def session_duration_seconds(start_time: datetime | None, end_time: datetime | None) -> int:
    """Whole seconds between start and end; missing or inverted bounds count as 0."""
    if start_time is None or end_time is None:
        return 0
    return max(0, int((end_time - start_time).total_seconds()))


def round_cost(value: Decimal) -> float:
    return float(value.quantize(_COST_QUANTUM, rounding=ROUND_HALF_UP))


@dataclass
class PeriodCosts:
    """Cost per calendar day (UTC) and the most expensive day."""

    costs: dict[date, float] = field(default_factory=dict)
    peak_period: date | None = None
    peak_cost: float = 0.0


class MetricsAggregator:
    """
    Token and cost metering for consultations.

    Each participant turn is charged for the full prompt the completion
    provider saw (system prompt plus every message up to and including the
    turn) and for the simulated reply that immediately follows it. A trailing
    unanswered turn produced no completion and is not charged.
    """

    def __init__(
        self,
        tokenizer: Tokenizer | None = None,
        pricing: PricingTable | None = None,
        system_prompt: str | None = None,
    ):
        self.tokenizer = tokenizer or TiktokenTokenizer()
        self.pricing = pricing or PricingTable()
        self.system_prompt = system_prompt if system_prompt is not None else config.completion.system_prompt

    def count_tokens(self, messages: Sequence[MessageSchema], model: str) -> int:
        """
        Total input plus output tokens over all answered participant turns.

        Raises:
            TokenizerError: If the tokenizer fails
        """
        total = 0
        for index, message in enumerate(messages):
            if message.type != MessageType.PARTICIPANT:
                continue
            if index + 1 >= len(messages) or messages[index + 1].type != MessageType.SIMULATED:
                continue
            input_tokens = self.tokenizer.count_tokens(
                prompt_text(messages[: index + 1], self.system_prompt), model
            )
            output_tokens = self.tokenizer.count_tokens(messages[index + 1].content, model)
            total += input_tokens + output_tokens
        return total

    def calculate_cost(self, total_tokens: int, model: str | None) -> float:
        """Cost at the mean of input and output rates, rounded half-up to 4 decimals."""
        rates = self.pricing.rates_for(model)
        mean_rate = (Decimal(str(rates.input_rate)) + Decimal(str(rates.output_rate))) / 2
        return round_cost(Decimal(total_tokens) / 1000 * mean_rate)

    def transcript_metrics(self, messages: Sequence[MessageSchema], model: str | None = None) -> TokenMetrics:
        """
        Token metrics for one consultation.

        Never raises for tokenizer failure: the metrics carry null totals and
        the error text instead, so the transcript is still persisted.
        """
        model = model or self.pricing.default_model
        if not any(message.type == MessageType.PARTICIPANT for message in messages):
            return TokenMetrics(total_tokens=0, total_cost=0.0, model=model)

        try:
            total_tokens = self.count_tokens(messages, model)
        except TokenizerError as e:
            logger.error(f"Token metering failed for model {model}: {e}")
            return TokenMetrics(total_tokens=None, total_cost=None, model=model, error=str(e))

        return TokenMetrics(
            total_tokens=total_tokens,
            total_cost=self.calculate_cost(total_tokens, model),
            model=model,
        )

    # Aggregates over transcript collections

    def usage_totals(self, transcripts: Iterable[TranscriptResponse]) -> UsageTotals:
        """Token and cost totals split by research and pilot sessions."""
        tokens = {True: 0, False: 0}
        costs = {True: Decimal(0), False: Decimal(0)}
        without_metrics = 0
        for transcript in transcripts:
            metrics = transcript.token_metrics
            if metrics.total_tokens is None or metrics.total_cost is None:
                without_metrics += 1
                continue
            tokens[transcript.is_research_session] += metrics.total_tokens
            costs[transcript.is_research_session] += Decimal(str(metrics.total_cost))

        return UsageTotals(
            total_tokens=tokens[True] + tokens[False],
            research_tokens=tokens[True],
            pilot_tokens=tokens[False],
            total_cost=round_cost(costs[True] + costs[False]),
            research_cost=round_cost(costs[True]),
            pilot_cost=round_cost(costs[False]),
            transcripts_without_metrics=without_metrics,
        )

    def average_duration_seconds(self, transcripts: Iterable[TranscriptResponse]) -> float:
        durations = [session_duration_seconds(t.start_time, t.end_time) for t in transcripts]
        if not durations:
            return 0.0
        return round(sum(durations) / len(durations), 2)

    def average_duration_by_day(self, transcripts: Iterable[TranscriptResponse]) -> dict[date, float]:
        """Average session duration per UTC start day."""
        by_day: dict[date, list[int]] = defaultdict(list)
        for transcript in transcripts:
            by_day[transcript.start_time.date()].append(
                session_duration_seconds(transcript.start_time, transcript.end_time)
            )
        return {day: round(sum(values) / len(values), 2) for day, values in sorted(by_day.items())}

    def anonymous_summaries(self, transcripts: Iterable[TranscriptResponse]) -> list[AnonymousParticipantSummary]:
        """Per anonymous identifier usage, research sessions only."""
        grouped: dict[str, list[TranscriptResponse]] = defaultdict(list)
        for transcript in transcripts:
            if transcript.is_research_session and transcript.anonymous_id:
                grouped[transcript.anonymous_id].append(transcript)

        summaries = []
        for anonymous_id, items in sorted(grouped.items()):
            total_duration = sum(session_duration_seconds(t.start_time, t.end_time) for t in items)
            total_messages = sum(t.message_count for t in items)
            summaries.append(
                AnonymousParticipantSummary(
                    anonymous_id=anonymous_id,
                    session_count=len(items),
                    total_duration_seconds=total_duration,
                    average_duration_seconds=total_duration // len(items),
                    total_messages=total_messages,
                    average_messages=round(total_messages / len(items), 2),
                )
            )
        return summaries

    def cost_by_period(self, transcripts: Iterable[TranscriptResponse]) -> PeriodCosts:
        """Cost per UTC day with the peak day; transcripts without metrics are skipped."""
        by_day: dict[date, Decimal] = defaultdict(Decimal)
        for transcript in transcripts:
            cost = transcript.token_metrics.total_cost
            if cost is None:
                continue
            by_day[transcript.start_time.date()] += Decimal(str(cost))

        costs = {day: round_cost(value) for day, value in sorted(by_day.items())}
        if not costs:
            return PeriodCosts()
        peak_period = max(costs, key=lambda day: (costs[day], day))
        return PeriodCosts(costs=costs, peak_period=peak_period, peak_cost=costs[peak_period])
