from __future__ import annotations

import pytest

from deepresearch.agents.base import AgentContext
from deepresearch.agents.research_agent import (
    ResearchAgent,
    determine_recency_filter,
    reduce_context_size,
)
from deepresearch.exceptions import ProviderError
from deepresearch.llm_client import GenerationResult, TokenUsage
from deepresearch.models.research import BudgetLimits, Phase, ResearchMode, ResearchQuestion
from deepresearch.services.budget import TokenBudgetManager
from deepresearch.services.source_registry import SourceRegistry


def _questions(*texts: str) -> list[ResearchQuestion]:
    return [ResearchQuestion(id=i + 1, text=text) for i, text in enumerate(texts)]


def _grounded(text: str, *urls: str) -> GenerationResult:
    return GenerationResult(
        text=text,
        usage=TokenUsage(200, 100),
        model="sonar-pro",
        cost_usd=0.006,
        citations=[{"url": url} for url in urls],
    )


def _budget() -> TokenBudgetManager:
    budget = TokenBudgetManager(ResearchMode.STANDARD, BudgetLimits(200_000, 1.0))
    budget.start_phase(Phase.RESEARCH)
    return budget


def test_recency_filter_and_context_steps():
    assert determine_recency_filter("What happened today in markets?") == "day"
    assert determine_recency_filter("news from this week") == "week"
    assert determine_recency_filter("latest GDP figures") == "month"
    assert determine_recency_filter("history of Rome") is None
    assert reduce_context_size("high") == "medium"
    assert reduce_context_size("low") == "low"


@pytest.mark.asyncio
async def test_citations_are_registered_with_one_based_mapping(scripted):
    provider = scripted(
        [
            _grounded("Tesla delivered 1.8M cars [1][2].", "https://tesla.com/ir", "https://reuters.com/a"),
            _grounded("BYD sold more [1].", "https://www.reuters.com/a/"),
        ]
    )
    registry = SourceRegistry()
    budget = _budget()
    progress: list[tuple[int, int, str]] = []

    async def on_progress(current: int, total: int, message: str) -> None:
        progress.append((current, total, message))

    answers = await ResearchAgent(provider, AgentContext("req", budget=budget), registry).run(
        _questions("Tesla deliveries 2023", "BYD sales 2023"),
        ResearchMode.STANDARD,
        on_progress=on_progress,
    )

    assert answers[0].citation_mapping == {1: 1, 2: 2}
    assert answers[1].citation_mapping == {1: 2}
    assert registry.get_count() == 2
    assert answers[0].cost_usd == pytest.approx(0.006)
    assert [p[0] for p in progress] == [1, 2]
    assert budget.get_phase_usage(Phase.RESEARCH).calls == 2
    assert budget.get_total_cost_spent() == pytest.approx(0.012)


@pytest.mark.asyncio
async def test_request_carries_search_filters(scripted):
    provider = scripted([_grounded("answer")])
    await ResearchAgent(provider, AgentContext("req", budget=_budget()), SourceRegistry()).run(
        _questions("latest lithium prices"), ResearchMode.DEEP
    )

    _, options = provider.calls[0]
    assert options.caller == "research.research"
    assert options.extra["search_recency_filter"] == "month"
    assert options.extra["web_search_options"] == {"search_context_size": "high"}
    assert "-reddit.com" in options.extra["search_domain_filter"]


@pytest.mark.asyncio
async def test_budget_stop_truncates_questions(scripted):
    provider = scripted([_grounded("never used")])
    budget = _budget()
    budget.record_usage(Phase.RESEARCH, "sonar-pro", 0, 0, direct_cost_usd=0.95)

    answers = await ResearchAgent(provider, AgentContext("req", budget=budget), SourceRegistry()).run(
        _questions("a", "b"), ResearchMode.STANDARD
    )

    assert answers == []
    assert provider.calls == []
    assert "questions_truncated" in budget.degradations


@pytest.mark.asyncio
async def test_budget_reduce_lowers_search_context(scripted):
    provider = scripted([_grounded("one"), _grounded("two")])
    budget = _budget()
    budget.record_usage(Phase.TRIAGE, "claude-sonnet-4-20250514", 0, 0, direct_cost_usd=0.72)

    await ResearchAgent(provider, AgentContext("req", budget=budget), SourceRegistry()).run(
        _questions("a", "b"), ResearchMode.STANDARD
    )

    sizes = [options.extra["web_search_options"]["search_context_size"] for _, options in provider.calls]
    assert sizes == ["low", "low"]
    assert budget.degradations == ["search_context_reduced"]


@pytest.mark.asyncio
async def test_provider_failure_yields_empty_answer(scripted):
    provider = scripted([ProviderError("perplexity", "boom", 500), _grounded("ok", "https://a.com")])
    budget = _budget()

    answers = await ResearchAgent(provider, AgentContext("req", budget=budget), SourceRegistry()).run(
        _questions("a", "b"), ResearchMode.STANDARD
    )

    assert answers[0].response == ""
    assert not answers[0].has_content
    assert answers[1].has_grounded_content
    assert budget.get_phase_usage(Phase.RESEARCH).calls == 1


@pytest.mark.asyncio
async def test_without_budget_questions_run_in_chunks_in_order(scripted):
    def responder(prompt, options):
        return _grounded(f"answer to {prompt}", f"https://example.com/{prompt}")

    provider = scripted(responder=responder)
    registry = SourceRegistry()
    answers = await ResearchAgent(provider, AgentContext("req"), registry).run(
        _questions("q1", "q2", "q3"), ResearchMode.SIMPLE
    )

    assert [a.question_id for a in answers] == [1, 2, 3]
    assert [a.citation_mapping[1] for a in answers] == [1, 2, 3]
    assert answers[2].response == "answer to q3"
