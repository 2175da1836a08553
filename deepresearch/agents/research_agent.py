from __future__ import annotations

import asyncio

from loguru import logger

from deepresearch.agents.base import AgentContext, BaseAgent, ProgressCallback
from deepresearch.exceptions import ProviderError
from deepresearch.llm_client import GenerationResult, Provider
from deepresearch.models.research import (
    BudgetDecision,
    Phase,
    ResearchAnswer,
    ResearchMode,
    ResearchQuestion,
)
from deepresearch.services.prompt_store import language_name, render_prompt
from deepresearch.services.source_registry import SourceRegistry

CONTEXT_SIZE_BY_MODE = {
    ResearchMode.SIMPLE: "low",
    ResearchMode.STANDARD: "medium",
    ResearchMode.DEEP: "high",
}
_CONTEXT_STEPS = ["low", "medium", "high"]

RESEARCH_DOMAIN_DENYLIST = [
    "-reddit.com",
    "-quora.com",
    "-medium.com",
    "-pinterest.com",
    "-answers.com",
    "-wikihow.com",
    "-yahoo.com",
]

_DAY_MARKERS = ("today", "yesterday")
_WEEK_MARKERS = ("this week", "recent days")
_CURRENT_MARKERS = ("current", "latest", "recent", "today", "now", "this year")


def reduce_context_size(current: str) -> str:
    index = _CONTEXT_STEPS.index(current) if current in _CONTEXT_STEPS else 0
    return _CONTEXT_STEPS[max(0, index - 1)]


def contains_current_indicators(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _CURRENT_MARKERS)


def determine_recency_filter(text: str) -> str | None:
    lowered = text.lower()
    if any(marker in lowered for marker in _DAY_MARKERS):
        return "day"
    if any(marker in lowered for marker in _WEEK_MARKERS):
        return "week"
    if contains_current_indicators(lowered):
        return "month"
    return None


class ResearchAgent(BaseAgent):
    """Answer each planned question with the search-grounded provider."""

    name = "research"
    phase = Phase.RESEARCH

    def __init__(self, provider: Provider, context: AgentContext, registry: SourceRegistry):
        super().__init__(provider, context)
        self.registry = registry

    async def run(
        self,
        questions: list[ResearchQuestion],
        mode: ResearchMode,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> list[ResearchAnswer]:
        budget = self.context.budget
        recency = determine_recency_filter(" ".join(q.text for q in questions))
        context_size = CONTEXT_SIZE_BY_MODE[mode]
        answers: list[ResearchAnswer] = []

        if budget is not None:
            for question in questions:
                decision = budget.can_continue(Phase.RESEARCH)
                if decision == BudgetDecision.STOP:
                    logger.warning(
                        f"Research stopped by budget after {len(answers)}/{len(questions)} questions"
                    )
                    budget.add_degradation("questions_truncated")
                    break
                if decision == BudgetDecision.REDUCE:
                    context_size = reduce_context_size(context_size)
                    budget.add_degradation("search_context_reduced")

                if on_progress:
                    await on_progress(question.id, len(questions), question.text[:80])
                answer, result = await self._answer(question, context_size, recency)
                self._accept(answer, result)
                answers.append(answer)
        else:
            chunk_size = 2 if mode == ResearchMode.SIMPLE else 3
            for start in range(0, len(questions), chunk_size):
                chunk = questions[start : start + chunk_size]
                for question in chunk:
                    if on_progress:
                        await on_progress(question.id, len(questions), question.text[:80])
                outcomes = await asyncio.gather(
                    *(self._answer(q, context_size, recency) for q in chunk)
                )
                # Usage and registry mutation stay on this coroutine, in question order.
                for answer, result in outcomes:
                    self._accept(answer, result)
                    answers.append(answer)

        answered = sum(1 for a in answers if a.has_content)
        logger.info(
            f"Research phase completed: {answered}/{len(questions)} answered, "
            f"{self.registry.get_count()} sources, context={context_size}"
        )
        return answers

    async def _answer(
        self, question: ResearchQuestion, context_size: str, recency: str | None
    ) -> tuple[ResearchAnswer, GenerationResult | None]:
        extra: dict[str, object] = {
            "search_domain_filter": list(RESEARCH_DOMAIN_DENYLIST),
            "web_search_options": {"search_context_size": context_size},
        }
        if recency:
            extra["search_recency_filter"] = recency
        options = self._options(
            "research",
            default_max_tokens=4000,
            instructions=render_prompt(
                "research.instructions", language_name=language_name(self.context.language)
            ),
            extra=extra,
        )
        try:
            result = await self.provider.generate(question.text, options)
        except ProviderError as exc:
            logger.error(f"Research question {question.id} failed: {exc}")
            return ResearchAnswer(question_id=question.id, question=question.text, response=""), None

        return ResearchAnswer(
            question_id=question.id,
            question=question.text,
            response=result.text,
            citations=result.citations,
            search_results=result.search_results,
            input_tokens=result.usage.input,
            output_tokens=result.usage.output,
            cost_usd=result.cost_usd or 0.0,
        ), result

    def _accept(self, answer: ResearchAnswer, result: GenerationResult | None) -> None:
        if result is not None:
            self.context.record(Phase.RESEARCH, result)
        if not answer.citations:
            return
        mapping = self.registry.add_batch(answer.citations, answer.search_results, answer.question_id)
        answer.citation_mapping = {index + 1: source_id for index, source_id in mapping.items()}
