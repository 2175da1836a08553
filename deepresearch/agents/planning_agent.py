from __future__ import annotations

from typing import Any

from loguru import logger

from deepresearch.agents.base import BaseAgent
from deepresearch.config import settings
from deepresearch.models.research import (
    ClaimType,
    Phase,
    ResearchPlan,
    ResearchQuestion,
    TriageResult,
    VerificationRequirement,
)
from deepresearch.services.prompt_store import render_prompt

_QUESTION_TYPES = {ClaimType.FACTUAL.value, ClaimType.ANALYTICAL.value, ClaimType.SPECULATIVE.value}

VERIFICATION_STRATEGY = {
    ClaimType.FACTUAL.value: VerificationRequirement(min_sources=1, required_source_types=["authoritative"]),
    ClaimType.ANALYTICAL.value: VerificationRequirement(min_sources=1, required_source_types=["any"]),
    ClaimType.SPECULATIVE.value: VerificationRequirement(min_sources=0),
}


def _parse_question(raw: Any, index: int) -> ResearchQuestion | None:
    if not isinstance(raw, dict):
        return None
    text = raw.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    qtype = raw.get("type")
    try:
        priority = int(raw.get("priority") or 1)
    except (TypeError, ValueError):
        priority = 1
    fact_types = raw.get("expected_fact_types")
    return ResearchQuestion(
        id=index + 1,
        text=text.strip(),
        type=ClaimType(qtype) if isinstance(qtype, str) and qtype in _QUESTION_TYPES else ClaimType.FACTUAL,
        priority=max(1, min(3, priority)),
        topic=str(raw.get("topic") or ""),
        expected_fact_types=[str(f) for f in fact_types] if isinstance(fact_types, list) else ["facts"],
    )


class PlanningAgent(BaseAgent):
    """Decompose the (clarified) query into research questions."""

    name = "planning"
    phase = Phase.PLANNING

    async def run(self, query: str, triage: TriageResult) -> ResearchPlan:
        max_questions = settings.max_questions_for(triage.mode)
        question_count = max(1, min(triage.estimated_questions, max_questions))

        data, _ = await self._complete_json(
            render_prompt(
                "planning.user",
                query=query,
                query_type=triage.query_type.value,
                mode=triage.mode.value,
                question_count=question_count,
                max_questions=max_questions,
            ),
            self._options("planning", default_max_tokens=2000, temperature=0.3),
            default={"questions": [], "scope": "", "fact_types": []},
        )

        raw_questions = data.get("questions")
        if not isinstance(raw_questions, list):
            raw_questions = []
        questions: list[ResearchQuestion] = []
        for raw in raw_questions:
            question = _parse_question(raw, len(questions))
            if question is not None:
                questions.append(question)
            if len(questions) >= max_questions:
                break

        if not questions:
            questions = [ResearchQuestion(id=1, text=query, expected_fact_types=["facts"])]

        fact_types = data.get("fact_types")
        plan = ResearchPlan(
            questions=questions,
            scope=str(data.get("scope") or "Research scope"),
            fact_types=[str(f) for f in fact_types] if isinstance(fact_types, list) and fact_types else ["facts"],
            verification_strategy=dict(VERIFICATION_STRATEGY),
        )
        logger.info(
            f"Planning completed: {len(plan.questions)} questions (max {max_questions}, mode {triage.mode.value})"
        )
        return plan
