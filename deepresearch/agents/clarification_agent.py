from __future__ import annotations

from loguru import logger

from deepresearch.agents.base import BaseAgent
from deepresearch.models.research import ClarificationResult, Phase
from deepresearch.services.prompt_store import render_prompt

MAX_CLARIFICATION_QUESTIONS = 3


class ClarificationAgent(BaseAgent):
    """Decide whether a query is researchable as-is, and fold answers back in.

    Usage is charged to the triage phase.
    """

    name = "clarification"
    phase = Phase.TRIAGE

    async def check(self, query: str) -> ClarificationResult:
        data, _ = await self._complete_json(
            render_prompt("clarification.check", query=query),
            self._options("triage", default_max_tokens=1000, temperature=0.2),
            default={"status": "ready"},
        )
        raw_questions = data.get("questions")
        if isinstance(raw_questions, str):
            raw_questions = [raw_questions]
        elif not isinstance(raw_questions, list):
            raw_questions = []
        questions = [q.strip() for q in raw_questions if isinstance(q, str) and q.strip()][
            :MAX_CLARIFICATION_QUESTIONS
        ]

        # Anything but an explicit request with questions counts as ready.
        if data.get("status") == "needs_clarification" and questions:
            result = ClarificationResult(status="needs_clarification", questions=questions)
        else:
            result = ClarificationResult(status="ready")
        logger.info(f"Clarification check: {result.status} ({len(result.questions)} questions)")
        return result

    async def apply(self, query: str, answers: dict[int, str] | list[str]) -> str:
        """Return a self-contained reformulation of ``query`` given the answers."""
        if isinstance(answers, dict):
            items = sorted(answers.items())
        else:
            items = list(enumerate(answers))
        answers_text = "\n".join(f"Answer {int(idx) + 1}: {answer}" for idx, answer in items)

        data, _ = await self._complete_json(
            render_prompt("clarification.apply", query=query, answers=answers_text),
            self._options("triage", default_max_tokens=1000, temperature=0.2),
            default={"clarified_query": query},
        )
        clarified = data.get("clarified_query")
        if not isinstance(clarified, str) or not clarified.strip():
            return query
        return clarified.strip()
