from __future__ import annotations

import re
from dataclasses import dataclass, field

from loguru import logger

from deepresearch.agents.base import BaseAgent
from deepresearch.config import settings
from deepresearch.models.research import MODE_ORDER, Phase, QueryType, ResearchMode, TriageResult
from deepresearch.services.prompt_store import render_prompt

DEEP_DOMAIN_KEYWORDS = (
    "systematic review",
    "peer-reviewed",
    "meta-analysis",
    "randomized",
    "legal precedent",
    "court ruling",
    "legislation analysis",
    "compare and contrast",
    "comprehensive comparison",
)
STANDARD_DOMAIN_KEYWORDS = (
    "how does",
    "what are the advantages",
    "explain the difference",
    "pros and cons",
)
EXPLICIT_DEPTH_KEYWORDS = ("deep", "comprehensive")

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]", re.MULTILINE)
_BULLET_LINE = re.compile(r"^\s*[-*•]", re.MULTILINE)


@dataclass(slots=True)
class PreTriageResult:
    floor: ResearchMode = ResearchMode.SIMPLE
    reasons: list[str] = field(default_factory=list)


def elevate(current: ResearchMode, candidate: ResearchMode) -> ResearchMode:
    """Return the higher of two modes."""
    if MODE_ORDER.index(candidate) > MODE_ORDER.index(current):
        return candidate
    return current


def pre_triage(query: str) -> PreTriageResult:
    """Deterministic minimum mode from the shape of the query."""
    result = PreTriageResult()

    word_count = len(query.split())
    if word_count > settings.pre_triage_word_count_deep:
        result.floor = elevate(result.floor, ResearchMode.DEEP)
        result.reasons.append(f"query_length: {word_count} words > {settings.pre_triage_word_count_deep}")
    elif word_count > settings.pre_triage_word_count_standard:
        result.floor = elevate(result.floor, ResearchMode.STANDARD)
        result.reasons.append(
            f"query_length: {word_count} words > {settings.pre_triage_word_count_standard}"
        )

    question_marks = query.count("?")
    if question_marks >= settings.pre_triage_question_count_deep:
        result.floor = elevate(result.floor, ResearchMode.DEEP)
        result.reasons.append(f"many_questions: {question_marks}")
    elif question_marks >= settings.pre_triage_question_count_standard:
        result.floor = elevate(result.floor, ResearchMode.STANDARD)
        result.reasons.append(f"multiple_questions: {question_marks}")

    structural = len(_NUMBERED_LINE.findall(query)) + len(_BULLET_LINE.findall(query))
    if structural >= 3:
        result.floor = elevate(result.floor, ResearchMode.STANDARD)
        result.reasons.append(f"structural_blocks: {structural}")

    lowered = query.lower()
    if any(keyword in lowered for keyword in DEEP_DOMAIN_KEYWORDS):
        result.floor = elevate(result.floor, ResearchMode.DEEP)
        result.reasons.append("deep_domain_keyword_detected")
    elif any(keyword in lowered for keyword in STANDARD_DOMAIN_KEYWORDS):
        result.floor = elevate(result.floor, ResearchMode.STANDARD)
        result.reasons.append("standard_domain_keyword_detected")

    if any(keyword in lowered for keyword in EXPLICIT_DEPTH_KEYWORDS):
        result.floor = elevate(result.floor, ResearchMode.STANDARD)
        result.reasons.append("explicit_depth_request")

    return result


def _coerce_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


class TriageAgent(BaseAgent):
    """Classify the query and pick the research mode."""

    name = "triage"
    phase = Phase.TRIAGE

    async def run(self, query: str, requested_mode: str = "auto") -> TriageResult:
        floor = pre_triage(query)

        data, _ = await self._complete_json(
            render_prompt("triage.user", query=query),
            self._options(
                "triage",
                default_max_tokens=1000,
                instructions=render_prompt("triage.instructions"),
            ),
            default={"query_type": "mixed", "complexity": 3, "estimated_questions": 5},
        )

        complexity = max(1, min(5, _coerce_int(data.get("complexity"), 3)))
        if requested_mode != "auto":
            mode = ResearchMode(requested_mode)
            mode_source = "user"
        else:
            mode = ResearchMode.SIMPLE if complexity <= 2 else ResearchMode.STANDARD
            mode = elevate(mode, floor.floor)
            mode_source = "auto"

        raw_type = str(data.get("query_type") or "")
        query_type = (
            QueryType(raw_type) if raw_type in {t.value for t in QueryType} else QueryType.MIXED
        )

        max_questions = settings.max_questions_for(mode)
        estimated = max(1, min(_coerce_int(data.get("estimated_questions"), 5), max_questions))

        cost_per_question = 0.03 if mode == ResearchMode.SIMPLE else 0.05
        seconds_per_question = 8 if mode == ResearchMode.SIMPLE else 15

        logger.info(
            f"Triage completed: type={query_type.value} mode={mode.value} source={mode_source} "
            f"complexity={complexity} floor={floor.floor.value}"
        )
        return TriageResult(
            query_type=query_type,
            mode=mode,
            mode_source=mode_source,
            estimated_questions=estimated,
            estimated_cost=(
                round(estimated * cost_per_question * 0.7, 4),
                round(estimated * cost_per_question * 1.5, 4),
            ),
            estimated_duration=(
                int(estimated * seconds_per_question * 0.7),
                int(estimated * seconds_per_question * 1.5),
            ),
            pre_triage_floor=floor.floor,
            pre_triage_reasons=floor.reasons,
        )
