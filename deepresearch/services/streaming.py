from __future__ import annotations

from typing import Any

from deepresearch.models.events import EventType, ResearchEvent


def progress(phase: str, message: str, percent: int, **details: Any) -> ResearchEvent:
    """Emit a phase progress event; ``percent`` is overall run progress 0-100."""
    data: dict[str, Any] = {"phase": phase, "message": message, "progress": percent}
    if details:
        data["details"] = details
    return ResearchEvent(event=EventType.PROGRESS, data=data)


def clarification_needed(research_id: str, questions: list[str]) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.CLARIFICATION_NEEDED,
        data={"research_id": research_id, "questions": questions},
    )


def completed(research_id: str, result: dict[str, Any]) -> ResearchEvent:
    return ResearchEvent(
        event=EventType.COMPLETED,
        data={"research_id": research_id, "result": result},
    )


def error(message: str, error_code: str, phase: str | None = None) -> ResearchEvent:
    data: dict[str, Any] = {"error_code": error_code, "message": message}
    if phase:
        data["phase"] = phase
    return ResearchEvent(event=EventType.ERROR, data=data)
