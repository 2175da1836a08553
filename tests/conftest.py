from __future__ import annotations

import json
from typing import Any, Callable

import pytest

from deepresearch.llm_client import GenerateOptions, GenerationResult, TokenUsage


class ScriptedProvider:
    """Provider double that replays canned replies in call order.

    A reply may be a dict (sent as JSON text), a plain string, a
    ``GenerationResult`` or an exception instance to raise. A callable
    ``responder(prompt, options)`` takes precedence when given.
    """

    def __init__(
        self,
        replies: list[Any] | None = None,
        *,
        name: str = "scripted",
        model: str = "claude-sonnet-4-20250514",
        responder: Callable[[str, GenerateOptions], Any] | None = None,
        usage: tuple[int, int] = (100, 50),
    ):
        self.name = name
        self.model = model
        self.replies = list(replies or [])
        self.responder = responder
        self.usage = usage
        self.calls: list[tuple[str, GenerateOptions]] = []

    async def generate(self, prompt: str, options: GenerateOptions) -> GenerationResult:
        self.calls.append((prompt, options))
        if self.responder is not None:
            reply = self.responder(prompt, options)
        elif self.replies:
            reply = self.replies.pop(0)
        else:
            reply = {}
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, GenerationResult):
            return reply
        text = json.dumps(reply) if isinstance(reply, (dict, list)) else str(reply)
        return GenerationResult(
            text=text,
            usage=TokenUsage(*self.usage),
            model=options.model or self.model,
        )


@pytest.fixture
def scripted():
    return ScriptedProvider
