"""Prompt templates kept in a JSON catalog and rendered with ``string.Template``.

Keys are dotted paths into the catalog (``"verification.deep_check_user"``).
The file is re-read when its mtime changes, so prompts can be edited without
a restart.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"

LANGUAGE_NAMES = {
    "en": "English",
    "ru": "Russian",
    "de": "German",
    "fr": "French",
    "es": "Spanish",
}


class PromptCatalog:
    def __init__(self, path: Path = PROMPTS_PATH):
        self.path = Path(path)
        self._payload: dict[str, Any] | None = None
        self._mtime_ns: int | None = None

    def load(self) -> dict[str, Any]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._payload is not None and self._mtime_ns == mtime_ns:
            return self._payload

        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Prompt catalog must be a JSON object: {self.path}")
        self._payload = payload
        self._mtime_ns = mtime_ns
        return payload

    def template(self, key: str) -> Template:
        node: Any = self.load()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt key not found: {key}")
            node = node[part]
        if not isinstance(node, str):
            raise TypeError(f"Prompt key must map to a string: {key}")
        return Template(node)

    def render(self, key: str, **values: Any) -> str:
        template = self.template(key)
        try:
            return template.substitute(**values)
        except KeyError as exc:
            raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc

    def keys(self) -> list[str]:
        found: list[str] = []

        def _walk(node: Any, prefix: str) -> None:
            for name, child in node.items():
                path = f"{prefix}.{name}" if prefix else name
                if isinstance(child, dict):
                    _walk(child, path)
                elif isinstance(child, str):
                    found.append(path)

        _walk(self.load(), "")
        return found

    def clear(self) -> None:
        self._payload = None
        self._mtime_ns = None


_catalog = PromptCatalog()


def render_prompt(key: str, **values: Any) -> str:
    return _catalog.render(key, **values)


def prompt_keys() -> list[str]:
    return _catalog.keys()


def language_name(code: str) -> str:
    """Human-readable language name for prompts; unknown codes pass through."""
    return LANGUAGE_NAMES.get(code.lower(), code)
