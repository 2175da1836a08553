from __future__ import annotations

import json
import os

import pytest

from deepresearch.services.prompt_store import PromptCatalog, language_name, prompt_keys, render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("verification.deep_check_user", claim="Sales hit 10M", evidence="Sales were 10M")
    assert 'CLAIM: "Sales hit 10M"' in prompt
    assert 'EVIDENCE: "Sales were 10M"' in prompt


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError, match="query"):
        render_prompt("triage.user")


def test_catalog_has_every_phase_prompt():
    keys = set(prompt_keys())
    assert {
        "triage.user",
        "clarification.check",
        "clarification.apply",
        "planning.user",
        "research.instructions",
        "verification.decompose_user",
        "verification.deep_check_user",
        "output.user",
        "quality_gate.user",
    } <= keys


def test_catalog_reloads_when_file_changes(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"greeting": {"user": "Hello $name"}}), encoding="utf-8")
    catalog = PromptCatalog(path)
    assert catalog.render("greeting.user", name="Ada") == "Hello Ada"

    path.write_text(json.dumps({"greeting": {"user": "Hi $name"}}), encoding="utf-8")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))
    assert catalog.render("greeting.user", name="Ada") == "Hi Ada"


def test_catalog_rejects_non_string_leaf_and_non_object_file(tmp_path):
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps({"section": {"nested": {"x": "y"}}}), encoding="utf-8")
    with pytest.raises(TypeError):
        PromptCatalog(path).template("section.nested")

    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError):
        PromptCatalog(path).load()


def test_language_name():
    assert language_name("RU") == "Russian"
    assert language_name("pt") == "pt"
