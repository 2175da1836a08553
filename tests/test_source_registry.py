from __future__ import annotations

import asyncio

import pytest

from deepresearch.models.research import SourceStatus
from deepresearch.services.source_registry import SourceRegistry


def test_normalized_urls_share_one_entry():
    registry = SourceRegistry()
    first = registry.add_batch([{"url": "https://www.Example.com/a?utm_source=x", "title": "A"}], None, 1)
    second = registry.add_batch([{"url": "https://example.com/a/"}], None, 2)

    assert first == {0: 1}
    assert second == {0: 1}
    assert registry.get_count() == 1
    source = registry.get_by_id(1)
    assert source.title == "A"
    assert source.origin_question_id == 1
    assert registry.get_id_by_url("https://EXAMPLE.com/a") == 1


def test_add_batch_is_idempotent():
    registry = SourceRegistry()
    citations = [
        {"url": "https://reuters.com/markets/1"},
        {"url": "https://arxiv.org/abs/1234"},
    ]
    mapping = registry.add_batch(citations, None, 1)
    again = registry.add_batch(citations, None, 3)

    assert mapping == again == {0: 1, 1: 2}
    assert [s.id for s in registry.get_all()] == [1, 2]


def test_ids_are_sequential_and_citations_without_url_are_skipped():
    registry = SourceRegistry()
    mapping = registry.add_batch(
        [{"url": "https://a.com"}, {"title": "no url"}, {"url": "  "}, {"url": "https://b.com/x"}],
        None,
        1,
    )
    assert mapping == {0: 1, 3: 2}
    assert registry.get_by_id(2).domain == "b.com"


def test_search_result_hints_fill_title_and_date():
    registry = SourceRegistry()
    registry.add_batch(
        [{"url": "https://www.nature.com/articles/x"}],
        [{"url": "https://nature.com/articles/x/", "title": "Paper", "date": "2024-05-01"}],
        1,
    )
    source = registry.get_by_id(1)
    assert source.title == "Paper"
    assert source.date == "2024-05-01"
    assert source.domain == "nature.com"
    assert source.authority_score == 1.0
    assert source.status == SourceStatus.UNCHECKED


def test_missing_title_gets_placeholder():
    registry = SourceRegistry()
    registry.add_batch([{"url": "https://unknown-blog.net/p"}], None, 1)
    source = registry.get_by_id(1)
    assert source.title == "Source 1"
    assert source.authority_score == 0.30


def test_get_for_claim_ignores_unknown_ids():
    registry = SourceRegistry()
    registry.add_batch([{"url": "https://a.com"}, {"url": "https://b.com"}], None, 1)
    assert [s.id for s in registry.get_for_claim([2, 9, 1])] == [2, 1]


@pytest.mark.asyncio
async def test_validate_all_marks_status_and_bounds_concurrency():
    active = 0
    peak = 0
    seen_timeouts: list[int] = []

    async def fake_validator(url: str, timeout_ms: int) -> bool:
        nonlocal active, peak
        seen_timeouts.append(timeout_ms)
        active += 1
        peak = max(peak, active)
        try:
            await asyncio.sleep(0)
            if "boom" in url:
                raise RuntimeError("validator crashed")
            return "dead" not in url
        finally:
            active -= 1

    registry = SourceRegistry(url_validator=fake_validator)
    registry.add_batch(
        [
            {"url": "https://ok.com/1"},
            {"url": "https://dead.com/2"},
            {"url": "https://ok.com/3"},
            {"url": "https://boom.com/4"},
        ],
        None,
        1,
    )

    summary = await registry.validate_all(max_concurrency=2, timeout_ms=1500)

    assert (summary.total, summary.available, summary.unavailable) == (4, 2, 2)
    assert peak <= 2
    assert set(seen_timeouts) == {1500}
    assert [s.id for s in registry.get_available()] == [1, 3]
    assert registry.get_by_id(2).is_available is False
    assert registry.get_by_id(4).status == SourceStatus.UNAVAILABLE


@pytest.mark.asyncio
async def test_validate_all_on_empty_registry():
    registry = SourceRegistry()
    summary = await registry.validate_all()
    assert summary.total == 0


def test_snapshot_lists_sources():
    registry = SourceRegistry()
    registry.add_batch([{"url": "https://a.com", "title": "A"}], None, 2)
    registry.mark_unavailable(1)
    snapshot = registry.to_snapshot()
    assert snapshot[0]["url"] == "https://a.com"
    assert snapshot[0]["status"] == SourceStatus.UNAVAILABLE
