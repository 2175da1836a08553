"""Per-run registry of cited sources with URL dedup and availability checks."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from loguru import logger

from deepresearch.config import settings
from deepresearch.models.research import RegisteredSource, SourceStatus, ValidationSummary
from deepresearch.services import logger as log_service
from deepresearch.services.authority import get_authority_score
from deepresearch.tools.url_validator import validate_url
from deepresearch.tools.web_utils import extract_domain, normalize_url

UrlValidator = Callable[[str, int], Awaitable[bool]]


class SourceRegistry:
    """Append-only store of sources keyed by normalized URL.

    Ids are 1-based and sequential in insertion order. Only ``status`` is
    ever mutated after registration.
    """

    def __init__(self, request_id: str | None = None, url_validator: UrlValidator | None = None):
        self.request_id = request_id
        self._validate = url_validator or validate_url
        self._sources: dict[int, RegisteredSource] = {}
        self._url_index: dict[str, int] = {}
        self._next_id = 1

    def add_batch(
        self,
        citations: list[dict[str, Any]],
        search_result_hints: list[dict[str, Any]] | None,
        origin_id: int,
    ) -> dict[int, int]:
        """Register citations and return ``{input index: registry id}``.

        Citations without a URL get no mapping entry. Hints (search results)
        supply titles and dates the citation itself lacks.
        """
        hints_by_url: dict[str, dict[str, Any]] = {}
        for hint in search_result_hints or []:
            hint_url = hint.get("url")
            if isinstance(hint_url, str) and hint_url:
                hints_by_url[normalize_url(hint_url)] = hint

        mapping: dict[int, int] = {}
        for index, citation in enumerate(citations):
            url = citation.get("url") if isinstance(citation, dict) else None
            if not isinstance(url, str) or not url.strip():
                continue

            key = normalize_url(url)
            existing_id = self._url_index.get(key)
            if existing_id is not None:
                mapping[index] = existing_id
                logger.debug(f"Source deduplicated: {url} -> {existing_id}")
                continue

            source_id = self._next_id
            hint = hints_by_url.get(key, {})
            title = citation.get("title") or hint.get("title") or f"Source {source_id}"
            date = citation.get("published_date") or citation.get("date") or hint.get("date")
            source = RegisteredSource(
                id=source_id,
                url=url,
                title=str(title),
                domain=extract_domain(url),
                authority_score=get_authority_score(url),
                origin_question_id=origin_id,
                added_at=datetime.now(timezone.utc).isoformat(),
                date=str(date) if date else None,
            )
            self._sources[source_id] = source
            self._url_index[key] = source_id
            mapping[index] = source_id
            self._next_id += 1
            logger.debug(
                f"Source registered: id={source_id} domain={source.domain} authority={source.authority_score:.2f}"
            )
        return mapping

    def get_all(self) -> list[RegisteredSource]:
        return list(self._sources.values())

    def get_by_id(self, source_id: int) -> RegisteredSource | None:
        return self._sources.get(source_id)

    def get_id_by_url(self, url: str) -> int | None:
        return self._url_index.get(normalize_url(url))

    def get_for_claim(self, source_ids: list[int]) -> list[RegisteredSource]:
        return [self._sources[sid] for sid in source_ids if sid in self._sources]

    def get_available(self) -> list[RegisteredSource]:
        return [s for s in self._sources.values() if s.status == SourceStatus.AVAILABLE]

    def mark_unavailable(self, source_id: int) -> None:
        source = self._sources.get(source_id)
        if source is not None:
            source.status = SourceStatus.UNAVAILABLE

    def get_count(self) -> int:
        return len(self._sources)

    def to_snapshot(self) -> list[dict[str, Any]]:
        return [source.to_dict() for source in self._sources.values()]

    async def validate_all(
        self,
        max_concurrency: int | None = None,
        timeout_ms: int | None = None,
    ) -> ValidationSummary:
        """HEAD-check every source with a bounded number of concurrent workers."""
        sources = self.get_all()
        if not sources:
            return ValidationSummary()

        limit = max(1, max_concurrency or settings.url_validation_max_concurrency)
        timeout = timeout_ms or settings.url_validation_timeout_ms
        semaphore = asyncio.Semaphore(limit)
        started = time.monotonic()

        async def _check(source: RegisteredSource) -> bool:
            async with semaphore:
                try:
                    return bool(await self._validate(source.url, timeout))
                except Exception as exc:
                    logger.debug(f"URL check failed for {source.url}: {exc}")
                    return False

        outcomes = await asyncio.gather(*(_check(source) for source in sources))

        summary = ValidationSummary(total=len(sources))
        for source, ok in zip(sources, outcomes):
            source.status = SourceStatus.AVAILABLE if ok else SourceStatus.UNAVAILABLE
            if ok:
                summary.available += 1
            else:
                summary.unavailable += 1
                logger.warning(f"Source URL unavailable: id={source.id} url={source.url}")

        log_service.log_event(
            event_type="url_validation",
            message="URL validation completed",
            request_id=self.request_id,
            total=summary.total,
            available=summary.available,
            unavailable=summary.unavailable,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return summary
