from __future__ import annotations

import math
import re
from typing import Any

from loguru import logger

from deepresearch.agents.base import AgentContext, BaseAgent, ProgressCallback
from deepresearch.config import settings
from deepresearch.exceptions import ProviderError
from deepresearch.llm_client import Provider
from deepresearch.models.research import (
    AtomicClaim,
    BudgetDecision,
    ClaimType,
    Phase,
    ResearchAnswer,
    ResearchMode,
    VerificationLevel,
    VerificationOutcome,
    VerificationResult,
    VerificationStatus,
)
from deepresearch.services.prompt_store import render_prompt
from deepresearch.services.source_registry import SourceRegistry
from deepresearch.services.verification_level import select_level

SIMPLIFIED_CONFIDENCE = 0.70
ANALYTICAL_CONFIDENCE = 0.7
SPECULATIVE_CONFIDENCE = 0.5
SKIPPED_CONFIDENCE = 0.5
DEEP_CHECK_ERROR_CONFIDENCE = 0.3
EVIDENCE_CHARS = 1500

_MARKER = re.compile(r"\[(?:src_)?(\d+)\]")
_CLAIM_TYPES = {t.value for t in ClaimType}
_STATUSES = {s.value for s in VerificationStatus}


def _as_marker(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def bind_sources(raw_claim: dict[str, Any], answer: ResearchAnswer) -> list[int]:
    """Resolve a decomposed claim's citation markers to registry ids.

    The structured ``source_indices`` (or legacy ``source_index``) field wins;
    ``[N]`` / ``[src_N]`` markers in the claim text are the fallback. Markers
    that are malformed or point outside the answer's citations are dropped.
    """
    raw_indices = raw_claim.get("source_indices")
    if raw_indices is None and "source_index" in raw_claim:
        raw_indices = [raw_claim.get("source_index")]
    markers: list[int] = []
    if isinstance(raw_indices, list):
        markers = [m for m in (_as_marker(v) for v in raw_indices) if m is not None]

    source_ids = _resolve(markers, answer.citation_mapping)
    if not source_ids:
        text = raw_claim.get("text")
        if isinstance(text, str):
            source_ids = _resolve([int(m) for m in _MARKER.findall(text)], answer.citation_mapping)
    return source_ids


def _resolve(markers: list[int], mapping: dict[int, int]) -> list[int]:
    resolved: list[int] = []
    for marker in markers:
        source_id = mapping.get(marker)
        if source_id is not None and source_id not in resolved:
            resolved.append(source_id)
    return resolved


def _parse_value(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def apply_source_availability(
    outcome: VerificationOutcome,
    registry: SourceRegistry,
    cap: float | None = None,
) -> int:
    """Clamp confidence of claims whose every cited source is unavailable.

    Returns how many results were clamped. Claims stay in the outcome.
    """
    cap = settings.unavailable_source_confidence_cap if cap is None else cap
    claims = {claim.id: claim for claim in outcome.claims}
    clamped = 0
    for result in outcome.results:
        claim = claims.get(result.claim_id)
        if claim is None or not claim.source_ids:
            continue
        sources = registry.get_for_claim(claim.source_ids)
        if sources and all(not source.is_available for source in sources):
            if result.confidence > cap:
                result.confidence = cap
                clamped += 1
    if clamped:
        logger.info(f"Clamped {clamped} claims with only unavailable sources to {cap:.2f}")
    return clamped


class VerificationAgent(BaseAgent):
    """Decompose answers into atomic claims and fact-check them under budget."""

    name = "verification"
    phase = Phase.VERIFICATION

    def __init__(
        self,
        provider: Provider,
        context: AgentContext,
        *,
        decomposition_model: str | None = None,
        deep_check_model: str | None = None,
        adaptive_enabled: bool | None = None,
        min_remaining_ratio: float | None = None,
        per_claim_cost_usd: float | None = None,
    ):
        super().__init__(provider, context)
        self.decomposition_model = decomposition_model or settings.openai_model_claim_decomposition
        self.deep_check_model = deep_check_model or settings.openai_model_deep_check
        self.adaptive_enabled = (
            settings.adaptive_verification_enabled if adaptive_enabled is None else adaptive_enabled
        )
        self.min_remaining_ratio = (
            settings.adaptive_verification_min_remaining if min_remaining_ratio is None else min_remaining_ratio
        )
        self.per_claim_cost_usd = (
            settings.verification_cost_per_claim_usd if per_claim_cost_usd is None else per_claim_cost_usd
        )

    def _select(self, mode: ResearchMode, outstanding: int) -> VerificationLevel:
        return select_level(
            mode,
            self.context.budget,
            outstanding,
            adaptive_enabled=self.adaptive_enabled,
            min_remaining_ratio=self.min_remaining_ratio,
            per_claim_cost_usd=self.per_claim_cost_usd,
        )

    def _degrade(self, tag: str) -> None:
        if self.context.budget is not None:
            self.context.budget.add_degradation(tag)

    def _stopped(self) -> bool:
        budget = self.context.budget
        return budget is not None and budget.can_continue(Phase.VERIFICATION) == BudgetDecision.STOP

    async def run(
        self,
        answers: list[ResearchAnswer],
        mode: ResearchMode,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> VerificationOutcome:
        answered = [a for a in answers if a.has_content]
        level = self._select(mode, 0)
        if level == VerificationLevel.SKIPPED:
            logger.warning("Verification skipped by budget")
            self._degrade("verification_skipped")
            return self._skipped_outcome(answered)

        claims = await self._decompose(answered)
        results: list[VerificationResult] = []
        checkable: list[AtomicClaim] = []
        for claim in claims:
            if claim.type == ClaimType.ANALYTICAL:
                results.append(
                    VerificationResult(
                        claim_id=claim.id,
                        status=VerificationStatus.VERIFIED,
                        confidence=ANALYTICAL_CONFIDENCE,
                        explanation="Analytical claim; underlying facts are checked separately",
                    )
                )
            elif claim.type == ClaimType.SPECULATIVE:
                results.append(
                    VerificationResult(
                        claim_id=claim.id,
                        status=VerificationStatus.UNVERIFIABLE,
                        confidence=SPECULATIVE_CONFIDENCE,
                        explanation="Marked as speculation or opinion",
                    )
                )
            elif claim.type == ClaimType.NUMERICAL and not claim.source_ids:
                results.append(
                    VerificationResult(
                        claim_id=claim.id,
                        status=VerificationStatus.UNVERIFIABLE,
                        confidence=0.0,
                        explanation="Numerical claim without a cited source",
                    )
                )
            else:
                checkable.append(claim)

        # Budget may have moved during decomposition.
        level = self._select(mode, len(checkable))
        if level == VerificationLevel.FULL:
            results.extend(await self._deep_check_all(checkable, on_progress))
        elif level == VerificationLevel.SIMPLIFIED:
            if checkable:
                self._degrade("deep_check_skipped")
            results.extend(self._simplified(claim, "Simplified verification (no deep check)") for claim in checkable)
        else:
            self._degrade("verification_skipped")
            results.extend(
                VerificationResult(
                    claim_id=claim.id,
                    status=VerificationStatus.UNVERIFIABLE,
                    confidence=SKIPPED_CONFIDENCE,
                    explanation="Verification skipped due to budget constraints",
                )
                for claim in checkable
            )

        results.sort(key=lambda r: r.claim_id)
        verified = sum(1 for r in results if r.status == VerificationStatus.VERIFIED)
        logger.info(
            f"Verification completed: level={level.value} claims={len(claims)} verified={verified}"
        )
        return VerificationOutcome(level=level, claims=claims, results=results)

    async def _decompose(self, answers: list[ResearchAnswer]) -> list[AtomicClaim]:
        claims: list[AtomicClaim] = []
        for answer in answers:
            if self._stopped():
                logger.warning("Claim decomposition stopped by budget")
                self._degrade("decomposition_truncated")
                break
            options = self._options(
                "claim_decomposition",
                default_max_tokens=3000,
                temperature=0.2,
                instructions=render_prompt("verification.decompose_instructions"),
                model=self.decomposition_model,
            )
            try:
                data, _ = await self._complete_json(
                    render_prompt("verification.decompose_user", text=answer.response),
                    options,
                    default={"claims": []},
                )
            except ProviderError as exc:
                logger.error(f"Claim decomposition failed for question {answer.question_id}: {exc}")
                continue

            raw_claims = data.get("claims")
            for raw in raw_claims if isinstance(raw_claims, list) else []:
                if not isinstance(raw, dict):
                    continue
                text = raw.get("text")
                if not isinstance(text, str) or not text.strip():
                    continue
                ctype = raw.get("type")
                claim_type = (
                    ClaimType(ctype) if isinstance(ctype, str) and ctype in _CLAIM_TYPES else ClaimType.FACTUAL
                )
                claims.append(
                    AtomicClaim(
                        id=len(claims) + 1,
                        text=text.strip(),
                        type=claim_type,
                        source_question_id=answer.question_id,
                        original_context=answer.response[:EVIDENCE_CHARS],
                        value=_parse_value(raw.get("value")) if claim_type == ClaimType.NUMERICAL else None,
                        unit=str(raw["unit"]) if claim_type == ClaimType.NUMERICAL and raw.get("unit") else None,
                        source_ids=bind_sources(raw, answer),
                    )
                )
        numerical = sum(1 for c in claims if c.type == ClaimType.NUMERICAL)
        unsourced = sum(1 for c in claims if not c.source_ids)
        logger.info(f"Claims decomposed: {len(claims)} (numerical={numerical}, unsourced={unsourced})")
        return claims

    async def _deep_check_all(
        self,
        claims: list[AtomicClaim],
        on_progress: ProgressCallback | None,
    ) -> list[VerificationResult]:
        results: list[VerificationResult] = []
        for index, claim in enumerate(claims):
            if self._stopped():
                logger.warning(
                    f"Deep check stopped by budget: {index} checked, {len(claims) - index} remaining"
                )
                self._degrade("deep_check_truncated")
                results.extend(
                    self._simplified(remaining, "Verification budget exceeded, simplified check")
                    for remaining in claims[index:]
                )
                break
            if on_progress:
                await on_progress(index + 1, len(claims), claim.text[:60])
            results.append(await self._deep_check(claim))
        return results

    async def _deep_check(self, claim: AtomicClaim) -> VerificationResult:
        options = self._options(
            "deep_check",
            default_max_tokens=500,
            instructions=render_prompt("verification.deep_check_instructions"),
            model=self.deep_check_model,
        )
        try:
            data, _ = await self._complete_json(
                render_prompt(
                    "verification.deep_check_user",
                    claim=claim.text,
                    evidence=claim.original_context,
                ),
                options,
                default={
                    "status": "unverifiable",
                    "confidence": 0.5,
                    "explanation": "Failed to parse verification result",
                },
            )
        except ProviderError as exc:
            logger.error(f"Deep check failed for claim {claim.id}: {exc}")
            return VerificationResult(
                claim_id=claim.id,
                status=VerificationStatus.UNVERIFIABLE,
                confidence=DEEP_CHECK_ERROR_CONFIDENCE,
                explanation="Deep check failed due to error",
            )

        status = data.get("status")
        try:
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        if not math.isfinite(confidence):
            confidence = 0.5
        correction = data.get("correction")
        return VerificationResult(
            claim_id=claim.id,
            status=(
                VerificationStatus(status)
                if isinstance(status, str) and status in _STATUSES
                else VerificationStatus.UNVERIFIABLE
            ),
            confidence=max(0.0, min(1.0, confidence)),
            explanation=str(data.get("explanation") or ""),
            correction=correction.strip() if isinstance(correction, str) and correction.strip() else None,
        )

    @staticmethod
    def _simplified(claim: AtomicClaim, explanation: str) -> VerificationResult:
        return VerificationResult(
            claim_id=claim.id,
            status=VerificationStatus.VERIFIED,
            confidence=SIMPLIFIED_CONFIDENCE,
            explanation=explanation,
        )

    @staticmethod
    def _skipped_outcome(answers: list[ResearchAnswer]) -> VerificationOutcome:
        claims: list[AtomicClaim] = []
        results: list[VerificationResult] = []
        for answer in answers:
            claim_id = len(claims) + 1
            claims.append(
                AtomicClaim(
                    id=claim_id,
                    text=answer.response[:200],
                    type=ClaimType.FACTUAL,
                    source_question_id=answer.question_id,
                    original_context=answer.response[:EVIDENCE_CHARS],
                    source_ids=list(dict.fromkeys(answer.citation_mapping.values())),
                )
            )
            results.append(
                VerificationResult(
                    claim_id=claim_id,
                    status=VerificationStatus.UNVERIFIABLE,
                    confidence=SKIPPED_CONFIDENCE,
                    explanation="Verification skipped due to budget constraints",
                )
            )
        return VerificationOutcome(level=VerificationLevel.SKIPPED, claims=claims, results=results)
