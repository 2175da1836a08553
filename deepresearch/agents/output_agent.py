"""Report synthesis from verified claims, with quality metrics and grading."""
from __future__ import annotations

from statistics import mean

from loguru import logger

from deepresearch.agents.base import BaseAgent
from deepresearch.config import settings
from deepresearch.models.research import (
    ClaimType,
    Phase,
    ReportClaim,
    ReportFormat,
    ReportSource,
    ResearchMode,
    ResearchOutput,
    QualityMetrics,
    VerificationLevel,
    VerificationOutcome,
    VerificationStatus,
)
from deepresearch.models.schemas import ResearchOptions
from deepresearch.services.authority import get_authority_label
from deepresearch.services.prompt_store import language_name, render_prompt
from deepresearch.services.source_registry import SourceRegistry

_PASSING = (VerificationStatus.VERIFIED, VerificationStatus.PARTIALLY_CORRECT)

FORMAT_GUIDES = {
    ReportFormat.NARRATIVE: "Write a structured narrative report with headings and paragraphs.",
    ReportFormat.BULLET_LIST: "Write a concise bullet list, one bullet per fact, grouped under short headings.",
    ReportFormat.MINIMAL: (
        "Write a short note listing only the facts below and state plainly that reliable "
        "information on this topic was limited."
    ),
}

_TEXT = {
    "en": {
        "sources": "## Sources",
        "no_facts": "No facts could be verified for this query.",
        "omitted": (
            "Part of the found information ({pct}%) was excluded from the report as it could not be "
            "verified. The report contains only verified facts."
        ),
        "simplified": "Fact verification was simplified due to budget limits; claims were not checked against evidence.",
        "skipped": "Fact verification was skipped due to budget limits; the claims below are unverified.",
        "breaker": "The research budget limit was reached; the report may be incomplete.",
    },
    "ru": {
        "sources": "## Источники",
        "no_facts": "Не удалось подтвердить ни одного факта по этому запросу.",
        "omitted": (
            "Часть найденной информации ({pct}%) была исключена из отчёта, так как не удалось "
            "подтвердить её достоверность. Отчёт содержит только верифицированные факты."
        ),
        "simplified": "Проверка фактов была упрощена из-за ограничений бюджета.",
        "skipped": "Проверка фактов была пропущена из-за ограничений бюджета; факты не подтверждены.",
        "breaker": "Достигнут лимит бюджета исследования; отчёт может быть неполным.",
    },
}


def _text(language: str) -> dict[str, str]:
    return _TEXT.get(language, _TEXT["en"])


def select_claims(
    outcome: VerificationOutcome,
    threshold: float,
    include_unverified: bool,
) -> tuple[list[ReportClaim], list[ReportClaim]]:
    """Split verified claims into (included, omitted).

    A claim is included when its confidence reaches ``threshold``, when it is
    speculative, or when it is unverifiable and ``include_unverified`` is set.
    """
    claims = {claim.id: claim for claim in outcome.claims}
    included: list[ReportClaim] = []
    omitted: list[ReportClaim] = []
    for result in outcome.results:
        claim = claims.get(result.claim_id)
        if claim is None:
            continue
        keep = (
            result.confidence >= threshold
            or claim.type == ClaimType.SPECULATIVE
            or (include_unverified and result.status == VerificationStatus.UNVERIFIABLE)
        )
        report_claim = ReportClaim(
            id=claim.id,
            text=(result.correction or claim.text) if keep else claim.text,
            type=claim.type,
            status=result.status,
            confidence=result.confidence,
            source_ids=list(claim.source_ids),
            correction=result.correction,
            value=claim.value,
            unit=claim.unit,
        )
        if keep:
            included.append(report_claim)
        else:
            report_claim.omit_reason = (
                f"Confidence {result.confidence * 100:.0f}% below threshold {threshold * 100:.0f}%"
            )
            omitted.append(report_claim)
    return included, omitted


def build_sources(registry: SourceRegistry, claims: list[ReportClaim]) -> list[ReportSource]:
    sources = [
        ReportSource(
            id=source.id,
            url=source.url,
            title=source.title,
            domain=source.domain,
            authority=source.authority_score,
            is_available=source.is_available,
            date=source.date,
        )
        for source in registry.get_all()
    ]
    by_id = {source.id: source for source in sources}
    for claim in claims:
        for source_id in claim.source_ids:
            if source_id in by_id:
                by_id[source_id].used_in_claims.append(claim.id)
    return sources


def grade_for(score: float) -> str:
    if score >= settings.grade_a_threshold:
        return "A"
    if score >= settings.grade_b_threshold:
        return "B"
    if score >= settings.grade_c_threshold:
        return "C"
    return "F"


def calculate_quality_metrics(
    outcome: VerificationOutcome,
    included: list[ReportClaim],
    sources: list[ReportSource],
    omitted_count: int,
) -> QualityMetrics:
    total = len(outcome.results)
    claim_types = {claim.id: claim.type for claim in outcome.claims}
    verified = sum(1 for r in outcome.results if r.status == VerificationStatus.VERIFIED)
    partially = sum(1 for r in outcome.results if r.status == VerificationStatus.PARTIALLY_CORRECT)
    unverified = sum(1 for r in outcome.results if r.status == VerificationStatus.UNVERIFIABLE)
    corrected = sum(1 for r in outcome.results if r.correction)

    pass_rate = (verified + partially) / total if total else 0.0
    coverage = sum(1 for c in included if c.source_ids) / len(included) if included else 0.0
    authority = mean(s.authority for s in sources) if sources else 0.0
    correction_rate = corrected / total if total else 0.0
    omission_rate = omitted_count / total if total else 0.0

    composite = round(
        pass_rate * 0.45 + coverage * 0.30 + authority * 0.15 + (1 - correction_rate) * 0.10,
        2,
    )
    return QualityMetrics(
        composite_score=composite,
        grade=grade_for(composite),
        verification_pass_rate=round(pass_rate, 2),
        citation_coverage=round(coverage, 2),
        source_authority_score=round(authority, 2),
        correction_rate=round(correction_rate, 2),
        omission_rate=round(omission_rate, 2),
        facts_total=total,
        facts_verified=verified,
        facts_partially_correct=partially,
        facts_unverified=unverified,
        facts_omitted=omitted_count,
        facts_numerical=sum(1 for t in claim_types.values() if t == ClaimType.NUMERICAL),
        sources_count=len(sources),
    )


def choose_report_format(grade: str, verified_facts: int, mode: ResearchMode) -> ReportFormat:
    if grade in ("A", "B"):
        if verified_facts >= settings.narrative_threshold_for(mode):
            return ReportFormat.NARRATIVE
        return ReportFormat.BULLET_LIST
    if grade == "C":
        return ReportFormat.BULLET_LIST
    return ReportFormat.MINIMAL


def build_disclaimer(
    omission_rate: float,
    level: VerificationLevel,
    breaker_triggered: bool,
    language: str = "en",
) -> str | None:
    text = _text(language)
    notes: list[str] = []
    if level == VerificationLevel.SIMPLIFIED:
        notes.append(text["simplified"])
    elif level == VerificationLevel.SKIPPED:
        notes.append(text["skipped"])
    if breaker_triggered:
        notes.append(text["breaker"])
    if omission_rate > 0.3:
        notes.append(text["omitted"].format(pct=round(omission_rate * 100)))
    if not notes:
        return None
    return "\n\n".join(f"⚠️ **Note:** {note}" for note in notes)


def format_sources_section(sources: list[ReportSource], language: str = "en") -> str:
    if not sources:
        return ""
    lines = [
        f"[{s.id}] [{s.title or s.domain}]({s.url}) - {s.domain} {get_authority_label(s.authority)}"
        for s in sorted(sources, key=lambda s: s.authority, reverse=True)
    ]
    return _text(language)["sources"] + "\n\n" + "\n".join(lines)


def split_sources_section(report: str) -> str:
    """Return the report body without the trailing sources section."""
    for text in _TEXT.values():
        marker = "\n\n" + text["sources"]
        if marker in report:
            return report.rsplit(marker, 1)[0]
    return report


class OutputAgent(BaseAgent):
    """Write the final report from included claims only."""

    name = "output"
    phase = Phase.OUTPUT

    async def run(
        self,
        query: str,
        outcome: VerificationOutcome,
        registry: SourceRegistry,
        options: ResearchOptions,
        mode: ResearchMode,
    ) -> ResearchOutput:
        included, omitted = select_claims(outcome, options.confidence_threshold, options.include_unverified)
        sources = build_sources(registry, included)
        quality = calculate_quality_metrics(outcome, included, sources, len(omitted))

        facts = [c for c in included if c.status in _PASSING]
        report_format = choose_report_format(quality.grade, len(facts), mode)
        text = _text(options.language)

        if facts:
            facts_text = "\n".join(
                f"- {c.text} " + "".join(f"[{sid}]" for sid in c.source_ids) for c in facts
            )
            data, _ = await self._complete_json(
                render_prompt(
                    "output.user",
                    query=query,
                    report_format=report_format.value,
                    format_guide=FORMAT_GUIDES[report_format],
                    facts=facts_text,
                    language_name=language_name(options.language),
                ),
                self._options(
                    "output",
                    default_max_tokens=8000,
                    temperature=0.3,
                    instructions=render_prompt("output.instructions"),
                ),
                default={"report": "", "summary": ""},
            )
            body = str(data.get("report") or "").strip() or facts_text
            summary = str(data.get("summary") or "").strip()
        else:
            logger.warning("No verified facts to synthesize, writing minimal report")
            body = text["no_facts"]
            summary = text["no_facts"]

        budget = self.context.budget
        breaker_triggered = budget is not None and budget.circuit_breaker.triggered
        disclaimer = build_disclaimer(quality.omission_rate, outcome.level, breaker_triggered, options.language)

        sources_section = format_sources_section(sources, options.language)
        report = f"{body}\n\n{sources_section}" if sources_section else body

        logger.info(
            f"Output synthesized: included={len(included)} omitted={len(omitted)} sources={len(sources)} "
            f"score={quality.composite_score:.2f} grade={quality.grade} format={report_format.value}"
        )
        return ResearchOutput(
            report=report,
            summary=summary,
            report_format=report_format,
            claims=included,
            omitted_claims=omitted if options.include_unverified else [],
            sources=sources,
            quality=quality,
            grade=quality.grade,
            disclaimer=disclaimer,
        )
