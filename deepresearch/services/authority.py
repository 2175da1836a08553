"""Domain authority scoring for registered sources.

Tier 1 (0.90-1.00) official and academic, tier 2 (0.70-0.90) established
media and companies, tier 3 (0.50-0.70) reference works, tier 4 user content.
"""
from __future__ import annotations

from deepresearch.tools.web_utils import extract_domain

DEFAULT_AUTHORITY = 0.30

# Suffix patterns start with "."; everything else matches exact host, then substring.
AUTHORITY_SCORES: dict[str, float] = {
    ".gov": 0.95,
    ".gov.ru": 0.95,
    ".edu": 0.90,
    "nature.com": 1.00,
    "science.org": 1.00,
    "pubmed.ncbi.nlm.nih.gov": 0.95,
    "arxiv.org": 0.90,
    "scholar.google.com": 0.90,
    "ieee.org": 0.90,
    "who.int": 0.95,
    "un.org": 0.95,
    "worldbank.org": 0.90,
    "imf.org": 0.90,
    "oecd.org": 0.90,
    "reuters.com": 0.85,
    "bloomberg.com": 0.85,
    "wsj.com": 0.85,
    "nytimes.com": 0.80,
    "ft.com": 0.85,
    "economist.com": 0.85,
    "bbc.com": 0.80,
    "bbc.co.uk": 0.80,
    "theguardian.com": 0.75,
    "forbes.com": 0.75,
    "cnbc.com": 0.75,
    "techcrunch.com": 0.70,
    "wired.com": 0.70,
    "arstechnica.com": 0.70,
    "tass.ru": 0.80,
    "ria.ru": 0.75,
    "interfax.ru": 0.80,
    "vedomosti.ru": 0.75,
    "kommersant.ru": 0.75,
    "rbc.ru": 0.70,
    "apple.com": 0.90,
    "google.com": 0.90,
    "microsoft.com": 0.90,
    "tesla.com": 0.90,
    "amazon.com": 0.85,
    "wikipedia.org": 0.65,
    "britannica.com": 0.75,
    "investopedia.com": 0.70,
    "statista.com": 0.70,
    "crunchbase.com": 0.65,
    "medium.com": 0.50,
    "reddit.com": 0.40,
    "quora.com": 0.35,
    "stackoverflow.com": 0.55,
    "habr.com": 0.55,
    "vc.ru": 0.50,
}


def get_authority_score(url: str) -> float:
    domain = extract_domain(url)
    if not domain:
        return DEFAULT_AUTHORITY

    if domain in AUTHORITY_SCORES:
        return AUTHORITY_SCORES[domain]

    for pattern, score in AUTHORITY_SCORES.items():
        if pattern.startswith(".") and domain.endswith(pattern):
            return score

    # subdomain.nature.com and friends
    for pattern, score in AUTHORITY_SCORES.items():
        if not pattern.startswith(".") and pattern in domain:
            return score

    return DEFAULT_AUTHORITY


def get_authority_tier(score: float) -> str:
    if score >= 0.90:
        return "tier1_high"
    if score >= 0.70:
        return "tier2_established"
    if score >= 0.50:
        return "tier3_medium"
    return "tier4_low"


def get_authority_label(score: float) -> str:
    if score >= 0.90:
        return "★★★★★"
    if score >= 0.80:
        return "★★★★☆"
    if score >= 0.70:
        return "★★★☆☆"
    if score >= 0.50:
        return "★★☆☆☆"
    return "★☆☆☆☆"
