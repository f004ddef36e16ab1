"""
CallTriage - Phrase Matching & Language Detection

Lightweight, lexicon-driven helpers used by the urgency classifier:

- match_phrases: word-bounded phrase search over folded text where the
  longest phrase wins when two candidates overlap ("gas leak" beats "leak").
- choose_language: picks the working language of a transcript from an
  explicit hint, else from weighted phrase overlap against each supported
  language, breaking ties toward the tenant's primary language.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Iterable, Optional, Sequence

from calltriage.core.types import LanguageSource
from calltriage.services.lexicon import LexiconStore


@lru_cache(maxsize=4096)
def _compile(phrase: str) -> re.Pattern:
    body = r"\s+".join(re.escape(token) for token in phrase.split())
    return re.compile(rf"(?<![\w']){body}(?![\w'])")


def match_phrases(text: str, phrases: Iterable[str]) -> Dict[str, int]:
    """
    Count non-overlapping occurrences of each phrase in ``text``.

    Both text and phrases must already be folded with ``normalize_text``.
    Longer spans are claimed first; a shorter phrase inside a claimed span is
    not counted.
    """
    if not text:
        return {}

    spans = []
    for phrase in set(phrases):
        if not phrase:
            continue
        for m in _compile(phrase).finditer(text):
            spans.append((m.start(), m.end(), phrase))

    spans.sort(key=lambda s: (-(s[1] - s[0]), s[0]))

    claimed: list[tuple[int, int]] = []
    counts: Dict[str, int] = {}
    for start, end, phrase in spans:
        if any(start < c_end and c_start < end for c_start, c_end in claimed):
            continue
        claimed.append((start, end))
        counts[phrase] = counts.get(phrase, 0) + 1
    return counts


def normalize_language_code(code: Optional[str]) -> Optional[str]:
    """'es-MX' -> 'es', 'EN_us' -> 'en'."""
    if not code:
        return None
    return code.replace("_", "-").split("-")[0].strip().lower() or None


@dataclass(frozen=True)
class LanguageDecision:
    language: str
    source: LanguageSource
    evidence: Dict[str, float] = field(default_factory=dict)


def choose_language(
    lexicon: LexiconStore,
    text: str,
    industry_code: Optional[str],
    primary_language: str,
    supported_languages: Sequence[str],
    hint: Optional[str] = None,
) -> LanguageDecision:
    """
    Decide which language lexicon to scan ``text`` with.

    Args:
        lexicon: Lexicon store
        text: Folded transcript text
        industry_code: Tenant industry (selects the keyword table)
        primary_language: Tie-break language
        supported_languages: Candidate languages configured on the tenant
        hint: Language reported by the platform, if any
    """
    ordered = [primary_language] + [l for l in supported_languages if l != primary_language]
    candidates = [l for l in ordered if lexicon.supports_language(l)]
    if not candidates:
        return LanguageDecision(primary_language, LanguageSource.DEFAULT)

    fallback = candidates[0]

    hinted = normalize_language_code(hint)
    if hinted and hinted in candidates:
        return LanguageDecision(hinted, LanguageSource.HINT)

    evidence = {lang: _language_weight(lexicon, text, industry_code, lang) for lang in candidates}
    best = max(evidence.values())
    if best <= 0.0:
        return LanguageDecision(fallback, LanguageSource.DEFAULT, evidence)

    winners = [lang for lang in candidates if math.isclose(evidence[lang], best)]
    # candidates are ordered primary-first, so a tie resolves to the primary
    return LanguageDecision(winners[0], LanguageSource.DETECTED, evidence)


def _language_weight(
    lexicon: LexiconStore,
    text: str,
    industry_code: Optional[str],
    language: str,
) -> float:
    total = 0.0

    keywords = {p.phrase: p.weight for p in lexicon.keywords(industry_code, language)}
    for phrase in match_phrases(text, keywords):
        total += keywords[phrase]

    profile = lexicon.language(language)
    if profile is not None:
        indicators = {p.phrase: p.weight for p in profile.indicators}
        for phrase in match_phrases(text, indicators):
            total += indicators[phrase]

    return total
