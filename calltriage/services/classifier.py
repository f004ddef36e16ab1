"""
CallTriage - Urgency Classifier

Scores a call transcript for urgency against the injected LexiconStore.

Algorithm:
    1. Pick the working language (hint, else weighted detection, ties go to
       the tenant's primary language).
    2. Match the industry + generic phrases for that language. Each matched
       phrase contributes its base weight once.
    3. Apply modifiers in fixed order: industry, cultural, repetition,
       time of day (local to the tenant, only when a phrase matched).
    4. Saturate the accumulated weight with 1 - e^(-x) into [0, 1].
    5. Compare against the tenant threshold, else the industry threshold,
       else the configured default.

Scoring never raises. An unexpected error degrades to a zero score carrying
the error text, so an emergency event is still logged rather than dropped.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calltriage.core.exceptions import ClassificationFailure
from calltriage.core.types import (
    AppliedModifier,
    CallContext,
    KeywordHit,
    ModifierKind,
    TriageResult,
    new_id,
    utcnow,
)
from calltriage.services.language import choose_language, match_phrases
from calltriage.services.lexicon import LexiconStore, create_lexicon_store, normalize_text

logger = logging.getLogger(__name__)

# (name, first hour, last hour inclusive, weight) in the tenant's local time
TIME_OF_DAY_RULES: Tuple[Tuple[str, int, int, float], ...] = (
    ("night", 22, 6, 0.10),
    ("morning_rush", 7, 9, 0.05),
    ("evening_rush", 17, 19, 0.05),
)


def saturate(raw_weight: float) -> float:
    """Monotonic, asymptotic map from accumulated weight to [0, 1]."""
    if raw_weight <= 0.0:
        return 0.0
    return min(1.0, max(0.0, 1.0 - math.exp(-raw_weight)))


class UrgencyClassifier:
    """
    Lexicon-based urgency scorer.

    The lexicon, default threshold and clock are fixed at construction; the
    classifier holds no other state and is safe to share across requests.

    Args:
        lexicon: Keyword tables and modifier policies
        default_threshold: Used when neither tenant nor industry sets one
        clock: Returns the current aware UTC datetime; injectable for tests
    """

    def __init__(
        self,
        lexicon: LexiconStore,
        default_threshold: float = 0.7,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._lexicon = lexicon
        self._default_threshold = default_threshold
        self._clock = clock

    @property
    def lexicon(self) -> LexiconStore:
        return self._lexicon

    def threshold_for(self, ctx: CallContext) -> float:
        if ctx.urgency_threshold is not None:
            return ctx.urgency_threshold
        industry_threshold = self._lexicon.threshold_for(ctx.industry_code)
        if industry_threshold is not None:
            return industry_threshold
        return self._default_threshold

    def score(self, ctx: CallContext) -> TriageResult:
        """
        Score a call for urgency.

        Returns:
            TriageResult; a zero-score result with ``error`` set if scoring failed
        """
        try:
            return self._score(ctx)
        except Exception as e:
            failure = ClassificationFailure(f"Scoring failed: {e}")
            logger.warning(
                "%s (tenant=%s); degrading to zero score",
                failure.message, ctx.tenant_id, exc_info=True,
            )
            return TriageResult.empty(
                tenant_id=ctx.tenant_id,
                call_id=ctx.call_id,
                language=ctx.primary_language,
                threshold=self._safe_threshold(ctx),
                error=failure.message,
            )

    def _safe_threshold(self, ctx: CallContext) -> float:
        try:
            return self.threshold_for(ctx)
        except Exception:
            return self._default_threshold

    def _score(self, ctx: CallContext) -> TriageResult:
        threshold = self.threshold_for(ctx)
        text = normalize_text(ctx.scan_text() or "")

        decision = choose_language(
            self._lexicon,
            text,
            ctx.industry_code,
            ctx.primary_language,
            ctx.supported_languages,
            hint=ctx.language_hint,
        )

        if not text:
            return TriageResult.empty(
                tenant_id=ctx.tenant_id,
                call_id=ctx.call_id,
                language=decision.language,
                language_source=decision.source,
                threshold=threshold,
            )

        weights = {p.phrase: p.weight for p in self._lexicon.keywords(ctx.industry_code, decision.language)}
        counts = match_phrases(text, weights)
        hits = tuple(sorted(
            (KeywordHit(phrase, weights[phrase], n) for phrase, n in counts.items()),
            key=lambda h: (-h.weight, h.phrase),
        ))
        base = sum(h.weight for h in hits)

        modifiers: List[AppliedModifier] = []
        modifiers.extend(self._industry_modifiers(ctx, hits, base))
        modifiers.extend(self._cultural_modifiers(decision.language, text))
        modifiers.extend(self._repetition_modifiers(ctx, hits))
        modifiers.extend(self._time_of_day_modifiers(ctx, base))

        raw_weight = max(0.0, base + sum(m.delta for m in modifiers))
        score = saturate(raw_weight)

        result = TriageResult(
            triage_id=new_id("tri"),
            tenant_id=ctx.tenant_id,
            call_id=ctx.call_id,
            score=score,
            detected_language=decision.language,
            language_source=decision.source,
            hits=hits,
            modifiers=tuple(modifiers),
            raw_weight=raw_weight,
            threshold=threshold,
            requires_immediate_attention=score >= threshold,
        )

        logger.debug(
            "Scored call: score=%.3f lang=%s hits=%d modifiers=%d threshold=%.2f",
            score, decision.language, len(hits), len(modifiers), threshold,
        )
        return result

    # -------------------------------------------------------------------------
    # Modifiers
    # -------------------------------------------------------------------------

    def _industry_modifiers(
        self,
        ctx: CallContext,
        hits: Tuple[KeywordHit, ...],
        base: float,
    ) -> List[AppliedModifier]:
        profile = self._lexicon.industry(ctx.industry_code)
        if profile is None:
            return []

        applied = []
        for boost in profile.boosts:
            boosted = sum(h.weight for h in hits if h.phrase in boost.phrases)
            if boosted > 0:
                applied.append(AppliedModifier(
                    ModifierKind.INDUSTRY, boost.name, boosted * (boost.factor - 1.0)
                ))

        # Weather only amplifies a call that already matched something
        if base > 0:
            for rule in profile.temperature_rules:
                if rule.applies(ctx.outside_temperature_f):
                    applied.append(AppliedModifier(ModifierKind.INDUSTRY, rule.name, rule.bonus))

        return applied

    def _cultural_modifiers(self, language: str, text: str) -> List[AppliedModifier]:
        profile = self._lexicon.language(language)
        if profile is None:
            return []
        return [
            AppliedModifier(ModifierKind.CULTURAL, idiom.name, idiom.bonus)
            for idiom in profile.idioms
            if match_phrases(text, idiom.phrases)
        ]

    def _repetition_modifiers(
        self,
        ctx: CallContext,
        hits: Tuple[KeywordHit, ...],
    ) -> List[AppliedModifier]:
        policy = self._lexicon.repetition
        turns = [normalize_text(t) for t in ctx.caller_turns()]

        bonus = 0.0
        for hit in hits:
            turn_count = sum(1 for t in turns if match_phrases(t, (hit.phrase,))) if len(turns) > 1 else 0
            repeats = max(turn_count, hit.occurrences) - 1
            if repeats > 0:
                bonus += hit.weight * policy.bonus_per_repeat * repeats

        bonus = min(bonus, policy.max_bonus)
        if bonus <= 0:
            return []
        return [AppliedModifier(ModifierKind.REPETITION, "repeated_phrases", bonus)]

    def local_hour(self, ctx: CallContext) -> int:
        """Current hour in the tenant's zone; unknown zones fall back to UTC."""
        try:
            zone = ZoneInfo(ctx.timezone or "UTC")
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r for tenant %s, using UTC", ctx.timezone, ctx.tenant_id)
            zone = ZoneInfo("UTC")
        return self._clock().astimezone(zone).hour

    def _time_of_day_modifiers(self, ctx: CallContext, base: float) -> List[AppliedModifier]:
        # Only amplifies a call that already matched something
        if base <= 0:
            return []
        hour = self.local_hour(ctx)
        for name, first, last, weight in TIME_OF_DAY_RULES:
            wraps = first > last
            if (wraps and (hour >= first or hour <= last)) or (not wraps and first <= hour <= last):
                return [AppliedModifier(ModifierKind.TIME_OF_DAY, name, weight)]
        return []


def create_classifier(
    settings,
    lexicon: Optional[LexiconStore] = None,
    clock: Callable[[], datetime] = utcnow,
) -> UrgencyClassifier:
    """Factory wiring the classifier from settings."""
    lexicon = lexicon or create_lexicon_store(settings)
    return UrgencyClassifier(lexicon, default_threshold=settings.default_urgency_threshold, clock=clock)
