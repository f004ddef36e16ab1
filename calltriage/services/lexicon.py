"""
CallTriage - Lexicon Store

Per-industry, per-language tables of emergency phrases with severity weights,
plus the modifier tables the classifier applies on top of them. Pure data:
the store is built once at startup and injected read-only into the
classifier.

Layout of a lexicon mapping (the YAML file uses the same shape):

    repetition: {bonus_per_repeat: 0.15, max_bonus: 0.5}
    languages:
      en:
        indicators: {"the": 0.1, ...}
        cultural:
          - {name: polite_request, bonus: 0.1, phrases: ["please help"]}
    industries:
      generic:
        keywords: {en: {"emergency": 0.8}, es: {...}}
      hvac:
        threshold: 0.7
        keywords: {en: {"no heat": 1.0}, es: {...}}
        boosts:
          - {name: gas_hazard, factor: 1.5, phrases: ["gas leak", ...]}
        temperature:
          - {name: freezing_weather, below_f: 32, bonus: 0.3}
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from calltriage.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

GENERIC_INDUSTRY = "generic"


def normalize_text(text: str) -> str:
    """
    Fold text for matching: strip accents, casefold, unify apostrophes and
    hyphens, collapse whitespace.
    """
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    folded = stripped.casefold().replace("’", "'").replace("-", " ")
    return " ".join(folded.split())


# =============================================================================
# Lexicon Records
# =============================================================================

@dataclass(frozen=True)
class WeightedPhrase:
    phrase: str
    weight: float


@dataclass(frozen=True)
class PhraseBoost:
    """Industry multiplier applied to the base weight of listed phrases."""
    name: str
    factor: float
    phrases: Tuple[str, ...]


@dataclass(frozen=True)
class TemperatureRule:
    """Industry bonus driven by outside temperature; amplifies existing matches only."""
    name: str
    bonus: float
    below_f: Optional[float] = None
    above_f: Optional[float] = None

    def applies(self, temperature_f: Optional[float]) -> bool:
        if temperature_f is None:
            return False
        if self.below_f is not None and temperature_f < self.below_f:
            return True
        if self.above_f is not None and temperature_f > self.above_f:
            return True
        return False


@dataclass(frozen=True)
class CulturalIdiom:
    """Phrasing that signals urgency indirectly in a given language."""
    name: str
    bonus: float
    phrases: Tuple[str, ...]


@dataclass(frozen=True)
class IndustryProfile:
    code: str
    keywords: Dict[str, Tuple[WeightedPhrase, ...]] = field(default_factory=dict)
    boosts: Tuple[PhraseBoost, ...] = ()
    temperature_rules: Tuple[TemperatureRule, ...] = ()
    threshold: Optional[float] = None


@dataclass(frozen=True)
class LanguageProfile:
    code: str
    indicators: Tuple[WeightedPhrase, ...] = ()
    idioms: Tuple[CulturalIdiom, ...] = ()


@dataclass(frozen=True)
class RepetitionPolicy:
    bonus_per_repeat: float = 0.15
    max_bonus: float = 0.5


# =============================================================================
# Store
# =============================================================================

class LexiconStore:
    """
    Read-only lookup over industry and language profiles.

    Unknown industries resolve to the generic lexicon with no industry
    profile, so no industry modifier fires for them.
    """

    def __init__(
        self,
        industries: Mapping[str, IndustryProfile],
        languages: Mapping[str, LanguageProfile],
        repetition: Optional[RepetitionPolicy] = None,
    ):
        if GENERIC_INDUSTRY not in industries:
            raise ConfigurationError("Lexicon must define a 'generic' industry")
        self._industries = dict(industries)
        self._languages = dict(languages)
        self.repetition = repetition or RepetitionPolicy()
        self._keyword_cache: Dict[Tuple[str, str], Tuple[WeightedPhrase, ...]] = {}

    @property
    def languages(self) -> Tuple[str, ...]:
        return tuple(self._languages)

    @property
    def industries(self) -> Tuple[str, ...]:
        return tuple(self._industries)

    def supports_language(self, code: str) -> bool:
        return code in self._languages

    def language(self, code: str) -> Optional[LanguageProfile]:
        return self._languages.get(code)

    def industry(self, code: Optional[str]) -> Optional[IndustryProfile]:
        """Profile for a specific industry; None for generic or unknown codes."""
        if not code or code == GENERIC_INDUSTRY:
            return None
        return self._industries.get(code)

    def threshold_for(self, industry_code: Optional[str]) -> Optional[float]:
        profile = self.industry(industry_code)
        return profile.threshold if profile else None

    def keywords(self, industry_code: Optional[str], language: str) -> Tuple[WeightedPhrase, ...]:
        """
        Industry phrases merged with the generic phrases for a language.
        A phrase present in both keeps the higher weight.
        """
        key = (industry_code or GENERIC_INDUSTRY, language)
        cached = self._keyword_cache.get(key)
        if cached is not None:
            return cached

        merged: Dict[str, WeightedPhrase] = {}
        sources = [self._industries[GENERIC_INDUSTRY]]
        profile = self.industry(industry_code)
        if profile is not None:
            sources.append(profile)

        for source in sources:
            for entry in source.keywords.get(language, ()):
                folded = normalize_text(entry.phrase)
                current = merged.get(folded)
                if current is None or entry.weight > current.weight:
                    merged[folded] = WeightedPhrase(folded, entry.weight)

        result = tuple(merged.values())
        self._keyword_cache[key] = result
        return result

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LexiconStore":
        try:
            industries = {
                code: _parse_industry(code, body or {})
                for code, body in (data.get("industries") or {}).items()
            }
            languages = {
                code: _parse_language(code, body or {})
                for code, body in (data.get("languages") or {}).items()
            }
            repetition = RepetitionPolicy(**(data.get("repetition") or {}))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigurationError(f"Invalid lexicon definition: {e}") from e
        return cls(industries, languages, repetition)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "LexiconStore":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Lexicon file not found: {path}")
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        store = cls.from_mapping(data)
        logger.info(
            "Loaded lexicon from %s: %d industries, %d languages",
            path, len(store.industries), len(store.languages),
        )
        return store

    @classmethod
    def default(cls) -> "LexiconStore":
        return cls.from_mapping(DEFAULT_LEXICON)


def create_lexicon_store(settings) -> LexiconStore:
    """Build the lexicon from LEXICON_PATH if set, else the built-in tables."""
    if settings.lexicon_path:
        return LexiconStore.from_yaml(settings.lexicon_path)
    return LexiconStore.default()


def _phrases(table: Mapping[str, Any]) -> Tuple[WeightedPhrase, ...]:
    return tuple(WeightedPhrase(str(p), float(w)) for p, w in table.items())


def _parse_industry(code: str, body: Mapping[str, Any]) -> IndustryProfile:
    keywords = {lang: _phrases(table or {}) for lang, table in (body.get("keywords") or {}).items()}
    boosts = tuple(
        PhraseBoost(
            name=b["name"],
            factor=float(b["factor"]),
            phrases=tuple(normalize_text(p) for p in b.get("phrases", [])),
        )
        for b in body.get("boosts") or []
    )
    rules = tuple(
        TemperatureRule(
            name=r["name"],
            bonus=float(r["bonus"]),
            below_f=r.get("below_f"),
            above_f=r.get("above_f"),
        )
        for r in body.get("temperature") or []
    )
    threshold = body.get("threshold")
    return IndustryProfile(
        code=code,
        keywords=keywords,
        boosts=boosts,
        temperature_rules=rules,
        threshold=float(threshold) if threshold is not None else None,
    )


def _parse_language(code: str, body: Mapping[str, Any]) -> LanguageProfile:
    idioms = tuple(
        CulturalIdiom(
            name=i["name"],
            bonus=float(i["bonus"]),
            phrases=tuple(normalize_text(p) for p in i.get("phrases", [])),
        )
        for i in body.get("cultural") or []
    )
    return LanguageProfile(
        code=code,
        indicators=tuple(
            WeightedPhrase(normalize_text(p.phrase), p.weight)
            for p in _phrases(body.get("indicators") or {})
        ),
        idioms=idioms,
    )


# =============================================================================
# Built-in Tables
# =============================================================================

DEFAULT_LEXICON: Dict[str, Any] = {
    "repetition": {"bonus_per_repeat": 0.15, "max_bonus": 0.5},
    "languages": {
        "en": {
            "indicators": {
                "the": 0.1, "my": 0.1, "is": 0.1, "it's": 0.1, "there": 0.1,
                "with": 0.1, "and": 0.1, "please": 0.1, "help": 0.1, "i": 0.1,
            },
            "cultural": [
                {"name": "polite_request", "bonus": 0.1,
                 "phrases": ["please help", "please hurry", "please come"]},
                {"name": "understated_urgency", "bonus": 0.15,
                 "phrases": ["a bit of a problem", "not to bother you",
                             "if it's not too much trouble", "when you get a chance"]},
            ],
        },
        "es": {
            "indicators": {
                "el": 0.1, "la": 0.1, "mi": 0.1, "es": 0.1, "esta": 0.1,
                "hay": 0.1, "con": 0.1, "que": 0.1, "por favor": 0.1,
                "ayuda": 0.1, "tengo": 0.1, "los": 0.1,
            },
            "cultural": [
                {"name": "formal_request", "bonus": 0.1,
                 "phrases": ["le agradeceria", "disculpe la molestia",
                             "si fuera posible", "por favor ayudeme"]},
                {"name": "distress_exclamation", "bonus": 0.3,
                 "phrases": ["ay dios", "dios mio", "auxilio", "socorro"]},
            ],
        },
    },
    "industries": {
        "generic": {
            "keywords": {
                "en": {
                    "emergency": 0.8, "urgent": 0.6, "dangerous": 0.7,
                    "fire": 1.2, "smoke": 0.9, "flooding": 1.0,
                    "gas leak": 1.5, "smell gas": 1.4, "carbon monoxide": 1.5,
                    "injured": 1.0, "immediately": 0.5, "right away": 0.4,
                },
                "es": {
                    "emergencia": 0.8, "urgente": 0.6, "peligroso": 0.7,
                    "incendio": 1.2, "fuego": 1.0, "humo": 0.9, "inundacion": 1.0,
                    "fuga de gas": 1.5, "olor a gas": 1.4,
                    "monoxido de carbono": 1.5, "herido": 1.0,
                    "inmediatamente": 0.5, "ahora mismo": 0.4,
                },
            },
        },
        "hvac": {
            "threshold": 0.7,
            "keywords": {
                "en": {
                    "no heat": 1.0, "heater not working": 0.9,
                    "furnace not working": 0.9, "freezing": 0.6,
                    "no air conditioning": 0.8, "no ac": 0.8, "too hot": 0.4,
                    "gas smell": 1.4, "co alarm": 1.2, "burning smell": 0.9,
                },
                "es": {
                    "sin calefaccion": 1.0, "no hay calefaccion": 1.0,
                    "no funciona la calefaccion": 0.9, "congelando": 0.6,
                    "mucho frio": 0.5, "sin aire acondicionado": 0.8,
                    "olor a quemado": 0.9,
                },
            },
            "boosts": [
                {"name": "gas_hazard", "factor": 1.5,
                 "phrases": ["gas leak", "gas smell", "smell gas", "carbon monoxide",
                             "co alarm", "fuga de gas", "olor a gas",
                             "monoxido de carbono"]},
            ],
            "temperature": [
                {"name": "freezing_weather", "below_f": 32, "bonus": 0.3},
                {"name": "extreme_heat", "above_f": 90, "bonus": 0.2},
            ],
        },
        "plumbing": {
            "threshold": 0.7,
            "keywords": {
                "en": {
                    "burst pipe": 1.2, "pipe burst": 1.2, "water everywhere": 0.9,
                    "sewage backup": 1.0, "sewage": 0.7, "no water": 0.7,
                    "overflowing": 0.7, "leak": 0.5, "frozen pipes": 0.9,
                    "water heater leaking": 0.8,
                },
                "es": {
                    "tuberia rota": 1.2, "se revento la tuberia": 1.2,
                    "agua por todas partes": 0.9, "aguas negras": 1.0,
                    "sin agua": 0.7, "fuga de agua": 0.6,
                    "tuberias congeladas": 0.9,
                },
            },
            "boosts": [
                {"name": "water_damage", "factor": 1.2,
                 "phrases": ["flooding", "burst pipe", "pipe burst",
                             "inundacion", "tuberia rota", "se revento la tuberia"]},
            ],
            "temperature": [
                {"name": "pipe_freeze_risk", "below_f": 32, "bonus": 0.3},
            ],
        },
        "electrical": {
            "threshold": 0.65,
            "keywords": {
                "en": {
                    "sparking": 1.2, "sparks": 1.1, "electrical fire": 1.5,
                    "burning smell": 1.0, "power outage": 0.7, "no power": 0.7,
                    "exposed wires": 1.0, "shock": 0.9, "outlet smoking": 1.3,
                },
                "es": {
                    "chispas": 1.2, "incendio electrico": 1.5,
                    "olor a quemado": 1.0, "sin luz": 0.7, "apagon": 0.7,
                    "cables expuestos": 1.0, "descarga electrica": 1.0,
                },
            },
            "boosts": [
                {"name": "fire_risk", "factor": 1.3,
                 "phrases": ["sparking", "sparks", "electrical fire", "outlet smoking",
                             "burning smell", "chispas", "incendio electrico",
                             "olor a quemado"]},
            ],
        },
        "property_management": {
            "threshold": 0.75,
            "keywords": {
                "en": {
                    "locked out": 0.6, "break in": 1.0, "broken window": 0.6,
                    "no heat": 0.9, "water leak": 0.7, "gas smell": 1.0,
                    "elevator stuck": 1.0,
                    "fire alarm": 0.9,
                },
                "es": {
                    "cerrado afuera": 0.6, "robo": 1.0, "ventana rota": 0.6,
                    "sin calefaccion": 0.9, "fuga de agua": 0.7,
                    "ascensor atascado": 1.0, "alarma de incendio": 0.9,
                },
            },
        },
    },
}
