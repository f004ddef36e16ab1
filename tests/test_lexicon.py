"""
CallTriage - Lexicon & Language Tests

Tests for the lexicon store and the phrase/language helpers.
These tests verify:
- Built-in tables and industry thresholds
- Loading lexicons from mappings and YAML
- Word-bounded, longest-first phrase matching
- Language choice: hint, weighted detection, primary tie-break

Run with: pytest tests/test_lexicon.py -v
"""

import pytest

from calltriage.core.exceptions import ConfigurationError
from calltriage.core.types import LanguageSource
from calltriage.services.language import choose_language, match_phrases, normalize_language_code
from calltriage.services.lexicon import LexiconStore, create_lexicon_store, normalize_text


MINIMAL_LEXICON = {
    "languages": {"en": {}, "es": {}},
    "industries": {
        "generic": {"keywords": {"en": {"help": 0.2}, "es": {"ayuda": 0.2}}},
        "pest": {
            "threshold": 0.5,
            "keywords": {"en": {"wasp nest": 0.9, "help": 0.4}},
        },
    },
}


class TestLexiconStore:
    """Tests for lexicon lookups."""

    def test_default_tables(self, lexicon: LexiconStore):
        """Should ship the generic table plus the four industries."""
        assert set(lexicon.industries) == {"generic", "hvac", "plumbing", "electrical", "property_management"}
        assert set(lexicon.languages) == {"en", "es"}

    def test_industry_thresholds(self, lexicon: LexiconStore):
        """Should expose per-industry thresholds."""
        assert lexicon.threshold_for("hvac") == 0.7
        assert lexicon.threshold_for("electrical") == 0.65
        assert lexicon.threshold_for("property_management") == 0.75
        assert lexicon.threshold_for("landscaping") is None

    def test_generic_and_unknown_have_no_profile(self, lexicon: LexiconStore):
        """Should return no industry profile for generic or unknown codes."""
        assert lexicon.industry("generic") is None
        assert lexicon.industry("landscaping") is None
        assert lexicon.industry(None) is None
        assert lexicon.industry("hvac") is not None

    def test_keywords_merge_generic_and_industry(self, lexicon: LexiconStore):
        """Should merge generic phrases into every industry table."""
        phrases = {p.phrase: p.weight for p in lexicon.keywords("hvac", "en")}
        assert phrases["no heat"] == 1.0
        assert phrases["gas leak"] == 1.5

    def test_merge_keeps_higher_weight(self):
        """Should keep the higher weight when a phrase is in both tables."""
        store = LexiconStore.from_mapping(MINIMAL_LEXICON)
        phrases = {p.phrase: p.weight for p in store.keywords("pest", "en")}
        assert phrases["help"] == 0.4

    def test_unknown_language_has_no_keywords(self, lexicon: LexiconStore):
        """Should return nothing for a language the lexicon lacks."""
        assert lexicon.keywords("hvac", "fr") == ()


class TestLexiconLoading:
    """Tests for building lexicons from data."""

    def test_from_mapping(self):
        """Should build a store from a plain mapping."""
        store = LexiconStore.from_mapping(MINIMAL_LEXICON)
        assert store.threshold_for("pest") == 0.5
        assert store.supports_language("es")

    def test_missing_generic_rejected(self):
        """Should require a generic industry."""
        with pytest.raises(ConfigurationError):
            LexiconStore.from_mapping({"industries": {"hvac": {}}})

    def test_malformed_weights_rejected(self):
        """Should wrap bad weights in a ConfigurationError."""
        bad = {"industries": {"generic": {"keywords": {"en": {"fire": "very"}}}}}
        with pytest.raises(ConfigurationError):
            LexiconStore.from_mapping(bad)

    def test_from_yaml(self, tmp_path):
        """Should load a lexicon from a YAML file."""
        path = tmp_path / "lexicon.yaml"
        path.write_text(
            "languages:\n"
            "  en: {}\n"
            "industries:\n"
            "  generic:\n"
            "    keywords:\n"
            "      en:\n"
            "        tornado: 1.3\n",
            encoding="utf-8",
        )

        store = LexiconStore.from_yaml(path)
        assert [p.phrase for p in store.keywords(None, "en")] == ["tornado"]

    def test_missing_yaml_file(self, tmp_path):
        """Should raise ConfigurationError for a missing file."""
        with pytest.raises(ConfigurationError):
            LexiconStore.from_yaml(tmp_path / "nope.yaml")

    def test_factory_defaults_to_builtin(self, test_settings):
        """Should use the built-in tables when no path is configured."""
        store = create_lexicon_store(test_settings)
        assert "hvac" in store.industries


class TestPhraseMatching:
    """Tests for normalize_text and match_phrases."""

    def test_normalize_folds_accents_case_and_hyphens(self):
        """Should strip accents, casefold and unify punctuation."""
        assert normalize_text("  Inundación  en la CASA ") == "inundacion en la casa"
        assert normalize_text("It’s a co-alarm") == "it's a co alarm"

    def test_word_boundaries(self):
        """Should not match inside longer words."""
        assert match_phrases("the fireplace is fine", ["fire"]) == {}
        assert match_phrases("fire in the fireplace", ["fire"]) == {"fire": 1}

    def test_longest_match_claims_span(self):
        """Should count the longer phrase and skip the shorter one inside it."""
        counts = match_phrases("gas leak and another leak", ["leak", "gas leak"])
        assert counts == {"gas leak": 1, "leak": 1}

    def test_counts_occurrences(self):
        """Should count repeated occurrences."""
        assert match_phrases("help help help", ["help"]) == {"help": 3}

    def test_flexible_whitespace(self):
        """Should match multi-word phrases across extra whitespace."""
        assert match_phrases("no   heat", ["no heat"]) == {"no heat": 1}

    def test_empty_text(self):
        """Should return nothing for empty text."""
        assert match_phrases("", ["fire"]) == {}


class TestLanguageChoice:
    """Tests for choose_language."""

    def test_normalize_language_code(self):
        """Should reduce locale tags to the base language."""
        assert normalize_language_code("es-MX") == "es"
        assert normalize_language_code("EN_us") == "en"
        assert normalize_language_code("") is None
        assert normalize_language_code(None) is None

    def test_hint_takes_precedence(self, lexicon: LexiconStore):
        """Should use a supported hint even when the text looks different."""
        decision = choose_language(lexicon, "no heat", "hvac", "en", ("en", "es"), hint="es")
        assert decision.language == "es"
        assert decision.source == LanguageSource.HINT

    def test_detects_spanish(self, lexicon: LexiconStore):
        """Should detect Spanish from weighted phrase overlap."""
        text = normalize_text("Mi calefacción no funciona, no hay calefacción")
        decision = choose_language(lexicon, text, "hvac", "en", ("en", "es"))

        assert decision.language == "es"
        assert decision.source == LanguageSource.DETECTED
        assert decision.evidence["es"] > decision.evidence["en"]

    def test_tie_goes_to_primary(self):
        """Should break ties toward the primary language."""
        store = LexiconStore.from_mapping(MINIMAL_LEXICON)
        decision = choose_language(store, "help ayuda", None, "es", ("en", "es"))
        assert decision.language == "es"

    def test_no_evidence_defaults(self, lexicon: LexiconStore):
        """Should fall back to the primary language with no evidence."""
        decision = choose_language(lexicon, "xyz", "hvac", "es", ("es", "en"))
        assert decision.language == "es"
        assert decision.source == LanguageSource.DEFAULT

    def test_unsupported_languages_skipped(self, lexicon: LexiconStore):
        """Should skip tenant languages the lexicon does not cover."""
        decision = choose_language(lexicon, "no heat", "hvac", "fr", ("fr", "en"))
        assert decision.language == "en"
