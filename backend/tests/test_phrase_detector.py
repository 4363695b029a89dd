"""
Unit tests for wake/termination phrase matching.
"""

import pytest
from voicechat.config import Settings
from voicechat.orchestration.phrase_detector import PhraseDetector, matches, normalize


class TestNormalize:

    def test_lowercases_and_trims(self):
        assert normalize("  Hey ASISTAN  ") == "hey asistan"

    def test_collapses_whitespace(self):
        assert normalize("hey \t  asistan\n") == "hey asistan"


class TestDefaultPhrases:
    """Configured phrase sets."""

    @pytest.mark.parametrize("text", [
        "hey asistan",
        "Hey Asistan, bütçe ne kadar?",
        "tamam hey assistant",
        "heyasistan",
        "merhaba asistan nasılsın",
        "hey asis",
        "heyasis bir sorum var",
    ])
    def test_wake_forms(self, text):
        assert PhraseDetector().is_wake(text)

    @pytest.mark.parametrize("text", [
        "görüşürüz",
        "Tamam, görüşürüz!",
        "gorusuruz",
        "toplantıyı bitir lütfen",
        "toplantiyi bitir",
    ])
    def test_termination_forms(self, text):
        assert PhraseDetector().is_termination(text)

    @pytest.mark.parametrize("text", ["", "   ", "hey", "asistan", "toplantı bitti mi"])
    def test_non_matches(self, text):
        detector = PhraseDetector()
        assert not detector.is_wake(text)
        assert not detector.is_termination(text)

    def test_every_phrase_set_has_ascii_folded_variant(self):
        s = Settings(_env_file=None)
        for phrases in (s.wake_phrases, s.termination_phrases):
            assert any(phrase.isascii() for phrase in phrases)

    def test_detector_uses_configured_sets(self):
        s = Settings(_env_file=None)
        detector = PhraseDetector()
        assert list(detector.wake_phrases) == s.wake_phrases
        assert list(detector.termination_phrases) == s.termination_phrases


class TestCustomPhrases:

    def test_custom_sets_are_normalized(self):
        detector = PhraseDetector(wake_phrases=["  OK Bot "], termination_phrases=["Bitti"])
        assert detector.is_wake("ok bot bütçe")
        assert detector.is_termination("tamam BITTI")
        assert not detector.is_wake("hey asistan")

    def test_matches_any_phrase(self):
        assert matches("bir iki üç", ["dört", "iki"])
        assert not matches("bir iki üç", [])
