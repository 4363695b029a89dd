"""
Unit tests for UtteranceBuffer.

Tests the critical rule: interim fragments never reach the turn text.
"""

import pytest
from voicechat.models import TranscriptFragment
from voicechat.orchestration.utterance_buffer import UtteranceBuffer


def final(text):
    return TranscriptFragment(text=text, is_final=True)


def interim(text):
    return TranscriptFragment(text=text, is_final=False)


class TestUtteranceBuffer:
    """Test utterance buffer functionality."""

    def test_initialization(self):
        """Test buffer starts empty and unlocked."""
        buffer = UtteranceBuffer()
        assert buffer.get_text() == ""
        assert buffer.get_current_partial() == ""
        assert buffer.get_display_text() == ""
        assert not buffer.is_locked()
        assert not buffer.has_text()

    def test_interim_is_display_only(self):
        buffer = UtteranceBuffer()
        buffer.add(interim("bütçe ne"))

        assert buffer.get_current_partial() == "bütçe ne"
        assert buffer.get_display_text() == "bütçe ne"
        assert buffer.get_text() == ""
        assert not buffer.has_text()

    def test_finals_are_concatenated(self):
        buffer = UtteranceBuffer()
        buffer.add(final("toplantıda"))
        buffer.add(final("ne"))
        buffer.add(final("konuşuldu"))

        assert buffer.get_text() == "toplantıda ne konuşuldu"

    def test_final_clears_partial(self):
        buffer = UtteranceBuffer()
        buffer.add(interim("karar ver"))
        buffer.add(final("karar verildi"))

        assert buffer.get_current_partial() == ""
        assert buffer.get_display_text() == "karar verildi"

    def test_display_text_combines_finals_and_partial(self):
        buffer = UtteranceBuffer()
        buffer.add(final("bütçe"))
        buffer.add(interim("ne kadar"))

        assert buffer.get_display_text() == "bütçe ne kadar"
        assert buffer.get_text() == "bütçe"

    def test_empty_final_ignored(self):
        buffer = UtteranceBuffer()
        buffer.add(final("   "))

        assert not buffer.has_text()

    def test_buffer_locking(self):
        """Test lock drops new fragments."""
        buffer = UtteranceBuffer()
        buffer.add(final("ilk"))
        buffer.lock()

        assert not buffer.add(interim("yok sayılır"))
        assert not buffer.add(final("bu da"))

        assert buffer.get_text() == "ilk"
        assert buffer.get_current_partial() == ""

    def test_unlock_accepts_again(self):
        buffer = UtteranceBuffer()
        buffer.lock()
        buffer.unlock()

        assert buffer.add(final("kabul"))
        assert buffer.get_text() == "kabul"

    def test_clear_resets_and_unlocks(self):
        buffer = UtteranceBuffer()
        buffer.add(interim("yarım"))
        buffer.add(final("tam"))
        buffer.lock()

        buffer.clear()

        assert buffer.get_display_text() == ""
        assert not buffer.is_locked()
