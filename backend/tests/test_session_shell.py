"""
Tests for ConversationSession: greeting before capture, passive meeting
listening and teardown.
"""

import asyncio

import pytest

from conftest import ControllerHarness, FakePlayer, FakeResponder
from voicechat.orchestration.session_shell import ConversationSession
from voicechat.orchestration.wake_listener import WakeListener
from voicechat.state_machine import ConversationTurnState


def make_session(harness: ControllerHarness, greeting: str = "Merhaba!"):
    ended = []

    async def on_ended():
        ended.append(True)

    session = ConversationSession(harness.controller, greeting_text=greeting, on_ended=on_ended)
    return session, ended


class TestConversationSession:

    @pytest.mark.asyncio
    async def test_greeting_plays_before_microphone_opens(self, harness):
        session, _ = make_session(harness)

        assert await session.start()

        assert harness.timeline == ["synthesize:Merhaba!", "play", "mic"]
        assert harness.texts("assistant") == ["Merhaba!"]
        assert harness.state == ConversationTurnState.LISTENING
        assert session.is_active
        await session.stop()

    @pytest.mark.asyncio
    async def test_empty_greeting_skips_speech(self, harness):
        session, _ = make_session(harness, greeting="")

        await session.start()

        assert harness.timeline == ["mic"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_stop_during_greeting(self, fast_config):
        harness = ControllerHarness(fast_config, player=FakePlayer(auto_complete=False))
        session, _ = make_session(harness)

        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0.01)
        await session.stop()

        assert await starting is False
        assert harness.player.stop_calls == 1
        assert harness.gate.calls == 0
        assert harness.state == ConversationTurnState.IDLE

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, harness):
        session, _ = make_session(harness)
        await session.start()
        await harness.say("bütçe ne kadar")

        await session.stop()
        await session.stop()

        assert not session.is_active
        assert harness.state == ConversationTurnState.IDLE
        assert harness.engine.aborted
        assert not harness.controller.silence_timer.is_running()

    @pytest.mark.asyncio
    async def test_stop_while_thinking(self, fast_config):
        harness = ControllerHarness(fast_config, responder=FakeResponder(delay=0.2))
        session, _ = make_session(harness)
        await session.start()
        await harness.say("bütçe ne kadar")
        await asyncio.sleep(0.08)
        assert harness.state == ConversationTurnState.THINKING

        await session.stop()
        await asyncio.sleep(0.25)

        assert harness.state == ConversationTurnState.IDLE
        assert harness.texts("assistant") == ["Merhaba!"]

    @pytest.mark.asyncio
    async def test_voice_termination_notifies_once(self, harness, fast_config):
        session, ended = make_session(harness)
        await session.start()

        await harness.say("tamam görüşürüz")
        await asyncio.sleep(fast_config.farewell_grace_ms / 1000 + 0.05)

        assert ended == [True]
        assert not session.is_active
        assert harness.state == ConversationTurnState.IDLE
        assert harness.texts("assistant")[-1] == fast_config.farewell_text

    @pytest.mark.asyncio
    async def test_end_says_goodbye(self, harness, fast_config):
        session, ended = make_session(harness)
        await session.start()

        await session.end()
        assert harness.state == ConversationTurnState.ENDING
        await asyncio.sleep(fast_config.farewell_grace_ms / 1000 + 0.05)

        assert ended == [True]
        assert harness.texts("user") == []

    @pytest.mark.asyncio
    async def test_end_when_inactive_is_noop(self, harness):
        session, ended = make_session(harness)

        await session.end()

        assert harness.state == ConversationTurnState.IDLE
        assert ended == []

    @pytest.mark.asyncio
    async def test_end_during_greeting_never_opens_microphone(self, fast_config):
        harness = ControllerHarness(fast_config, player=FakePlayer(auto_complete=False))
        session, ended = make_session(harness)

        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0.01)
        await session.end()

        assert await starting is False
        assert ended == [True]
        assert harness.gate.calls == 0
        assert harness.state == ConversationTurnState.IDLE
        assert not session.is_active


def make_meeting(harness: ControllerHarness, config, greeting: str = "Merhaba!"):
    listener = WakeListener(harness.factory, harness.gate, config=config)
    ended = []
    wakes = []

    async def on_ended():
        ended.append(True)

    async def on_wake():
        wakes.append(True)

    session = ConversationSession(
        harness.controller,
        greeting_text=greeting,
        on_ended=on_ended,
        wake_listener=listener,
        on_wake=on_wake,
    )
    return session, listener, ended, wakes


async def hear(listener: WakeListener, harness: ControllerHarness, text: str):
    harness.engine.emit(text)
    await listener.flush_events()


class TestPassiveMeeting:

    @pytest.mark.asyncio
    async def test_speech_without_wake_phrase_is_not_answered(self, harness, fast_config):
        session, listener, _, wakes = make_meeting(harness, fast_config)
        assert await session.listen_for_wake()

        await hear(listener, harness, "bütçe kararı neydi")
        await asyncio.sleep(0.1)

        assert harness.responder.calls == []
        assert harness.messages == []
        assert harness.state == ConversationTurnState.IDLE
        assert wakes == []
        assert listener.transcript == "bütçe kararı neydi"
        assert session.is_waiting_for_wake
        await session.stop()

    @pytest.mark.asyncio
    async def test_wake_starts_conversation_with_meeting_transcript(self, harness, fast_config):
        harness.controller.set_meeting_context("Gündem: bütçe")
        session, listener, _, wakes = make_meeting(harness, fast_config)
        await session.listen_for_wake()
        await hear(listener, harness, "bütçe iki milyon olarak onaylandı")

        harness.engine.emit("hey asistan")
        await asyncio.sleep(0.03)

        assert wakes == [True]
        assert session.is_active
        assert not session.is_waiting_for_wake
        assert harness.state == ConversationTurnState.LISTENING
        assert harness.timeline == ["mic", "synthesize:Merhaba!", "play", "mic"]
        assert harness.controller.meeting_context == (
            "Gündem: bütçe\n\nbütçe iki milyon olarak onaylandı hey asistan"
        )

        await harness.say("bütçe ne kadar")
        await asyncio.sleep(0.1)

        assert harness.responder.calls[0]["user_text"] == "bütçe ne kadar"
        assert "iki milyon" in harness.responder.calls[0]["context_text"]
        await session.stop()

    @pytest.mark.asyncio
    async def test_end_while_waiting_for_wake(self, harness, fast_config):
        session, listener, ended, _ = make_meeting(harness, fast_config)
        await session.listen_for_wake()
        engine = harness.engine

        await session.end()

        assert ended == [True]
        assert engine.aborted
        assert not session.is_waiting_for_wake
        assert harness.synthesizer.texts == []

    @pytest.mark.asyncio
    async def test_stop_closes_wake_listener(self, harness, fast_config):
        session, listener, ended, _ = make_meeting(harness, fast_config)
        await session.listen_for_wake()

        await session.stop()

        assert not listener.is_listening
        assert harness.engine.aborted
        assert ended == []

    @pytest.mark.asyncio
    async def test_no_passive_mode_during_conversation(self, harness, fast_config):
        session, listener, _, _ = make_meeting(harness, fast_config)
        await session.start()

        assert not await session.listen_for_wake()
        assert not listener.is_listening
        await session.stop()

    @pytest.mark.asyncio
    async def test_without_wake_listener(self, harness):
        session, _ = make_session(harness)
        assert not await session.listen_for_wake()
