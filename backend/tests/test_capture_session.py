"""
Unit tests for CaptureSession.

Tests permission handling, auto-restart, the restart → recreate escalation
and dropping of callbacks from replaced engine instances.
"""

import asyncio

import pytest

from conftest import FakeEngineFactory, FakeMicGate
from voicechat.errors import EngineUnsupportedError, PermissionDeniedError
from voicechat.models import RecognitionResult
from voicechat.orchestration.capture_session import CaptureEventType, CaptureSession

RESTART = 0.005


def make_session(factory=None, gate=None, **kwargs):
    events = []
    session = CaptureSession(
        engine_factory=factory or FakeEngineFactory(),
        microphone_gate=gate or FakeMicGate(),
        on_event=events.append,
        restart_delay_ms=kwargs.pop("restart_delay_ms", 5),
        max_restart_attempts=kwargs.pop("max_restart_attempts", 3),
        **kwargs,
    )
    return session, events


class TestOpenClose:
    """Microphone acquisition and teardown."""

    @pytest.mark.asyncio
    async def test_open_starts_one_engine(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)

        assert await session.open()

        assert len(factory.engines) == 1
        assert factory.latest.start_calls == 1
        assert session.active
        assert session.has_engine
        assert [e.type for e in events] == [CaptureEventType.STARTED]
        await session.close()

    @pytest.mark.asyncio
    async def test_denied_permission_raises_without_engine(self):
        factory = FakeEngineFactory()
        gate = FakeMicGate(granted=False)
        session, _ = make_session(factory, gate)

        with pytest.raises(PermissionDeniedError):
            await session.open()

        assert factory.engines == []
        assert session.permission_error
        assert gate.calls == 1

    @pytest.mark.asyncio
    async def test_unsupported_engine_raises(self):
        session, _ = make_session(FakeEngineFactory(unsupported=True))

        with pytest.raises(EngineUnsupportedError):
            await session.open()

        assert not session.has_engine

    @pytest.mark.asyncio
    async def test_reopen_aborts_prior_instance(self):
        factory = FakeEngineFactory()
        session, _ = make_session(factory)

        await session.open()
        await session.open()

        assert len(factory.engines) == 2
        assert factory.engines[0].aborted
        assert not factory.engines[1].aborted
        await session.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        factory = FakeEngineFactory()
        session, _ = make_session(factory)
        await session.open()

        await session.close()
        await session.close()

        assert factory.latest.aborted
        assert not session.active
        assert not session.has_engine

    @pytest.mark.asyncio
    async def test_close_disables_auto_restart(self):
        factory = FakeEngineFactory()
        session, _ = make_session(factory)
        await session.open()
        engine = factory.latest

        engine.end()
        await session.close()
        await asyncio.sleep(RESTART * 4)

        assert engine.start_calls == 1
        assert len(factory.engines) == 1


class TestAutoRestart:
    """Restart policy after the engine ends on its own."""

    @pytest.mark.asyncio
    async def test_lifecycle_end_restarts_same_instance(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)
        await session.open()

        factory.latest.end()
        await asyncio.sleep(RESTART * 4)

        assert factory.latest.start_calls == 2
        assert len(factory.engines) == 1
        assert [e.type for e in events] == [
            CaptureEventType.STARTED,
            CaptureEventType.LIFECYCLE_END,
            CaptureEventType.STARTED,
        ]
        await session.close()

    @pytest.mark.asyncio
    async def test_transient_error_then_end_restarts_once(self):
        factory = FakeEngineFactory()
        session, _ = make_session(factory)
        await session.open()

        factory.latest.error("network")
        factory.latest.end()
        await asyncio.sleep(RESTART * 4)

        assert factory.latest.start_calls == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_aborted_error_does_not_restart(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)
        await session.open()

        factory.latest.error("aborted")
        await asyncio.sleep(RESTART * 4)

        assert factory.latest.start_calls == 1
        assert events[-1].error_kind == "aborted"
        assert not events[-1].fatal
        await session.close()

    @pytest.mark.asyncio
    async def test_no_speech_is_benign(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)
        await session.open()

        factory.latest.error("no-speech")
        await asyncio.sleep(RESTART * 4)

        assert factory.latest.start_calls == 1
        assert not events[-1].fatal

        factory.latest.end()
        await asyncio.sleep(RESTART * 4)
        assert factory.latest.start_calls == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_engine_permission_error_is_fatal(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)
        await session.open()

        factory.latest.error("not-allowed")
        factory.latest.end()
        await asyncio.sleep(RESTART * 4)

        fatal = [e for e in events if e.fatal]
        assert len(fatal) == 1
        assert fatal[0].error_kind == "not-allowed"
        assert factory.latest.start_calls == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_fragment_resets_restart_counter(self):
        factory = FakeEngineFactory(default="silent")
        session, _ = make_session(factory, max_restart_attempts=10)
        await session.open()
        engine = factory.latest

        engine.end()
        await asyncio.sleep(RESTART * 4)
        engine.end()
        await asyncio.sleep(RESTART * 4)
        assert session.restart_attempts == 2

        engine.emit("merhaba", is_final=False)

        assert session.restart_attempts == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_clean_start_resets_restart_counter(self):
        factory = FakeEngineFactory()
        session, _ = make_session(factory)
        await session.open()

        factory.latest.end()
        await asyncio.sleep(RESTART * 4)

        assert session.restart_attempts == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_recreate_once_bound_exceeded(self):
        """Engine dies on every start: 3 bare restarts, then exactly one recreate."""
        factory = FakeEngineFactory(behaviors=["die"])
        session, _ = make_session(factory, max_restart_attempts=3)

        await session.open()
        await asyncio.sleep(0.1)

        assert session.recreate_count == 1
        assert len(factory.engines) == 2
        assert factory.engines[0].start_calls == 4
        assert factory.engines[0].aborted
        assert factory.engines[1].running
        assert session.restart_attempts == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_quiet_period_lengthens_restart_delay(self):
        now = [1000.0]
        session, _ = make_session(
            restart_delay_ms=100,
            quiet_period_ms=30000,
            quiet_restart_multiplier=2.0,
            clock=lambda: now[0],
        )
        await session.open()

        assert session.restart_delay() == 100

        now[0] += 31
        assert session.restart_delay() == 200
        await session.close()


class TestResults:
    """Result mapping and stale instances."""

    @pytest.mark.asyncio
    async def test_interim_emitted_before_final(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)
        await session.open()

        factory.latest.listener.on_result([
            RecognitionResult(alternatives=["bütçe"], is_final=True),
            RecognitionResult(alternatives=["ne kadar"], is_final=False),
            RecognitionResult(alternatives=["  "], is_final=False),
        ])

        fragments = [e.fragment for e in events if e.type == CaptureEventType.FRAGMENT]
        assert [(f.text, f.is_final) for f in fragments] == [
            ("ne kadar", False),
            ("bütçe", True),
        ]
        await session.close()

    @pytest.mark.asyncio
    async def test_callbacks_from_replaced_engine_are_dropped(self):
        factory = FakeEngineFactory()
        session, events = make_session(factory)
        await session.open()
        old_engine = factory.latest
        await session.open()
        events.clear()

        old_engine.emit("eski")
        old_engine.end()
        old_engine.error("network")
        await asyncio.sleep(RESTART * 4)

        assert events == []
        assert factory.latest.start_calls == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_close_during_permission_prompt(self):
        factory = FakeEngineFactory()
        release = asyncio.Event()

        class SlowGate:
            async def request_access(self):
                await release.wait()
                return True

        session, _ = make_session(factory, SlowGate())
        opening = asyncio.create_task(session.open())
        await asyncio.sleep(0)

        await session.close()
        release.set()

        assert await opening is False
        assert factory.engines == []
