"""
Shared fakes for the turn-taking tests.

Every external collaborator (recognition engine, microphone gate, response
generator, synthesizer, player) has an in-memory stand-in that records what
happened, so tests can drive the controller with real short sleeps.
"""

import asyncio
from typing import List, Optional

import pytest

from voicechat.config import Settings
from voicechat.errors import EngineUnsupportedError, PlaybackError
from voicechat.models import GeneratedResponse, RecognitionResult
from voicechat.orchestration.turn_controller import TurnController


class FakeEngine:
    """
    Recognition engine driven by the test.

    behavior on start():
        "start"  - reports on_start
        "silent" - reports nothing
        "die"    - reports on_end immediately
    """

    def __init__(self, listener, behavior: str = "start"):
        self.listener = listener
        self.behavior = behavior
        self.start_calls = 0
        self.stop_calls = 0
        self.aborted = False
        self.running = False

    async def start(self):
        self.start_calls += 1
        if self.aborted:
            return
        if self.behavior == "start":
            self.running = True
            self.listener.on_start()
        elif self.behavior == "die":
            self.listener.on_end()

    async def stop(self):
        self.stop_calls += 1
        self.running = False
        self.listener.on_end()

    async def abort(self):
        self.aborted = True
        self.running = False

    # Test drivers

    def emit(self, text: str, is_final: bool = True):
        self.listener.on_result([RecognitionResult(alternatives=[text], is_final=is_final)])

    def end(self):
        self.running = False
        self.listener.on_end()

    def error(self, kind: str):
        self.listener.on_error(kind)


class FakeEngineFactory:
    """Builds FakeEngines; behaviors are consumed in order, then default."""

    def __init__(self, behaviors: Optional[List[str]] = None, default: str = "start", unsupported: bool = False):
        self.behaviors = list(behaviors or [])
        self.default = default
        self.unsupported = unsupported
        self.engines: List[FakeEngine] = []

    def __call__(self, listener) -> FakeEngine:
        if self.unsupported:
            raise EngineUnsupportedError("no engine available")
        behavior = self.behaviors.pop(0) if self.behaviors else self.default
        engine = FakeEngine(listener, behavior)
        self.engines.append(engine)
        return engine

    @property
    def latest(self) -> FakeEngine:
        return self.engines[-1]


class FakeMicGate:
    def __init__(self, granted: bool = True, timeline: Optional[list] = None):
        self.granted = granted
        self.calls = 0
        self.timeline = timeline if timeline is not None else []

    async def request_access(self) -> bool:
        self.calls += 1
        self.timeline.append("mic")
        return self.granted


class FakeResponder:
    """Response generator returning a fixed answer (or raising error)."""

    def __init__(self, text: str = "Toplantıda bütçe konuşuldu.", delay: float = 0.0, error: Optional[Exception] = None):
        self.text = text
        self.delay = delay
        self.error = error
        self.calls = []

    async def generate(self, user_text, context_text, history) -> GeneratedResponse:
        self.calls.append({
            "user_text": user_text,
            "context_text": context_text,
            "history": list(history),
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GeneratedResponse(text=self.text)


class FakeSynthesizer:
    def __init__(self, audio: Optional[bytes] = b"mp3-bytes", timeline: Optional[list] = None):
        self.audio = audio
        self.texts: List[str] = []
        self.timeline = timeline if timeline is not None else []

    async def synthesize(self, text: str) -> Optional[bytes]:
        self.texts.append(text)
        self.timeline.append(f"synthesize:{text}")
        return self.audio


class FakePlayer:
    """
    Playback device.

    auto_complete=True finishes immediately; otherwise play() waits until
    finish() or stop() is called.
    """

    def __init__(self, auto_complete: bool = True, fail: bool = False, timeline: Optional[list] = None):
        self.auto_complete = auto_complete
        self.fail = fail
        self.played: List[bytes] = []
        self.stop_calls = 0
        self.timeline = timeline if timeline is not None else []
        self._done: Optional[asyncio.Event] = None

    async def play(self, audio: bytes):
        self.played.append(audio)
        self.timeline.append("play")
        if self.fail:
            raise PlaybackError("device unavailable")
        if self.auto_complete:
            return
        self._done = asyncio.Event()
        await self._done.wait()

    async def stop(self):
        self.stop_calls += 1
        self.finish()

    def finish(self):
        if self._done is not None:
            self._done.set()


class ControllerHarness:
    """TurnController wired to fakes, recording every callback."""

    def __init__(self, config: Settings, **fakes):
        self.timeline: list = []
        self.factory = fakes.get("factory") or FakeEngineFactory()
        self.gate = fakes.get("gate") or FakeMicGate(timeline=self.timeline)
        self.responder = fakes.get("responder") or FakeResponder()
        self.synthesizer = fakes.get("synthesizer") or FakeSynthesizer(timeline=self.timeline)
        self.player = fakes.get("player") or FakePlayer(timeline=self.timeline)

        self.transitions = []
        self.snapshots = []
        self.messages = []
        self.wakes = 0
        self.errors = []
        self.session_ends = 0

        self.controller = TurnController(
            engine_factory=self.factory,
            microphone_gate=self.gate,
            responder=self.responder,
            synthesizer=self.synthesizer,
            player=self.player,
            on_state_change=lambda f, t: self.transitions.append((f, t)),
            on_snapshot=self.snapshots.append,
            on_chat_message=self.messages.append,
            on_wake=self._on_wake,
            on_error=lambda code, message, recoverable: self.errors.append((code, message, recoverable)),
            on_session_end=self._on_session_end,
            config=config,
        )

    def _on_wake(self):
        self.wakes += 1

    def _on_session_end(self):
        self.session_ends += 1

    @property
    def engine(self) -> FakeEngine:
        return self.factory.latest

    @property
    def state(self):
        return self.controller.state

    async def say(self, text: str, final: bool = True):
        """Deliver one fragment through the live engine and wait until handled."""
        self.engine.emit(text, is_final=final)
        await self.controller.flush_events()

    def texts(self, role: str) -> List[str]:
        return [m.text for m in self.messages if m.role == role]


@pytest.fixture
def fast_config() -> Settings:
    """Millisecond-scale timing so scenarios run quickly."""
    return Settings(
        silence_timeout_ms=50,
        restart_delay_ms=5,
        quiet_period_ms=30000,
        max_restart_attempts=3,
        resume_listening_delay_ms=10,
        farewell_grace_ms=30,
    )


@pytest.fixture
def harness(fast_config) -> ControllerHarness:
    return ControllerHarness(fast_config)
