"""
Contracts of the external collaborators the turn-taking core depends on.

The core never talks to Deepgram, OpenAI or the browser directly; it only
sees these shapes. Concrete implementations live in voicechat.stt,
voicechat.llm, voicechat.tts and voicechat.websocket; tests use fakes.
"""

from typing import Callable, List, Optional, Protocol, Sequence

from voicechat.models import ChatMessage, GeneratedResponse, RecognitionResult


class RecognitionListener(Protocol):
    """Lifecycle and result callbacks a recognition engine reports to."""

    def on_start(self) -> None: ...

    def on_result(self, results: List[RecognitionResult]) -> None: ...

    def on_end(self) -> None: ...

    def on_error(self, kind: str) -> None:
        """
        kind: "not-allowed", "service-not-allowed", "no-speech", "network",
        "aborted", "audio-capture" or anything else.
        """
        ...


class RecognitionEngine(Protocol):
    """Continuous, interim-results speech recognizer with a fixed locale."""

    async def start(self) -> None: ...

    async def stop(self) -> None:
        """Finish gracefully; on_end follows."""
        ...

    async def abort(self) -> None:
        """Tear down immediately; no further callbacks."""
        ...


EngineFactory = Callable[[RecognitionListener], RecognitionEngine]


class MicrophoneGate(Protocol):
    """Permission check/request, called once per capture open()."""

    async def request_access(self) -> bool: ...


class ResponseGenerator(Protocol):
    """Produces the assistant answer for one user turn."""

    async def generate(
        self,
        user_text: str,
        context_text: str,
        history: Sequence[ChatMessage],
    ) -> GeneratedResponse: ...


class SpeechSynthesizer(Protocol):
    """Text-to-speech; None when synthesis is unavailable."""

    async def synthesize(self, text: str) -> Optional[bytes]: ...


class AudioPlayer(Protocol):
    """Output device. play() returns when playback ends, raises PlaybackError."""

    async def play(self, audio: bytes) -> None: ...

    async def stop(self) -> None: ...
