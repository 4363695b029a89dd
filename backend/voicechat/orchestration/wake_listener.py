"""
Passive meeting listener.

Before the voice chat starts the microphone runs in a passive mode: every
final fragment is added to the meeting transcript and nothing is answered.
A wake phrase ends the passive phase; the owner then starts the
conversation with the transcript as meeting context.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from voicechat.config import Settings, settings
from voicechat.errors import EngineUnsupportedError, PermissionDeniedError, VoiceChatError
from voicechat.interfaces import EngineFactory, MicrophoneGate
from voicechat.models import TranscriptFragment
from voicechat.orchestration.capture_session import (
    ENGINE_UNSUPPORTED_MESSAGE,
    PERMISSION_DENIED_MESSAGE,
    PERMISSION_ERROR_KINDS,
    CaptureEvent,
    CaptureEventType,
    CaptureSession,
)
from voicechat.orchestration.phrase_detector import PhraseDetector

logger = logging.getLogger(__name__)

Callback = Optional[Callable[..., Union[Awaitable[None], None]]]


class WakeListener:
    """
    Builds the meeting transcript until the wake phrase is heard.

    Uses its own CaptureSession with a short restart delay, so the
    recognizer is back almost immediately after the service ends a session.
    Capture is closed before on_wake fires; the wake fragment itself is
    kept in the transcript.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        microphone_gate: MicrophoneGate,
        on_wake: Callback = None,
        on_transcript: Callback = None,  # transcript, current speech
        on_error: Callback = None,  # code, message, recoverable
        config: Optional[Settings] = None,
    ):
        self.config = config or settings
        self.on_wake = on_wake
        self.on_transcript = on_transcript
        self.on_error = on_error

        self.phrases = PhraseDetector(self.config.wake_phrases, self.config.termination_phrases)
        self.capture = CaptureSession(
            engine_factory=engine_factory,
            microphone_gate=microphone_gate,
            on_event=self._enqueue,
            restart_delay_ms=self.config.wake_restart_delay_ms,
            quiet_period_ms=self.config.quiet_period_ms,
            quiet_restart_multiplier=self.config.quiet_restart_multiplier,
            max_restart_attempts=self.config.max_restart_attempts,
        )

        self.current_speech = ""
        self._parts: List[str] = []
        self._live = False
        self._wake_detected = False
        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None

    @property
    def transcript(self) -> str:
        """Final fragments heard so far, in order."""
        return " ".join(self._parts)

    @property
    def is_listening(self) -> bool:
        return self._live

    async def start(self) -> bool:
        """
        Open the microphone in passive mode.

        Returns:
            False if microphone permission or the engine was refused
        """
        if self._live:
            return True

        self._live = True
        self._wake_detected = False
        self._events = asyncio.Queue()
        self._consumer_task = asyncio.create_task(self._consume(self._events))

        try:
            opened = await self.capture.open()
        except VoiceChatError as e:
            await self._fail(e)
            return False

        if opened:
            logger.info("Listening for wake phrase")
        return opened

    async def stop(self):
        """Close capture; the transcript is kept. Idempotent."""
        was_live = self._live
        self._live = False
        await self.capture.close()

        task = self._consumer_task
        self._consumer_task = None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

        self.current_speech = ""
        if was_live:
            logger.info(f"Wake listener stopped ({len(self.transcript)} transcript chars)")

    async def flush_events(self):
        """Wait until every queued capture event has been handled."""
        if self._consumer_task is None or self._consumer_task.done():
            return
        await self._events.join()

    def _enqueue(self, event: CaptureEvent):
        if self._live:
            self._events.put_nowait(event)

    async def _consume(self, queue: asyncio.Queue):
        while self._live and queue is self._events:
            event = await queue.get()
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Error handling {event}: {e}", exc_info=True)
            finally:
                queue.task_done()

    async def _handle_event(self, event: CaptureEvent):
        if event.type == CaptureEventType.ENGINE_ERROR and event.fatal:
            if event.error_kind in PERMISSION_ERROR_KINDS:
                await self._fail(PermissionDeniedError(PERMISSION_DENIED_MESSAGE))
            else:
                await self._fail(EngineUnsupportedError(ENGINE_UNSUPPORTED_MESSAGE))
        elif event.fragment is not None:
            await self._handle_fragment(event.fragment)

    async def _handle_fragment(self, fragment: TranscriptFragment):
        if self._wake_detected:
            return

        self.current_speech = fragment.text
        if fragment.is_final:
            self._parts.append(fragment.text)
        await self._emit(self.on_transcript, self.transcript, self.current_speech)

        if self.phrases.is_wake(fragment.text):
            self._wake_detected = True
            logger.info(f"Wake phrase detected: '{fragment.text[:40]}'")
            await self.stop()
            await self._emit(self.on_wake)

    async def _fail(self, error: VoiceChatError):
        logger.error(f"Wake listener failed: {error.message}")
        await self._emit(self.on_error, error.code, error.message, error.recoverable)
        await self.stop()

    async def _emit(self, callback: Callback, *args: Any):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in wake listener callback: {e}", exc_info=True)

    def __repr__(self) -> str:
        return f"WakeListener(listening={self._live}, parts={len(self._parts)})"
