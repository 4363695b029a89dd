"""
Turn Controller - Orchestrates the voice chat turn-taking loop.

Coordinates:
- State machine transitions
- Capture session (microphone + recognition engine with auto-restart)
- Utterance accumulation and silence detection
- Wake / termination phrase detection
- Response generation, speech synthesis and playback
- Microphone suppression while the assistant thinks or speaks

Critical: the microphone is closed from the moment a turn is finalized until
the assistant has finished speaking, so the recognizer never transcribes the
assistant's own voice. There is no audio-based barge-in; only the explicit
interrupt and mute controls act during SPEAKING.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Set, Union

from voicechat.config import Settings, settings
from voicechat.errors import (
    EngineUnsupportedError,
    PermissionDeniedError,
    VoiceChatError,
)
from voicechat.interfaces import (
    AudioPlayer,
    EngineFactory,
    MicrophoneGate,
    ResponseGenerator,
    SpeechSynthesizer,
)
from voicechat.models import (
    ChatMessage,
    ConversationSnapshot,
    GeneratedResponse,
    TranscriptFragment,
)
from voicechat.orchestration.capture_session import (
    ENGINE_UNSUPPORTED_MESSAGE,
    PERMISSION_DENIED_MESSAGE,
    PERMISSION_ERROR_KINDS,
    CaptureEvent,
    CaptureEventType,
    CaptureSession,
)
from voicechat.orchestration.conversation_history import ConversationHistory
from voicechat.orchestration.phrase_detector import PhraseDetector
from voicechat.orchestration.silence_timer import SilenceTimer
from voicechat.orchestration.utterance_buffer import UtteranceBuffer
from voicechat.state_machine import ConversationTurnState, StateMachine

logger = logging.getLogger(__name__)

Callback = Optional[Callable[..., Union[Awaitable[None], None]]]

SUPPRESSED_STATES = {ConversationTurnState.THINKING, ConversationTurnState.SPEAKING}
CAPTURING_STATES = {ConversationTurnState.LISTENING, ConversationTurnState.ACCUMULATING}


class _SilenceElapsed:
    """Queued when the silence timer fires; token identifies the arm."""

    def __init__(self, token: int):
        self.token = token

    def __repr__(self) -> str:
        return f"_SilenceElapsed(token={self.token})"


class TurnController:
    """
    Decides when the user's turn ends and drives the assistant's reply.

    State Flow:
    IDLE → LISTENING → ACCUMULATING → THINKING → SPEAKING → LISTENING
                           ↓ termination phrase
                         ENDING → IDLE

    All capture events and silence-timer expiries go through one ordered
    queue drained by a single task. The response pipeline runs in its own
    task; its results are applied only if the session is still the one that
    started it.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        microphone_gate: MicrophoneGate,
        responder: ResponseGenerator,
        synthesizer: SpeechSynthesizer,
        player: AudioPlayer,
        on_state_change: Callback = None,  # from_state, to_state
        on_snapshot: Callback = None,  # ConversationSnapshot
        on_chat_message: Callback = None,  # ChatMessage
        on_wake: Callback = None,
        on_error: Callback = None,  # code, message, recoverable
        on_session_end: Callback = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or settings

        # Collaborators
        self.responder = responder
        self.synthesizer = synthesizer
        self.player = player

        # Callbacks
        self.on_state_change = on_state_change
        self.on_snapshot = on_snapshot
        self.on_chat_message = on_chat_message
        self.on_wake = on_wake
        self.on_error = on_error
        self.on_session_end = on_session_end

        # Core components
        self.state_machine = StateMachine()
        self.state_machine.add_listener(self._on_transition)
        self.utterance = UtteranceBuffer()
        self.history = ConversationHistory()
        self.phrases = PhraseDetector(
            self.config.wake_phrases,
            self.config.termination_phrases,
        )
        self.silence_timer = SilenceTimer(
            on_silence_complete=self._on_silence_elapsed,
            duration_ms=self.config.silence_timeout_ms,
        )
        self.capture = CaptureSession(
            engine_factory=engine_factory,
            microphone_gate=microphone_gate,
            on_event=self._enqueue_capture_event,
            restart_delay_ms=self.config.restart_delay_ms,
            quiet_period_ms=self.config.quiet_period_ms,
            quiet_restart_multiplier=self.config.quiet_restart_multiplier,
            max_restart_attempts=self.config.max_restart_attempts,
        )

        # Event channel
        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None

        # In-flight work
        self._turn_task: Optional[asyncio.Task] = None
        self._ending_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

        # Session liveness: late results are applied only for the current epoch
        self._live = False
        self._epoch = 0

        # Conversation data
        self.meeting_context = ""
        self.permission_error: Optional[str] = None
        self.muted = False
        self.last_activity: Optional[float] = None
        self._wake_fired = False
        self._is_user_speaking = False
        self._is_assistant_speaking = False
        self._last_snapshot: Optional[ConversationSnapshot] = None

        logger.info("TurnController initialized")

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConversationTurnState:
        return self.state_machine.current_state

    @property
    def is_live(self) -> bool:
        return self._live

    def snapshot(self) -> ConversationSnapshot:
        """Current state as seen by the UI."""
        return ConversationSnapshot(
            state=self.state,
            is_listening=self.capture.active and not self.muted,
            current_partial_text=self.utterance.get_display_text(),
            is_user_speaking=self._is_user_speaking,
            is_assistant_speaking=self._is_assistant_speaking,
            muted=self.muted,
            permission_error=self.permission_error,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Open the microphone and start listening.

        Returns:
            False if microphone permission or the engine was refused
        """
        if self._live:
            logger.warning("TurnController already started")
            return True

        self._live = True
        self._epoch += 1
        self.permission_error = None
        self.utterance.clear()
        self._events = asyncio.Queue()
        self._consumer_task = asyncio.create_task(self._consume_events(self._events))

        await self.state_machine.transition(ConversationTurnState.LISTENING, reason="session started")
        return await self._open_capture()

    async def stop(self, reason: str = "session stopped", interrupt_speech: bool = True):
        """
        Tear the session down from any state. Idempotent.

        Cancels the silence timer, disables auto-restart and aborts the engine.
        An in-flight response call is left to finish; its result is discarded.
        With interrupt_speech=False audio already playing (the farewell) is
        left to finish on the client.
        """
        was_live = self._live
        was_speaking = self.state == ConversationTurnState.SPEAKING or self._is_assistant_speaking
        self._live = False
        self._epoch += 1

        self.silence_timer.cancel()
        await self.capture.close()

        self._cancel_task(self._ending_task)
        self._ending_task = None
        self._cancel_task(self._consumer_task)
        self._consumer_task = None

        if was_speaking and interrupt_speech:
            await self._stop_player()
            self._is_assistant_speaking = False

        self.utterance.clear()
        self._is_user_speaking = False

        await self.state_machine.reset(reason=reason)
        await self._publish_snapshot()
        if was_live:
            logger.info(f"TurnController stopped ({reason})")

    async def end_conversation(self):
        """
        User-initiated end: same path as a spoken termination phrase,
        without emitting a user turn.
        """
        if not self._live or self.state in (ConversationTurnState.IDLE, ConversationTurnState.ENDING):
            return

        if self.state in SUPPRESSED_STATES:
            await self._cancel_response()

        self.silence_timer.cancel()
        self.utterance.clear()
        self._is_user_speaking = False
        await self.capture.close()
        await self._begin_ending("user ended conversation")

    # ------------------------------------------------------------------
    # User controls
    # ------------------------------------------------------------------

    async def interrupt(self) -> bool:
        """
        Stop assistant speech. Only accepted while SPEAKING.

        Returns:
            True if playback was interrupted
        """
        if self.state != ConversationTurnState.SPEAKING:
            logger.debug(f"Interrupt ignored in {self.state} state")
            return False

        logger.info("User interrupted assistant speech")
        await self._stop_player()
        return True

    async def set_muted(self, muted: bool):
        """
        Mute closes the microphone and drops the unfinished utterance;
        unmute re-opens it if the controller is listening.
        """
        if muted == self.muted:
            return

        self.muted = muted
        if muted:
            logger.info("Microphone muted")
            self.silence_timer.cancel()
            await self.capture.close()
            self.utterance.clear()
            self._is_user_speaking = False
            if self.state == ConversationTurnState.ACCUMULATING:
                await self.state_machine.transition(ConversationTurnState.LISTENING, reason="muted")
            await self._publish_snapshot()
        else:
            logger.info("Microphone unmuted")
            if self._live and self.state == ConversationTurnState.LISTENING:
                await self._open_capture()
            else:
                await self._publish_snapshot()

    def set_meeting_context(self, text: Optional[str]):
        """Replace the meeting transcript used for the next answers."""
        self.meeting_context = text or ""
        logger.info(f"Meeting context updated ({len(self.meeting_context)} chars)")

    async def speak(self, text: str):
        """
        Say something as the assistant: chat message, synthesis, playback.

        Used for greeting and farewell. Failures are logged only.
        """
        await self._append_message("assistant", text)
        self._is_assistant_speaking = True
        await self._publish_snapshot()
        try:
            audio = await self._synthesize(text)
            if audio:
                await self._play(audio)
        finally:
            self._is_assistant_speaking = False
            await self._publish_snapshot()

    async def flush_events(self):
        """Wait until every queued capture event has been handled."""
        if self._consumer_task is None or self._consumer_task.done():
            return
        await self._events.join()

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def _enqueue_capture_event(self, event: CaptureEvent):
        if not self._live:
            return
        self._events.put_nowait(event)

    def _on_silence_elapsed(self, token: int):
        if not self._live:
            return
        self._events.put_nowait(_SilenceElapsed(token))

    async def _consume_events(self, queue: asyncio.Queue):
        """Handle events strictly in arrival order."""
        while self._live and queue is self._events:
            event = await queue.get()
            try:
                if isinstance(event, _SilenceElapsed):
                    await self._handle_silence_elapsed(event.token)
                else:
                    await self._handle_capture_event(event)
            except Exception as e:
                logger.error(f"Error handling {event}: {e}", exc_info=True)
            finally:
                queue.task_done()

    async def _handle_capture_event(self, event: CaptureEvent):
        if event.type in (CaptureEventType.STARTED, CaptureEventType.LIFECYCLE_END):
            await self._publish_snapshot()
            return

        if event.type == CaptureEventType.ENGINE_ERROR:
            if event.fatal:
                if event.error_kind in PERMISSION_ERROR_KINDS:
                    await self._fail(PermissionDeniedError(PERMISSION_DENIED_MESSAGE))
                else:
                    await self._fail(EngineUnsupportedError(ENGINE_UNSUPPORTED_MESSAGE))
            return

        if event.fragment is not None:
            await self._handle_fragment(event.fragment)

    async def _handle_fragment(self, fragment: TranscriptFragment):
        """
        Apply one transcript fragment.

        Final fragments grow the utterance and re-arm the silence timer;
        interim fragments only update the live display (unless
        interim_resets_silence is set). Wake and termination phrases are
        checked on both.
        """
        state = self.state

        if state in SUPPRESSED_STATES:
            if (
                self.config.termination_during_response == "cancel"
                and self.phrases.is_termination(fragment.text)
            ):
                logger.info(f"Termination phrase during {state} - cancelling response")
                await self._cancel_response()
                await self._terminate(fragment.text)
            else:
                logger.debug(f"Ignoring fragment in {state} state: '{fragment.text[:40]}'")
            return

        if state not in CAPTURING_STATES or self.muted:
            logger.debug(f"Ignoring fragment in {state} state: '{fragment.text[:40]}'")
            return

        if state == ConversationTurnState.LISTENING:
            await self.state_machine.transition(
                ConversationTurnState.ACCUMULATING,
                reason="user started speaking"
            )

        if not self._wake_fired and self.phrases.is_wake(fragment.text):
            self._wake_fired = True
            logger.info(f"Wake phrase detected: '{fragment.text[:40]}'")
            await self._emit(self.on_wake)

        self.utterance.add(fragment)
        self.last_activity = fragment.timestamp
        self._is_user_speaking = True
        await self._publish_snapshot()

        if self.phrases.is_termination(fragment.text):
            logger.info(f"Termination phrase detected: '{fragment.text[:40]}'")
            await self._terminate(self.utterance.get_display_text())
            return

        if fragment.is_final:
            self.silence_timer.arm()
        elif self.config.interim_resets_silence and self.utterance.has_text():
            self.silence_timer.arm()

    async def _handle_silence_elapsed(self, token: int):
        if not self.silence_timer.is_current(token):
            logger.debug(f"Stale silence expiry ignored (token={token})")
            return
        if self.state != ConversationTurnState.ACCUMULATING:
            logger.debug(f"Silence expiry ignored in {self.state} state")
            return

        text = self.utterance.get_text()
        if not text:
            logger.debug("Silence elapsed without final text - still accumulating")
            return

        await self._finalize_turn(text)

    # ------------------------------------------------------------------
    # Turn pipeline
    # ------------------------------------------------------------------

    async def _finalize_turn(self, user_text: str):
        """ACCUMULATING → THINKING: suppress capture and request a response."""
        self.silence_timer.cancel()
        history = self.history.get_messages()

        self.utterance.clear()
        self.utterance.lock()
        self._is_user_speaking = False

        await self.capture.close()
        await self.state_machine.transition(
            ConversationTurnState.THINKING,
            reason="silence window elapsed"
        )
        await self._append_message("user", user_text)

        self._turn_task = asyncio.create_task(
            self._run_turn(user_text, history, self._epoch)
        )

    async def _run_turn(self, user_text: str, history: Sequence[ChatMessage], epoch: int):
        """
        Generate, speak and resume listening.

        Every await is followed by a liveness check: a session closed in the
        meantime discards the result.
        """
        logger.info(f"Requesting response for: {user_text[:50]}")
        try:
            response: GeneratedResponse = await self.responder.generate(
                user_text,
                self.meeting_context,
                history,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Response generation failed: {e}")
            if not self._is_current(epoch):
                return
            await self._append_message("assistant", self.config.apology_text)
            await self._resume_listening(epoch, reason="response failed")
            return

        if not self._is_current(epoch):
            logger.info("Session closed while thinking - discarding response")
            return

        await self._append_message("assistant", response.text)
        await self.state_machine.transition(ConversationTurnState.SPEAKING, reason="response ready")
        self._is_assistant_speaking = True
        await self._publish_snapshot()

        try:
            audio = response.audio
            if audio is None:
                audio = await self._synthesize(response.text)
            if audio and self._is_current(epoch):
                await self._play(audio)
        finally:
            self._is_assistant_speaking = False

        if not self._is_current(epoch):
            return
        await self._resume_listening(epoch, reason="playback finished")

    async def _resume_listening(self, epoch: int, reason: str):
        """Wait for the output device to settle, then re-arm capture."""
        await asyncio.sleep(self.config.resume_listening_delay_ms / 1000.0)
        if not self._is_current(epoch):
            return

        self.utterance.clear()
        await self.state_machine.transition(ConversationTurnState.LISTENING, reason=reason)
        await self._open_capture()

    async def _cancel_response(self):
        self._cancel_task(self._turn_task)
        self._turn_task = None
        if self._is_assistant_speaking or self.state == ConversationTurnState.SPEAKING:
            await self._stop_player()
        self._is_assistant_speaking = False

    # ------------------------------------------------------------------
    # Ending
    # ------------------------------------------------------------------

    async def _terminate(self, verbatim: str):
        """Termination phrase: emit the utterance as-is and end the conversation."""
        self.silence_timer.cancel()
        self.utterance.clear()
        self._is_user_speaking = False
        await self.capture.close()
        if verbatim.strip():
            await self._append_message("user", verbatim.strip())
        await self._begin_ending("termination phrase")

    async def _begin_ending(self, reason: str):
        await self.state_machine.transition(ConversationTurnState.ENDING, reason=reason)
        self._spawn(self.speak(self.config.farewell_text))
        self._ending_task = asyncio.create_task(self._finish_after_grace(self._epoch))

    async def _finish_after_grace(self, epoch: int):
        await asyncio.sleep(self.config.farewell_grace_ms / 1000.0)
        if not self._is_current(epoch):
            return
        await self.stop(reason="conversation ended", interrupt_speech=False)
        await self._emit(self.on_session_end)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _open_capture(self) -> bool:
        """Open capture unless muted; permission/engine refusal is fatal."""
        if self.muted:
            await self._publish_snapshot()
            return True

        epoch = self._epoch
        try:
            opened = await self.capture.open()
        except VoiceChatError as e:
            await self._fail(e)
            return False

        if not self._is_current(epoch):
            await self.capture.close()
            return False

        await self._publish_snapshot()
        return opened

    async def _fail(self, error: VoiceChatError):
        """Surface a fatal error and go straight to IDLE. No retry."""
        logger.error(f"Fatal session error: {error.message}")
        self.permission_error = error.message
        await self._emit(self.on_error, error.code, error.message, error.recoverable)
        await self.stop(reason=error.code)

    async def _synthesize(self, text: str) -> Optional[bytes]:
        try:
            return await self.synthesizer.synthesize(text)
        except Exception as e:
            logger.error(f"Speech synthesis failed: {e}")
            return None

    async def _play(self, audio: bytes):
        """Play audio; a playback failure counts as playback complete."""
        try:
            await self.player.play(audio)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Playback failed, treating as complete: {e}")

    async def _stop_player(self):
        try:
            await self.player.stop()
        except Exception as e:
            logger.warning(f"Error stopping playback: {e}")

    async def _append_message(self, role: str, text: str):
        message = self.history.add(role, text)
        await self._emit(self.on_chat_message, message)

    async def _publish_snapshot(self):
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        await self._emit(self.on_snapshot, snapshot)

    async def _on_transition(self, from_state: ConversationTurnState, to_state: ConversationTurnState):
        if to_state == ConversationTurnState.LISTENING:
            # wake notification re-arms on every return to LISTENING
            self._wake_fired = False
        await self._emit(self.on_state_change, from_state, to_state)
        await self._publish_snapshot()

    async def _emit(self, callback: Callback, *args: Any):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in controller callback: {e}", exc_info=True)

    def _is_current(self, epoch: int) -> bool:
        return self._live and epoch == self._epoch

    def _spawn(self, coro: Awaitable[None]):
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]):
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def __repr__(self) -> str:
        return f"TurnController(state={self.state}, live={self._live}, muted={self.muted})"
