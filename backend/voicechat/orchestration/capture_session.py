"""
Speech capture session.

Owns one lifecycle of the external recognition engine and keeps it alive:
recognition services end sessions on their own (silence, network blips,
server-side limits), and the capture session restarts them transparently
until the owner explicitly closes it.

Recovery has two levels:
- restart: call start() again on the same engine instance after a short delay
- recreate: once restart attempts exceed the bound, abort the instance and
  build a fresh one from the factory, then reset the counter
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from voicechat.errors import EngineUnsupportedError, PermissionDeniedError
from voicechat.interfaces import EngineFactory, MicrophoneGate, RecognitionEngine
from voicechat.models import RecognitionResult, TranscriptFragment

logger = logging.getLogger(__name__)

PERMISSION_DENIED_MESSAGE = "Mikrofon erişimi reddedildi."
ENGINE_UNSUPPORTED_MESSAGE = "Ses tanıma servisi kullanılamıyor."

# Engine error kinds
PERMISSION_ERROR_KINDS = {"not-allowed"}
UNSUPPORTED_ERROR_KINDS = {"service-not-allowed"}
BENIGN_ERROR_KINDS = {"no-speech"}
SELF_INFLICTED_ERROR_KINDS = {"aborted"}


class CaptureEventType(str, Enum):
    """Events a capture session reports to its owner."""
    STARTED = "started"
    FRAGMENT = "fragment"
    LIFECYCLE_END = "lifecycle_end"
    ENGINE_ERROR = "engine_error"


class CaptureEvent:
    """Single entry of the ordered capture event channel."""

    def __init__(
        self,
        type: CaptureEventType,
        fragment: Optional[TranscriptFragment] = None,
        error_kind: Optional[str] = None,
        fatal: bool = False,
    ):
        self.type = type
        self.fragment = fragment
        self.error_kind = error_kind
        self.fatal = fatal

    def __repr__(self) -> str:
        if self.fragment is not None:
            return f"CaptureEvent({self.type.value}, text='{self.fragment.text[:30]}', final={self.fragment.is_final})"
        if self.error_kind:
            return f"CaptureEvent({self.type.value}, kind={self.error_kind}, fatal={self.fatal})"
        return f"CaptureEvent({self.type.value})"


class _EngineListener:
    """Binds engine callbacks to the engine generation that produced them."""

    def __init__(self, session: "CaptureSession", generation: int):
        self._session = session
        self._generation = generation

    def on_start(self) -> None:
        self._session._handle_start(self._generation)

    def on_result(self, results: List[RecognitionResult]) -> None:
        self._session._handle_result(self._generation, results)

    def on_end(self) -> None:
        self._session._handle_end(self._generation)

    def on_error(self, kind: str) -> None:
        self._session._handle_error(self._generation, kind)


class CaptureSession:
    """
    One microphone + recognition engine lifecycle with auto-restart.

    At most one engine instance exists at a time. Callbacks from an instance
    that was aborted or replaced are dropped, so an engine swap never runs
    the restart logic twice.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        microphone_gate: MicrophoneGate,
        on_event: Callable[[CaptureEvent], None],
        restart_delay_ms: int = 100,
        quiet_period_ms: int = 30000,
        quiet_restart_multiplier: float = 2.0,
        max_restart_attempts: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize capture session.

        Args:
            engine_factory: Builds an engine bound to a listener
            microphone_gate: Asked once per open()
            on_event: Receives CaptureEvents in delivery order
            restart_delay_ms: Delay before restarting an ended engine
            quiet_period_ms: Without fragments for this long, restarts slow down
            quiet_restart_multiplier: Restart delay multiplier after a quiet period
            max_restart_attempts: Bare restarts before the engine is recreated
            clock: Monotonic clock in seconds
        """
        self.engine_factory = engine_factory
        self.microphone_gate = microphone_gate
        self.on_event = on_event
        self.restart_delay_ms = restart_delay_ms
        self.quiet_period_ms = quiet_period_ms
        self.quiet_restart_multiplier = quiet_restart_multiplier
        self.max_restart_attempts = max_restart_attempts
        self._clock = clock

        self.active = False
        self.restart_attempts = 0
        self.recreate_count = 0
        self.last_activity = clock()
        self.permission_error: Optional[str] = None

        self._engine: Optional[RecognitionEngine] = None
        self._generation = 0
        self._should_restart = False
        self._restart_task: Optional[asyncio.Task] = None

    @property
    def has_engine(self) -> bool:
        """True while an engine instance is alive."""
        return self._engine is not None

    async def open(self) -> bool:
        """
        Acquire the microphone and start a fresh engine instance.

        Any prior instance is aborted first. A denial is not retried.

        Returns:
            True if an engine was started, False if close() won the race

        Raises:
            PermissionDeniedError: microphone access refused
            EngineUnsupportedError: no engine can be built
        """
        await self._discard_engine()
        generation = self._generation

        try:
            granted = await self.microphone_gate.request_access()
        except PermissionDeniedError:
            granted = False

        if generation != self._generation:
            logger.info("Capture session closed while waiting for microphone permission")
            return False

        if not granted:
            self._should_restart = False
            self.permission_error = PERMISSION_DENIED_MESSAGE
            logger.warning("Microphone permission denied")
            raise PermissionDeniedError(PERMISSION_DENIED_MESSAGE)

        self.permission_error = None
        self.restart_attempts = 0
        self.last_activity = self._clock()
        self._should_restart = True

        try:
            await self._create_and_start()
        except EngineUnsupportedError:
            self._should_restart = False
            raise

        logger.info("Capture session opened")
        return self._engine is not None

    async def close(self):
        """
        Disable auto-restart and abort the engine instance. Idempotent.
        """
        was_open = self._engine is not None or self._should_restart
        self._should_restart = False
        self._generation += 1

        if self._restart_task and not self._restart_task.done():
            if self._restart_task is not asyncio.current_task():
                self._restart_task.cancel()
        self._restart_task = None

        await self._discard_engine()
        self.active = False
        if was_open:
            logger.info("Capture session closed")

    async def _create_and_start(self):
        """Build a new engine bound to a new generation and start it."""
        self._generation += 1
        listener = _EngineListener(self, self._generation)
        self._engine = self.engine_factory(listener)
        logger.debug(f"Recognition engine created (generation={self._generation})")

        try:
            await self._engine.start()
        except EngineUnsupportedError:
            raise
        except Exception as e:
            logger.warning(f"Recognition engine failed to start: {e}")
            self._schedule_restart()

    async def _discard_engine(self):
        """Abort and release the current engine instance."""
        engine = self._engine
        self._engine = None
        if engine is None:
            return

        self._generation += 1
        try:
            await engine.abort()
        except Exception as e:
            logger.warning(f"Error aborting recognition engine: {e}")

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation or self._engine is None

    def _emit(self, event: CaptureEvent):
        try:
            self.on_event(event)
        except Exception as e:
            logger.error(f"Error delivering capture event {event}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Engine callbacks
    # ------------------------------------------------------------------

    def _handle_start(self, generation: int):
        if self._is_stale(generation):
            return
        self.active = True
        self.restart_attempts = 0
        logger.info("Recognition started")
        self._emit(CaptureEvent(CaptureEventType.STARTED))

    def _handle_result(self, generation: int, results: List[RecognitionResult]):
        if self._is_stale(generation):
            logger.debug("Dropping result from stale recognition engine")
            return

        self.last_activity = self._clock()
        self.restart_attempts = 0

        interim_parts = []
        final_parts = []
        for result in results:
            transcript = result.transcript.strip()
            if not transcript:
                continue
            if result.is_final:
                final_parts.append(transcript)
            else:
                interim_parts.append(transcript)

        if interim_parts:
            self._emit(CaptureEvent(
                CaptureEventType.FRAGMENT,
                fragment=TranscriptFragment(text=" ".join(interim_parts), is_final=False),
            ))
        if final_parts:
            self._emit(CaptureEvent(
                CaptureEventType.FRAGMENT,
                fragment=TranscriptFragment(text=" ".join(final_parts), is_final=True),
            ))

    def _handle_end(self, generation: int):
        if self._is_stale(generation):
            return
        self.active = False
        logger.info("Recognition ended")
        self._emit(CaptureEvent(CaptureEventType.LIFECYCLE_END))
        if self._should_restart:
            self._schedule_restart()

    def _handle_error(self, generation: int, kind: str):
        if self._is_stale(generation):
            return

        if kind in PERMISSION_ERROR_KINDS:
            logger.error("Recognition engine reports microphone permission denied")
            self._should_restart = False
            self.permission_error = PERMISSION_DENIED_MESSAGE
            self._emit(CaptureEvent(CaptureEventType.ENGINE_ERROR, error_kind=kind, fatal=True))
        elif kind in UNSUPPORTED_ERROR_KINDS:
            logger.error("Recognition service refused the session")
            self._should_restart = False
            self._emit(CaptureEvent(CaptureEventType.ENGINE_ERROR, error_kind=kind, fatal=True))
        elif kind in BENIGN_ERROR_KINDS:
            logger.debug("No speech detected - engine will end and restart")
            self._emit(CaptureEvent(CaptureEventType.ENGINE_ERROR, error_kind=kind))
        elif kind in SELF_INFLICTED_ERROR_KINDS:
            logger.debug("Recognition aborted")
            self._emit(CaptureEvent(CaptureEventType.ENGINE_ERROR, error_kind=kind))
        else:
            logger.warning(f"Recognition engine error: {kind}")
            self._emit(CaptureEvent(CaptureEventType.ENGINE_ERROR, error_kind=kind))
            self._schedule_restart()

    # ------------------------------------------------------------------
    # Restart policy
    # ------------------------------------------------------------------

    def restart_delay(self) -> float:
        """Delay in ms for the next restart, longer after a quiet period."""
        delay = float(self.restart_delay_ms)
        quiet_for_ms = (self._clock() - self.last_activity) * 1000
        if quiet_for_ms >= self.quiet_period_ms:
            delay *= self.quiet_restart_multiplier
        return delay

    def _schedule_restart(self):
        if not self._should_restart:
            return
        if self._restart_task and not self._restart_task.done():
            return
        delay_ms = self.restart_delay()
        logger.debug(f"Recognition restart scheduled in {delay_ms:.0f}ms")
        self._restart_task = asyncio.create_task(self._restart_after(delay_ms))

    async def _restart_after(self, delay_ms: float):
        try:
            await asyncio.sleep(delay_ms / 1000.0)
        except asyncio.CancelledError:
            return

        self._restart_task = None
        if not self._should_restart:
            return

        self.restart_attempts += 1
        if self.restart_attempts > self.max_restart_attempts or self._engine is None:
            logger.warning(
                f"Recognition restart attempts exceeded ({self.max_restart_attempts}) - "
                f"recreating engine"
            )
            await self._recreate()
            return

        logger.info(
            f"Restarting recognition (attempt {self.restart_attempts}/{self.max_restart_attempts})"
        )
        try:
            await self._engine.start()
        except Exception as e:
            logger.warning(f"Recognition restart failed: {e}")
            self._schedule_restart()

    async def _recreate(self):
        """Replace the engine instance with a fresh one and reset the counter."""
        self.recreate_count += 1
        self.restart_attempts = 0
        await self._discard_engine()
        if not self._should_restart:
            return

        try:
            await self._create_and_start()
        except EngineUnsupportedError as e:
            logger.error(f"Recognition engine could not be recreated: {e}")
            self._should_restart = False
            self._emit(CaptureEvent(
                CaptureEventType.ENGINE_ERROR,
                error_kind="service-not-allowed",
                fatal=True,
            ))

    def __repr__(self) -> str:
        return (
            f"CaptureSession(active={self.active}, restart_attempts={self.restart_attempts}, "
            f"recreated={self.recreate_count})"
        )
