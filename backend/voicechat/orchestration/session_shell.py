"""
One complete voice-chat session: passive meeting listening, greeting,
turn-taking, teardown.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from voicechat.config import settings
from voicechat.orchestration.turn_controller import TurnController
from voicechat.orchestration.wake_listener import WakeListener

logger = logging.getLogger(__name__)


class ConversationSession:
    """
    Wraps a TurnController for its whole lifetime.

    start() greets the user before the microphone opens so the greeting is
    never transcribed. stop() may be called from any state, any number of
    times.

    With a WakeListener the session can begin in passive mode
    (listen_for_wake): speech only builds the meeting transcript, and the
    wake phrase starts the conversation with that transcript as context.
    """

    def __init__(
        self,
        controller: TurnController,
        greeting_text: Optional[str] = None,
        on_ended: Optional[Callable[[], Awaitable[None]]] = None,
        wake_listener: Optional[WakeListener] = None,
        on_wake: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.controller = controller
        self.greeting_text = greeting_text if greeting_text is not None else settings.greeting_text
        self.on_ended = on_ended
        self.on_wake = on_wake
        self.wake_listener = wake_listener
        self.is_active = False
        self._ended_notified = False
        self._tasks: Set[asyncio.Task] = set()
        self._context_before_meeting: Optional[str] = None

        # Conversation ended by voice or by end_conversation()
        controller.on_session_end = self._handle_controller_end
        if wake_listener is not None:
            wake_listener.on_wake = self._handle_wake

    @property
    def is_waiting_for_wake(self) -> bool:
        return self.wake_listener is not None and self.wake_listener.is_listening

    async def listen_for_wake(self) -> bool:
        """
        Passive mode: build the meeting transcript until the wake phrase.

        Returns:
            False if there is no wake listener, a conversation is already
            running, or the microphone could not be opened
        """
        if self.wake_listener is None:
            logger.warning("No wake listener configured")
            return False
        if self.is_active:
            logger.warning("Conversation already active - not listening for wake phrase")
            return False

        if self._context_before_meeting is None:
            self._context_before_meeting = self.controller.meeting_context
        self._ended_notified = False
        return await self.wake_listener.start()

    async def start(self) -> bool:
        """
        Greet, then start listening.

        Returns:
            False if the microphone could not be opened
        """
        if self.is_active:
            logger.warning("Conversation session already active")
            return True

        if self.wake_listener is not None:
            await self.wake_listener.stop()

        self.is_active = True
        self._ended_notified = False
        logger.info("Conversation session starting")

        if self.greeting_text:
            await self.controller.speak(self.greeting_text)

        if not self.is_active:
            # stop() or end() was called during the greeting
            return False

        started = await self.controller.start()
        if not started:
            logger.warning("Conversation session could not open the microphone")
            self.is_active = False
        return started

    async def stop(self):
        """Close capture, cancel timers and reset to Idle. Safe from any state."""
        was_active = self.is_active
        self.is_active = False
        if self.wake_listener is not None:
            await self.wake_listener.stop()
        await self.controller.stop(reason="session closed")
        if was_active:
            logger.info("Conversation session stopped")

    async def end(self):
        """Say goodbye and end, as if the termination phrase had been spoken."""
        if self.is_waiting_for_wake:
            await self.stop()
            await self._handle_controller_end()
            return
        if not self.is_active:
            return
        if not self.controller.is_live:
            # still greeting: nothing to say goodbye to
            await self.stop()
            await self._handle_controller_end()
            return
        await self.controller.end_conversation()

    async def _handle_wake(self):
        transcript = self.wake_listener.transcript
        context = "\n\n".join(
            part for part in (self._context_before_meeting, transcript) if part
        )
        self.controller.set_meeting_context(context)
        logger.info("Wake phrase heard - starting conversation")
        if self.on_wake:
            await self.on_wake()

        task = asyncio.create_task(self.start())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_controller_end(self):
        self.is_active = False
        if self._ended_notified:
            return
        self._ended_notified = True
        logger.info("Conversation ended")
        if self.on_ended:
            await self.on_ended()
