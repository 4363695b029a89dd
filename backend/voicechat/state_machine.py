"""
Turn states of a voice chat and the moves allowed between them.

    IDLE → LISTENING → ACCUMULATING → THINKING → SPEAKING → LISTENING
                           ↓ termination
                         ENDING → IDLE

Any live state may drop straight to IDLE (session closed, fatal error).
"""

import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, FrozenSet, List

logger = logging.getLogger(__name__)


class ConversationTurnState(str, Enum):
    """
    IDLE: No session, microphone closed
    LISTENING: Microphone open, waiting for the user to speak
    ACCUMULATING: User is speaking, final fragments are being collected
    THINKING: Turn finalized, response requested (microphone suppressed)
    SPEAKING: Assistant audio is playing (microphone suppressed)
    ENDING: Farewell playing, teardown pending
    """
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    ACCUMULATING = "ACCUMULATING"
    THINKING = "THINKING"
    SPEAKING = "SPEAKING"
    ENDING = "ENDING"


_S = ConversationTurnState

TRANSITIONS: Dict[ConversationTurnState, FrozenSet[ConversationTurnState]] = {
    _S.IDLE: frozenset({_S.LISTENING}),
    # first fragment / end button
    _S.LISTENING: frozenset({_S.ACCUMULATING, _S.ENDING, _S.IDLE}),
    # silence elapsed / termination phrase / mute
    _S.ACCUMULATING: frozenset({_S.THINKING, _S.ENDING, _S.LISTENING, _S.IDLE}),
    # answer ready / apology / ended while waiting
    _S.THINKING: frozenset({_S.SPEAKING, _S.LISTENING, _S.ENDING, _S.IDLE}),
    _S.SPEAKING: frozenset({_S.LISTENING, _S.ENDING, _S.IDLE}),
    _S.ENDING: frozenset({_S.IDLE}),
}

TransitionListener = Callable[[ConversationTurnState, ConversationTurnState], Awaitable[None]]


class StateMachine:
    """
    Holds the current turn state and rejects moves outside TRANSITIONS.

    Listeners are awaited in registration order after every accepted move;
    a listener that raises is logged and skipped.
    """

    def __init__(self, initial_state: ConversationTurnState = ConversationTurnState.IDLE):
        self.current_state = initial_state
        self._listeners: List[TransitionListener] = []

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def can_transition(self, to_state: ConversationTurnState) -> bool:
        return to_state in TRANSITIONS[self.current_state]

    async def transition(self, to_state: ConversationTurnState, reason: str = "") -> bool:
        """
        Move to to_state.

        Returns:
            False (state unchanged) if the move is not allowed
        """
        from_state = self.current_state
        if not self.can_transition(to_state):
            logger.warning(f"Rejected transition {from_state.value} → {to_state.value} ({reason})")
            return False

        self.current_state = to_state
        logger.info(f"State: {from_state.value} → {to_state.value}" + (f" ({reason})" if reason else ""))

        for listener in list(self._listeners):
            try:
                await listener(from_state, to_state)
            except Exception as e:
                logger.error(f"Transition listener failed: {e}", exc_info=True)
        return True

    async def reset(self, reason: str = "reset") -> bool:
        """Drop to IDLE. False if already IDLE."""
        if self.current_state == ConversationTurnState.IDLE:
            return False
        return await self.transition(ConversationTurnState.IDLE, reason=reason)

    def __repr__(self) -> str:
        return f"<StateMachine {self.current_state.value}>"
