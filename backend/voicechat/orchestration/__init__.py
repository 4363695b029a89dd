"""
Turn-taking core: capture, phrase detection, silence timing, the controller
and the passive wake listener.
"""

from .capture_session import CaptureEvent, CaptureEventType, CaptureSession
from .conversation_history import ConversationHistory
from .phrase_detector import PhraseDetector
from .session_shell import ConversationSession
from .silence_timer import SilenceTimer
from .turn_controller import TurnController
from .utterance_buffer import UtteranceBuffer
from .wake_listener import WakeListener

__all__ = [
    "CaptureEvent",
    "CaptureEventType",
    "CaptureSession",
    "ConversationHistory",
    "PhraseDetector",
    "ConversationSession",
    "SilenceTimer",
    "TurnController",
    "UtteranceBuffer",
    "WakeListener",
]
