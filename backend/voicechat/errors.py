"""
Error taxonomy for the voice chat backend.

Only permission and engine-support failures reach the user as a visible
error. Everything else is absorbed by the turn controller and resolved into
a state transition.
"""


class VoiceChatError(Exception):
    """Base class for all voice chat errors."""

    code = "voice_chat_error"
    recoverable = True

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class PermissionDeniedError(VoiceChatError):
    """Microphone access was refused. Fatal to the session."""

    code = "mic_permission_denied"
    recoverable = False


class EngineUnsupportedError(VoiceChatError):
    """No usable recognition engine (missing credentials, service refused)."""

    code = "engine_unsupported"
    recoverable = False


class ResponsePipelineError(VoiceChatError):
    """Response generation failed; answered with an apology turn."""

    code = "response_pipeline_failure"

    def __init__(self, message: str = "", status: int = 0):
        super().__init__(message)
        self.status = status


class PlaybackError(VoiceChatError):
    """Client could not play the synthesized audio."""

    code = "playback_failure"
