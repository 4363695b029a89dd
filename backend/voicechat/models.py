"""
Pydantic models for the conversation core and the WebSocket protocol.

Domain records (fragments, chat messages, snapshots) live at the top;
message envelopes exchanged with the browser client follow.
"""

import time
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from voicechat.state_machine import ConversationTurnState


def now_ms() -> int:
    """Unix timestamp in milliseconds."""
    return int(time.time() * 1000)


# ============================================================================
# Domain records
# ============================================================================

class TranscriptFragment(BaseModel):
    """
    One transcript chunk produced by the capture session.

    Ephemeral: consumed by the controller and the phrase detector, never
    persisted.
    """
    text: str
    is_final: bool
    timestamp: float = Field(
        default_factory=time.monotonic,
        description="Monotonic clock reading when the fragment was received"
    )


class RecognitionResult(BaseModel):
    """One result of a recognition event: alternatives ranked best first."""
    alternatives: List[str] = Field(default_factory=list)
    is_final: bool = False

    @property
    def transcript(self) -> str:
        return self.alternatives[0] if self.alternatives else ""


class ChatMessage(BaseModel):
    """A user or assistant turn, in the order it happened."""
    role: Literal["user", "assistant"]
    text: str
    timestamp: int = Field(default_factory=now_ms)


class GeneratedResponse(BaseModel):
    """Answer from the response generator; audio is optional."""
    text: str
    audio: Optional[bytes] = None


class ConversationSnapshot(BaseModel):
    """Read-only view of the controller for the UI."""
    state: ConversationTurnState = ConversationTurnState.IDLE
    is_listening: bool = False
    current_partial_text: str = ""
    is_user_speaking: bool = False
    is_assistant_speaking: bool = False
    muted: bool = False
    permission_error: Optional[str] = None


# ============================================================================
# Client → Server Messages
# ============================================================================

class StartSessionData(BaseModel):
    """Start session payload."""
    meeting_context: Optional[str] = Field(
        None,
        description="Meeting transcript the assistant answers questions about"
    )


class StartSessionMessage(BaseModel):
    """
    Sent when the user opens the voice chat.
    Plays the greeting and opens the microphone.
    """
    type: Literal["start_session"] = "start_session"
    data: StartSessionData = Field(default_factory=StartSessionData)


class StartMeetingMessage(BaseModel):
    """
    Sent when the meeting starts.
    Opens the microphone in passive mode: speech builds the meeting
    transcript and the wake phrase starts the voice chat.
    """
    type: Literal["start_meeting"] = "start_meeting"
    data: StartSessionData = Field(default_factory=StartSessionData)


class AudioChunkData(BaseModel):
    """Audio chunk data payload."""
    audio: str = Field(
        ...,
        description="Base64-encoded audio data"
    )
    format: Literal["pcm", "wav", "webm"] = Field(
        "pcm",
        description="Audio format: pcm, wav or webm"
    )
    sample_rate: int = Field(
        16000,
        ge=8000,
        le=48000,
        description="Sample rate in Hz (recommended: 16000)"
    )


class AudioChunkMessage(BaseModel):
    """
    Sent when microphone audio is captured.
    Streams user audio to the recognition engine.
    """
    type: Literal["audio_chunk"] = "audio_chunk"
    data: AudioChunkData


class MicPermissionData(BaseModel):
    """Microphone permission payload."""
    granted: bool


class MicPermissionMessage(BaseModel):
    """Answer to a mic_permission_request."""
    type: Literal["mic_permission"] = "mic_permission"
    data: MicPermissionData


class PlaybackCompleteMessage(BaseModel):
    """Sent when the client finished playing agent audio."""
    type: Literal["playback_complete"] = "playback_complete"
    data: dict = Field(default_factory=dict)


class PlaybackErrorData(BaseModel):
    """Playback error payload."""
    message: str = ""


class PlaybackErrorMessage(BaseModel):
    """Sent when the client could not play agent audio."""
    type: Literal["playback_error"] = "playback_error"
    data: PlaybackErrorData = Field(default_factory=PlaybackErrorData)


class InterruptMessage(BaseModel):
    """
    Sent when the user presses the interrupt control.
    Stops agent speech; no audio-based barge-in exists.
    """
    type: Literal["interrupt"] = "interrupt"
    data: dict = Field(default_factory=dict)


class MuteData(BaseModel):
    """Mute payload."""
    muted: bool


class MuteMessage(BaseModel):
    """Sent when the user toggles the microphone."""
    type: Literal["mute"] = "mute"
    data: MuteData


class MeetingContextData(BaseModel):
    """Meeting context payload."""
    content: str = ""


class MeetingContextMessage(BaseModel):
    """Replaces the meeting transcript used for answers."""
    type: Literal["meeting_context"] = "meeting_context"
    data: MeetingContextData


class EndSessionMessage(BaseModel):
    """Sent when the user ends the chat (farewell, then teardown)."""
    type: Literal["end_session"] = "end_session"
    data: dict = Field(default_factory=dict)


class PingMessage(BaseModel):
    """
    Heartbeat ping message.
    """
    type: Literal["ping"] = "ping"
    data: dict = Field(default_factory=dict)


# ============================================================================
# Server → Client Messages
# ============================================================================

class SessionReadyData(BaseModel):
    """Session ready data payload."""
    session_id: str = Field(
        ...,
        description="UUID of created session"
    )
    timestamp: int = Field(
        default_factory=now_ms,
        description="Unix timestamp in milliseconds"
    )


class SessionReadyMessage(BaseModel):
    """
    Sent on successful connection.
    Confirms session created.
    """
    type: Literal["session_ready"] = "session_ready"
    data: SessionReadyData


class StateChangeData(BaseModel):
    """State change data payload."""
    from_state: ConversationTurnState
    to_state: ConversationTurnState
    timestamp: int = Field(default_factory=now_ms)


class StateChangeMessage(BaseModel):
    """
    Sent on state machine transition.
    Informs frontend of current state.
    """
    type: Literal["state_change"] = "state_change"
    data: StateChangeData


class SnapshotMessage(BaseModel):
    """Live view: listening flag, partial speech, speaking flags."""
    type: Literal["snapshot"] = "snapshot"
    data: ConversationSnapshot


class ChatMessageMessage(BaseModel):
    """A user or assistant turn appended to the chat."""
    type: Literal["chat_message"] = "chat_message"
    data: ChatMessage


class AgentAudioData(BaseModel):
    """Agent audio payload."""
    audio: str = Field(
        ...,
        description="Base64-encoded audio data"
    )
    format: str = Field(
        "mp3",
        description="Audio container"
    )


class AgentAudioMessage(BaseModel):
    """
    Sent when synthesized speech is ready.
    Client answers with playback_complete or playback_error.
    """
    type: Literal["agent_audio"] = "agent_audio"
    data: AgentAudioData


class StopPlaybackMessage(BaseModel):
    """Tells the client to stop the current agent audio."""
    type: Literal["stop_playback"] = "stop_playback"
    data: dict = Field(default_factory=dict)


class MicPermissionRequestMessage(BaseModel):
    """Asks the client to acquire the microphone."""
    type: Literal["mic_permission_request"] = "mic_permission_request"
    data: dict = Field(default_factory=dict)


class MeetingTranscriptData(BaseModel):
    """Meeting transcript payload."""
    text: str = Field(
        "",
        description="Final fragments heard so far in passive mode"
    )
    current_speech: str = Field(
        "",
        description="Latest fragment, interim or final"
    )


class MeetingTranscriptMessage(BaseModel):
    """Sent for every fragment heard while listening for the wake phrase."""
    type: Literal["meeting_transcript"] = "meeting_transcript"
    data: MeetingTranscriptData = Field(default_factory=MeetingTranscriptData)


class WakeDetectedMessage(BaseModel):
    """Sent when a wake phrase was heard."""
    type: Literal["wake_detected"] = "wake_detected"
    data: dict = Field(default_factory=dict)


class ErrorData(BaseModel):
    """Error data payload."""
    code: str = Field(
        ...,
        description="Error code"
    )
    message: str = Field(
        ...,
        description="Human-readable error message"
    )
    recoverable: bool = Field(
        ...,
        description="True if system can recover automatically"
    )
    timestamp: int = Field(
        default_factory=now_ms,
        description="Unix timestamp in milliseconds"
    )


class ErrorMessage(BaseModel):
    """
    Sent when error occurs.
    Notifies frontend of issues.
    """
    type: Literal["error"] = "error"
    data: ErrorData


class SessionEndedMessage(BaseModel):
    """Sent after the conversation was torn down."""
    type: Literal["session_ended"] = "session_ended"
    data: dict = Field(default_factory=dict)


class PongMessage(BaseModel):
    """
    Heartbeat pong response.
    """
    type: Literal["pong"] = "pong"
    data: dict = Field(default_factory=dict)


# ============================================================================
# Union Types for Message Routing
# ============================================================================

# All possible client messages
ClientMessage = Annotated[
    Union[
        StartSessionMessage,
        StartMeetingMessage,
        AudioChunkMessage,
        MicPermissionMessage,
        PlaybackCompleteMessage,
        PlaybackErrorMessage,
        InterruptMessage,
        MuteMessage,
        MeetingContextMessage,
        EndSessionMessage,
        PingMessage,
    ],
    Field(discriminator="type"),
]

# All possible server messages
ServerMessage = (
    SessionReadyMessage |
    StateChangeMessage |
    SnapshotMessage |
    ChatMessageMessage |
    AgentAudioMessage |
    StopPlaybackMessage |
    MicPermissionRequestMessage |
    MeetingTranscriptMessage |
    WakeDetectedMessage |
    ErrorMessage |
    SessionEndedMessage |
    PongMessage
)

_client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(payload: dict) -> BaseModel:
    """
    Validate a raw client payload into its message model.

    Raises:
        pydantic.ValidationError: unknown type or invalid data
    """
    return _client_message_adapter.validate_python(payload)
