"""
WebSocket connection manager and client bridge.

The browser owns the microphone and the speaker. This module turns the
WebSocket into the collaborators the turn controller expects:
- AudioFeed: microphone chunks → current recognition engine
- ClientMicrophoneGate: permission request/answer round trip
- ClientAudioPlayer: agent audio out, playback_complete/playback_error back
and routes every client message of one connection (VoiceChatHandler).
"""

import asyncio
import base64
import binascii
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from voicechat.config import settings
from voicechat.errors import PlaybackError
from voicechat.interfaces import EngineFactory, ResponseGenerator, SpeechSynthesizer
from voicechat.llm.openai_client import OpenAIChatClient
from voicechat.models import (
    AgentAudioData,
    AgentAudioMessage,
    AudioChunkMessage,
    ChatMessage,
    ChatMessageMessage,
    ConversationSnapshot,
    EndSessionMessage,
    ErrorData,
    ErrorMessage,
    InterruptMessage,
    MeetingContextMessage,
    MeetingTranscriptData,
    MeetingTranscriptMessage,
    MicPermissionMessage,
    MicPermissionRequestMessage,
    MuteMessage,
    PingMessage,
    PlaybackCompleteMessage,
    PlaybackErrorMessage,
    PongMessage,
    SessionEndedMessage,
    SessionReadyData,
    SessionReadyMessage,
    SnapshotMessage,
    StartMeetingMessage,
    StartSessionMessage,
    StateChangeData,
    StateChangeMessage,
    StopPlaybackMessage,
    WakeDetectedMessage,
    now_ms,
    parse_client_message,
)
from voicechat.orchestration.session_shell import ConversationSession
from voicechat.orchestration.turn_controller import TurnController
from voicechat.orchestration.wake_listener import WakeListener
from voicechat.state_machine import ConversationTurnState
from voicechat.stt.deepgram_engine import make_engine_factory
from voicechat.tts.openai_tts import OpenAISpeechClient

logger = logging.getLogger(__name__)

SendFn = Callable[[BaseModel], Awaitable[bool]]


class ConnectionManager:
    """
    Manages active WebSocket connections.

    Responsibilities:
    - Track active connections (session_id → websocket)
    - Handle connection lifecycle (connect, disconnect, cleanup)
    - Send typed messages to a session
    """

    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.session_metadata: Dict[str, dict] = {}

        logger.info("ConnectionManager initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept new WebSocket connection and create session.

        Returns:
            session_id: UUID of created session
        """
        await websocket.accept()

        session_id = str(uuid.uuid4())
        self.active_connections[session_id] = websocket
        self.session_metadata[session_id] = {
            "connected_at": now_ms(),
            "client_info": websocket.client,
            "total_messages": 0,
        }

        logger.info(
            f"WebSocket connected: session_id={session_id}, "
            f"client={websocket.client}, "
            f"total_connections={len(self.active_connections)}"
        )

        await self.send_message(
            session_id,
            SessionReadyMessage(data=SessionReadyData(session_id=session_id)),
        )
        return session_id

    async def disconnect(self, session_id: str):
        """Forget a connection and log its summary."""
        if session_id not in self.active_connections:
            return

        self.active_connections.pop(session_id, None)
        metadata = self.session_metadata.pop(session_id, {})

        if metadata:
            session_duration = now_ms() - metadata.get("connected_at", 0)
            logger.info(
                f"WebSocket disconnected: session_id={session_id}, "
                f"duration_ms={session_duration}, "
                f"total_messages={metadata.get('total_messages', 0)}, "
                f"remaining_connections={len(self.active_connections)}"
            )

    async def send_message(self, session_id: str, message: BaseModel) -> bool:
        """
        Send a message model as JSON to a session.

        Returns:
            True if sent successfully, False otherwise
        """
        websocket = self.active_connections.get(session_id)
        if websocket is None:
            logger.debug(f"Dropping message for closed session {session_id}")
            return False

        payload = message.model_dump(mode="json")
        try:
            await websocket.send_json(payload)
            if session_id in self.session_metadata:
                self.session_metadata[session_id]["total_messages"] += 1
            logger.debug(f"Message sent to session {session_id}: type={payload.get('type', 'unknown')}")
            return True

        except WebSocketDisconnect:
            logger.warning(f"WebSocket disconnected while sending to session: {session_id}")
            await self.disconnect(session_id)
            return False
        except Exception as e:
            logger.error(f"Error sending message to session {session_id}: {e}", exc_info=True)
            return False

    async def send_state_change(
        self,
        session_id: str,
        from_state: ConversationTurnState,
        to_state: ConversationTurnState,
    ):
        message = StateChangeMessage(
            data=StateChangeData(from_state=from_state, to_state=to_state)
        )
        await self.send_message(session_id, message)

    async def send_error(
        self,
        session_id: str,
        code: str,
        message_text: str,
        recoverable: bool = True,
    ):
        message = ErrorMessage(
            data=ErrorData(code=code, message=message_text, recoverable=recoverable)
        )
        await self.send_message(session_id, message)

    def get_session_count(self) -> int:
        return len(self.active_connections)


# ============================================================================
# Client bridge collaborators
# ============================================================================

class AudioFeed:
    """Routes client microphone chunks to the attached engine, if any."""

    def __init__(self):
        self._sink: Optional[Callable[[bytes], None]] = None
        self.chunks_received = 0
        self.chunks_dropped = 0

    def attach(self, sink: Callable[[bytes], None]):
        self._sink = sink

    def detach(self, sink: Callable[[bytes], None]):
        if self._sink == sink:
            self._sink = None

    @property
    def is_attached(self) -> bool:
        return self._sink is not None

    def push(self, audio: bytes) -> bool:
        """
        Deliver one chunk.

        Returns:
            False if no engine is listening (microphone suppressed)
        """
        self.chunks_received += 1
        if self._sink is None:
            self.chunks_dropped += 1
            return False
        self._sink(audio)
        return True


class ClientMicrophoneGate:
    """
    Microphone permission gate answered by the client.

    A grant is remembered for the rest of the connection; a denial is asked
    again on the next request.
    """

    def __init__(self, send: SendFn, timeout_s: float = 30.0):
        self.send = send
        self.timeout_s = timeout_s
        self.granted = False
        self._pending: Optional[asyncio.Future] = None

    async def request_access(self) -> bool:
        if self.granted:
            return True

        loop = asyncio.get_running_loop()
        if self._pending is None or self._pending.done():
            self._pending = loop.create_future()
            await self.send(MicPermissionRequestMessage())
            logger.info("Microphone permission requested from client")

        try:
            granted = await asyncio.wait_for(asyncio.shield(self._pending), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"No microphone permission answer within {self.timeout_s}s")
            granted = False

        self.granted = bool(granted)
        return self.granted

    def resolve(self, granted: bool):
        """Client answered mic_permission."""
        if not granted:
            self.granted = False
        if self._pending and not self._pending.done():
            self._pending.set_result(granted)
        elif granted:
            self.granted = True

    def cancel(self):
        if self._pending and not self._pending.done():
            self._pending.set_result(False)


class ClientAudioPlayer:
    """
    Playback device on the client side.

    play() returns when the client reports playback_complete, raises
    PlaybackError on playback_error. A client that never answers is
    treated as finished after timeout_s.
    """

    def __init__(self, send: SendFn, audio_format: str = "mp3", timeout_s: float = 120.0):
        self.send = send
        self.audio_format = audio_format
        self.timeout_s = timeout_s
        self._pending: Optional[asyncio.Future] = None

    @property
    def is_playing(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def play(self, audio: bytes):
        if self.is_playing:
            # A new clip replaces whatever was still playing
            self._pending.set_result(None)

        future = asyncio.get_running_loop().create_future()
        self._pending = future

        sent = await self.send(AgentAudioMessage(
            data=AgentAudioData(
                audio=base64.b64encode(audio).decode("ascii"),
                format=self.audio_format,
            )
        ))
        if not sent:
            raise PlaybackError("client connection is closed")

        try:
            await asyncio.wait_for(future, timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"No playback answer within {self.timeout_s}s - assuming finished")

    async def stop(self):
        """Stop client playback; a pending play() returns."""
        if not self.is_playing:
            return
        await self.send(StopPlaybackMessage())
        if self.is_playing:
            self._pending.set_result(None)

    def playback_complete(self):
        if self.is_playing:
            self._pending.set_result(None)

    def playback_failed(self, message: str):
        if self.is_playing:
            self._pending.set_exception(PlaybackError(message or "client playback failed"))

    def cancel(self):
        if self.is_playing:
            self._pending.set_result(None)


# ============================================================================
# Per-connection message routing
# ============================================================================

class VoiceChatHandler:
    """
    One voice chat per WebSocket connection.

    Handlers that wait for a client answer (session start, unmute) run as
    tasks: the answer arrives through the same receive loop.
    """

    def __init__(
        self,
        session_id: str,
        manager: ConnectionManager,
        responder: Optional[ResponseGenerator] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        engine_factory: Optional[EngineFactory] = None,
    ):
        self.session_id = session_id
        self.manager = manager

        self.audio_feed = AudioFeed()
        self.mic_gate = ClientMicrophoneGate(self._send)
        self.player = ClientAudioPlayer(self._send, settings.tts_format)
        self.responder = responder or OpenAIChatClient()
        self.synthesizer = synthesizer or OpenAISpeechClient()

        self.controller = TurnController(
            engine_factory=engine_factory or make_engine_factory(self.audio_feed),
            microphone_gate=self.mic_gate,
            responder=self.responder,
            synthesizer=self.synthesizer,
            player=self.player,
            on_state_change=self._on_state_change,
            on_snapshot=self._on_snapshot,
            on_chat_message=self._on_chat_message,
            on_wake=self._on_wake,
            on_error=self._on_error,
        )
        self.wake_listener = WakeListener(
            engine_factory=self.controller.capture.engine_factory,
            microphone_gate=self.mic_gate,
            on_transcript=self._on_meeting_transcript,
            on_error=self._on_error,
        )
        self.session = ConversationSession(
            self.controller,
            on_ended=self._on_session_ended,
            wake_listener=self.wake_listener,
            on_wake=self._on_wake,
        )
        self._tasks: Set[asyncio.Task] = set()

    async def _send(self, message: BaseModel) -> bool:
        return await self.manager.send_message(self.session_id, message)

    async def handle(self, payload: dict):
        """Route one raw client message."""
        try:
            message = parse_client_message(payload)
        except ValidationError as e:
            logger.warning(f"Invalid client message: {e.errors()[:1]}")
            await self.manager.send_error(
                self.session_id,
                "invalid_message",
                f"Invalid message: {payload.get('type', 'unknown') if isinstance(payload, dict) else 'unknown'}",
                recoverable=True,
            )
            return

        if isinstance(message, AudioChunkMessage):
            self._handle_audio_chunk(message)
        elif isinstance(message, StartSessionMessage):
            if message.data.meeting_context is not None:
                self.controller.set_meeting_context(message.data.meeting_context)
            self._spawn(self.session.start())
        elif isinstance(message, StartMeetingMessage):
            if message.data.meeting_context is not None:
                self.controller.set_meeting_context(message.data.meeting_context)
            self._spawn(self.session.listen_for_wake())
        elif isinstance(message, MicPermissionMessage):
            self.mic_gate.resolve(message.data.granted)
        elif isinstance(message, PlaybackCompleteMessage):
            self.player.playback_complete()
        elif isinstance(message, PlaybackErrorMessage):
            self.player.playback_failed(message.data.message)
        elif isinstance(message, InterruptMessage):
            await self.controller.interrupt()
        elif isinstance(message, MuteMessage):
            self._spawn(self.controller.set_muted(message.data.muted))
        elif isinstance(message, MeetingContextMessage):
            self.controller.set_meeting_context(message.data.content)
        elif isinstance(message, EndSessionMessage):
            await self.session.end()
        elif isinstance(message, PingMessage):
            await self._send(PongMessage())

    def _handle_audio_chunk(self, message: AudioChunkMessage):
        try:
            audio = base64.b64decode(message.data.audio, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.warning(f"Undecodable audio chunk: {e}")
            return
        self.audio_feed.push(audio)

    def _spawn(self, coro: Awaitable[object]):
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session task failed: {task.exception()}", exc_info=task.exception())

    async def close(self):
        """Connection is gone: stop everything and release HTTP sessions."""
        self.mic_gate.cancel()
        self.player.cancel()
        await self.session.stop()
        for task in list(self._tasks):
            task.cancel()
        for client in (self.responder, self.synthesizer):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    # Controller callbacks

    async def _on_state_change(self, from_state: ConversationTurnState, to_state: ConversationTurnState):
        await self.manager.send_state_change(self.session_id, from_state, to_state)

    async def _on_snapshot(self, snapshot: ConversationSnapshot):
        await self._send(SnapshotMessage(data=snapshot))

    async def _on_chat_message(self, message: ChatMessage):
        await self._send(ChatMessageMessage(data=message))

    async def _on_wake(self):
        await self._send(WakeDetectedMessage())

    async def _on_meeting_transcript(self, text: str, current_speech: str):
        await self._send(MeetingTranscriptMessage(
            data=MeetingTranscriptData(text=text, current_speech=current_speech)
        ))

    async def _on_error(self, code: str, message: str, recoverable: bool):
        await self.manager.send_error(self.session_id, code, message, recoverable)

    async def _on_session_ended(self):
        await self._send(SessionEndedMessage())


# Global connection manager instance
connection_manager = ConnectionManager()
