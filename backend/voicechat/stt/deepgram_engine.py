"""
Deepgram live streaming recognition engine.

Implements the recognition engine contract (start/stop/abort plus
on_start/on_result/on_end/on_error callbacks) over Deepgram's /v1/listen
WebSocket with interim results enabled.

Deepgram closes a stream that receives no audio for a while. That close is
reported like a browser recognizer reports silence: error kind "no-speech"
followed by on_end, and the capture session restarts the engine.
"""

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional
from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

from voicechat.config import settings
from voicechat.errors import EngineUnsupportedError
from voicechat.interfaces import EngineFactory, RecognitionListener
from voicechat.models import RecognitionResult

if TYPE_CHECKING:
    from voicechat.websocket import AudioFeed

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"

# Close codes
NORMAL_CLOSE_CODES = {1000}
IDLE_TIMEOUT_CLOSE_CODES = {1011}
AUTH_FAILURE_STATUSES = {401, 402, 403}


class DeepgramEngine:
    """
    One restartable recognition engine instance.

    Features:
    - Continuous recognition with interim results and a fixed language
    - Audio taken from the session's AudioFeed while started
    - Graceful stop (flush + on_end) and silent abort
    """

    def __init__(
        self,
        listener: RecognitionListener,
        audio_feed: "AudioFeed",
        api_key: str,
        model: Optional[str] = None,
        language: Optional[str] = None,
        encoding: Optional[str] = None,
        sample_rate: Optional[int] = None,
        connect_fn: Callable[..., Any] = connect,
    ):
        """
        Initialize Deepgram engine.

        Args:
            listener: Receives lifecycle and result callbacks
            audio_feed: Source of client microphone chunks
            api_key: Deepgram API key
            model: Deepgram model (default from settings)
            language: Recognition language (default from settings)
            encoding: Audio encoding of the chunks (default from settings)
            sample_rate: Sample rate of the chunks (default from settings)
            connect_fn: WebSocket connect coroutine
        """
        self.listener = listener
        self.audio_feed = audio_feed
        self.api_key = api_key
        self.model = model or settings.stt_model
        self.language = language or settings.stt_language
        self.encoding = encoding or settings.stt_encoding
        self.sample_rate = sample_rate or settings.stt_sample_rate
        self._connect = connect_fn

        self.ws = None
        self.is_running = False
        self._stopping = False
        self._aborted = False
        self._receive_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None
        self._audio_queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._audio_chunks_sent = 0

    @property
    def url(self) -> str:
        params = {
            "model": self.model,
            "language": self.language,
            "encoding": self.encoding,
            "sample_rate": self.sample_rate,
            "channels": 1,
            "interim_results": "true",
            "punctuate": "true",
        }
        return f"{DEEPGRAM_LISTEN_URL}?{urlencode(params)}"

    async def start(self):
        """
        Open a live transcription stream and report on_start.

        Authentication failures are reported as "service-not-allowed",
        anything else as "network". No exception escapes.
        """
        if self.is_running:
            logger.warning("Deepgram engine already running")
            return

        self._stopping = False
        self._aborted = False
        self._audio_chunks_sent = 0
        self._audio_queue = asyncio.Queue(maxsize=100)

        try:
            self.ws = await self._connect(
                self.url,
                additional_headers={"Authorization": f"Token {self.api_key}"},
                ping_interval=10,
                ping_timeout=5,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            logger.error(f"Deepgram rejected the connection (HTTP {status})")
            if not self._aborted:
                self.listener.on_error(
                    "service-not-allowed" if status in AUTH_FAILURE_STATUSES else "network"
                )
            return
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            logger.error(f"Failed to connect to Deepgram: {e}")
            if not self._aborted:
                self.listener.on_error("network")
            return

        if self._aborted:
            # abort() won the race while connecting
            await self._close_socket()
            return

        self.is_running = True
        self.audio_feed.attach(self._enqueue_audio)
        self._receive_task = asyncio.create_task(self._receive_loop())
        self._send_task = asyncio.create_task(self._send_loop())
        logger.info(f"Deepgram stream opened (model={self.model}, language={self.language})")
        self.listener.on_start()

    async def stop(self):
        """Ask Deepgram to flush pending results and close; on_end follows."""
        if not self.is_running:
            return

        self._stopping = True
        self.audio_feed.detach(self._enqueue_audio)
        try:
            await self.ws.send(json.dumps({"type": "CloseStream"}))
        except Exception as e:
            logger.warning(f"Error sending CloseStream to Deepgram: {e}")
            await self._finish(error_kind=None)

    async def abort(self):
        """Tear the stream down immediately. No callbacks follow."""
        self._aborted = True
        self.audio_feed.detach(self._enqueue_audio)
        was_running = self.is_running
        self.is_running = False

        for task in (self._send_task, self._receive_task):
            if task and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._send_task = None
        self._receive_task = None

        await self._close_socket()
        if was_running:
            logger.info("Deepgram stream aborted")

    def _enqueue_audio(self, audio: bytes):
        try:
            self._audio_queue.put_nowait(audio)
        except asyncio.QueueFull:
            logger.warning("Audio queue full - dropping chunk")

    async def _send_loop(self):
        """Forward queued microphone chunks to Deepgram."""
        try:
            while self.is_running and not self._stopping:
                audio = await self._audio_queue.get()
                await self.ws.send(audio)
                self._audio_chunks_sent += 1
                if self._audio_chunks_sent == 1:
                    logger.info(f"First audio chunk sent to Deepgram: {len(audio)} bytes")
                elif self._audio_chunks_sent % 100 == 0:
                    logger.debug(f"Audio chunks sent to Deepgram: {self._audio_chunks_sent}")
        except asyncio.CancelledError:
            raise
        except ConnectionClosed:
            # Receive loop reports the close
            pass
        except Exception as e:
            logger.error(f"Error sending audio to Deepgram: {e}")

    async def _receive_loop(self):
        """Read messages until the server closes the stream."""
        try:
            async for message in self.ws:
                if isinstance(message, (bytes, bytearray)):
                    continue
                self.process_message(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            await self._finish(error_kind=self.classify_close(e.rcvd.code if e.rcvd else None))
            return
        except Exception as e:
            logger.error(f"Fatal error in Deepgram receive loop: {e}")
            await self._finish(error_kind="network")
            return

        close = getattr(self.ws, "close_code", None)
        await self._finish(error_kind=self.classify_close(close))

    def classify_close(self, code: Optional[int]) -> Optional[str]:
        """
        Map a server close code to an engine error kind.

        Returns:
            None for a clean close, "no-speech" for an idle timeout,
            "network" for anything else
        """
        if self._stopping or code in NORMAL_CLOSE_CODES:
            return None
        if code in IDLE_TIMEOUT_CLOSE_CODES:
            return "no-speech"
        return "network"

    async def _finish(self, error_kind: Optional[str]):
        """Report the end of this lifecycle (unless aborted)."""
        if self._aborted or not self.is_running:
            return

        self.is_running = False
        self.audio_feed.detach(self._enqueue_audio)
        if self._send_task and not self._send_task.done() and self._send_task is not asyncio.current_task():
            self._send_task.cancel()
        await self._close_socket()

        if error_kind:
            logger.info(f"Deepgram stream ended ({error_kind})")
            self.listener.on_error(error_kind)
        else:
            logger.info("Deepgram stream ended")
        self.listener.on_end()

    async def _close_socket(self):
        ws = self.ws
        self.ws = None
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing Deepgram socket: {e}")

    def process_message(self, message: str):
        """
        Route one Deepgram message.

        Message types:
        - Results: interim or final transcript alternatives
        - Metadata / SpeechStarted / UtteranceEnd: logged only
        """
        if self._aborted:
            return
        try:
            data = json.loads(message)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode Deepgram message: {e}")
            return

        msg_type = data.get("type", "")
        if msg_type == "Results":
            result = parse_results(data)
            if result is not None:
                logger.debug(
                    f"Deepgram {'final' if result.is_final else 'interim'}: "
                    f"'{result.transcript[:60]}'"
                )
                self.listener.on_result([result])
        elif msg_type in ("Metadata", "SpeechStarted", "UtteranceEnd"):
            logger.debug(f"Deepgram {msg_type}")
        else:
            logger.debug(f"Unhandled Deepgram message type: {msg_type}")


def parse_results(data: dict) -> Optional[RecognitionResult]:
    """
    Convert a Deepgram Results payload to a RecognitionResult.

    Returns:
        None when every alternative is empty (Deepgram sends these for silence)
    """
    channel = data.get("channel") or {}
    alternatives = [
        (alt.get("transcript") or "").strip()
        for alt in channel.get("alternatives", [])
    ]
    if not any(alternatives):
        return None
    return RecognitionResult(
        alternatives=alternatives,
        is_final=bool(data.get("is_final", False)),
    )


def make_engine_factory(audio_feed: "AudioFeed", api_key: Optional[str] = None) -> EngineFactory:
    """
    Engine factory bound to one session's audio feed.

    Raises (when called):
        EngineUnsupportedError: no Deepgram API key configured
    """
    key = api_key if api_key is not None else settings.deepgram_api_key

    def factory(listener: RecognitionListener) -> DeepgramEngine:
        if not key:
            raise EngineUnsupportedError("Deepgram API key is not configured")
        return DeepgramEngine(listener, audio_feed, api_key=key)

    return factory
