"""
FastAPI application: health check and the voice chat WebSocket.

Run with:
    uvicorn voicechat.main:app --host 0.0.0.0 --port 8000
"""

import json
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from voicechat import __version__
from voicechat.config import settings
from voicechat.websocket import VoiceChatHandler, connection_manager

logger = logging.getLogger(__name__)


def configure_logging(level: str = None):
    """Install the root handler at the configured level."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper()),
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )
    # Third-party clients are chatty at DEBUG
    for noisy in ("websockets", "aiohttp", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(
        f"Voice chat backend starting (environment={settings.environment}, "
        f"stt_language={settings.stt_language}, model={settings.openai_model})"
    )
    if not settings.deepgram_api_key:
        logger.warning("DEEPGRAM_API_KEY not set - voice sessions will report engine_unsupported")
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set - answers will fall back to the apology message")
    yield
    logger.info(f"Voice chat backend stopping ({connection_manager.get_session_count()} open connections)")


app = FastAPI(
    title="Voice Chat Backend",
    version=__version__,
    description="Turn-taking voice assistant for meeting Q&A",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url] if settings.is_production else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness check."""
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "environment": settings.environment,
        "active_sessions": connection_manager.get_session_count(),
    })


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """One voice chat session per connection."""
    session_id = await connection_manager.connect(websocket)
    handler = VoiceChatHandler(session_id, connection_manager)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                await connection_manager.send_error(
                    session_id, "invalid_json", "Message is not valid JSON", recoverable=True
                )
                continue
            if not isinstance(payload, dict):
                await connection_manager.send_error(
                    session_id, "invalid_message", "Message must be a JSON object", recoverable=True
                )
                continue
            await handler.handle(payload)

    except WebSocketDisconnect:
        logger.info(f"Client closed session {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error in session {session_id}: {e}", exc_info=True)
    finally:
        await handler.close()
        await connection_manager.disconnect(session_id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voicechat.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
