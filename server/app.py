"""
FastAPI server for the Twilio voice bridge.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming: TwiML for the Twilio voice webhook
- WS /connection: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState
import structlog
from twilio.twiml.voice_response import Connect, VoiceResponse
import uvicorn

from src.voicebridge.config import ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structlog over stdlib logging; per-call fields come from contextvars."""
    renderer = structlog.dev.ConsoleRenderer() if log_level == "DEBUG" else structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )


logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Process-wide counters, folded in from each call's session summary."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    active_calls: int = 0
    errors: int = 0
    interruptions: int = 0
    call_seconds: float = 0.0
    marks_sent: int = 0
    marks_acknowledged: int = 0

    def call_started(self) -> None:
        self.total_calls += 1
        self.active_calls += 1

    def call_ended(self, summary: Dict[str, Any]) -> None:
        self.active_calls -= 1
        self.interruptions += summary.get("interruptions", 0)
        self.call_seconds += summary.get("duration_seconds", 0.0)
        self.marks_sent += summary.get("marks_sent", 0)
        self.marks_acknowledged += summary.get("marks_acknowledged", 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "errors": self.errors,
            "interruptions": self.interruptions,
            "call_seconds": round(self.call_seconds, 2),
            "marks_sent": self.marks_sent,
            "marks_acknowledged": self.marks_acknowledged,
        }


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration and the LLM model before accepting calls."""
    try:
        config = init_config()
        configure_logging(config.log_level)

        from src.voicebridge.llm import validate_model
        await validate_model(config)

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    logger.info("Voice bridge ready", port=config.port, ws_url=config.ws_url)
    yield
    logger.info("Voice bridge shutting down", active_calls=metrics.active_calls)


app = FastAPI(
    title="Voice Bridge",
    description="Conversational voice agent for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


def build_twiml(ws_url: str) -> str:
    """TwiML that connects the call audio to our media-stream WebSocket."""
    response = VoiceResponse()
    connect = Connect()
    connect.stream(url=ws_url)
    response.append(connect)
    return str(response)


@app.get("/health")
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    return JSONResponse(content=metrics.to_dict())


@app.post("/incoming")
async def incoming_call() -> Response:
    """Twilio voice webhook: answer by streaming the call to /connection."""
    ws_url = get_config().ws_url
    logger.info("Incoming call", ws_url=ws_url)
    return Response(content=build_twiml(ws_url), media_type="application/xml")


async def relay_frames(websocket: WebSocket, gateway: Any) -> None:
    """Feed Twilio frames to the gateway until the socket closes or the stream stops."""
    while gateway.is_running:
        try:
            message = await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("WebSocket disconnected")
            return

        try:
            await gateway.handle_message(message)
        except Exception as e:
            # One bad frame never ends the call.
            logger.error("Error handling WebSocket message", error=str(e))
            metrics.errors += 1


@app.websocket("/connection")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """One Twilio media stream, driven by one SessionGateway."""
    await websocket.accept()

    # Import here so the HTTP routes don't pull in the LLM and Deepgram clients
    from src.voicebridge.pipeline import create_pipeline

    async def send_message(message: str) -> None:
        await websocket.send_text(message)

    metrics.call_started()
    gateway = None
    summary: Dict[str, Any] = {}

    try:
        gateway = await create_pipeline(send_message)
        structlog.contextvars.bind_contextvars(session_id=gateway.session.session_id)
        logger.info("Media stream connected", active_calls=metrics.active_calls)

        await relay_frames(websocket, gateway)

    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1

    finally:
        if gateway:
            try:
                await gateway.stop()
            except Exception as e:
                logger.error("Error stopping gateway", error=str(e))
            summary = {**gateway.session.to_dict(), "interruptions": gateway.interruptions}

        if websocket.client_state == WebSocketState.CONNECTED:
            # Stream stopped by Twilio; the socket is still open on our side.
            try:
                await websocket.close()
            except RuntimeError as e:
                logger.debug("WebSocket already closed", error=str(e))

        metrics.call_ended(summary)
        logger.info("Call ended", summary=summary, active_calls=metrics.active_calls)
        structlog.contextvars.clear_contextvars()


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
