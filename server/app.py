"""
FastAPI server for the Twilio <-> OpenAI Realtime voice relay.

Endpoints:
- GET /: Plain liveness check
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /voice: Generate TwiML for the Twilio incoming-call webhook
- WS /twilio-media: Twilio Media Streams WebSocket (one CallRelay per call)
"""

import asyncio
import sys

# 2025 Performance: Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any
from urllib.parse import quote
import logging

from fastapi import FastAPI, WebSocket, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
from twilio.twiml.voice_response import Connect, VoiceResponse
import uvicorn

from src.relay.caller_channel import CallerChannelHandler
from src.relay.config import get_config, init_config, ConfigError
from src.relay.notifier import SummaryNotifier
from src.relay.realtime_client import AIChannelClient
from src.relay.relay import CallRelay
from src.relay.sessions import SessionStore


# Initialize structured logging
def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    active_calls: int = 0
    ai_connect_failures: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": self.active_calls,
            "ai_connect_failures": self.ai_connect_failures,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()

# Process-wide call sessions (callSid -> Session)
sessions = SessionStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting voice relay server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host or None,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...", open_sessions=len(sessions), open_call_ids=sorted(sessions))


# Create FastAPI app
app = FastAPI(
    title="Voice Relay",
    description="Bridges Twilio phone calls to OpenAI Realtime and posts call summaries",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root() -> PlainTextResponse:
    return PlainTextResponse("OK")


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
            "open_sessions": len(sessions),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


async def _incoming_call_sid(request: Request) -> str:
    call_sid = request.query_params.get("CallSid", "")
    if request.method == "POST":
        form = await request.form()
        call_sid = str(form.get("CallSid") or call_sid)
    return call_sid.strip() or f"call_{int(time.time() * 1000)}"


def build_twiml(stream_url: str) -> str:
    """TwiML that connects the call audio to our media WebSocket."""
    response = VoiceResponse()
    connect = Connect()
    connect.stream(url=stream_url)
    response.append(connect)
    return str(response)


@app.post("/voice")
@app.get("/voice")
@app.post("/twiml")
@app.post("/incoming-call")
async def incoming_call(request: Request) -> Response:
    """
    Twilio incoming-call webhook.

    Creates the call's session and returns TwiML pointing the media stream
    at /twilio-media with the callSid attached.
    """
    config = get_config()
    call_sid = await _incoming_call_sid(request)

    forwarded_proto = request.headers.get("x-forwarded-proto", "")
    secure = request.url.scheme == "https" or forwarded_proto == "https"
    base_url = config.media_ws_url(host=request.headers.get("host", ""), secure=secure)
    stream_url = f"{base_url}?callSid={quote(call_sid, safe='')}"

    sessions.evict_unclaimed(config.pending_session_ttl_seconds)
    sessions.get_or_create(call_sid)

    logger.info("Generated TwiML", call_id=call_sid, ws_url=stream_url)

    return Response(
        content=build_twiml(stream_url),
        media_type="application/xml",
    )


@app.websocket("/twilio-media")
async def media_stream(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    Runs one CallRelay for the duration of the call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1
    metrics.active_calls += 1

    call_id = websocket.query_params.get("callSid") or f"call_{int(time.time() * 1000)}"

    logger.info(
        "WebSocket connected",
        call_id=call_id,
        active_calls=metrics.active_calls,
    )

    config = get_config()
    relay = CallRelay(
        call_id,
        CallerChannelHandler(websocket, call_id=call_id),
        AIChannelClient(config, call_id=call_id),
        store=sessions,
        notifier=SummaryNotifier.from_config(config),
        config=config,
    )

    try:
        await relay.run()
        if relay.connect_failed:
            metrics.ai_connect_failures += 1
    except Exception as e:
        logger.error(
            "WebSocket handler error",
            call_id=call_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        metrics.active_connections -= 1
        metrics.active_calls -= 1

        logger.info(
            "Call ended",
            call_id=call_id,
            active_calls=metrics.active_calls,
        )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info(
        "Starting server",
        port=config.port,
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
