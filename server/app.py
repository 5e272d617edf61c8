"""
FastAPI server for the Paule relay (Twilio ConversationRelay).

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /twiml: Generate TwiML for Twilio webhook
- WS /ws: ConversationRelay WebSocket
"""

import sys
import time
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
from twilio.twiml.voice_response import Connect, VoiceResponse
import uvicorn

from src.relay.config import Config, get_config, init_config, ConfigError
from src.relay.dispatcher import create_dispatcher
from src.relay.metrics import metrics


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


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Paule relay server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host or None,
            tts_provider=config.tts_provider,
            language=config.language,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    yield

    # Shutdown
    logger.info("Shutting down server...")
    from src.relay.llm import close_backend
    await close_backend()


# Create FastAPI app
app = FastAPI(
    title="Paule Relay",
    description="Streaming AI replies for Twilio ConversationRelay calls",
    version="1.0.0",
    lifespan=lifespan,
)


def _base_url(request: Request, config: Config) -> str:
    """Public base URL, honouring proxy headers (Railway, ngrok, ...)."""
    if config.public_host:
        return f"https://{config.public_host}"
    proto = request.headers.get("x-forwarded-proto") or "https"
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host}"


def _to_ws_url(http_url: str) -> str:
    return http_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)


def eleven_voice_string(config: Config) -> str:
    """ConversationRelay ElevenLabs voice format: VOICEID-MODEL-SPEED_STABILITY_SIMILARITY."""
    return (
        f"{config.eleven_voice_id}-{config.eleven_model_id}-"
        f"{config.eleven_speed}_{config.eleven_stability}_{config.eleven_similarity}"
    )


def build_twiml(ws_url: str, config: Config) -> str:
    """
    Build the TwiML that hands the call to ConversationRelay.

    Only attributes Twilio accepts for the chosen provider are emitted;
    unsupported ones make the call fail with error 64101.
    """
    provider = "ElevenLabs" if config.uses_elevenlabs else "Google"
    voice: Optional[str] = None
    if provider == "ElevenLabs":
        if config.eleven_voice_id:
            voice = eleven_voice_string(config)
        else:
            # No voice id: keep the call alive on Google.
            logger.warning("ElevenLabs requested without ELEVEN_VOICE_ID, using Google")
            provider = "Google"

    response = VoiceResponse()
    connect = Connect()
    connect.conversation_relay(
        url=ws_url,
        language=config.language,
        tts_provider=provider,
        welcome_greeting=config.welcome_greeting,
        voice=voice,
    )
    response.append(connect)
    return str(response)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": metrics.active_sessions,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/")
async def index() -> PlainTextResponse:
    return PlainTextResponse("paule-relay running. Use /twiml and /health")


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for Twilio webhook.

    Returns TwiML that connects the call to our ConversationRelay WebSocket.
    """
    config = get_config()
    ws_url = _to_ws_url(_base_url(request, config)) + "/ws"
    twiml = build_twiml(ws_url, config)

    logger.info(
        "Generated TwiML",
        ws_url=ws_url,
        tts_provider=config.tts_provider,
        language=config.language,
    )

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """
    ConversationRelay WebSocket endpoint.

    Receives caller transcripts and sends reply text for one call.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    client = websocket.headers.get("x-forwarded-for") or (
        websocket.client.host if websocket.client else "unknown"
    )
    logger.info(
        "WebSocket connected",
        client=client,
        active_connections=metrics.active_connections,
    )

    dispatcher = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))
            if dispatcher is not None:
                dispatcher.channel.close()

    try:
        dispatcher = create_dispatcher(send_message)

        while True:
            try:
                message = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", call_sid=_call_sid(dispatcher))
                break

            # One bad message must not end the call.
            try:
                await dispatcher.handle_message(message)
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    call_sid=_call_sid(dispatcher),
                    error=str(e),
                )
                metrics.errors += 1

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            error=str(e),
        )
        metrics.errors += 1

    finally:
        # Cleanup
        if dispatcher:
            try:
                await dispatcher.close()
            except Exception as e:
                logger.error("Error closing dispatcher", error=str(e))

        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            call_sid=_call_sid(dispatcher) if dispatcher else None,
            active_connections=metrics.active_connections,
        )


def _call_sid(dispatcher) -> Optional[str]:
    session = dispatcher.session
    return session.log_id if session else None


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
