"""Marketchat Backend Application.

Entry point for the marketplace's realtime chat service: buyers and farmers
talk about products and orders over authenticated WebSocket connections,
with presence, per-chat rooms and read receipts.

Modules:
    - chat: realtime gateway, rooms, dispatcher, chat lifecycle, HTTP API
    - auth: JWT bearer verification
    - directory: user / product / order lookups
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketchat import __version__
from marketchat.chat.errors import ChatError
from marketchat.chat.hub import get_hub
from marketchat.chat.router import router as chat_router
from marketchat.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Per-request access lines and client connection chatter drown out the
# [WS]/[Dispatch] lines that matter when debugging delivery.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # `logging.level: "debug"` in marketchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    hub = get_hub()
    logger.info(
        "Marketchat ready on http://%s:%s", config.server.host, config.server.port
    )

    yield  # Application runs here

    # Shutdown
    # Presence is process-local; nothing survives a restart.
    hub.presence.clear()
    hub.rooms.clear()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Marketchat API",
    description="Realtime chat and presence for the producer/buyer marketplace",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)

app.include_router(chat_router)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render chat errors as ``{status, message, code}`` with their HTTP status."""
    if exc.status_code >= 500:
        logger.error("Request %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        {
            "status": "error" if exc.status_code >= 500 else "fail",
            "message": exc.message,
            "code": exc.code,
        },
        status_code=exc.status_code,
    )


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run("marketchat.main:app", host=config.server.host, port=config.server.port)
