"""
FastAPI relay server for end-to-end encrypted chat.

This server:
- Assigns every WebSocket connection an ephemeral numeric session id
- Remembers the latest public key each session published
- Answers public key lookups and relays ciphertext between sessions
- Never sees plaintext or shared keys, and stores nothing on disk
"""

import logging
from pathlib import Path
from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles

from .config import RelaySettings
from .connection import OutboundChannel
from .errors import SessionIdExhaustedError
from .protocol import InitFrame
from .registry import SessionRegistry, SessionIdGenerator
from .router import RelayRouter

logger = logging.getLogger(__name__)

# Close code for "try again later"
WS_TRY_AGAIN_LATER = 1013


def create_app(settings: Optional[RelaySettings] = None,
               id_generator: Optional[SessionIdGenerator] = None) -> FastAPI:
    """
    Build the relay application.

    The session registry is created when the app starts and discarded when it
    shuts down.

    Args:
        settings: Relay settings, read from the environment when omitted
        id_generator: Session id source, random 6-digit ids when omitted
    """
    settings = settings or RelaySettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        registry = SessionRegistry(id_generator)
        app.state.registry = registry
        app.state.router = RelayRouter(registry)
        logger.info("Relay ready")
        yield
        logger.info("Relay shutting down, dropping %d session(s)", len(registry))
        registry.clear()

    app = FastAPI(
        title="Encrypted Chat Relay",
        description="Ephemeral session relay for end-to-end encrypted chat",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = settings

    static_dir = Path(settings.static_dir) if settings.static_dir else None
    if static_dir is not None and static_dir.is_dir():
        app.mount("/static", StaticFiles(directory=static_dir), name="static")

    @app.get("/", response_class=HTMLResponse)
    async def get_web_interface():
        """Serve the web client if one is installed"""
        if static_dir is not None:
            index = static_dir / "index.html"
            if index.is_file():
                return index.read_text(encoding="utf-8")
        return "<h1>Web client not found. Use the terminal client instead.</h1>"

    @app.get("/health")
    async def health():
        """Liveness probe"""
        return {"status": "ok"}

    @app.websocket("/")
    async def relay_endpoint(websocket: WebSocket):
        """
        Relay WebSocket.

        Protocol:
        1. Server sends: {"type": "init", "sessionId": "123456"}
        2. Client publishes: {"type": "publicKey", "key": "<base64>"}
        3. Client looks up peers: {"type": "getPublicKey", "for": "654321"}
        4. Client sends ciphertext: {"type": "message", "to": "654321", "ciphertext": {...}}
        """
        await relay_session(websocket, app.state.registry, app.state.router,
                            settings.outbound_queue_size)

    return app


async def relay_session(websocket: WebSocket, registry: SessionRegistry,
                        router: RelayRouter, max_queue: int):
    """Serve one connection from accept to cleanup"""
    await websocket.accept()
    channel = OutboundChannel(websocket, max_queue=max_queue)

    try:
        session_id = registry.allocate(channel)
    except SessionIdExhaustedError as e:
        logger.error("Refusing connection: %s", e)
        await websocket.close(code=WS_TRY_AGAIN_LATER)
        return

    channel.session_id = session_id
    channel.send(InitFrame(session_id=session_id).to_wire())
    channel.start()
    logger.info("Session %s connected (%d live)", session_id, len(registry))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is None:
                continue
            router.dispatch(session_id, raw)
    except Exception:
        logger.exception("Session %s failed", session_id)
    finally:
        registry.remove(session_id)
        await channel.close()
        logger.info("Session %s disconnected", session_id)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def run():
    """Console entry point"""
    import uvicorn

    settings = RelaySettings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port,
                log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
