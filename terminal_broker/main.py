"""
Terminal Broker - Main Application.

FastAPI application wiring the broker core together:
- WebSocket endpoint streaming a per-identity PTY to browser viewers
- REST API for health, sessions and logout
- Idle reaper background task
- Prometheus metrics at /metrics

Author: Backend Lead Developer
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app

from . import __version__
from .config import BrokerConfig
from .core.auth import CredentialStore, TokenValidator
from .core.pty_manager import PTYSpawner
from .core.reaper import IdleReaper
from .core.relay import MessageType, ViewerRelay
from .core.session_registry import SessionRegistry, Spawner
from .api import router

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[BrokerConfig] = None,
    spawner: Optional[Spawner] = None,
) -> FastAPI:
    """
    Build the broker application.

    Args:
        config: Broker configuration (None = load from environment)
        spawner: Process spawner (None = PTYSpawner running the chat CLI)
    """
    config = config or BrokerConfig()

    logging.basicConfig(
        level=config.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Startup:
        - Validate token secret
        - Initialize registry, relay and reaper
        - Start idle reaper

        Shutdown:
        - Stop idle reaper
        - Destroy every session
        """
        logger.info("Starting Terminal Broker...")

        token_validator = TokenValidator(config.token_secret or "", config.token_ttl_seconds)
        credentials = CredentialStore(config.sessions_dir)
        registry = SessionRegistry(
            spawner or PTYSpawner(config),
            credential_dir_for=credentials.ensure,
            default_cols=config.default_cols,
            default_rows=config.default_rows,
        )
        relay = ViewerRelay(
            registry,
            max_input_length=config.max_input_length,
            max_queued_chunks=config.viewer_queue_chunks,
        )
        reaper = IdleReaper(
            registry,
            timeout=config.session_timeout_seconds,
            interval=config.reaper_interval_seconds,
        )

        app.state.config = config
        app.state.started_at = time.time()
        app.state.token_validator = token_validator
        app.state.credentials = credentials
        app.state.registry = registry
        app.state.relay = relay
        app.state.reaper = reaper

        reaper.start()

        logger.info(
            f"Terminal Broker started: chat={config.chat_protocol}://{config.chat_host}, "
            f"session timeout={config.session_timeout_seconds // 60} minutes"
        )

        yield

        logger.info("Shutting down Terminal Broker...")

        await reaper.stop()
        destroyed = await registry.shutdown_all()

        logger.info(f"Terminal Broker shut down ({destroyed} sessions destroyed)")

    app = FastAPI(
        title="Terminal Broker",
        description="Per-user terminal session broker for a browser chat client",
        version=__version__,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    app.mount("/metrics", make_asgi_app())

    @app.websocket("/terminal")
    async def terminal_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(default=None, description="Signed identity token"),
        jwt: Optional[str] = Query(default=None, description="Signed identity token (legacy client name)"),
        new: bool = Query(default=False, description="Replace any existing session"),
    ):
        """
        WebSocket endpoint for terminal I/O.

        Query Parameters:
            token: Signed identity token (also accepted as `jwt`)
            new: Tear down the identity's current process and start fresh

        Message Protocol: see terminal_broker.core.relay
        """
        await websocket.accept()

        token = token or jwt
        state = websocket.app.state
        result = state.token_validator.validate(token)

        if not result.valid:
            message = "No authentication token" if not token else "Invalid or expired token"
            logger.warning(f"Connection rejected: {result.error}")
            await websocket.send_json({"type": MessageType.ERROR, "message": message})
            await websocket.close(code=1008)
            return

        logger.info(f"WebSocket connected for {result.identity}")
        await state.relay.run(
            websocket,
            result.identity,
            force_new=new or state.config.force_new_on_connect
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = BrokerConfig()
    uvicorn.run(
        "terminal_broker.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower()
    )
