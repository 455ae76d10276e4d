from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from config import MarketChatConfig, config as default_config
from stores import StoreBackend, create_backend

from .events import EventEmitter
from .identity import IdentityResolver
from .presence import PresenceRegistry
from .server import SessionGateway


def create_app(
    config: Optional[MarketChatConfig] = None,
    backend: Optional[StoreBackend] = None,
) -> FastAPI:
    """Build the chat gateway application.

    A pre-built ``backend`` is used as-is and left open on shutdown; otherwise
    the backend named by ``storage.backend`` is created and closed with the app.
    """
    cfg = config or default_config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_backend = backend is None
        stores = backend
        gateway = None
        try:
            logger.info(f"Initializing {cfg.storage.backend} store backend...")
            if stores is None:
                stores = await create_backend(cfg.storage)

            identity_resolver = IdentityResolver(
                stores.accounts,
                secret_key=cfg.auth.secret_key,
                algorithm=cfg.auth.algorithm,
            )
            gateway = SessionGateway(
                stores,
                identity_resolver,
                presence=PresenceRegistry(),
                event_emitter=EventEmitter(max_history=cfg.gateway.event_history_size),
            )
            await gateway.start()
            app.state.stores = stores
            app.state.gateway = gateway
            logger.info("Chat gateway initialized")

            yield
        except Exception as e:
            logger.error(f"Server startup failed: {e}")
            raise
        finally:
            logger.info("Cleaning up resources...")
            if gateway:
                await gateway.stop()
            app.state.gateway = None
            if owns_backend and stores is not None:
                try:
                    await stores.close()
                except Exception as e:
                    logger.warning(f"Store cleanup failed: {e}")

    app = FastAPI(
        title="Market Chat Gateway",
        description="Realtime conversations between customers and service providers",
        version=cfg.system.version,
        lifespan=lifespan,
    )
    app.state.gateway = None

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": "error",
                "error": {"code": "http_error", "message": str(exc.detail)},
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error": {"code": "internal_error", "message": str(exc)},
            },
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.gateway.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def chat_websocket_endpoint(websocket: WebSocket):
        gateway: Optional[SessionGateway] = app.state.gateway
        if not gateway:
            await websocket.close(code=1011, reason="Gateway not initialized")
            return

        try:
            connection = await gateway.open_session(
                websocket,
                headers=websocket.headers,
                query_params=websocket.query_params,
                auth={"token": websocket.cookies.get("token")},
            )
        except Exception as e:
            logger.error(f"Chat WebSocket error: {e}")
            try:
                await websocket.close()
            except Exception:
                pass
            return
        await gateway.handle_connection(websocket, connection)

    app.add_api_websocket_route(cfg.gateway.websocket_path, chat_websocket_endpoint)

    @app.get("/", response_model=Dict[str, str])
    async def root():
        return {
            "message": "Market chat gateway is running",
            "version": cfg.system.version,
            "status": "running",
            "docs": "/docs",
            "websocket": cfg.gateway.websocket_path,
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "gateway_ready": app.state.gateway is not None,
            "storage": cfg.storage.backend,
            "timestamp": str(asyncio.get_event_loop().time()),
        }

    @app.get("/gateway/status")
    async def get_gateway_status():
        gateway: Optional[SessionGateway] = app.state.gateway
        if not gateway:
            raise HTTPException(status_code=503, detail="Gateway not initialized")

        status = gateway.get_status()
        status["websocket_endpoint"] = cfg.gateway.websocket_path
        status["recent_events"] = [
            e.model_dump(mode="json") for e in gateway.event_emitter.get_history(limit=20)
        ]
        return status

    return app


app = create_app()
