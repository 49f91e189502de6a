"""
FastAPI backend for the REViewer relay.

The relay bridges a running R session and the REViewer extension:
R pushes data frames with REView(df), and the extension pulls data
frames through a poll/respond exchange with R. Display surfaces receive
normalized tables over WebSocket.
"""

import argparse
import asyncio
from typing import List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, ORJSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.config import RelayConfig
from api.context import RelayContext
from api.data_provider import DataFrameService
from api.errors import EntityTooLarge, RelayError
from api.relay import router as relay_router
from api.server import RelayServer
from api.session import Clock, epoch_millis
from api.shared.logger import get_logger, setup_logging
from api.sinks import SnapshotSink
from api.system import router as system_router
from websocket import SNAPSHOT_CHANNEL, MessageType, WebSocketManager, WebSocketMessage, WebSocketSink

logger = get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def create_app(
    config: Optional[RelayConfig] = None,
    sinks: Optional[List[SnapshotSink]] = None,
    clock: Clock = epoch_millis,
) -> FastAPI:
    """Build a relay app with its own session, correlator and sinks."""
    config = config or RelayConfig.from_env()
    setup_logging(config.log_level)

    app = FastAPI(
        title="REViewer relay",
        description="Local HTTP relay between R and the REViewer data viewer",
        version="1.0.0",
        default_response_class=ORJSONResponse,
    )

    relay = RelayContext(config, sinks=sinks, clock=clock)
    ws_manager = WebSocketManager()
    ws_sink = WebSocketSink(ws_manager)
    relay.sinks.add(ws_sink)
    relay.on_session_connected(ws_sink.on_session_connected)

    app.state.relay = relay
    app.state.frames = DataFrameService(relay)
    app.state.ws_manager = ws_manager

    # ============= Exception Handlers =============

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        """Render relay errors as JSON with their status code."""
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        headers = {"Connection": "close"} if isinstance(exc, EntityTooLarge) else None
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error": "malformed_payload", "message": message},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        # unknown paths and wrong methods both read as "no such route"
        if exc.status_code in (404, 405):
            return JSONResponse(status_code=404, content={"error": "Not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Log unexpected exceptions and return JSON response."""
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        # rendered outside the http middleware, so CORS headers are set here
        return JSONResponse(
            status_code=500,
            content={"status": "error", "message": "Server error"},
            headers=CORS_HEADERS,
        )

    # Localhost-only server: every response is cross-origin readable and
    # preflight requests succeed without reaching the routes.
    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):
        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    app.include_router(system_router)
    app.include_router(relay_router)

    # ============= Startup / Shutdown =============

    @app.on_event("startup")
    async def startup_event():
        ws_sink.bind_loop(asyncio.get_running_loop())
        logger.info("REViewer relay ready (port %d)", relay.port)

    @app.on_event("shutdown")
    async def shutdown_event():
        cancelled = relay.correlator.cancel_all()
        if cancelled:
            logger.info("Cancelled %d pending request(s) at shutdown", cancelled)

    # ============= WebSocket Endpoint =============

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, client_id: Optional[str] = None):
        """
        Display-surface channel.

        Message format (JSON):
        {
            "type": "subscribe" | "unsubscribe" | "ping",
            "channel": "channel_name",
            "data": {}
        }
        """
        await ws_manager.connect(websocket, client_id)
        last = relay.sinks.last_snapshot
        if last is not None:
            await ws_manager.send_to_connection(
                websocket,
                WebSocketMessage(type=MessageType.SNAPSHOT, channel=SNAPSHOT_CHANNEL, data=last.to_dict()),
            )

        try:
            while True:
                message_text = await websocket.receive_text()
                response = await ws_manager.handle_message(websocket, message_text)
                if response:
                    await ws_manager.send_to_connection(websocket, response)

        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception as e:
            logger.error("WebSocket error: %s", e)
            await ws_manager.disconnect(websocket)

    @app.get("/ws/stats")
    async def get_websocket_stats():
        """Get WebSocket connection statistics."""
        return {
            "total_connections": ws_manager.get_connection_count(),
        }

    return app


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="REViewer relay server")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (default: 8765 or REVIEWER_PORT env var)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Loopback host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        default=None,
        help="Seconds to wait for R to answer a pull request (default: 30)",
    )
    parser.add_argument(
        "--liveness-timeout",
        type=float,
        default=None,
        help="Seconds without heartbeat before R counts as detached (default: 60)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO or REVIEWER_LOG_LEVEL env var)",
    )
    args = parser.parse_args(argv)

    config = RelayConfig.from_env(
        host=args.host,
        port=args.port,
        request_timeout_s=args.request_timeout,
        liveness_timeout_s=args.liveness_timeout,
        log_level=args.log_level,
    )
    app = create_app(config)
    asyncio.run(RelayServer(app).serve())


if __name__ == "__main__":
    main()
