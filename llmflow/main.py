from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .agent_loader import list_agent_names
from .config import get_settings
from .dependencies import get_session_store
from .envelope import error_response, flow_error_response
from .errors import FlowError
from .routers import runs as runs_router
from .routers import sessions as sessions_router
from .storage.session_store import SqliteSessionStore


logger = logging.getLogger("llmflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the session DB (when one is configured) on startup."""
    store = get_session_store()
    if isinstance(store, SqliteSessionStore):
        await store.init()
    logger.info("llmflow started session_store=%s agents_dir=%s", type(store).__name__, get_settings().agents_dir)
    yield


app = FastAPI(title="llmflow agent runtime", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(sessions_router.router)
app.include_router(runs_router.router)


@app.exception_handler(FlowError)
async def handle_flow_error(request: Request, exc: FlowError) -> JSONResponse:
    logger.warning("flow error path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return flow_error_response(exc)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error path=%s", request.url.path)
    return error_response(500, "INTERNAL_ERROR", "Internal server error")


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Simple health check."""
    return {"status": "ok", "service": get_settings().service_name}


@app.get("/apps")
async def list_apps() -> Dict[str, Any]:
    """Agent names discoverable under AGENTS_DIR."""
    return {"apps": list_agent_names()}


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
