from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from idsync.features.bootstrap.service import AppServices
from idsync.features.session_sync.service import SyncResponse


def _json(resp: SyncResponse) -> JSONResponse:
    return JSONResponse(resp.body, status_code=resp.status_code)


def create_app(services: AppServices) -> FastAPI:
    """
    Handlers are async so the synchronous service (and its single DuckDB
    connection) only ever runs on the event loop thread.
    """
    app = FastAPI(title="idsync")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/sync-session")
    async def sync_session(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = None
        return _json(
            services.sync.handle_sync(
                authorization=request.headers.get("Authorization"),
                body=body,
            )
        )

    @app.get("/session-data")
    async def session_data(request: Request):
        return _json(services.sync.handle_fetch(authorization=request.headers.get("Authorization")))

    return app
