"""Mock add-on platform over real HTTP — FastAPI.

Every method/path is forwarded to the in-process Router, so the HTTP surface
and the in-process dispatch contract stay identical.

Endpoints:
    GET  /health  Service health check (not tenant-scoped)
    *    /{path}  Forwarded to addon_api.handler routes

The TenantStore is restored during lifespan startup, so corrupt durable state
stops the server before it accepts a request, and flushed when the lifespan
ends (uvicorn shutdown, including SIGINT/SIGTERM).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from addon_store import TenantStore, blob_store_from_env, scoped_store
from addon_store.store import BlobStore
from aws_lambda_powertools import Logger
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from addon_api import handler
from addon_api.router import Request as DispatchRequest
from addon_api.router import Router

logger = Logger(service="addon-api-server")

_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def create_app(
    blob_store: BlobStore | None = None,
    path: str | None = None,
    *,
    router: Router | None = None,
) -> FastAPI:
    if blob_store is None or path is None:
        blob_store, path = blob_store_from_env()
    dispatch = router.dispatch if router is not None else handler.dispatch

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        with scoped_store(blob_store, path) as store:
            store.restore_all()
            app.state.store = store
            logger.info("Mock add-on platform started", state_path=path)
            yield
        logger.info("Mock add-on platform stopped", state_path=path)

    app = FastAPI(title="mock-addon-platform", lifespan=lifespan)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    # async: requests are served one at a time on the event loop
    @app.api_route("/{full_path:path}", methods=_METHODS)
    async def forward(full_path: str, request: Request) -> Response:
        store: TenantStore = request.app.state.store
        body = await request.body()
        result = dispatch(
            DispatchRequest(
                method=request.method,
                path=f"/{full_path}",
                headers=dict(request.headers),
                body=body,
            ),
            store,
        )
        if result.body is None:
            return Response(status_code=result.status)
        if isinstance(result.body, (bytes, str)):
            return Response(content=result.body, status_code=result.status)
        return JSONResponse(content=result.body, status_code=result.status)

    return app
