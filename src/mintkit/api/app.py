from __future__ import annotations

import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mintkit.api.errors import ApiError, api_error_from_mint_error
from mintkit.api.routes import router
from mintkit.api.security import RequestSizeLimitMiddleware
from mintkit.api.structured_logging import RequestLogMiddleware
from mintkit.errors import MintError
from mintkit.runtime.boot import MintRuntime
from mintkit.runtime.boot import build_runtime as _build_runtime
from mintkit.util.structured_logging import configure_structured_logging


def build_runtime() -> MintRuntime:
    """Build the MintRuntime for the API.

    Wrapped so tests can monkeypatch `mintkit.api.app.build_runtime`.
    """
    return _build_runtime()


def create_app(*, boot_runtime: bool = True) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): build the runtime from the environment
      - False: leave app.state.runtime unset (tests attach their own)
    """
    configure_structured_logging()
    mode = os.environ.get("MINTKIT_MODE", "dev").strip().lower()

    if mode == "prod":
        app = FastAPI(title="mintkit API", docs_url=None, redoc_url=None, openapi_url=None)
    else:
        app = FastAPI(title="mintkit API")

    app.state.runtime = build_runtime() if boot_runtime else None

    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_json())

    @app.exception_handler(MintError)
    async def _mint_error(_request: Request, exc: MintError) -> JSONResponse:
        err = api_error_from_mint_error(exc)
        return JSONResponse(status_code=err.status_code, content=err.to_json())

    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(RequestLogMiddleware)

    app.include_router(router, prefix="/v1")
    return app
