from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from kinship.apps.api.errors import install_exception_handlers
from kinship.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from kinship.apps.api.routes.approvals import router as approvals_router
from kinship.apps.api.routes.authz import router as authz_router
from kinship.apps.api.routes.health import router as health_router
from kinship.apps.api.routes.security_roles import router as security_roles_router
from kinship.apps.api.routes.user_permissions import router as user_permissions_router
from kinship.core.config import get_settings
from kinship.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Kinship API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    install_exception_handlers(app)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(security_roles_router, prefix=f"/{API_VERSION}")
    app.include_router(user_permissions_router, prefix=f"/{API_VERSION}")
    app.include_router(approvals_router, prefix=f"/{API_VERSION}")
    app.include_router(authz_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Kinship API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the gateway identity header on every non-public operation.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Kinship API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["GatewayUser"] = {
            "type": "apiKey",
            "in": "header",
            "name": settings.auth_user_header,
        }
        public_paths = {"/v1/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"GatewayUser": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
