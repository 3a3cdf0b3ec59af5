from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.responses import StreamingResponse

from unistatus.apps.api.errors import register_exception_handlers
from unistatus.apps.api.response import API_VERSION, is_versioned_request
from unistatus.apps.api.routes.agent import router as agent_router
from unistatus.apps.api.routes.alerts import router as alerts_router
from unistatus.apps.api.routes.api_keys import router as api_keys_router
from unistatus.apps.api.routes.audit import router as audit_router
from unistatus.apps.api.routes.domains import router as domains_router
from unistatus.apps.api.routes.health import router as health_router
from unistatus.apps.api.routes.heartbeats import router as heartbeats_router
from unistatus.apps.api.routes.incidents import router as incidents_router
from unistatus.apps.api.routes.license import router as license_router
from unistatus.apps.api.routes.maintenance import router as maintenance_router
from unistatus.apps.api.routes.monitors import router as monitors_router
from unistatus.apps.api.routes.oncall import router as oncall_router
from unistatus.apps.api.routes.organizations import router as organizations_router
from unistatus.apps.api.routes.probes import router as probes_router
from unistatus.apps.api.routes.public_status import router as public_status_router
from unistatus.apps.api.routes.sso import router as sso_router
from unistatus.apps.api.routes.status_pages import router as status_pages_router
from unistatus.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
# Endpoints that authenticate by token in the path, agent bearer, or not at all.
_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/heartbeats/{token}",
    "/v1/public/status-pages/{slug}",
    "/v1/public/status-pages/{slug}/subscribe",
    "/v1/public/subscribers/verify",
    "/v1/public/subscribers/unsubscribe",
    "/v1/auth/sso/discover",
    "/v1/auth/sso/oidc/{provider_id}/start",
    "/v1/auth/sso/oidc/{provider_id}/callback",
}
_AGENT_PATH_PREFIX = "/v1/agent/"

_ROUTERS = (
    health_router,
    organizations_router,
    api_keys_router,
    monitors_router,
    heartbeats_router,
    alerts_router,
    oncall_router,
    status_pages_router,
    public_status_router,
    incidents_router,
    maintenance_router,
    probes_router,
    agent_router,
    sso_router,
    domains_router,
    license_router,
    audit_router,
)


def _wrap_unenveloped(response, request_id: str):
    # Handlers that return bare payloads still get the standard envelope.
    raw_body = getattr(response, "body", None)
    if not raw_body:
        return response
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return response
    is_enveloped = (
        isinstance(payload, dict)
        and "data" in payload
        and "meta" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )
    if is_enveloped:
        return response
    wrapped = JSONResponse(
        content={"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}},
        status_code=response.status_code,
    )
    for key, value in response.headers.items():
        if key.lower() in {"content-length", "content-type"}:
            continue
        wrapped.headers[key] = value
    return wrapped


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="uni-status API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            response = _wrap_unenveloped(response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        return response

    register_exception_handlers(app)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="uni-status API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation that needs an organization credential.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="uni-status API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["ProbeToken"] = {"type": "http", "scheme": "bearer", "description": "usp_ probe token"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            scheme = "ProbeToken" if path.startswith(_AGENT_PATH_PREFIX) else "BearerAuth"
            for operation in operations.values():
                operation.setdefault("security", [{scheme: []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
