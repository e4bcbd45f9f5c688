import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from logic_deploy.api.approvals import router as approvals_router
from logic_deploy.api.checks import router as checks_router
from logic_deploy.api.deployments import router as deployments_router
from logic_deploy.api.events import router as events_router
from logic_deploy.api.health import router as health_router
from logic_deploy.api.metrics import router as metrics_router
from logic_deploy.api.releases import router as releases_router
from logic_deploy.core.config import get_settings
from logic_deploy.core.errors import PipelineError
from logic_deploy.services.observability import (
    current_trace_id,
    emit_structured_log,
    ensure_trace_id,
    reset_current_trace_id,
    set_current_trace_id,
)

settings = get_settings()
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")


app = FastAPI(title=settings.app_name)
if settings.cors_allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    emit_structured_log(
        component="api",
        event="pipeline_error",
        level=logging.ERROR if exc.http_status >= 500 else logging.WARNING,
        trace_id=current_trace_id(),
        method=request.method,
        path=request.url.path,
        code=exc.code,
        reason=exc.reason,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.middleware("http")
async def trace_and_request_log_middleware(request: Request, call_next):
    trace_id = ensure_trace_id(request.headers.get("x-trace-id"))
    token = set_current_trace_id(trace_id)
    started = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Trace-Id"] = trace_id
        return response
    finally:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        path_params = request.scope.get("path_params") or {}
        emit_structured_log(
            component="api",
            event="http_request",
            trace_id=trace_id,
            release_id=path_params.get("release_id"),
            deployment_id=path_params.get("deployment_id"),
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=duration_ms,
        )
        reset_current_trace_id(token)


app.include_router(health_router)
app.include_router(releases_router)
app.include_router(checks_router)
app.include_router(approvals_router)
app.include_router(deployments_router)
app.include_router(events_router)
app.include_router(metrics_router)
