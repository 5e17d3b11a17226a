import time
import uuid

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payflow.config import get_settings
from payflow.database import Base, engine
from payflow.errors import PayflowError, ProviderError
from payflow.logging_config import setup_logging
from payflow.reporting import capture_exception, init_error_reporting
from payflow.routes import router

settings = get_settings()
setup_logging(settings)
init_error_reporting(settings)

logger = structlog.get_logger(__name__)

app = FastAPI(title="Payflow Payment Service")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        traceparent=request.headers.get("traceparent"),
        method=request.method,
        path=request.url.path,
    )
    start_time = time.time()
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info("request_completed", status_code=response.status_code,
                    duration_seconds=round(time.time() - start_time, 4))
        return response
    finally:
        structlog.contextvars.clear_contextvars()


def _correlation(request: Request) -> dict:
    return {
        "request_id": structlog.contextvars.get_contextvars().get("request_id"),
        "traceparent": request.headers.get("traceparent"),
        "path": request.url.path,
    }


@app.exception_handler(PayflowError)
async def payflow_error_handler(request: Request, exc: PayflowError) -> JSONResponse:
    if isinstance(exc, ProviderError):
        logger.error("provider_error", provider=exc.provider, upstream_status=exc.upstream_status,
                     error=exc.message)
        capture_exception(exc, provider=exc.provider, **_correlation(request))
    else:
        logger.warning("request_rejected", error_type=type(exc).__name__, error=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_exception", error=str(exc), error_type=type(exc).__name__)
    capture_exception(exc, **_correlation(request))
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/health")
def health():
    return {"status": "ok"}
