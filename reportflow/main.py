import logging

from fastapi import FastAPI
from fastapi import Request
from fastapi import status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from reportflow.api.routes import router
from reportflow.core.config import settings
from reportflow.core.logging import setup_logging
from reportflow.services.request_registry import RequestRegistry

setup_logging()

app = FastAPI(title="Report Request Orchestrator")

logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup_event() -> None:
    app.state.registry = RequestRegistry()
    logger.info("Application startup - request registry ready (timeout %gs)", app.state.registry.default_timeout)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    registry: RequestRegistry | None = getattr(app.state, "registry", None)
    if registry is not None:
        cancelled = registry.cancel_all("System shutdown")
        logger.info("Application shutdown - cancelled %d running request(s)", cancelled)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.error(f"HTTP exception: {exc.detail} (status: {exc.status_code})")
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.error("Request validation failed: %s", exc.errors(), exc_info=False)
    return JSONResponse(
        {"error": "Input validation failed", "details": exc.errors()},
        status_code=422,
    )


@app.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    logger.info("Health check endpoint called")
    return {"status": "ok"}


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_methods=["POST", "GET", "OPTIONS"],
    allow_headers=["*"],
)
app.include_router(router)
