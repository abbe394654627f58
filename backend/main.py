"""FastAPI application entrypoint."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.routers import get_api_router
from backend.services.errors import EngineError
from backend.utils.config import get_settings


settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.include_router(get_api_router())


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Render engine errors as typed JSON bodies."""

    LOGGER.info(
        "Request %s %s failed: %s (%s)",
        request.method,
        request.url.path,
        exc.code,
        exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.get("/health")
def health_check() -> dict[str, str]:
    """Return service health status."""

    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return application version metadata."""

    return {"version": settings.app_version}
