"""API router initializers."""

from fastapi import APIRouter


def get_api_router() -> APIRouter:
    """Construct and return the API router."""

    from backend.routers.appointments import router as appointments_router
    from backend.routers.queue import router as queue_router
    from backend.routers.slots import router as slots_router

    api_router = APIRouter()
    api_router.include_router(slots_router, tags=["slots"])
    api_router.include_router(appointments_router, prefix="/appointments", tags=["appointments"])
    api_router.include_router(queue_router, tags=["queue"])
    return api_router
