import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Request
from pydantic import BaseModel
from pydantic import Field as PydanticField

from reportflow.core.security import verify_api_key
from reportflow.models.progress_models import ProgressSnapshot
from reportflow.models.progress_models import RegistryStats
from reportflow.models.progress_models import StageProfile
from reportflow.services.request_registry import RequestRegistry

# Configure module logger
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", dependencies=[Depends(verify_api_key)])


def get_registry(request: Request) -> RequestRegistry:
    """Returns the registry owned by the running application."""
    return request.app.state.registry


class CancelPayload(BaseModel):
    reason: str = PydanticField(default="User cancelled", description="Why the request is being cancelled.")


class CancelResponse(BaseModel):
    cancelled: bool
    progress: ProgressSnapshot


@router.get("/requests", response_model=list[ProgressSnapshot], tags=["Requests"])
async def list_requests(registry: RequestRegistry = Depends(get_registry)) -> list[ProgressSnapshot]:
    """Lists every tracked request, including finished ones still in their grace period."""
    return registry.active_requests()


@router.get("/requests/{request_id}", response_model=ProgressSnapshot, tags=["Requests"])
async def get_request_progress(request_id: str, registry: RequestRegistry = Depends(get_registry)) -> ProgressSnapshot:
    snapshot = registry.get_progress(request_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Request '{request_id}' is not being tracked.")
    return snapshot


@router.post("/requests/{request_id}/cancel", response_model=CancelResponse, tags=["Requests"])
async def cancel_request(
    request_id: str,
    payload: CancelPayload | None = None,
    registry: RequestRegistry = Depends(get_registry),
) -> CancelResponse:
    """
    Cancels a running request. Cancellation is cooperative: the tracker is marked
    cancelled immediately and the retry loop stops at its next wait, while an
    attempt already in flight is left to finish on its own.
    """
    tracker = registry.get(request_id)
    if tracker is None:
        raise HTTPException(status_code=404, detail=f"Request '{request_id}' is not being tracked.")

    reason = payload.reason if payload else "User cancelled"
    if not tracker.cancel(reason):
        raise HTTPException(
            status_code=409,
            detail=f"Request '{request_id}' already finished with status '{tracker.status.value}'.",
        )
    logger.info("[%s] Cancelled through the API: %s", request_id, reason)
    return CancelResponse(cancelled=True, progress=tracker.snapshot())


@router.get("/stats", response_model=RegistryStats, tags=["Monitoring"])
async def get_stats(registry: RequestRegistry = Depends(get_registry)) -> RegistryStats:
    return registry.stats()


@router.get("/profiles", response_model=dict[str, StageProfile], tags=["Monitoring"])
async def list_profiles(registry: RequestRegistry = Depends(get_registry)) -> dict[str, StageProfile]:
    return dict(registry.profiles)
