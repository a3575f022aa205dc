"""
Pipeline Router — node_image

Architecture lookup, run submission and run status.
Runs execute in the pipeline worker; this router only resolves, enqueues
and reads receipts back from disk.
"""
import json
import uuid
from pathlib import Path
from typing import List, Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from app.config import Settings
from node_image.core.arch import Arch, locator_for, resolve_locator
from node_image.errors import UnsupportedArchitectureError
from node_image.io.writer import read_receipt

QUEUE_NAME = "pipeline:queue"


# =============================================================================
# Dependencies
# =============================================================================

def get_settings() -> Settings:
    return Settings()


def get_redis(settings: Settings = Depends(get_settings)) -> redis.Redis:
    """Get Redis client."""
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


# =============================================================================
# Request / Response Models
# =============================================================================

class LocatorResponse(BaseModel):
    arch: str
    rust_target: str
    installer_url: str
    platform: str


class ResolveRequest(BaseModel):
    machine_id: str = Field(..., description="e.g. amd64, arm64, x86_64, aarch64")


class PipelineRunRequest(BaseModel):
    """Request to build a runtime image from a source tree on the worker host."""
    source_dir: str = Field(..., description="Absolute path to the Cargo project on the worker host")
    machine_id: Optional[str] = Field(
        None,
        description="Target architecture; the worker's Docker daemon decides if omitted",
    )
    image_tag: Optional[str] = Field(None, description="Tag for the committed image")


class PipelineRunResponse(BaseModel):
    run_id: str
    status: str
    message: str


# =============================================================================
# Router
# =============================================================================

router = APIRouter()


def _locator_response(locator) -> LocatorResponse:
    return LocatorResponse(
        arch=locator.arch.value,
        rust_target=locator.rust_target,
        installer_url=locator.installer_url,
        platform=locator.platform,
    )


@router.get("/architectures", response_model=List[LocatorResponse])
async def list_architectures(settings: Settings = Depends(get_settings)):
    """Every supported architecture with its toolchain installer locator."""
    return [_locator_response(locator_for(a, settings.TOOLCHAIN_DIST_URL)) for a in Arch]


@router.post("/resolve", response_model=LocatorResponse)
async def resolve(request: ResolveRequest, settings: Settings = Depends(get_settings)):
    """Resolve a machine identifier; 400 names the unsupported value."""
    try:
        locator = resolve_locator(request.machine_id, settings.TOOLCHAIN_DIST_URL)
    except UnsupportedArchitectureError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _locator_response(locator)


@router.post(
    "/runs",
    response_model=PipelineRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_run(
    request: PipelineRunRequest,
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    """
    Queue a pipeline run.

    An explicit ``machine_id`` is resolved here first, so an unsupported
    architecture is rejected before anything is queued.
    """
    if request.machine_id is not None:
        try:
            resolve_locator(request.machine_id, settings.TOOLCHAIN_DIST_URL)
        except UnsupportedArchitectureError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not Path(request.source_dir).is_absolute():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="source_dir must be an absolute path",
        )

    run_id = str(uuid.uuid4())
    job_data = {
        "run_id": run_id,
        "job_type": "pipeline_run",
        "source_dir": request.source_dir,
        "machine_id": request.machine_id,
        "image_tag": request.image_tag,
    }
    redis_client.rpush(QUEUE_NAME, json.dumps(job_data))

    return PipelineRunResponse(
        run_id=run_id,
        status="QUEUED",
        message=f"Pipeline run queued for {request.source_dir}",
    )


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    redis_client: redis.Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings),
):
    """
    Status of a pipeline run.

    Checks the Redis queue first (QUEUED), then the receipt on disk.
    """
    for item in redis_client.lrange(QUEUE_NAME, 0, -1):  # type: ignore
        job = json.loads(item)
        if job.get("run_id") == run_id:
            return {
                "run_id": run_id,
                "status": "QUEUED",
                "message": "Run is waiting in queue",
            }

    try:
        uuid.UUID(run_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Run {run_id} not found")

    receipt = read_receipt(settings.ARTIFACTS_PATH / run_id)
    if receipt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found (it may still be running)",
        )
    return {
        "run_id": run_id,
        "status": receipt.run.state,
        "receipt": receipt.model_dump(mode="json"),
    }
