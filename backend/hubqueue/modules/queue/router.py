"""
Queue router: image upload, claim / release / complete, delete, history
"""
import logging
import mimetypes
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response

from ...core.config import MAX_UPLOAD_MB
from ...core.errors import PayloadTooLarge
from ...core.security import get_session_user
from ...core.services import Services, get_services
from ...models.user import UserRecord
from .schemas import CompleteRequest, QueueSnapshot, StatsResponse

logger = logging.getLogger(__name__)

router = APIRouter()
assets_router = APIRouter()


# ============ READS ============
@router.get("", response_model=List[dict])
def get_active_queue(
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Images not yet completed, newest first"""
    return [item.to_json() for item in services.queue.list_active()]


@router.get("/history", response_model=List[dict])
def get_history(
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Completed images, most recently completed first"""
    return [item.to_json() for item in services.queue.list_history()]


@router.get("/snapshot", response_model=QueueSnapshot)
def get_snapshot(
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Active queue and history in one response (used by reconciliation)"""
    return services.queue.snapshot()


@router.get("/stats", response_model=StatsResponse)
def get_stats(
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Per-user upload and completion counts"""
    return services.queue.stats()


# ============ MUTATIONS ============
@router.post("")
def upload_image(
    file: UploadFile = File(...),
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Store the image on the file server and add it to the queue"""
    data = file.file.read()
    if len(data) > MAX_UPLOAD_MB * 1024 * 1024:
        raise PayloadTooLarge(f"File is larger than {MAX_UPLOAD_MB:g} MB")

    item = services.queue.create(current_user, file.filename, data)
    return {"success": True, "item": item.to_json()}


@router.post("/{item_id}/claim")
def claim_image(
    item_id: str,
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Claim an uploaded image (trusted users and admins)"""
    item = services.queue.claim(current_user, item_id)
    return {"success": True, "item": item.to_json()}


@router.post("/{item_id}/unclaim")
def unclaim_image(
    item_id: str,
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Release a claim: the claimant, or an admin forcing the release"""
    item = services.queue.unclaim(current_user, item_id)
    return {"success": True, "item": item.to_json()}


@router.post("/{item_id}/complete")
def complete_image(
    item_id: str,
    body: Optional[CompleteRequest] = None,
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Mark a claimed image as done and move it to history"""
    notes = body.notes if body else None
    item = services.queue.complete(current_user, item_id, notes)
    return {"success": True, "item": item.to_json()}


@router.delete("/{item_id}")
def delete_image(
    item_id: str,
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Remove an image from the queue (uploader or admin)"""
    services.queue.delete(current_user, item_id)
    return {"success": True}


# ============ ASSETS ============
@assets_router.get("")
def get_asset(
    path: str = Query(..., description="Storage path of the image"),
    current_user: UserRecord = Depends(get_session_user),
    services: Services = Depends(get_services)
):
    """Stream an uploaded image from the file server"""
    data = services.queue.read_asset(path)
    media_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)
