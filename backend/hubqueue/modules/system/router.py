"""
System router: maintenance mode, session bootstrap, lock administration
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends

from ...core.config import ORPHAN_MIN_AGE_SECONDS
from ...core.security import get_admin_user, get_current_user_optional
from ...core.services import Services, get_services
from ...models.user import UserRecord
from ..auth.schemas import UserResponse
from .schemas import MaintenanceState, SessionResponse

logger = logging.getLogger(__name__)

router = APIRouter()


# ============ MAINTENANCE ============
@router.get("/maintenance", response_model=MaintenanceState)
def get_maintenance(services: Services = Depends(get_services)):
    """Public so the login screen can show the banner"""
    return {"isMaintenance": services.system.is_maintenance()}


@router.put("/maintenance", response_model=MaintenanceState)
def set_maintenance(
    state: MaintenanceState,
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """Turn maintenance mode on or off (admin only)"""
    value = services.system.set_maintenance(current_user, state.isMaintenance)
    return {"isMaintenance": value}


@router.get("/session", response_model=SessionResponse)
def get_session(
    current_user: Optional[UserRecord] = Depends(get_current_user_optional),
    services: Services = Depends(get_services)
):
    """
    Called once when a client starts. Fails with 503 while maintenance is
    on, unless the caller is an admin.
    """
    maintenance = services.system.check_session(current_user)
    return {
        "user": UserResponse.from_record(current_user) if current_user else None,
        "isMaintenance": maintenance,
    }


# ============ LOCK ============
@router.get("/lock")
def get_lock(
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    info = services.system.lock_status()
    if info is None:
        return {"held": False}
    return {"held": True, **info.to_dict()}


@router.delete("/lock")
def release_lock(
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """Remove a stuck lock marker, whoever owns it"""
    released = services.system.force_release_lock(current_user)
    return {"success": True, "released": released}


# ============ MAINTENANCE TASKS ============
@router.post("/repair")
def repair_collections(
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """Fix items left in both collections by an interrupted completion"""
    report = services.queue.repair()
    logger.info(f"Repair requested by {current_user.username}: changed={report.changed}")
    return {"success": True, "changed": report.changed, "report": report.to_dict()}


@router.post("/sweep-assets")
def sweep_assets(
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """Delete uploaded files no queue item refers to"""
    removed = services.queue.sweep_orphaned_assets(ORPHAN_MIN_AGE_SECONDS)
    return {"success": True, "removed": removed}
