"""
Auth router: register, login, me, and admin user management
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ...core.security import (
    create_access_token,
    get_admin_user,
    get_current_user_required,
)
from ...core.services import Services, get_services
from ...models.user import UserRecord
from .schemas import RoleUpdate, Token, UserCreate, UserLogin, UserResponse

router = APIRouter()
users_router = APIRouter()


def _token_for(user: UserRecord) -> dict:
    access_token = create_access_token(data={"sub": user.username})
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "user": UserResponse.from_record(user),
    }


@router.post("/register", response_model=Token)
def register(user: UserCreate, services: Services = Depends(get_services)):
    """Create an account; the very first account becomes admin"""
    new_user = services.users.register(user.username, user.password)
    return _token_for(new_user)


@router.post("/login", response_model=Token)
def login(user_login: UserLogin, services: Services = Depends(get_services)):
    """Log in with username and password"""
    user = services.users.authenticate(user_login.username, user_login.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _token_for(user)


@router.get("/me", response_model=UserResponse)
def get_me(current_user: UserRecord = Depends(get_current_user_required)):
    """Current user"""
    return UserResponse.from_record(current_user)


# ============ USER MANAGEMENT (ADMIN) ============
@users_router.get("", response_model=List[UserResponse])
def list_users(
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """All accounts, in registration order"""
    return [UserResponse.from_record(u) for u in services.users.list_users()]


@users_router.put("/{username}/role")
def update_role(
    username: str,
    update: RoleUpdate,
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """Change a user's role (admin only); the last admin cannot be demoted"""
    user = services.users.set_role(current_user, username, update.role)
    return {"success": True, "user": UserResponse.from_record(user)}


@users_router.delete("/{username}")
def delete_user(
    username: str,
    current_user: UserRecord = Depends(get_admin_user),
    services: Services = Depends(get_services)
):
    """Delete an account (admin only); the last admin cannot be deleted"""
    services.users.delete_user(current_user, username)
    return {"success": True}
