from fastapi import APIRouter, Depends

from src.api.access import role_of
from src.api.deps import get_current_user
from src.api.models.user import User
from src.api.schemas.user import UserPublic

router = APIRouter(prefix="/users", tags=["users"])


@router.get(
    "/me",
    response_model=UserPublic,
    summary="Get current user",
    description="Return the authenticated user's profile.",
    operation_id="users_me",
)
def get_me(current_user: User = Depends(get_current_user)) -> UserPublic:
    """
    Get the current authenticated user's profile.

    Authentication: Bearer JWT access token.
    """
    return UserPublic(
        id=current_user.id,
        name=current_user.name,
        email=current_user.email,
        role=role_of(current_user),
        created_at=current_user.created_at,
    )
