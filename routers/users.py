""" User router for handling user-related endpoints.
"""

from fastapi import APIRouter, Depends

from typing import Annotated, List

from schema.users import UserInDB, UserOut
from security.helpers import get_current_user, get_user_repository, require_roles
from services.user_repository import UserRepository
from utils.errors import NotFoundError

router = APIRouter(
    prefix="/api/users",
    tags=["Users"],
)

ADMIN_ROLE = "system-admin"


@router.get("/me", response_model=UserOut)
async def get_user_details(
    current_user: Annotated[UserInDB, Depends(get_current_user)],
):
    """Get details of the authenticated user."""
    return UserOut.from_user(current_user)


@router.get("", response_model=List[UserOut])
async def list_users(
    _: Annotated[UserInDB, Depends(require_roles(ADMIN_ROLE))],
    users: Annotated[UserRepository, Depends(get_user_repository)],
):
    """List all users. Requires the `system-admin` role."""
    return [UserOut.from_user(user) for user in await users.list_users()]


@router.get("/{user_id}", response_model=UserOut)
async def get_user(
    user_id: int,
    _: Annotated[UserInDB, Depends(require_roles(ADMIN_ROLE))],
    users: Annotated[UserRepository, Depends(get_user_repository)],
):
    """Get a single user by ID. Requires the `system-admin` role.

    ## Responses
    ### Unknown user
    - status code: 404
    - body: problem details
    """
    user = await users.get_by_id(user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return UserOut.from_user(user)
