from fastapi import APIRouter
from pydantic import BaseModel

from app.dependencies.auth import CurrentUser
from app.tickets.validation import public_user

router = APIRouter(prefix="/users", tags=["users"])


class UserResponse(BaseModel):
    id: str
    email: str
    display_name: str | None
    role: str
    department: str | None
    is_active: bool


@router.get("/me", response_model=UserResponse, summary="Profile of the authenticated user")
async def read_current_user(user: CurrentUser) -> UserResponse:
    return UserResponse(**public_user(user))
