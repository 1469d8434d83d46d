from fastapi import APIRouter, Depends, HTTPException, Query
from schemas.users import User, UserProfile, UserSummary, UpdateProfileRequest, UpdateStatusRequest
from backend import user_store
from constants import DIRECTORY_TIMEOUT_SECONDS
from dependencies import get_current_user
from relay.blocking import run_in_thread
from typing import List
from logging_config import get_logger

logger = get_logger(__name__)

users_router = APIRouter(prefix="/users", tags=["users"])


def profile_of(user: User) -> UserProfile:
    return UserProfile(**user.model_dump(exclude={"password_hash", "created_at"}))


@users_router.get("/profile", response_model=UserProfile)
async def get_profile(current_user: User = Depends(get_current_user)):
    return profile_of(current_user)


@users_router.put("/profile", response_model=UserProfile)
async def update_profile(body: UpdateProfileRequest, current_user: User = Depends(get_current_user)):
    # Username and email stay unique; a taken value is rejected with 400
    user = await run_in_thread(
        user_store.update_profile,
        current_user.id,
        name=body.name,
        username=body.username,
        email=body.email,
        profile_picture=body.profile_picture,
        timeout=DIRECTORY_TIMEOUT_SECONDS,
    )
    logger.info(f"Profile updated for user {current_user.id}")
    return profile_of(user)


@users_router.put("/status", response_model=UserProfile)
async def update_status(body: UpdateStatusRequest, current_user: User = Depends(get_current_user)):
    user = await run_in_thread(user_store.update_status, current_user.id, body.status, timeout=DIRECTORY_TIMEOUT_SECONDS)
    logger.debug(f"Status of {user.username} set to {body.status}")
    return profile_of(user)


@users_router.get("/search", response_model=List[UserSummary])
async def search_users(username: str = Query("", description="At least 3 characters of the username"),
                       current_user: User = Depends(get_current_user)):
    if len(username) < 3:
        raise HTTPException(status_code=400, detail="Search query must be at least 3 characters")
    users = await run_in_thread(user_store.search, username, timeout=DIRECTORY_TIMEOUT_SECONDS)
    logger.debug(f"Search for '{username}' by {current_user.username} matched {len(users)} users")
    return [UserSummary(**u.model_dump(include={"username", "name", "profile_picture", "status"})) for u in users]
