from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional


class User(BaseModel):
    id: str
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    password_hash: Optional[str] = None
    profile_picture: Optional[str] = None
    status: str = "offline"
    last_active: Optional[datetime] = None
    created_at: Optional[datetime] = None

class UserProfile(BaseModel):
    id: str
    username: str
    name: Optional[str] = None
    email: Optional[str] = None
    profile_picture: Optional[str] = None
    status: str = "offline"
    last_active: Optional[datetime] = None

class UserSummary(BaseModel):
    username: str
    name: Optional[str] = None
    profile_picture: Optional[str] = None
    status: str = "offline"

class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=32)
    password: str = Field(min_length=6)
    name: Optional[str] = None
    email: Optional[str] = None

class LoginRequest(BaseModel):
    username: str
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserProfile

class UpdateProfileRequest(BaseModel):
    name: Optional[str] = None
    username: Optional[str] = Field(default=None, min_length=3, max_length=32)
    email: Optional[str] = None
    profile_picture: Optional[str] = None

class UpdateStatusRequest(BaseModel):
    status: str = Field(min_length=1, max_length=32)
