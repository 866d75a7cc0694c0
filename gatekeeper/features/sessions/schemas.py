"""
Pydantic schemas for login, token refresh and session listings.
"""
from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False
    location: Optional[str] = Field(None, max_length=255, description="Client-reported location, stored as-is")


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    all_sessions: bool = False


class RevokeAllRequest(BaseModel):
    keep_current: bool = Field(True, description="Keep the session making this request")


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LoginResponse(TokenResponse):
    session_id: str
    user_id: str
    roles: List[str]


class SessionResponse(BaseModel):
    id: str
    user_id: str
    ip_address: Optional[str]
    last_ip_address: Optional[str]
    device_type: Optional[str]
    device: Optional[str]
    browser: Optional[str]
    location: Optional[str]
    status: str
    is_remember_me: bool
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime]
    revoked_reason: Optional[str]
    is_current: bool = False

    model_config = ConfigDict(from_attributes=True)


class SessionStatistics(BaseModel):
    total: int
    active: int
    expired: int
    revoked: int
    remember_me: int
    users_with_sessions: int
    by_device_type: Dict[str, int]
