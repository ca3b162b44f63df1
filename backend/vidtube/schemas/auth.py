from __future__ import annotations

from pydantic import BaseModel

from vidtube.schemas.user import UserPublic


class LoginRequest(BaseModel):
    username: str | None = None
    email: str | None = None
    password: str | None = None


class RefreshRequest(BaseModel):
    refreshToken: str | None = None


class ChangePasswordRequest(BaseModel):
    oldPassword: str | None = None
    newPassword: str | None = None


class TokenPair(BaseModel):
    accessToken: str
    refreshToken: str


class LoginData(TokenPair):
    user: UserPublic
