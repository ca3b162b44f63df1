from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class UserPublic(BaseModel):
    """An account as clients see it: no password hash, no refresh token hash."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: int
    username: str
    email: str
    fullName: str = Field(validation_alias="full_name")
    avatar: str = Field(validation_alias="avatar_url")
    coverImage: str | None = Field(default=None, validation_alias="cover_image_url")
    createdAt: datetime | None = Field(default=None, validation_alias="created_at")
    updatedAt: datetime | None = Field(default=None, validation_alias="updated_at")


class UpdateAccountRequest(BaseModel):
    fullName: str | None = None
    email: str | None = None
