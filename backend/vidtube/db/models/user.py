from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from vidtube.db.base import Base


USERNAME_MAX_LENGTH = 64
EMAIL_MAX_LENGTH = 320
FULL_NAME_MAX_LENGTH = 120


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Stored lower-cased and stripped.
    username: Mapped[str] = mapped_column(String(USERNAME_MAX_LENGTH), unique=True, index=True, nullable=False)
    email: Mapped[str] = mapped_column(String(EMAIL_MAX_LENGTH), unique=True, index=True, nullable=False)

    full_name: Mapped[str] = mapped_column(String(FULL_NAME_MAX_LENGTH), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    avatar_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    cover_image_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    # HMAC-SHA256 hex digest of the one live refresh token. Never the raw token.
    refresh_token_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
