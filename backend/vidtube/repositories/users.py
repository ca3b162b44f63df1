"""
Credential store: the only code that reads or writes ``users`` rows.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.core.errors import ConflictError
from vidtube.db.models.user import User


def normalize_username(username: str) -> str:
    return username.strip().lower()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _identity_clause(self, username: str | None, email: str | None):
        clauses = []
        if username:
            clauses.append(User.username == normalize_username(username))
        if email:
            clauses.append(User.email == normalize_email(email))
        return or_(*clauses)

    async def find_by_id(self, user_id: int) -> User | None:
        return await self.session.get(User, user_id, populate_existing=True)

    async def find_by_username_or_email(self, *, username: str | None = None, email: str | None = None) -> User | None:
        if not username and not email:
            return None
        res = await self.session.execute(select(User).where(self._identity_clause(username, email)).limit(1))
        return res.scalar_one_or_none()

    async def find_by_email(self, email: str) -> User | None:
        res = await self.session.execute(select(User).where(User.email == normalize_email(email)))
        return res.scalar_one_or_none()

    async def exists_by_username_or_email(self, *, username: str | None = None, email: str | None = None) -> bool:
        if not username and not email:
            return False
        res = await self.session.execute(select(exists().where(self._identity_clause(username, email))))
        return bool(res.scalar())

    async def create(
        self,
        *,
        username: str,
        email: str,
        full_name: str,
        password_hash: str,
        avatar_url: str,
        cover_image_url: str | None = None,
    ) -> User:
        user = User(
            username=normalize_username(username),
            email=normalize_email(email),
            full_name=full_name.strip(),
            password_hash=password_hash,
            avatar_url=avatar_url,
            cover_image_url=cover_image_url,
            refresh_token_hash=None,
        )
        self.session.add(user)
        try:
            await self.session.commit()
        except IntegrityError:
            # Lost a uniqueness race against a concurrent registration.
            await self.session.rollback()
            raise ConflictError("User with this email or username already exists")
        await self.session.refresh(user)
        return user

    async def conditional_update(
        self,
        user_id: int,
        expected: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> bool:
        """
        Apply ``patch`` to the user only if every column in ``expected`` still
        holds the given value. Returns False when no row matched.

        The check and the write are one UPDATE statement, so two requests
        racing on the same row cannot both succeed.
        """
        stmt = update(User).where(User.id == user_id)
        for column, value in expected.items():
            attr = getattr(User, column)
            stmt = stmt.where(attr.is_(None) if value is None else attr == value)
        values = dict(patch)
        values["updated_at"] = datetime.now(timezone.utc)
        try:
            res = await self.session.execute(
                stmt.values(**values).execution_options(synchronize_session="evaluate")
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("User with this email or username already exists")
        return res.rowcount == 1

    async def update(self, user_id: int, patch: Mapping[str, Any]) -> bool:
        return await self.conditional_update(user_id, {}, patch)
