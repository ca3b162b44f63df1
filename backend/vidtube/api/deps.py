from __future__ import annotations

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from vidtube.core.errors import AuthError
from vidtube.core.passwords import PasswordHasher
from vidtube.core.security import read_access_token
from vidtube.core.settings import Settings, get_settings
from vidtube.core.tokens import TokenConfig, TokenError, TokenService
from vidtube.db.models.user import User
from vidtube.db.session import get_db
from vidtube.repositories.users import UserRepository
from vidtube.services.accounts import AccountService, make_email_policy
from vidtube.services.media_store import S3MediaStore


def get_token_service(settings: Settings = Depends(get_settings)) -> TokenService:
    return TokenService(TokenConfig.from_settings(settings))


def get_password_hasher(settings: Settings = Depends(get_settings)) -> PasswordHasher:
    return PasswordHasher(rounds=settings.bcrypt_rounds)


def get_media_store(settings: Settings = Depends(get_settings)) -> S3MediaStore:
    return S3MediaStore(settings)


def get_user_repository(db: AsyncSession = Depends(get_db)) -> UserRepository:
    return UserRepository(db)


def get_account_service(
    users: UserRepository = Depends(get_user_repository),
    hasher: PasswordHasher = Depends(get_password_hasher),
    tokens: TokenService = Depends(get_token_service),
    media: S3MediaStore = Depends(get_media_store),
    settings: Settings = Depends(get_settings),
) -> AccountService:
    return AccountService(
        users=users,
        hasher=hasher,
        tokens=tokens,
        media=media,
        email_policy=make_email_policy(settings.allowed_email_domains),
    )


async def get_current_user(
    request: Request,
    users: UserRepository = Depends(get_user_repository),
    tokens: TokenService = Depends(get_token_service),
    settings: Settings = Depends(get_settings),
) -> User:
    token = read_access_token(request, settings)
    if not token:
        raise AuthError("Unauthorized request")

    try:
        claims = tokens.verify(token, "access")
    except TokenError as e:
        raise AuthError("Invalid access token") from e

    user = await users.find_by_id(claims.account_id)
    if user is None:
        raise AuthError("Invalid access token")

    return user
