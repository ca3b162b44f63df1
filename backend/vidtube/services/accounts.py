"""
Account and session lifecycle.

``AccountService`` owns every state transition of an account's session:
register, login, refresh, logout and password change, plus the profile
mutations that need the same collaborators. It raises ``AppError``
subclasses; translating them to HTTP is the API layer's job.

Session model: an account has at most one live refresh token. Its keyed hash
lives in ``users.refresh_token_hash``; login overwrites it (last writer wins),
refresh swaps it with a conditional update keyed on the old value, logout
clears it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, Sequence

from email_validator import EmailNotValidError, validate_email
import structlog

from vidtube.core.errors import (
    AppError,
    AuthError,
    ConflictError,
    InternalError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from vidtube.core.passwords import MAX_PASSWORD_BYTES, PasswordHasher
from vidtube.core.tokens import SessionPair, TokenError, TokenService
from vidtube.db.models.user import EMAIL_MAX_LENGTH, FULL_NAME_MAX_LENGTH, USERNAME_MAX_LENGTH, User
from vidtube.repositories.users import UserRepository, normalize_email
from vidtube.services.media_store import MediaRef

logger = structlog.get_logger(__name__)

EmailPolicy = Callable[[str], bool]


def make_email_policy(allowed_domains: Sequence[str] = ()) -> EmailPolicy:
    """Syntax check via email-validator, optionally restricted to some domains."""
    domains = {d.lower().lstrip("@") for d in allowed_domains if d}

    def policy(email: str) -> bool:
        try:
            result = validate_email(email, check_deliverability=False)
        except EmailNotValidError:
            return False
        if domains and result.domain.lower() not in domains:
            return False
        return True

    return policy


class MediaStore(Protocol):
    async def upload(self, local_path: Path | str, *, folder: str, content_type: str | None = None) -> MediaRef: ...

    async def delete(self, key: str) -> None: ...


@dataclass(frozen=True)
class LocalUpload:
    path: Path
    content_type: str | None = None


@dataclass(frozen=True)
class LoginResult:
    user: User
    tokens: SessionPair


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _check_length(label: str, value: str, limit: int) -> None:
    if len(value.strip()) > limit:
        raise ValidationError(f"{label} must be at most {limit} characters")


def _check_password(password: str) -> None:
    if not PasswordHasher.fits(password):
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")


class AccountService:
    def __init__(
        self,
        users: UserRepository,
        hasher: PasswordHasher,
        tokens: TokenService,
        media: MediaStore,
        email_policy: EmailPolicy | None = None,
    ) -> None:
        self.users = users
        self.hasher = hasher
        self.tokens = tokens
        self.media = media
        self.email_policy = email_policy or make_email_policy()

    # -- media helpers ---------------------------------------------------

    async def _discard_media(self, refs: Sequence[MediaRef]) -> None:
        for ref in refs:
            try:
                await self.media.delete(ref.key)
                logger.info("orphaned_media_deleted", key=ref.key)
            except AppError as e:
                logger.warning("orphaned_media_delete_failed", key=ref.key, error=e.message)

    # -- session issuance --------------------------------------------------

    async def _start_session(self, user: User) -> SessionPair:
        pair = self.tokens.issue_pair(user.id)
        # Unconditional: a new login replaces whatever session existed.
        await self.users.update(user.id, {"refresh_token_hash": self.tokens.fingerprint(pair.refresh_token)})
        return pair

    # -- operations -------------------------------------------------------

    async def register(
        self,
        *,
        username: str | None,
        email: str | None,
        password: str | None,
        full_name: str | None,
        avatar: LocalUpload | None,
        cover_image: LocalUpload | None = None,
    ) -> User:
        if any(_blank(v) for v in (username, email, password, full_name)):
            raise ValidationError("All fields are required")

        _check_length("Username", username, USERNAME_MAX_LENGTH)
        _check_length("Email", email, EMAIL_MAX_LENGTH)
        _check_length("Full name", full_name, FULL_NAME_MAX_LENGTH)
        _check_password(password)

        if not self.email_policy(email.strip()):
            raise ValidationError("Email is not valid, please enter a valid email id")

        if await self.users.exists_by_username_or_email(username=username, email=email):
            raise ConflictError("User with this email or username already exists")

        if avatar is None:
            raise ValidationError("Avatar file is required")

        password_hash = await self.hasher.hash(password)

        folder = f"avatars/{username.strip().lower()}"
        try:
            avatar_ref = await self.media.upload(avatar.path, folder=folder, content_type=avatar.content_type)
        except UpstreamError as e:
            raise ValidationError("Avatar file is required, upload failed") from e

        uploaded = [avatar_ref]
        cover_url = None
        if cover_image is not None:
            try:
                cover_ref = await self.media.upload(
                    cover_image.path,
                    folder=f"covers/{username.strip().lower()}",
                    content_type=cover_image.content_type,
                )
            except UpstreamError:
                logger.warning("cover_upload_skipped", username=username)
            else:
                uploaded.append(cover_ref)
                cover_url = cover_ref.url

        try:
            user = await self.users.create(
                username=username,
                email=email,
                full_name=full_name,
                password_hash=password_hash,
                avatar_url=avatar_ref.url,
                cover_image_url=cover_url,
            )
        except ConflictError:
            await self._discard_media(uploaded)
            raise
        except Exception as e:
            await self._discard_media(uploaded)
            logger.exception("user_persist_failed", username=username)
            raise InternalError("Something went wrong while registering the user") from e

        created = await self.users.find_by_id(user.id)
        if created is None:
            raise InternalError("Something went wrong while registering the user")

        logger.info("user_registered", user_id=created.id, username=created.username)
        return created

    async def login(self, *, username: str | None, email: str | None, password: str | None) -> LoginResult:
        if _blank(username) and _blank(email):
            raise ValidationError("Username or email is required")

        user = await self.users.find_by_username_or_email(
            username=None if _blank(username) else username,
            email=None if _blank(email) else email,
        )
        if user is None:
            raise NotFoundError("User does not exist")

        if _blank(password):
            raise ValidationError("Password is required")

        if not await self.hasher.verify(password, user.password_hash):
            logger.info("login_failed", username=user.username)
            raise AuthError("Invalid user credentials")

        pair = await self._start_session(user)
        logger.info("user_logged_in", user_id=user.id)
        return LoginResult(user=user, tokens=pair)

    async def logout(self, user: User) -> None:
        await self.users.update(user.id, {"refresh_token_hash": None})
        logger.info("user_logged_out", user_id=user.id)

    async def refresh(self, refresh_token: str | None) -> SessionPair:
        if _blank(refresh_token):
            raise AuthError("Unauthorized request")

        try:
            claims = self.tokens.verify(refresh_token, "refresh")
        except TokenError as e:
            raise AuthError("Invalid refresh token") from e

        user = await self.users.find_by_id(claims.account_id)
        if user is None:
            raise NotFoundError("User does not exist")

        if not self.tokens.matches(refresh_token, user.refresh_token_hash):
            logger.warning("stale_refresh_token", user_id=user.id)
            raise AuthError("Refresh token is expired or used")

        pair = self.tokens.issue_pair(user.id)
        rotated = await self.users.conditional_update(
            user.id,
            {"refresh_token_hash": user.refresh_token_hash},
            {"refresh_token_hash": self.tokens.fingerprint(pair.refresh_token)},
        )
        if not rotated:
            # Another login/refresh/logout won the race for this row.
            raise AuthError("Refresh token is expired or used")

        logger.info("session_rotated", user_id=user.id)
        return pair

    async def change_password(self, user: User, *, old_password: str | None, new_password: str | None) -> None:
        current = await self.users.find_by_id(user.id)
        if current is None:
            raise NotFoundError("User does not exist")

        if _blank(old_password) or not await self.hasher.verify(old_password, current.password_hash):
            raise AuthError("Invalid old password")

        if _blank(new_password):
            raise ValidationError("New password is required")
        _check_password(new_password)

        # Existing refresh tokens stay valid; other sessions are not signed out.
        await self.users.update(current.id, {"password_hash": await self.hasher.hash(new_password)})
        logger.info("password_changed", user_id=current.id)

    async def get_current(self, user: User) -> User:
        current = await self.users.find_by_id(user.id)
        if current is None:
            raise NotFoundError("User does not exist")
        return current

    async def update_account_details(self, user: User, *, full_name: str | None, email: str | None) -> User:
        if _blank(full_name) or _blank(email):
            raise ValidationError("All fields are required")
        _check_length("Email", email, EMAIL_MAX_LENGTH)
        _check_length("Full name", full_name, FULL_NAME_MAX_LENGTH)
        if not self.email_policy(email.strip()):
            raise ValidationError("Email is not valid, please enter a valid email id")

        other = await self.users.find_by_email(email)
        if other is not None and other.id != user.id:
            raise ConflictError("Email is already in use")

        updated = await self.users.update(user.id, {"full_name": full_name.strip(), "email": normalize_email(email)})
        if not updated:
            raise NotFoundError("User does not exist")
        return await self.get_current(user)

    async def _replace_media(self, user: User, upload: LocalUpload | None, *, column: str, folder: str) -> User:
        if upload is None:
            raise ValidationError(f"{folder.capitalize()} file is missing")

        try:
            ref = await self.media.upload(upload.path, folder=f"{folder}s/{user.username}", content_type=upload.content_type)
        except UpstreamError as e:
            raise UpstreamError(f"Error while uploading {folder}") from e

        try:
            updated = await self.users.update(user.id, {column: ref.url})
        except AppError:
            await self._discard_media([ref])
            raise
        except Exception as e:
            await self._discard_media([ref])
            raise InternalError(f"Something went wrong while updating the {folder}") from e
        if not updated:
            await self._discard_media([ref])
            raise NotFoundError("User does not exist")
        return await self.get_current(user)

    async def update_avatar(self, user: User, upload: LocalUpload | None) -> User:
        return await self._replace_media(user, upload, column="avatar_url", folder="avatar")

    async def update_cover_image(self, user: User, upload: LocalUpload | None) -> User:
        return await self._replace_media(user, upload, column="cover_image_url", folder="cover")
