from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile, status
from fastapi.responses import JSONResponse

from vidtube.api.deps import get_account_service, get_current_user
from vidtube.core.errors import ValidationError
from vidtube.core.security import clear_session_cookies, read_refresh_token, set_session_cookies
from vidtube.core.settings import Settings, get_settings
from vidtube.db.models.user import User
from vidtube.schemas.auth import ChangePasswordRequest, LoginData, LoginRequest, RefreshRequest, TokenPair
from vidtube.schemas.common import envelope
from vidtube.schemas.user import UpdateAccountRequest, UserPublic
from vidtube.services.accounts import AccountService, LocalUpload
from vidtube.services.media_store import save_upload_to_tmp

router = APIRouter(prefix="/users", tags=["users"])


def _has_file(upload: UploadFile | None) -> bool:
    return upload is not None and bool(upload.filename)


async def _spool_image(upload: UploadFile | None, settings: Settings) -> LocalUpload | None:
    if not _has_file(upload):
        return None
    content_type = (upload.content_type or "").strip()
    if content_type and not content_type.startswith("image/"):
        raise ValidationError("Only image files are accepted")
    path = await save_upload_to_tmp(
        upload,
        tmp_dir=settings.upload_tmp_dir,
        max_size_bytes=settings.upload_max_size_bytes,
    )
    return LocalUpload(path=path, content_type=content_type or None)


def _cleanup(*uploads: LocalUpload | None) -> None:
    # The media store removes files it uploads; this catches the ones it never saw.
    for upload in uploads:
        if upload is not None:
            Path(upload.path).unlink(missing_ok=True)


def _public(user: User) -> dict:
    return UserPublic.model_validate(user).model_dump(mode="json")


@router.post("/register")
async def register(
    username: str | None = Form(default=None),
    email: str | None = Form(default=None),
    password: str | None = Form(default=None),
    fullName: str | None = Form(default=None),
    avatar: UploadFile | None = File(default=None),
    coverImage: UploadFile | None = File(default=None),
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    if any(not (value or "").strip() for value in (username, email, password, fullName)):
        raise ValidationError("All fields are required")

    avatar_upload = cover_upload = None
    try:
        avatar_upload = await _spool_image(avatar, settings)
        cover_upload = await _spool_image(coverImage, settings)
        user = await service.register(
            username=username,
            email=email,
            password=password,
            full_name=fullName,
            avatar=avatar_upload,
            cover_image=cover_upload,
        )
    finally:
        _cleanup(avatar_upload, cover_upload)
    return envelope(status.HTTP_201_CREATED, _public(user), "User registered successfully")


@router.post("/login")
async def login(
    body: LoginRequest,
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    result = await service.login(username=body.username, email=body.email, password=body.password)
    data = LoginData(
        user=UserPublic.model_validate(result.user),
        accessToken=result.tokens.access_token,
        refreshToken=result.tokens.refresh_token,
    )
    response = envelope(status.HTTP_200_OK, data.model_dump(mode="json"), "User logged in successfully")
    set_session_cookies(response=response, pair=result.tokens, settings=settings)
    return response


@router.post("/logout")
async def logout(
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    await service.logout(current_user)
    response = envelope(status.HTTP_200_OK, {}, "User logged out")
    clear_session_cookies(response=response, settings=settings)
    return response


@router.post("/refresh-token")
async def refresh_token(
    request: Request,
    body: RefreshRequest | None = Body(default=None),
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    token = read_refresh_token(request, settings, body.refreshToken if body else None)
    pair = await service.refresh(token)
    data = TokenPair(accessToken=pair.access_token, refreshToken=pair.refresh_token)
    response = envelope(status.HTTP_200_OK, data.model_dump(), "Access token refreshed")
    set_session_cookies(response=response, pair=pair, settings=settings)
    return response


@router.post("/change-password")
async def change_password(
    body: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    await service.change_password(current_user, old_password=body.oldPassword, new_password=body.newPassword)
    return envelope(status.HTTP_200_OK, {}, "Password changed successfully")


@router.get("/current-user")
async def read_current_user(
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    user = await service.get_current(current_user)
    return envelope(status.HTTP_200_OK, _public(user), "Current user fetched successfully")


@router.patch("/update-account")
async def update_account(
    body: UpdateAccountRequest,
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
) -> JSONResponse:
    user = await service.update_account_details(current_user, full_name=body.fullName, email=body.email)
    return envelope(status.HTTP_200_OK, _public(user), "Account details updated successfully")


@router.patch("/avatar")
async def update_avatar(
    avatar: UploadFile | None = File(default=None),
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    upload = None
    try:
        upload = await _spool_image(avatar, settings)
        user = await service.update_avatar(current_user, upload)
    finally:
        _cleanup(upload)
    return envelope(status.HTTP_200_OK, _public(user), "Avatar updated successfully")


@router.patch("/cover-image")
async def update_cover_image(
    coverImage: UploadFile | None = File(default=None),
    current_user: User = Depends(get_current_user),
    service: AccountService = Depends(get_account_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    upload = None
    try:
        upload = await _spool_image(coverImage, settings)
        user = await service.update_cover_image(current_user, upload)
    finally:
        _cleanup(upload)
    return envelope(status.HTTP_200_OK, _public(user), "Cover image updated successfully")
