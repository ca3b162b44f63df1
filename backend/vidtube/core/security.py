from __future__ import annotations

from fastapi import Request

from vidtube.core.settings import Settings
from vidtube.core.tokens import SessionPair


def set_access_cookie(*, response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.access_cookie_name,
        value=token,
        httponly=True,
        secure=bool(settings.cookie_secure),
        samesite=settings.cookie_samesite,
        domain=settings.cookie_domain,
        max_age=int(settings.jwt_access_ttl_seconds),
        path="/",
    )


def clear_access_cookie(*, response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.access_cookie_name,
        domain=settings.cookie_domain,
        path="/",
        httponly=True,
        secure=bool(settings.cookie_secure),
        samesite=settings.cookie_samesite,
    )


def set_refresh_cookie(*, response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.refresh_cookie_name,
        value=token,
        httponly=True,
        secure=bool(settings.cookie_secure),
        samesite=settings.cookie_samesite,
        domain=settings.cookie_domain,
        max_age=int(settings.jwt_refresh_ttl_seconds),
        path="/",
    )


def clear_refresh_cookie(*, response, settings: Settings) -> None:
    response.delete_cookie(
        key=settings.refresh_cookie_name,
        domain=settings.cookie_domain,
        path="/",
        httponly=True,
        secure=bool(settings.cookie_secure),
        samesite=settings.cookie_samesite,
    )


def set_session_cookies(*, response, pair: SessionPair, settings: Settings) -> None:
    set_access_cookie(response=response, token=pair.access_token, settings=settings)
    set_refresh_cookie(response=response, token=pair.refresh_token, settings=settings)


def clear_session_cookies(*, response, settings: Settings) -> None:
    clear_access_cookie(response=response, settings=settings)
    clear_refresh_cookie(response=response, settings=settings)


def read_access_token(request: Request, settings: Settings) -> str | None:
    token = request.cookies.get(settings.access_cookie_name)
    if token:
        return token
    auth = request.headers.get("Authorization") or ""
    scheme, _, credentials = auth.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def read_refresh_token(request: Request, settings: Settings, body_token: str | None = None) -> str | None:
    # Cookie first; the request body is accepted for non-browser clients.
    token = request.cookies.get(settings.refresh_cookie_name)
    if token:
        return token
    if body_token and body_token.strip():
        return body_token.strip()
    return None
