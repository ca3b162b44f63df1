"""
Signed session tokens.

Access and refresh tokens are HS256 JWTs carrying ``sub`` (account id),
``type``, ``exp``, ``iat`` and a random ``jti``. Each class has its own secret
so a refresh token can never pass as an access token even if ``type`` were
ignored. Refresh tokens are additionally bound to the account through
``fingerprint``; only the fingerprint is stored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import uuid
from typing import Any, Literal

import jwt
from jwt import ExpiredSignatureError, InvalidTokenError

from vidtube.core.settings import Settings

TokenType = Literal["access", "refresh"]


class TokenError(Exception):
    reason = "invalid"


class InvalidSignature(TokenError):
    reason = "invalid"


class TokenExpired(TokenError):
    reason = "expired"


class WrongTokenType(TokenError):
    reason = "wrong_type"


@dataclass(frozen=True)
class TokenConfig:
    access_secret: str
    refresh_secret: str
    access_ttl_seconds: int = 900
    refresh_ttl_seconds: int = 864000
    algorithm: str = "HS256"

    def __post_init__(self) -> None:
        if not self.access_secret or not self.refresh_secret:
            raise ValueError("token secrets must not be empty")
        if self.access_ttl_seconds <= 0 or self.refresh_ttl_seconds <= self.access_ttl_seconds:
            raise ValueError("access TTL must be positive and shorter than refresh TTL")

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl_seconds=int(settings.jwt_access_ttl_seconds),
            refresh_ttl_seconds=int(settings.jwt_refresh_ttl_seconds),
            algorithm=settings.jwt_algorithm,
        )


@dataclass(frozen=True)
class TokenClaims:
    account_id: int
    token_type: TokenType
    expires_at: datetime


@dataclass(frozen=True)
class SessionPair:
    access_token: str
    refresh_token: str


class TokenService:
    def __init__(self, config: TokenConfig) -> None:
        self.config = config

    def _secret(self, token_type: TokenType) -> str:
        return self.config.access_secret if token_type == "access" else self.config.refresh_secret

    def _ttl(self, token_type: TokenType) -> int:
        return self.config.access_ttl_seconds if token_type == "access" else self.config.refresh_ttl_seconds

    def _issue(self, account_id: int, token_type: TokenType) -> str:
        now = datetime.now(timezone.utc)
        payload: dict[str, Any] = {
            "sub": str(account_id),
            "type": token_type,
            "iat": now,
            "exp": now + timedelta(seconds=self._ttl(token_type)),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret(token_type), algorithm=self.config.algorithm)

    def issue_access(self, account_id: int) -> str:
        return self._issue(account_id, "access")

    def issue_refresh(self, account_id: int) -> str:
        return self._issue(account_id, "refresh")

    def issue_pair(self, account_id: int) -> SessionPair:
        return SessionPair(
            access_token=self.issue_access(account_id),
            refresh_token=self.issue_refresh(account_id),
        )

    def verify(self, token: str, expected_type: TokenType) -> TokenClaims:
        if not token:
            raise InvalidSignature("Token is empty")

        # Peek at the unverified type first so a token of the other class
        # reports WrongTokenType rather than a signature failure.
        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except InvalidTokenError as e:
            raise InvalidSignature("Malformed token") from e
        if unverified.get("type") != expected_type:
            raise WrongTokenType(f"Expected a {expected_type} token")

        try:
            payload = jwt.decode(
                token,
                self._secret(expected_type),
                algorithms=[self.config.algorithm],
                options={"require": ["exp", "sub", "type"]},
            )
        except ExpiredSignatureError as e:
            raise TokenExpired("Token has expired") from e
        except InvalidTokenError as e:
            raise InvalidSignature("Invalid token") from e

        try:
            account_id = int(payload["sub"])
        except (TypeError, ValueError) as e:
            raise InvalidSignature("Invalid token subject") from e

        return TokenClaims(
            account_id=account_id,
            token_type=expected_type,
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )

    def fingerprint(self, refresh_token: str) -> str:
        # Keyed hash so a leaked users table can't be replayed as cookies.
        return hmac.new(
            key=self.config.refresh_secret.encode("utf-8"),
            msg=refresh_token.encode("utf-8"),
            digestmod=hashlib.sha256,
        ).hexdigest()

    def matches(self, refresh_token: str, stored_hash: str | None) -> bool:
        if not stored_hash:
            return False
        return hmac.compare_digest(self.fingerprint(refresh_token), stored_hash)
