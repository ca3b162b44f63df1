from __future__ import annotations

import pytest

from vidtube.core.errors import AuthError, ConflictError, InternalError, NotFoundError, ValidationError
from vidtube.repositories.users import UserRepository
from vidtube.services.accounts import AccountService, LocalUpload, make_email_policy


async def _register(service: AccountService, local_image, **overrides):
    params = dict(
        username="alice",
        email="alice@x.com",
        password="pw1",
        full_name="Alice A",
        avatar=LocalUpload(local_image(), "image/png"),
    )
    params.update(overrides)
    return await service.register(**params)


@pytest.mark.asyncio
async def test_register_stores_hash_not_plaintext(service, hasher, local_image) -> None:
    user = await _register(service, local_image, username="  Alice ")

    assert user.id is not None
    assert user.username == "alice"
    assert user.password_hash != "pw1"
    assert await hasher.verify("pw1", user.password_hash)
    assert not await hasher.verify("wrong", user.password_hash)
    assert user.refresh_token_hash is None
    assert user.avatar_url.startswith("https://cdn.example.com/avatars/alice/")
    assert user.cover_image_url is None


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["username", "email", "password", "full_name"])
async def test_register_requires_every_field(service, local_image, field) -> None:
    with pytest.raises(ValidationError):
        await _register(service, local_image, **{field: "   "})


@pytest.mark.asyncio
async def test_register_rejects_bad_email(service, local_image) -> None:
    with pytest.raises(ValidationError):
        await _register(service, local_image, email="not-an-email")


@pytest.mark.asyncio
async def test_register_applies_domain_allow_list(db, hasher, token_service, media_store, local_image) -> None:
    service = AccountService(
        users=UserRepository(db),
        hasher=hasher,
        tokens=token_service,
        media=media_store,
        email_policy=make_email_policy(["corp.io"]),
    )
    with pytest.raises(ValidationError):
        await _register(service, local_image, email="alice@x.com")
    user = await _register(service, local_image, email="alice@corp.io")
    assert user.email == "alice@corp.io"


@pytest.mark.asyncio
async def test_duplicate_username_conflicts_even_with_new_email(service, local_image) -> None:
    await _register(service, local_image)
    with pytest.raises(ConflictError):
        await _register(service, local_image, email="other@x.com")
    with pytest.raises(ConflictError):
        await _register(service, local_image, username="ALICE", email="third@x.com")


@pytest.mark.asyncio
async def test_duplicate_email_conflicts(service, local_image) -> None:
    await _register(service, local_image)
    with pytest.raises(ConflictError):
        await _register(service, local_image, username="bob", email="Alice@X.com")


@pytest.mark.asyncio
async def test_register_requires_avatar(service, s3) -> None:
    with pytest.raises(ValidationError):
        await service.register(
            username="alice", email="alice@x.com", password="pw1", full_name="Alice A", avatar=None
        )
    assert s3.objects == {}


@pytest.mark.asyncio
async def test_register_fails_when_avatar_upload_fails(service, s3, local_image) -> None:
    s3.fail_put = True
    with pytest.raises(ValidationError):
        await _register(service, local_image)
    assert await service.users.find_by_username_or_email(username="alice") is None


@pytest.mark.asyncio
async def test_register_tolerates_failed_cover_upload(service, s3, local_image) -> None:
    s3.fail_put_keys = {"covers/"}
    user = await _register(service, local_image, cover_image=LocalUpload(local_image("cover.png"), "image/png"))
    assert user.cover_image_url is None
    assert user.avatar_url


@pytest.mark.asyncio
async def test_register_keeps_cover_image(service, local_image) -> None:
    user = await _register(service, local_image, cover_image=LocalUpload(local_image("cover.png"), "image/png"))
    assert user.cover_image_url.startswith("https://cdn.example.com/covers/alice/")


@pytest.mark.asyncio
async def test_register_discards_uploads_when_persist_fails(service, s3, local_image, monkeypatch) -> None:
    async def _boom(**kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(service.users, "create", _boom)

    with pytest.raises(InternalError):
        await _register(service, local_image, cover_image=LocalUpload(local_image("cover.png"), "image/png"))

    assert s3.objects == {}
    assert len(s3.deleted) == 2


@pytest.mark.asyncio
async def test_register_surfaces_internal_error_even_if_cleanup_fails(service, s3, local_image, monkeypatch) -> None:
    async def _boom(**kwargs):
        raise RuntimeError("db down")

    monkeypatch.setattr(service.users, "create", _boom)
    s3.fail_delete = True

    with pytest.raises(InternalError):
        await _register(service, local_image)


@pytest.mark.asyncio
async def test_login_issues_typed_session_pair(service, token_service, local_image) -> None:
    await _register(service, local_image)

    result = await service.login(username="alice", email=None, password="pw1")

    assert token_service.verify(result.tokens.access_token, "access").account_id == result.user.id
    assert token_service.verify(result.tokens.refresh_token, "refresh").account_id == result.user.id
    stored = await service.users.find_by_id(result.user.id)
    assert stored.refresh_token_hash == token_service.fingerprint(result.tokens.refresh_token)


@pytest.mark.asyncio
async def test_login_by_email_is_case_insensitive(service, local_image) -> None:
    await _register(service, local_image)
    result = await service.login(username=None, email="ALICE@x.com", password="pw1")
    assert result.user.username == "alice"


@pytest.mark.asyncio
async def test_login_wrong_password_issues_nothing(service, local_image) -> None:
    user = await _register(service, local_image)
    with pytest.raises(AuthError):
        await service.login(username="alice", email=None, password="nope")
    stored = await service.users.find_by_id(user.id)
    assert stored.refresh_token_hash is None


@pytest.mark.asyncio
async def test_login_input_errors(service, local_image) -> None:
    await _register(service, local_image)
    with pytest.raises(ValidationError):
        await service.login(username=None, email="  ", password="pw1")
    with pytest.raises(NotFoundError):
        await service.login(username="nobody", email=None, password="pw1")
    with pytest.raises(ValidationError):
        await service.login(username="alice", email=None, password="")


@pytest.mark.asyncio
async def test_second_login_invalidates_first_refresh_token(service, local_image) -> None:
    await _register(service, local_image)
    first = await service.login(username="alice", email=None, password="pw1")
    second = await service.login(username="alice", email=None, password="pw1")

    with pytest.raises(AuthError):
        await service.refresh(first.tokens.refresh_token)

    rotated = await service.refresh(second.tokens.refresh_token)
    assert rotated.refresh_token != second.tokens.refresh_token


@pytest.mark.asyncio
async def test_refresh_rotates_and_kills_submitted_token(service, token_service, local_image) -> None:
    await _register(service, local_image)
    login = await service.login(username="alice", email=None, password="pw1")

    pair = await service.refresh(login.tokens.refresh_token)

    assert pair.refresh_token != login.tokens.refresh_token
    assert pair.access_token != login.tokens.access_token
    assert token_service.verify(pair.access_token, "access").account_id == login.user.id
    with pytest.raises(AuthError):
        await service.refresh(login.tokens.refresh_token)


@pytest.mark.asyncio
async def test_refresh_rejects_missing_invalid_and_access_tokens(service, local_image) -> None:
    await _register(service, local_image)
    login = await service.login(username="alice", email=None, password="pw1")

    for token in (None, "", "garbage", login.tokens.access_token):
        with pytest.raises(AuthError):
            await service.refresh(token)


@pytest.mark.asyncio
async def test_refresh_for_unknown_account_is_not_found(service, token_service) -> None:
    with pytest.raises(NotFoundError):
        await service.refresh(token_service.issue_refresh(999))


@pytest.mark.asyncio
async def test_refresh_loses_race_when_hash_changed_underneath(service, token_service, local_image, monkeypatch) -> None:
    await _register(service, local_image)
    login = await service.login(username="alice", email=None, password="pw1")

    real_conditional_update = service.users.conditional_update

    async def _racing(user_id, expected, patch):
        # A concurrent login lands between the read and the write.
        await real_conditional_update(user_id, {}, {"refresh_token_hash": "0" * 64})
        return await real_conditional_update(user_id, expected, patch)

    monkeypatch.setattr(service.users, "conditional_update", _racing)

    with pytest.raises(AuthError):
        await service.refresh(login.tokens.refresh_token)
    stored = await service.users.find_by_id(login.user.id)
    assert stored.refresh_token_hash == "0" * 64


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token(service, local_image) -> None:
    await _register(service, local_image)
    login = await service.login(username="alice", email=None, password="pw1")

    await service.logout(login.user)

    stored = await service.users.find_by_id(login.user.id)
    assert stored.refresh_token_hash is None
    with pytest.raises(AuthError):
        await service.refresh(login.tokens.refresh_token)


@pytest.mark.asyncio
async def test_change_password(service, hasher, local_image) -> None:
    user = await _register(service, local_image)

    await service.change_password(user, old_password="pw1", new_password="pw2")

    stored = await service.users.find_by_id(user.id)
    assert not await hasher.verify("pw1", stored.password_hash)
    assert await hasher.verify("pw2", stored.password_hash)
    await service.login(username="alice", email=None, password="pw2")


@pytest.mark.asyncio
async def test_change_password_with_wrong_old_password_mutates_nothing(service, local_image) -> None:
    user = await _register(service, local_image)
    before = (await service.users.find_by_id(user.id)).password_hash

    with pytest.raises(AuthError):
        await service.change_password(user, old_password="nope", new_password="pw2")

    assert (await service.users.find_by_id(user.id)).password_hash == before


@pytest.mark.asyncio
async def test_change_password_keeps_refresh_session(service, local_image) -> None:
    await _register(service, local_image)
    login = await service.login(username="alice", email=None, password="pw1")

    await service.change_password(login.user, old_password="pw1", new_password="pw2")

    await service.refresh(login.tokens.refresh_token)


@pytest.mark.asyncio
async def test_change_password_requires_new_password(service, local_image) -> None:
    user = await _register(service, local_image)
    with pytest.raises(ValidationError):
        await service.change_password(user, old_password="pw1", new_password=" ")


@pytest.mark.asyncio
async def test_update_account_details(service, local_image) -> None:
    user = await _register(service, local_image)
    await _register(service, local_image, username="bob", email="bob@x.com")

    updated = await service.update_account_details(user, full_name=" Alice B ", email="New@X.com")
    assert updated.full_name == "Alice B"
    assert updated.email == "new@x.com"

    with pytest.raises(ConflictError):
        await service.update_account_details(user, full_name="Alice", email="bob@x.com")
    with pytest.raises(ValidationError):
        await service.update_account_details(user, full_name="", email="a@x.com")


@pytest.mark.asyncio
async def test_update_avatar_and_cover(service, local_image) -> None:
    user = await _register(service, local_image)

    updated = await service.update_avatar(user, LocalUpload(local_image("new.png"), "image/png"))
    assert updated.avatar_url.endswith("_new.png")

    updated = await service.update_cover_image(user, LocalUpload(local_image("banner.png"), "image/png"))
    assert updated.cover_image_url.startswith("https://cdn.example.com/covers/alice/")

    with pytest.raises(ValidationError):
        await service.update_avatar(user, None)


@pytest.mark.asyncio
async def test_register_rejects_password_longer_than_bcrypt_accepts(service, s3, local_image) -> None:
    with pytest.raises(ValidationError, match="72 bytes"):
        await _register(service, local_image, password="p" * 100)
    assert s3.objects == {}
    assert await service.users.find_by_username_or_email(username="alice") is None


@pytest.mark.asyncio
async def test_password_limit_counts_bytes_not_characters(service, local_image) -> None:
    with pytest.raises(ValidationError):
        await _register(service, local_image, password="é" * 40)
    user = await _register(service, local_image, password="é" * 36)
    assert await service.hasher.verify("é" * 36, user.password_hash)


@pytest.mark.asyncio
async def test_change_password_rejects_overlong_new_password(service, hasher, local_image) -> None:
    user = await _register(service, local_image)
    with pytest.raises(ValidationError):
        await service.change_password(user, old_password="pw1", new_password="p" * 100)
    assert await hasher.verify("pw1", (await service.users.find_by_id(user.id)).password_hash)


@pytest.mark.asyncio
async def test_login_with_overlong_password_is_rejected(service, local_image) -> None:
    await _register(service, local_image)
    with pytest.raises(AuthError):
        await service.login(username="alice", email=None, password="p" * 100)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"username": "u" * 65},
        {"full_name": "n" * 121},
        {"email": "a" * 315 + "@x.com"},
    ],
)
async def test_register_rejects_values_longer_than_columns(service, s3, local_image, overrides) -> None:
    with pytest.raises(ValidationError, match="at most"):
        await _register(service, local_image, **overrides)
    assert s3.objects == {}


@pytest.mark.asyncio
async def test_update_account_rejects_values_longer_than_columns(service, local_image) -> None:
    user = await _register(service, local_image)
    with pytest.raises(ValidationError):
        await service.update_account_details(user, full_name="n" * 121, email="a@x.com")
    with pytest.raises(ValidationError):
        await service.update_account_details(user, full_name="Alice", email="a" * 315 + "@x.com")
    assert (await service.users.find_by_id(user.id)).full_name == "Alice A"
