"""Email verification, password reset, password/email change and account status."""

import pytest

from conftest import STRONG_PASSWORD
from sessionward.service.errors import (
    AccessDeniedError,
    AccountInactiveError,
    EmailInUseError,
    InvalidCredentialsError,
    InvalidTokenError,
    TokenExpiredError,
    UserNotFoundError,
    WeakPasswordError,
)
from sessionward.service.session import SessionService

ALICE = "alice@example.com"
NEW_PASSWORD = "NewPass1!"


@pytest.fixture
def admin(store, service):
    return store.create_principal(
        "admin@example.com",
        service.hasher.hash(STRONG_PASSWORD),
        roles=["user", "admin"],
        email_verified=True,
    )


class TestPasswordReset:
    async def test_unknown_email_is_silent(self, service, notifier):
        assert await service.request_password_reset("nobody@example.com") is None
        assert notifier.resets == []

    async def test_inactive_principal_gets_no_reset(self, service, store, notifier):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        store.update_principal(registered.principal.id, is_active=False)

        await service.request_password_reset(ALICE)
        assert notifier.resets == []

    async def test_weak_password_does_not_consume_token(self, service, notifier):
        await service.register(ALICE, STRONG_PASSWORD)
        await service.request_password_reset(ALICE)
        _, token = notifier.resets[-1]

        with pytest.raises(WeakPasswordError):
            await service.reset_password(token, "weak")
        await service.reset_password(token, NEW_PASSWORD)

    async def test_token_is_single_use(self, service, notifier):
        await service.register(ALICE, STRONG_PASSWORD)
        await service.request_password_reset(ALICE)
        _, token = notifier.resets[-1]

        await service.reset_password(token, NEW_PASSWORD)
        with pytest.raises(InvalidTokenError):
            await service.reset_password(token, "An0ther-Pass!")

    async def test_expired_token(self, service, notifier, clock):
        await service.register(ALICE, STRONG_PASSWORD)
        await service.request_password_reset(ALICE)
        _, token = notifier.resets[-1]

        clock.advance(hours=1, seconds=1)
        with pytest.raises(TokenExpiredError):
            await service.reset_password(token, NEW_PASSWORD)
        result = await service.login(ALICE, STRONG_PASSWORD)
        assert result.tokens is not None

    async def test_verification_token_cannot_reset(self, service, notifier):
        await service.register(ALICE, STRONG_PASSWORD)
        await service.request_email_verification(ALICE)
        _, token = notifier.verifications[-1]

        with pytest.raises(InvalidTokenError):
            await service.reset_password(token, NEW_PASSWORD)


class TestEmailVerification:
    async def test_verify(self, service, notifier, store):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        await service.request_email_verification(ALICE)
        _, token = notifier.verifications[-1]

        principal = await service.verify_email(token)

        assert principal.email_verified
        assert store.get_principal_by_id(registered.principal.id).email_verified
        with pytest.raises(InvalidTokenError):
            await service.verify_email(token)

    async def test_skipped_for_verified_or_unknown(self, service, store, notifier):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        store.update_principal(registered.principal.id, email_verified=True)

        await service.request_email_verification(ALICE)
        await service.request_email_verification("nobody@example.com")
        assert notifier.verifications == []

    async def test_expired_verification(self, service, notifier, clock):
        await service.register(ALICE, STRONG_PASSWORD)
        await service.request_email_verification(ALICE)
        _, token = notifier.verifications[-1]

        clock.advance(hours=24)
        with pytest.raises(TokenExpiredError):
            await service.verify_email(token)


class TestChangePassword:
    async def test_change_revokes_sessions(self, service):
        registered = await service.register(ALICE, STRONG_PASSWORD)

        await service.change_password(registered.principal.id, STRONG_PASSWORD, NEW_PASSWORD)

        with pytest.raises(InvalidTokenError):
            await service.refresh(registered.tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await service.login(ALICE, STRONG_PASSWORD)
        assert (await service.login(ALICE, NEW_PASSWORD)).tokens is not None

    async def test_wrong_current_password(self, service):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await service.change_password(registered.principal.id, "nope", NEW_PASSWORD)

    async def test_weak_new_password(self, service):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        with pytest.raises(WeakPasswordError):
            await service.change_password(registered.principal.id, STRONG_PASSWORD, "weak")


class TestChangeEmail:
    async def test_new_address_needs_verification(self, service, store, notifier):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        store.update_principal(registered.principal.id, email_verified=True)

        updated = await service.change_email(registered.principal.id, "Alice.New@Example.com")

        assert updated.email == "alice.new@example.com"
        assert not updated.email_verified
        assert [email for email, _ in notifier.verifications] == ["alice.new@example.com"]
        assert store.get_principal_by_email(ALICE) is None

        _, token = notifier.verifications[-1]
        assert (await service.verify_email(token)).email_verified

    async def test_address_in_use(self, service):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        await service.register("bob@example.com", STRONG_PASSWORD)
        with pytest.raises(EmailInUseError):
            await service.change_email(registered.principal.id, "bob@example.com")

    async def test_same_address_is_noop(self, service, store, notifier):
        registered = await service.register(ALICE, STRONG_PASSWORD)
        store.update_principal(registered.principal.id, email_verified=True)

        principal = await service.change_email(registered.principal.id, ALICE.upper())
        assert principal.email_verified
        assert notifier.verifications == []

    async def test_unknown_principal(self, service):
        with pytest.raises(UserNotFoundError):
            await service.change_email("missing", "x@example.com")


class TestAccountStatus:
    async def test_deactivate_revokes_sessions(self, service, admin):
        registered = await service.register(ALICE, STRONG_PASSWORD)

        updated = await service.set_principal_active(admin.id, registered.principal.id, False)

        assert not updated.is_active
        with pytest.raises(InvalidTokenError):
            await service.refresh(registered.tokens.refresh_token)
        with pytest.raises(AccountInactiveError):
            await service.authenticate(registered.tokens.access_token)

        await service.set_principal_active(admin.id, registered.principal.id, True)
        assert (await service.login(ALICE, STRONG_PASSWORD)).tokens is not None

    async def test_requires_admin(self, service):
        alice = await service.register(ALICE, STRONG_PASSWORD)
        bob = await service.register("bob@example.com", STRONG_PASSWORD)
        with pytest.raises(AccessDeniedError):
            await service.set_principal_active(alice.principal.id, bob.principal.id, False)

    async def test_admin_cannot_deactivate_self(self, service, admin):
        with pytest.raises(AccessDeniedError):
            await service.set_principal_active(admin.id, admin.id, False)

    async def test_unknown_target(self, service, admin):
        with pytest.raises(UserNotFoundError):
            await service.set_principal_active(admin.id, "missing", False)


class TestHousekeeping:
    async def test_maybe_cleanup_honours_interval(self, store, settings, clock):
        service = SessionService(store, settings, clock=clock)
        await service.register(ALICE, STRONG_PASSWORD)
        await service.request_password_reset(ALICE)

        clock.advance(hours=2)
        assert await service.maybe_cleanup(interval_minutes=180) == 0
        assert len(store.one_time_tokens) == 1

        assert await service.maybe_cleanup(interval_minutes=60) == 1
        assert store.one_time_tokens == {}
        # Refresh token from registration is still live
        assert len(store.refresh_tokens) == 1
