"""Tests for the credential hasher and password policy."""

import pytest

from sessionward.service.errors import ErrorKind, WeakPasswordError
from sessionward.service.passwords import CredentialHasher, PasswordPolicy


@pytest.fixture
def hasher():
    return CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)


class TestCredentialHasher:
    def test_round_trip(self, hasher):
        digest = hasher.hash("Str0ngPass!")
        assert hasher.verify("Str0ngPass!", digest)

    def test_other_password_does_not_verify(self, hasher):
        digest = hasher.hash("Str0ngPass!")
        assert not hasher.verify("Str0ngPass?", digest)

    @pytest.mark.parametrize("password", ["a", "correct horse battery staple", "ünïcødé-Pässwörd1!"])
    def test_round_trip_varied_inputs(self, hasher, password):
        digest = hasher.hash(password)
        assert hasher.verify(password, digest)
        assert not hasher.verify(password + "x", digest)

    def test_hash_is_salted_and_self_describing(self, hasher):
        first = hasher.hash("Str0ngPass!")
        second = hasher.hash("Str0ngPass!")
        assert first != second
        assert first.startswith("$argon2id$")
        assert "Str0ngPass!" not in first

    def test_malformed_hash_returns_false(self, hasher):
        assert hasher.verify("Str0ngPass!", "not-a-hash") is False
        assert hasher.verify("Str0ngPass!", "") is False

    def test_needs_rehash_when_cost_changes(self, hasher):
        digest = hasher.hash("Str0ngPass!")
        stronger = CredentialHasher(time_cost=2, memory_cost=16, parallelism=1)
        assert not hasher.needs_rehash(digest)
        assert stronger.needs_rehash(digest)
        assert stronger.verify("Str0ngPass!", digest)

    def test_dummy_verify_never_raises(self, hasher):
        assert hasher.dummy_verify("anything") is None


class TestPasswordPolicy:
    def test_strong_password_has_no_violations(self):
        assert PasswordPolicy().violations("Str0ngPass!") == []

    def test_all_violations_are_aggregated(self):
        reasons = PasswordPolicy().violations("abc")
        assert reasons == [
            "Password must be at least 8 characters long",
            "Password must contain at least one uppercase letter",
            "Password must contain at least one number",
            "Password must contain at least one special character",
        ]

    def test_empty_password_reports_every_rule(self):
        assert len(PasswordPolicy().violations("")) == 5

    def test_enforce_raises_weak_password_with_reasons(self):
        with pytest.raises(WeakPasswordError) as exc_info:
            PasswordPolicy().enforce("password")
        err = exc_info.value
        assert err.kind == ErrorKind.WEAK_PASSWORD
        assert err.status_code == 400
        assert "Password must contain at least one uppercase letter" in err.reasons
        assert err.detail["reasons"] == err.reasons

    def test_rules_can_be_relaxed(self):
        policy = PasswordPolicy(
            min_length=4,
            require_uppercase=False,
            require_digit=False,
            require_special=False,
        )
        assert policy.violations("abcd") == []

    def test_from_settings(self, settings):
        relaxed = settings.model_copy(update={"password_min_length": 12})
        reasons = PasswordPolicy.from_settings(relaxed).violations("Str0ngPass!")
        assert reasons == ["Password must be at least 12 characters long"]
