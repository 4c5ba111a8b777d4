"""Tests for the token codec: type separation, signatures and expiry."""

import base64
import json
from datetime import timedelta

import pytest

from sessionward.service.tokens import (
    TokenCodec,
    TokenFailure,
    TokenType,
    TokenVerificationError,
)


@pytest.fixture
def codec(clock):
    return TokenCodec(access_secret="access-secret-for-tests", clock=clock)


def _failure(codec, token, expected):
    with pytest.raises(TokenVerificationError) as exc_info:
        codec.verify(token, expected)
    return exc_info.value.failure


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestMintAndVerify:
    def test_round_trip_claims(self, codec, clock):
        minted = codec.mint("user-1", TokenType.ACCESS, timedelta(minutes=15), tenant_id="acme")
        claims = codec.verify(minted.token, TokenType.ACCESS)

        assert claims.subject_id == "user-1"
        assert claims.token_type == TokenType.ACCESS
        assert claims.tenant_id == "acme"
        assert claims.issued_at == clock.now
        assert claims.expires_at == clock.now + timedelta(minutes=15)
        assert claims.jti == minted.jti
        assert minted.expires_at == claims.expires_at

    def test_each_mint_is_unique(self, codec):
        first = codec.mint("user-1", TokenType.REFRESH, timedelta(days=1))
        second = codec.mint("user-1", TokenType.REFRESH, timedelta(days=1))
        assert first.token != second.token
        assert first.jti != second.jti

    def test_subject_is_readable_but_not_forgeable(self, codec):
        minted = codec.mint("user-1", TokenType.ACCESS, timedelta(minutes=5))
        assert codec.peek_claims(minted.token)["sub"] == "user-1"


class TestFailureKinds:
    def test_access_rejected_where_refresh_expected(self, codec):
        minted = codec.mint("user-1", TokenType.ACCESS, timedelta(minutes=5))
        assert _failure(codec, minted.token, TokenType.REFRESH) == TokenFailure.WRONG_TYPE

    def test_refresh_rejected_where_access_expected(self, codec):
        minted = codec.mint("user-1", TokenType.REFRESH, timedelta(minutes=5))
        assert _failure(codec, minted.token, TokenType.ACCESS) == TokenFailure.WRONG_TYPE

    def test_pending_rejected_where_access_expected(self, codec):
        minted = codec.mint("user-1", TokenType.PENDING, timedelta(minutes=5))
        assert _failure(codec, minted.token, TokenType.ACCESS) == TokenFailure.WRONG_TYPE

    def test_tampered_payload_is_bad_signature(self, codec):
        minted = codec.mint("user-1", TokenType.ACCESS, timedelta(minutes=5))
        header, _, signature = minted.token.split(".")
        forged_payload = dict(codec.peek_claims(minted.token), sub="admin")
        forged = f"{header}.{_b64(forged_payload)}.{signature}"
        assert _failure(codec, forged, TokenType.ACCESS) == TokenFailure.BAD_SIGNATURE

    def test_relabelled_type_fails_signature(self, codec):
        minted = codec.mint("user-1", TokenType.REFRESH, timedelta(minutes=5))
        header, _, signature = minted.token.split(".")
        relabelled = dict(codec.peek_claims(minted.token), type="access")
        forged = f"{header}.{_b64(relabelled)}.{signature}"
        assert _failure(codec, forged, TokenType.ACCESS) == TokenFailure.BAD_SIGNATURE

    def test_other_secret_is_bad_signature(self, codec, clock):
        other = TokenCodec(access_secret="a-different-secret", clock=clock)
        minted = other.mint("user-1", TokenType.ACCESS, timedelta(minutes=5))
        assert _failure(codec, minted.token, TokenType.ACCESS) == TokenFailure.BAD_SIGNATURE

    def test_none_algorithm_rejected(self, codec):
        minted = codec.mint("user-1", TokenType.ACCESS, timedelta(minutes=5))
        _, payload, _ = minted.token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        assert _failure(codec, forged, TokenType.ACCESS) == TokenFailure.BAD_SIGNATURE

    @pytest.mark.parametrize("signature", ["ééé", "é", "签名"])
    def test_non_ascii_signature_is_bad_signature(self, codec, signature):
        minted = codec.mint("user-1", TokenType.REFRESH, timedelta(minutes=5))
        header, payload, _ = minted.token.split(".")
        forged = f"{header}.{payload}.{signature}"
        assert _failure(codec, forged, TokenType.REFRESH) == TokenFailure.BAD_SIGNATURE

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c", "!!.??.##", "é.é.é"])
    def test_malformed_tokens(self, codec, garbage):
        assert _failure(codec, garbage, TokenType.ACCESS) == TokenFailure.BAD_SIGNATURE

    def test_wrong_audience(self, codec, clock):
        foreign = TokenCodec(
            access_secret="access-secret-for-tests", audience="someone-else", clock=clock
        )
        minted = foreign.mint("user-1", TokenType.ACCESS, timedelta(minutes=5))
        assert _failure(codec, minted.token, TokenType.ACCESS) == TokenFailure.BAD_SIGNATURE

    def test_expiry_boundary(self, codec, clock):
        minted = codec.mint("user-1", TokenType.ACCESS, timedelta(minutes=15))
        clock.advance(minutes=14, seconds=59)
        assert codec.verify(minted.token, TokenType.ACCESS).subject_id == "user-1"
        clock.advance(seconds=1)
        assert _failure(codec, minted.token, TokenType.ACCESS) == TokenFailure.EXPIRED


class TestSecrets:
    def test_refresh_secret_is_derived_when_unset(self, clock):
        codec = TokenCodec(access_secret="shared", clock=clock)
        explicit = TokenCodec(access_secret="shared", refresh_secret="shared", clock=clock)
        minted = explicit.mint("user-1", TokenType.REFRESH, timedelta(minutes=5))
        # Derived refresh secret differs from the access secret
        assert _failure(codec, minted.token, TokenType.REFRESH) == TokenFailure.BAD_SIGNATURE

    def test_from_settings_uses_explicit_refresh_secret(self, settings, clock):
        configured = settings.model_copy(update={"jwt_refresh_secret": "refresh-only"})
        codec = TokenCodec.from_settings(configured, clock=clock)
        minted = codec.mint("user-1", TokenType.REFRESH, timedelta(minutes=5))
        assert codec.verify(minted.token, TokenType.REFRESH).subject_id == "user-1"

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec(access_secret="")
