"""Unit tests for the token codec."""

from datetime import timedelta

import jwt
import pytest

from sessiongate.service.errors import (
    ExpiredTokenError,
    InvalidSignatureError,
    MalformedTokenError,
    MissingCredentialError,
    WrongTokenClassError,
)
from sessiongate.service.tokens import ALGORITHM, TokenCodec
from sessiongate.storage.models import TokenClass


@pytest.fixture
def access_secret(settings):
    return settings.jwt_access_secret


@pytest.fixture
def refresh_secret(settings):
    return settings.jwt_refresh_secret


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


@pytest.fixture
def base_claims():
    return {"sub": "42", "role": "user", "sid": "abc123", "permissions": []}


class TestIssue:
    def test_issue_embeds_standard_claims(self, codec, base_claims, access_secret):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=15))
        claims = jwt.decode(token, access_secret, algorithms=[ALGORITHM], issuer="sessiongate")

        assert claims["token_type"] == "access"
        assert claims["sub"] == "42"
        assert claims["sid"] == "abc123"
        assert claims["iss"] == "sessiongate"
        assert claims["exp"] - claims["iat"] == 15 * 60
        assert len(claims["jti"]) == 32

    def test_each_token_gets_a_unique_jti(self, codec, base_claims):
        first = codec.decode_unsafe(codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=1)))
        second = codec.decode_unsafe(codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=1)))

        assert first["jti"] != second["jti"]

    def test_refresh_tokens_use_the_refresh_secret(
        self, codec, base_claims, access_secret, refresh_secret
    ):
        token = codec.issue(base_claims, TokenClass.REFRESH, timedelta(days=7))

        claims = jwt.decode(token, refresh_secret, algorithms=[ALGORITHM], issuer="sessiongate")
        assert claims["token_type"] == "refresh"
        with pytest.raises(jwt.InvalidSignatureError):
            jwt.decode(token, access_secret, algorithms=[ALGORITHM])

    def test_numeric_subject_is_stringified(self, codec, base_claims):
        base_claims["sub"] = 42
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=1))

        assert codec.verify(token, TokenClass.ACCESS)["sub"] == "42"


class TestVerify:
    def test_round_trip(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=5))

        claims = codec.verify(token, TokenClass.ACCESS)

        assert claims["sid"] == "abc123"

    def test_missing_token(self, codec):
        with pytest.raises(MissingCredentialError):
            codec.verify("", TokenClass.ACCESS)
        with pytest.raises(MissingCredentialError):
            codec.verify(None, TokenClass.ACCESS)

    def test_garbage_is_malformed(self, codec):
        with pytest.raises(MalformedTokenError):
            codec.verify("not-a-jwt", TokenClass.ACCESS)

    def test_refresh_token_rejected_where_access_expected(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.REFRESH, timedelta(days=1))

        with pytest.raises(WrongTokenClassError):
            codec.verify(token, TokenClass.ACCESS)

    def test_access_token_rejected_where_refresh_expected(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=5))

        with pytest.raises(WrongTokenClassError):
            codec.verify(token, TokenClass.REFRESH)

    def test_relabelled_refresh_token_fails_signature(self, codec, base_claims, refresh_secret):
        # A refresh-secret signature cannot pass as an access token
        payload = codec.decode_unsafe(
            codec.issue(base_claims, TokenClass.REFRESH, timedelta(days=1))
        )
        payload["token_type"] = "access"
        forged = jwt.encode(payload, refresh_secret, algorithm=ALGORITHM)

        with pytest.raises(InvalidSignatureError):
            codec.verify(forged, TokenClass.ACCESS)

    def test_tampered_payload_fails_signature(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=5))
        header, payload, signature = token.split(".")
        forged_payload = jwt.encode(
            {**codec.decode_unsafe(token), "role": "admin"}, "attacker", algorithm=ALGORITHM
        ).split(".")[1]

        with pytest.raises(InvalidSignatureError):
            codec.verify(f"{header}.{forged_payload}.{signature}", TokenClass.ACCESS)

    def test_expired_token(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(seconds=-30))

        with pytest.raises(ExpiredTokenError):
            codec.verify(token, TokenClass.ACCESS)

    def test_allow_expired_still_checks_signature(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(seconds=-30))

        assert codec.verify(token, TokenClass.ACCESS, allow_expired=True)["sid"] == "abc123"

        forged = jwt.encode(codec.decode_unsafe(token), "attacker", algorithm=ALGORITHM)
        with pytest.raises(InvalidSignatureError):
            codec.verify(forged, TokenClass.ACCESS, allow_expired=True)

    def test_foreign_issuer_rejected(self, codec, base_claims, access_secret):
        payload = codec.decode_unsafe(
            codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=5))
        )
        payload["iss"] = "someone-else"
        token = jwt.encode(payload, access_secret, algorithm=ALGORITHM)

        with pytest.raises(MalformedTokenError):
            codec.verify(token, TokenClass.ACCESS)

    def test_missing_session_claim_rejected(self, codec):
        token = codec.issue({"sub": "42"}, TokenClass.ACCESS, timedelta(minutes=5))

        with pytest.raises(MalformedTokenError):
            codec.verify(token, TokenClass.ACCESS)


class TestDecodeUnsafe:
    def test_reads_claims_without_a_key(self, codec, base_claims):
        token = jwt.encode(
            {**base_claims, "token_type": "access"}, "whatever", algorithm=ALGORITHM
        )

        assert codec.decode_unsafe(token)["sid"] == "abc123"

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b.c"])
    def test_unparseable_returns_none(self, codec, token):
        assert codec.decode_unsafe(token) is None


class TestRemainingTtl:
    def test_counts_down_to_expiry(self, codec, base_claims):
        token = codec.issue(base_claims, TokenClass.ACCESS, timedelta(minutes=10))

        remaining = codec.remaining_ttl(codec.decode_unsafe(token))

        assert 590 <= remaining <= 600

    def test_expired_is_zero(self, codec):
        assert codec.remaining_ttl({"exp": 1}) == 0
        assert codec.remaining_ttl({}) == 0
        assert codec.remaining_ttl({"exp": "soon"}) == 0
