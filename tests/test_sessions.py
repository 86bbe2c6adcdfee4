import base64
import json

import pytest

from medgate.service.errors import (
    MalformedTokenError,
    SignatureInvalidError,
    TokenExpiredError,
    TokenRevokedError,
)
from medgate.service.sessions import SessionIssuer, extract_bearer


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _b64_decode(segment: str) -> dict:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(segment + padding))


def _issue(sessions, **overrides):
    fields = {
        "subject_id": "admin-1",
        "kind": "admin",
        "tenant_id": "HOSP0001",
        "email": "admin1@hospital1.org",
        "role": "admin",
    }
    fields.update(overrides)
    return sessions.issue(**fields)


class _UnreachableCache:
    async def denylist_token(self, jti, ttl):
        raise ConnectionError("redis down")

    async def is_token_denylisted(self, jti):
        raise ConnectionError("redis down")


class TestIssueAndDecode:
    def test_roundtrip_preserves_claims(self, sessions, clock):
        issued = _issue(sessions)
        claims = sessions.decode(issued.token)
        assert claims == issued.claims
        assert claims.kind == "admin"
        assert claims.tenant_id == "HOSP0001"
        assert claims.expires_at - claims.issued_at == sessions.settings.session_ttl

    def test_each_token_has_fresh_jti(self, sessions):
        assert _issue(sessions).claims.jti != _issue(sessions).claims.jti

    def test_unknown_kind_rejected(self, sessions):
        with pytest.raises(ValueError):
            _issue(sessions, kind="patient")

    def test_expired_token(self, sessions, clock):
        issued = _issue(sessions)
        clock.advance(days=7)
        with pytest.raises(TokenExpiredError):
            sessions.decode(issued.token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", None])
    def test_malformed(self, sessions, token):
        with pytest.raises(MalformedTokenError):
            sessions.decode(token)

    def test_tampered_payload(self, sessions):
        header, payload, signature = _issue(sessions).token.split(".")
        claims = _b64_decode(payload)
        claims["role"] = "super_admin"
        forged = f"{header}.{_b64(claims)}.{signature}"
        with pytest.raises(SignatureInvalidError):
            sessions.decode(forged)

    def test_alg_none_rejected(self, sessions):
        _, payload, _ = _issue(sessions).token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."
        with pytest.raises(MalformedTokenError):
            sessions.decode(forged)

    def test_foreign_secret_rejected(self, sessions, settings, clock, store):
        other = SessionIssuer(
            settings.model_copy(update={"jwt_secret": "x" * 48}), clock, store=store
        )
        with pytest.raises(SignatureInvalidError):
            sessions.decode(_issue(other).token)

    def test_audience_mismatch(self, sessions, settings, clock, store):
        other = SessionIssuer(
            settings.model_copy(update={"jwt_audience": "someone-else"}), clock, store=store
        )
        with pytest.raises(SignatureInvalidError):
            sessions.decode(_issue(other).token)

    def test_issuer_mismatch(self, sessions, settings, clock, store):
        other = SessionIssuer(
            settings.model_copy(update={"jwt_issuer": "elsewhere"}), clock, store=store
        )
        with pytest.raises(SignatureInvalidError):
            sessions.decode(_issue(other).token)


class TestRevocation:
    async def test_revoked_token_fails_validation(self, sessions):
        issued = _issue(sessions)
        assert await sessions.validate(issued.token) == issued.claims
        await sessions.revoke(issued.claims)
        with pytest.raises(TokenRevokedError):
            await sessions.validate(issued.token)

    async def test_revocation_is_per_token(self, sessions):
        first = _issue(sessions)
        second = _issue(sessions)
        await sessions.revoke(first.claims)
        assert await sessions.validate(second.token) == second.claims

    async def test_denylist_entry_lapses_with_token(self, sessions, store, clock):
        issued = _issue(sessions)
        await sessions.revoke(issued.claims)
        clock.advance(days=7, seconds=1)
        assert store.is_token_denylisted(issued.claims.jti, clock.now()) is False

    async def test_unreachable_cache_falls_back_and_fails_closed(
        self, settings, clock, store
    ):
        sessions = SessionIssuer(settings, clock, store=store, cache=_UnreachableCache())
        issued = _issue(sessions)
        # an unknown revocation state is treated as revoked
        with pytest.raises(TokenRevokedError):
            await sessions.validate(issued.token)
        await sessions.revoke(issued.claims)
        assert store.is_token_denylisted(issued.claims.jti, clock.now())

    async def test_denylist_disabled(self, settings, clock, store):
        sessions = SessionIssuer(
            settings.model_copy(update={"token_denylist_enabled": False}), clock, store=store
        )
        issued = _issue(sessions)
        await sessions.revoke(issued.claims)
        assert await sessions.validate(issued.token) == issued.claims


@pytest.mark.parametrize(
    "header,expected",
    [
        ("Bearer abc.def.ghi", "abc.def.ghi"),
        ("bearer abc", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_bearer(header, expected):
    assert extract_bearer(header) == expected
