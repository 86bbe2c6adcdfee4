from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from medgate.config import Settings
from medgate.logging import get_logger
from medgate.service.clock import Clock
from medgate.service.errors import (
    MalformedTokenError,
    SignatureInvalidError,
    TokenExpiredError,
    TokenRevokedError,
)
from medgate.storage.memory import MemoryStore
from medgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PRINCIPAL_KINDS = ("admin", "staff")


@dataclass(frozen=True)
class SessionClaims:
    subject_id: str
    kind: str
    tenant_id: str
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime
    jti: str

    def to_payload(self, issuer: str, audience: str) -> dict[str, Any]:
        return {
            "iss": issuer,
            "aud": audience,
            "sub": self.subject_id,
            "kind": self.kind,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "role": self.role,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "jti": self.jti,
        }


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: SessionClaims


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class SessionIssuer:
    """Mints and validates HS256 session tokens for admin and staff principals.

    Token claims are a cache of the principal's state at login; callers that
    need the live record must reload it after ``validate``.
    """

    def __init__(
        self,
        settings: Settings,
        clock: Clock,
        *,
        store: MemoryStore,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.store = store
        self.cache = cache

    def issue(
        self, *, subject_id: str, kind: str, tenant_id: str, email: str, role: str
    ) -> IssuedToken:
        if kind not in PRINCIPAL_KINDS:
            raise ValueError(f"unknown principal kind: {kind}")
        now = self.clock.now().replace(microsecond=0)
        claims = SessionClaims(
            subject_id=subject_id,
            kind=kind,
            tenant_id=tenant_id,
            email=email,
            role=role,
            issued_at=now,
            expires_at=now + self.settings.session_ttl,
            jti=str(uuid.uuid4()),
        )
        token = self._encode_jwt(
            claims.to_payload(self.settings.jwt_issuer, self.settings.jwt_audience)
        )
        return IssuedToken(token=token, claims=claims)

    def decode(self, token: str) -> SessionClaims:
        """Check structure, algorithm, signature, issuer, audience and expiry."""
        payload = self._decode_jwt(token)
        try:
            claims = SessionClaims(
                subject_id=str(payload["sub"]),
                kind=str(payload["kind"]),
                tenant_id=str(payload["tenant_id"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                issued_at=datetime.fromtimestamp(float(payload["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
                jti=str(payload["jti"]),
            )
        except (KeyError, TypeError, ValueError, OverflowError) as exc:
            raise MalformedTokenError("malformed session token") from exc
        if claims.kind not in PRINCIPAL_KINDS:
            raise MalformedTokenError("malformed session token")
        if claims.expires_at <= self.clock.now():
            raise TokenExpiredError("session token expired")
        return claims

    async def validate(self, token: str) -> SessionClaims:
        claims = self.decode(token)
        if await self.is_revoked(claims.jti):
            raise TokenRevokedError("session token revoked")
        return claims

    async def revoke(self, claims: SessionClaims) -> None:
        """Deny-list the token id until the token would have expired anyway."""
        if not self.settings.token_denylist_enabled:
            return
        now = self.clock.now()
        if claims.expires_at <= now:
            return
        if self.cache:
            try:
                await self.cache.denylist_token(
                    claims.jti, RedisCache.ttl_seconds(claims.expires_at, now)
                )
                return
            except Exception as exc:
                logger.warning("cache_denylist_failed", jti=claims.jti, error=str(exc))
        self.store.denylist_token(claims.jti, claims.expires_at)

    async def is_revoked(self, jti: str) -> bool:
        if not self.settings.token_denylist_enabled:
            return False
        if self.store.is_token_denylisted(jti, self.clock.now()):
            return True
        if self.cache:
            try:
                return await self.cache.is_token_denylisted(jti)
            except Exception as exc:
                # an unreachable deny-list must not resurrect a logged-out token
                logger.warning(
                    "check_denylist_failed_defaulting_to_revoked", jti=jti, error=str(exc)
                )
                return True
        return False

    def purge_expired(self) -> int:
        """Drop fallback deny-list entries for tokens that have expired."""
        removed = self.store.purge_denylist(self.clock.now())
        if removed:
            logger.info("denylist_entries_purged", count=removed)
        return removed

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise MalformedTokenError("malformed session token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise MalformedTokenError("malformed session token") from exc

        # pin the algorithm before trusting anything else in the token
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise MalformedTokenError("malformed session token") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("unsupported session token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise SignatureInvalidError("session token signature invalid")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise MalformedTokenError("malformed session token") from exc
        if not isinstance(payload, dict):
            raise MalformedTokenError("malformed session token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise SignatureInvalidError("session token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise SignatureInvalidError("session token audience mismatch")
        return payload
