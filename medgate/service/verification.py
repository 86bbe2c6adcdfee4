from __future__ import annotations

import secrets
from typing import Any, Callable, Dict, Optional

from medgate.config import Settings
from medgate.logging import get_logger, redact_email
from medgate.service.clock import Clock
from medgate.service.errors import (
    AlreadyVerifiedError,
    InvalidVerificationCodeError,
    NotFoundError,
    TooManyAttemptsError,
    VerificationExpiredError,
    VerificationUsedError,
)
from medgate.storage.memory import MemoryStore
from medgate.storage.models import VerificationRecord

logger = get_logger(__name__)


def generate_code() -> str:
    """Six-digit code drawn uniformly from 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


class VerificationLedger:
    """Issues and redeems short-lived, attempt-limited email verification codes.

    Redemption precedence:

    1. a pending record that is already blocked (or out of attempts) rejects
       every code, including the correct one, with ``TooManyAttemptsError``;
    2. a matching, unused, unexpired code is consumed;
    3. otherwise the latest record for the email absorbs one failed attempt and
       the failure is reported as used, expired or invalid, in that order.
    """

    def __init__(self, store: MemoryStore, clock: Clock, settings: Settings) -> None:
        self.store = store
        self.clock = clock
        self.code_ttl = settings.verification_code_ttl
        self.max_attempts = settings.verification_max_attempts
        self.retention = settings.verification_retention

    def issue(
        self,
        email: str,
        kind: str,
        subject_refs: Optional[Dict[str, Any]] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> VerificationRecord:
        now = self.clock.now()
        record = self.store.create_verification(
            email=email,
            token=generate_code(),
            kind=kind,
            expires_at=now + self.code_ttl,
            created_at=now,
            max_attempts=self.max_attempts,
            metadata=subject_refs,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "verification_issued",
            record_id=record.id,
            kind=kind,
            email=email,
            expires_at=record.expires_at.isoformat(),
        )
        return record

    def redeem(self, email: str, token: str, kind: str) -> VerificationRecord:
        now = self.clock.now()

        pending = self.store.latest_verification(email, kind, pending_only=True)
        if pending and (pending.is_blocked or pending.attempts >= pending.max_attempts):
            self.store.modify_verification(pending.id, self._block_at(now))
            logger.warning("verification_blocked", record_id=pending.id, email=email)
            raise TooManyAttemptsError(
                "too many verification attempts; request a new code",
                detail={"email": redact_email(email)},
            )

        match = self.store.find_verification(email, kind, token=token, now=now)
        if match:

            def _consume(record: VerificationRecord) -> None:
                if record.is_used:
                    raise VerificationUsedError("verification code already used")
                record.is_used = True
                record.used_at = now

            redeemed = self.store.modify_verification(match.id, _consume)
            if redeemed is None:
                raise InvalidVerificationCodeError("invalid verification code")
            logger.info("verification_redeemed", record_id=redeemed.id, kind=kind)
            return redeemed

        latest = self.store.latest_verification(email, kind)
        if latest is None:
            raise InvalidVerificationCodeError("invalid verification code")

        def _count_failure(record: VerificationRecord) -> None:
            record.attempts += 1
            if record.attempts >= record.max_attempts and not record.is_blocked:
                record.is_blocked = True
                record.blocked_at = now

        updated = self.store.modify_verification(latest.id, _count_failure) or latest
        logger.warning(
            "verification_failed",
            record_id=updated.id,
            attempts=updated.attempts,
            max_attempts=updated.max_attempts,
        )
        if updated.is_used:
            raise VerificationUsedError("verification code already used")
        if updated.expires_at <= now:
            raise VerificationExpiredError("verification code expired")
        raise InvalidVerificationCodeError(
            "invalid verification code",
            detail={"attempts_remaining": max(0, updated.max_attempts - updated.attempts)},
        )

    def release(self, record_id: str) -> None:
        """Undo a redemption so the same code can be redeemed again."""

        def _unuse(record: VerificationRecord) -> None:
            record.is_used = False
            record.used_at = None

        self.store.modify_verification(record_id, _unuse)

    def discard(self, record_id: str) -> None:
        self.store.delete_verification(record_id)

    def reissue(
        self,
        email: str,
        kind: str,
        *,
        is_subject_verified: Callable[[VerificationRecord], bool],
    ) -> VerificationRecord:
        """Refresh the pending record's code and expiry, resetting its attempts."""
        pending = self.store.latest_verification(email, kind, pending_only=True)
        if pending is None:
            raise NotFoundError("no pending verification for this email")
        if is_subject_verified(pending):
            raise AlreadyVerifiedError("account already verified")
        now = self.clock.now()
        code = generate_code()

        def _refresh(record: VerificationRecord) -> None:
            record.token = code
            record.expires_at = now + self.code_ttl
            record.attempts = 0
            record.is_blocked = False
            record.blocked_at = None

        refreshed = self.store.modify_verification(pending.id, _refresh)
        if refreshed is None:
            raise NotFoundError("no pending verification for this email")
        logger.info("verification_reissued", record_id=refreshed.id, kind=kind)
        return refreshed

    def purge_expired(self) -> int:
        cutoff = self.clock.now() - self.retention
        removed = self.store.purge_verifications(cutoff)
        if removed:
            logger.info("verification_records_purged", count=removed)
        return removed

    @staticmethod
    def _block_at(now) -> Callable[[VerificationRecord], None]:
        def _block(record: VerificationRecord) -> None:
            if not record.is_blocked:
                record.is_blocked = True
                record.blocked_at = now

        return _block
