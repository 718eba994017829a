from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from idwarden.logging import get_logger
from idwarden.service.audit import AuditEmitter, AuditEvent
from idwarden.service.errors import ValidationError
from idwarden.service.hashing import SecretHasher
from idwarden.service.notify import NotificationDispatcher
from idwarden.service.rate_limit import RateLimiter, source_key, target_key
from idwarden.service.targets import guess_target
from idwarden.storage.models import (
    AuditEventType,
    Challenge,
    ChallengePurpose,
    RequestMeta,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


class ChallengeStore(Protocol):
    def create_challenge(self, challenge: Challenge) -> Challenge:
        ...

    def get_latest_challenge(
        self, target: str, purpose: ChallengePurpose, now: Optional[datetime] = None
    ) -> Optional[Challenge]:
        ...

    def increment_challenge_attempts(self, challenge_id: str) -> Optional[int]:
        ...

    def mark_challenge_used(self, challenge_id: str) -> bool:
        ...

    def delete_expired_challenges(self, now: Optional[datetime] = None) -> int:
        ...


@dataclass
class ChallengeReceipt:
    target: str
    purpose: ChallengePurpose
    expires_at: datetime
    retry_after: int


class ChallengeService:
    """One-time verification codes bound to a target and a purpose.

    A challenge moves Pending -> Used on a matching code, or Pending ->
    Exhausted after ``max_attempts`` mismatches; expiry ends it either way.
    """

    def __init__(
        self,
        store: ChallengeStore,
        limiter: RateLimiter,
        dispatcher: NotificationDispatcher,
        hasher: SecretHasher,
        audit: AuditEmitter,
        *,
        ttl: timedelta = timedelta(minutes=5),
        max_attempts: int = 3,
        code_length: int = 6,
        rate_window_seconds: int = 60,
        default_country_code: str = "86",
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.hasher = hasher
        self.audit = audit
        self.ttl = ttl
        self.max_attempts = max_attempts
        self.code_length = code_length
        self.rate_window_seconds = rate_window_seconds
        self.default_country_code = default_country_code

    def _normalize(self, raw_target: str) -> str:
        return guess_target(raw_target, self.default_country_code)

    async def send(
        self,
        raw_target: str,
        purpose: ChallengePurpose,
        meta: Optional[RequestMeta] = None,
    ) -> ChallengeReceipt:
        meta = meta or RequestMeta()
        purpose = ChallengePurpose(purpose)
        target = self._normalize(raw_target)
        keys = [target_key(target)]
        if meta.ip_address:
            keys.append(source_key(meta.ip_address))
        claimed = await self.limiter.acquire(keys, self.rate_window_seconds)

        try:
            code = self.hasher.generate_numeric_code(self.code_length)
            now = utcnow()
            challenge = Challenge(
                id=new_id(),
                target=target,
                purpose=purpose,
                code_hash=self.hasher.hash_code(code),
                expires_at=now + self.ttl,
                attempts=0,
                max_attempts=self.max_attempts,
                ip_address=meta.ip_address,
                created_at=now,
            )
            self.store.create_challenge(challenge)
            await self.dispatcher.deliver(target, code, purpose)
        except Exception as exc:
            # give the caller their window back; nothing reached them
            try:
                await self.limiter.release(claimed)
            except Exception as release_exc:
                logger.warning("challenge_window_release_failed", error=str(release_exc))
            logger.error("challenge_send_failed", purpose=purpose.value, error=str(exc))
            self.audit.record(
                AuditEvent(
                    AuditEventType.VERIFICATION_CODE_SENT,
                    success=False,
                    target=target,
                    meta=meta,
                    metadata={"purpose": purpose.value},
                    error_message=str(exc),
                )
            )
            raise

        self.audit.record(
            AuditEvent(
                AuditEventType.VERIFICATION_CODE_SENT,
                target=target,
                meta=meta,
                metadata={"purpose": purpose.value, "challenge_id": challenge.id},
            )
        )
        return ChallengeReceipt(
            target=target,
            purpose=purpose,
            expires_at=challenge.expires_at,
            retry_after=self.rate_window_seconds,
        )

    def _fail(
        self,
        message: str,
        *,
        target: str,
        purpose: ChallengePurpose,
        meta: RequestMeta,
        attempts: Optional[int] = None,
    ) -> ValidationError:
        metadata = {"purpose": purpose.value}
        if attempts is not None:
            metadata["attempts"] = attempts
        self.audit.record(
            AuditEvent(
                AuditEventType.VERIFICATION_CODE_FAILED,
                success=False,
                target=target,
                meta=meta,
                metadata=metadata,
                error_message=message,
            )
        )
        return ValidationError(message)

    async def verify(
        self,
        raw_target: str,
        code: str,
        purpose: ChallengePurpose,
        meta: Optional[RequestMeta] = None,
    ) -> bool:
        meta = meta or RequestMeta()
        purpose = ChallengePurpose(purpose)
        target = self._normalize(raw_target)
        challenge = self.store.get_latest_challenge(target, purpose, utcnow())
        if challenge is None:
            raise self._fail(
                "invalid or expired verification code",
                target=target,
                purpose=purpose,
                meta=meta,
            )
        if challenge.exhausted:
            raise self._fail(
                "too many failed attempts",
                target=target,
                purpose=purpose,
                meta=meta,
                attempts=challenge.attempts,
            )

        attempts = self.store.increment_challenge_attempts(challenge.id)
        if attempts is None:
            # a concurrent verify consumed the last attempt or the challenge
            raise self._fail(
                "too many failed attempts",
                target=target,
                purpose=purpose,
                meta=meta,
            )

        if not self.hasher.verify_code(challenge.code_hash, (code or "").strip()):
            raise self._fail(
                "invalid or expired verification code",
                target=target,
                purpose=purpose,
                meta=meta,
                attempts=attempts,
            )

        if not self.store.mark_challenge_used(challenge.id):
            raise self._fail(
                "invalid or expired verification code",
                target=target,
                purpose=purpose,
                meta=meta,
                attempts=attempts,
            )

        self.audit.record(
            AuditEvent(
                AuditEventType.VERIFICATION_CODE_SUCCESS,
                target=target,
                meta=meta,
                metadata={"purpose": purpose.value, "attempts": attempts},
            )
        )
        return True

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_challenges(utcnow())
        if removed:
            logger.info("challenges_swept", count=removed)
        return removed
