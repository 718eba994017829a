from __future__ import annotations

import hashlib
import hmac
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from idwarden.config import Settings
from idwarden.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """Hashing for every secret the subsystem stores.

    Passwords and verification codes are argon2id hashed with separate cost
    profiles. Refresh secrets are high-entropy already, so they get a keyed
    SHA-256 digest that can be looked up by equality.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._code_hasher = PasswordHasher(
            time_cost=settings.code_hash_time_cost,
            memory_cost=settings.code_hash_memory_cost,
            parallelism=settings.code_hash_parallelism,
            type=Type.ID,
        )
        self._digest_key = settings.refresh_digest_key.encode()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def hash_code(self, code: str) -> str:
        return self._code_hasher.hash(code)

    def verify_code(self, stored_hash: str, code: str) -> bool:
        try:
            return self._code_hasher.verify(stored_hash, code)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("code_hash_invalid")
            return False

    def digest_refresh_secret(self, secret: str) -> str:
        return hmac.new(self._digest_key, secret.encode(), hashlib.sha256).hexdigest()

    @staticmethod
    def generate_refresh_secret() -> str:
        return secrets.token_urlsafe(48)

    @staticmethod
    def generate_numeric_code(length: int) -> str:
        return str(secrets.randbelow(10**length)).zfill(length)
