from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Sequence

from idwarden.config import Settings
from idwarden.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionClaims:
    """Decoded access token. ``roles`` is the snapshot taken at mint time."""

    subject: str
    username: str
    roles: tuple = field(default_factory=tuple)
    email: Optional[str] = None
    phone: Optional[str] = None
    jti: Optional[str] = None
    issued_at: Optional[int] = None
    expires_at: Optional[int] = None


class SessionTokenCodec:
    """HS256 signed access tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self.ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def mint(
        self,
        *,
        subject: str,
        username: str,
        roles: Sequence[str],
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> str:
        now = int(time.time())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "username": username,
            "email": email,
            "phone": phone,
            "roles": sorted(set(roles)),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(self.ttl.total_seconds()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_payload(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("session_token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "session_token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("session_token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        if payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def decode(self, token: Optional[str]) -> Optional[SessionClaims]:
        """Return the claims of a valid token, or None for anything else."""
        if not token:
            return None
        payload = self._decode_payload(token)
        if payload is None or not payload.get("sub"):
            return None
        roles = payload.get("roles") or []
        if not isinstance(roles, list):
            return None
        return SessionClaims(
            subject=str(payload["sub"]),
            username=str(payload.get("username") or ""),
            roles=tuple(str(role) for role in roles),
            email=payload.get("email"),
            phone=payload.get("phone"),
            jti=payload.get("jti"),
            issued_at=payload.get("iat"),
            expires_at=payload.get("exp"),
        )
