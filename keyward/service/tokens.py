from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from keyward.logging import get_logger
from keyward.service.errors import InvalidCredentialsError, UnauthorizedError
from keyward.storage.models import AdminScale, TokenClaims

logger = get_logger(__name__)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenSigner:
    """HS256 JWT signing and verification for access tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def _sign_input(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(
        self,
        subject: str,
        ttl: timedelta,
        *,
        admin_scale: Optional[AdminScale] = None,
    ) -> str:
        now = int(time.time())
        payload: dict[str, Any] = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": subject,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
        }
        if admin_scale is not None:
            payload["admin"] = admin_scale.value
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign_input(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of a valid token or raise UnauthorizedError."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise UnauthorizedError("malformed token")

        # Reject anything but HS256 so a forged "none" header cannot skip the MAC
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise UnauthorizedError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise UnauthorizedError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign_input(f"{header_b64}.{payload_b64}"), sig_b64):
            raise UnauthorizedError("bad token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise UnauthorizedError("malformed token")
        if not isinstance(payload, dict):
            raise UnauthorizedError("malformed token")

        if payload.get("iss") != self.issuer:
            raise UnauthorizedError("wrong token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise UnauthorizedError("wrong token audience")

        subject = payload.get("sub")
        if not subject or not isinstance(subject, str):
            raise UnauthorizedError("token has no subject")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise UnauthorizedError("token has no expiry")
        if exp_ts <= time.time() - self.leeway_seconds:
            raise UnauthorizedError("token expired")

        admin_raw = payload.get("admin")
        try:
            admin_scale = AdminScale(admin_raw) if admin_raw else None
        except ValueError:
            raise UnauthorizedError("unknown admin scale")
        return TokenClaims(
            subject=subject,
            token_id=str(payload.get("jti", "")),
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            admin_scale=admin_scale,
        )


class PasswordService:
    """argon2id password hashing."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 64 * 1024) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> None:
        try:
            self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            raise InvalidCredentialsError()
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            raise InvalidCredentialsError()
