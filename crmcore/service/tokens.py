"""Signed, typed, time-bound tokens.

Tokens are compact HS256 JWTs. The codec is pure: given the same key and
clock it always produces and accepts the same tokens, and it never touches
storage. Revocation is the session manager's job.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from crmcore.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


class TokenError(Exception):
    """Base class for codec failures; callers collapse these into a 401."""


class InvalidSignature(TokenError):
    """Malformed token, foreign key, wrong algorithm, issuer or audience."""


class TokenExpired(TokenError):
    pass


class WrongTokenType(TokenError):
    def __init__(self, expected: TokenType, actual: Optional[str]) -> None:
        super().__init__(f"expected {expected.value} token, got {actual}")
        self.expected = expected
        self.actual = actual


@dataclass(frozen=True)
class TokenClaims:
    type: TokenType
    sub: str
    jti: str
    org_id: Optional[str] = None
    role: Optional[str] = None
    email: Optional[str] = None
    token_family: Optional[str] = None
    # Fingerprint of the password hash a reset token was issued against
    pwd: Optional[str] = None
    iat: Optional[int] = None
    exp: Optional[int] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "sub": self.sub,
            "jti": self.jti,
            "org_id": self.org_id,
            "role": self.role,
            "email": self.email,
            "iat": self.iat,
            "exp": self.exp,
        }
        if self.token_family is not None:
            payload["token_family"] = self.token_family
        if self.pwd is not None:
            payload["pwd"] = self.pwd
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenClaims":
        return cls(
            type=TokenType(payload["type"]),
            sub=str(payload["sub"]),
            jti=str(payload["jti"]),
            org_id=payload.get("org_id"),
            role=payload.get("role"),
            email=payload.get("email"),
            token_family=payload.get("token_family"),
            pwd=payload.get("pwd"),
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Issue and verify HS256 tokens carrying :class:`TokenClaims`."""

    _REQUIRED_CLAIMS = ("type", "sub", "jti", "iat", "exp")

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock: Optional[Clock] = None,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.clock: Clock = clock or _utcnow
        self.leeway = leeway

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, claims: TokenClaims, ttl: timedelta) -> str:
        now = self.clock()
        stamped = replace(
            claims,
            iat=int(now.timestamp()),
            exp=int((now + ttl).timestamp()),
        )
        payload = stamped.to_payload()
        payload["iss"] = self.issuer
        payload["aud"] = self.audience
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, expected_type: TokenType) -> TokenClaims:
        """Return the claims of ``token`` or raise a :class:`TokenError`.

        Checks run in order: structure and signature, issuer and audience,
        expiry, then type. A tampered token therefore always reports
        ``InvalidSignature`` even when it is also expired.
        """
        if not isinstance(token, str):
            raise InvalidSignature("token must be a string")
        # Compact tokens are base64url only; anything else cannot be ours
        if not token.isascii():
            raise InvalidSignature("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidSignature("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidSignature("undecodable header")
        # Reject alg=none and friends before looking at the signature
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidSignature("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidSignature("undecodable payload")
        if not isinstance(payload, dict):
            raise InvalidSignature("payload is not an object")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidSignature("issuer or audience mismatch")
        if any(payload.get(name) is None for name in self._REQUIRED_CLAIMS):
            raise InvalidSignature("missing required claims")

        try:
            exp_ts = float(payload["exp"])
        except (TypeError, ValueError):
            raise InvalidSignature("non-numeric exp")
        now_ts = self.clock().timestamp()
        if exp_ts <= now_ts - self.leeway.total_seconds():
            raise TokenExpired("token expired")

        if payload.get("type") != expected_type.value:
            raise WrongTokenType(expected_type, payload.get("type"))

        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            raise InvalidSignature("malformed claims")
