from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from authgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


class TokenIssuer:
    """HS256 session tokens signed with the process-wide JWT secret."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int = 60,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.ttl_seconds = ttl_minutes * 60
        self._clock = clock or time.time

    def now(self) -> float:
        return self._clock()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def mint(self, user_id: str, username: str, phone: str) -> IssuedToken:
        issued_at = int(self.now())
        expires = issued_at + self.ttl_seconds
        token = self.encode(
            {
                "sub": user_id,
                "username": username,
                "phone": phone,
                "iat": issued_at,
                "exp": expires,
                "iss": self.issuer,
                "aud": self.audience,
                "jti": str(uuid.uuid4()),
            }
        )
        return IssuedToken(
            token=token, expires_at=datetime.fromtimestamp(expires, tz=timezone.utc)
        )

    def decode(self, token: str, *, verify_exp: bool = True) -> Optional[dict[str, Any]]:
        """Return the verified claims, or None when the token is not ours.

        Signature, algorithm, issuer and audience are always checked. With
        ``verify_exp`` the token must also carry an ``exp`` in the future.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Pin the algorithm so a forged "none" or RS256 header is rejected
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Header values arrive latin-1 decoded, so the segment may hold non-ASCII text
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogatepass")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        if verify_exp:
            exp = payload.get("exp")
            if not isinstance(exp, (int, float)) or isinstance(exp, bool):
                return None
            if exp <= self.now():
                return None
        return payload
