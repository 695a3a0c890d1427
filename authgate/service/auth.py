from __future__ import annotations

import asyncio
import hmac
import re
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Protocol, Union

from authgate.logging import get_logger, username_digest
from authgate.service.coordination import (
    LOGIN_MAX_ATTEMPTS,
    MFA_CODE_TTL_SECONDS,
    MFA_MAX_ATTEMPTS,
    REVOCATION_GRACE_SECONDS,
    RateLimitCoordinator,
)
from authgate.service.crypto import (
    DecryptionError,
    FieldCipher,
    PasswordHasher,
    hash_token_identifier,
)
from authgate.service.errors import (
    AuthRejected,
    ConfidentialityFailure,
    ConflictError,
    DependencyFailure,
    NotFoundError,
    ValidationError,
)
from authgate.service.sms import SmsDeliveryError, SmsService
from authgate.service.tokens import TokenIssuer
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import User

logger = get_logger(__name__)

# ASCII digits only; str.isdigit() would also accept other scripts
_CODE_PATTERN = re.compile(r"[0-9]{3}")


def generate_code() -> str:
    """Uniform random 3-digit one-time code, zero padded ("000"-"999")."""
    return f"{secrets.randbelow(1000):03d}"


class AuthStore(Protocol):
    def create_user(
        self, username: str, password_hash: str, encrypted_phone: str
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> bool: ...


class Outcome(str, Enum):
    CHALLENGE_ISSUED = "challenge_issued"
    REJECTED = "rejected"
    BLOCKED = "blocked"
    RETRY = "retry"
    EXPIRED = "expired"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class UserSummary:
    id: str
    username: str
    phone: str

    def as_dict(self) -> dict[str, str]:
        return {"id": self.id, "username": self.username, "phone": self.phone}


@dataclass(frozen=True)
class ChallengeIssued:
    user: UserSummary
    mfa_required: bool = True
    outcome: Outcome = field(default=Outcome.CHALLENGE_ISSUED, init=False)


@dataclass(frozen=True)
class Rejected:
    # None when the rejection did not consume a counted attempt
    remaining: Optional[int] = None
    outcome: Outcome = field(default=Outcome.REJECTED, init=False)


@dataclass(frozen=True)
class Blocked:
    outcome: Outcome = field(default=Outcome.BLOCKED, init=False)


@dataclass(frozen=True)
class Retry:
    remaining: int
    outcome: Outcome = field(default=Outcome.RETRY, init=False)


@dataclass(frozen=True)
class Expired:
    outcome: Outcome = field(default=Outcome.EXPIRED, init=False)


@dataclass(frozen=True)
class Authenticated:
    token: str
    expires_at: datetime
    user: UserSummary
    outcome: Outcome = field(default=Outcome.AUTHENTICATED, init=False)


LoginResult = Union[ChallengeIssued, Rejected, Blocked]
MfaResult = Union[Authenticated, Retry, Blocked, Expired, Rejected]


@dataclass
class AuthContext:
    user_id: str
    username: str
    phone: str
    token: str
    expires_at: datetime


class AuthService:
    """Password + SMS one-time-code authentication with token revocation."""

    def __init__(
        self,
        store: AuthStore,
        limiter: RateLimitCoordinator,
        tokens: TokenIssuer,
        *,
        hasher: PasswordHasher,
        field_cipher: FieldCipher,
        sms: SmsService,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        self.store: AuthStore = store
        self.limiter = limiter
        self.tokens = tokens
        self.hasher = hasher
        self.field_cipher = field_cipher
        self.sms = sms
        self.code_factory = code_factory
        self.logger = logger

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, password: str, hashed: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, hashed)

    def _decrypt_phone(self, user: User) -> str:
        try:
            return self.field_cipher.decrypt(user.encrypted_phone)
        except DecryptionError as exc:
            self.logger.error("phone_decryption_failed", user_id=user.id)
            raise ConfidentialityFailure(
                "stored phone number could not be decrypted",
                detail={"user_id": user.id},
            ) from exc

    async def register(self, username: str, password: str, phone: str) -> UserSummary:
        password_hash = await self._hash_password(password)
        encrypted_phone = self.field_cipher.encrypt(phone)
        try:
            user = self.store.create_user(username, password_hash, encrypted_phone)
        except ConstraintViolation as exc:
            self.logger.info("register_duplicate_username", user=username_digest(username))
            raise ConflictError("username already exists", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)
        return UserSummary(id=user.id, username=user.username, phone=phone)

    async def _reject_login(self, username: str, reason: str) -> Union[Rejected, Blocked]:
        count = await self.limiter.register_login_failure(username)
        if count >= LOGIN_MAX_ATTEMPTS:
            self.logger.warning(
                "login_locked_out", user=username_digest(username), attempts=count
            )
            return Blocked()
        remaining = max(0, LOGIN_MAX_ATTEMPTS - count)
        self.logger.info(
            "login_rejected",
            user=username_digest(username),
            reason=reason,
            remaining=remaining,
        )
        return Rejected(remaining=remaining)

    @asynccontextmanager
    async def _challenge_scope(self, user_id: str, code: str) -> AsyncIterator[None]:
        """Store a challenge; withdraw it again if the body does not complete."""
        await self.limiter.put_challenge(user_id, code)
        try:
            yield
        except BaseException:
            await self.limiter.discard_challenge(user_id)
            raise

    async def _deliver_code(self, user_id: str, phone: str, code: str) -> None:
        minutes = MFA_CODE_TTL_SECONDS // 60
        text = f"Your verification code is {code}. It expires in {minutes} minutes."
        try:
            await self.sms.send(phone, text)
        except SmsDeliveryError as exc:
            self.logger.error("sms_delivery_failed", user_id=user_id, error=str(exc))
            raise DependencyFailure(
                "sms delivery failed",
                public_message="verification code could not be delivered",
            ) from exc

    async def login(
        self, username: str, password: str, *, client_id: Optional[str] = None
    ) -> LoginResult:
        attempts = await self.limiter.login_attempts(username)
        if attempts >= LOGIN_MAX_ATTEMPTS:
            self.logger.warning(
                "login_blocked", user=username_digest(username), attempts=attempts
            )
            return Blocked()

        user = self.store.get_user_by_username(username)
        if user is None:
            return await self._reject_login(username, "unknown_user")

        phone = self._decrypt_phone(user)
        if not await self._verify_password(password, user.password_hash):
            return await self._reject_login(username, "bad_password")

        await self.limiter.reset_login_attempts(username)

        code = self.code_factory()
        async with self._challenge_scope(user.id, code):
            await self._deliver_code(user.id, phone, code)

        await self.limiter.clear_request_limit(client_id)
        self.logger.info("mfa_challenge_issued", user_id=user.id)
        return ChallengeIssued(
            user=UserSummary(id=user.id, username=user.username, phone=phone)
        )

    async def verify_mfa(
        self, username: str, code: str, *, client_id: Optional[str] = None
    ) -> MfaResult:
        code = (code or "").strip()
        if not _CODE_PATTERN.fullmatch(code):
            raise ValidationError("verification code must be exactly 3 digits")

        user = self.store.get_user_by_username(username)
        if user is None:
            self.logger.info("mfa_unknown_user", user=username_digest(username))
            return Rejected()

        phone = self._decrypt_phone(user)

        attempts = await self.limiter.mfa_attempts(user.id)
        if attempts >= MFA_MAX_ATTEMPTS:
            self.logger.warning("mfa_blocked", user_id=user.id, attempts=attempts)
            return Blocked()

        expected = await self.limiter.get_challenge(user.id)
        if expected is None:
            await self.limiter.reset_mfa_attempts(user.id)
            self.logger.info("mfa_challenge_expired", user_id=user.id)
            return Expired()

        if not hmac.compare_digest(expected.encode("utf-8"), code.encode("utf-8")):
            count = await self.limiter.register_mfa_failure(user.id)
            if count >= MFA_MAX_ATTEMPTS:
                await self.limiter.discard_challenge(user.id)
                await self.limiter.reset_mfa_attempts(user.id)
                self.logger.warning("mfa_locked_out", user_id=user.id, attempts=count)
                return Blocked()
            remaining = max(0, MFA_MAX_ATTEMPTS - count)
            self.logger.info("mfa_code_mismatch", user_id=user.id, remaining=remaining)
            return Retry(remaining=remaining)

        if not await self.limiter.consume_challenge(user.id, code):
            # Another request consumed or replaced this challenge first
            self.logger.info("mfa_challenge_already_consumed", user_id=user.id)
            return Expired()

        await self.limiter.reset_mfa_attempts(user.id)
        await self.limiter.clear_request_limit(client_id)
        issued = self.tokens.mint(user.id, user.username, phone)
        self.logger.info("mfa_verified", user_id=user.id)
        return Authenticated(
            token=issued.token,
            expires_at=issued.expires_at,
            user=UserSummary(id=user.id, username=user.username, phone=phone),
        )

    async def logout(self, token: str) -> int:
        """Revoke ``token`` until its natural expiry; returns the entry TTL."""
        claims = self.tokens.decode(token, verify_exp=False)
        exp = claims.get("exp") if claims else None
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise ValidationError("malformed token")
        ttl = int(exp - self.tokens.now())
        if ttl <= 0:
            ttl = REVOCATION_GRACE_SECONDS
        await self.limiter.revoke(hash_token_identifier(token), ttl)
        self.logger.info("token_revoked", user_id=claims.get("sub"), ttl=ttl)
        return ttl

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not await self._verify_password(old_password, user.password_hash):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise AuthRejected("current password is incorrect")
        new_hash = await self._hash_password(new_password)
        if not self.store.update_password(user_id, new_hash):
            raise NotFoundError("user not found")
        self.logger.info("password_changed", user_id=user_id)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthRejected("missing bearer token")
        claims = self.tokens.decode(token)
        if not claims or not claims.get("sub"):
            raise AuthRejected("invalid or expired token")
        if await self.limiter.is_revoked(hash_token_identifier(token)):
            self.logger.info("revoked_token_presented", user_id=claims.get("sub"))
            raise AuthRejected("token has been revoked")
        return AuthContext(
            user_id=str(claims["sub"]),
            username=str(claims.get("username", "")),
            phone=str(claims.get("phone", "")),
            token=token,
            expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
        )
