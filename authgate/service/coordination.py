from __future__ import annotations

from typing import Optional, Protocol

from authgate.logging import get_logger
from authgate.service.errors import DependencyFailure
from authgate.storage.errors import CacheUnavailable

logger = get_logger(__name__)

LOGIN_MAX_ATTEMPTS = 3
LOGIN_LOCKOUT_SECONDS = 300
MFA_MAX_ATTEMPTS = 3
MFA_CODE_TTL_SECONDS = 120
REVOCATION_GRACE_SECONDS = 60


class CoordinationStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int: ...

    async def delete_if_equals(self, key: str, expected: str) -> bool: ...


def login_attempts_key(username: str) -> str:
    return f"auth:login:{username.lower()}:attempts"


def mfa_challenge_key(user_id: str) -> str:
    return f"mfa:login:{user_id}"


def mfa_attempts_key(user_id: str) -> str:
    return f"mfa:login:{user_id}:attempts"


def revocation_key(token_hash: str) -> str:
    return f"blacklist:jwt:{token_hash}"


def request_limit_key(client_id: str) -> str:
    return f"ratelimit:auth:{client_id}"


class RateLimitCoordinator:
    """Attempt counters, MFA challenges and the revocation registry.

    All state lives in the shared coordination store so every auth node sees
    the same counts. Reads and increments that gate a decision raise
    :class:`DependencyFailure` when the store is unavailable; the ``reset_*``
    and ``clear_*`` helpers used on success paths log and continue.
    """

    def __init__(self, cache: CoordinationStore) -> None:
        self.cache = cache

    async def _guard(self, operation: str, awaitable):
        try:
            return await awaitable
        except CacheUnavailable as exc:
            raise DependencyFailure(
                f"coordination store unavailable during {operation}",
                detail={"operation": exc.operation},
            ) from exc

    async def _best_effort_delete(self, event: str, key: str, **context) -> None:
        try:
            await self.cache.delete(key)
        except CacheUnavailable as exc:
            logger.warning(event, operation=exc.operation, **context)

    @staticmethod
    def _as_count(raw: Optional[str]) -> int:
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    # login attempts

    async def login_attempts(self, username: str) -> int:
        raw = await self._guard("login_attempts", self.cache.get(login_attempts_key(username)))
        return self._as_count(raw)

    async def register_login_failure(self, username: str) -> int:
        return await self._guard(
            "register_login_failure",
            self.cache.incr_with_expiry(login_attempts_key(username), LOGIN_LOCKOUT_SECONDS),
        )

    async def reset_login_attempts(self, username: str) -> None:
        await self._best_effort_delete(
            "login_attempts_reset_failed", login_attempts_key(username)
        )

    # MFA challenge and attempts

    async def mfa_attempts(self, user_id: str) -> int:
        raw = await self._guard("mfa_attempts", self.cache.get(mfa_attempts_key(user_id)))
        return self._as_count(raw)

    async def register_mfa_failure(self, user_id: str) -> int:
        return await self._guard(
            "register_mfa_failure",
            self.cache.incr_with_expiry(mfa_attempts_key(user_id), MFA_CODE_TTL_SECONDS),
        )

    async def reset_mfa_attempts(self, user_id: str) -> None:
        await self._best_effort_delete(
            "mfa_attempts_reset_failed", mfa_attempts_key(user_id), user_id=user_id
        )

    async def put_challenge(self, user_id: str, code: str) -> None:
        await self._guard(
            "put_challenge",
            self.cache.set(mfa_challenge_key(user_id), code, MFA_CODE_TTL_SECONDS),
        )

    async def get_challenge(self, user_id: str) -> Optional[str]:
        return await self._guard("get_challenge", self.cache.get(mfa_challenge_key(user_id)))

    async def consume_challenge(self, user_id: str, code: str) -> bool:
        """Delete the challenge only if it still holds ``code``.

        Returns False when a concurrent request already consumed or replaced it.
        """
        return await self._guard(
            "consume_challenge",
            self.cache.delete_if_equals(mfa_challenge_key(user_id), code),
        )

    async def discard_challenge(self, user_id: str) -> None:
        await self._best_effort_delete(
            "mfa_challenge_discard_failed", mfa_challenge_key(user_id), user_id=user_id
        )

    # revocation registry

    async def revoke(self, token_hash: str, ttl_seconds: int) -> None:
        await self._guard("revoke", self.cache.set(revocation_key(token_hash), "1", ttl_seconds))

    async def is_revoked(self, token_hash: str) -> bool:
        return await self._guard("is_revoked", self.cache.exists(revocation_key(token_hash)))

    # per-client request limiter

    async def hit_request_limit(
        self, client_id: str, limit: int, window_seconds: int
    ) -> tuple[bool, int]:
        count = await self._guard(
            "hit_request_limit",
            self.cache.incr_with_expiry(request_limit_key(client_id), window_seconds),
        )
        return count <= limit, max(0, limit - count)

    async def clear_request_limit(self, client_id: Optional[str]) -> None:
        if not client_id:
            return
        await self._best_effort_delete(
            "request_limit_clear_failed", request_limit_key(client_id)
        )
