"""JWT issuing, validation and revocation."""

from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import jwt
from prometheus_client import Counter

logger = logging.getLogger(__name__)

REVOKED_TOKEN_COUNTER = Counter("revoked_tokens_total", "Total tokens revoked on logout")

Clock = Callable[[], datetime]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _token_hint(token: str) -> str:
    return token[:10] + "..." if len(token) > 10 else token


class InMemoryRevokedTokenStore:
    """Process-local revocation list.

    Entries are lost on restart, so a restarted process accepts tokens that
    were revoked before it went down until they expire naturally.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def add(self, token: str, revoked_at: datetime, expires_at: Optional[datetime] = None) -> bool:
        """Insert ``token``; returns ``False`` when it was already revoked."""
        with self._lock:
            if token in self._tokens:
                return False
            self._tokens[token] = revoked_at
            return True

    def __contains__(self, token: str) -> bool:
        with self._lock:
            return token in self._tokens

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def remove(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def snapshot(self) -> List[str]:
        with self._lock:
            return list(self._tokens)


class RedisRevokedTokenStore:
    """Revocation list kept in Redis so it survives restarts.

    Keys expire together with the token they describe, which makes the
    periodic sweep a no-op for this backend.
    """

    def __init__(self, client, prefix: str = "guias:revoked:") -> None:
        self._client = client
        self._prefix = prefix

    def _key(self, token: str) -> str:
        return self._prefix + hashlib.sha256(token.encode("utf-8")).hexdigest()

    def add(self, token: str, revoked_at: datetime, expires_at: Optional[datetime] = None) -> bool:
        ttl = None
        if expires_at is not None:
            ttl = max(int((expires_at - revoked_at).total_seconds()), 1)
        return bool(self._client.set(self._key(token), revoked_at.isoformat(), nx=True, ex=ttl))

    def __contains__(self, token: str) -> bool:
        return bool(self._client.exists(self._key(token)))

    def remove(self, token: str) -> None:
        self._client.delete(self._key(token))

    def snapshot(self) -> List[str]:
        return []


def build_revocation_store(backend: str, redis_url: str):
    """Create the revoked-token store selected by configuration."""
    if backend == "redis":
        import redis

        return RedisRevokedTokenStore(redis.Redis.from_url(redis_url))
    if backend != "memory":
        logger.warning("unknown revocation backend %r, using in-memory store", backend)
    return InMemoryRevokedTokenStore()


class TokenService:
    """Issue, validate and revoke signed bearer tokens."""

    def __init__(
        self,
        secret: str,
        issuer: str,
        audience: str,
        lifetime_hours: int,
        store,
        algorithm: str = "HS256",
        clock: Clock = _now,
    ) -> None:
        if not secret:
            raise ValueError("JWT secret must be configured")
        self._secret = secret
        self._issuer = issuer
        self._audience = audience
        self._lifetime = timedelta(hours=lifetime_hours)
        self._algorithm = algorithm
        self._store = store
        self._clock = clock

    @property
    def store(self):
        return self._store

    def issue(self, user) -> str:
        """Create a token for ``user`` carrying its identity and role."""
        now = self._clock()
        expires = now + self._lifetime
        payload = {
            "sub": user.username,
            "email": user.email or "",
            "nameid": str(user.id),
            "role": user.role,
            "id": str(user.id),
            "rol": user.role,
            "jti": str(uuid.uuid4()),
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": expires,
        }
        token = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        logger.info(
            "issued token user_id=%s username=%s expires=%s",
            user.id,
            user.username,
            expires.isoformat(),
        )
        return token

    def decode(self, token: str) -> Optional[dict]:
        """Return verified claims, or ``None`` for any verification failure."""
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                audience=self._audience,
                leeway=0,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except (jwt.PyJWTError, ValueError, TypeError):
            return None

    def validate_token(self, token: str) -> bool:
        if not token:
            return False
        if token in self._store:
            logger.warning("rejected revoked token %s", _token_hint(token))
            return False
        return self.decode(token) is not None

    def revoke_token(self, token: str) -> bool:
        """Revoke a currently valid token; invalid tokens are left alone."""
        if not self.validate_token(token):
            logger.warning("refused to revoke an invalid token")
            return False

        claims = self.decode(token) or {}
        revoked_at = self._clock()
        expires_at = None
        if "exp" in claims:
            expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
        if self._store.add(token, revoked_at, expires_at):
            REVOKED_TOKEN_COUNTER.inc()
            logger.info("revoked token %s", _token_hint(token))
        else:
            logger.warning("token %s was already revoked", _token_hint(token))
        return True

    def cleanup_revoked_tokens(self) -> int:
        """Drop revoked entries that expired or cannot be parsed."""
        now = self._clock().timestamp()
        removed = 0
        for token in self._store.snapshot():
            try:
                claims = jwt.decode(token, options={"verify_signature": False})
                expired = float(claims["exp"]) < now
            except (jwt.PyJWTError, KeyError, TypeError, ValueError):
                expired = True
            if expired:
                self._store.remove(token)
                removed += 1
        logger.info("removed %d expired revoked tokens", removed)
        return removed
