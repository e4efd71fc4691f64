"""Session Token Codec

Signs and verifies the session tokens handed to browsers and API clients.

Token Format (HS256 JWT):
{
    "sub": "user-or-subject-id",     # Subject
    "user_id": "local-user-uuid",     # Local user row, when one exists
    "email": "user@example.com",
    "name": "Display Name",
    "is_admin": false,
    "provider": "local",             # Provider that authenticated the session
    "iss": "auth-broker",
    "iat": 1700000000,
    "exp": 1700086400,
    "jti": "token-uuid"              # Session id, used for revocation
}

Local accounts may instead use the compact format: base64url(JSON claims)
followed by "." and a base64url HMAC-SHA256 tag over the first segment.

Verification is an ordered chain of verifier strategies. Each returns a
tagged Verification; the chain moves on only when a verifier reports the
token is not in its format.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from typing import Any, Callable, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from auth_broker.domain.models.auth import Session, TokenStatus, Verification

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _base_claims(claims: dict[str, Any], ttl_seconds: int, now: float) -> dict[str, Any]:
    issued_at = int(now)
    payload = dict(claims)
    payload["iat"] = issued_at
    payload["exp"] = issued_at + ttl_seconds
    payload.setdefault("jti", str(uuid.uuid4()))
    return payload


class SessionTokenCodec:
    """Issues and decodes signed JWT session tokens"""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str = "auth-broker",
        ttl_seconds: int = 86400,
        clock: Clock = time.time,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue(self, claims: dict[str, Any], ttl_seconds: Optional[int] = None) -> str:
        """Sign a session token

        Args:
            claims: Identity claims; must contain "sub"
            ttl_seconds: Override of the default 24h lifetime

        Returns:
            Encoded JWT
        """
        if not claims.get("sub"):
            raise ValueError("Session token requires a subject")
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload = _base_claims(claims, ttl, self._clock())
        payload["iss"] = self.issuer
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        """Decode and verify signature, expiry and issuer

        Raises:
            ExpiredSignatureError: Token is past its exp claim
            JWTError: Token is malformed or the signature does not match
        """
        return jwt.decode(
            token,
            self.secret,
            algorithms=[self.algorithm],
            issuer=self.issuer,
        )


class CompactTokenError(Exception):
    """Compact token malformed or signature mismatch"""
    pass


class CompactTokenExpired(CompactTokenError):
    pass


class CompactTokenCodec:
    """Issues and decodes the simpler compact tokens used by local accounts"""

    def __init__(self, secret: str, ttl_seconds: int = 86400, clock: Clock = time.time):
        self._key = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _sign(self, body: str) -> str:
        digest = hmac.new(self._key, body.encode("ascii"), hashlib.sha256).digest()
        return _b64encode(digest)

    def issue(self, claims: dict[str, Any], ttl_seconds: Optional[int] = None) -> str:
        if not claims.get("sub"):
            raise ValueError("Session token requires a subject")
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload = _base_claims(claims, ttl, self._clock())
        payload["auth_type"] = "compact"
        body = _b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{body}.{self._sign(body)}"

    def decode(self, token: str) -> dict[str, Any]:
        """Decode a compact token

        Raises:
            CompactTokenExpired: Token is past its exp claim
            CompactTokenError: Token is malformed or the tag does not match
        """
        try:
            body, tag = token.split(".")
        except ValueError:
            raise CompactTokenError("Malformed compact token")

        if not hmac.compare_digest(tag, self._sign(body)):
            raise CompactTokenError("Compact token signature mismatch")

        try:
            claims = json.loads(_b64decode(body))
        except (ValueError, UnicodeDecodeError) as e:
            raise CompactTokenError(f"Compact token payload unreadable: {e}")

        if not isinstance(claims, dict) or "exp" not in claims or not claims.get("sub"):
            raise CompactTokenError("Compact token missing required claims")
        if int(claims["exp"]) <= self._clock():
            raise CompactTokenExpired("Compact token expired")
        return claims

    @staticmethod
    def looks_like(token: str) -> bool:
        return token.count(".") == 1


class RevocationStore:
    """Revoked session ids (Redis preferred, in-memory fallback)

    A revoked id is kept until the token it belongs to would have expired.

    WARNING: the in-memory fallback only works for single-instance
    deployments.
    """

    KEY_PREFIX = "revoked:"

    def __init__(self, redis_client=None, clock: Clock = time.time):
        self._redis = redis_client
        self._clock = clock
        self._memory: dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def revoke(self, session_id: str, expires_at: Optional[int]) -> None:
        now = self._clock()
        ttl = int(expires_at - now) if expires_at else 3600
        if ttl <= 0:
            return

        if self._redis is not None:
            try:
                await self._redis.setex(f"{self.KEY_PREFIX}{session_id}", ttl, "1")
                logger.debug(f"Session revoked in Redis (TTL: {ttl}s)")
                return
            except Exception as e:
                logger.warning(
                    f"Redis unavailable for revocation, using in-memory fallback: {e}. "
                    "WARNING: This only works for single-instance deployments!"
                )

        async with self._lock:
            self._purge_expired(now)
            self._memory[session_id] = now + ttl
            logger.debug(f"Session revoked in memory (size: {len(self._memory)})")

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, expiry in self._memory.items() if expiry <= now]
        for k in expired:
            del self._memory[k]

    async def is_revoked(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False

        if self._redis is not None:
            try:
                return await self._redis.exists(f"{self.KEY_PREFIX}{session_id}") > 0
            except Exception as e:
                logger.debug(f"Redis unavailable for revocation check, using in-memory: {e}")

        async with self._lock:
            expiry = self._memory.get(session_id)
            if expiry is None:
                return False
            if expiry <= self._clock():
                del self._memory[session_id]
                return False
            return True


class SignedTokenVerifier:
    """Verifies HS256 JWT session tokens"""

    def __init__(self, codec: SessionTokenCodec, revocations: RevocationStore):
        self.codec = codec
        self.revocations = revocations

    async def verify(self, token: str) -> Verification:
        if token.count(".") != 2:
            return Verification.not_this_format()

        try:
            claims = self.codec.decode(token)
        except ExpiredSignatureError:
            return Verification.rejected(TokenStatus.EXPIRED, "Token expired")
        except JWTError as e:
            return Verification.rejected(TokenStatus.INVALID, f"Invalid token: {e}")

        if not claims.get("sub"):
            return Verification.rejected(TokenStatus.INVALID, "Token missing subject")
        if await self.revocations.is_revoked(claims.get("jti")):
            return Verification.rejected(TokenStatus.REVOKED, "Token has been revoked")

        return Verification.verified(Session.from_claims(claims))


class CompactTokenVerifier:
    """Verifies compact session tokens"""

    def __init__(self, codec: CompactTokenCodec, revocations: RevocationStore):
        self.codec = codec
        self.revocations = revocations

    async def verify(self, token: str) -> Verification:
        if not CompactTokenCodec.looks_like(token):
            return Verification.not_this_format()

        try:
            claims = self.codec.decode(token)
        except CompactTokenExpired:
            return Verification.rejected(TokenStatus.EXPIRED, "Token expired")
        except CompactTokenError as e:
            return Verification.rejected(TokenStatus.INVALID, str(e))

        if await self.revocations.is_revoked(claims.get("jti")):
            return Verification.rejected(TokenStatus.REVOKED, "Token has been revoked")

        return Verification.verified(Session.from_claims(claims))


class SessionVerifierChain:
    """Ordered verifier strategies; first verdict other than UNRECOGNIZED wins"""

    def __init__(self, verifiers: list):
        self.verifiers = list(verifiers)

    async def verify(self, token: Optional[str]) -> Verification:
        if not token:
            return Verification.rejected(TokenStatus.INVALID, "Empty token")

        for verifier in self.verifiers:
            result = await verifier.verify(token)
            if result.status != TokenStatus.UNRECOGNIZED:
                return result

        return Verification.rejected(TokenStatus.INVALID, "Unrecognized token format")


class TokenService:
    """Issues session tokens and verifies or revokes them through the chain"""

    def __init__(
        self,
        jwt_codec: SessionTokenCodec,
        compact_codec: CompactTokenCodec,
        revocations: RevocationStore,
    ):
        self.jwt_codec = jwt_codec
        self.compact_codec = compact_codec
        self.revocations = revocations
        self.chain = SessionVerifierChain([
            SignedTokenVerifier(jwt_codec, revocations),
            CompactTokenVerifier(compact_codec, revocations),
        ])

    def issue(self, claims: dict[str, Any], token_format: str = "jwt") -> str:
        if token_format == "compact":
            return self.compact_codec.issue(claims)
        return self.jwt_codec.issue(claims)

    async def verify(self, token: Optional[str]) -> Verification:
        return await self.chain.verify(token)

    async def revoke(self, token: str) -> bool:
        """Revoke a session token; returns False when it does not verify"""
        result = await self.chain.verify(token)
        if not result.is_verified:
            return False
        session = result.session
        expires_at = int(session.expires_at.timestamp()) if session.expires_at else None
        if session.session_id:
            await self.revocations.revoke(session.session_id, expires_at)
        return True
