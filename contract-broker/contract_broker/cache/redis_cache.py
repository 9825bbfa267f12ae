"""
Redis cache for deployment-safety verdicts.

Cache keys include the broker's write sequence, which every publish, record
and tag operation increments. A verdict cached before a write is therefore
never served after it; old entries simply expire through their TTL.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Optional

import redis
from redis.exceptions import RedisError

from ..config import Settings
from ..core.schemas import DeploymentVerdict

logger = logging.getLogger(__name__)


class VerdictCache:
    """
    Verdict cache with graceful fallback.

    Any Redis error disables nothing permanently; the failing lookup is
    logged and treated as a miss so evaluation always proceeds against the
    stores.
    """

    def __init__(self, client: "redis.Redis", default_ttl: int = 300, prefix: str = "broker"):
        self._redis = client
        self.default_ttl = default_ttl
        self.prefix = prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["VerdictCache"]:
        if not settings.REDIS_ENABLED:
            return None
        pool = redis.ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            db=settings.REDIS_DB,
            password=settings.REDIS_PASSWORD,
            socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
            decode_responses=True
        )
        client = redis.Redis(connection_pool=pool)
        try:
            client.ping()
            logger.info(f"Verdict cache connected to {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        except RedisError as e:
            logger.warning(f"Redis connection failed: {e} - verdicts will be computed on every request")
        return cls(client, default_ttl=settings.VERDICT_CACHE_TTL)

    def verdict_key(
        self,
        participant: str,
        version: str,
        target_tag: str,
        tags: Iterable[str],
        allow_empty: bool,
        write_sequence: int
    ) -> str:
        """Generate consistent cache key from query parameters"""
        key_data = {
            "participant": participant,
            "version": version,
            "target_tag": target_tag,
            "tags": sorted(tags),
            "allow_empty": allow_empty,
        }
        key_hash = hashlib.sha256(json.dumps(key_data, sort_keys=True).encode()).hexdigest()[:16]
        return f"{self.prefix}:verdict:{write_sequence}:{key_hash}"

    def get(self, key: str) -> Optional[DeploymentVerdict]:
        try:
            cached_value = self._redis.get(key)
        except RedisError as e:
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None
        if not cached_value:
            return None
        try:
            return DeploymentVerdict.model_validate_json(cached_value)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry {key}: {e}")
            return None

    def set(self, key: str, verdict: DeploymentVerdict, ttl: Optional[int] = None) -> bool:
        try:
            return bool(self._redis.set(key, verdict.model_dump_json(), ex=ttl or self.default_ttl))
        except RedisError as e:
            logger.warning(f"Cache set failed for key {key}: {e}")
            return False

    def health(self) -> Dict[str, Any]:
        try:
            self._redis.ping()
            return {"enabled": True, "status": "healthy"}
        except RedisError as e:
            return {"enabled": True, "status": "unhealthy", "error": str(e)}
