"""
GitHub API Caching Layer.

Caches the GitHub responses that are safe to reuse between scans:
- Redis as primary cache (when REDIS_URL is configured)
- DiskCache as fallback (works without Redis)

TTL Strategy:
- Repository / account metadata: 1 hour
- Repository and code search results: 30 minutes

Commit lists and /rate_limit are never cached. History can be force-pushed
at any time and quota readings must be live.
"""
import hashlib
import json
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import diskcache
import redis

from config import Config


@dataclass
class CacheStats:
    """Statistics for cache operations."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    errors: int = 0
    last_reset: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hits': self.hits,
            'misses': self.misses,
            'sets': self.sets,
            'errors': self.errors,
            'hit_rate_percent': round(self.hit_rate, 2),
            'last_reset': self.last_reset,
        }


class CacheKeyBuilder:
    """Builds cache keys and decides which endpoints are cacheable."""

    # (pattern, endpoint type, ttl). Anything not listed is not cached.
    ENDPOINT_PATTERNS = [
        (r'^/repos/[^/]+/[^/]+$', 'repo_metadata', Config.CACHE_TTL_REPO_METADATA),
        (r'^/users/[^/]+$', 'user_metadata', Config.CACHE_TTL_REPO_METADATA),
        (r'^/search/repositories$', 'search', Config.CACHE_TTL_SEARCH),
        (r'^/search/code$', 'search', Config.CACHE_TTL_SEARCH),
    ]

    @staticmethod
    def _api_path(url: str) -> str:
        path = urlparse(url).path
        base_path = urlparse(Config.GITHUB_API_BASE).path.rstrip('/')
        if base_path and path.startswith(base_path):
            path = path[len(base_path):]
        if not path.startswith('/'):
            path = '/' + path
        return path

    @classmethod
    def _lookup(cls, url: str) -> Optional[Tuple[str, int]]:
        api_path = cls._api_path(url)
        for pattern, endpoint_type, ttl in cls.ENDPOINT_PATTERNS:
            if re.match(pattern, api_path):
                return endpoint_type, ttl
        return None

    @classmethod
    def is_cacheable(cls, url: str) -> bool:
        return cls._lookup(url) is not None

    @classmethod
    def get_ttl_for_url(cls, url: str) -> int:
        match = cls._lookup(url)
        return match[1] if match else 0

    @classmethod
    def get_cache_key(cls, url: str, params: Optional[Dict] = None) -> str:
        """
        Generate a cache key from URL and parameters.

        Returns:
            A key of the form gh:<endpoint_type>:<hash>
        """
        key_parts = [cls._api_path(url).lower()]
        if params:
            key_parts.append(json.dumps(sorted(params.items()), sort_keys=True))

        key_hash = hashlib.sha256('|'.join(key_parts).encode()).hexdigest()[:16]
        match = cls._lookup(url)
        endpoint_type = match[0] if match else 'other'
        return f"gh:{endpoint_type}:{key_hash}"


class GitHubCache:
    """
    Caching layer for GitHub API responses.

    Redis is used when REDIS_URL is set and reachable; otherwise responses
    go to a local DiskCache directory.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._stats = CacheStats()
        self._redis_client: Optional[redis.Redis] = None
        self._disk_cache: Optional[diskcache.Cache] = None
        self._backend: str = 'none'

        self._initialize_backend()

    def _initialize_backend(self):
        """Initialize the cache backend (Redis or DiskCache fallback)."""
        if not Config.CACHE_ENABLED:
            self._backend = 'disabled'
            print("[CACHE] Caching is disabled via CACHE_ENABLED=false")
            return

        if Config.REDIS_URL:
            try:
                self._redis_client = redis.from_url(
                    Config.REDIS_URL,
                    decode_responses=True,
                    socket_connect_timeout=5
                )
                self._redis_client.ping()
                self._backend = 'redis'
                print("[CACHE] Redis connected")
                return
            except (redis.ConnectionError, redis.TimeoutError) as e:
                print(f"[CACHE] Redis connection failed: {e}")
                self._redis_client = None

        try:
            os.makedirs(Config.CACHE_FALLBACK_DIR, exist_ok=True)
            self._disk_cache = diskcache.Cache(
                Config.CACHE_FALLBACK_DIR,
                size_limit=200 * 1024 * 1024  # 200 MB limit
            )
            self._backend = 'diskcache'
            print(f"[CACHE] DiskCache initialized: {Config.CACHE_FALLBACK_DIR}")
        except OSError as e:
            print(f"[CACHE] DiskCache initialization failed: {e}")
            self._disk_cache = None
            self._backend = 'none'

    def get(self, url: str, params: Optional[Dict] = None) -> Optional[Tuple[int, Dict, Any]]:
        """
        Get a cached response.

        Returns:
            Tuple of (status_code, headers_dict, body) if cached, None otherwise
        """
        if not self.is_available() or not CacheKeyBuilder.is_cacheable(url):
            return None

        key = CacheKeyBuilder.get_cache_key(url, params)

        try:
            cached_data = None
            if self._backend == 'redis':
                cached_json = self._redis_client.get(key)
                if cached_json:
                    cached_data = json.loads(cached_json)
            elif self._backend == 'diskcache':
                cached_data = self._disk_cache.get(key)
        except (redis.RedisError, OSError, ValueError) as e:
            with self._lock:
                self._stats.errors += 1
            print(f"[CACHE] Get error for {key}: {e}")
            return None

        with self._lock:
            if cached_data:
                self._stats.hits += 1
            else:
                self._stats.misses += 1

        if not cached_data:
            return None

        return (
            cached_data.get('status_code', 200),
            cached_data.get('headers', {}),
            cached_data.get('body', {}),
        )

    def set(self, url: str, params: Optional[Dict], status_code: int,
            headers: Dict, body: Any):
        """Cache a successful response for a cacheable endpoint."""
        if not self.is_available() or status_code != 200:
            return
        ttl = CacheKeyBuilder.get_ttl_for_url(url)
        if not ttl:
            return

        key = CacheKeyBuilder.get_cache_key(url, params)
        cache_data = {
            'status_code': status_code,
            'headers': dict(headers) if headers else {},
            'body': body,
            'cached_at': datetime.now().isoformat(),
        }

        try:
            if self._backend == 'redis':
                self._redis_client.setex(key, ttl, json.dumps(cache_data))
            elif self._backend == 'diskcache':
                self._disk_cache.set(key, cache_data, expire=ttl)
        except (redis.RedisError, OSError, TypeError) as e:
            with self._lock:
                self._stats.errors += 1
            print(f"[CACHE] Set error for {key}: {e}")
            return

        with self._lock:
            self._stats.sets += 1

    def clear_all(self) -> int:
        """Clear all cached entries. Returns the number of keys removed."""
        if not self.is_available():
            return 0

        deleted = 0
        try:
            if self._backend == 'redis':
                keys = self._redis_client.keys("gh:*")
                if keys:
                    deleted = self._redis_client.delete(*keys)
            elif self._backend == 'diskcache':
                deleted = len(self._disk_cache)
                self._disk_cache.clear()
        except (redis.RedisError, OSError) as e:
            with self._lock:
                self._stats.errors += 1
            print(f"[CACHE] Clear all error: {e}")

        return deleted

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = self._stats.to_dict()
        stats['backend'] = self._backend
        stats['enabled'] = Config.CACHE_ENABLED
        stats['ttl_config'] = {
            'repo_metadata': Config.CACHE_TTL_REPO_METADATA,
            'search': Config.CACHE_TTL_SEARCH,
        }
        return stats

    def is_available(self) -> bool:
        """Check if caching is available and enabled."""
        return self._backend not in ('none', 'disabled')

    def get_backend_name(self) -> str:
        return self._backend


# Global cache instance
_github_cache: Optional[GitHubCache] = None
_cache_init_lock = threading.Lock()


def get_github_cache() -> GitHubCache:
    """Get the global GitHub cache instance (lazy initialization)."""
    global _github_cache

    if _github_cache is None:
        with _cache_init_lock:
            if _github_cache is None:
                _github_cache = GitHubCache()

    return _github_cache


def get_cache_stats() -> Dict[str, Any]:
    """Get cache statistics (convenience function)."""
    return get_github_cache().get_stats()


def clear_cache() -> int:
    """Clear all cache entries (convenience function)."""
    return get_github_cache().clear_all()
