"""Startup artifact cache."""
from harness_core.cache.startup_cache import (
    CacheEntry,
    StartupCacheConfig,
    StartupCacheResult,
    StartupCacheService,
    compute_cache_key,
    get_cached_artifacts,
    hash_file,
)

__all__ = [
    "CacheEntry",
    "StartupCacheConfig",
    "StartupCacheResult",
    "StartupCacheService",
    "compute_cache_key",
    "get_cached_artifacts",
    "hash_file",
]
