"""Service layer: caching, queueing, media and the dubbing pipeline."""

from scriptshift.services.content_cache import (
    ContentCache,
    ExpiringCache,
    compute_content_hash,
    make_cache_key,
)

__all__ = ["ContentCache", "ExpiringCache", "compute_content_hash", "make_cache_key"]
