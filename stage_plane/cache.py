"""
Derived-content caching and invalidation.

Published files feed derived views (article listings, video listings,
rendered documents). Those views are cached under tags; after a publish the
invalidator purges the tags of every content category the commit touched.
"""

import logging
import threading
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

CONTENT_TAG = "content"


class TaggedCache:
    """In-process cache whose entries can be purged by tag."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, Any] = {}
        self._tags: dict[str, set[str]] = {}

    def get_or_load(self, key: str, loader: Callable[[], Any], tags: Iterable[str] = ()) -> Any:
        with self._lock:
            if key in self._values:
                return self._values[key]

        value = loader()
        with self._lock:
            self._values[key] = value
            for tag in (CONTENT_TAG, *tags):
                self._tags.setdefault(tag, set()).add(key)
        return value

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def purge(self, tag: str) -> int:
        with self._lock:
            keys = self._tags.pop(tag, set())
            for key in keys:
                self._values.pop(key, None)
            for other in self._tags.values():
                other.difference_update(keys)
        logger.debug(f"Purged {len(keys)} cache entries tagged '{tag}'")
        return len(keys)


class CacheInvalidator:
    """
    Classifies changed paths by category prefix and signals each touched
    category once per publish.
    """

    def __init__(
        self,
        categories: dict[str, str],
        signal: Callable[[str], None] | None = None,
        cache: TaggedCache | None = None,
    ) -> None:
        self.categories = {name: prefix for name, prefix in categories.items() if prefix}
        self.cache = cache
        self.signal = signal or self._purge_cache

    def _purge_cache(self, category: str) -> None:
        if self.cache is None:
            return
        self.cache.purge(category)
        self.cache.purge(CONTENT_TAG)

    def classify(self, paths: Iterable[str]) -> list[str]:
        touched = []
        for path in paths:
            for name, prefix in self.categories.items():
                folder = prefix.rstrip("/") + "/"
                if (path == prefix.rstrip("/") or path.startswith(folder)) and name not in touched:
                    touched.append(name)
        return touched

    def invalidate(self, paths: Iterable[str]) -> list[str]:
        touched = self.classify(paths)
        for category in touched:
            logger.info(f"Invalidating cached '{category}' content")
            self.signal(category)
        return touched
