import logging
import threading

from .constants import UNKNOWN_NAME, UNKNOWN_PLATFORM, UNKNOWN_TAG

logger = logging.getLogger("PostArchiver")


class AliasCache:
    """Thread-safe ``key -> id`` map with one lock per key.

    The per-key lock lets the owner serialize "look up durably, create if
    missing" for one external identity while other keys resolve in parallel.
    A key holds its lock only while it is being resolved.
    """

    def __init__(self, name):
        self.name = name
        self._values = {}
        self._key_locks = {}
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            return self._values.get(key)

    def put(self, key, value):
        with self._lock:
            self._values[key] = value
        logger.debug("cache %s: %r -> %s", self.name, key, value)

    def discard(self, key):
        with self._lock:
            self._values.pop(key, None)

    def discard_value(self, value):
        with self._lock:
            stale = [k for k, v in self._values.items() if v == value]
            for key in stale:
                del self._values[key]

    def discard_where(self, predicate):
        with self._lock:
            stale = [k for k in self._values if predicate(k)]
            for key in stale:
                del self._values[key]

    def lock_for(self, key):
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def drop_lock(self, key):
        """Forget the lock for ``key`` once its resolution has finished."""
        with self._lock:
            self._key_locks.pop(key, None)

    def pending_locks(self):
        with self._lock:
            return len(self._key_locks)

    def clear(self):
        with self._lock:
            self._values.clear()
            self._key_locks.clear()

    def __contains__(self, key):
        with self._lock:
            return key in self._values


class ArchiveCache:
    """Identity caches owned by a single archive handle."""

    def __init__(self):
        # (platform, source) -> AuthorId
        self.authors = AliasCache("authors")
        # (platform or None, name) -> TagId
        self.tags = AliasCache("tags")
        # lower-cased name -> PlatformId
        self.platforms = AliasCache("platforms")
        # source -> CollectionId
        self.collections = AliasCache("collections")
        self.seed()

    def seed(self):
        self.platforms.put(UNKNOWN_NAME, UNKNOWN_PLATFORM)
        self.tags.put((UNKNOWN_PLATFORM, UNKNOWN_NAME), UNKNOWN_TAG)

    def clear(self):
        for cache in (self.authors, self.tags, self.platforms, self.collections):
            cache.clear()
        self.seed()

    def forget_platform(self, platform):
        """Drop entries keyed under ``platform``; their rows move to platform 0."""
        self.platforms.discard_value(platform)
        self.authors.discard_where(lambda key: key[0] == platform)
        self.tags.discard_where(lambda key: key[0] == platform)
