"""Key/value persistence for the portrait store.

Backends keep text values under string keys inside a fixed byte quota, the
way browser storage does. ``CompressedStorage`` sits on top of a backend,
compresses every value, and recovers from quota failures by truncating the
state blob and, failing that, wiping the key space.
"""
import base64
import binascii
import json
import logging
import zlib
from enum import Enum

from redis.exceptions import ResponseError

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


class QuotaExceededError(Exception):
    """The backend refused a write because its capacity is exhausted."""


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    TRUNCATED = "truncated"
    WIPED = "wiped"


class KeyValueBackend:
    """Base class: quota bookkeeping shared by every backend."""

    name = "base"

    def __init__(self, quota_bytes=DEFAULT_QUOTA_BYTES):
        self.quota_bytes = quota_bytes

    def _check_quota(self, key, value):
        if self.quota_bytes is None:
            return
        used = self.usage(exclude_key=key)
        if used + len(value) > self.quota_bytes:
            raise QuotaExceededError(
                f"Writing {len(value)} chars to {key!r} exceeds quota "
                f"({used} of {self.quota_bytes} used)"
            )

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value):
        raise NotImplementedError

    def delete(self, key):
        raise NotImplementedError

    def usage(self, exclude_key=None):
        raise NotImplementedError

    def clear(self):
        raise NotImplementedError


class MemoryBackend(KeyValueBackend):
    """Process-local backend, used in tests and when nothing else is configured."""

    name = "memory"

    def __init__(self, quota_bytes=DEFAULT_QUOTA_BYTES):
        super().__init__(quota_bytes)
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self._check_quota(key, value)
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)

    def usage(self, exclude_key=None):
        return sum(len(v) for k, v in self.data.items() if k != exclude_key)

    def clear(self):
        self.data.clear()


class SqlBackend(KeyValueBackend):
    """Rows of the ``storage_entries`` table. Needs an app context."""

    name = "sql"

    def get(self, key):
        from portraify.models.storage_entry import StorageEntry

        return StorageEntry.get(key)

    def set(self, key, value):
        from portraify.models.storage_entry import StorageEntry

        self._check_quota(key, value)
        StorageEntry.set(key, value)

    def delete(self, key):
        from portraify.models.storage_entry import StorageEntry

        StorageEntry.remove(key)

    def usage(self, exclude_key=None):
        from portraify.models.storage_entry import StorageEntry

        return StorageEntry.total_size(exclude_key=exclude_key)

    def clear(self):
        from portraify.models.storage_entry import StorageEntry

        StorageEntry.clear()


class RedisBackend(KeyValueBackend):
    """String keys under a prefix in Redis."""

    name = "redis"

    def __init__(self, client, prefix="portraify:", quota_bytes=DEFAULT_QUOTA_BYTES):
        super().__init__(quota_bytes)
        self.client = client
        self.prefix = prefix

    def _key(self, key):
        return f"{self.prefix}{key}"

    def get(self, key):
        return self.client.get(self._key(key))

    def set(self, key, value):
        self._check_quota(key, value)
        try:
            self.client.set(self._key(key), value)
        except ResponseError as exc:
            # maxmemory reached on the server side
            if str(exc).startswith("OOM"):
                raise QuotaExceededError(str(exc)) from exc
            raise

    def delete(self, key):
        self.client.delete(self._key(key))

    def usage(self, exclude_key=None):
        skip = self._key(exclude_key) if exclude_key is not None else None
        return sum(
            self.client.strlen(k)
            for k in self.client.scan_iter(match=f"{self.prefix}*")
            if k != skip
        )

    def clear(self):
        keys = list(self.client.scan_iter(match=f"{self.prefix}*"))
        if keys:
            self.client.delete(*keys)


def make_backend(config, redis_client=None):
    """Build the backend named by ``STORAGE_BACKEND``."""
    kind = config.get("STORAGE_BACKEND", "sql")
    quota = config.get("STORAGE_QUOTA_BYTES", DEFAULT_QUOTA_BYTES)

    if kind == "sql":
        return SqlBackend(quota_bytes=quota)
    if kind == "redis":
        if redis_client is None:
            logger.warning("Redis storage requested but unavailable, using memory backend")
            return MemoryBackend(quota_bytes=quota)
        return RedisBackend(
            redis_client,
            prefix=config.get("STORAGE_KEY_PREFIX", "portraify:"),
            quota_bytes=quota,
        )
    if kind == "memory":
        return MemoryBackend(quota_bytes=quota)
    raise ValueError(f"Unknown STORAGE_BACKEND: {kind!r}")


def compress(text):
    """zlib, then base64 so the result is plain ASCII."""
    return base64.b64encode(zlib.compress(text.encode("utf-8"), 9)).decode("ascii")


def decompress(text):
    """Inverse of :func:`compress`. Raises ValueError on anything else."""
    try:
        raw = base64.b64decode(text, validate=True)
        return zlib.decompress(raw).decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeDecodeError) as exc:
        raise ValueError("Value is not in compressed format") from exc


def truncate_collections(serialized, collections, keep):
    """Keep only the ``keep`` most recent entries of each named collection.

    ``serialized`` is a ``{"state": {...}}`` JSON document whose collections
    hold objects with a ``createdAt`` field. Ordering is by ``createdAt``
    descending; ties keep their stored order.
    """
    blob = json.loads(serialized)
    state = blob["state"]
    for name in collections:
        items = state.get(name)
        if not isinstance(items, list):
            continue
        items = sorted(items, key=lambda item: item.get("createdAt") or 0, reverse=True)
        state[name] = items[:keep]
    return json.dumps(blob, separators=(",", ":"))


class CompressedStorage:
    """Compressing layer over a key/value backend with quota recovery."""

    def __init__(self, backend, keep=5, eviction_priority=("generatedPortraits",)):
        self.backend = backend
        self.keep = keep
        self.eviction_priority = tuple(eviction_priority)

    def read(self, key):
        stored = self.backend.get(key)
        if stored is None:
            return None
        try:
            return decompress(stored)
        except ValueError:
            # Written before compression was introduced
            logger.info("Reading %r as uncompressed legacy value", key)
            return stored

    def write(self, key, value):
        """Persist ``value``; returns how the write was finally resolved."""
        try:
            self.backend.set(key, compress(value))
            return WriteOutcome.WRITTEN
        except QuotaExceededError:
            logger.warning("Storage quota exceeded writing %r, truncating %s",
                           key, ", ".join(self.eviction_priority))

        try:
            truncated = truncate_collections(value, self.eviction_priority, self.keep)
            self.backend.set(key, compress(truncated))
            logger.info("Stored %r after keeping %d most recent entries", key, self.keep)
            return WriteOutcome.TRUNCATED
        except (QuotaExceededError, ValueError, KeyError, TypeError, AttributeError):
            logger.exception("Truncation did not resolve quota error, clearing storage")

        self.backend.clear()
        return WriteOutcome.WIPED

    def remove(self, key):
        self.backend.delete(key)
