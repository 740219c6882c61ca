"""The bounded photo/portrait store.

``PortraitStore`` owns the two collections, the settings, the subscription
and the selection pointers. Inserts hand back an id straight away and
finish on the store's single worker thread: the image is optimized, the
entity is committed, the collection is trimmed to its limit and the whole
state is written through ``CompressedStorage``.

Every mutation flushes the full state before returning (write-back policy is
flush-after-mutation). All state is guarded by one re-entrant lock; the
worker thread serializes the asynchronous halves of inserts and
re-optimization in submission order.
"""
import json
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from operator import attrgetter

from portraify.models.entities import (
    EntityState,
    GeneratedPortrait,
    GenerationParameters,
    Photo,
    Settings,
    StoreState,
    Subscription,
)
from portraify.models.scene import Scene
from portraify.services import image_service
from portraify.services.image_service import DecodeError
from portraify.services.storage_service import WriteOutcome

logger = logging.getLogger(__name__)

STATE_VERSION = 1

STORAGE_NOTICE = "Older items were removed to make space."

PHOTOS = "userPhotos"
PORTRAITS = "generatedPortraits"


def _now_ms():
    return int(time.time() * 1000)


def _new_id():
    return uuid.uuid4().hex


class PortraitStore:
    def __init__(
        self,
        storage,
        key="portraify-storage",
        optimizer=None,
        clock=None,
        id_factory=None,
        app=None,
    ):
        self.storage = storage
        self.key = key
        self._optimize = optimizer or image_service.optimize
        self._clock = clock or _now_ms
        self._new_id = id_factory or _new_id
        self._app = app

        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="portraify-store")
        self._state = StoreState()
        self._pending = {}  # id -> "photo" | "portrait"
        self._evicted = set()
        self._notice = None
        self._under_pressure = False

    # -- lifecycle ---------------------------------------------------------

    def load(self):
        """Replace in-memory state with whatever is persisted under ``key``."""
        raw = self.storage.read(self.key)
        if raw is None:
            logger.info("No persisted state under %r, starting empty", self.key)
            return
        try:
            blob = json.loads(raw)
            state = self._decode_state(blob)
        except (ValueError, TypeError, AttributeError):
            logger.exception("Persisted state under %r is unreadable, starting empty", self.key)
            return
        with self._lock:
            self._state = state
        logger.info(
            "Loaded %d photos and %d portraits", len(state.photos), len(state.portraits)
        )

    def wait(self, timeout=None):
        """Block until every task scheduled so far has finished."""
        self._executor.submit(lambda: None).result(timeout)

    def close(self):
        self._executor.shutdown(wait=True)

    # -- serialization -----------------------------------------------------

    def serialize(self):
        with self._lock:
            s = self._state
            blob = {
                "state": {
                    PHOTOS: [p.to_dict() for p in s.photos],
                    "currentPhotoId": s.current_photo_id,
                    "currentScene": s.current_scene.value if s.current_scene else None,
                    PORTRAITS: [p.to_dict() for p in s.portraits],
                    "settings": s.settings.to_dict(),
                    "subscription": s.subscription.to_dict(),
                },
                "version": STATE_VERSION,
            }
        return json.dumps(blob, separators=(",", ":"))

    def _decode_state(self, blob):
        version = blob.get("version", 0)
        if version > STATE_VERSION:
            logger.warning("Persisted state version %s is newer than %s", version, STATE_VERSION)
        data = blob.get("state", {})
        estimate = image_service.estimate_size_kb

        photos = _decode_all(data.get(PHOTOS), lambda d: Photo.from_dict(d, estimate))
        portraits = _decode_all(
            data.get(PORTRAITS), lambda d: GeneratedPortrait.from_dict(d, estimate)
        )
        settings = Settings.from_dict(data.get("settings"))
        state = StoreState(
            photos=photos,
            portraits=portraits,
            current_photo_id=data.get("currentPhotoId"),
            current_scene=Scene.parse(data["currentScene"]) if data.get("currentScene") else None,
            settings=settings,
            subscription=Subscription.from_dict(data.get("subscription")),
        )
        _bound(state.photos, settings.max_stored_photos)
        _bound(state.portraits, settings.max_stored_portraits)
        if state.current_photo_id not in {p.id for p in state.photos}:
            state.current_photo_id = None
        return state

    # -- persistence -------------------------------------------------------

    def flush(self):
        """Write the full state through the storage adapter."""
        with self._lock:
            try:
                outcome = self.storage.write(self.key, self.serialize())
            except Exception:
                logger.exception("Failed to persist store state")
                return None

            if outcome == WriteOutcome.TRUNCATED:
                self._mirror_truncation()
            if outcome == WriteOutcome.WRITTEN:
                self._under_pressure = False
                return outcome

            logger.warning("Storage pressure: write resolved as %s", outcome.value)
            # one notice per run of failed writes
            if not self._under_pressure:
                self._notice = STORAGE_NOTICE
            self._under_pressure = True
            return outcome

    def _mirror_truncation(self):
        keep = self.storage.keep
        collections = {PHOTOS: self._state.photos, PORTRAITS: self._state.portraits}
        for name in self.storage.eviction_priority:
            items = collections.get(name)
            if items is not None:
                self._evicted.update(_bound(items, keep))
        self._drop_dangling_selection()

    def consume_storage_notice(self):
        """Return the storage-pressure notice once, then None."""
        with self._lock:
            notice, self._notice = self._notice, None
            return notice

    # -- background tasks --------------------------------------------------

    def _submit(self, fn, *args):
        def run():
            try:
                if self._app is not None:
                    with self._app.app_context():
                        fn(*args)
                else:
                    fn(*args)
            except Exception:
                logger.exception("Store task %s failed", fn.__name__)

        return self._executor.submit(run)

    # -- photos ------------------------------------------------------------

    def insert_photo(self, raw_image, width, height):
        """Allocate an id now; optimize and commit the photo in the background."""
        if not raw_image:
            raise ValueError("raw_image must not be empty")
        with self._lock:
            photo_id = self._new_id()
            created_at = self._clock()
            settings = self._state.settings
            self._pending[photo_id] = "photo"
        self._submit(
            self._commit_photo,
            photo_id,
            raw_image,
            width,
            height,
            created_at,
            settings.tier,
            settings.save_originals,
        )
        return photo_id

    def _commit_photo(self, photo_id, raw_image, width, height, created_at, tier, save_originals):
        encoded, size_kb = raw_image, None
        try:
            result = self._optimize(raw_image, tier)
            encoded, size_kb = result.encoded_image, result.size_kb
            if result.width is not None:
                width, height = result.width, result.height
        except DecodeError:
            logger.warning("Could not decode photo %s, storing it unoptimized", photo_id)
        except Exception:
            logger.exception("Optimizing photo %s failed, storing it unoptimized", photo_id)
        if size_kb is None:
            size_kb = image_service.estimate_size_kb(encoded)

        photo = Photo(
            id=photo_id,
            encoded_image=encoded,
            width=width,
            height=height,
            created_at=created_at,
            size_kb=size_kb,
            original_encoded_image=raw_image if save_originals else None,
        )

        with self._lock:
            if self._pending.pop(photo_id, None) is None:
                logger.info("Photo %s was removed before commit, dropping it", photo_id)
                return
            self._state.photos.insert(0, photo)
            self._state.current_photo_id = photo_id
            self._evicted.update(_bound(self._state.photos, self._state.settings.max_stored_photos))
            self._drop_dangling_selection()
            self.flush()
        logger.info("Committed photo %s (%d KB)", photo_id, size_kb)

    def delete_photo(self, photo_id):
        """Remove a photo. Unknown ids are ignored; portraits are left alone."""
        with self._lock:
            if self._cancel_pending(photo_id):
                return True
            removed = _remove(self._state.photos, photo_id)
            if not removed:
                return False
            self._evicted.add(photo_id)
            if self._state.current_photo_id == photo_id:
                self._state.current_photo_id = None
            self.flush()
            return True

    def set_current_photo(self, photo_id):
        with self._lock:
            if photo_id is not None and self.state_of(photo_id) not in (
                EntityState.PENDING,
                EntityState.COMMITTED,
            ):
                raise LookupError(photo_id)
            self._state.current_photo_id = photo_id
            self.flush()

    def set_current_scene(self, scene):
        with self._lock:
            self._state.current_scene = Scene.parse(scene) if scene else None
            self.flush()

    # -- portraits ---------------------------------------------------------

    def insert_generated_portrait(self, source_photo_id, scene, encoded_image, parameters=None):
        """Allocate an id now; commit the portrait in the background.

        The source photo is recorded by id only and need not exist.
        """
        if not encoded_image:
            raise ValueError("encoded_image must not be empty")
        with self._lock:
            portrait_id = self._new_id()
            created_at = self._clock()
            self._pending[portrait_id] = "portrait"
        portrait = GeneratedPortrait(
            id=portrait_id,
            source_photo_id=source_photo_id,
            scene=Scene.parse(scene),
            encoded_image=encoded_image,
            parameters=parameters or GenerationParameters(),
            created_at=created_at,
            size_kb=0,
        )
        self._submit(self._commit_portrait, portrait)
        return portrait_id

    def _commit_portrait(self, portrait):
        portrait.size_kb = image_service.estimate_size_kb(portrait.encoded_image)
        with self._lock:
            if self._pending.pop(portrait.id, None) is None:
                logger.info("Portrait %s was removed before commit, dropping it", portrait.id)
                return
            self._state.portraits.insert(0, portrait)
            self._evicted.update(
                _bound(self._state.portraits, self._state.settings.max_stored_portraits)
            )
            self.flush()
        logger.info("Committed %s portrait %s", portrait.scene.value, portrait.id)

    def delete_portrait(self, portrait_id):
        with self._lock:
            if self._cancel_pending(portrait_id):
                return True
            if not _remove(self._state.portraits, portrait_id):
                return False
            self._evicted.add(portrait_id)
            self.flush()
            return True

    # -- settings ----------------------------------------------------------

    def update_settings(self, **partial):
        """Merge ``partial`` into the settings.

        Shrinking a limit trims the collection at once; changing the quality
        tier re-optimizes stored photos in the background.
        """
        with self._lock:
            old = self._state.settings
            new = old.merged(**partial)
            self._state.settings = new
            self._evicted.update(_bound(self._state.photos, new.max_stored_photos))
            self._evicted.update(_bound(self._state.portraits, new.max_stored_portraits))
            self._drop_dangling_selection()
            self.flush()
        if new.quality != old.quality:
            logger.info("Quality changed %s -> %s, re-optimizing photos", old.quality, new.quality)
            self.reoptimize_all()
        return new

    def update_subscription(self, **partial):
        with self._lock:
            try:
                self._state.subscription = replace(self._state.subscription, **partial)
            except TypeError as exc:
                raise ValueError(str(exc)) from exc
            self.flush()
            return self._state.subscription

    def reoptimize_all(self):
        """Schedule re-optimization of every photo; returns the task's future."""
        return self._submit(self._reoptimize)

    def _reoptimize(self):
        with self._lock:
            tier = self._state.settings.tier
            save_originals = self._state.settings.save_originals
            work = []
            for photo in self._state.photos:
                if photo.original_encoded_image:
                    source = photo.original_encoded_image
                elif save_originals:
                    source = photo.encoded_image
                else:
                    continue
                work.append((photo.id, source, photo.encoded_image))

        results = []
        for photo_id, source, current in work:
            try:
                results.append((photo_id, current, self._optimize(source, tier)))
            except Exception:
                logger.warning("Skipping re-optimization of photo %s", photo_id, exc_info=True)

        with self._lock:
            changed = 0
            for photo_id, current, result in results:
                photo = self.get_photo(photo_id)
                # deleted or replaced while we were working
                if photo is None or photo.encoded_image != current:
                    continue
                photo.encoded_image = result.encoded_image
                photo.size_kb = result.size_kb
                if result.width is not None:
                    photo.width, photo.height = result.width, result.height
                changed += 1
            if changed:
                self.flush()
        logger.info("Re-optimized %d of %d photos at %s quality", changed, len(work), tier.name)

    # -- bulk --------------------------------------------------------------

    def clear_all(self):
        """Drop every photo and portrait; settings and subscription survive."""
        with self._lock:
            self._evicted.update(self._pending)
            self._pending.clear()
            self._evicted.update(p.id for p in self._state.photos)
            self._evicted.update(p.id for p in self._state.portraits)
            self._state.photos = []
            self._state.portraits = []
            self._state.current_photo_id = None
            self._state.current_scene = None
            self.flush()

    def total_storage_usage_kb(self):
        with self._lock:
            total = sum(p.size_kb for p in self._state.photos)
            total += sum(p.size_kb for p in self._state.portraits)
            total += sum(
                image_service.estimate_size_kb(p.original_encoded_image)
                for p in self._state.photos
                if p.original_encoded_image
            )
            return total

    # -- readers -----------------------------------------------------------

    @property
    def settings(self):
        return self._state.settings

    @property
    def subscription(self):
        return self._state.subscription

    @property
    def current_photo_id(self):
        return self._state.current_photo_id

    @property
    def current_scene(self):
        return self._state.current_scene

    def photos(self):
        with self._lock:
            return list(self._state.photos)

    def portraits(self):
        with self._lock:
            return list(self._state.portraits)

    def get_photo(self, photo_id):
        with self._lock:
            return next((p for p in self._state.photos if p.id == photo_id), None)

    def get_portrait(self, portrait_id):
        with self._lock:
            return next((p for p in self._state.portraits if p.id == portrait_id), None)

    def source_photo(self, portrait):
        """The photo a portrait was generated from, or None if it is gone."""
        if portrait.source_photo_id is None:
            return None
        return self.get_photo(portrait.source_photo_id)

    def is_pending(self, entity_id):
        with self._lock:
            return entity_id in self._pending

    def state_of(self, entity_id):
        with self._lock:
            if entity_id in self._pending:
                return EntityState.PENDING
            if self.get_photo(entity_id) or self.get_portrait(entity_id):
                return EntityState.COMMITTED
            if entity_id in self._evicted:
                return EntityState.EVICTED
            return None

    # -- helpers -----------------------------------------------------------

    def _cancel_pending(self, entity_id):
        if self._pending.pop(entity_id, None) is None:
            return False
        logger.info("Cancelled pending insert %s", entity_id)
        self._evicted.add(entity_id)
        return True

    def _drop_dangling_selection(self):
        current = self._state.current_photo_id
        if current and current not in self._pending and self.get_photo(current) is None:
            self._state.current_photo_id = None


def _bound(items, limit):
    """Sort newest first (stable) and cut to ``limit``; returns dropped ids."""
    items.sort(key=attrgetter("created_at"), reverse=True)
    dropped = [item.id for item in items[limit:]]
    del items[limit:]
    return dropped


def _remove(items, entity_id):
    for i, item in enumerate(items):
        if item.id == entity_id:
            del items[i]
            return True
    return False


def _decode_all(entries, decode):
    decoded = []
    for entry in entries or []:
        try:
            decoded.append(decode(entry))
        except (KeyError, TypeError, ValueError):
            entry_id = entry.get("id") if isinstance(entry, dict) else entry
            logger.warning("Dropping unreadable persisted entry %r", entry_id)
    return decoded
