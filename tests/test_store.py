"""Tests for the bounded photo/portrait store."""
import base64
import json
import os
import threading

import pytest
from conftest import FakeClock, FakeOptimizer, small_data_url

from portraify.models.entities import EntityState, GenerationParameters
from portraify.models.scene import Scene
from portraify.services.image_service import DecodeError, OptimizedImage, estimate_size_kb
from portraify.services.storage_service import CompressedStorage, MemoryBackend
from portraify.services.store import STORAGE_NOTICE, PortraitStore


class BlockingOptimizer(FakeOptimizer):
    """Holds every optimization until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()

    def __call__(self, encoded_image, tier):
        assert self.release.wait(5)
        return super().__call__(encoded_image, tier)


def insert_photos(store, count):
    ids = [store.insert_photo(small_data_url(f"photo{i}"), 100, 100) for i in range(count)]
    store.wait()
    return ids


def insert_portraits(store, count, source="photo-0"):
    ids = [
        store.insert_generated_portrait(source, "passport", small_data_url(f"portrait{i}"))
        for i in range(count)
    ]
    store.wait()
    return ids


def random_portrait_image(payload_bytes=3000):
    return "data:image/jpeg;base64," + base64.b64encode(os.urandom(payload_bytes)).decode()


def test_insert_returns_id_before_commit(backend, clock):
    optimizer = BlockingOptimizer()
    store = PortraitStore(CompressedStorage(backend), optimizer=optimizer, clock=clock)
    try:
        photo_id = store.insert_photo(small_data_url(), 10, 10)

        assert store.is_pending(photo_id)
        assert store.state_of(photo_id) == EntityState.PENDING
        assert store.get_photo(photo_id) is None
        assert store.photos() == []

        optimizer.release.set()
        store.wait()

        assert store.state_of(photo_id) == EntityState.COMMITTED
        assert store.get_photo(photo_id).id == photo_id
        assert store.current_photo_id == photo_id
    finally:
        optimizer.release.set()
        store.close()


def test_committed_photo_is_optimized_and_persisted(store, backend, optimizer):
    raw = small_data_url("raw")
    photo_id = store.insert_photo(raw, 100, 50)
    store.wait()

    photo = store.get_photo(photo_id)
    assert optimizer.calls == [(raw, "medium")]
    assert photo.encoded_image != raw
    assert (photo.width, photo.height) == (8, 8)
    assert photo.size_kb == estimate_size_kb(photo.encoded_image)
    assert photo.original_encoded_image == raw

    persisted = json.loads(store.storage.read("test-storage"))
    assert persisted["version"] == 1
    assert persisted["state"]["userPhotos"][0]["id"] == photo_id
    assert persisted["state"]["currentPhotoId"] == photo_id


def test_originals_dropped_when_setting_off(store):
    store.update_settings(save_originals=False)
    photo_id = store.insert_photo(small_data_url("raw"), 100, 50)
    store.wait()
    assert store.get_photo(photo_id).original_encoded_image is None


@pytest.mark.parametrize("error", [DecodeError("corrupt"), RuntimeError("boom")])
def test_optimizer_failure_commits_raw_image(backend, clock, error):
    def failing(encoded_image, tier):
        raise error

    store = PortraitStore(CompressedStorage(backend), optimizer=failing, clock=clock)
    try:
        raw = small_data_url("raw")
        photo_id = store.insert_photo(raw, 30, 40)
        store.wait()

        photo = store.get_photo(photo_id)
        assert photo.encoded_image == raw
        assert (photo.width, photo.height) == (30, 40)
        assert photo.size_kb == estimate_size_kb(raw)
        assert photo.original_encoded_image == raw
    finally:
        store.close()


def test_original_kept_even_when_optimizer_leaves_image_unchanged(backend, clock):
    def unchanged(encoded_image, tier):
        return OptimizedImage(encoded_image, None, None, estimate_size_kb(encoded_image))

    store = PortraitStore(CompressedStorage(backend), optimizer=unchanged, clock=clock)
    try:
        raw = small_data_url("tiny")
        photo_id = store.insert_photo(raw, 20, 20)
        store.wait()
        photo = store.get_photo(photo_id)
        assert photo.encoded_image == raw
        assert photo.original_encoded_image == raw

        store.update_settings(save_originals=False)
        other_id = store.insert_photo(raw, 20, 20)
        store.wait()
        assert store.get_photo(other_id).original_encoded_image is None
    finally:
        store.close()


def test_insert_rejects_empty_image(store):
    with pytest.raises(ValueError):
        store.insert_photo("", 1, 1)
    with pytest.raises(ValueError):
        store.insert_generated_portrait("p", "passport", "")


def test_photo_collection_is_bounded_and_keeps_most_recent(store):
    store.update_settings(max_stored_photos=3)
    ids = insert_photos(store, 7)

    assert [p.id for p in store.photos()] == list(reversed(ids[-3:]))
    for evicted in ids[:4]:
        assert store.state_of(evicted) == EntityState.EVICTED


def test_bound_holds_after_every_commit(store):
    store.update_settings(max_stored_photos=2, max_stored_portraits=4)
    for i in range(6):
        store.insert_photo(small_data_url(f"p{i}"), 1, 1)
        store.insert_generated_portrait(None, "social", small_data_url(f"g{i}"))
        store.wait()
        assert len(store.photos()) <= 2
        assert len(store.portraits()) <= 4


def test_identical_timestamps_keep_latest_insert(backend, optimizer):
    store = PortraitStore(
        CompressedStorage(backend), optimizer=optimizer, clock=FakeClock(step=0)
    )
    try:
        first, second = insert_photos(store, 2)
        assert [p.id for p in store.photos()] == [second, first]

        store.update_settings(max_stored_photos=1)
        assert [p.id for p in store.photos()] == [second]
    finally:
        store.close()


def test_portrait_collection_is_bounded(store):
    store.update_settings(max_stored_portraits=5)
    ids = insert_portraits(store, 8)
    assert [p.id for p in store.portraits()] == list(reversed(ids[-5:]))


def test_portrait_does_not_need_existing_source(store):
    portrait_id = store.insert_generated_portrait(
        "never-existed", "wedding", small_data_url(), GenerationParameters(150, -5, 40)
    )
    store.wait()

    portrait = store.get_portrait(portrait_id)
    assert portrait.scene == Scene.WEDDING
    assert (portrait.parameters.background, portrait.parameters.lighting) == (100, 0)
    assert store.source_photo(portrait) is None


def test_deleting_photo_leaves_portraits_dangling(store):
    (photo_id,) = insert_photos(store, 1)
    (portrait_id,) = insert_portraits(store, 1, source=photo_id)

    assert store.delete_photo(photo_id) is True

    portrait = store.get_portrait(portrait_id)
    assert portrait is not None
    assert portrait.source_photo_id == photo_id
    assert store.source_photo(portrait) is None
    assert store.current_photo_id is None


def test_deletes_are_idempotent(store):
    (photo_id,) = insert_photos(store, 1)
    (portrait_id,) = insert_portraits(store, 1)

    assert store.delete_photo(photo_id) is True
    assert store.delete_photo(photo_id) is False
    assert store.delete_portrait(portrait_id) is True
    assert store.delete_portrait(portrait_id) is False
    assert store.delete_photo("unknown") is False
    assert store.state_of(photo_id) == EntityState.EVICTED
    assert store.state_of("unknown") is None


def test_delete_during_pending_insert_is_not_undone(backend, clock):
    optimizer = BlockingOptimizer()
    store = PortraitStore(CompressedStorage(backend), optimizer=optimizer, clock=clock)
    try:
        photo_id = store.insert_photo(small_data_url(), 10, 10)
        assert store.delete_photo(photo_id) is True

        optimizer.release.set()
        store.wait()

        assert store.get_photo(photo_id) is None
        assert store.state_of(photo_id) == EntityState.EVICTED
        assert store.current_photo_id is None
    finally:
        optimizer.release.set()
        store.close()


def test_delete_other_photo_keeps_selection(store):
    first, second = insert_photos(store, 2)
    assert store.current_photo_id == second
    store.delete_photo(first)
    assert store.current_photo_id == second


def test_set_current_photo(store):
    first, _ = insert_photos(store, 2)
    store.set_current_photo(first)
    assert store.current_photo_id == first
    store.set_current_photo(None)
    assert store.current_photo_id is None
    with pytest.raises(LookupError):
        store.set_current_photo("unknown")


def test_set_current_scene_falls_back_to_default(store):
    store.set_current_scene("Passport")
    assert store.current_scene == Scene.PASSPORT
    store.set_current_scene("underwater")
    assert store.current_scene == Scene.PROFESSIONAL


def test_update_settings_validates_and_clamps(store):
    settings = store.update_settings(max_stored_photos=50, max_stored_portraits=0)
    assert settings.max_stored_photos == 20
    assert settings.max_stored_portraits == 1

    with pytest.raises(ValueError):
        store.update_settings(quality="ultra")
    with pytest.raises(ValueError):
        store.update_settings(colour="blue")
    assert store.settings.quality == "medium"


def test_quality_change_reoptimizes_from_originals(store, optimizer):
    raws = [small_data_url(f"raw{i}") for i in range(2)]
    for raw in raws:
        store.insert_photo(raw, 100, 100)
    store.wait()
    optimizer.calls.clear()

    store.update_settings(quality="low")
    store.wait()

    assert sorted(optimizer.calls) == sorted((raw, "low") for raw in raws)
    for photo in store.photos():
        assert photo.encoded_image.startswith("data:image/jpeg;base64,")
        assert photo.original_encoded_image in raws
        assert photo.size_kb == estimate_size_kb(photo.encoded_image)


def test_same_quality_does_not_reoptimize(store, optimizer):
    insert_photos(store, 1)
    optimizer.calls.clear()
    store.update_settings(quality="medium", theme="dark")
    store.wait()
    assert optimizer.calls == []


def test_reoptimize_without_original(store, optimizer):
    store.update_settings(save_originals=False)
    (skipped,) = insert_photos(store, 1)

    store.update_settings(save_originals=True)
    (reencoded,) = insert_photos(store, 1)
    store.get_photo(reencoded).original_encoded_image = None

    store.update_settings(save_originals=False)
    optimizer.calls.clear()
    store.reoptimize_all().result(5)
    assert optimizer.calls == []

    store.update_settings(save_originals=True)
    current = store.get_photo(reencoded).encoded_image
    store.reoptimize_all().result(5)
    assert (current, "medium") in optimizer.calls
    assert store.get_photo(skipped).original_encoded_image is None


def test_clear_all_keeps_settings_and_subscription(store):
    store.update_settings(quality="high", max_stored_photos=4)
    store.update_subscription(plan="pro", expires_at=1234)
    insert_photos(store, 2)
    insert_portraits(store, 2)
    store.set_current_scene("wedding")

    store.clear_all()

    assert store.photos() == []
    assert store.portraits() == []
    assert store.current_photo_id is None
    assert store.current_scene is None
    assert store.settings.quality == "high"
    assert store.settings.max_stored_photos == 4
    assert store.subscription.plan == "pro"


def test_update_subscription_rejects_unknown_fields(store):
    with pytest.raises(ValueError):
        store.update_subscription(tier="gold")
    with pytest.raises(ValueError):
        store.update_subscription(plan="platinum")


def test_total_storage_usage_includes_originals(store):
    (photo_id,) = insert_photos(store, 1)
    (portrait_id,) = insert_portraits(store, 1)
    photo = store.get_photo(photo_id)

    expected = (
        photo.size_kb
        + estimate_size_kb(photo.original_encoded_image)
        + store.get_portrait(portrait_id).size_kb
    )
    assert store.total_storage_usage_kb() == expected
    assert store.total_storage_usage_kb() > 0


@pytest.mark.parametrize("photos,portraits", [(0, 0), (3, 4), (20, 30)])
def test_state_survives_reload(store, backend, photos, portraits):
    store.update_settings(max_stored_photos=20, max_stored_portraits=30, theme="dark")
    photo_ids = insert_photos(store, photos)
    insert_portraits(store, portraits, source=photo_ids[0] if photo_ids else None)
    store.set_current_scene("academic")

    reloaded = PortraitStore(CompressedStorage(backend), key="test-storage")
    try:
        reloaded.load()
        assert reloaded.photos() == store.photos()
        assert reloaded.portraits() == store.portraits()
        assert reloaded.settings == store.settings
        assert reloaded.current_photo_id == store.current_photo_id
        assert reloaded.current_scene == Scene.ACADEMIC
        assert reloaded.serialize() == store.serialize()
    finally:
        reloaded.close()


def test_load_migrates_legacy_uncompressed_state(store, backend):
    image = small_data_url("legacy", size=3000)
    backend.data["test-storage"] = json.dumps({
        "state": {
            "userPhotos": [
                {"id": "p1", "dataUrl": image, "width": 10, "height": 12, "createdAt": 5},
            ],
            "currentPhotoId": "p1",
            "generatedPortraits": [
                {
                    "id": "g1",
                    "originalPhotoId": "p1",
                    "scene": "Wedding",
                    "dataUrl": image,
                    "parameters": {"background": 70, "lighting": 60, "detail": 80},
                    "createdAt": 6,
                },
            ],
            "settings": {
                "language": "en",
                "quality": "high",
                "theme": "dark",
                "notifications": True,
                "saveOriginals": False,
            },
            "subscription": {"plan": "pro", "expiresAt": None},
        },
        "version": 0,
    })

    store.load()

    photo = store.get_photo("p1")
    assert photo.size_kb == estimate_size_kb(image)
    assert store.current_photo_id == "p1"
    portrait = store.get_portrait("g1")
    assert portrait.source_photo_id == "p1"
    assert portrait.scene == Scene.WEDDING
    assert portrait.parameters.detail == 80
    assert store.settings.quality == "high"
    assert store.settings.save_originals is False
    assert store.settings.max_stored_photos == 10
    assert store.subscription.plan == "pro"


def test_load_ignores_unreadable_state(store, backend):
    backend.data["test-storage"] = "not json at all"
    store.load()
    assert store.photos() == []


def test_quota_pressure_trims_portraits_and_notifies_once(clock, optimizer):
    backend = MemoryBackend(quota_bytes=30_000)
    store = PortraitStore(CompressedStorage(backend), key="k", optimizer=optimizer, clock=clock)
    try:
        ids = [
            store.insert_generated_portrait("p", "passport", random_portrait_image())
            for _ in range(12)
        ]
        store.wait()

        kept = [p.id for p in store.portraits()]
        persisted = json.loads(store.storage.read("k"))["state"]["generatedPortraits"]
        assert [p["id"] for p in persisted] == kept
        assert 5 <= len(kept) < 12
        assert kept[0] == ids[-1]
        assert kept == [i for i in reversed(ids)][: len(kept)]

        assert store.consume_storage_notice() == STORAGE_NOTICE
        assert store.consume_storage_notice() is None
    finally:
        store.close()


def test_repeated_wipes_notify_once_per_pressure_episode(clock, optimizer):
    backend = MemoryBackend(quota_bytes=50)
    store = PortraitStore(CompressedStorage(backend), key="k", optimizer=optimizer, clock=clock)
    try:
        for _ in range(3):
            store.insert_generated_portrait("p", "social", random_portrait_image())
        store.wait()
        assert backend.data == {}
        assert store.consume_storage_notice() == STORAGE_NOTICE

        store.insert_generated_portrait("p", "social", random_portrait_image())
        store.wait()
        assert store.consume_storage_notice() is None

        # a clean write ends the episode
        store.clear_all()
        backend.quota_bytes = None
        store.set_current_scene("social")
        backend.quota_bytes = 50
        store.insert_generated_portrait("p", "social", random_portrait_image())
        store.wait()
        assert store.consume_storage_notice() == STORAGE_NOTICE
    finally:
        store.close()


def test_load_keeps_state_when_a_limit_is_unreadable(store, backend):
    insert_photos(store, 2)
    blob = json.loads(store.serialize())
    blob["state"]["settings"]["maxStoredPhotos"] = None
    backend.data["test-storage"] = json.dumps(blob)

    reloaded = PortraitStore(CompressedStorage(backend), key="test-storage")
    try:
        reloaded.load()
        assert len(reloaded.photos()) == 2
        assert reloaded.settings.max_stored_photos == 10
    finally:
        reloaded.close()
