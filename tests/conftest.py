import io

import pytest
from PIL import Image as PILImage

from portraify import create_app
from portraify.extensions import db as _db, get_store
from portraify.services.image_service import OptimizedImage, estimate_size_kb, to_data_url
from portraify.services.storage_service import CompressedStorage, MemoryBackend
from portraify.services.store import PortraitStore


@pytest.fixture(scope="session")
def app():
    """Create application for testing."""
    app = create_app("testing")
    with app.app_context():
        _db.create_all()
        yield app
        _db.drop_all()
    app.extensions["portraify_store"].close()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    """Per-test database session with rollback."""
    with app.app_context():
        _db.session.begin_nested()
        yield _db
        _db.session.rollback()


@pytest.fixture
def app_store(app):
    """The app's own store, emptied after each test."""
    with app.app_context():
        store = get_store()
        yield store
        store.wait()
        store.clear_all()
        store.update_settings(quality="medium", max_stored_photos=10,
                              max_stored_portraits=20, save_originals=True)
        store.wait()


class FakeClock:
    """Millisecond clock that advances by ``step`` on every reading."""

    def __init__(self, start=1_700_000_000_000, step=1):
        self.now = start
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


class FakeOptimizer:
    """Records calls and returns a small, recognisable replacement image."""

    def __init__(self):
        self.calls = []

    def __call__(self, encoded_image, tier):
        self.calls.append((encoded_image, tier.name))
        optimized = small_data_url(tag=f"{tier.name}-{len(self.calls)}")
        return OptimizedImage(optimized, 8, 8, estimate_size_kb(optimized))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return MemoryBackend(quota_bytes=None)


@pytest.fixture
def optimizer():
    return FakeOptimizer()


@pytest.fixture
def store(backend, clock, optimizer):
    store = PortraitStore(
        CompressedStorage(backend), key="test-storage", optimizer=optimizer, clock=clock
    )
    yield store
    store.close()


def make_image_bytes(width, height, fmt="JPEG", quality=95, noise=True):
    """Encode a test image; noisy images stay large after JPEG compression."""
    if noise:
        bands = [PILImage.effect_noise((width, height), 80) for _ in range(3)]
        img = PILImage.merge("RGB", bands)
    else:
        img = PILImage.new("RGB", (width, height), (120, 140, 160))
    buffer = io.BytesIO()
    if fmt == "JPEG":
        img.save(buffer, format=fmt, quality=quality)
    else:
        img.save(buffer, format=fmt)
    return buffer.getvalue()


def make_data_url(width, height, quality=95, noise=True):
    return to_data_url(make_image_bytes(width, height, quality=quality, noise=noise))


def small_data_url(tag="x", size=600):
    """A syntactically valid data URL that is not a real image."""
    payload = (tag.encode("ascii") * size)[:size]
    return to_data_url(payload)
