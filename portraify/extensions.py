import logging
from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
import redis as _redis

logger = logging.getLogger(__name__)

db = SQLAlchemy()
migrate = Migrate()

# Initialized lazily in create_app
redis_client: _redis.Redis = None  # type: ignore

STORE_EXTENSION = "portraify_store"


def init_redis(app):
    global redis_client
    redis_url = app.config.get("REDIS_URL", "")
    if not redis_url:
        logger.warning("REDIS_URL not set, redis storage backend disabled")
        redis_client = None
        return

    try:
        redis_client = _redis.from_url(redis_url, decode_responses=True)
        redis_client.ping()
    except Exception as e:
        logger.warning("Redis connection failed (%s), redis storage backend disabled", e)
        redis_client = None


def init_store(app):
    """Build the persisted portrait store for this app and load its state.

    The store is kept on ``app.extensions`` so every view and CLI command
    reaches the same instance through :func:`get_store`.
    """
    from portraify.services.storage_service import CompressedStorage, make_backend
    from portraify.services.store import PortraitStore

    with app.app_context():
        backend = make_backend(app.config, redis_client=redis_client)
        storage = CompressedStorage(
            backend,
            keep=app.config["STORAGE_REMEDIATION_KEEP"],
            eviction_priority=app.config["STORAGE_EVICTION_PRIORITY"],
        )
        store = PortraitStore(storage, key=app.config["STORAGE_KEY"], app=app)
        store.load()

    app.extensions[STORE_EXTENSION] = store
    return store


def get_store():
    return current_app.extensions[STORE_EXTENSION]
