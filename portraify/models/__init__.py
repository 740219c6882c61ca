from portraify.models.storage_entry import StorageEntry
from portraify.models.scene import Scene, ScenePreset, SCENE_PRESETS, DEFAULT_SCENE
from portraify.models.entities import (
    EntityState,
    GeneratedPortrait,
    GenerationParameters,
    Photo,
    QualityTier,
    QUALITY_TIERS,
    Settings,
    StoreState,
    Subscription,
)

__all__ = [
    "StorageEntry",
    "Scene",
    "ScenePreset",
    "SCENE_PRESETS",
    "DEFAULT_SCENE",
    "EntityState",
    "GeneratedPortrait",
    "GenerationParameters",
    "Photo",
    "QualityTier",
    "QUALITY_TIERS",
    "Settings",
    "StoreState",
    "Subscription",
]
