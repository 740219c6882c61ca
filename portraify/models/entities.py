"""Entities held by the portrait store and their persisted JSON form."""
from dataclasses import dataclass, field, fields, replace
from enum import Enum

from portraify.models.scene import Scene


class EntityState(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    EVICTED = "evicted"


@dataclass(frozen=True)
class QualityTier:
    name: str
    re_encode_quality: float  # 0-1 lossy compression factor
    max_dimension: int


QUALITY_TIERS = {
    "low": QualityTier("low", 0.5, 600),
    "medium": QualityTier("medium", 0.7, 800),
    "high": QualityTier("high", 0.9, 1200),
}


def clamp(value, low=0, high=100):
    return max(low, min(high, int(round(value))))


@dataclass
class GenerationParameters:
    background: int = 50
    lighting: int = 50
    detail: int = 50
    style: str | None = None
    remote_job_id: str | None = None

    def __post_init__(self):
        self.background = clamp(self.background)
        self.lighting = clamp(self.lighting)
        self.detail = clamp(self.detail)

    def to_dict(self):
        data = {
            "background": self.background,
            "lighting": self.lighting,
            "detail": self.detail,
        }
        if self.style:
            data["style"] = self.style
        if self.remote_job_id:
            data["remoteJobId"] = self.remote_job_id
        return data

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(
            background=data.get("background", 50),
            lighting=data.get("lighting", 50),
            detail=data.get("detail", 50),
            style=data.get("style"),
            remote_job_id=data.get("remoteJobId"),
        )


@dataclass
class Photo:
    id: str
    encoded_image: str
    width: int
    height: int
    created_at: int  # ms since epoch
    size_kb: int
    original_encoded_image: str | None = None

    def to_dict(self):
        data = {
            "id": self.id,
            "dataUrl": self.encoded_image,
            "width": self.width,
            "height": self.height,
            "createdAt": self.created_at,
            "sizeKB": self.size_kb,
        }
        if self.original_encoded_image:
            data["originalDataUrl"] = self.original_encoded_image
        return data

    @classmethod
    def from_dict(cls, data, estimate):
        """Build a Photo from persisted JSON.

        ``estimate`` recomputes the size for legacy entries stored without one.
        """
        encoded = data["dataUrl"]
        size_kb = data.get("sizeKB")
        if size_kb is None:
            size_kb = estimate(encoded)
        return cls(
            id=data["id"],
            encoded_image=encoded,
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
            created_at=int(data.get("createdAt") or 0),
            size_kb=size_kb,
            original_encoded_image=data.get("originalDataUrl"),
        )


@dataclass
class GeneratedPortrait:
    id: str
    source_photo_id: str | None
    scene: Scene
    encoded_image: str
    parameters: GenerationParameters
    created_at: int
    size_kb: int

    def to_dict(self):
        return {
            "id": self.id,
            "sourcePhotoId": self.source_photo_id,
            "scene": self.scene.value,
            "dataUrl": self.encoded_image,
            "parameters": self.parameters.to_dict(),
            "createdAt": self.created_at,
            "sizeKB": self.size_kb,
        }

    @classmethod
    def from_dict(cls, data, estimate):
        encoded = data["dataUrl"]
        size_kb = data.get("sizeKB")
        if size_kb is None:
            size_kb = estimate(encoded)
        # version 0 blobs named the back-reference originalPhotoId
        source = data.get("sourcePhotoId", data.get("originalPhotoId"))
        return cls(
            id=data["id"],
            source_photo_id=source,
            scene=Scene.parse(data.get("scene")),
            encoded_image=encoded,
            parameters=GenerationParameters.from_dict(data.get("parameters")),
            created_at=int(data.get("createdAt") or 0),
            size_kb=size_kb,
        )


# (min, max) accepted for the collection limits
PHOTO_LIMIT_RANGE = (1, 20)
PORTRAIT_LIMIT_RANGE = (1, 30)

_SETTINGS_JSON_KEYS = {
    "quality": "quality",
    "max_stored_photos": "maxStoredPhotos",
    "max_stored_portraits": "maxStoredPortraits",
    "save_originals": "saveOriginals",
    "language": "language",
    "theme": "theme",
    "notifications": "notifications",
}


@dataclass
class Settings:
    quality: str = "medium"
    max_stored_photos: int = 10
    max_stored_portraits: int = 20
    save_originals: bool = True
    # UI only
    language: str = "en"
    theme: str = "system"
    notifications: bool = True

    def __post_init__(self):
        if self.quality not in QUALITY_TIERS:
            raise ValueError(f"Unknown quality tier: {self.quality!r}")
        self.max_stored_photos = clamp(self.max_stored_photos, *PHOTO_LIMIT_RANGE)
        self.max_stored_portraits = clamp(self.max_stored_portraits, *PORTRAIT_LIMIT_RANGE)
        self.save_originals = bool(self.save_originals)
        self.notifications = bool(self.notifications)

    @property
    def tier(self):
        return QUALITY_TIERS[self.quality]

    def merged(self, **partial):
        """Return a copy with ``partial`` applied. Unknown keys raise ValueError."""
        names = {f.name for f in fields(self)}
        unknown = set(partial) - names
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return replace(self, **partial)

    def to_dict(self):
        return {json_key: getattr(self, name) for name, json_key in _SETTINGS_JSON_KEYS.items()}

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        kwargs = {
            name: data[json_key]
            for name, json_key in _SETTINGS_JSON_KEYS.items()
            if json_key in data
        }
        if kwargs.get("quality") not in (None, *QUALITY_TIERS):
            kwargs.pop("quality")
        # a bad limit falls back to its default instead of failing the load
        for name in ("max_stored_photos", "max_stored_portraits"):
            value = kwargs.get(name)
            if name in kwargs and (isinstance(value, bool) or not isinstance(value, (int, float))):
                kwargs.pop(name)
        return cls(**kwargs)

    @staticmethod
    def from_json_partial(data):
        """Translate camelCase request keys into Settings field names."""
        reverse = {json_key: name for name, json_key in _SETTINGS_JSON_KEYS.items()}
        return {reverse.get(key, key): value for key, value in data.items()}


SUBSCRIPTION_PLANS = {"free", "pro", "unlimited"}


@dataclass
class Subscription:
    plan: str = "free"
    expires_at: int | None = None

    def __post_init__(self):
        if self.plan not in SUBSCRIPTION_PLANS:
            raise ValueError(f"Unknown plan: {self.plan!r}")

    def to_dict(self):
        return {"plan": self.plan, "expiresAt": self.expires_at}

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        plan = data.get("plan", "free")
        if plan not in SUBSCRIPTION_PLANS:
            plan = "free"
        return cls(plan=plan, expires_at=data.get("expiresAt"))


@dataclass
class StoreState:
    """Everything the store persists, in memory form."""

    photos: list = field(default_factory=list)
    portraits: list = field(default_factory=list)
    current_photo_id: str | None = None
    current_scene: Scene | None = None
    settings: Settings = field(default_factory=Settings)
    subscription: Subscription = field(default_factory=Subscription)
