"""Portrait scenes and the presets each one selects."""
from dataclasses import dataclass
from enum import Enum


class Scene(str, Enum):
    PROFESSIONAL = "professional"
    PASSPORT = "passport"
    BUSINESS = "business"
    ACADEMIC = "academic"
    SOCIAL = "social"
    WEDDING = "wedding"
    STUDENT = "student"
    VIRTUAL = "virtual"

    @classmethod
    def parse(cls, tag):
        """Map a free-form tag onto a scene, falling back to PROFESSIONAL."""
        if isinstance(tag, Scene):
            return tag
        try:
            return cls((tag or "").strip().lower())
        except ValueError:
            return DEFAULT_SCENE

    @property
    def preset(self):
        return SCENE_PRESETS[self]


DEFAULT_SCENE = Scene.PROFESSIONAL


@dataclass(frozen=True)
class ScenePreset:
    title: str
    background: int
    lighting: int
    detail: int
    api_label: str
    background_type: str
    color_tone: str
    attire: str
    backdrop_color: tuple
    effect: str


SCENE_PRESETS = {
    Scene.PROFESSIONAL: ScenePreset(
        "Professional Headshot", 70, 60, 80,
        "professional portrait", "gradient", "blue-gray", "formal business",
        (230, 230, 230), "vignette",
    ),
    Scene.PASSPORT: ScenePreset(
        "Passport / ID", 100, 50, 40,
        "id photo", "solid", "white", "neat casual",
        (255, 255, 255), "border",
    ),
    Scene.BUSINESS: ScenePreset(
        "Business Card", 60, 70, 60,
        "business portrait", "gradient", "navy", "formal business",
        (240, 245, 250), "tint:0,0,100",
    ),
    Scene.ACADEMIC: ScenePreset(
        "Academic Profile", 50, 50, 50,
        "academic portrait", "textured", "maroon", "academic",
        (245, 245, 240), "tint:100,50,0",
    ),
    Scene.SOCIAL: ScenePreset(
        "Social Media", 50, 50, 50,
        "social media portrait", "blurred", "vibrant", "smart casual",
        (240, 240, 245), "tint:50,0,100",
    ),
    Scene.WEDDING: ScenePreset(
        "Wedding", 50, 50, 50,
        "wedding portrait", "elegant", "cream", "formal",
        (255, 245, 245), "glow",
    ),
    Scene.STUDENT: ScenePreset(
        "Student ID", 50, 50, 50,
        "student id photo", "solid", "white", "neat casual",
        (240, 248, 255), "tint:0,50,100",
    ),
    Scene.VIRTUAL: ScenePreset(
        "Virtual Meeting", 50, 50, 50,
        "virtual meeting portrait", "digital", "teal", "business casual",
        (224, 240, 224), "grid",
    ),
}
