#!/usr/bin/env python3
"""Seed the portrait store with generated sample photos for local development."""
import io
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from PIL import Image as PILImage, ImageDraw

from portraify import create_app
from portraify.extensions import get_store
from portraify.services.image_service import to_data_url
from portraify.workers.generation import generate_portrait

app = create_app()

SAMPLE_PHOTOS = [
    # (width, height, skin tone, backdrop)
    (1600, 2000, (224, 172, 140), (90, 110, 140)),
    (2000, 2000, (198, 134, 96), (60, 60, 60)),
    (1200, 1500, (241, 194, 165), (180, 200, 220)),
]

SAMPLE_SCENES = ["professional", "passport", "wedding"]


def make_photo(width, height, skin, backdrop):
    """Draw a simple head-and-shoulders silhouette."""
    img = PILImage.effect_noise((width, height), 40).convert("RGB")
    img = PILImage.blend(PILImage.new("RGB", (width, height), backdrop), img, 0.15)
    draw = ImageDraw.Draw(img)
    cx = width // 2
    head = min(width, height) // 5
    draw.ellipse([cx - head, height // 4, cx + head, height // 4 + int(head * 2.4)], fill=skin)
    draw.rectangle([cx - head * 2, int(height * 0.7), cx + head * 2, height], fill=(40, 40, 60))
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=92)
    return to_data_url(buffer.getvalue()), width, height


def seed():
    with app.app_context():
        store = get_store()
        if store.photos():
            print("Store already has photos, skipping")
            return

        photo_ids = []
        for width, height, skin, backdrop in SAMPLE_PHOTOS:
            photo_ids.append(store.insert_photo(*make_photo(width, height, skin, backdrop)))
        store.wait()

        for photo_id, scene in zip(photo_ids, SAMPLE_SCENES):
            generate_portrait(store, photo_id, scene, use_remote=False)
        store.wait()

        print(f"Seeded {len(store.photos())} photos and {len(store.portraits())} portraits "
              f"({store.total_storage_usage_kb()} KB)")


if __name__ == "__main__":
    seed()
