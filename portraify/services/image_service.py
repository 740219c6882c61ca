import base64
import binascii
import io
import math
from dataclasses import dataclass
from PIL import Image as PILImage

from portraify.models.entities import QualityTier, QUALITY_TIERS


ALLOWED_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

# Images estimated below this size are stored as-is
SKIP_THRESHOLD_KB = 100


class DecodeError(ValueError):
    """The encoded image could not be decoded."""


@dataclass
class OptimizedImage:
    encoded_image: str
    width: int | None
    height: int | None
    size_kb: int


def to_data_url(image_bytes, mime_type="image/jpeg"):
    return f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"


def _payload(encoded_image):
    if "," in encoded_image:
        return encoded_image.split(",", 1)[1]
    return encoded_image


def decode_data_url(encoded_image):
    """Return the raw bytes behind a data URL (or bare base64 string)."""
    if not encoded_image:
        raise DecodeError("Empty image payload")
    try:
        return base64.b64decode(_payload(encoded_image), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError("Image payload is not valid base64") from exc


def estimate_size_kb(encoded_image):
    """Estimate the decoded size of a base64 image in KB.

    Base64 stores 3 bytes in 4 characters, so the payload length times 3/4
    approximates the byte size. Never raises; degenerate input is 0 KB.
    """
    if not encoded_image or not isinstance(encoded_image, str):
        return 0
    estimated_bytes = len(_payload(encoded_image)) * 3 / 4
    return int(math.floor(estimated_bytes / 1024 + 0.5))


def open_image(encoded_image):
    try:
        img = PILImage.open(io.BytesIO(decode_data_url(encoded_image)))
        img.load()
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError("Invalid image data") from exc
    return img


def image_dimensions(encoded_image):
    img = open_image(encoded_image)
    return img.size


def optimize(encoded_image, tier):
    """Shrink and re-encode an image for storage.

    Args:
        encoded_image: data URL of the source image
        tier: a QualityTier, or the name of one

    Returns:
        OptimizedImage. Images below SKIP_THRESHOLD_KB come back unchanged
        with width/height left as None.

    Raises:
        DecodeError if the image cannot be read
    """
    if isinstance(tier, str):
        tier = QUALITY_TIERS[tier]

    size_kb = estimate_size_kb(encoded_image)
    if size_kb < SKIP_THRESHOLD_KB:
        return OptimizedImage(encoded_image, None, None, size_kb)

    img = open_image(encoded_image)
    width, height = img.size
    if width > tier.max_dimension:
        ratio = tier.max_dimension / width
        width = tier.max_dimension
        height = max(1, math.floor(height * ratio))

    if img.mode != "RGB":
        img = img.convert("RGB")
    if (width, height) != img.size:
        img = img.resize((width, height), PILImage.LANCZOS)

    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=round(tier.re_encode_quality * 100))
    optimized = to_data_url(buffer.getvalue())
    return OptimizedImage(optimized, width, height, estimate_size_kb(optimized))


def auto_tier_for_size(size_kb):
    """Pick a preset from the image size alone (bigger images squeezed harder)."""
    if size_kb > 1000:
        return QUALITY_TIERS["low"]
    if size_kb > 500:
        return QualityTier("auto", 0.6, 700)
    return QUALITY_TIERS["medium"]


def load_upload(image_bytes):
    """Validate an uploaded image.

    - Checks file size
    - Verifies it's a real image via Pillow
    - Keeps the upload's own encoding; the store optimizes it later

    Returns:
        (data_url, width, height)

    Raises:
        ValueError on invalid input
    """
    if len(image_bytes) > MAX_FILE_SIZE:
        raise ValueError(f"Image too large: {len(image_bytes)} bytes (max {MAX_FILE_SIZE})")

    try:
        img = PILImage.open(io.BytesIO(image_bytes))
        img.verify()  # verify it's a real image
    except Exception:
        raise ValueError("Invalid image file")

    # Re-open (verify() closes the file) to read format and size
    img = PILImage.open(io.BytesIO(image_bytes))
    mime_type = ALLOWED_FORMATS.get(img.format)
    if mime_type is None:
        raise ValueError(f"Unsupported image format: {img.format}")

    width, height = img.size
    return to_data_url(image_bytes, mime_type), width, height
