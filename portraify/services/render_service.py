"""Local portrait rendering used when the remote API is unavailable."""
import io
from PIL import Image as PILImage, ImageDraw, ImageEnhance, ImageFilter

from portraify.models.scene import Scene
from portraify.services.image_service import open_image, to_data_url

DEFAULT_RESOLUTION = "1024x1024"


def parse_resolution(resolution):
    try:
        width, height = (int(x) for x in resolution.lower().split("x"))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid resolution: {resolution!r}") from exc
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid resolution: {resolution!r}")
    return width, height


def render_portrait(encoded_image, scene, parameters, resolution=DEFAULT_RESOLUTION):
    """Restyle a photo for ``scene`` with plain image filters.

    Returns a JPEG data URL of size ``resolution``.

    Raises:
        DecodeError if the photo cannot be read
        ValueError for a malformed resolution
    """
    width, height = parse_resolution(resolution or DEFAULT_RESOLUTION)
    scene = Scene.parse(scene)
    preset = scene.preset

    photo = open_image(encoded_image).convert("RGB")
    scale = min(width / photo.width, height / photo.height)
    fitted = photo.resize(
        (max(1, int(photo.width * scale)), max(1, int(photo.height * scale))),
        PILImage.LANCZOS,
    )
    canvas = PILImage.new("RGB", (width, height), preset.backdrop_color)
    canvas.paste(fitted, ((width - fitted.width) // 2, (height - fitted.height) // 2))

    # light skin smoothing
    canvas = PILImage.blend(canvas, canvas.filter(ImageFilter.SMOOTH), 0.3)

    contrast = 1 + (parameters.lighting / 100 - 0.5) * 0.1
    canvas = ImageEnhance.Contrast(canvas).enhance(contrast)

    if parameters.detail > 50:
        amount = (parameters.detail - 50) / 50
        canvas = ImageEnhance.Sharpness(canvas).enhance(1 + amount)
        canvas = ImageEnhance.Color(canvas).enhance(1 + amount * 0.2)

    canvas = _apply_effect(canvas, preset.effect)

    buffer = io.BytesIO()
    canvas.save(buffer, format="JPEG", quality=95)
    return to_data_url(buffer.getvalue())


def _apply_effect(img, effect):
    width, height = img.size
    if effect == "vignette":
        mask = PILImage.radial_gradient("L").resize((width, height))
        shade = PILImage.new("RGB", (width, height), (0, 0, 0))
        return PILImage.composite(shade, img, mask.point(lambda v: int(v * 0.05)))
    if effect == "border":
        draw = ImageDraw.Draw(img)
        draw.rectangle([0, 0, width - 1, height - 1], outline=(255, 255, 255), width=5)
        return img
    if effect.startswith("tint:"):
        color = tuple(int(c) for c in effect[5:].split(","))
        return PILImage.blend(img, PILImage.new("RGB", (width, height), color), 0.02)
    if effect == "glow":
        glow = PILImage.new("RGB", (width, height), (255, 255, 200))
        softened = PILImage.blend(img, img.filter(ImageFilter.GaussianBlur(20)), 0.2)
        return PILImage.blend(softened, glow, 0.1)
    if effect == "grid":
        overlay = img.copy()
        draw = ImageDraw.Draw(overlay)
        for y in range(0, height, 20):
            draw.line([(0, y), (width, y)], fill=(0, 100, 200))
        for x in range(0, width, 20):
            draw.line([(x, 0), (x, height)], fill=(0, 100, 200))
        return PILImage.blend(img, overlay, 0.1)
    return img
