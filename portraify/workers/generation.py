"""Portrait generation: remote API first, local filters as fallback."""
import logging
from flask import current_app, has_app_context

from portraify.models.entities import GenerationParameters
from portraify.models.scene import Scene
from portraify.services import generation_service, image_service, render_service
from portraify.services.generation_service import RemoteGenerationError

logger = logging.getLogger(__name__)


class GenerationFailedError(Exception):
    """Neither the remote API nor the local renderer produced a portrait."""


def default_parameters(scene, background=None, lighting=None, detail=None, style=None):
    """Slider values for ``scene``, overridden by any given value."""
    preset = Scene.parse(scene).preset
    return GenerationParameters(
        background=preset.background if background is None else background,
        lighting=preset.lighting if lighting is None else lighting,
        detail=preset.detail if detail is None else detail,
        style=style or None,
    )


def _remote_enabled(use_remote):
    if use_remote is not None:
        return use_remote
    return has_app_context() and current_app.config.get("GENERATION_USE_REMOTE", True)


def generate_portrait(
    store,
    photo_id,
    scene,
    background=None,
    lighting=None,
    detail=None,
    style=None,
    resolution=None,
    use_remote=None,
):
    """Generate a portrait of a stored photo and queue it for commit.

    The remote API gets one attempt. Any failure there (network, bad status,
    malformed reply) falls back to local rendering. Only when that also fails
    does the whole generation fail.

    Returns:
        id of the new portrait (pending until the store commits it)

    Raises:
        LookupError if the photo is not in the store
        GenerationFailedError if both paths failed
    """
    photo = store.get_photo(photo_id)
    if photo is None:
        raise LookupError(f"Photo {photo_id} not found")

    scene = Scene.parse(scene)
    params = default_parameters(scene, background, lighting, detail, style)
    encoded = None

    if _remote_enabled(use_remote):
        try:
            payload = photo.encoded_image.split(",", 1)[-1]
            result = generation_service.request_portrait(payload, scene, params, resolution)
            remote_image = image_service.to_data_url(image_service.decode_data_url(result.image_b64))
            params.remote_job_id = result.job_id
            encoded = _shrink(remote_image)
            logger.info(
                "Remote portrait %s ready for photo %s (%s s)",
                result.job_id, photo_id, result.processing_time,
            )
        except (RemoteGenerationError, image_service.DecodeError) as e:
            logger.warning(
                "Remote generation failed for photo %s, falling back to local: %s", photo_id, e
            )
            params.remote_job_id = None
            encoded = None

    if encoded is None:
        try:
            encoded = render_service.render_portrait(
                photo.encoded_image, scene, params, resolution or render_service.DEFAULT_RESOLUTION
            )
        except Exception as e:
            logger.exception("Local rendering failed for photo %s", photo_id)
            raise GenerationFailedError(f"Portrait generation failed: {e}") from e

    portrait_id = store.insert_generated_portrait(photo_id, scene, encoded, params)
    logger.info("Queued %s portrait %s for photo %s", scene.value, portrait_id, photo_id)
    return portrait_id


def _shrink(encoded):
    """Re-encode large remote results before they are stored."""
    tier = image_service.auto_tier_for_size(image_service.estimate_size_kb(encoded))
    try:
        return image_service.optimize(encoded, tier).encoded_image
    except image_service.DecodeError:
        logger.warning("Remote image could not be re-encoded, storing as received")
        return encoded
