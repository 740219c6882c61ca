import logging
from dataclasses import dataclass
import httpx
from flask import current_app

from portraify.models.scene import Scene

logger = logging.getLogger(__name__)

DEFAULT_RESOLUTION = "1024x1024"

NEGATIVE_PROMPT = (
    "blurry, distorted, low quality, deformed face, bad anatomy, disfigured, "
    "poorly drawn face, mutation, extra limbs, poorly drawn hands, missing limbs, "
    "out of frame, watermark, signature, text, cartoon, anime, 3d, doll, "
    "pixelated, unnatural eyes, overexposed, casual clothing, nudity, NSFW, "
    "oversaturated colors, plastic looking skin, overprocessed"
)


class RemoteGenerationError(Exception):
    """The remote API did not produce a portrait."""

    def __init__(self, message, code="api_error", job_id=None):
        super().__init__(message)
        self.code = code
        self.job_id = job_id


@dataclass
class GenerationResult:
    job_id: str | None
    image_b64: str
    processing_time: float | None
    size_kb: int | None


def _level(value, high, mid, low):
    if value > 75:
        return high
    if value > 50:
        return mid
    return low


def build_prompt(scene, parameters):
    """Describe the wanted portrait for the generation model."""
    preset = Scene.parse(scene).preset
    background = _level(parameters.background, "high-quality", "medium-quality", "simple")
    lighting = _level(parameters.lighting, "dramatic", "professional", "soft")
    detail = _level(parameters.detail, "highly detailed", "detailed", "smooth")
    style = f" in {parameters.style} style" if parameters.style else ""
    return (
        f"Professional {preset.api_label} headshot of a real person, "
        f"strictly maintain original facial features and skin texture, "
        f"{preset.attire} attire in neutral colors, natural lighting and skin tone, "
        f"{background} {preset.background_type} background in {preset.color_tone} tones, "
        f"{lighting} lighting with {detail} features{style}"
    )


def build_request(image_b64, scene, parameters, resolution=None):
    """JSON body for one generation attempt."""
    scene = Scene.parse(scene)
    body_params = {
        "background": parameters.background,
        "lighting": parameters.lighting,
        "detail": parameters.detail,
    }
    if parameters.style:
        body_params["style"] = parameters.style
    if resolution:
        body_params["resolution"] = resolution
    return {
        "image": image_b64,
        "scene": scene.value,
        "prompt": build_prompt(scene, parameters),
        "negative_prompt": NEGATIVE_PROMPT,
        "parameters": body_params,
    }


def parse_response(payload):
    """Validate a generation reply.

    Returns:
        GenerationResult for a completed job

    Raises:
        RemoteGenerationError for failed, unfinished or malformed replies
    """
    if not isinstance(payload, dict):
        raise RemoteGenerationError("Malformed response: not an object", code="malformed")

    job_id = payload.get("id")
    status = payload.get("status")
    if status == "failed":
        error = payload.get("error")
        if not isinstance(error, dict):
            error = {"message": error} if isinstance(error, str) and error else {}
        raise RemoteGenerationError(
            error.get("message") or "Generation failed",
            code=error.get("code") or "api_error",
            job_id=job_id,
        )
    if status != "completed":
        raise RemoteGenerationError(f"Unexpected status: {status!r}", code="bad_status", job_id=job_id)

    result = payload.get("result")
    image = result.get("image") if isinstance(result, dict) else None
    if not image or not isinstance(image, str):
        raise RemoteGenerationError("Completed response has no image", code="malformed", job_id=job_id)

    metadata = result.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    return GenerationResult(
        job_id=str(job_id) if job_id is not None else None,
        image_b64=image,
        processing_time=metadata.get("processingTime"),
        size_kb=metadata.get("size"),
    )


def request_portrait(image_b64, scene, parameters, resolution=None):
    """Send one generation request. No retries; any failure raises.

    Raises:
        RemoteGenerationError on configuration, transport or API errors
    """
    url = current_app.config["GENERATION_API_URL"]
    api_key = current_app.config["GENERATION_API_KEY"]
    if not url or not api_key:
        raise RemoteGenerationError("Generation API is not configured", code="not_configured")

    body = build_request(image_b64, scene, parameters, resolution)
    try:
        resp = httpx.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=current_app.config["GENERATION_TIMEOUT"],
        )
    except httpx.HTTPError as exc:
        raise RemoteGenerationError(f"Request failed: {exc}", code="network_error") from exc

    try:
        payload = resp.json()
    except ValueError as exc:
        raise RemoteGenerationError(
            f"API error: {resp.status_code} non-JSON response", code="malformed"
        ) from exc

    if resp.status_code >= 400:
        error = payload.get("error") if isinstance(payload, dict) else None
        message = error.get("message") if isinstance(error, dict) else error
        logger.error("Generation API error %s: %s", resp.status_code, message)
        raise RemoteGenerationError(
            message or f"API error: {resp.status_code}", code=f"http_{resp.status_code}"
        )

    return parse_response(payload)
