"""JSON endpoints driving the portrait store."""
import logging
from flask import Response, abort, request
from portraify.blueprints.api import api_bp
from portraify.extensions import get_store
from portraify.models.entities import Settings
from portraify.models.scene import SCENE_PRESETS
from portraify.services import image_service
from portraify.workers.generation import GenerationFailedError, generate_portrait

logger = logging.getLogger(__name__)


def photo_json(photo):
    return {
        "id": photo.id,
        "width": photo.width,
        "height": photo.height,
        "createdAt": photo.created_at,
        "sizeKB": photo.size_kb,
        "hasOriginal": photo.original_encoded_image is not None,
    }


def portrait_json(store, portrait):
    return {
        "id": portrait.id,
        "sourcePhotoId": portrait.source_photo_id,
        "sourceAvailable": store.source_photo(portrait) is not None,
        "scene": portrait.scene.value,
        "parameters": portrait.parameters.to_dict(),
        "createdAt": portrait.created_at,
        "sizeKB": portrait.size_kb,
    }


def _image_response(encoded_image):
    mime_type = "image/jpeg"
    if encoded_image.startswith("data:") and ";" in encoded_image:
        mime_type = encoded_image[5:encoded_image.index(";")]
    try:
        data = image_service.decode_data_url(encoded_image)
    except image_service.DecodeError:
        logger.exception("Stored image could not be decoded")
        abort(500)
    return Response(data, mimetype=mime_type, headers={"Cache-Control": "private, max-age=3600"})


# -- photos ---------------------------------------------------------------


@api_bp.route("/photos")
def list_photos():
    store = get_store()
    return {
        "photos": [photo_json(p) for p in store.photos()],
        "currentPhotoId": store.current_photo_id,
    }


@api_bp.route("/photos", methods=["POST"])
def upload_photo():
    """Accept a multipart ``photo`` file; the photo commits asynchronously."""
    upload = request.files.get("photo")
    if upload is None:
        return {"error": "Missing 'photo' file"}, 400
    try:
        data_url, width, height = image_service.load_upload(upload.read())
    except ValueError as e:
        return {"error": str(e)}, 400

    photo_id = get_store().insert_photo(data_url, width, height)
    return {"id": photo_id, "status": "pending"}, 202


@api_bp.route("/photos/<photo_id>")
def get_photo(photo_id):
    store = get_store()
    photo = store.get_photo(photo_id)
    if photo is None:
        if store.is_pending(photo_id):
            return {"id": photo_id, "status": "pending"}, 202
        abort(404)
    return photo_json(photo)


@api_bp.route("/photos/<photo_id>/image")
def photo_image(photo_id):
    photo = get_store().get_photo(photo_id)
    if photo is None:
        abort(404)
    return _image_response(photo.encoded_image)


@api_bp.route("/photos/<photo_id>", methods=["DELETE"])
def delete_photo(photo_id):
    get_store().delete_photo(photo_id)
    return "", 204


@api_bp.route("/photos/<photo_id>/select", methods=["POST"])
def select_photo(photo_id):
    try:
        get_store().set_current_photo(photo_id)
    except LookupError:
        abort(404)
    return {"currentPhotoId": photo_id}


# -- portraits ------------------------------------------------------------


@api_bp.route("/portraits")
def list_portraits():
    store = get_store()
    return {"portraits": [portrait_json(store, p) for p in store.portraits()]}


@api_bp.route("/portraits", methods=["POST"])
def create_portrait():
    """Generate a portrait from a stored photo.

    Body: {photoId, scene, background?, lighting?, detail?, style?,
    resolution?, useRemote?}
    """
    body = request.get_json(silent=True) or {}
    store = get_store()
    photo_id = body.get("photoId") or store.current_photo_id
    if not photo_id:
        return {"error": "photoId is required"}, 400

    scene = body.get("scene") or store.current_scene
    try:
        portrait_id = generate_portrait(
            store,
            photo_id,
            scene,
            background=body.get("background"),
            lighting=body.get("lighting"),
            detail=body.get("detail"),
            style=body.get("style"),
            resolution=body.get("resolution"),
            use_remote=body.get("useRemote"),
        )
    except LookupError:
        abort(404)
    except GenerationFailedError as e:
        return {"error": str(e)}, 502
    except (TypeError, ValueError) as e:
        return {"error": str(e)}, 400
    store.set_current_scene(scene)
    return {"id": portrait_id, "status": "pending"}, 202


@api_bp.route("/portraits/<portrait_id>")
def get_portrait(portrait_id):
    store = get_store()
    portrait = store.get_portrait(portrait_id)
    if portrait is None:
        if store.is_pending(portrait_id):
            return {"id": portrait_id, "status": "pending"}, 202
        abort(404)
    return portrait_json(store, portrait)


@api_bp.route("/portraits/<portrait_id>/image")
def portrait_image(portrait_id):
    portrait = get_store().get_portrait(portrait_id)
    if portrait is None:
        abort(404)
    return _image_response(portrait.encoded_image)


@api_bp.route("/portraits/<portrait_id>", methods=["DELETE"])
def delete_portrait(portrait_id):
    get_store().delete_portrait(portrait_id)
    return "", 204


@api_bp.route("/scenes")
def list_scenes():
    return {
        "scenes": [
            {
                "id": scene.value,
                "title": preset.title,
                "defaults": {
                    "background": preset.background,
                    "lighting": preset.lighting,
                    "detail": preset.detail,
                },
            }
            for scene, preset in SCENE_PRESETS.items()
        ]
    }


# -- settings & storage ---------------------------------------------------


@api_bp.route("/settings")
def get_settings():
    return get_store().settings.to_dict()


@api_bp.route("/settings", methods=["PATCH"])
def update_settings():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return {"error": "JSON object required"}, 400
    try:
        settings = get_store().update_settings(**Settings.from_json_partial(body))
    except (TypeError, ValueError) as e:
        return {"error": str(e)}, 400
    return settings.to_dict()


@api_bp.route("/storage")
def storage_status():
    store = get_store()
    return {
        "usageKB": store.total_storage_usage_kb(),
        "photos": len(store.photos()),
        "portraits": len(store.portraits()),
        "limits": {
            "photos": store.settings.max_stored_photos,
            "portraits": store.settings.max_stored_portraits,
        },
        "notice": store.consume_storage_notice(),
    }


@api_bp.route("/storage/clear", methods=["POST"])
def clear_storage():
    get_store().clear_all()
    return "", 204
