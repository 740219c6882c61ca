"""Tests for image optimization and size estimation."""
import base64
import os

import pytest
from conftest import make_data_url, make_image_bytes

from portraify.models.entities import QUALITY_TIERS
from portraify.services import image_service
from portraify.services.image_service import (
    DecodeError,
    auto_tier_for_size,
    estimate_size_kb,
    image_dimensions,
    load_upload,
    optimize,
)


def test_estimate_size_kb_from_payload_length():
    assert estimate_size_kb("data:image/jpeg;base64," + "A" * 4096) == 3
    # bare base64 counts in full
    assert estimate_size_kb("A" * 4096) == 3


def test_estimate_size_kb_rounds_to_nearest():
    assert estimate_size_kb("data:image/png;base64," + "A" * 680) == 0  # 510 bytes
    assert estimate_size_kb("data:image/png;base64," + "A" * 684) == 1  # 513 bytes


@pytest.mark.parametrize("value", [None, "", "data:,", "data:image/jpeg;base64,", 42])
def test_estimate_size_kb_degenerate_is_zero(value):
    assert estimate_size_kb(value) == 0


def test_optimize_skips_small_images():
    small = make_data_url(64, 64, noise=False)
    assert estimate_size_kb(small) < image_service.SKIP_THRESHOLD_KB

    result = optimize(small, QUALITY_TIERS["low"])
    assert result.encoded_image == small
    assert result.width is None
    assert result.size_kb == estimate_size_kb(small)


def test_optimize_caps_width_and_keeps_aspect_ratio():
    source = make_data_url(2000, 1333)
    result = optimize(source, QUALITY_TIERS["medium"])

    assert result.width == 800
    assert result.height == 533  # floor(1333 * 0.4)
    assert image_dimensions(result.encoded_image) == (800, 533)
    assert result.encoded_image.startswith("data:image/jpeg;base64,")
    assert result.size_kb == estimate_size_kb(result.encoded_image)


def test_optimize_never_upscales():
    source = make_data_url(500, 1600)
    assert estimate_size_kb(source) >= image_service.SKIP_THRESHOLD_KB

    result = optimize(source, "high")
    assert (result.width, result.height) == (500, 1600)


def test_lower_tier_never_larger():
    source = make_data_url(2000, 2000)
    sizes = [optimize(source, QUALITY_TIERS[name]).size_kb for name in ("low", "medium", "high")]
    assert sizes[0] <= sizes[1] <= sizes[2]


def test_optimize_rejects_corrupt_image():
    garbage = "data:image/jpeg;base64," + base64.b64encode(os.urandom(200 * 1024)).decode()
    with pytest.raises(DecodeError):
        optimize(garbage, QUALITY_TIERS["medium"])


def test_optimize_rejects_invalid_base64():
    with pytest.raises(DecodeError):
        optimize("data:image/jpeg;base64," + "!*" * 100_000, QUALITY_TIERS["medium"])


def test_load_upload_keeps_format_and_reads_size():
    data_url, width, height = load_upload(make_image_bytes(320, 240, fmt="PNG", noise=False))
    assert data_url.startswith("data:image/png;base64,")
    assert (width, height) == (320, 240)


def test_load_upload_rejects_non_images():
    with pytest.raises(ValueError):
        load_upload(b"definitely not an image")


def test_load_upload_rejects_oversized(monkeypatch):
    monkeypatch.setattr(image_service, "MAX_FILE_SIZE", 10)
    with pytest.raises(ValueError, match="too large"):
        load_upload(make_image_bytes(32, 32, noise=False))


def test_auto_tier_for_size():
    assert auto_tier_for_size(1500).name == "low"
    assert auto_tier_for_size(700).max_dimension == 700
    assert auto_tier_for_size(200).name == "medium"
