"""Image preprocessing pipeline.

Handles data URL encoding/decoding, image decoding with EXIF orientation,
size validation, and conversion to the normalized NCHW tensor MobileNet
expects.
"""

from __future__ import annotations

import base64
import binascii
import io
import re
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

# MobileNet checkpoints are trained on a 256 -> 224 resize/center-crop pipeline.
_RESIZE_RATIO = 256 / 224
_MEAN = np.array([0.5, 0.5, 0.5], dtype=np.float32)
_STD = np.array([0.5, 0.5, 0.5], dtype=np.float32)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(?:;[^;,]*)*?);base64,(?P<data>.*)$", re.DOTALL)


class ImageDecodeError(ValueError):
    """Raised when an image cannot be decoded into pixels."""


def encode_data_url(data: bytes, mime_type: str | None) -> str:
    """Encode raw bytes as a base64 data URL."""
    mime = mime_type or "application/octet-stream"
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a base64 data URL into its MIME type and payload bytes.

    Raises:
        ImageDecodeError: If the string is not a base64 data URL.
    """
    match = _DATA_URL_RE.match(data_url)
    if match is None:
        raise ImageDecodeError("Not a base64 data URL")
    try:
        payload = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError("Malformed base64 payload") from exc
    return match.group("mime") or "application/octet-stream", payload


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> Image.Image:
    """Decode raw image bytes into an RGB PIL image.

    Args:
        image_bytes: Raw file bytes (any format Pillow can open).
        max_pixels: Reject images with more pixels than this.

    Returns:
        RGB image with EXIF orientation applied.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    try:
        image = Image.open(io.BytesIO(image_bytes))
        if max_pixels is not None and image.width * image.height > max_pixels:
            raise ImageDecodeError(f"Image has {image.width * image.height} pixels, limit is {max_pixels}")
        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError("Invalid image data") from exc


def decode_image_data(image_data: str, max_pixels: int | None = None) -> Image.Image:
    """Decode a data URL straight into an RGB PIL image."""
    _mime, payload = decode_data_url(image_data)
    return decode_image(payload, max_pixels=max_pixels)


def to_tensor(image: Image.Image, size: int = 224) -> NDArray[np.float32]:
    """Prepare an RGB image for the classifier.

    Args:
        image: RGB PIL image of any size.
        size: Square input edge expected by the model.

    Returns:
        1x3xSIZExSIZE float32 tensor normalized to [-1, 1].
    """
    # Crop in source coordinates, then resize only that region.
    shortest = round(size * _RESIZE_RATIO)
    scale = shortest / min(image.width, image.height)
    crop_width = min(image.width, size / scale)
    crop_height = min(image.height, size / scale)
    left = (image.width - crop_width) / 2
    top = (image.height - crop_height) / 2
    cropped = image.resize(
        (size, size),
        Image.Resampling.BILINEAR,
        box=(left, top, left + crop_width, top + crop_height),
    )

    pixels = np.asarray(cropped, dtype=np.float32) / 255.0
    pixels = (pixels - _MEAN) / _STD
    return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...])
