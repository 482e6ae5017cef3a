"""Image utilities for the garment capture pipeline."""

import base64
import io
from typing import Tuple

from PIL import Image, ImageOps

MIME_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "heic": "image/heic",
    "heif": "image/heif",
    "webp": "image/webp",
}


def strip_query_and_fragment(locator: str) -> str:
    """Drop any ``?query`` and ``#fragment`` suffix from a path or URI."""
    return locator.split("?")[0].split("#")[0]


def get_file_extension(file_name_or_locator: str) -> str:
    """
    Extract the lowercase extension of a file name or URI.

    Args:
        file_name_or_locator: File name, path or URI (may carry query params)

    Returns:
        Extension without the dot, or "" when there is none
    """
    clean_path = strip_query_and_fragment(file_name_or_locator)
    last_dot = clean_path.rfind(".")
    if last_dot == -1 or last_dot == len(clean_path) - 1:
        return ""
    return clean_path[last_dot + 1 :].lower()


def mime_type_for(file_name_or_locator: str) -> str:
    """MIME type for a file name or URI, defaulting to ``image/jpeg``."""
    return MIME_TYPES.get(get_file_extension(file_name_or_locator), "image/jpeg")


def fit_within(width: int, height: int, max_edge: int) -> Tuple[int, int]:
    """
    Scale dimensions so the longest edge is at most ``max_edge``.

    Images already within bounds are returned unchanged (no upscaling).
    """
    longest = max(width, height)
    if longest <= max_edge:
        return width, height
    ratio = max_edge / longest
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def compress_to_jpeg(image_bytes: bytes, max_edge: int, quality: float) -> Tuple[bytes, int, int]:
    """
    Resize and re-encode image bytes as JPEG.

    Args:
        image_bytes: Source image in any format Pillow can read
        max_edge: Maximum length of the longest edge in pixels
        quality: JPEG quality between 0 and 1

    Returns:
        Tuple of (jpeg bytes, width, height)
    """
    with Image.open(io.BytesIO(image_bytes)) as source:
        image = ImageOps.exif_transpose(source)
        if image.mode != "RGB":
            image = image.convert("RGB")

        target_size = fit_within(image.width, image.height, max_edge)
        if target_size != image.size:
            image = image.resize(target_size, Image.Resampling.LANCZOS)

        output = io.BytesIO()
        image.save(output, format="JPEG", quality=round(quality * 100))
        return output.getvalue(), image.width, image.height


def read_dimensions(image_bytes: bytes) -> Tuple[int, int]:
    """Width and height of an encoded image without decoding its pixels."""
    with Image.open(io.BytesIO(image_bytes)) as image:
        return image.width, image.height


def encode_base64(data: bytes) -> str:
    """Encode a whole buffer as base64 text (no line breaks, no chunking)."""
    return base64.b64encode(data).decode("ascii")
