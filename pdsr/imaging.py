"""
Region Crop/Compare Utility
Deterministic image-space helpers: decoding, downscaling, bbox mapping,
cropping, structural similarity and patch compositing.
"""

import io
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from .models import BBox, BBOX_SCALE


# SSIM stabilisation constants for 8-bit images
_C1 = (0.01 * 255) ** 2
_C2 = (0.03 * 255) ** 2

# Crops are resized to a common size before comparison
COMPARE_SIZE = 256


@dataclass(frozen=True)
class PixelRect:
    """Pixel rectangle, right/bottom exclusive."""
    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def as_box(self) -> tuple[int, int, int, int]:
        return (self.left, self.top, self.right, self.bottom)


def load_image(data: bytes) -> Image.Image:
    """Decode image bytes into an RGB PIL image."""
    image = Image.open(io.BytesIO(data))
    image.load()
    return image.convert("RGB")


def is_decodable(data: Optional[bytes]) -> bool:
    """True if `data` decodes as an image."""
    if not data:
        return False
    try:
        load_image(data)
    except (OSError, SyntaxError, ValueError):
        return False
    return True


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def image_size(data: bytes) -> tuple[int, int]:
    """Return (width, height) without fully decoding the pixels."""
    with Image.open(io.BytesIO(data)) as image:
        return image.size


def downscale(data: bytes, max_dimension: int) -> bytes:
    """
    Shrink an image so its long edge is at most `max_dimension` pixels.

    Images already within bounds are returned as-is (same bytes).
    """
    width, height = image_size(data)
    if max(width, height) <= max_dimension:
        return data

    image = load_image(data)
    scale = max_dimension / max(width, height)
    resized = image.resize(
        (max(1, round(width * scale)), max(1, round(height * scale))),
        Image.LANCZOS,
    )
    return encode_png(resized)


def bbox_to_pixels(bbox: BBox, width: int, height: int) -> PixelRect:
    """
    Map a normalised [ymin, xmin, ymax, xmax] box onto a width x height image.

    The result always has at least one pixel in each dimension and stays
    inside the image, for any positive image size.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    ymin, xmin, ymax, xmax = bbox
    left = int(np.floor(xmin / BBOX_SCALE * width))
    top = int(np.floor(ymin / BBOX_SCALE * height))
    right = int(np.ceil(xmax / BBOX_SCALE * width))
    bottom = int(np.ceil(ymax / BBOX_SCALE * height))

    left = min(max(left, 0), width - 1)
    top = min(max(top, 0), height - 1)
    right = min(max(right, left + 1), width)
    bottom = min(max(bottom, top + 1), height)

    return PixelRect(left, top, right, bottom)


def crop_decoded(image: Image.Image, bbox: BBox) -> bytes:
    """Crop an already decoded image by normalised bbox, returned as PNG."""
    rect = bbox_to_pixels(bbox, *image.size)
    return encode_png(image.crop(rect.as_box()))


def crop_image(data: bytes, bbox: BBox) -> bytes:
    """Crop a region of an encoded image by normalised bbox, returned as PNG."""
    return crop_decoded(load_image(data), bbox)


def _to_gray_array(data: bytes, size: int) -> np.ndarray:
    image = load_image(data).convert("L").resize((size, size), Image.BILINEAR)
    return np.asarray(image, dtype=np.float64)


def compute_similarity(a: bytes, b: bytes) -> float:
    """
    Structural similarity (SSIM) between two encoded images, in [0, 1].

    Both images are converted to grayscale and resized to a common size, so
    crops of different resolutions (original vs upscaled candidate) compare
    on structure rather than pixel count.
    """
    x = _to_gray_array(a, COMPARE_SIZE)
    y = _to_gray_array(b, COMPARE_SIZE)

    ksize = (11, 11)
    sigma = 1.5
    mu_x = cv2.GaussianBlur(x, ksize, sigma)
    mu_y = cv2.GaussianBlur(y, ksize, sigma)

    mu_x2 = mu_x * mu_x
    mu_y2 = mu_y * mu_y
    mu_xy = mu_x * mu_y

    sigma_x2 = cv2.GaussianBlur(x * x, ksize, sigma) - mu_x2
    sigma_y2 = cv2.GaussianBlur(y * y, ksize, sigma) - mu_y2
    sigma_xy = cv2.GaussianBlur(x * y, ksize, sigma) - mu_xy

    ssim_map = ((2 * mu_xy + _C1) * (2 * sigma_xy + _C2)) / (
        (mu_x2 + mu_y2 + _C1) * (sigma_x2 + sigma_y2 + _C2)
    )
    return float(np.clip(ssim_map.mean(), 0.0, 1.0))


def composite_patch(base: bytes, patch: bytes, bbox: BBox) -> bytes:
    """Resize `patch` to the bbox's pixel rectangle in `base` and paste it there."""
    image = load_image(base)
    rect = bbox_to_pixels(bbox, *image.size)
    patch_image = load_image(patch)
    if patch_image.size != (rect.width, rect.height):
        patch_image = patch_image.resize((rect.width, rect.height), Image.LANCZOS)
    image.paste(patch_image, (rect.left, rect.top))
    return encode_png(image)


def closest_aspect_ratio(width: int, height: int) -> str:
    """Closest aspect ratio the rendering model supports."""
    ratio = width / height
    supported = {
        "1:1": 1.0, "3:4": 0.75, "4:3": 4 / 3,
        "9:16": 9 / 16, "16:9": 16 / 9,
        "2:3": 2 / 3, "3:2": 1.5,
        "4:5": 0.8, "5:4": 1.25,
        "21:9": 21 / 9,
    }
    return min(supported, key=lambda name: abs(supported[name] - ratio))
