"""
Image preprocessing before submission to the generation API.

Steps:
1. Apply the EXIF orientation tag, then drop all metadata (GPS, device ids)
2. Downscale (never upscale) so the padded canvas fits the bounding box
3. Pad every side by a fraction of the larger dimension so the model doesn't
   crop the subject's edges
4. Re-encode as PNG

Sticker mode pads with transparency; image mode pads with opaque white.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from stickershop.errors import InvalidUpload

logger = logging.getLogger(__name__)

OUTPUT_MIME_TYPE = "image/png"

TRANSPARENT = (0, 0, 0, 0)
WHITE = (255, 255, 255)


@dataclass
class PreparedImage:
    """Normalised image ready to leave the process."""
    data: bytes
    mime_type: str
    size: Tuple[int, int]
    content_size: Tuple[int, int]
    padding: int


def prepare_image(
    image_bytes: bytes,
    transparent: bool,
    max_dimension: int = 1024,
    pad_fraction: float = 0.12,
) -> PreparedImage:
    """
    Orient, downscale, pad and re-encode an uploaded photo.

    Args:
        image_bytes: Raw upload
        transparent: Pad with transparency (sticker) instead of white (image)
        max_dimension: Bounding box edge for the final padded canvas
        pad_fraction: Padding per side, as a fraction of the larger content edge

    Returns:
        PreparedImage with PNG bytes

    Raises:
        InvalidUpload: bytes are not a decodable image
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Could not decode upload: %s", type(e).__name__)
        raise InvalidUpload("Uploaded file is not a readable image") from None

    img = ImageOps.exif_transpose(img)

    # Content box is shrunk so that content + padding on both sides fits max_dimension
    content_limit = max(1, int(max_dimension / (1 + 2 * pad_fraction)))
    if max(img.size) > content_limit:
        img.thumbnail((content_limit, content_limit), Image.Resampling.LANCZOS)

    content_w, content_h = img.size
    pad = int(round(max(content_w, content_h) * pad_fraction))

    content = img.convert("RGBA")
    canvas = Image.new(
        "RGBA" if transparent else "RGB",
        (content_w + 2 * pad, content_h + 2 * pad),
        TRANSPARENT if transparent else WHITE,
    )
    # Content alpha is the paste mask, so transparent photo areas show the pad colour
    canvas.paste(content, (pad, pad), content)

    output = io.BytesIO()
    canvas.save(output, format="PNG", optimize=True)
    data = output.getvalue()

    logger.debug("Prepared image %dx%d -> %dx%d (pad %d, %d bytes)",
                 content_w, content_h, canvas.width, canvas.height, pad, len(data))

    return PreparedImage(
        data=data,
        mime_type=OUTPUT_MIME_TYPE,
        size=canvas.size,
        content_size=(content_w, content_h),
        padding=pad,
    )
