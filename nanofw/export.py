"""
Export — Write decoded artwork and IMG1 components to disk.

Images are saved as PNG through Pillow, named by their full id
("<file id>_<format>.png") so they line up with manifest ids.
"""

import os
import logging

from PIL import Image

from .img1 import SignedImage
from .silverdb import DecodedImage

logger = logging.getLogger(__name__)


def to_pil_image(image: DecodedImage) -> Image.Image:
    return Image.frombytes("RGBA", (image.width, image.height), image.pixels)


def save_images(images: list[DecodedImage], output_dir: str) -> list[str]:
    """Save every image with a non-zero area; returns the written paths."""
    os.makedirs(output_dir, exist_ok=True)
    paths = []
    for image in images:
        if image.width == 0 or image.height == 0:
            logger.debug("Not saving empty image %s", image.full_id)
            continue
        path = os.path.join(output_dir, f"{image.full_id}.png")
        to_pil_image(image).save(path, format="PNG")
        paths.append(path)
    logger.info("Saved %d images to %s", len(paths), output_dir)
    return paths


def save_signed_image_parts(signed: SignedImage, output_dir: str) -> dict[str, str]:
    """Write body.bin, sign.bin and cert.bin."""
    os.makedirs(output_dir, exist_ok=True)
    parts = {
        "body": ("body.bin", signed.body),
        "signature": ("sign.bin", signed.signature),
        "certificate": ("cert.bin", signed.certificate),
    }
    written = {}
    for key, (filename, data) in parts.items():
        path = os.path.join(output_dir, filename)
        with open(path, "wb") as f:
            f.write(data)
        written[key] = path
        logger.info("Extracted %s: %d bytes", filename, len(data))
    return written
