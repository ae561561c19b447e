import io
import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("PostArchiver")


def read_image_info(source):
    """Format and pixel size of an image given as bytes or a filesystem path."""
    if isinstance(source, (bytes, bytearray)):
        fp = io.BytesIO(source)
    else:
        fp = Path(source)
        if not fp.exists():
            raise FileNotFoundError(fp)

    with Image.open(fp) as img:
        return {
            "format": img.format,
            "width": img.width,
            "height": img.height,
        }


def probe_image(source):
    """``{"width", "height"}`` for FileMeta extra, or ``{}`` when Pillow cannot read it."""
    try:
        info = read_image_info(source)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("image probe failed: %s", exc)
        return {}
    return {"width": info["width"], "height": info["height"]}
