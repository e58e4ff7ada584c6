"""Image helpers: PNG normalisation, palette extraction, content hashing.

All three operate on raw bytes so they can run on uploads held in memory
as well as on produced images read back from disk.
"""

from __future__ import annotations

import hashlib
import io
import logging

from PIL import Image, UnidentifiedImageError

from mintworks.core.models import ColorPalette

logger = logging.getLogger(__name__)

FALLBACK_COLOR = "#000000"


def to_png(image_bytes: bytes) -> bytes:
    """Re-encode an image as PNG.

    Args:
        image_bytes: Encoded image in any format Pillow can read.

    Returns:
        PNG-encoded bytes.

    Raises:
        ValueError: If the bytes are not a readable image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            image.load()
            if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                image = image.convert("RGBA")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Unreadable image: {e}") from e
    return buffer.getvalue()


def extract_palette(image_bytes: bytes) -> ColorPalette:
    """Return the two most frequent colours of an image.

    Uses Pillow's adaptive palette quantisation on a downscaled copy.
    Never raises: on any failure both colours fall back to ``#000000``, and
    a single-colour image gets ``#000000`` as its secondary.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            small = image.convert("RGB").resize((150, 150))
        paletted = small.convert("P", palette=Image.Palette.ADAPTIVE, colors=5)
        palette = paletted.getpalette() or []
        counts = paletted.getcolors(maxcolors=paletted.width * paletted.height) or []
        counts.sort(key=lambda item: item[0], reverse=True)

        colors: list[str] = []
        for _, index in counts[:2]:
            base = int(index) * 3
            if base + 2 < len(palette):
                r, g, b = palette[base], palette[base + 1], palette[base + 2]
                colors.append(f"#{r:02x}{g:02x}{b:02x}")
    except Exception as e:
        logger.warning("Color extraction failed: %s", e)
        return ColorPalette(FALLBACK_COLOR, FALLBACK_COLOR)

    if not colors:
        return ColorPalette(FALLBACK_COLOR, FALLBACK_COLOR)
    return ColorPalette(
        primary=colors[0],
        secondary=colors[1] if len(colors) > 1 else FALLBACK_COLOR,
    )


def content_hash(image_bytes: bytes) -> str:
    """SHA-256 hex digest of the image bytes."""
    return hashlib.sha256(image_bytes).hexdigest()
