"""Tests for mintworks.core.imaging — PNG normalisation, palettes and hashing."""

from __future__ import annotations

import hashlib
import io

import pytest
from PIL import Image

from mintworks.core.imaging import content_hash, extract_palette, to_png


def _encode(image: Image.Image, fmt: str) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def _rgb(hex_color: str) -> tuple[int, int, int]:
    return tuple(int(hex_color[i : i + 2], 16) for i in (1, 3, 5))


class TestToPng:
    def test_jpeg_is_reencoded(self):
        jpeg = _encode(Image.new("RGB", (4, 4), (10, 20, 30)), "JPEG")

        png = to_png(jpeg)

        with Image.open(io.BytesIO(png)) as image:
            assert image.format == "PNG"
            assert image.size == (4, 4)

    def test_cmyk_converted(self):
        tiff = _encode(Image.new("CMYK", (2, 2)), "TIFF")
        with Image.open(io.BytesIO(to_png(tiff))) as image:
            assert image.mode == "RGBA"

    def test_garbage_rejected(self):
        with pytest.raises(ValueError, match="Unreadable image"):
            to_png(b"not an image")


class TestExtractPalette:
    def test_two_colour_image(self):
        image = Image.new("RGB", (100, 100), (255, 0, 0))
        image.paste((0, 0, 255), (0, 0, 100, 30))

        palette = extract_palette(_encode(image, "PNG"))

        primary = _rgb(palette.primary)
        secondary = _rgb(palette.secondary)
        assert primary[0] > 200 and primary[2] < 60
        assert secondary[2] > 150 and secondary[0] < 100

    def test_single_colour_secondary_falls_back(self, make_png):
        palette = extract_palette(make_png((0, 255, 0)))
        assert palette.primary == "#00ff00"
        assert palette.secondary == "#000000"

    def test_invalid_bytes_fall_back(self):
        palette = extract_palette(b"\x00\x01")
        assert palette.primary == "#000000"
        assert palette.secondary == "#000000"


def test_content_hash_is_sha256(make_png):
    data = make_png()
    assert content_hash(data) == hashlib.sha256(data).hexdigest()
    assert len(content_hash(data)) == 64
