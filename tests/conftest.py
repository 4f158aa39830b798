from __future__ import annotations

from io import BytesIO
import struct
from typing import Dict, Optional, Tuple
import zipfile
import zlib

import pytest
from PIL import Image

from watermark_service import config


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch, tmp_path):
    """Isolate every test from the caller's environment and .env file."""
    for name in (
        "DEBUG",
        "LOG_LEVEL",
        "MAX_UPLOAD_BYTES",
        "JOB_RETENTION",
        "STALE_JOB_SECONDS",
        "WATERMARK_FONT_PATH",
        "SERVICE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DEBUG_OUTPUT_DIR", str(tmp_path / "debug"))
    config.get_settings.cache_clear()
    yield
    config.get_settings.cache_clear()


@pytest.fixture
def enable_debug(monkeypatch):
    monkeypatch.setenv("DEBUG", "true")
    config.get_settings.cache_clear()


def _make_image(
    width: int = 800,
    height: int = 600,
    fmt: str = "JPEG",
    color: Tuple[int, ...] = (40, 90, 160),
    orientation: Optional[int] = None,
) -> bytes:
    mode = "RGBA" if len(color) == 4 else "RGB"
    image = Image.new(mode, (width, height), color)
    if fmt == "GIF":
        image = image.convert("P")
    buf = BytesIO()
    kwargs = {}
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        kwargs["exif"] = exif
    image.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def _make_zip(entries: Dict[str, bytes], compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return buf.getvalue()


@pytest.fixture
def make_image():
    return _make_image


@pytest.fixture
def make_zip():
    return _make_zip


@pytest.fixture
def zip_names():
    def _names(data: bytes):
        with zipfile.ZipFile(BytesIO(data)) as zf:
            return zf.namelist()

    return _names


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def _png_chunk(kind: bytes, body: bytes) -> bytes:
    crc = zlib.crc32(kind + body) & 0xFFFFFFFF
    return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", crc)


def _split_png(data: bytes):
    pos = len(PNG_SIGNATURE)
    while pos < len(data):
        (length,) = struct.unpack(">I", data[pos : pos + 4])
        yield data[pos + 4 : pos + 8], data[pos + 8 : pos + 8 + length]
        pos += length + 12


def _make_corrupt_png(defect: str = "chunk") -> bytes:
    """
    PNGs that pass Pillow's identify step but fail while decoding.

    "chunk": the pixel data is cut by a chunk whose type is not a valid
    tag, which Pillow reports as SyntaxError("broken PNG file").
    "header": the IHDR chunk is one byte short.
    """
    if defect == "header":
        ihdr = struct.pack(">IIBBBB", 8, 8, 8, 2, 0, 0)
        return PNG_SIGNATURE + struct.pack(">I", len(ihdr)) + b"IHDR" + ihdr + b"\x00" * 4

    buf = BytesIO()
    Image.new("RGB", (64, 64), (200, 30, 30)).save(buf, format="PNG", compress_level=0)
    chunks = list(_split_png(buf.getvalue()))
    pixels = b"".join(body for kind, body in chunks if kind == b"IDAT")
    half = len(pixels) // 2
    out = PNG_SIGNATURE
    out += b"".join(_png_chunk(kind, body) for kind, body in chunks if kind not in (b"IDAT", b"IEND"))
    out += _png_chunk(b"IDAT", pixels[:half])
    out += _png_chunk(b"\xf8\xb3\xa5\x03", pixels[half:])
    return out + _png_chunk(b"IEND", b"")


@pytest.fixture
def make_corrupt_png():
    return _make_corrupt_png
