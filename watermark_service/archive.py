"""
ZIP archive codec.

Reads the eligible image entries out of an uploaded archive and builds the
output archive. Only JPEG/PNG/GIF entries survive a round trip; everything
else is dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
import posixpath
import re
from typing import Iterable, List, Set
import zipfile
import zlib

from .errors import ArchiveDecodeError

logger = logging.getLogger(__name__)

ELIGIBLE_NAME = re.compile(r"\.(jpe?g|png|gif)$", re.IGNORECASE)
COMPRESSION_LEVEL = 6


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    data: bytes


def is_eligible(name: str) -> bool:
    """True for non-directory names with a supported raster extension."""
    return not name.endswith("/") and bool(ELIGIBLE_NAME.search(name))


def unpack_images(archive_bytes: bytes) -> List[ArchiveEntry]:
    """
    Return the eligible entries of a ZIP archive in listing order.

    Entries that cannot be read (bad CRC, unsupported compression,
    encryption) are skipped with a warning.

    Raises:
        ArchiveDecodeError: the archive structure is unreadable.
    """
    try:
        zf = zipfile.ZipFile(BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as exc:
        raise ArchiveDecodeError("Invalid ZIP archive") from exc

    entries: List[ArchiveEntry] = []
    with zf:
        for info in zf.infolist():
            if info.is_dir() or not is_eligible(info.filename):
                logger.debug("archive: skipping ineligible entry %s", info.filename)
                continue
            try:
                data = zf.read(info)
            except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, OSError) as exc:
                logger.warning("archive: skipping unreadable entry %s: %s", info.filename, exc)
                continue
            entries.append(ArchiveEntry(name=info.filename, data=data))
    logger.info("archive: found %d eligible entries", len(entries))
    return entries


def unique_name(name: str, taken: Set[str]) -> str:
    """Disambiguate `name` against `taken` as `stem (n).ext`, starting at 2."""
    if name not in taken:
        return name
    stem, ext = posixpath.splitext(name)
    n = 2
    while f"{stem} ({n}){ext}" in taken:
        n += 1
    return f"{stem} ({n}){ext}"


def dedupe_names(entries: Iterable[ArchiveEntry]) -> List[ArchiveEntry]:
    """Rename later duplicates so every entry name is unique."""
    taken: Set[str] = set()
    unique: List[ArchiveEntry] = []
    for entry in entries:
        name = unique_name(entry.name, taken)
        if name != entry.name:
            logger.warning("archive: duplicate entry %s stored as %s", entry.name, name)
            entry = ArchiveEntry(name=name, data=entry.data)
        taken.add(name)
        unique.append(entry)
    return unique


def pack(entries: Iterable[ArchiveEntry]) -> bytes:
    """Build a DEFLATE archive from `entries`, keeping names unique."""
    buf = BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=COMPRESSION_LEVEL) as zf:
        for entry in dedupe_names(entries):
            zf.writestr(entry.name, entry.data)
    return buf.getvalue()
