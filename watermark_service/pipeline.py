"""
High-level batch pipeline.

`run_batch` is the main entry point used by the HTTP API, the execution
channel and the CLI. It keeps orchestration simple:
inputs -> classify -> composite each entry -> one image or one archive out.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
import posixpath
import threading
from typing import Callable, List, Optional, Sequence, Tuple

from . import archive
from .compositor import composite
from .errors import BatchCancelled, EmptySubmissionError, UnsupportedInputError, WatermarkError

logger = logging.getLogger(__name__)

MULTI_RESULT_NAME = "processed_images.zip"

ProgressCallback = Callable[[float], None]


class InputKind(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    ZIP = "zip"

    @property
    def is_archive(self) -> bool:
        return self is InputKind.ZIP

    @classmethod
    def resolve(cls, filename: str, content_type: Optional[str] = None) -> "InputKind":
        """Classify an upload by its media type, falling back to its extension."""
        media = (content_type or "").split(";")[0].strip().lower()
        if media in _MEDIA_KINDS:
            return _MEDIA_KINDS[media]
        if media and media != "application/octet-stream":
            raise UnsupportedInputError(f"Unsupported file type: {filename} ({media})")
        _, ext = posixpath.splitext(filename.lower())
        if ext in _EXTENSION_KINDS:
            return _EXTENSION_KINDS[ext]
        raise UnsupportedInputError(f"Unsupported file type: {filename}")


_MEDIA_KINDS = {
    "image/jpeg": InputKind.JPEG,
    "image/jpg": InputKind.JPEG,
    "image/pjpeg": InputKind.JPEG,
    "image/png": InputKind.PNG,
    "image/gif": InputKind.GIF,
    "application/zip": InputKind.ZIP,
    "application/x-zip-compressed": InputKind.ZIP,
}

_EXTENSION_KINDS = {
    ".jpg": InputKind.JPEG,
    ".jpeg": InputKind.JPEG,
    ".png": InputKind.PNG,
    ".gif": InputKind.GIF,
    ".zip": InputKind.ZIP,
}


class OutputKind(str, Enum):
    IMAGE = "image"
    ARCHIVE = "archive"

    @property
    def media_type(self) -> str:
        return "application/zip" if self is OutputKind.ARCHIVE else "image/jpeg"


@dataclass(frozen=True)
class ImageInput:
    name: str
    data: bytes = field(repr=False)
    kind: InputKind


@dataclass(frozen=True)
class ProcessedOutput:
    name: str
    data: bytes = field(repr=False)
    kind: OutputKind


@dataclass(frozen=True)
class BatchResult:
    name: str
    data: bytes = field(repr=False)
    kind: OutputKind
    entry_names: Tuple[str, ...] = ()

    @property
    def media_type(self) -> str:
        return self.kind.media_type


class PauseGate:
    """
    Suspend/resume signal checked by the batch between units of work.

    Backed by a single `threading.Event`, so any number of resumes collapse
    into one open gate and a resume can never be lost. Cancelling opens the
    gate and makes every later `wait` raise `BatchCancelled`.
    """

    def __init__(self) -> None:
        self._open = threading.Event()
        self._open.set()
        self._cancelled = threading.Event()

    @property
    def is_paused(self) -> bool:
        return not self._open.is_set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def pause(self) -> None:
        if not self._cancelled.is_set():
            self._open.clear()

    def resume(self) -> None:
        self._open.set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._open.set()

    def wait(self) -> None:
        """Block while paused; raise `BatchCancelled` once cancelled."""
        self._open.wait()
        if self._cancelled.is_set():
            raise BatchCancelled()


class _Progress:
    """Tracks processed/total and reports a non-decreasing percentage."""

    def __init__(self, total: int, callback: Optional[ProgressCallback], gate: PauseGate) -> None:
        self.total = total
        self.done = 0
        self.last = 0.0
        self._callback = callback
        self._gate = gate

    def _report(self, percent: float) -> None:
        self._gate.wait()
        self.last = max(self.last, percent)
        if self._callback is not None:
            self._callback(self.last)

    def advance(self) -> None:
        self.done += 1
        self._report(self.done * 100 / self.total if self.total else 100.0)

    def finish(self) -> None:
        if self.last < 100.0:
            self._report(100.0)


def _composite_entries(
    entries: Sequence[archive.ArchiveEntry],
    progress: _Progress,
    gate: PauseGate,
) -> List[archive.ArchiveEntry]:
    """Composite entries one at a time; unreadable images are skipped."""
    processed: List[archive.ArchiveEntry] = []
    for entry in entries:
        gate.wait()
        try:
            data = composite(entry.data, entry.name)
        except WatermarkError as exc:
            logger.warning("pipeline: skipping entry %s: %s", entry.name, exc)
        else:
            processed.append(archive.ArchiveEntry(name=entry.name, data=data))
        progress.advance()
    return processed


def _archive_result(name: str, entries: Sequence[archive.ArchiveEntry]) -> BatchResult:
    entries = archive.dedupe_names(entries)
    data = archive.pack(entries)
    return BatchResult(
        name=name,
        data=data,
        kind=OutputKind.ARCHIVE,
        entry_names=tuple(e.name for e in entries),
    )


def process_image_input(item: ImageInput) -> ProcessedOutput:
    """Composite a single loose image. Failures propagate."""
    if item.kind.is_archive:
        raise UnsupportedInputError(f"{item.name} is an archive, not an image")
    return ProcessedOutput(name=item.name, data=composite(item.data, item.name), kind=OutputKind.IMAGE)


def run_batch(
    inputs: Sequence[ImageInput],
    progress: Optional[ProgressCallback] = None,
    gate: Optional[PauseGate] = None,
) -> BatchResult:
    """
    Process a whole submission.

    - one archive: every eligible entry is composited and repacked;
    - one image: composited directly;
    - several inputs: loose images with an image extension and the eligible
      entries of every archive are composited into a fresh
      `processed_images.zip`.

    Raises:
        EmptySubmissionError: no inputs.
        DecodeError / InvalidDimensionsError: a single submitted image is bad.
        ArchiveDecodeError: a submitted archive is unreadable.
        BatchCancelled: the gate was cancelled.
    """
    gate = gate or PauseGate()
    if not inputs:
        raise EmptySubmissionError("No files found in request")

    if len(inputs) == 1 and not inputs[0].kind.is_archive:
        item = inputs[0]
        logger.info("pipeline: single image %s", item.name)
        gate.wait()
        output = process_image_input(item)
        tracker = _Progress(1, progress, gate)
        tracker.finish()
        return BatchResult(
            name=output.name,
            data=output.data,
            kind=OutputKind.IMAGE,
            entry_names=(output.name,),
        )

    entries: List[archive.ArchiveEntry] = []
    for item in inputs:
        gate.wait()
        if item.kind.is_archive:
            entries.extend(archive.unpack_images(item.data))
        elif archive.is_eligible(item.name):
            entries.append(archive.ArchiveEntry(name=item.name, data=item.data))
        else:
            # Output archives only carry jpg/jpeg/png/gif names.
            logger.warning("pipeline: skipping %s, name has no image extension", item.name)

    if len(inputs) == 1:
        result_name = inputs[0].name
        logger.info("pipeline: archive %s with %d entries", result_name, len(entries))
    else:
        result_name = MULTI_RESULT_NAME
        logger.info("pipeline: %d inputs merged into %d entries", len(inputs), len(entries))

    tracker = _Progress(len(entries), progress, gate)
    processed = _composite_entries(entries, tracker, gate)
    gate.wait()
    result = _archive_result(result_name, processed)
    tracker.finish()
    logger.info("pipeline: packed %d of %d entries into %s", len(processed), len(entries), result_name)
    return result
