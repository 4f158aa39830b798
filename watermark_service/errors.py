"""Exception taxonomy shared by the compositor, archive codec and pipeline."""

from __future__ import annotations


class WatermarkError(ValueError):
    """Base class for failures caused by the submitted content."""


class DecodeError(WatermarkError):
    """Image bytes are not a supported raster format."""


class InvalidDimensionsError(WatermarkError):
    """Decoded image has zero or unknown extent."""


class ArchiveDecodeError(WatermarkError):
    """Archive structure could not be read."""


class UnsupportedInputError(WatermarkError):
    """Submitted item is neither a supported image nor a ZIP archive."""


class EmptySubmissionError(WatermarkError):
    """Nothing was submitted."""


class BatchCancelled(Exception):
    """Raised inside a running batch once it has been cancelled.

    Cancellation is a terminal condition, not an error.
    """


class ChannelStateError(RuntimeError):
    """Control message is not valid for the channel's current state."""
