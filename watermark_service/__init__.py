"""
Filename watermark service package.

Exposes the compositor that stamps a file-name label onto images, the ZIP
archive codec, the batch pipeline with its pausable execution channel, and
the FastAPI application serving them.
"""

__version__ = "0.1.0"
