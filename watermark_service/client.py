"""
HTTP client for the watermark service.

Submits files to `POST /upload` and downloads the processed payload. The
transfer can be aborted from another thread; an aborted transfer discards
everything received so far.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import mimetypes
from pathlib import Path
import re
import threading
from typing import Iterable, List, Optional, Union
from urllib.parse import unquote, urljoin

import requests

from . import config
from .pipeline import MULTI_RESULT_NAME

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

_FILENAME_STAR = re.compile(r"filename\*=UTF-8''([^;]+)", re.IGNORECASE)
_FILENAME = re.compile(r'filename="([^"]+)"', re.IGNORECASE)


class UploadFailed(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, stack: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.stack = stack


class UploadCancelled(Exception):
    """The transfer was aborted; no partial output is kept."""


@dataclass
class DownloadedResult:
    name: str
    data: bytes = field(repr=False)
    media_type: str


def _filename_from_disposition(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    match = _FILENAME_STAR.search(header) or _FILENAME.search(header)
    return unquote(match.group(1)) if match else None


class UploadClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        settings = config.get_settings()
        self.base_url = (base_url or settings.service_url).rstrip("/") + "/"
        self.timeout = timeout or settings.request_timeout_seconds
        self.session = session or requests.Session()
        self._cancel = threading.Event()
        self._response: Optional[requests.Response] = None
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Abort the in-flight transfer, if any."""
        self._cancel.set()
        with self._lock:
            if self._response is not None:
                self._response.close()

    def submit(
        self,
        paths: Iterable[Union[str, Path]],
        cancel_event: Optional[threading.Event] = None,
    ) -> DownloadedResult:
        """
        Upload `paths` and return the processed image or archive.

        Raises:
            UploadCancelled: `cancel()` was called or `cancel_event` was set.
            UploadFailed: the service rejected the submission.
        """
        paths = [Path(p) for p in paths]
        if not paths:
            raise ValueError("No files to upload")
        self._cancel.clear()

        handles = []
        try:
            files = []
            for path in paths:
                fh = path.open("rb")
                handles.append(fh)
                content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
                files.append(("files", (path.name, fh, content_type)))
            return self._post(files, paths, cancel_event)
        finally:
            for fh in handles:
                fh.close()

    def _cancelled(self, cancel_event: Optional[threading.Event]) -> bool:
        return self._cancel.is_set() or (cancel_event is not None and cancel_event.is_set())

    def _post(self, files, paths: List[Path], cancel_event: Optional[threading.Event]) -> DownloadedResult:
        if self._cancelled(cancel_event):
            raise UploadCancelled()

        url = urljoin(self.base_url, "upload")
        logger.info("Uploading %d file(s) to %s", len(paths), url)
        resp = self.session.post(url, files=files, stream=True, timeout=(5, self.timeout))
        with self._lock:
            self._response = resp
        try:
            if resp.status_code >= 400:
                raise self._failure(resp)

            chunks: List[bytes] = []
            try:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if self._cancelled(cancel_event):
                        raise UploadCancelled()
                    chunks.append(chunk)
            except requests.RequestException as exc:
                # A response closed by cancel() surfaces as a read error.
                if self._cancelled(cancel_event):
                    raise UploadCancelled() from exc
                raise
            if self._cancelled(cancel_event):
                raise UploadCancelled()
        finally:
            with self._lock:
                self._response = None
            resp.close()

        default_name = paths[0].name if len(paths) == 1 else MULTI_RESULT_NAME
        name = _filename_from_disposition(resp.headers.get("Content-Disposition")) or default_name
        media_type = resp.headers.get("Content-Type", "application/octet-stream").split(";")[0]
        logger.info("Received %s (%s)", name, media_type)
        return DownloadedResult(name=name, data=b"".join(chunks), media_type=media_type)

    @staticmethod
    def _failure(resp: requests.Response) -> UploadFailed:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get("error") if isinstance(body, dict) else None
        return UploadFailed(
            message or f"Upload failed with status {resp.status_code}",
            status_code=resp.status_code,
            stack=body.get("stack") if isinstance(body, dict) else None,
        )


def save(result: DownloadedResult, directory: Union[str, Path]) -> Path:
    """Write a downloaded result into `directory` under its suggested name."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / Path(result.name).name
    target.write_bytes(result.data)
    return target
