"""
FastAPI layer exposing the watermark pipeline.

Endpoints:
 - GET /health
 - POST /upload
 - POST /jobs
 - GET /jobs/{job_id}
 - POST /jobs/{job_id}/pause | resume | cancel
 - GET /jobs/{job_id}/result
 - DELETE /jobs/{job_id}
"""

from __future__ import annotations

from collections import OrderedDict
import logging
import threading
import time
import traceback
from typing import List, Optional
from urllib.parse import quote
import uuid

from fastapi import FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import config
from .errors import WatermarkError
from .pipeline import BatchResult, ImageInput, InputKind, run_batch
from .queue_worker import ExecutionChannel, ExecutionState

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Filename Watermark Service", version="0.1.0")


class JobStatus(BaseModel):
    jobId: str
    state: str
    progress: float
    error: Optional[str] = None


_JOBS: "OrderedDict[str, ExecutionChannel]" = OrderedDict()
_JOBS_LOCK = threading.Lock()


def _error_response(status_code: int, message: str, exc: Optional[BaseException] = None) -> JSONResponse:
    body = {"error": message}
    if exc is not None and config.get_settings().debug:
        body["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(StarletteHTTPException)
def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    if any("files" in err.get("loc", ()) for err in exc.errors()):
        return _error_response(400, "No files found in request")
    return _error_response(400, "Invalid request", exc)


@app.exception_handler(WatermarkError)
def _watermark_error(request: Request, exc: WatermarkError) -> JSONResponse:
    logger.warning("Rejected submission: %s", exc)
    return _error_response(400, str(exc), exc)


@app.exception_handler(Exception)
def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Processing failed: %s", exc)
    return _error_response(500, "Internal server error", exc)


def _read_inputs(files: List[UploadFile]) -> List[ImageInput]:
    """Read uploads into memory, enforcing the request size ceiling."""
    limit = config.get_settings().max_upload_bytes
    inputs: List[ImageInput] = []
    total = 0
    for upload in files:
        name = upload.filename or "upload"
        kind = InputKind.resolve(name, upload.content_type)
        data = upload.file.read(limit - total + 1)
        total += len(data)
        if total > limit:
            raise HTTPException(status_code=413, detail=f"Upload exceeds {limit} bytes")
        inputs.append(ImageInput(name=name, data=data, kind=kind))
    if not inputs:
        raise HTTPException(status_code=400, detail="No files found in request")
    return inputs


def _content_disposition(filename: str) -> str:
    return f"attachment; filename=\"{quote(filename)}\"; filename*=UTF-8''{quote(filename)}"


def _result_response(result: BatchResult) -> Response:
    return Response(
        content=result.data,
        media_type=result.media_type,
        headers={"Content-Disposition": _content_disposition(result.name)},
    )


def _job_status(job_id: str, channel: ExecutionChannel) -> JobStatus:
    return JobStatus(
        jobId=job_id,
        state=channel.state.value,
        progress=round(channel.progress, 2),
        error=channel.error,
    )


def _get_job(job_id: str) -> ExecutionChannel:
    with _JOBS_LOCK:
        channel = _JOBS.get(job_id)
    if channel is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return channel


def _register_job(channel: ExecutionChannel) -> str:
    """
    Store a job and prune the registry.

    Jobs left paused or idle for longer than STALE_JOB_SECONDS are cancelled
    and dropped; beyond that, only the newest JOB_RETENTION finished jobs
    are kept.
    """
    job_id = uuid.uuid4().hex
    settings = config.get_settings()
    cutoff = time.monotonic() - settings.stale_job_seconds
    with _JOBS_LOCK:
        stale = [
            jid
            for jid, ch in _JOBS.items()
            if ch.state in (ExecutionState.PAUSED, ExecutionState.IDLE) and ch.updated_at < cutoff
        ]
        for jid in stale:
            logger.info("Expiring stale job %s (%s)", jid, _JOBS[jid].state.value)
            _JOBS.pop(jid).cancel()
        _JOBS[job_id] = channel
        finished = [jid for jid, ch in _JOBS.items() if ch.state.is_terminal]
        for jid in finished[: max(0, len(finished) - settings.job_retention)]:
            del _JOBS[jid]
    return job_id


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/upload")
def upload(files: List[UploadFile] = File(...)):
    inputs = _read_inputs(files)
    logger.info("Upload received: %s", ", ".join(i.name for i in inputs))
    result = run_batch(inputs)
    return _result_response(result)


@app.post("/jobs", status_code=202, response_model=JobStatus)
def create_job(files: List[UploadFile] = File(...)):
    inputs = _read_inputs(files)
    channel = ExecutionChannel()
    job_id = _register_job(channel)
    channel.start(inputs)
    logger.info("Job %s started with %d inputs", job_id, len(inputs))
    return _job_status(job_id, channel)


@app.get("/jobs/{job_id}", response_model=JobStatus)
def job_status(job_id: str):
    return _job_status(job_id, _get_job(job_id))


@app.post("/jobs/{job_id}/pause", response_model=JobStatus)
def pause_job(job_id: str):
    channel = _get_job(job_id)
    channel.pause()
    return _job_status(job_id, channel)


@app.post("/jobs/{job_id}/resume", response_model=JobStatus)
def resume_job(job_id: str):
    channel = _get_job(job_id)
    channel.resume()
    return _job_status(job_id, channel)


@app.post("/jobs/{job_id}/cancel", response_model=JobStatus)
def cancel_job(job_id: str):
    channel = _get_job(job_id)
    channel.cancel()
    return _job_status(job_id, channel)


@app.get("/jobs/{job_id}/result")
def job_result(job_id: str):
    channel = _get_job(job_id)
    if channel.state is ExecutionState.FAILED:
        raise HTTPException(status_code=409, detail=channel.error or "Job failed")
    if channel.state is not ExecutionState.COMPLETED or channel.result is None:
        raise HTTPException(status_code=409, detail=f"Job is {channel.state.value}")
    return _result_response(channel.result)


@app.delete("/jobs/{job_id}", status_code=204)
def delete_job(job_id: str):
    channel = _get_job(job_id)
    channel.cancel()
    with _JOBS_LOCK:
        _JOBS.pop(job_id, None)
    return Response(status_code=204)
