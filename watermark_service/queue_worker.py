"""
Execution channel: runs one batch off the caller's thread.

The caller drives the batch with control messages (start, pause, resume,
cancel) and observes it through outbound messages (progress, paused,
resumed, complete, error, cancelled). Outbound messages are delivered to an
optional callback and queued on `ExecutionChannel.messages`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import queue
import threading
import time
import traceback
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

from . import config
from .errors import BatchCancelled, ChannelStateError, WatermarkError
from .pipeline import BatchResult, ImageInput, PauseGate, run_batch

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED)


TERMINAL_MESSAGES = frozenset({"complete", "error", "cancelled"})


@dataclass(frozen=True)
class ChannelMessage:
    type: str
    percent: Optional[float] = None
    result: Optional[BatchResult] = None
    mime_type: Optional[str] = None
    message: Optional[str] = None
    trace: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_MESSAGES


MessageCallback = Callable[[ChannelMessage], None]


class ExecutionChannel:
    """
    One pausable, cancellable batch run on a worker thread.

    A channel runs at most one batch; completed, failed and cancelled
    channels stay terminal and a new batch needs a new channel.
    """

    def __init__(self, on_message: Optional[MessageCallback] = None) -> None:
        self.messages: "queue.Queue[ChannelMessage]" = queue.Queue()
        self.progress = 0.0
        self.result: Optional[BatchResult] = None
        self.error: Optional[str] = None
        self._on_message = on_message
        self._state = ExecutionState.IDLE
        self._lock = threading.RLock()
        self._gate = PauseGate()
        self._thread: Optional[threading.Thread] = None
        self.updated_at = time.monotonic()

    @property
    def state(self) -> ExecutionState:
        return self._state

    def _set_state(self, state: ExecutionState) -> None:
        self._state = state
        self.updated_at = time.monotonic()

    # Inbound -----------------------------------------------------------

    def post(self, message: Mapping[str, Any]) -> None:
        """Dispatch a dict control message such as {"type": "pause"}."""
        kind = message.get("type")
        if kind == "start":
            self.start(message.get("inputs") or [])
        elif kind == "pause":
            self.pause()
        elif kind == "resume":
            self.resume()
        elif kind == "cancel":
            self.cancel()
        else:
            raise ValueError(f"Unknown control message: {kind!r}")

    def start(self, inputs: Sequence[ImageInput]) -> None:
        with self._lock:
            if self._state is not ExecutionState.IDLE:
                raise ChannelStateError(f"Cannot start a channel in state {self._state.value}")
            self._set_state(ExecutionState.RUNNING)
            self._thread = threading.Thread(
                target=self._run,
                args=(list(inputs),),
                name="watermark-batch",
                daemon=True,
            )
            self._thread.start()
        logger.info("channel: started batch of %d inputs", len(inputs))

    def pause(self) -> None:
        with self._lock:
            if self._state is not ExecutionState.RUNNING:
                return
            self._set_state(ExecutionState.PAUSED)
            self._gate.pause()
            self._emit(ChannelMessage(type="paused"))
        logger.info("channel: paused at %.1f%%", self.progress)

    def resume(self) -> None:
        with self._lock:
            if self._state is not ExecutionState.PAUSED:
                return
            self._set_state(ExecutionState.RUNNING)
            self._gate.resume()
            self._emit(ChannelMessage(type="resumed"))
        logger.info("channel: resumed")

    def cancel(self) -> None:
        with self._lock:
            if self._state.is_terminal:
                return
            self._set_state(ExecutionState.CANCELLED)
            self._gate.cancel()
            self.result = None
            self._emit(ChannelMessage(type="cancelled"))
        logger.info("channel: cancelled")

    # Outbound ----------------------------------------------------------

    def next_message(self, timeout: Optional[float] = None) -> ChannelMessage:
        """Return the next outbound message; raises `queue.Empty` on timeout."""
        return self.messages.get(timeout=timeout)

    def iter_messages(self, timeout: Optional[float] = None) -> Iterator[ChannelMessage]:
        """Yield outbound messages up to and including the terminal one."""
        while True:
            message = self.next_message(timeout=timeout)
            yield message
            if message.is_terminal:
                return

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _emit(self, message: ChannelMessage) -> None:
        self.messages.put(message)
        if self._on_message is not None:
            self._on_message(message)

    # Worker ------------------------------------------------------------

    def _deliver(self, message: ChannelMessage, final_state: Optional[ExecutionState] = None) -> None:
        """Emit a worker message once the channel is running again."""
        while True:
            self._gate.wait()
            with self._lock:
                if self._state is ExecutionState.CANCELLED:
                    raise BatchCancelled()
                if self._state is ExecutionState.RUNNING:
                    if final_state is not None:
                        self._set_state(final_state)
                    self._emit(message)
                    return

    def _on_progress(self, percent: float) -> None:
        self.progress = percent
        self._deliver(ChannelMessage(type="progress", percent=percent))

    def _run(self, inputs: Sequence[ImageInput]) -> None:
        settings = config.get_settings()
        try:
            try:
                result = run_batch(inputs, progress=self._on_progress, gate=self._gate)
            except BatchCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                if isinstance(exc, WatermarkError):
                    logger.warning("channel: batch failed: %s", exc)
                else:
                    logger.exception("channel: batch failed: %s", exc)
                self.error = str(exc) or type(exc).__name__
                self._deliver(
                    ChannelMessage(
                        type="error",
                        message=self.error,
                        trace=traceback.format_exc() if settings.debug else None,
                    ),
                    final_state=ExecutionState.FAILED,
                )
                return
            self.result = result
            self._deliver(
                ChannelMessage(type="complete", result=result, mime_type=result.media_type),
                final_state=ExecutionState.COMPLETED,
            )
            logger.info("channel: completed %s (%d bytes)", result.name, len(result.data))
        except BatchCancelled:
            self.result = None
            logger.info("channel: batch discarded after cancel")
