"""Background inference worker.

Model loading and inference are CPU-bound and can take seconds, so they
run on a dedicated thread instead of the event loop.  The boundary is
message passing only:

- the caller puts ``_Request(request_id, text)`` on a ``queue.Queue``;
- the worker signals ``started`` when it takes a request off the queue;
- a pending table maps ``request_id`` to an ``asyncio.Future``;
- the worker thread answers with ``loop.call_soon_threadsafe(...)``,
  which resolves or rejects the matching future on the event loop.

Only plain data crosses the boundary: strings in, lists of plain dicts
with ``int`` offsets out.  Predictions whose offsets do not survive the
round trip unchanged (non-integers, out of range for the chunk) are
dropped and counted in the log.
"""
from __future__ import annotations

import asyncio
import logging
import numbers
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any

from anonymizer.ml.ner_model import InferenceTimeoutError, NerModel

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT_S: float = 5.0


class WorkerClosedError(RuntimeError):
    """Raised when a request is submitted to, or pending on, a closed worker."""


@dataclass(frozen=True)
class _Request:
    request_id: str
    text: str
    loop: asyncio.AbstractEventLoop
    started: asyncio.Future[None]


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        return None
    return int(value)


def to_plain_predictions(raw: Any, text_length: int) -> tuple[list[dict[str, Any]], int]:
    """Copy model output into plain dicts, verifying every offset.

    Returns
    -------
    tuple[list[dict], int]
        The accepted predictions and the number dropped for bad offsets.
    """
    plain: list[dict[str, Any]] = []
    dropped = 0
    for item in raw or []:
        if not isinstance(item, dict):
            dropped += 1
            continue
        start, end = _as_int(item.get("start")), _as_int(item.get("end"))
        if start is None or end is None or not 0 <= start < end <= text_length:
            dropped += 1
            continue
        prediction: dict[str, Any] = {
            "start": start,
            "end": end,
            "score": float(item.get("score", 0.0)),
        }
        if item.get("entity_group") is not None:
            prediction["entity_group"] = str(item["entity_group"])
        if item.get("entity") is not None:
            prediction["entity"] = str(item["entity"])
        plain.append(prediction)
    return plain, dropped


class InferenceWorker:
    """Run a synchronous ``NerModel`` on one background thread.

    The model is called on the worker thread only, so a lazily loading
    model (e.g. ``SpacyNerModel``) also loads there.  Requests are served
    in FIFO order; callers on the event loop may await many concurrently.

    A per-request timeout covers the model call itself and starts when the
    worker picks the request up.  Time spent queued behind other requests
    is bounded separately by ``timeout`` per request ahead in the queue.
    A request whose caller has stopped waiting is skipped, not run.
    """

    def __init__(self, model: NerModel, *, name: str = "inference-worker") -> None:
        self._model = model
        self._name = name
        self._queue: queue.Queue[_Request | None] = queue.Queue()
        self._pending: dict[str, asyncio.Future[list[dict[str, Any]]]] = {}
        self._pending_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()
        self._closed = False

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def start(self) -> None:
        with self._start_lock:
            if self._closed:
                raise WorkerClosedError("inference worker is closed")
            if self._thread is None:
                self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
                self._thread.start()

    async def infer(self, text: str, *, timeout: float | None = None) -> list[dict[str, Any]]:
        """Run the model on *text* in the background thread.

        Raises
        ------
        InferenceTimeoutError
            When the model does not answer within *timeout* seconds of
            picking the request up, or the request waits in the queue
            longer than the requests ahead of it can take.  The late
            response, if any, is discarded.
        WorkerClosedError
            When the worker is closed before or while the request is pending.
        Exception
            Whatever the model raised, re-raised on the caller's loop.
        """
        self.start()
        loop = asyncio.get_running_loop()
        request_id = uuid.uuid4().hex
        future: asyncio.Future[list[dict[str, Any]]] = loop.create_future()
        started: asyncio.Future[None] = loop.create_future()
        with self._pending_lock:
            ahead = len(self._pending)
            self._pending[request_id] = future
        self._queue.put(_Request(request_id=request_id, text=text, loop=loop, started=started))

        try:
            if timeout is None:
                return await future
            if not await self._wait_started(future, started, timeout * (ahead + 1)):
                raise InferenceTimeoutError("inference request not picked up in time")
            try:
                return await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as exc:
                raise InferenceTimeoutError("inference timed out") from exc
        finally:
            with self._pending_lock:
                self._pending.pop(request_id, None)

    @staticmethod
    async def _wait_started(
        future: asyncio.Future[list[dict[str, Any]]],
        started: asyncio.Future[None],
        queue_timeout: float,
    ) -> bool:
        """Wait until the worker takes the request (or answers it); False on timeout."""
        done, _ = await asyncio.wait(
            {future, started}, timeout=queue_timeout, return_when=asyncio.FIRST_COMPLETED,
        )
        return bool(done)

    def close(self) -> None:
        """Stop the worker thread and reject every pending request."""
        with self._start_lock:
            if self._closed:
                return
            self._closed = True
            thread = self._thread

        if thread is not None:
            self._queue.put(None)
            thread.join(timeout=_JOIN_TIMEOUT_S)

        with self._pending_lock:
            pending = list(self._pending.items())
        for request_id, future in pending:
            try:
                future.get_loop().call_soon_threadsafe(
                    self._reject, request_id, WorkerClosedError("inference worker closed")
                )
            except RuntimeError:
                logger.debug("worker: event loop closed before pending request was rejected")

    # ------------------------------------------------------------------
    # Worker-thread side
    # ------------------------------------------------------------------

    def _run(self) -> None:
        logger.debug("worker: thread=%s started", self._name)
        while True:
            request = self._queue.get()
            if request is None:
                break
            self._handle(request)
        logger.debug("worker: thread=%s stopped", self._name)

    def _is_waiting(self, request_id: str) -> bool:
        with self._pending_lock:
            future = self._pending.get(request_id)
            return future is not None and not future.done()

    def _handle(self, request: _Request) -> None:
        if not self._is_waiting(request.request_id):
            logger.debug("worker: abandoned request skipped")
            return
        try:
            request.loop.call_soon_threadsafe(self._mark_started, request.started)
        except RuntimeError:
            logger.debug("worker: request from closed event loop skipped")
            return

        try:
            raw = self._model(request.text)
            predictions, dropped = to_plain_predictions(raw, len(request.text))
        except Exception as exc:
            callback, payload = self._reject, exc
        else:
            if dropped:
                logger.warning("worker: dropped predictions with invalid offsets count=%d", dropped)
            callback, payload = self._resolve, predictions

        try:
            request.loop.call_soon_threadsafe(callback, request.request_id, payload)
        except RuntimeError:
            # Caller's loop already closed; nobody is waiting any more.
            logger.debug("worker: response for closed event loop discarded")

    # ------------------------------------------------------------------
    # Event-loop side
    # ------------------------------------------------------------------

    @staticmethod
    def _mark_started(started: asyncio.Future[None]) -> None:
        if not started.done():
            started.set_result(None)

    def _take(self, request_id: str) -> asyncio.Future[list[dict[str, Any]]] | None:
        with self._pending_lock:
            future = self._pending.pop(request_id, None)
        if future is None or future.done():
            logger.debug("worker: late response discarded")
            return None
        return future

    def _resolve(self, request_id: str, predictions: list[dict[str, Any]]) -> None:
        future = self._take(request_id)
        if future is not None:
            future.set_result(predictions)

    def _reject(self, request_id: str, error: BaseException) -> None:
        future = self._take(request_id)
        if future is not None:
            future.set_exception(error)
