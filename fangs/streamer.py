"""Batching event streamer that posts captured events for one run."""

from __future__ import annotations

import dataclasses
import json
import logging
import queue
import ssl
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass

from fangs.protocol import EventBatch, EventEnvelope

DEFAULT_FLUSH_INTERVAL = 0.25
DEFAULT_MAX_BATCH = 64
DEFAULT_QUEUE_SIZE = 1024
DEFAULT_TIMEOUT = 10.0
_RUN_ID_LEN = 16

_CLOSE = object()


@dataclass
class StreamStats:
    """Cumulative streamer activity."""

    batches_sent: int = 0
    events_sent: int = 0
    batch_send_errors: int = 0


class StreamError(RuntimeError):
    """A batch could not be delivered."""


class EventStreamer:
    """Batch events for one run and POST them to ``/v1/runs/<run_id>/events``.

    A batch is flushed every ``flush_interval`` seconds or as soon as it holds
    ``max_batch`` events, whichever comes first. ``send`` never blocks: when
    the backlog is full the event is dropped with a warning. Each batch
    carries a sequence number that starts at 1 and grows by one per flush.
    """

    def __init__(
        self,
        base_url: str,
        run_id: bytes,
        logger: logging.Logger | None = None,
        ssl_context: ssl.SSLContext | None = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        max_batch: int = DEFAULT_MAX_BATCH,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        run_id = bytes(run_id)
        if len(run_id) != _RUN_ID_LEN:
            raise ValueError(f"run_id must be {_RUN_ID_LEN} bytes, got {len(run_id)}")
        if flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if max_batch <= 0:
            raise ValueError("max_batch must be positive")
        self.base_url = base_url
        self.run_id = run_id
        self.run_id_hex = run_id.hex()
        self.logger = logger or logging.getLogger(__name__)
        self._ssl_context = ssl_context
        self._flush_interval = flush_interval
        self._max_batch = max_batch
        self._timeout = timeout
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._state_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = StreamStats()
        self._seq = 0
        self._closed = False
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def __enter__(self) -> EventStreamer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def url(self) -> str:
        return f"{self.base_url}/v1/runs/{self.run_id_hex}/events"

    def send(self, envelope: EventEnvelope) -> None:
        """Queue an event for the next batch, dropping it when the backlog is full."""
        with self._state_lock:
            if self._closed:
                raise RuntimeError("event streamer is closed")
            try:
                self._queue.put_nowait(envelope)
            except queue.Full:
                self.logger.warning(
                    "event streamer queue full; dropping run_id=%s", self.run_id_hex
                )

    def stats(self) -> StreamStats:
        """Return a snapshot of the activity since start."""
        with self._stats_lock:
            return dataclasses.replace(self._stats)

    def close(self) -> None:
        """Flush what is pending and stop; blocks until the worker exits."""
        with self._state_lock:
            already_closed = self._closed
            self._closed = True
        if not already_closed:
            self._queue.put(_CLOSE)
        self._thread.join()

    def _loop(self) -> None:
        pending: list[EventEnvelope] = []
        deadline = time.monotonic() + self._flush_interval
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._flush(pending)
                pending = []
                deadline = time.monotonic() + self._flush_interval
                continue
            try:
                item = self._queue.get(timeout=remaining)
            except queue.Empty:
                continue
            if item is _CLOSE:
                self._flush(pending)
                return
            pending.append(item)
            if len(pending) >= self._max_batch:
                self._flush(pending)
                pending = []

    def _flush(self, pending: list[EventEnvelope]) -> None:
        if not pending:
            return
        self._seq += 1
        batch = EventBatch(self.run_id, self._seq, list(pending))
        try:
            self._post(batch)
        except (StreamError, OSError, ValueError) as exc:
            with self._stats_lock:
                self._stats.batch_send_errors += 1
            self.logger.warning(
                "event batch POST failed err=%s seq=%d events=%d",
                exc,
                self._seq,
                len(pending),
            )
            return
        with self._stats_lock:
            self._stats.batches_sent += 1
            self._stats.events_sent += len(pending)

    def _post(self, batch: EventBatch) -> None:
        body = json.dumps(batch.to_dict()).encode("utf-8")
        request = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(
                request, timeout=self._timeout, context=self._ssl_context
            ) as response:
                status = response.status
                text = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise StreamError(f"orchestrator returned {exc.code}: {detail}") from exc
        if status >= 300:
            detail = text.decode("utf-8", errors="replace")
            raise StreamError(f"orchestrator returned {status}: {detail}")