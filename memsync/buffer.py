"""
Conversation buffer with background categorization.

The buffer holds recently added messages plus the current conversation
tag and the tagging mode. One lock guards all three. When the buffer
reaches its threshold in automatic mode, the entries are swapped out for
an empty list and the snapshot is queued for the worker pool, so the
caller of append() never waits on categorization or the store.
"""

import logging
import queue
import threading
from typing import Callable, Optional, Sequence

from .types import MODE_AUTOMATIC, MODE_MANUAL, Message, validate_mode

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5

Batch = list[Message]


class ConversationBuffer:
    """
    Shared buffer of recent messages feeding the categorizer.

    ``handler`` is called with each dispatched batch on a worker thread.
    Batches are handed over in dispatch order; with more than one
    worker, handling may overlap.
    """

    def __init__(
        self,
        handler: Callable[[Sequence[Message]], object],
        *,
        threshold: int = DEFAULT_THRESHOLD,
        mode: str = MODE_AUTOMATIC,
        workers: int = 1,
    ):
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1: {threshold}")
        if workers < 1:
            raise ValueError(f"workers must be >= 1: {workers}")
        self._handler = handler
        self._threshold = threshold
        self._lock = threading.Lock()
        self._entries: Batch = []
        self._current_tag = ""
        self._mode = validate_mode(mode)
        self._closed = False

        self._queue: "queue.Queue[Optional[Batch]]" = queue.Queue()
        self._workers = [
            threading.Thread(
                target=self._worker, name=f"memsync-categorizer-{i}", daemon=True,
            )
            for i in range(workers)
        ]
        for t in self._workers:
            t.start()

    @property
    def threshold(self) -> int:
        return self._threshold

    # -------------------------------------------------------------------------
    # Shared state
    # -------------------------------------------------------------------------

    def stamp(self, message: Message) -> Message:
        """Apply the current conversation tag to a message (if set)."""
        with self._lock:
            if self._current_tag:
                message.add_tag(self._current_tag)
        return message

    def append(self, message: Message, stamp: bool = True) -> None:
        """
        Buffer a message; dispatches a full batch in automatic mode.

        In manual mode the buffer keeps only the latest ``threshold``
        messages. Pass ``stamp=False`` when the message already went
        through stamp().
        """
        with self._lock:
            if stamp and self._current_tag:
                message.add_tag(self._current_tag)
            if self._mode == MODE_MANUAL and len(self._entries) >= self._threshold:
                dropped = self._entries.pop(0)
                logger.debug("Buffer full in manual mode, dropping %s", dropped.id)
            self._entries.append(message)
            if self._mode == MODE_AUTOMATIC and len(self._entries) >= self._threshold:
                self._dispatch_locked()

    def set_tag(self, tag: str) -> None:
        """Set the tag applied to every new message. Empty clears it."""
        with self._lock:
            self._current_tag = (tag or "").strip()
        logger.info("Conversation tag set to %r", tag)

    def get_tag(self) -> str:
        with self._lock:
            return self._current_tag

    def set_mode(self, mode: str) -> int:
        """
        Switch tagging mode.

        Switching into automatic with buffered messages dispatches them
        immediately. Returns the number of messages dispatched.
        """
        mode = validate_mode(mode)
        with self._lock:
            previous = self._mode
            self._mode = mode
            dispatched = 0
            if mode == MODE_AUTOMATIC and previous != MODE_AUTOMATIC and self._entries:
                dispatched = self._dispatch_locked()
        logger.info("Tagging mode %s -> %s", previous, mode)
        return dispatched

    def get_mode(self) -> str:
        with self._lock:
            return self._mode

    @property
    def pending(self) -> int:
        """Messages currently buffered (not yet dispatched)."""
        with self._lock:
            return len(self._entries)

    def flush(self) -> int:
        """Dispatch whatever is buffered regardless of mode."""
        with self._lock:
            return self._dispatch_locked()

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch_locked(self) -> int:
        """Swap out the entries and queue them. Caller holds the lock."""
        if not self._entries:
            return 0
        batch, self._entries = self._entries, []
        if self._closed:
            logger.warning("Buffer closed, dropping batch of %d messages", len(batch))
            return 0
        self._queue.put(batch)
        logger.debug("Dispatched batch of %d messages", len(batch))
        return len(batch)

    def _worker(self) -> None:
        while True:
            batch = self._queue.get()
            try:
                if batch is None:
                    return
                self._handler(batch)
            except Exception:
                # A failing handler must not kill the worker
                logger.exception("Categorization of %d messages failed", len(batch or []))
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every dispatched batch has been handled."""
        self._queue.join()

    def close(self, drain: bool = True) -> None:
        """
        Stop accepting dispatches and stop the workers.

        With ``drain``, every batch already queued is handled before
        returning; otherwise queued batches are discarded. Messages still
        buffered below the threshold stay untagged (use flush() first to
        categorize them).
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._entries:
                logger.debug("Closing with %d undispatched messages", len(self._entries))
        if not drain:
            # Discard queued batches
            while True:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    break
                self._queue.task_done()
        for _ in self._workers:
            self._queue.put(None)
        for t in self._workers:
            t.join()
