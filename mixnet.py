"""
Batching mixnet.

Ballots are buffered and released in cryptographically shuffled batches so
that submission order cannot be matched against chain order.  A released batch
is handed to ``batch_handler`` (normally ConsensusCoordinator.submit_transactions); the
handler runs outside the buffer lock.

    EMPTY → ACCUMULATING → READY (≥ min_batch_size) → FLUSHING → EMPTY
"""
from __future__ import annotations

import enum
import logging
import secrets
import threading
import time
from typing import Callable, Optional

from config import MIXNET_CHECK_INTERVAL, MIXNET_MAX_WAIT, MIXNET_MIN_BATCH_SIZE

logger = logging.getLogger(__name__)


class MixnetState(enum.Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    READY = "ready"
    FLUSHING = "flushing"


class Mixnet:
    def __init__(self, batch_handler: Callable[[list], None],
                 min_batch_size: int = MIXNET_MIN_BATCH_SIZE,
                 max_wait: float = MIXNET_MAX_WAIT,
                 check_interval: float = MIXNET_CHECK_INTERVAL):
        if min_batch_size < 1:
            raise ValueError("min_batch_size must be at least 1")
        self.batch_handler = batch_handler
        self.min_batch_size = min_batch_size
        self.max_wait = max_wait
        self.check_interval = check_interval

        self._lock = threading.Lock()
        self._buffer: list[tuple[float, object]] = []  # (monotonic arrival, ballot)
        self._flushing = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._random = secrets.SystemRandom()
        self.batches_released = 0

    # ───── state ─────
    @property
    def state(self) -> MixnetState:
        with self._lock:
            return self._state_locked()

    def _state_locked(self) -> MixnetState:
        if self._flushing:
            return MixnetState.FLUSHING
        if not self._buffer:
            return MixnetState.EMPTY
        if len(self._buffer) >= self.min_batch_size:
            return MixnetState.READY
        return MixnetState.ACCUMULATING

    def buffer_size(self) -> int:
        with self._lock:
            return len(self._buffer)

    def info(self) -> dict:
        with self._lock:
            return {
                "state": self._state_locked().value,
                "buffered": len(self._buffer),
                "batchSize": self.min_batch_size,
            }

    # ───── producer side ─────
    def add_vote(self, ballot):
        with self._lock:
            self._buffer.append((time.monotonic(), ballot))
            size = len(self._buffer)
        logger.debug(f"Mixnet buffered ballot ({size}/{self.min_batch_size})")
        if size >= self.min_batch_size:
            self.process_votes()

    def retain(self, admissible: Callable[[list], list]) -> int:
        """
        Drop buffered ballots that ``admissible`` filters out, e.g. ones whose
        key image reached the chain through another node.  Returns how many
        were dropped.
        """
        with self._lock:
            snapshot = [ballot for _, ballot in self._buffer]
        if not snapshot:
            return 0
        kept = {id(ballot) for ballot in admissible(snapshot)}
        checked = {id(ballot) for ballot in snapshot}
        with self._lock:
            before = len(self._buffer)
            self._buffer = [(arrived, ballot) for arrived, ballot in self._buffer
                            if id(ballot) not in checked or id(ballot) in kept]
            dropped = before - len(self._buffer)
        if dropped:
            logger.warning(f"Mixnet dropped {dropped} buffered ballots that can no longer be sealed")
        return dropped

    def shuffle_votes(self, ballots: list) -> list:
        shuffled = list(ballots)
        self._random.shuffle(shuffled)
        return shuffled

    # ───── flushing ─────
    def _drain(self, force: bool) -> list:
        with self._lock:
            if self._flushing or not self._buffer:
                return []
            if not force and len(self._buffer) < self.min_batch_size:
                return []
            drained = [ballot for _, ballot in self._buffer]
            self._buffer.clear()
            self._flushing = True
            return drained

    def _release(self, ballots: list) -> int:
        if not ballots:
            return 0
        batch = self.shuffle_votes(ballots)
        try:
            self.batch_handler(batch)
        except Exception as e:
            logger.error(f"Mixnet batch handler failed, requeueing {len(batch)} ballots: {e}")
            now = time.monotonic()
            with self._lock:
                self._buffer[:0] = [(now, ballot) for ballot in batch]
            return 0
        finally:
            with self._lock:
                self._flushing = False
        self.batches_released += 1
        logger.info(f"Mixnet released a shuffled batch of {len(batch)} ballots")
        return len(batch)

    def process_votes(self) -> int:
        """Release a batch if at least min_batch_size ballots are waiting."""
        return self._release(self._drain(force=False))

    def force_process_votes(self) -> int:
        """Release everything that is buffered, regardless of batch size."""
        return self._release(self._drain(force=True))

    def check_and_process_votes(self) -> int:
        with self._lock:
            if not self._buffer:
                return 0
            oldest = self._buffer[0][0]
            full = len(self._buffer) >= self.min_batch_size
        if full:
            return self.process_votes()
        if time.monotonic() - oldest >= self.max_wait:
            logger.info(f"Mixnet max wait of {self.max_wait}s exceeded, forcing partial batch")
            return self.force_process_votes()
        return 0

    # ───── timer ─────
    def _run(self):
        while not self._stop_event.wait(self.check_interval):
            try:
                self.check_and_process_votes()
            except Exception as e:
                logger.error(f"Mixnet periodic flush failed: {e}")

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="mixnet-timer", daemon=True)
        self._thread.start()
        logger.info(f"Mixnet started (batch={self.min_batch_size}, max_wait={self.max_wait}s)")

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.check_interval + 1)
            self._thread = None
        logger.info("Mixnet stopped")
