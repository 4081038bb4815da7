"""
Per-run update channel with a replay buffer.

The orchestrator is the single producer.  Observers may attach at any point of the run: they are
first replayed the backlog and then receive live updates, with no gap and no duplicates, because
replay and registration happen under the same lock that publishing uses to append and snapshot.
"""

import logging
import threading
from typing import (
    Callable,
    List,
)

from loomcode.common import new_id
from loomcode.core.schema import AgentUpdate

logger = logging.getLogger(__name__)

UpdateObserver = Callable[[AgentUpdate], None]


class UpdateChannel:
    """Sequenced, replayable stream of the updates emitted by one run."""

    def __init__(self, run_id: str | None = None):
        self.run_id = run_id or new_id("run")
        self._backlog: List[AgentUpdate] = []
        self._observers: List[UpdateObserver] = []
        self._lock = threading.RLock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._backlog[-1].seq if self._backlog else 0

    def publish(self, update: AgentUpdate) -> AgentUpdate | None:
        """Stamp *update* with the next sequence number, buffer it and deliver it."""
        with self._lock:
            if self._closed:
                return None
            stamped = update.model_copy(update={"seq": len(self._backlog) + 1})
            self._backlog.append(stamped)
            observers = list(self._observers)

        for observer in observers:
            self._deliver(observer, stamped)
        return stamped

    def attach(self, observer: UpdateObserver, after_seq: int = 0) -> None:
        """
        Replay the backlog to *observer*, then subscribe it to live updates.

        A reconnecting observer passes the last sequence number it saw as *after_seq* and is
        replayed only what it missed.
        """
        with self._lock:
            for update in self._backlog[max(after_seq, 0):]:
                self._deliver(observer, update)
            if not self._closed and observer not in self._observers:
                self._observers.append(observer)

    def detach(self, observer: UpdateObserver) -> bool:
        with self._lock:
            try:
                self._observers.remove(observer)
            except ValueError:
                return False
            return True

    def updates_since(self, seq: int = 0) -> List[AgentUpdate]:
        """Updates with a sequence number greater than *seq* (for polling clients)."""
        with self._lock:
            return [u for u in self._backlog if u.seq > seq]

    def close(self) -> None:
        """No further updates are accepted; the backlog stays available for replay."""
        with self._lock:
            self._closed = True
            self._observers.clear()

    @staticmethod
    def _deliver(observer: UpdateObserver, update: AgentUpdate) -> None:
        try:
            observer(update)
        except Exception:  # pylint: disable=broad-except
            # A failing observer must not break the run or the other observers.
            logger.exception("Update observer failed on %s #%d", update.type, update.seq)
