"""Per-session publish/subscribe of roster events.

Subscribers only see events published while they are subscribed. Publishing
never blocks: every subscription owns a bounded queue and a subscriber that
falls behind far enough to fill it is dropped.
"""
import logging
import queue
import threading
from typing import Callable, Dict, Iterator, List, Optional

from config import EVENT_QUEUE_SIZE
from schemas import RosterEvent

logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, bus: "EventBus", session_id: str, maxsize: int):
        self.session_id = session_id
        self._bus = bus
        self._queue: "queue.Queue[Optional[RosterEvent]]" = queue.Queue(maxsize=maxsize)
        self.closed = False
        self.overflowed = False
        self._waker: Optional[Callable[[], None]] = None

    def set_waker(self, waker: Optional[Callable[[], None]]) -> None:
        """Register a non-blocking callback run after each delivery and on close.

        It runs on the publishing thread, possibly with the topic lock held.
        """
        self._waker = waker

    def _wake(self) -> None:
        if self._waker is not None:
            self._waker()

    def _offer(self, event: RosterEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        self._wake()
        return True

    def _terminate(self) -> None:
        self.closed = True
        # wake up a blocked reader; the sentinel may not fit if the queue is full
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass
        self._wake()

    def get(self, timeout: Optional[float] = None) -> Optional[RosterEvent]:
        """Next event, or None on timeout or once the subscription is closed and drained."""
        if self.closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[RosterEvent]:
        events = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return events
            if event is not None:
                events.append(event)

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __iter__(self) -> Iterator[RosterEvent]:
        while True:
            event = self.get()
            if event is None:
                if self.closed:
                    return
                continue
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class _Topic:
    def __init__(self):
        self.lock = threading.Lock()
        self.subscribers: List[Subscription] = []
        self.seq = 0


class EventBus:
    def __init__(self, queue_size: int = EVENT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._topics: Dict[str, _Topic] = {}

    def _topic(self, session_id: str) -> _Topic:
        with self._lock:
            topic = self._topics.get(session_id)
            if topic is None:
                topic = self._topics[session_id] = _Topic()
            return topic

    def subscribe(self, session_id: str, maxsize: Optional[int] = None) -> Subscription:
        sub = Subscription(self, session_id, maxsize or self.queue_size)
        topic = self._topic(session_id)
        with topic.lock:
            topic.subscribers.append(sub)
        logger.debug("Subscriber added to session %s (%d total)", session_id, len(topic.subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        topic = self._topic(sub.session_id)
        with topic.lock:
            if sub in topic.subscribers:
                topic.subscribers.remove(sub)
        sub._terminate()

    def subscriber_count(self, session_id: str) -> int:
        topic = self._topic(session_id)
        with topic.lock:
            return len(topic.subscribers)

    def publish(self, session_id: str, event: RosterEvent) -> RosterEvent:
        """Stamp ``event`` with the next sequence number and fan it out.

        Returns the stamped event. Subscribers whose queue is full are dropped.
        """
        topic = self._topic(session_id)
        with topic.lock:
            topic.seq += 1
            event = event.model_copy(update={"seq": topic.seq})
            dropped = [sub for sub in topic.subscribers if not sub._offer(event)]
            for sub in dropped:
                topic.subscribers.remove(sub)
                sub.overflowed = True
                sub._terminate()
        for sub in dropped:
            logger.warning("Dropped slow subscriber on session %s at seq %d", session_id, event.seq)
        return event
