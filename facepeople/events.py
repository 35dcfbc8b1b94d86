"""
Fire-and-forget progress and change notifications.

Publishers never wait for listeners: events are queued on a single worker
thread so they are delivered in publish order without blocking a processing
loop.  A listener that raises is logged and otherwise ignored.  Tests (and the
CLI) can pass ``synchronous=True`` to deliver events inline.

Topics used by the pipeline:

- ``job.progress`` – ``{job_id, kind, processed, total, success_count, failed_count}`` per item
- ``job.status`` – ``{job_id, kind, status}`` on every transition
- ``detect.progress`` – ``{current, total, photo_id, detected_faces, status}`` per photo
- ``people.updated`` – ``{reason, person_ids}`` after membership changes
"""

from __future__ import annotations

import concurrent.futures
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

JOB_PROGRESS = "job.progress"
JOB_STATUS = "job.status"
DETECT_PROGRESS = "detect.progress"
PEOPLE_UPDATED = "people.updated"

Listener = Callable[[str, Dict[str, Any]], None]


class EventBus:
    def __init__(self, synchronous: bool = False) -> None:
        self.synchronous = synchronous
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    def subscribe(self, topic: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``topic`` (``"*"`` for all topics).

        Returns a callable that removes the subscription.
        """
        with self._lock:
            self._listeners[topic].append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners[topic]:
                    self._listeners[topic].remove(listener)

        return unsubscribe

    def publish(self, topic: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(topic, ())) + list(self._listeners.get("*", ()))
        if not listeners:
            return
        event = dict(payload)
        if self.synchronous:
            self._deliver(listeners, topic, event)
            return
        with self._lock:
            if self._executor is None:
                self._executor = concurrent.futures.ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="facepeople-events"
                )
            executor = self._executor
        executor.submit(self._deliver, listeners, topic, event)

    @staticmethod
    def _deliver(listeners: List[Listener], topic: str, event: Dict[str, Any]) -> None:
        for listener in listeners:
            try:
                listener(topic, event)
            except Exception as exc:
                logger.warning(f"Event listener for {topic!r} failed: {exc}")

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every event published so far has been delivered."""
        if self._executor is None:
            return
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
