"""
In-process fan-out of committed messages to live listeners.

Every listener owns a bounded asyncio.Queue. publish() never waits: a listener
whose queue is full is dropped with ListenerOverrun instead of slowing down the
writer or the other listeners.

The hub is owned by the event loop. None of its operations await, so each one
runs to completion without interleaving with other tasks.
"""

import asyncio
import itertools
import logging
from typing import Dict, Optional

from chatfeed.errors import ListenerOverrun
from chatfeed.metrics import record_listener_dropped, set_active_listeners
from chatfeed.models import Message

logger = logging.getLogger(__name__)

# Wakes up a listener blocked on an empty queue once it is closed
_CLOSED = object()


class Listener:
    """
    Subscription handle and async iterator over published messages.

    Iteration ends when the listener is unsubscribed or the hub shuts down,
    after the messages already buffered have been yielded. A listener dropped
    for falling behind raises ListenerOverrun instead.
    """

    def __init__(self, listener_id: int, buffer_size: int):
        self.id = listener_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size)
        self._closed = False
        self._error: Optional[Exception] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "Listener":
        return self

    async def __anext__(self) -> Message:
        if self._closed and self._queue.empty():
            self._finish()
        item = await self._queue.get()
        if item is _CLOSED:
            self._finish()
        return item

    def _finish(self):
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    def _offer(self, message: Message) -> bool:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    def _terminate(self, error: Optional[Exception] = None) -> None:
        if self._closed:
            return
        self._closed = True
        self._error = error
        if error is not None:
            # An overrun listener reconnects and replays; its backlog is useless
            while not self._queue.empty():
                self._queue.get_nowait()
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Consumer is not waiting; it sees `closed` once the queue drains
            pass

    def __repr__(self) -> str:
        return f"<Listener id={self.id} closed={self._closed}>"


class BroadcastHub:
    """Registry of live listeners and the publish side of the live feed."""

    def __init__(self, buffer_size: int = 64):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self._listeners: Dict[int, Listener] = {}
        self._ids = itertools.count(1)
        self._closed = False

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Listener:
        """
        Register a new listener.

        The listener only sees messages published after this call. Subscribing
        to a closed hub returns a listener that is already finished.
        """
        listener = Listener(next(self._ids), self.buffer_size)
        if self._closed:
            listener._terminate()
            return listener
        self._listeners[listener.id] = listener
        set_active_listeners(len(self._listeners))
        logger.debug(f"Listener {listener.id} subscribed ({len(self._listeners)} active)")
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        """Remove a listener. Safe to call more than once."""
        if self._listeners.pop(listener.id, None) is None:
            return
        listener._terminate()
        record_listener_dropped("disconnect")
        set_active_listeners(len(self._listeners))
        logger.debug(f"Listener {listener.id} unsubscribed ({len(self._listeners)} active)")

    def publish(self, message: Message) -> int:
        """
        Enqueue `message` for every current listener without blocking.

        Returns:
            Number of listeners the message was delivered to
        """
        delivered = 0
        for listener in list(self._listeners.values()):
            if listener._offer(message):
                delivered += 1
                continue
            self._listeners.pop(listener.id, None)
            listener._terminate(ListenerOverrun(
                f"Listener fell more than {self.buffer_size} messages behind"
            ))
            record_listener_dropped("overrun")
            logger.warning(f"Dropped listener {listener.id}: buffer of {self.buffer_size} messages full")
        set_active_listeners(len(self._listeners))
        return delivered

    def close(self) -> None:
        """Terminate every listener and refuse new ones. Used on shutdown."""
        if self._closed:
            return
        self._closed = True
        listeners = list(self._listeners.values())
        self._listeners.clear()
        for listener in listeners:
            listener._terminate()
            record_listener_dropped("shutdown")
        set_active_listeners(0)
        logger.info(f"Broadcast hub closed, {len(listeners)} listeners terminated")
