"""
Server-Sent Events stream of the chat: history replay followed by live events.
"""

import asyncio
import enum
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from chatfeed.errors import ListenerOverrun, StorageUnavailable
from chatfeed.hub import BroadcastHub
from chatfeed.models import Message
from chatfeed.schemas import MessageEvent
from chatfeed.storage import MessageStore

logger = logging.getLogger(__name__)

SSE_MEDIA_TYPE = "text/event-stream"


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


def format_sse(data: str, event_id: Optional[str] = None, event: Optional[str] = None) -> str:
    """Render one SSE frame. Multi-line data is split into several data fields."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    if event is not None:
        lines.append(f"event: {event}")
    for line in data.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def encode_message(message: Message) -> str:
    """A committed message as an SSE frame whose id is the message sequence."""
    payload = MessageEvent.from_message(message).model_dump_json()
    return format_sse(payload, event_id=str(message.sequence))


def encode_error(reason: str) -> str:
    """Terminal frame telling the client the server gave up on this stream."""
    return format_sse(json.dumps({"message": reason}), event="error")


def parse_last_event_id(value: Optional[str]) -> int:
    """Last-Event-ID header as a sequence; anything unusable means 'from the start'."""
    if not value:
        return 0
    try:
        last_event_id = int(value.strip())
    except ValueError:
        return 0
    return max(last_event_id, 0)


class EventStream:
    """
    One client connection to the live feed.

    connecting -> streaming -> closed. The stream is streaming as soon as its
    listener is registered, which happens before the history snapshot is read.
    A message committed in between is either in the snapshot or in the
    listener's queue; live events already covered by the snapshot are skipped
    by sequence.
    """

    def __init__(
        self,
        store: MessageStore,
        hub: BroadcastHub,
        last_event_id: int = 0,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ):
        self.store = store
        self.hub = hub
        self.last_event_id = last_event_id
        self.is_disconnected = is_disconnected
        self.state = ConnectionState.CONNECTING

    async def events(self) -> AsyncIterator[str]:
        listener = self.hub.subscribe()
        self.state = ConnectionState.STREAMING
        logger.info(f"Event stream opened (listener {listener.id}, last_event_id={self.last_event_id})")
        try:
            try:
                snapshot = await asyncio.to_thread(self.store.list_since, self.last_event_id)
            except StorageUnavailable as e:
                logger.error(f"Could not replay history for listener {listener.id}: {e}")
                yield encode_error("The chat history is temporarily unavailable")
                return

            high_water = self.last_event_id
            for message in snapshot:
                if await self._client_gone():
                    return
                yield encode_message(message)
                high_water = message.sequence

            try:
                async for message in listener:
                    if message.sequence <= high_water:
                        continue
                    if await self._client_gone():
                        break
                    yield encode_message(message)
                    high_water = message.sequence
            except ListenerOverrun as e:
                logger.warning(f"Listener {listener.id} overrun: {e}")
                yield encode_error(f"{e}. Reconnect to continue.")
        finally:
            self.hub.unsubscribe(listener)
            self.state = ConnectionState.CLOSED
            logger.info(f"Event stream closed (listener {listener.id})")

    async def _client_gone(self) -> bool:
        return self.is_disconnected is not None and await self.is_disconnected()
