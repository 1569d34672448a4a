"""
Accepting new messages: validation, idempotent commit and broadcast.
"""

import asyncio
import logging
from typing import Tuple

from chatfeed.errors import InvalidMessage
from chatfeed.hub import BroadcastHub
from chatfeed.models import Message
from chatfeed.sequencer import Sequencer
from chatfeed.storage import MessageStore

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 128


def validate_submission(
    message_id: str,
    sender: str,
    content: str,
    max_sender_length: int,
    max_content_length: int,
) -> None:
    """
    Check a submission against the message policy.

    Raises:
        InvalidMessage: with a human readable reason
    """
    for field, value in (("id", message_id), ("sender", sender), ("content", content)):
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            # Lone surrogates survive JSON decoding but cannot be stored
            raise InvalidMessage(f"{field} is not valid unicode text") from None
    if not message_id or len(message_id) > MAX_ID_LENGTH:
        raise InvalidMessage(f"id must be between 1 and {MAX_ID_LENGTH} characters")
    if not sender.strip():
        raise InvalidMessage("sender must not be blank")
    if len(sender) > max_sender_length:
        raise InvalidMessage(f"sender must be at most {max_sender_length} characters")
    if not content.strip():
        raise InvalidMessage("content must not be blank")
    if len(content) > max_content_length:
        raise InvalidMessage(f"content must be at most {max_content_length} characters")


class ChatService:
    """
    The single writer of the chat.

    submit() serializes store insert, sequence assignment and publish behind
    one lock, so sequences follow commit order and every listener sees
    messages in that order. Validation happens before the lock is taken.
    """

    def __init__(
        self,
        store: MessageStore,
        hub: BroadcastHub,
        sequencer: Sequencer,
        max_sender_length: int = 100,
        max_content_length: int = 4000,
    ):
        self.store = store
        self.hub = hub
        self.sequencer = sequencer
        self.max_sender_length = max_sender_length
        self.max_content_length = max_content_length
        self._commit_lock = asyncio.Lock()

    @classmethod
    def open(cls, store: MessageStore, hub: BroadcastHub, **policy) -> "ChatService":
        """Create a service whose sequencer continues after the newest stored message."""
        sequencer = Sequencer.resume(*store.max_sequence())
        return cls(store, hub, sequencer, **policy)

    async def submit(self, message_id: str, sender: str, content: str) -> Tuple[Message, bool]:
        """
        Store and broadcast a message unless its id was seen before.

        Returns:
            Tuple of (message, was_new). For a repeated id the first committed
            message is returned unchanged and nothing is broadcast.

        Raises:
            InvalidMessage: the message violates the policy
            StorageUnavailable: the store failed; retry with the same id
        """
        validate_submission(
            message_id,
            sender,
            content,
            self.max_sender_length,
            self.max_content_length,
        )

        async with self._commit_lock:
            # The commit runs in a worker thread; the lock keeps it the only writer
            message, was_new = await asyncio.to_thread(
                self.store.insert_if_absent, message_id, sender, content, self.sequencer
            )
            if was_new:
                delivered = self.hub.publish(message)
                logger.debug(f"Message {message_id} published to {delivered} listeners")

        if not was_new and (message.sender, message.content) != (sender, content):
            logger.warning(
                f"Message {message_id} resubmitted with a different payload, keeping the original"
            )
        return message, was_new
