"""
Error taxonomy for message ingestion and broadcasting.

- InvalidMessage: client caused, never retried automatically, not persisted
- StorageUnavailable: server caused and transient, safe to retry with the same id
- ListenerOverrun: a listener could not keep up and was dropped
"""


class ChatError(Exception):
    """Base class for all chatfeed errors."""


class InvalidMessage(ChatError):
    """The submitted message violates the message policy."""


class StorageUnavailable(ChatError):
    """The durable store could not complete the operation."""


class ListenerOverrun(ChatError):
    """A listener's buffer filled up and the listener was disconnected."""
