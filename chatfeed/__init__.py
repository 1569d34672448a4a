"""chatfeed: idempotent message ingestion with a live, ordered event feed."""

__version__ = "1.0.0"
