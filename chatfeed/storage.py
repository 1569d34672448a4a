import logging
import threading
from typing import List, Optional, Tuple

from sqlalchemy import create_engine, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from chatfeed.errors import StorageUnavailable
from chatfeed.models import Base, Message
from chatfeed.sequencer import Sequencer

logger = logging.getLogger(__name__)


class MessageStore:
    """
    Durable, append-only record of messages backed by SQLite.

    Rows are keyed by the client supplied message id and ordered by the server
    assigned sequence. Instances are created once per application and passed
    to whoever needs them.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        # check_same_thread=False lets FastAPI's worker threads share the engine
        self.engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
        # Objects stay readable after the session is closed; rows never change
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )
        self._write_lock = threading.Lock()

    def init_db(self) -> None:
        """
        Create all tables. Called during application startup.

        Raises:
            StorageUnavailable: if the database file cannot be opened or written
        """
        logger.debug(f"Initializing database with URL: {self.database_url}")
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}")
            raise StorageUnavailable(f"Failed to initialize database: {e}") from e
        logger.info("Database initialized successfully")

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    def check_health(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        logger.debug("Checking database health...")
        try:
            with self.SessionLocal() as db:
                db.execute(text("SELECT 1"))
                result = db.execute(text(
                    "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='messages'"
                )).scalar()
                if result == 0:
                    logger.error("Database schema not applied: 'messages' table not found")
                    return False
            logger.debug("Database health check passed")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_if_absent(
        self,
        message_id: str,
        sender: str,
        content: str,
        sequencer: Sequencer,
    ) -> Tuple[Message, bool]:
        """
        Insert a message unless one with the same id already exists.

        The sequence number and commit timestamp are taken from `sequencer`
        inside the same transaction; the sequencer only advances once the
        commit succeeded.

        Args:
            message_id: Client supplied idempotency key
            sender: Display name of the author
            content: Message body
            sequencer: Sequencer owned by the single writer

        Returns:
            Tuple of (message, was_new)
            - (new row, True): message committed with a fresh sequence
            - (existing row, False): id already present, nothing written

        Raises:
            StorageUnavailable: on any database failure; nothing is committed
        """
        with self._write_lock:
            with self.SessionLocal() as db:
                sequence, timestamp_ms = sequencer.peek()
                message = Message(
                    sequence=sequence,
                    message_id=message_id,
                    sender=sender,
                    content=content,
                    created_at=timestamp_ms,
                )
                try:
                    db.add(message)
                    db.commit()
                except IntegrityError:
                    # message_id already exists - this is expected for idempotency
                    db.rollback()
                    existing = self._get_by_id(db, message_id)
                    if existing is None:
                        # The conflict was on the sequence, not the id
                        logger.error(f"Sequence {sequence} already taken while inserting {message_id}")
                        raise StorageUnavailable(f"Sequence {sequence} is already in use")
                    logger.info(f"Duplicate message detected: {message_id}")
                    return existing, False
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.error(f"Failed to create message {message_id}: {e}")
                    raise StorageUnavailable(f"Failed to store message: {e}") from e

                sequencer.advance(sequence, timestamp_ms)
                logger.info(f"Message created: id={message_id}, sequence={sequence}")
                return message, True

    # =========================================================================
    # Reads
    # =========================================================================

    def get_by_id(self, message_id: str) -> Optional[Message]:
        """Retrieve a message by its id, or None."""
        with self.SessionLocal() as db:
            return self._get_by_id(db, message_id)

    def list_all(self) -> List[Message]:
        """All committed messages ordered by sequence ascending."""
        return self.list_since(0)

    def list_since(self, sequence: int) -> List[Message]:
        """Committed messages with a sequence greater than `sequence`, ascending."""
        try:
            with self.SessionLocal() as db:
                messages = (
                    db.query(Message)
                    .filter(Message.sequence > sequence)
                    .order_by(Message.sequence.asc())
                    .all()
                )
        except SQLAlchemyError as e:
            logger.error(f"Failed to read messages: {e}")
            raise StorageUnavailable(f"Failed to read messages: {e}") from e
        logger.debug(f"Retrieved {len(messages)} messages after sequence {sequence}")
        return messages

    def max_sequence(self) -> Tuple[int, int]:
        """
        Sequence and timestamp of the newest message.

        Returns:
            Tuple of (sequence, created_at), (0, 0) for an empty store.
        """
        try:
            with self.SessionLocal() as db:
                newest = db.query(Message).order_by(Message.sequence.desc()).first()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Failed to read newest message: {e}") from e
        if newest is None:
            return 0, 0
        return newest.sequence, newest.created_at

    def count(self) -> int:
        """Number of committed messages."""
        try:
            with self.SessionLocal() as db:
                return db.query(func.count(Message.sequence)).scalar() or 0
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Failed to count messages: {e}") from e

    def _get_by_id(self, db: Session, message_id: str) -> Optional[Message]:
        try:
            return db.query(Message).filter(Message.message_id == message_id).first()
        except SQLAlchemyError as e:
            raise StorageUnavailable(f"Failed to look up message {message_id}: {e}") from e
