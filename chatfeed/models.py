"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import BigInteger, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class Message(Base):
    """
    A committed chat message.

    Table: messages
    Primary Key: sequence (server assigned, gap free, commit order)
    Unique: message_id (client supplied idempotency key)
    """
    __tablename__ = "messages"

    sequence = Column(Integer, primary_key=True, autoincrement=False)
    message_id = Column(String(128), unique=True, nullable=False, index=True)
    sender = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(BigInteger, nullable=False)  # Epoch milliseconds

    def __repr__(self) -> str:
        return f"<Message sequence={self.sequence} id={self.message_id!r}>"
