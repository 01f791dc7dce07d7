"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic schemas, see schemas.py.
"""

from sqlalchemy import Column, Index, String, Text

from app.storage import Base


class Message(Base):
    """
    SQLAlchemy model for delivery-tracked messages.

    Table: messages
    Primary Key: id (locally generated)
    Unique: provider_message_id (reconciliation join key, NULL until sent)
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    conversation_id = Column(String, nullable=True)
    sender_id = Column(String, nullable=True)
    recipient_id = Column(String, nullable=True)
    recipient_address = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    message_type = Column(String, nullable=False, default="text")
    status = Column(String, nullable=False, default="pending")
    provider_message_id = Column(String, nullable=True, unique=True, index=True)
    key_fingerprint = Column(String, nullable=True)
    timestamp = Column(String, nullable=False)  # ISO-8601 UTC string

    __table_args__ = (
        # History queries: newest first within a conversation
        Index("ix_messages_conversation_ts", "conversation_id", "timestamp"),
    )
