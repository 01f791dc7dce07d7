"""
Message Store: the authoritative record of every message and its state.

Two implementations share the MessageStore protocol:
- SqlMessageStore: SQLAlchemy-backed, used in production
- InMemoryMessageStore: lock-guarded dicts, used in tests and single-process runs

Both maintain a unique secondary index on provider_message_id and support an
atomic compare-and-set on status, which is how concurrent reconciliation and
dispatch avoid lost or regressing updates.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from app.config import Settings, settings
from app.exceptions import DuplicateProviderMessageError
from app.schemas import MessageRecord
from app.status import MessageStatus
from app.utils import generate_id, utc_now_iso

logger = logging.getLogger(__name__)

_IN_MEMORY_SQLITE_URLS = ("sqlite://", "sqlite:///:memory:")


def build_engine(database_url: str):
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite needs check_same_thread=False to be shared with FastAPI's
    threadpool; in-memory SQLite also needs a single shared connection.
    """
    connect_args = {}
    engine_kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if database_url in _IN_MEMORY_SQLITE_URLS:
            engine_kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, echo=False, **engine_kwargs)


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db(bind=None) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    bind = bind if bind is not None else engine
    logger.debug(f"Initializing database with URL: {bind.url!r}")
    try:
        # Import models to register them with Base.metadata
        from app.models import Message  # noqa: F401

        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def _prepare_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Apply creation defaults: generated id, pending status, current time."""
    prepared = dict(fields)
    prepared["id"] = prepared.get("id") or generate_id("msg")
    prepared["status"] = MessageStatus(prepared.get("status") or MessageStatus.PENDING)
    prepared["timestamp"] = prepared.get("timestamp") or utc_now_iso()
    return prepared


def _status_values(statuses: Iterable[MessageStatus]) -> List[str]:
    return [MessageStatus(s).value for s in statuses]


class MessageStore(Protocol):
    """Persistence contract for Message records."""

    def create(self, **fields: Any) -> MessageRecord:
        ...

    def find_by_id(self, message_id: str) -> Optional[MessageRecord]:
        ...

    def find_by_conversation(self, conversation_id: str, limit: int = 50) -> List[MessageRecord]:
        ...

    def find_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        ...

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        expected: Optional[Iterable[MessageStatus]] = None,
    ) -> Optional[MessageRecord]:
        ...

    def mark_sent(
        self, message_id: str, provider_message_id: str, recipient_address: Optional[str] = None
    ) -> Optional[MessageRecord]:
        ...

    def ping(self) -> bool:
        ...


# =============================================================================
# SQLAlchemy Store
# =============================================================================

class SqlMessageStore:
    """
    MessageStore backed by SQLAlchemy.

    Every operation runs in its own session and commits before returning,
    so a committed mark_sent is visible to any later find_by_provider_id.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @staticmethod
    def _to_record(row) -> Optional[MessageRecord]:
        return MessageRecord.model_validate(row) if row is not None else None

    def create(self, **fields: Any) -> MessageRecord:
        from app.models import Message

        prepared = _prepare_fields(fields)
        prepared["status"] = prepared["status"].value
        logger.info(f"Creating message: id={prepared['id']}, status={prepared['status']}")

        with self.session_factory() as db:
            row = Message(**prepared)
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                provider_message_id = prepared.get("provider_message_id")
                if provider_message_id and self._provider_id_taken(db, provider_message_id):
                    raise DuplicateProviderMessageError(provider_message_id)
                raise
            return self._to_record(row)

    @staticmethod
    def _provider_id_taken(db: Session, provider_message_id: str) -> bool:
        from app.models import Message

        return (
            db.query(Message.id)
            .filter(Message.provider_message_id == provider_message_id)
            .first()
            is not None
        )

    def find_by_id(self, message_id: str) -> Optional[MessageRecord]:
        from app.models import Message

        with self.session_factory() as db:
            return self._to_record(db.get(Message, message_id))

    def find_by_conversation(self, conversation_id: str, limit: int = 50) -> List[MessageRecord]:
        from app.models import Message

        logger.debug(f"Querying conversation {conversation_id}: limit={limit}")
        with self.session_factory() as db:
            rows = (
                db.query(Message)
                .filter(Message.conversation_id == conversation_id)
                .order_by(Message.timestamp.desc(), Message.id.desc())
                .limit(limit)
                .all()
            )
            return [self._to_record(row) for row in rows]

    def find_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        from app.models import Message

        with self.session_factory() as db:
            row = (
                db.query(Message)
                .filter(Message.provider_message_id == provider_message_id)
                .first()
            )
            return self._to_record(row)

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        expected: Optional[Iterable[MessageStatus]] = None,
    ) -> Optional[MessageRecord]:
        """
        Set the status of a message.

        With ``expected`` the update is a single conditional UPDATE that only
        applies when the current status is one of ``expected``.

        Returns:
            The updated message, or None if it does not exist or the
            condition did not hold.
        """
        from app.models import Message

        with self.session_factory() as db:
            query = db.query(Message).filter(Message.id == message_id)
            if expected is not None:
                query = query.filter(Message.status.in_(_status_values(expected)))
            updated = query.update(
                {Message.status: MessageStatus(status).value},
                synchronize_session=False,
            )
            db.commit()
            if not updated:
                return None
            return self._to_record(db.get(Message, message_id))

    def mark_sent(
        self, message_id: str, provider_message_id: str, recipient_address: Optional[str] = None
    ) -> Optional[MessageRecord]:
        """
        Attach the provider id and move a pending message to ``sent`` in one step.

        ``recipient_address``, when given, replaces the stored address with
        the one the provider confirmed.
        """
        from app.models import Message

        values = {
            Message.status: MessageStatus.SENT.value,
            Message.provider_message_id: provider_message_id,
        }
        if recipient_address:
            values[Message.recipient_address] = recipient_address

        with self.session_factory() as db:
            try:
                updated = (
                    db.query(Message)
                    .filter(
                        Message.id == message_id,
                        Message.status == MessageStatus.PENDING.value,
                    )
                    .update(values, synchronize_session=False)
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateProviderMessageError(provider_message_id)
            if not updated:
                return None
            return self._to_record(db.get(Message, message_id))

    def ping(self) -> bool:
        """
        Check if the database is reachable and schema is applied.

        Returns:
            True if DB is healthy and schema exists, False otherwise.
        """
        try:
            with self.session_factory() as db:
                db.execute(text("SELECT 1"))
                if not inspect(db.get_bind()).has_table("messages"):
                    logger.error("Database schema not applied: 'messages' table not found")
                    return False
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# =============================================================================
# In-Memory Store
# =============================================================================

class InMemoryMessageStore:
    """
    MessageStore kept in process memory.

    A single lock serializes mutations; reads return copies so callers can
    never modify stored records behind the store's back.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._messages: Dict[str, MessageRecord] = {}
        self._by_provider_id: Dict[str, str] = {}
        self._by_conversation: Dict[str, List[str]] = {}

    def create(self, **fields: Any) -> MessageRecord:
        record = MessageRecord(**_prepare_fields(fields))
        with self._lock:
            if record.id in self._messages:
                raise ValueError(f"Message id already exists: {record.id}")
            if record.provider_message_id:
                if record.provider_message_id in self._by_provider_id:
                    raise DuplicateProviderMessageError(record.provider_message_id)
                self._by_provider_id[record.provider_message_id] = record.id
            self._messages[record.id] = record
            if record.conversation_id:
                self._by_conversation.setdefault(record.conversation_id, []).append(record.id)
            return record.model_copy()

    def find_by_id(self, message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            record = self._messages.get(message_id)
            return record.model_copy() if record else None

    def find_by_conversation(self, conversation_id: str, limit: int = 50) -> List[MessageRecord]:
        with self._lock:
            records = [self._messages[i] for i in self._by_conversation.get(conversation_id, [])]
        records.sort(key=lambda r: (r.timestamp, r.id), reverse=True)
        return [r.model_copy() for r in records[:limit]]

    def find_by_provider_id(self, provider_message_id: str) -> Optional[MessageRecord]:
        with self._lock:
            message_id = self._by_provider_id.get(provider_message_id)
            record = self._messages.get(message_id) if message_id else None
            return record.model_copy() if record else None

    def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        expected: Optional[Iterable[MessageStatus]] = None,
    ) -> Optional[MessageRecord]:
        with self._lock:
            record = self._messages.get(message_id)
            if record is None:
                return None
            if expected is not None and record.status not in set(expected):
                return None
            record.status = MessageStatus(status)
            return record.model_copy()

    def mark_sent(
        self, message_id: str, provider_message_id: str, recipient_address: Optional[str] = None
    ) -> Optional[MessageRecord]:
        with self._lock:
            record = self._messages.get(message_id)
            if record is None or record.status != MessageStatus.PENDING:
                return None
            owner = self._by_provider_id.get(provider_message_id)
            if owner is not None and owner != message_id:
                raise DuplicateProviderMessageError(provider_message_id)
            if record.provider_message_id:
                self._by_provider_id.pop(record.provider_message_id, None)
            record.provider_message_id = provider_message_id
            if recipient_address:
                record.recipient_address = recipient_address
            record.status = MessageStatus.SENT
            self._by_provider_id[provider_message_id] = message_id
            return record.model_copy()

    def ping(self) -> bool:
        return True


def build_store(config: Settings) -> MessageStore:
    """Select the MessageStore implementation configured for this deployment."""
    if config.STORE_BACKEND == "memory":
        logger.info("Using in-memory message store")
        return InMemoryMessageStore()
    init_db()
    return SqlMessageStore(SessionLocal)
