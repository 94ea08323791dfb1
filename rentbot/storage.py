import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterator, Optional, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from rentbot.config import settings
from rentbot.metrics import record_best_effort_failure

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

REQUIRED_TABLES = ("messages", "webhook_events", "conversations", "listings", "contact_payments")


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so every column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from rentbot import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def best_effort(db: Session, operation: str) -> Iterator[None]:
    """
    Run a non-critical write whose failure must not block the conversational reply.

    The session is rolled back, the failure is logged and counted, and
    execution continues after the with-block.
    """
    try:
        yield
    except SQLAlchemyError:
        db.rollback()
        logger.warning(f"Best-effort write failed: {operation}", exc_info=True)
        record_best_effort_failure(operation)


# =============================================================================
# Message Repository Functions
# =============================================================================

def record_webhook_event(db: Session, headers: dict, payload, provider: str = "whatsapp") -> None:
    """Persist the raw inbound delivery for audit. Failures are swallowed."""
    from rentbot.models import WebhookEvent

    with best_effort(db, "webhook_event"):
        db.add(WebhookEvent(provider=provider, headers=headers, payload=payload, received_at=utcnow()))
        db.commit()


def save_inbound_message(
    db: Session,
    phone: str,
    external_id: Optional[str],
    kind: str,
    body_text: str,
    raw_payload,
    conversation_id: Optional[str] = None,
):
    """
    Store an inbound user message (idempotent on external_id).

    Returns:
        The stored Message, the already-stored Message for a retried
        delivery, or None if the write failed.
    """
    from rentbot.models import Message

    if external_id:
        existing = get_message_by_external_id(db, external_id)
        if existing is not None:
            logger.info(f"Inbound message already stored: {external_id}")
            return existing

    message = Message(
        phone=phone,
        author="user",
        external_id=external_id or None,
        kind=kind,
        body_text=body_text or "",
        raw_payload=raw_payload,
        meta={},
        conversation_id=conversation_id,
        created_at=utcnow(),
    )
    try:
        db.add(message)
        db.commit()
        logger.debug(f"Inbound message stored: phone={phone}, id={external_id}")
        return message
    except IntegrityError:
        db.rollback()
        return get_message_by_external_id(db, external_id) if external_id else None
    except SQLAlchemyError:
        db.rollback()
        logger.warning(f"Failed to store inbound message {external_id}", exc_info=True)
        record_best_effort_failure("inbound_message")
        return None


def get_message_by_external_id(db: Session, external_id: str):
    """Retrieve the earliest message carrying a provider message id."""
    from rentbot.models import Message

    return (
        db.query(Message)
        .filter(Message.external_id == external_id)
        .order_by(Message.id.asc())
        .first()
    )


def flag_message(db: Session, message, **flags) -> None:
    """Merge flags (needsFollowUp, templateRequired, ...) into a stored message's meta."""
    if message is None:
        return
    with best_effort(db, "flag_message"):
        # reassign so SQLAlchemy notices the JSON change
        message.meta = {**(message.meta or {}), **flags}
        db.commit()


def get_messages(
    db: Session,
    phone: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Retrieve the message log in chronological order (conversation replay).

    Args:
        db: Database session
        phone: Restrict to one conversation
        limit: Maximum number of messages to return (1-100)
        offset: Number of messages to skip

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from rentbot.models import Message

    query = db.query(Message)
    if phone:
        query = query.filter(Message.phone == phone)

    total = query.count()
    messages = (
        query.order_by(Message.created_at.asc(), Message.id.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    logger.debug(f"Retrieved {len(messages)} of {total} messages for phone={phone}")
    return messages, total
