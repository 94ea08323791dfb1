"""
Deduplication of provider-retried webhook deliveries.

Keyed on the provider message id only; id-less payloads are always processed.
The handled flag lives on the stored Message (meta["handled"]), with an
in-process TTL map used whenever the database cannot be read or written.
"""

import logging
import threading
import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rentbot.models import Message
from rentbot.storage import get_message_by_external_id, utcnow

logger = logging.getLogger(__name__)


class DedupGuard:
    """Persisted handled-flag lookup with an in-memory fallback."""

    def __init__(self, ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at > self.ttl_seconds]
        for key in expired:
            del self._seen[key]

    def _seen_in_memory(self, message_id: str) -> bool:
        with self._lock:
            self._purge(time.monotonic())
            return message_id in self._seen

    def _remember(self, message_id: str) -> None:
        with self._lock:
            self._seen[message_id] = time.monotonic()

    def is_handled(self, db: Session, message_id: Optional[str]) -> bool:
        if not message_id:
            return False
        try:
            stored = get_message_by_external_id(db, message_id)
            if stored is not None and (stored.meta or {}).get("handled"):
                return True
        except SQLAlchemyError:
            db.rollback()
            logger.warning(f"Dedup lookup failed for {message_id}, using in-memory map", exc_info=True)
        return self._seen_in_memory(message_id)

    def mark_handled(self, db: Session, message_id: Optional[str], phone: str = "") -> None:
        if not message_id:
            return
        try:
            stored = get_message_by_external_id(db, message_id)
            if stored is None:
                stored = Message(
                    phone=phone,
                    author="user",
                    external_id=message_id,
                    kind="unknown",
                    body_text="",
                    meta={},
                    created_at=utcnow(),
                )
                db.add(stored)
            stored.meta = {**(stored.meta or {}), "handled": True}
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.warning(f"Could not persist handled flag for {message_id}, using in-memory map", exc_info=True)
            self._remember(message_id)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
