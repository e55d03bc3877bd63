from datetime import datetime
from typing import Optional

from .errors import DuplicateEventError, UniqueConstraintError
from .models import EventKind, ProcessedEvent
from .storage import InMemoryStorage


class IdempotencyGuard:
    """Single idempotency boundary for external events.

    ``claim`` inserts a row keyed on the event id inside the caller's
    transaction. The insert is a unique constraint, so of two concurrent
    deliveries only the first one commits rewards; the other sees the claim
    and raises ``DuplicateEventError``, which callers treat as a no-op.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def is_processed(self, event_id: str) -> bool:
        if self.storage.get("processed_events", event_id) is not None:
            return True
        return self.storage.has_invoice_reward(event_id)

    def claim(self, event_id: str, kind: EventKind, now: datetime) -> ProcessedEvent:
        if not self.storage.in_transaction:
            raise RuntimeError("IdempotencyGuard.claim must run inside a storage transaction")
        if self.storage.has_invoice_reward(event_id):
            raise DuplicateEventError(f"Event {event_id} already produced rewards")
        try:
            row = self.storage.insert_processed_event({
                "event_id": event_id,
                "kind": kind,
                "processed_at": now,
            })
        except UniqueConstraintError as e:
            raise DuplicateEventError(f"Event {event_id} already processed") from e
        return ProcessedEvent(**row)

    def get(self, event_id: str) -> Optional[ProcessedEvent]:
        row = self.storage.get("processed_events", event_id)
        return ProcessedEvent(**row) if row else None
