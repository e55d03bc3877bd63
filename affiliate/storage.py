import copy
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional
from uuid import UUID

from .errors import UniqueConstraintError


Row = dict
Predicate = Callable[[Row], bool]

_MISSING = object()


class InMemoryStorage:
    """Dict-backed tables with transactions and unique indexes.

    A transaction records the previous value of every key it touches and
    restores those on error, so rollback cost follows the size of the
    transaction rather than the store.
    """

    def __init__(self):
        self.programs: dict[UUID, Row] = {}
        self.referral_codes: dict[UUID, Row] = {}
        self.attributions: dict[UUID, Row] = {}
        self.rewards: dict[UUID, Row] = {}
        self.audit_log: list[Row] = []
        self.processed_events: dict[str, Row] = {}
        self.credit_entries: dict[UUID, Row] = {}

        # unique indexes
        self.code_index: dict[str, UUID] = {}
        self.active_code_index: dict[tuple[UUID, UUID], UUID] = {}
        self.attribution_index: dict[tuple[UUID, UUID, int], UUID] = {}
        self.invoice_reward_index: dict[tuple[str, UUID], UUID] = {}
        self.credit_idempotency_index: dict[str, UUID] = {}

        self._lock = threading.RLock()
        self._undo: Optional[dict] = None

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            if self._undo is not None:
                # joins the enclosing transaction
                yield self
                return

            self._undo = {}
            try:
                yield self
            except BaseException:
                self._rollback()
                raise
            finally:
                self._undo = None

    @property
    def in_transaction(self) -> bool:
        return self._undo is not None

    def _remember(self, table: str, key=None) -> None:
        marker = (table, key)
        if marker in self._undo:
            return
        rows = getattr(self, table)
        if isinstance(rows, list):
            self._undo[marker] = len(rows)
            return
        previous = rows.get(key, _MISSING)
        self._undo[marker] = previous if previous is _MISSING else copy.deepcopy(previous)

    def _rollback(self) -> None:
        for (table, key), previous in reversed(list(self._undo.items())):
            rows = getattr(self, table)
            if isinstance(rows, list):
                del rows[previous:]
            elif previous is _MISSING:
                rows.pop(key, None)
            else:
                rows[key] = previous

    def select(self, table: str, predicate: Optional[Predicate] = None) -> list[Row]:
        with self._lock:
            rows = getattr(self, table)
            values = rows.values() if isinstance(rows, dict) else rows
            return [copy.deepcopy(r) for r in values if predicate is None or predicate(r)]

    def get(self, table: str, key) -> Optional[Row]:
        with self._lock:
            row = getattr(self, table).get(key)
            return copy.deepcopy(row) if row is not None else None

    def _put(self, table: str, key, value) -> None:
        self._remember(table, key)
        getattr(self, table)[key] = value

    def _drop(self, table: str, key) -> None:
        self._remember(table, key)
        getattr(self, table).pop(key, None)

    def _update(self, table: str, key, fields: dict) -> Row:
        self._remember(table, key)
        row = getattr(self, table)[key]
        row.update(fields)
        return copy.deepcopy(row)

    # programs

    def insert_program(self, row: Row) -> Row:
        with self.transaction():
            self._put("programs", row["id"], row)
            return copy.deepcopy(row)

    def update_program(self, program_id: UUID, **fields) -> Row:
        with self.transaction():
            return self._update("programs", program_id, fields)

    # referral codes

    def insert_referral_code(self, row: Row) -> Row:
        with self.transaction():
            if row["code"] in self.code_index:
                raise UniqueConstraintError(f"Referral code {row['code']} already exists")
            owner_key = (row["user_id"], row["program_id"])
            if row["is_active"] and owner_key in self.active_code_index:
                raise UniqueConstraintError(
                    f"User {row['user_id']} already has an active code for program {row['program_id']}"
                )
            self._put("referral_codes", row["id"], row)
            self._put("code_index", row["code"], row["id"])
            if row["is_active"]:
                self._put("active_code_index", owner_key, row["id"])
            return copy.deepcopy(row)

    def deactivate_referral_code(self, code_id: UUID) -> Row:
        with self.transaction():
            row = self._update("referral_codes", code_id, {"is_active": False})
            self._drop("active_code_index", (row["user_id"], row["program_id"]))
            return row

    # attributions

    def insert_attribution(self, row: Row) -> Row:
        with self.transaction():
            key = (row["program_id"], row["referred_user_id"], row["level"])
            if key in self.attribution_index:
                raise UniqueConstraintError(
                    f"User {row['referred_user_id']} already attributed at level {row['level']}"
                )
            self._put("attributions", row["id"], row)
            self._put("attribution_index", key, row["id"])
            return copy.deepcopy(row)

    def update_attribution(self, attribution_id: UUID, **fields) -> Row:
        with self.transaction():
            return self._update("attributions", attribution_id, fields)

    # rewards

    def insert_reward(self, row: Row) -> Row:
        with self.transaction():
            invoice_id = row.get("source_invoice_id")
            if invoice_id is not None:
                key = (invoice_id, row["attribution_id"])
                if key in self.invoice_reward_index:
                    raise UniqueConstraintError(
                        f"Invoice {invoice_id} already rewarded for attribution {row['attribution_id']}"
                    )
                self._put("invoice_reward_index", key, row["id"])
            self._put("rewards", row["id"], row)
            return copy.deepcopy(row)

    def update_reward(self, reward_id: UUID, **fields) -> Row:
        with self.transaction():
            return self._update("rewards", reward_id, fields)

    def has_invoice_reward(self, invoice_id: str) -> bool:
        with self._lock:
            return any(key[0] == invoice_id for key in self.invoice_reward_index)

    # audit log, append only

    def append_audit_entry(self, row: Row) -> Row:
        with self.transaction():
            self._remember("audit_log")
            self.audit_log.append(row)
            return copy.deepcopy(row)

    # idempotency claims

    def insert_processed_event(self, row: Row) -> Row:
        with self.transaction():
            if row["event_id"] in self.processed_events:
                raise UniqueConstraintError(f"Event {row['event_id']} already processed")
            self._put("processed_events", row["event_id"], row)
            return copy.deepcopy(row)

    # wallet credit entries

    def insert_credit_entry(self, row: Row) -> Row:
        with self.transaction():
            key = row.get("idempotency_key")
            if key is not None:
                if key in self.credit_idempotency_index:
                    raise UniqueConstraintError(f"Credit entry {key} already exists")
                self._put("credit_idempotency_index", key, row["id"])
            self._put("credit_entries", row["id"], row)
            return copy.deepcopy(row)
