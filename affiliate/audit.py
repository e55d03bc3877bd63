from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID, uuid4

from loguru import logger

from .clock import Clock, as_utc, utcnow
from .config import Settings
from .errors import RewardNotFoundError, RewardStateConflictError
from .events import AffiliateEventLogger, affiliate_logger
from .models import (
    AffiliateReward,
    AuditAction,
    PayoutAuditLogEntry,
    PayoutBatchSummary,
    RewardStatus,
    RewardType,
)
from .storage import InMemoryStorage
from .wallet import CreditWallet, WalletCollaborator, credit_reward, is_creditable


class PayoutAuditTrail:
    """Admin payout actions on rewards plus their append-only audit log.

    Every single-reward action validates the reward's current status, applies
    the transition and appends exactly one entry, all in one transaction.
    Batch actions write one entry per user and currency.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        event_logger: Optional[AffiliateEventLogger] = None,
        wallet: Optional[WalletCollaborator] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or Settings()
        self.clock = clock
        self.events = event_logger or affiliate_logger
        self.wallet = wallet or CreditWallet(self.storage, clock)

    def approve_payout(self, reward_id: UUID, admin_user_id: str, notes: Optional[str] = None) -> AffiliateReward:
        now = self.clock()
        with self.storage.transaction():
            reward = self._load(reward_id)
            if not reward.can_approve():
                raise RewardStateConflictError(f"Cannot approve reward in {reward.status.value} state")
            updated = self.storage.update_reward(reward_id, status=RewardStatus.CLEARED, ready_at=now)
            if is_creditable(reward):
                # the sweep never revisits CLEARED rewards
                credit_reward(self.wallet, reward)
            self._append(reward, AuditAction.APPROVED, admin_user_id, notes, now)

        self.events.log_payout("approved", reward.user_id, [reward_id], reward.currency_amount,
                               self._currency(reward), admin_user_id)
        return AffiliateReward(**updated)

    def reject_payout(self, reward_id: UUID, admin_user_id: str, reason: Optional[str] = None) -> AffiliateReward:
        now = self.clock()
        with self.storage.transaction():
            reward = self._load(reward_id)
            if not reward.can_reject():
                raise RewardStateConflictError(f"Cannot reject reward in {reward.status.value} state")
            updated = self.storage.update_reward(reward_id, status=RewardStatus.CANCELLED)
            self._append(reward, AuditAction.REJECTED, admin_user_id, reason, now)

        self.events.log_payout("rejected", reward.user_id, [reward_id], reward.currency_amount,
                               self._currency(reward), admin_user_id)
        return AffiliateReward(**updated)

    def mark_payout_paid(self, reward_id: UUID, admin_user_id: str, notes: Optional[str] = None) -> AffiliateReward:
        now = self.clock()
        with self.storage.transaction():
            reward = self._load(reward_id)
            if not reward.can_mark_paid():
                state = "settled" if reward.settled_at else reward.status.value
                raise RewardStateConflictError(f"Cannot mark reward in {state} state as paid")
            updated = self.storage.update_reward(reward_id, settled_at=now)
            self._append(reward, AuditAction.PAID, admin_user_id, notes, now)

        self.events.log_payout("paid", reward.user_id, [reward_id], reward.currency_amount,
                               self._currency(reward), admin_user_id)
        return AffiliateReward(**updated)

    def create_payout_batch(
        self,
        admin_user_id: str,
        user_ids: Optional[Iterable[UUID]] = None,
        reward_ids: Optional[Iterable[UUID]] = None,
        notes: Optional[str] = None,
    ) -> list[PayoutBatchSummary]:
        """Group unsettled CLEARED commissions into one payout per user and currency.

        Rewards are selected by id when ``reward_ids`` is given, otherwise by
        owner. Each group gets one CREATED audit entry; reward rows are not
        modified until the batch is marked paid.
        """
        wanted_rewards = set(reward_ids) if reward_ids else None
        wanted_users = set(user_ids) if user_ids else None
        if wanted_rewards is None and wanted_users is None:
            raise ValueError("Provide user_ids or reward_ids")

        def selected(row: dict) -> bool:
            if row["type"] != RewardType.SUBSCRIPTION_COMMISSION:
                return False
            if row["status"] != RewardStatus.CLEARED or row["settled_at"] is not None:
                return False
            if wanted_rewards is not None:
                return row["id"] in wanted_rewards
            return row["user_id"] in wanted_users

        now = self.clock()
        with self.storage.transaction():
            rewards = [AffiliateReward(**r) for r in self.storage.select("rewards", selected)]
            if not rewards:
                raise RewardNotFoundError("No CLEARED commissions found for the payout")

            summaries = [
                PayoutBatchSummary(
                    user_id=user_id,
                    reward_ids=[r.id for r in group],
                    reward_count=len(group),
                    total_amount=sum((r.currency_amount or Decimal("0") for r in group), Decimal("0")),
                    currency=currency,
                )
                for (user_id, currency), group in self._group(rewards).items()
            ]
            for summary in summaries:
                self.record(
                    AuditAction.CREATED,
                    reward_ids=summary.reward_ids,
                    performed_by=admin_user_id,
                    user_id=summary.user_id,
                    amount=summary.total_amount,
                    currency_code=summary.currency,
                    notes=notes or f"Payout batch created for {summary.reward_count} rewards",
                    metadata={"reward_count": summary.reward_count, "created_at": now.isoformat()},
                )

        for summary in summaries:
            self.events.log_payout("created", summary.user_id, summary.reward_ids, summary.total_amount,
                                   summary.currency, admin_user_id)
        return summaries

    def mark_payouts_paid(
        self,
        reward_ids: Iterable[UUID],
        admin_user_id: str,
        notes: Optional[str] = None,
    ) -> list[AffiliateReward]:
        """Settle several CLEARED rewards at once, all or none.

        Writes one PAID entry per user and currency with the settled total.
        """
        reward_ids = list(dict.fromkeys(reward_ids))
        now = self.clock()

        with self.storage.transaction():
            rewards = [self._load(reward_id) for reward_id in reward_ids]
            invalid = [str(r.id) for r in rewards if not r.can_mark_paid()]
            if invalid:
                raise RewardStateConflictError(f"Rewards cannot be marked paid: {', '.join(invalid)}")

            settled = [
                AffiliateReward(**self.storage.update_reward(r.id, settled_at=now))
                for r in rewards
            ]
            groups = self._group(rewards)
            for (user_id, currency), group in groups.items():
                self.record(
                    AuditAction.PAID,
                    reward_ids=[r.id for r in group],
                    performed_by=admin_user_id,
                    user_id=user_id,
                    amount=sum((r.currency_amount or Decimal("0") for r in group), Decimal("0")),
                    currency_code=currency,
                    credit_amount=sum(r.credit_amount or 0 for r in group) or None,
                    previous_status=RewardStatus.CLEARED,
                    notes=notes,
                    metadata={"reward_count": len(group), "acted_at": now.isoformat()},
                )

        for (user_id, currency), group in groups.items():
            self.events.log_payout("paid", user_id, [r.id for r in group],
                                   sum((r.currency_amount or Decimal("0") for r in group), Decimal("0")),
                                   currency, admin_user_id)
        return settled

    def record(
        self,
        action: AuditAction,
        reward_ids: Iterable[UUID],
        performed_by: str,
        user_id: Optional[UUID] = None,
        amount: Optional[Decimal] = None,
        currency_code: Optional[str] = None,
        credit_amount: Optional[int] = None,
        previous_status: Optional[RewardStatus] = None,
        notes: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> PayoutAuditLogEntry:
        row = self.storage.append_audit_entry({
            "id": uuid4(),
            "user_id": user_id,
            "reward_ids": tuple(reward_ids),
            "action": action,
            "previous_status": previous_status,
            "amount": amount,
            "currency_code": currency_code,
            "credit_amount": credit_amount,
            "performed_by": performed_by,
            "notes": notes,
            "metadata": dict(metadata or {}),
            "created_at": self.clock(),
        })
        logger.debug(f"Audit {action.value} by {performed_by} on {len(row['reward_ids'])} rewards")
        return PayoutAuditLogEntry(**row)

    def list_by_user(self, user_id: UUID, limit: int = 50) -> list[PayoutAuditLogEntry]:
        return self.list_entries(user_id=user_id, limit=limit)

    def list_by_performer(self, performed_by: str, limit: int = 50) -> list[PayoutAuditLogEntry]:
        return self._query(lambda e: e["performed_by"] == performed_by, limit)

    def list_entries(
        self,
        user_id: Optional[UUID] = None,
        action: Optional[AuditAction] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[PayoutAuditLogEntry]:
        start, end = as_utc(start), as_utc(end)

        def matches(entry: dict) -> bool:
            if user_id is not None and entry["user_id"] != user_id:
                return False
            if action is not None and entry["action"] != action:
                return False
            if start is not None and entry["created_at"] < start:
                return False
            if end is not None and entry["created_at"] > end:
                return False
            return True

        return self._query(matches, limit)

    def _query(self, predicate, limit: int) -> list[PayoutAuditLogEntry]:
        rows = self.storage.select("audit_log", predicate)
        # append order breaks ties between entries written in the same instant
        ordered = sorted(enumerate(rows), key=lambda pair: (pair[1]["created_at"], pair[0]), reverse=True)
        return [PayoutAuditLogEntry(**row) for _, row in ordered[:limit]]

    def _load(self, reward_id: UUID) -> AffiliateReward:
        row = self.storage.get("rewards", reward_id)
        if not row:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return AffiliateReward(**row)

    def _append(
        self,
        reward: AffiliateReward,
        action: AuditAction,
        admin_user_id: str,
        notes: Optional[str],
        now: datetime,
    ) -> PayoutAuditLogEntry:
        return self.record(
            action=action,
            reward_ids=[reward.id],
            performed_by=admin_user_id,
            user_id=reward.user_id,
            amount=reward.currency_amount,
            currency_code=self._currency(reward),
            credit_amount=reward.credit_amount,
            previous_status=reward.status,
            notes=notes,
            metadata={"type": reward.type.value, "level": reward.level, "acted_at": now.isoformat()},
        )

    def _currency(self, reward: AffiliateReward) -> Optional[str]:
        if reward.currency_amount is None:
            return None
        return reward.currency_code or self.settings.default_currency

    def _group(self, rewards: Iterable[AffiliateReward]) -> dict[tuple[UUID, str], list[AffiliateReward]]:
        groups: dict[tuple[UUID, str], list[AffiliateReward]] = {}
        for reward in rewards:
            currency = reward.currency_code or self.settings.default_currency
            groups.setdefault((reward.user_id, currency), []).append(reward)
        return groups
