from typing import Optional, Protocol
from uuid import UUID, uuid4

from loguru import logger

from .clock import Clock, utcnow
from .models import AffiliateReward, CreditBalance, CreditEntry, RewardType
from .storage import InMemoryStorage


CREDIT_TRANSACTION_TYPE = "ADMIN_ADJUSTMENT"


class WalletCollaborator(Protocol):
    def add_credits(
        self,
        user_id: UUID,
        amount: int,
        type: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> None:
        ...


class CreditWallet:
    """Credit balances derived from immutable credit entries.

    Entries carrying an ``affiliate_reward_id`` in their metadata are keyed on
    it, so a reward is credited once even when a sweep is retried.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None, clock: Clock = utcnow):
        self.storage = storage or InMemoryStorage()
        self.clock = clock

    def add_credits(
        self,
        user_id: UUID,
        amount: int,
        type: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> None:
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        metadata = dict(metadata or {})
        idempotency_key = self._idempotency_key(metadata)

        with self.storage.transaction():
            if idempotency_key and idempotency_key in self.storage.credit_idempotency_index:
                logger.debug(f"Credits already applied for {idempotency_key}, skipping")
                return

            current = self.get_balance(user_id).current_balance
            self.storage.insert_credit_entry({
                "id": uuid4(),
                "user_id": user_id,
                "amount": amount,
                "balance_after": current + amount,
                "type": type,
                "description": description,
                "idempotency_key": idempotency_key,
                "created_at": self.clock(),
                "metadata": {k: str(v) for k, v in metadata.items()},
            })

    def get_balance(self, user_id: UUID) -> CreditBalance:
        entries = self.storage.select("credit_entries", lambda e: e["user_id"] == user_id)
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None

        return CreditBalance(
            user_id=user_id,
            current_balance=sum(e["amount"] for e in entries),
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None,
        )

    def get_history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> list[CreditEntry]:
        entries = [
            CreditEntry(**e)
            for e in self.storage.select("credit_entries", lambda e: e["user_id"] == user_id)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[offset:offset + limit]

    def _idempotency_key(self, metadata: dict) -> Optional[str]:
        reward_id = metadata.get("affiliate_reward_id")
        if reward_id is None:
            return None
        return f"affiliate-reward:{reward_id}"


def is_creditable(reward: AffiliateReward) -> bool:
    return reward.type == RewardType.REGISTRATION_CREDIT and bool(reward.credit_amount and reward.credit_amount > 0)


def credit_reward(wallet: WalletCollaborator, reward: AffiliateReward) -> None:
    """Credit a registration reward, keyed on the reward id so retries are no-ops."""
    wallet.add_credits(
        reward.user_id,
        reward.credit_amount,
        CREDIT_TRANSACTION_TYPE,
        f"Referral credits level {reward.level}",
        {
            "affiliate_reward_id": reward.id,
            "type": reward.type.value,
            "level": reward.level,
        },
    )
