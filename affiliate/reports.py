import csv
import io
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .clock import as_utc
from .config import Settings
from .models import (
    AffiliateReward,
    AffiliateStats,
    AmountTotals,
    PayoutListResponse,
    RewardStatus,
    RewardType,
    UserPayout,
)
from .storage import InMemoryStorage


EXPORT_COLUMNS = [
    "reward_id",
    "user_id",
    "type",
    "level",
    "status",
    "currency_amount",
    "currency_code",
    "credit_amount",
    "created_at",
    "pending_until",
    "ready_at",
    "settled_at",
    "source_invoice_id",
]


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


class AffiliateReports:
    """Read-only aggregates over rewards and attributions."""

    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or Settings()

    def get_stats(self, user_id: UUID) -> AffiliateStats:
        rewards = [AffiliateReward(**r) for r in self.storage.select("rewards", lambda r: r["user_id"] == user_id)]
        total_attributions = len(self.storage.select(
            "attributions", lambda a: a["referrer_user_id"] == user_id
        ))

        amounts = {status: AmountTotals() for status in RewardStatus}
        counts = {status: 0 for status in RewardStatus}
        for reward in rewards:
            counts[reward.status] += 1
            totals = amounts[reward.status]
            totals.currency_amount += reward.currency_amount or Decimal("0")
            totals.credit_amount += reward.credit_amount or 0

        return AffiliateStats(
            user_id=user_id,
            total_rewards=len(rewards),
            pending_rewards=counts[RewardStatus.PENDING],
            cleared_rewards=counts[RewardStatus.CLEARED],
            cancelled_rewards=counts[RewardStatus.CANCELLED],
            total_attributions=total_attributions,
            total_earnings=amounts[RewardStatus.CLEARED].currency_amount,
            pending_earnings=amounts[RewardStatus.PENDING].currency_amount,
            amounts=amounts,
        )

    def list_payouts(
        self,
        status: RewardStatus = RewardStatus.CLEARED,
        user_id: Optional[UUID] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> PayoutListResponse:
        page = max(1, page)
        page_size = min(self.settings.payout_page_size_max, max(1, page_size))

        rows = self.storage.select(
            "rewards",
            lambda r: (
                r["status"] == status
                and r["type"] == RewardType.SUBSCRIPTION_COMMISSION
                and (user_id is None or r["user_id"] == user_id)
            ),
        )
        rewards = sorted((AffiliateReward(**r) for r in rows), key=lambda r: r.created_at, reverse=True)
        page_rewards = rewards[(page - 1) * page_size:page * page_size]

        grouped: dict[tuple[UUID, str], list[AffiliateReward]] = {}
        for reward in page_rewards:
            currency = reward.currency_code or self.settings.default_currency
            grouped.setdefault((reward.user_id, currency), []).append(reward)

        payouts = [
            UserPayout(
                user_id=owner,
                rewards=items,
                total_amount=sum((r.currency_amount or Decimal("0") for r in items), Decimal("0")),
                currency=currency,
            )
            for (owner, currency), items in grouped.items()
        ]
        return PayoutListResponse(payouts=payouts, page=page, page_size=page_size, total_rewards=len(rewards))

    def export_rewards_csv(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        status: Optional[RewardStatus] = None,
    ) -> str:
        start, end = as_utc(start), as_utc(end)
        rows = self.storage.select(
            "rewards",
            lambda r: (
                (start is None or r["created_at"] >= start)
                and (end is None or r["created_at"] <= end)
                and (status is None or r["status"] == status)
            ),
        )
        rewards = sorted((AffiliateReward(**r) for r in rows), key=lambda r: r.created_at, reverse=True)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for reward in rewards:
            writer.writerow([
                reward.id,
                reward.user_id,
                reward.type.value,
                reward.level,
                reward.status.value,
                reward.currency_amount if reward.currency_amount is not None else "",
                reward.currency_code or "",
                reward.credit_amount if reward.credit_amount is not None else "",
                _iso(reward.created_at),
                _iso(reward.pending_until),
                _iso(reward.ready_at),
                _iso(reward.settled_at),
                reward.source_invoice_id or "",
            ])
        return buffer.getvalue()
