"""
Structured logging of affiliate business events.

Every record is emitted through loguru with ``service="affiliate"`` and the
event name bound, so a JSON sink (``AFFILIATE_LOG_JSON=true``) produces one
parseable line per event.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from loguru import logger


def _plain(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


class AffiliateEventLogger:
    def __init__(self):
        self._logger = logger.bind(service="affiliate")

    def _log(self, event: str, message: str, log_level: str = "INFO", **fields: Any) -> None:
        payload = {k: _plain(v) for k, v in fields.items() if v is not None}
        self._logger.bind(event=event, **payload).log(log_level, message)

    def log_registration(
        self,
        user_id: UUID,
        referral_code: Optional[str] = None,
        reward_ids: Optional[list[UUID]] = None,
        credits: Optional[int] = None,
    ) -> None:
        reward_ids = reward_ids or []
        self._log(
            "affiliate.registration",
            f"Referral registration via {referral_code or '-'} ({len(reward_ids)} rewards)",
            user_id=user_id,
            referral_code=referral_code,
            reward_ids=reward_ids,
            reward_count=len(reward_ids),
            credits=credits,
        )

    def log_subscription(
        self,
        user_id: UUID,
        invoice_id: str,
        subscription_id: Optional[str],
        amount: Decimal,
        currency: str,
        commissions: list[dict],
    ) -> None:
        self._log(
            "affiliate.subscription",
            f"Invoice {invoice_id} produced {len(commissions)} commissions",
            user_id=user_id,
            invoice_id=invoice_id,
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            commission_count=len(commissions),
            commissions=commissions,
        )

    def log_cancellation(self, user_id: UUID, attribution_ids: list[UUID], grace_end_at) -> None:
        self._log(
            "affiliate.cancellation",
            f"Cancelled {len(attribution_ids)} attributions for {user_id}",
            user_id=user_id,
            attribution_ids=attribution_ids,
            grace_end_at=grace_end_at.isoformat() if grace_end_at else None,
        )

    def log_reward_released(
        self,
        reward_id: UUID,
        user_id: UUID,
        type: str,
        level: int,
        credits: Optional[int] = None,
    ) -> None:
        self._log(
            "affiliate.reward.released",
            f"Released {type} reward {reward_id}",
            reward_id=reward_id,
            user_id=user_id,
            type=type,
            level=level,
            credits=credits,
        )

    def log_payout(
        self,
        action: str,
        user_id: Optional[UUID],
        reward_ids: list[UUID],
        amount: Optional[Decimal],
        currency: Optional[str],
        performed_by: str,
    ) -> None:
        log_level = "WARNING" if action == "rejected" else "INFO"
        self._log(
            f"affiliate.payout.{action}",
            f"Payout {action} by {performed_by}",
            log_level=log_level,
            user_id=user_id,
            reward_ids=reward_ids,
            amount=amount,
            currency=currency,
            performed_by=performed_by,
        )

    def log_error(self, event: str, error: BaseException, user_id: Optional[UUID] = None, **metadata: Any) -> None:
        self._log(
            "affiliate.error",
            f"{event}: {error}",
            log_level="ERROR",
            failed_event=event,
            error=repr(error),
            user_id=user_id,
            **metadata,
        )


affiliate_logger = AffiliateEventLogger()
