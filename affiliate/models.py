from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from .clock import as_utc


class AttributionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class RewardType(str, Enum):
    REGISTRATION_CREDIT = "REGISTRATION_CREDIT"
    SUBSCRIPTION_COMMISSION = "SUBSCRIPTION_COMMISSION"


class RewardStatus(str, Enum):
    PENDING = "PENDING"
    CLEARED = "CLEARED"
    CANCELLED = "CANCELLED"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class EventKind(str, Enum):
    INVOICE_PAID = "INVOICE_PAID"


class ProgramLevel(BaseModel):
    level: int = Field(..., ge=1)
    commission_rate: Optional[Decimal] = None
    credit_reward: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AffiliateProgram(BaseModel):
    id: UUID
    name: str
    is_active: bool
    base_commission_rate: Decimal
    max_levels: int = Field(..., ge=1)
    registration_credit: int = 0
    subscription_grace_days: int = 3
    reward_pending_days: int = 14
    lifetime_commissions: bool = True
    levels: list[ProgramLevel] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def level_config(self, level: int) -> Optional[ProgramLevel]:
        for config in self.levels:
            if config.level == level:
                return config
        return None


class ReferralCode(BaseModel):
    id: UUID
    user_id: UUID
    program_id: UUID
    code: str
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReferralCodeSummary(ReferralCode):
    total_uses: int = 0


class ChainLink(BaseModel):
    level: int
    referrer_user_id: UUID
    referral_code_id: UUID


class ReferralAttribution(BaseModel):
    id: UUID
    program_id: UUID
    referral_code_id: UUID
    referrer_user_id: UUID
    referred_user_id: UUID
    level: int
    parent_attribution_id: Optional[UUID] = None
    status: AttributionStatus
    attributed_at: datetime
    activated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    grace_end_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def earns_commission_at(self, occurred_at: datetime) -> bool:
        if self.status == AttributionStatus.ACTIVE:
            return True
        if self.status == AttributionStatus.CANCELLED:
            return self.grace_end_at is not None and occurred_at <= self.grace_end_at
        return False


class AffiliateReward(BaseModel):
    id: UUID
    program_id: UUID
    attribution_id: UUID
    user_id: UUID
    type: RewardType
    level: int
    credit_amount: Optional[int] = None
    currency_amount: Optional[Decimal] = None
    currency_code: Optional[str] = None
    status: RewardStatus
    pending_until: datetime
    ready_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    created_at: datetime
    source_invoice_id: Optional[str] = None
    source_subscription_id: Optional[str] = None
    invoice_total: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_approve(self) -> bool:
        return self.status == RewardStatus.PENDING

    def can_reject(self) -> bool:
        return self.status == RewardStatus.PENDING

    def can_mark_paid(self) -> bool:
        return self.status == RewardStatus.CLEARED and self.settled_at is None


class PayoutAuditLogEntry(BaseModel):
    id: UUID
    user_id: Optional[UUID] = None
    reward_ids: tuple[UUID, ...]
    action: AuditAction
    previous_status: Optional[RewardStatus] = None
    amount: Optional[Decimal] = None
    currency_code: Optional[str] = None
    credit_amount: Optional[int] = None
    performed_by: str
    notes: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class ProcessedEvent(BaseModel):
    event_id: str
    kind: EventKind
    processed_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvoicePaidEvent(BaseModel):
    user_id: UUID
    external_invoice_id: str = Field(..., min_length=1)
    external_subscription_id: Optional[str] = None
    total_amount_cents: int = Field(..., ge=0)
    currency_code: str = Field(..., min_length=3, max_length=3)
    occurred_at: datetime

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_as_utc(cls, value):
        return as_utc(value)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "660e8400-e29b-41d4-a716-446655440001",
            "external_invoice_id": "in_1PZx2a",
            "external_subscription_id": "sub_1PZx1b",
            "total_amount_cents": 10000,
            "currency_code": "EUR",
            "occurred_at": "2026-10-01T12:00:00Z"
        }
    })


class SubscriptionCancelledEvent(BaseModel):
    user_id: UUID
    occurred_at: datetime

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_as_utc(cls, value):
        return as_utc(value)


class RegistrationEvent(BaseModel):
    referred_user_id: UUID
    referral_code: Optional[str] = None
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_as_utc(cls, value):
        return as_utc(value)


class RegistrationResult(BaseModel):
    referral_code: Optional[ReferralCode] = None
    attributions: list[ReferralAttribution] = Field(default_factory=list)
    message: str


class ProgramLevelInput(BaseModel):
    level: int
    commission_rate: Optional[Decimal] = None
    credit_reward: Optional[int] = None


class ProgramConfigRequest(BaseModel):
    id: Optional[UUID] = None
    name: str = Field(..., min_length=1)
    is_active: bool = True
    registration_credit: int = 0
    base_commission_rate: Decimal = Decimal("0")
    max_levels: int = 1
    reward_pending_days: Optional[int] = None
    subscription_grace_days: Optional[int] = None
    lifetime_commissions: bool = True
    levels: list[ProgramLevelInput] = Field(..., min_length=1)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Default affiliate program",
            "is_active": True,
            "registration_credit": 50,
            "base_commission_rate": "0.10",
            "max_levels": 2,
            "reward_pending_days": 14,
            "subscription_grace_days": 3,
            "levels": [
                {"level": 1, "commission_rate": "0.10", "credit_reward": 50},
                {"level": 2, "commission_rate": "0.05", "credit_reward": 0}
            ]
        }
    })


class PayoutActionRequest(BaseModel):
    admin_user_id: str = Field(..., min_length=1)
    notes: Optional[str] = None


class PayoutBatchRequest(BaseModel):
    """Select CLEARED commissions for a payout by owner or by reward id."""
    admin_user_id: str = Field(..., min_length=1)
    user_ids: Optional[list[UUID]] = None
    reward_ids: Optional[list[UUID]] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def require_selection(self):
        if not self.user_ids and not self.reward_ids:
            raise ValueError("Provide user_ids or reward_ids")
        return self


class BulkPayoutPaidRequest(BaseModel):
    admin_user_id: str = Field(..., min_length=1)
    reward_ids: list[UUID] = Field(..., min_length=1)
    notes: Optional[str] = None


class PayoutBatchSummary(BaseModel):
    user_id: UUID
    reward_ids: list[UUID]
    reward_count: int
    total_amount: Decimal
    currency: str


class PayoutBatchResponse(BaseModel):
    message: str
    summary: list[PayoutBatchSummary]
    total_rewards: int


class ReleaseRequest(BaseModel):
    reference_date: Optional[datetime] = None

    @field_validator("reference_date")
    @classmethod
    def reference_date_as_utc(cls, value):
        return as_utc(value)


class ReleaseResponse(BaseModel):
    released: int
    reference_date: datetime


class MaturedRewardsPreview(BaseModel):
    reference_date: datetime
    count: int
    total_credits: int
    currency_totals: dict[str, Decimal] = Field(default_factory=dict)


class AmountTotals(BaseModel):
    currency_amount: Decimal = Decimal("0")
    credit_amount: int = 0


class AffiliateStats(BaseModel):
    user_id: UUID
    total_rewards: int
    pending_rewards: int
    cleared_rewards: int
    cancelled_rewards: int
    total_attributions: int
    total_earnings: Decimal
    pending_earnings: Decimal
    amounts: dict[RewardStatus, AmountTotals]


class UserPayout(BaseModel):
    user_id: UUID
    rewards: list[AffiliateReward]
    total_amount: Decimal
    currency: str


class PayoutListResponse(BaseModel):
    payouts: list[UserPayout]
    page: int
    page_size: int
    total_rewards: int


class CreditEntry(BaseModel):
    id: UUID
    user_id: UUID
    amount: int
    balance_after: int
    type: str
    description: str
    idempotency_key: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class CreditBalance(BaseModel):
    user_id: UUID
    current_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None
