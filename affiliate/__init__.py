"""
Multi-level Referral Attribution and Reward Ledger

This module provides:
- Per-user referral codes scoped to the active affiliate program
- Referral chains built several levels deep, with cycle protection
- Registration credits and subscription commissions created PENDING
- Maturation of pending rewards into CLEARED, crediting the wallet
- Exactly-once reward creation per external invoice event
- Append-only payout audit trail for admin actions
"""

from .models import (
    AffiliateProgram,
    AffiliateReward,
    AttributionStatus,
    AuditAction,
    InvoicePaidEvent,
    PayoutAuditLogEntry,
    ReferralAttribution,
    ReferralCode,
    RegistrationEvent,
    RewardStatus,
    RewardType,
    SubscriptionCancelledEvent,
)
from .audit import PayoutAuditTrail
from .chain import AttributionChainBuilder
from .codes import ReferralCodeRegistry
from .idempotency import IdempotencyGuard
from .programs import ProgramRegistry
from .service import RewardLedger
from .storage import InMemoryStorage
from .wallet import CreditWallet

__all__ = [
    "AffiliateProgram",
    "AffiliateReward",
    "AttributionStatus",
    "AuditAction",
    "InvoicePaidEvent",
    "PayoutAuditLogEntry",
    "ReferralAttribution",
    "ReferralCode",
    "RegistrationEvent",
    "RewardStatus",
    "RewardType",
    "SubscriptionCancelledEvent",
    "PayoutAuditTrail",
    "AttributionChainBuilder",
    "ReferralCodeRegistry",
    "IdempotencyGuard",
    "ProgramRegistry",
    "RewardLedger",
    "InMemoryStorage",
    "CreditWallet",
]
