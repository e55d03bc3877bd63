"""Shared fixtures for the affiliate ledger tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from affiliate.audit import PayoutAuditTrail
from affiliate.codes import ReferralCodeRegistry
from affiliate.config import Settings
from affiliate.models import ProgramConfigRequest, ProgramLevelInput
from affiliate.programs import ProgramRegistry
from affiliate.reports import AffiliateReports
from affiliate.service import RewardLedger
from affiliate.storage import InMemoryStorage
from affiliate.wallet import CreditWallet


START = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)

USER_A = UUID("550e8400-e29b-41d4-a716-446655440000")
USER_B = UUID("660e8400-e29b-41d4-a716-446655440001")
USER_C = UUID("770e8400-e29b-41d4-a716-446655440002")
USER_D = UUID("880e8400-e29b-41d4-a716-446655440003")
USER_E = UUID("990e8400-e29b-41d4-a716-446655440004")


class FrozenClock:
    """Clock returning a fixed instant that tests move forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FlakyWallet(CreditWallet):
    """Wallet that fails for selected users until told otherwise."""

    def __init__(self, storage, clock, failing_users=()):
        super().__init__(storage, clock)
        self.failing_users = set(failing_users)
        self.calls = []

    def add_credits(self, user_id, amount, type, description, metadata=None):
        self.calls.append((user_id, amount))
        if user_id in self.failing_users:
            raise ConnectionError(f"wallet unavailable for {user_id}")
        super().add_credits(user_id, amount, type, description, metadata)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return Settings(referral_code_length=10, default_currency="EUR")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def wallet(storage, clock):
    return FlakyWallet(storage, clock)


@pytest.fixture
def programs(storage, settings, clock):
    return ProgramRegistry(storage, settings, clock)


@pytest.fixture
def codes(storage, programs, settings, clock):
    return ReferralCodeRegistry(storage, programs, settings, clock)


@pytest.fixture
def ledger(storage, wallet, settings, clock, programs, codes):
    return RewardLedger(storage, wallet, settings, clock, programs=programs, codes=codes)


@pytest.fixture
def audit(storage, settings, clock, wallet):
    return PayoutAuditTrail(storage, settings, clock, wallet=wallet)


@pytest.fixture
def reports(storage, settings):
    return AffiliateReports(storage, settings)


def program_config(**overrides) -> ProgramConfigRequest:
    data = {
        "name": "Default program",
        "is_active": True,
        "registration_credit": 50,
        "base_commission_rate": Decimal("0.10"),
        "max_levels": 2,
        "reward_pending_days": 14,
        "subscription_grace_days": 3,
        "lifetime_commissions": True,
        "levels": [ProgramLevelInput(level=1, credit_reward=50)],
    }
    data.update(overrides)
    return ProgramConfigRequest(**data)


@pytest.fixture
def program(programs):
    """Two-level program: 10% base rate, 50 credits at level 1 only."""
    return programs.upsert_program(program_config())


@pytest.fixture
def refer(ledger, codes):
    """Register ``referred`` with ``referrer``'s code in the given program."""

    def _refer(program, referrer, referred, now=None):
        code = codes.ensure_code(referrer, program.id)
        return ledger.apply_referral_code(program, code, referred, now or START)

    return _refer
