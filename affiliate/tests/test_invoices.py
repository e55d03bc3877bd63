"""
Unit Tests for Subscription Commissions

Tests cover:
1. Commission per qualifying level
2. Idempotency on the external invoice id
3. Cancellation and grace windows
4. First-invoice-only programs
5. Event timestamps are normalised to UTC
"""

import threading
from datetime import timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from affiliate.models import (
    AttributionStatus,
    InvoicePaidEvent,
    ProgramLevelInput,
    RewardStatus,
    RewardType,
    SubscriptionCancelledEvent,
)

from conftest import START, USER_A, USER_B, USER_C, program_config


def invoice(user_id, invoice_id="in_001", cents=10000, occurred_at=START, subscription_id="sub_001"):
    return InvoicePaidEvent(
        user_id=user_id,
        external_invoice_id=invoice_id,
        external_subscription_id=subscription_id,
        total_amount_cents=cents,
        currency_code="eur",
        occurred_at=occurred_at,
    )


def two_level_program(programs, **overrides):
    return programs.upsert_program(program_config(
        max_levels=2,
        base_commission_rate=Decimal("0.10"),
        levels=[
            ProgramLevelInput(level=1, credit_reward=0),
            ProgramLevelInput(level=2, commission_rate=Decimal("0.05"), credit_reward=0),
        ],
        **overrides,
    ))


class TestInvoicePaid:
    """Tests for commission creation."""

    def test_two_level_commissions(self, ledger, refer, programs):
        """Test 100.00 paid by C: 10.00 to B at level 1, 5.00 to A at level 2."""
        program = two_level_program(programs)
        refer(program, USER_A, USER_B)
        refer(program, USER_B, USER_C)

        rewards = ledger.handle_invoice_paid(invoice(USER_C))

        assert [(r.level, r.user_id, r.currency_amount) for r in rewards] == [
            (1, USER_B, Decimal("10.00")),
            (2, USER_A, Decimal("5.00")),
        ]
        for reward in rewards:
            assert reward.type == RewardType.SUBSCRIPTION_COMMISSION
            assert reward.status == RewardStatus.PENDING
            assert reward.currency_code == "EUR"
            assert reward.pending_until == START + timedelta(days=14)
            assert reward.source_invoice_id == "in_001"
            assert reward.source_subscription_id == "sub_001"
            assert reward.invoice_total == Decimal("100.00")

    def test_level_without_override_is_skipped(self, ledger, refer, program):
        """Test that the base rate is not reused for level 2."""
        refer(program, USER_A, USER_B)
        refer(program, USER_B, USER_C)

        rewards = ledger.handle_invoice_paid(invoice(USER_C))

        assert [(r.level, r.user_id, r.currency_amount) for r in rewards] == [
            (1, USER_B, Decimal("10.00")),
        ]

    def test_commission_rounds_to_cents(self, ledger, refer, program):
        """Test that fractional cents are rounded half up."""
        refer(program, USER_A, USER_B)

        rewards = ledger.handle_invoice_paid(invoice(USER_B, cents=1005))

        assert rewards[0].currency_amount == Decimal("1.01")

    def test_zero_amount_invoice_creates_nothing(self, ledger, refer, program):
        """Test that a free invoice yields no commission."""
        refer(program, USER_A, USER_B)

        assert ledger.handle_invoice_paid(invoice(USER_B, cents=0)) == []

    def test_zero_rate_creates_nothing(self, ledger, refer, programs):
        """Test that a disabled commission rate yields no reward."""
        program = programs.upsert_program(program_config(base_commission_rate=Decimal("0")))
        refer(program, USER_A, USER_B)

        assert ledger.handle_invoice_paid(invoice(USER_B)) == []

    def test_unattributed_user_creates_nothing(self, ledger, program, storage):
        """Test that organic users produce no commission."""
        assert ledger.handle_invoice_paid(invoice(USER_C)) == []
        assert storage.rewards == {}


class TestInvoiceIdempotency:
    """Tests for replayed invoice deliveries."""

    def test_redelivery_is_noop(self, ledger, refer, storage, programs):
        """Test that the same invoice delivered repeatedly yields one reward set."""
        program = two_level_program(programs)
        refer(program, USER_A, USER_B)
        refer(program, USER_B, USER_C)

        first = ledger.handle_invoice_paid(invoice(USER_C))
        snapshot = {k: dict(v) for k, v in storage.rewards.items()}

        for _ in range(3):
            assert ledger.handle_invoice_paid(invoice(USER_C)) == []

        assert len(first) == 2
        assert storage.rewards == snapshot

    def test_different_invoices_each_pay(self, ledger, refer, program):
        """Test that distinct invoices are processed independently."""
        refer(program, USER_A, USER_B)

        ledger.handle_invoice_paid(invoice(USER_B, invoice_id="in_001"))
        ledger.handle_invoice_paid(invoice(USER_B, invoice_id="in_002"))

        commissions = [
            r for r in ledger.list_rewards(user_id=USER_A, status=RewardStatus.PENDING)
            if r.type == RewardType.SUBSCRIPTION_COMMISSION
        ]
        assert len(commissions) == 2

    def test_concurrent_deliveries_create_once(self, ledger, refer, storage, program):
        """Test that racing deliveries of one invoice do not double-create."""
        refer(program, USER_A, USER_B)
        barrier = threading.Barrier(8)
        results = []

        def deliver():
            barrier.wait()
            results.append(ledger.handle_invoice_paid(invoice(USER_B)))

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        commissions = [r for r in storage.rewards.values() if r["type"] == RewardType.SUBSCRIPTION_COMMISSION]
        assert len(commissions) == 1
        assert sum(len(r) for r in results) == 1

    def test_guard_reports_processed_event(self, ledger, refer, program):
        """Test that the guard knows an invoice after processing."""
        refer(program, USER_A, USER_B)
        assert ledger.guard.is_processed("in_001") is False

        ledger.handle_invoice_paid(invoice(USER_B))

        assert ledger.guard.is_processed("in_001") is True


class TestCancellation:
    """Tests for subscription cancellation and grace periods."""

    def test_cancellation_sets_grace_window(self, ledger, refer, program):
        """Test that attributions are cancelled with a grace end date."""
        refer(program, USER_A, USER_B)
        cancelled_at = START + timedelta(days=30)

        cancelled = ledger.handle_subscription_cancellation(
            SubscriptionCancelledEvent(user_id=USER_B, occurred_at=cancelled_at)
        )

        assert len(cancelled) == 1
        assert cancelled[0].status == AttributionStatus.CANCELLED
        assert cancelled[0].cancelled_at == cancelled_at
        assert cancelled[0].grace_end_at == cancelled_at + timedelta(days=3)

    def test_cancellation_keeps_existing_rewards(self, ledger, refer, program):
        """Test that already created rewards are untouched."""
        refer(program, USER_A, USER_B)
        ledger.handle_invoice_paid(invoice(USER_B))

        ledger.handle_subscription_cancellation(
            SubscriptionCancelledEvent(user_id=USER_B, occurred_at=START + timedelta(days=1))
        )

        assert all(r.status == RewardStatus.PENDING for r in ledger.list_rewards(user_id=USER_A))

    def test_invoice_within_grace_still_pays(self, ledger, refer, program):
        """Test that a late payment inside the grace window earns commission."""
        refer(program, USER_A, USER_B)
        cancelled_at = START + timedelta(days=30)
        ledger.handle_subscription_cancellation(SubscriptionCancelledEvent(user_id=USER_B, occurred_at=cancelled_at))

        rewards = ledger.handle_invoice_paid(invoice(USER_B, occurred_at=cancelled_at + timedelta(days=2)))

        assert len(rewards) == 1

    def test_invoice_after_grace_pays_nothing(self, ledger, refer, program):
        """Test that payments after the grace window earn nothing."""
        refer(program, USER_A, USER_B)
        cancelled_at = START + timedelta(days=30)
        ledger.handle_subscription_cancellation(SubscriptionCancelledEvent(user_id=USER_B, occurred_at=cancelled_at))

        rewards = ledger.handle_invoice_paid(invoice(USER_B, occurred_at=cancelled_at + timedelta(days=4)))

        assert rewards == []

    def test_cancelled_attributions_are_not_cancelled_twice(self, ledger, refer, program):
        """Test that a second cancellation does not move the grace window."""
        refer(program, USER_A, USER_B)
        first = START + timedelta(days=30)
        ledger.handle_subscription_cancellation(SubscriptionCancelledEvent(user_id=USER_B, occurred_at=first))

        again = ledger.handle_subscription_cancellation(
            SubscriptionCancelledEvent(user_id=USER_B, occurred_at=first + timedelta(days=10))
        )

        assert again == []
        assert ledger.list_attributions(USER_B)[0].grace_end_at == first + timedelta(days=3)


class TestFirstInvoiceOnly:
    """Tests for programs without lifetime commissions."""

    def test_only_first_invoice_of_subscription_pays(self, ledger, refer, programs):
        """Test that renewals earn nothing when lifetime commissions are off."""
        program = programs.upsert_program(program_config(lifetime_commissions=False))
        refer(program, USER_A, USER_B)

        first = ledger.handle_invoice_paid(invoice(USER_B, invoice_id="in_001"))
        renewal = ledger.handle_invoice_paid(invoice(USER_B, invoice_id="in_002"))

        assert len(first) == 1
        assert renewal == []

    def test_new_subscription_pays_again(self, ledger, refer, programs):
        """Test that a different subscription earns its own first commission."""
        program = programs.upsert_program(program_config(lifetime_commissions=False))
        refer(program, USER_A, USER_B)

        ledger.handle_invoice_paid(invoice(USER_B, invoice_id="in_001", subscription_id="sub_001"))
        second = ledger.handle_invoice_paid(invoice(USER_B, invoice_id="in_002", subscription_id="sub_002"))

        assert len(second) == 1


class TestEventValidation:
    """Tests for inbound event payloads."""

    def test_naive_cancellation_then_aware_invoice(self, ledger, refer, program):
        """Test that a cancellation stamped without a zone still bounds the grace window."""
        refer(program, USER_A, USER_B)
        cancelled_at = START + timedelta(days=30)
        ledger.handle_subscription_cancellation(
            SubscriptionCancelledEvent(user_id=USER_B, occurred_at=cancelled_at.replace(tzinfo=None))
        )

        inside = ledger.handle_invoice_paid(invoice(USER_B, "in_grace", occurred_at=cancelled_at + timedelta(days=1)))
        outside = ledger.handle_invoice_paid(invoice(USER_B, "in_late", occurred_at=cancelled_at + timedelta(days=5)))

        assert len(inside) == 1
        assert outside == []
        assert ledger.list_attributions(USER_B)[0].grace_end_at == cancelled_at + timedelta(days=3)

    def test_occurred_at_is_converted_to_utc(self):
        """Test that naive values are read as UTC and offsets are converted."""
        naive = invoice(USER_B, occurred_at=START.replace(tzinfo=None))
        shifted = invoice(USER_B, occurred_at=START.astimezone(timezone(timedelta(hours=2))))

        assert naive.occurred_at == START
        assert naive.occurred_at.tzinfo == timezone.utc
        assert shifted.occurred_at.tzinfo == timezone.utc
        assert shifted.occurred_at.hour == START.hour

    def test_currency_code_is_required(self):
        """Test that an invoice without a currency is refused."""
        with pytest.raises(ValidationError):
            InvoicePaidEvent(
                user_id=USER_B,
                external_invoice_id="in_no_currency",
                total_amount_cents=1000,
                occurred_at=START,
            )
