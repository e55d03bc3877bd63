from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
from uuid import UUID, uuid4

from loguru import logger

from .chain import AttributionChainBuilder
from .clock import Clock, add_days, as_utc, utcnow
from .codes import ReferralCodeRegistry, normalize_code
from .config import Settings
from .errors import (
    DuplicateEventError,
    InvalidReferralCodeError,
    RewardNotFoundError,
    SelfReferralError,
)
from .events import AffiliateEventLogger, affiliate_logger
from .idempotency import IdempotencyGuard
from .models import (
    AffiliateProgram,
    AffiliateReward,
    AttributionStatus,
    EventKind,
    InvoicePaidEvent,
    MaturedRewardsPreview,
    ReferralAttribution,
    ReferralCode,
    RegistrationEvent,
    RegistrationResult,
    RewardStatus,
    RewardType,
    SubscriptionCancelledEvent,
)
from .programs import ProgramRegistry
from .storage import InMemoryStorage
from .wallet import CreditWallet, WalletCollaborator, credit_reward, is_creditable


CENT = Decimal("0.01")


class RewardLedger:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        wallet: Optional[WalletCollaborator] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        programs: Optional[ProgramRegistry] = None,
        codes: Optional[ReferralCodeRegistry] = None,
        chain_builder: Optional[AttributionChainBuilder] = None,
        guard: Optional[IdempotencyGuard] = None,
        event_logger: Optional[AffiliateEventLogger] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or Settings()
        self.clock = clock
        self.wallet = wallet or CreditWallet(self.storage, clock)
        self.programs = programs or ProgramRegistry(self.storage, self.settings, clock)
        self.codes = codes or ReferralCodeRegistry(self.storage, self.programs, self.settings, clock)
        self.chain_builder = chain_builder or AttributionChainBuilder(self.storage)
        self.guard = guard or IdempotencyGuard(self.storage)
        self.events = event_logger or affiliate_logger
        self.logger = logger.bind(service=self.__class__.__name__)

    # registration

    def handle_registration(self, event: RegistrationEvent) -> RegistrationResult:
        now = event.occurred_at or self.clock()
        program = self.programs.get_active_program()
        if program is None:
            self.logger.info(
                f"No active affiliate program; user {event.referred_user_id} registered without attribution"
            )
            return RegistrationResult(message="No active affiliate program")

        with self.storage.transaction():
            attributions: list[ReferralAttribution] = []
            if event.referral_code:
                code = self.codes.validate(event.referral_code, program.id)
                if code is None:
                    raise InvalidReferralCodeError(f"Referral code {event.referral_code!r} is not valid")
                attributions = self.apply_referral_code(program, code, event.referred_user_id, now)
            own_code = self.codes.ensure_code(event.referred_user_id, program.id)

        message = "Referral applied" if attributions else "Referral code issued"
        return RegistrationResult(referral_code=own_code, attributions=attributions, message=message)

    def apply_referral_code(
        self,
        program: AffiliateProgram,
        code: Union[ReferralCode, str],
        referred_user_id: UUID,
        now: Optional[datetime] = None,
    ) -> list[ReferralAttribution]:
        now = as_utc(now) or self.clock()
        code = self._resolve_code(program, code)

        if code.user_id == referred_user_id:
            raise SelfReferralError("A user cannot redeem their own referral code")

        pending_until = add_days(now, program.reward_pending_days)
        created: list[ReferralAttribution] = []
        reward_ids: list[UUID] = []

        with self.storage.transaction():
            if self._has_attribution(program.id, referred_user_id):
                self.logger.info(f"User {referred_user_id} already attributed in program {program.id}")
                return []

            chain = self.chain_builder.build_chain(program, code, referred_user_id)
            parent_attribution_id: Optional[UUID] = None

            for link in chain:
                attribution = self.storage.insert_attribution({
                    "id": uuid4(),
                    "program_id": program.id,
                    "referral_code_id": link.referral_code_id,
                    "referrer_user_id": link.referrer_user_id,
                    "referred_user_id": referred_user_id,
                    "level": link.level,
                    "parent_attribution_id": parent_attribution_id,
                    "status": AttributionStatus.ACTIVE,
                    "attributed_at": now,
                    "activated_at": now,
                    "cancelled_at": None,
                    "grace_end_at": None,
                })
                created.append(ReferralAttribution(**attribution))

                credits = self._credit_reward(program, link.level)
                if credits > 0:
                    reward = self.storage.insert_reward(self._reward_row(
                        program=program,
                        attribution_id=attribution["id"],
                        user_id=link.referrer_user_id,
                        type=RewardType.REGISTRATION_CREDIT,
                        level=link.level,
                        pending_until=pending_until,
                        now=now,
                        credit_amount=credits,
                        reason="registration",
                    ))
                    reward_ids.append(reward["id"])

                parent_attribution_id = attribution["id"]

        self.events.log_registration(
            user_id=referred_user_id,
            referral_code=code.code,
            reward_ids=reward_ids,
            credits=self._credit_reward(program, 1),
        )
        return created

    # subscription events

    def handle_invoice_paid(self, event: InvoicePaidEvent) -> list[AffiliateReward]:
        if self.guard.is_processed(event.external_invoice_id):
            self.logger.info(f"Invoice {event.external_invoice_id} already processed, skipping")
            return []

        invoice_total = (Decimal(event.total_amount_cents) / 100).quantize(CENT)
        currency = event.currency_code.upper()
        created: list[AffiliateReward] = []

        try:
            with self.storage.transaction():
                self.guard.claim(event.external_invoice_id, EventKind.INVOICE_PAID, self.clock())

                attributions = self._payable_attributions(event.user_id)
                programs: dict[UUID, Optional[AffiliateProgram]] = {}

                for attribution in attributions:
                    if not attribution.earns_commission_at(event.occurred_at):
                        continue

                    if attribution.program_id not in programs:
                        programs[attribution.program_id] = self.programs.get_program(attribution.program_id)
                    program = programs[attribution.program_id]
                    if program is None:
                        continue
                    if not program.lifetime_commissions and self._subscription_already_commissioned(
                        program.id, event.external_subscription_id, event.external_invoice_id
                    ):
                        continue

                    rate = self._commission_rate(program, attribution.level)
                    if rate is None or rate <= 0:
                        continue
                    amount = (invoice_total * rate).quantize(CENT, rounding=ROUND_HALF_UP)
                    if amount <= 0:
                        continue

                    reward = self.storage.insert_reward(self._reward_row(
                        program=program,
                        attribution_id=attribution.id,
                        user_id=attribution.referrer_user_id,
                        type=RewardType.SUBSCRIPTION_COMMISSION,
                        level=attribution.level,
                        pending_until=add_days(event.occurred_at, program.reward_pending_days),
                        now=self.clock(),
                        currency_amount=amount,
                        currency_code=currency,
                        source_invoice_id=event.external_invoice_id,
                        source_subscription_id=event.external_subscription_id,
                        invoice_total=invoice_total,
                        commission_rate=rate,
                    ))
                    created.append(AffiliateReward(**reward))
        except DuplicateEventError:
            self.logger.info(f"Invoice {event.external_invoice_id} claimed concurrently, skipping")
            return []

        if created:
            self.events.log_subscription(
                user_id=event.user_id,
                invoice_id=event.external_invoice_id,
                subscription_id=event.external_subscription_id,
                amount=invoice_total,
                currency=currency,
                commissions=[
                    {"level": r.level, "amount": r.currency_amount, "user_id": r.user_id}
                    for r in created
                ],
            )
        return created

    def handle_subscription_cancellation(self, event: SubscriptionCancelledEvent) -> list[ReferralAttribution]:
        cancelled: list[ReferralAttribution] = []
        grace_end_at = None

        with self.storage.transaction():
            rows = self.storage.select(
                "attributions",
                lambda a: (
                    a["referred_user_id"] == event.user_id
                    and a["status"] in (AttributionStatus.ACTIVE, AttributionStatus.PENDING)
                ),
            )
            for row in rows:
                program = self.programs.get_program(row["program_id"])
                grace_days = program.subscription_grace_days if program else self.settings.default_grace_days
                grace_end_at = add_days(event.occurred_at, grace_days)
                updated = self.storage.update_attribution(
                    row["id"],
                    status=AttributionStatus.CANCELLED,
                    cancelled_at=event.occurred_at,
                    grace_end_at=grace_end_at,
                )
                cancelled.append(ReferralAttribution(**updated))

        if cancelled:
            self.events.log_cancellation(
                user_id=event.user_id,
                attribution_ids=[a.id for a in cancelled],
                grace_end_at=grace_end_at,
            )
        return cancelled

    # maturation

    def release_matured_rewards(self, reference_date: Optional[datetime] = None) -> int:
        """Clear every PENDING reward whose ``pending_until`` has passed.

        Each reward is re-read, moved to CLEARED and credited in its own
        transaction, so a concurrent reject either lands first (the reward is
        skipped) or finds it CLEARED. A failed wallet call rolls the reward
        back to PENDING for the next sweep without stopping the others.
        """
        reference_date = as_utc(reference_date) or self.clock()
        candidates = self._matured_rewards(reference_date)
        if not candidates:
            return 0

        released: list[AffiliateReward] = []
        for candidate in candidates:
            try:
                with self.storage.transaction():
                    current = self.storage.get("rewards", candidate.id)
                    if current is None or current["status"] != RewardStatus.PENDING:
                        continue
                    reward = AffiliateReward(**self.storage.update_reward(
                        candidate.id, status=RewardStatus.CLEARED, ready_at=reference_date
                    ))
                    if is_creditable(reward):
                        credit_reward(self.wallet, reward)
            except Exception as e:
                self.logger.exception(f"Releasing reward {candidate.id} failed")
                self.events.log_error(
                    "reward.credit.failed",
                    e,
                    user_id=candidate.user_id,
                    reward_id=candidate.id,
                    credit_amount=candidate.credit_amount,
                )
                continue
            released.append(reward)

        for reward in released:
            self.events.log_reward_released(
                reward_id=reward.id,
                user_id=reward.user_id,
                type=reward.type.value,
                level=reward.level,
                credits=reward.credit_amount,
            )
        self.logger.info(f"Released {len(released)} of {len(candidates)} matured rewards")
        return len(released)

    def preview_matured_rewards(self, reference_date: Optional[datetime] = None) -> MaturedRewardsPreview:
        reference_date = as_utc(reference_date) or self.clock()
        rewards = self._matured_rewards(reference_date)

        currency_totals: dict[str, Decimal] = {}
        for reward in rewards:
            if reward.type == RewardType.SUBSCRIPTION_COMMISSION and reward.currency_amount:
                code = reward.currency_code or self.settings.default_currency
                currency_totals[code] = currency_totals.get(code, Decimal("0")) + reward.currency_amount

        return MaturedRewardsPreview(
            reference_date=reference_date,
            count=len(rewards),
            total_credits=sum(
                r.credit_amount or 0 for r in rewards if r.type == RewardType.REGISTRATION_CREDIT
            ),
            currency_totals=currency_totals,
        )

    # reads

    def get_reward(self, reward_id: UUID) -> AffiliateReward:
        row = self.storage.get("rewards", reward_id)
        if not row:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return AffiliateReward(**row)

    def list_rewards(
        self,
        user_id: Optional[UUID] = None,
        status: Optional[RewardStatus] = None,
    ) -> list[AffiliateReward]:
        rows = self.storage.select(
            "rewards",
            lambda r: (user_id is None or r["user_id"] == user_id) and (status is None or r["status"] == status),
        )
        rewards = [AffiliateReward(**r) for r in rows]
        rewards.sort(key=lambda r: (r.created_at, r.level))
        return rewards

    def list_attributions(self, referred_user_id: UUID) -> list[ReferralAttribution]:
        rows = self.storage.select("attributions", lambda a: a["referred_user_id"] == referred_user_id)
        return sorted((ReferralAttribution(**a) for a in rows), key=lambda a: a.level)

    # helpers

    def _resolve_code(self, program: AffiliateProgram, code: Union[ReferralCode, str]) -> ReferralCode:
        if isinstance(code, ReferralCode):
            if not code.is_active or code.program_id != program.id:
                raise InvalidReferralCodeError(f"Referral code {code.code} is not valid for program {program.id}")
            return code

        code_id = self.storage.code_index.get(normalize_code(code))
        row = self.storage.get("referral_codes", code_id) if code_id else None
        if not row or not row["is_active"] or row["program_id"] != program.id:
            raise InvalidReferralCodeError(f"Referral code {code!r} is not valid")
        return ReferralCode(**row)

    def _has_attribution(self, program_id: UUID, referred_user_id: UUID) -> bool:
        return bool(self.storage.select(
            "attributions",
            lambda a: a["program_id"] == program_id and a["referred_user_id"] == referred_user_id,
        ))

    def _payable_attributions(self, user_id: UUID) -> list[ReferralAttribution]:
        rows = self.storage.select(
            "attributions",
            lambda a: (
                a["referred_user_id"] == user_id
                and a["status"] in (AttributionStatus.ACTIVE, AttributionStatus.CANCELLED)
            ),
        )
        return sorted((ReferralAttribution(**a) for a in rows), key=lambda a: a.level)

    def _subscription_already_commissioned(
        self, program_id: UUID, subscription_id: Optional[str], invoice_id: str
    ) -> bool:
        if not subscription_id:
            return False
        return bool(self.storage.select(
            "rewards",
            lambda r: (
                r["program_id"] == program_id
                and r["source_subscription_id"] == subscription_id
                and r["source_invoice_id"] != invoice_id
            ),
        ))

    def _matured_rewards(self, reference_date: datetime) -> list[AffiliateReward]:
        rows = self.storage.select(
            "rewards",
            lambda r: r["status"] == RewardStatus.PENDING and r["pending_until"] <= reference_date,
        )
        return [AffiliateReward(**r) for r in rows]

    @staticmethod
    def _credit_reward(program: AffiliateProgram, level: int) -> int:
        config = program.level_config(level)
        if config is not None and config.credit_reward is not None:
            return config.credit_reward
        return program.registration_credit if level == 1 else 0

    @staticmethod
    def _commission_rate(program: AffiliateProgram, level: int) -> Optional[Decimal]:
        config = program.level_config(level)
        if config is not None and config.commission_rate is not None:
            return config.commission_rate
        return program.base_commission_rate if level == 1 else None

    @staticmethod
    def _reward_row(
        program: AffiliateProgram,
        attribution_id: UUID,
        user_id: UUID,
        type: RewardType,
        level: int,
        pending_until: datetime,
        now: datetime,
        **fields,
    ) -> dict:
        row = {
            "id": uuid4(),
            "program_id": program.id,
            "attribution_id": attribution_id,
            "user_id": user_id,
            "type": type,
            "level": level,
            "credit_amount": None,
            "currency_amount": None,
            "currency_code": None,
            "status": RewardStatus.PENDING,
            "pending_until": pending_until,
            "ready_at": None,
            "settled_at": None,
            "created_at": now,
            "source_invoice_id": None,
            "source_subscription_id": None,
            "invoice_total": None,
            "commission_rate": None,
            "reason": None,
        }
        row.update(fields)
        return row
