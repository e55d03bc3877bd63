from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .clock import Clock, utcnow
from .config import Settings
from .errors import ProgramLockedError, ProgramNotConfiguredError
from .models import AffiliateProgram, ProgramConfigRequest, ProgramLevel
from .storage import InMemoryStorage


_MUTABLE_WHEN_LOCKED = {"is_active", "updated_at"}


class ProgramRegistry:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or Settings()
        self.clock = clock

    def get_active_program(self) -> Optional[AffiliateProgram]:
        active = self.storage.select("programs", lambda p: p["is_active"])
        if not active:
            return None
        newest = max(active, key=lambda p: p["created_at"])
        return AffiliateProgram(**newest)

    def require_active_program(self) -> AffiliateProgram:
        program = self.get_active_program()
        if program is None:
            raise ProgramNotConfiguredError("No active affiliate program is configured")
        return program

    def get_program(self, program_id: UUID) -> Optional[AffiliateProgram]:
        row = self.storage.get("programs", program_id)
        return AffiliateProgram(**row) if row else None

    def upsert_program(self, config: ProgramConfigRequest) -> AffiliateProgram:
        fields = self._sanitize(config)
        now = self.clock()

        with self.storage.transaction():
            existing = self._find_target(config.id)

            if existing:
                if self._is_referenced(existing["id"]):
                    changed = {
                        k for k, v in fields.items()
                        if existing.get(k) != v and k not in _MUTABLE_WHEN_LOCKED
                    }
                    if changed:
                        raise ProgramLockedError(
                            f"Program {existing['id']} already has rewards; cannot change {sorted(changed)}"
                        )
                row = self.storage.update_program(existing["id"], updated_at=now, **fields)
            else:
                row = self.storage.insert_program({
                    "id": config.id or uuid4(),
                    "created_at": now,
                    "updated_at": now,
                    **fields,
                })

            if row["is_active"]:
                for other in self.storage.select("programs", lambda p: p["id"] != row["id"] and p["is_active"]):
                    self.storage.update_program(other["id"], is_active=False, updated_at=now)
                    logger.info(f"Deactivated affiliate program {other['id']} in favour of {row['id']}")

        return AffiliateProgram(**row)

    def _find_target(self, program_id: Optional[UUID]) -> Optional[dict]:
        if program_id:
            return self.storage.get("programs", program_id)
        rows = self.storage.select("programs")
        return max(rows, key=lambda p: p["created_at"]) if rows else None

    def _is_referenced(self, program_id: UUID) -> bool:
        return bool(self.storage.select("rewards", lambda r: r["program_id"] == program_id))

    def _sanitize(self, config: ProgramConfigRequest) -> dict:
        max_levels = max(1, int(config.max_levels))
        pending_days = config.reward_pending_days
        grace_days = config.subscription_grace_days

        levels = sorted(
            (
                ProgramLevel(
                    level=max(1, int(level.level)),
                    commission_rate=(
                        max(Decimal("0"), Decimal(level.commission_rate))
                        if level.commission_rate is not None else None
                    ),
                    credit_reward=(
                        max(0, int(level.credit_reward))
                        if level.credit_reward is not None else None
                    ),
                )
                for level in config.levels
            ),
            key=lambda l: l.level,
        )
        levels = [l for l in levels if l.level <= max_levels]

        return {
            "name": config.name.strip(),
            "is_active": bool(config.is_active),
            "registration_credit": max(0, int(config.registration_credit)),
            "base_commission_rate": max(Decimal("0"), Decimal(config.base_commission_rate)),
            "max_levels": max_levels,
            "reward_pending_days": max(0, int(pending_days if pending_days is not None else self.settings.default_pending_days)),
            "subscription_grace_days": max(0, int(grace_days if grace_days is not None else self.settings.default_grace_days)),
            "lifetime_commissions": bool(config.lifetime_commissions),
            "levels": [l.model_dump() for l in levels],
        }
