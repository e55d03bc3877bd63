import secrets
import string
from typing import Optional
from uuid import UUID, uuid4

from loguru import logger

from .clock import Clock, utcnow
from .config import Settings
from .models import ReferralCode, ReferralCodeSummary
from .programs import ProgramRegistry
from .storage import InMemoryStorage


ALPHABET = string.ascii_uppercase + string.digits


def generate_code(length: int) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


class ReferralCodeRegistry:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        programs: Optional[ProgramRegistry] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or Settings()
        self.programs = programs or ProgramRegistry(self.storage, self.settings, clock)
        self.clock = clock

    def ensure_code(self, user_id: UUID, program_id: UUID) -> ReferralCode:
        with self.storage.transaction():
            existing = self.get_active_code(user_id, program_id)
            if existing:
                return existing

            row = self.storage.insert_referral_code({
                "id": uuid4(),
                "user_id": user_id,
                "program_id": program_id,
                "code": self._generate_unique_code(),
                "is_active": True,
                "created_at": self.clock(),
            })

        logger.info(f"Issued referral code {row['code']} to user {user_id}")
        return ReferralCode(**row)

    def get_active_code(self, user_id: UUID, program_id: UUID) -> Optional[ReferralCode]:
        code_id = self.storage.active_code_index.get((user_id, program_id))
        if code_id is None:
            return None
        return ReferralCode(**self.storage.get("referral_codes", code_id))

    def get_or_create_code(self, user_id: UUID, program_id: UUID) -> ReferralCodeSummary:
        code = self.ensure_code(user_id, program_id)
        total_uses = len(self.storage.select(
            "attributions", lambda a: a["referral_code_id"] == code.id
        ))
        return ReferralCodeSummary(**code.model_dump(), total_uses=total_uses)

    def validate(self, code: str, program_id: Optional[UUID] = None) -> Optional[ReferralCode]:
        program = self.programs.get_active_program()
        if program is None:
            return None
        if program_id is not None and program_id != program.id:
            return None

        code_id = self.storage.code_index.get(normalize_code(code))
        if code_id is None:
            return None

        row = self.storage.get("referral_codes", code_id)
        if not row["is_active"] or row["program_id"] != program.id:
            return None
        return ReferralCode(**row)

    def deactivate(self, code_id: UUID) -> ReferralCode:
        return ReferralCode(**self.storage.deactivate_referral_code(code_id))

    def _generate_unique_code(self) -> str:
        while True:
            candidate = generate_code(self.settings.referral_code_length)
            if candidate not in self.storage.code_index:
                return candidate
            logger.debug(f"Referral code collision on {candidate}, retrying")


