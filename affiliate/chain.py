from typing import Optional
from uuid import UUID

from loguru import logger

from .models import AffiliateProgram, AttributionStatus, ChainLink, ReferralCode
from .storage import InMemoryStorage


class AttributionChainBuilder:
    """Resolves the referrers above a newly referred user.

    All ACTIVE level-1 attributions of the program are loaded in one snapshot
    and indexed by referred user (most recent wins), then the chain is walked
    in memory. A user seen twice ends the walk, so corrupted cyclic data
    cannot loop.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()

    def build_chain(
        self,
        program: AffiliateProgram,
        starting_code: ReferralCode,
        referred_user_id: Optional[UUID] = None,
    ) -> list[ChainLink]:
        parents = self._load_parent_index(program.id)

        chain: list[ChainLink] = []
        # the referred user can never be their own upstream referrer
        visited: set[UUID] = {referred_user_id} if referred_user_id else set()
        level = 1
        current_user_id = starting_code.user_id
        current_code_id = starting_code.id

        while current_user_id is not None and level <= program.max_levels:
            if current_user_id in visited:
                logger.warning(
                    f"Referral cycle at user {current_user_id} in program {program.id}; "
                    f"truncating chain at level {level - 1}"
                )
                break
            visited.add(current_user_id)
            chain.append(ChainLink(
                level=level,
                referrer_user_id=current_user_id,
                referral_code_id=current_code_id,
            ))

            parent = parents.get(current_user_id)
            if parent is None:
                break
            level += 1
            current_user_id = parent["referrer_user_id"]
            current_code_id = parent["referral_code_id"]

        return chain

    def _load_parent_index(self, program_id: UUID) -> dict[UUID, dict]:
        rows = self.storage.select(
            "attributions",
            lambda a: (
                a["program_id"] == program_id
                and a["level"] == 1
                and a["status"] == AttributionStatus.ACTIVE
            ),
        )
        rows.sort(key=lambda a: a["attributed_at"], reverse=True)

        index: dict[UUID, dict] = {}
        for row in rows:
            index.setdefault(row["referred_user_id"], row)
        return index
