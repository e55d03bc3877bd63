"""
Unit Tests for Program Configuration

Tests cover:
1. Sanitizing admin input
2. A single active program at a time
3. Programs referenced by rewards are locked
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from affiliate.errors import ProgramLockedError, ProgramNotConfiguredError
from affiliate.models import ProgramLevelInput

from conftest import USER_A, USER_B, program_config


class TestUpsertProgram:
    """Tests for creating and updating programs."""

    def test_create_program(self, programs, clock):
        """Test creating a program from a config request."""
        program = programs.upsert_program(program_config())

        assert program.name == "Default program"
        assert program.is_active is True
        assert program.base_commission_rate == Decimal("0.10")
        assert program.created_at == clock.now
        assert programs.get_active_program().id == program.id

    def test_negative_values_are_clamped(self, programs):
        """Test that negative amounts and rates fall back to zero."""
        program = programs.upsert_program(program_config(
            name="  Clamped  ",
            registration_credit=-10,
            base_commission_rate=Decimal("-0.5"),
            max_levels=0,
            reward_pending_days=-1,
            subscription_grace_days=-3,
            levels=[ProgramLevelInput(level=1, commission_rate=Decimal("-1"), credit_reward=-5)],
        ))

        assert program.name == "Clamped"
        assert program.registration_credit == 0
        assert program.base_commission_rate == Decimal("0")
        assert program.max_levels == 1
        assert program.reward_pending_days == 0
        assert program.subscription_grace_days == 0
        assert program.levels[0].commission_rate == Decimal("0")
        assert program.levels[0].credit_reward == 0

    def test_levels_sorted_and_limited(self, programs):
        """Test that levels beyond max_levels are dropped."""
        program = programs.upsert_program(program_config(
            max_levels=2,
            levels=[
                ProgramLevelInput(level=3, credit_reward=5),
                ProgramLevelInput(level=2, credit_reward=10),
                ProgramLevelInput(level=1, credit_reward=50),
            ],
        ))

        assert [l.level for l in program.levels] == [1, 2]
        assert program.level_config(3) is None

    def test_defaults_from_settings(self, programs, settings):
        """Test that missing windows use the configured defaults."""
        program = programs.upsert_program(program_config(
            reward_pending_days=None,
            subscription_grace_days=None,
        ))

        assert program.reward_pending_days == settings.default_pending_days
        assert program.subscription_grace_days == settings.default_grace_days

    def test_update_without_id_targets_latest(self, programs):
        """Test that saving without an id edits the current program."""
        first = programs.upsert_program(program_config())

        updated = programs.upsert_program(program_config(name="Renamed"))

        assert updated.id == first.id
        assert updated.name == "Renamed"

    def test_activating_deactivates_others(self, programs, clock):
        """Test that only one program stays active."""
        first = programs.upsert_program(program_config())
        clock.advance(minutes=1)

        second = programs.upsert_program(program_config(id=uuid4(), name="Second"))

        assert programs.get_program(first.id).is_active is False
        assert programs.get_active_program().id == second.id


class TestProgramLock:
    """Tests for programs already referenced by rewards."""

    def test_referenced_program_cannot_change(self, programs, refer, program):
        """Test that rates are frozen once rewards exist."""
        refer(program, USER_A, USER_B)

        with pytest.raises(ProgramLockedError):
            programs.upsert_program(program_config(id=program.id, base_commission_rate=Decimal("0.20")))

        assert programs.get_program(program.id).base_commission_rate == Decimal("0.10")

    def test_referenced_program_can_be_deactivated(self, programs, refer, program):
        """Test that toggling is_active is still allowed."""
        refer(program, USER_A, USER_B)

        updated = programs.upsert_program(program_config(id=program.id, is_active=False))

        assert updated.is_active is False
        assert programs.get_active_program() is None

    def test_unreferenced_program_can_change(self, programs, program):
        """Test that programs without rewards stay editable."""
        updated = programs.upsert_program(program_config(id=program.id, base_commission_rate=Decimal("0.20")))

        assert updated.base_commission_rate == Decimal("0.20")


class TestActiveProgram:
    """Tests for active program lookups."""

    def test_no_program(self, programs):
        """Test lookups when nothing is configured."""
        assert programs.get_active_program() is None
        with pytest.raises(ProgramNotConfiguredError):
            programs.require_active_program()

    def test_inactive_program_is_ignored(self, programs):
        """Test that inactive programs are never returned as active."""
        programs.upsert_program(program_config(is_active=False))

        assert programs.get_active_program() is None
