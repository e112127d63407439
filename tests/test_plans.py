"""
Tests for the Plan Registry state machine.
"""

import warnings
from pathlib import Path
import pytest
from core import plans as plans_module
from core.errors import AccountNotFound, InvalidPlan, NoActiveSubscription
from core.plans import ALLOWED_TRANSITIONS, PlanStatus

from conftest import PERIOD_1, PERIOD_2, PERIOD_3


@pytest.fixture
def prime(plans, account):
    return plans.activate(account.id, "prime", "sub_1", PERIOD_1, PERIOD_2).plan


class TestActivate:
    """Test activation and supersession."""

    def test_first_activation_creates_row(self, plans, account):
        transition = plans.activate(account.id, "prime", "sub_1", PERIOD_1, PERIOD_2)

        assert transition.changed
        assert transition.previous_status is None
        assert transition.plan.status == "active"
        assert plans.get_live(account.id).name == "prime"

    def test_repeat_activation_is_noop(self, plans, account, prime):
        transition = plans.activate(account.id, "prime", "sub_1", PERIOD_1, PERIOD_2)

        assert not transition.changed

    def test_switch_supersedes_previous_plan(self, plans, account, prime):
        """At most one live plan: the old row is canceled but kept."""
        plans.activate(account.id, "entry", "sub_1", PERIOD_2, PERIOD_3)

        assert plans.get_live(account.id).name == "entry"
        old = plans.get(account.id, "prime")
        assert old.status == "canceled"
        assert old.stripe_subscription_id == "sub_1"
        assert len(plans.list_for_account(account.id)) == 2

    def test_incomplete_never_demotes_live_plan(self, plans, account, prime):
        transition = plans.activate(account.id, "prime", "sub_1", PERIOD_1, PERIOD_2, status=PlanStatus.INCOMPLETE)

        assert transition.plan.status == "active"
        assert not transition.changed

    def test_incomplete_then_active(self, plans, account):
        plans.activate(account.id, "entry", "sub_9", PERIOD_1, PERIOD_2, status=PlanStatus.INCOMPLETE)
        assert plans.get_live(account.id) is None

        transition = plans.activate(account.id, "entry", "sub_9", PERIOD_1, PERIOD_2)

        assert transition.previous_status == "incomplete"
        assert plans.get_live(account.id).name == "entry"

    def test_reactivating_canceled_row_clears_pending_state(self, plans, account, prime):
        plans.schedule_downgrade(account.id, "entry")
        plans.cancel_subscription("sub_1")

        transition = plans.activate(account.id, "prime", "sub_2", PERIOD_2, PERIOD_3)

        assert transition.previous_status == "canceled"
        assert transition.plan.status == "active"
        assert transition.plan.pending_plan is None
        assert transition.plan.stripe_subscription_id == "sub_2"

    def test_unknown_account(self, plans):
        with pytest.raises(AccountNotFound):
            plans.activate("missing", "prime", "sub_1", PERIOD_1, PERIOD_2)

    def test_cannot_activate_as_canceled(self, plans, account):
        with pytest.raises(InvalidPlan):
            plans.activate(account.id, "prime", "sub_1", PERIOD_1, PERIOD_2, status=PlanStatus.CANCELED)


class TestDowngrade:
    """Test scheduling and reverting downgrades."""

    def test_schedule_downgrade(self, plans, account, prime):
        transition = plans.schedule_downgrade(account.id, "entry")

        assert transition.plan.status == "pending_downgrade"
        assert transition.plan.pending_plan == "entry"
        # Still live until the period boundary
        assert plans.get_live(account.id).name == "prime"

    def test_schedule_twice_is_noop(self, plans, account, prime):
        plans.schedule_downgrade(account.id, "entry")

        assert not plans.schedule_downgrade(account.id, "entry").changed

    def test_schedule_to_same_plan_rejected(self, plans, account, prime):
        with pytest.raises(InvalidPlan):
            plans.schedule_downgrade(account.id, "prime")

    def test_schedule_without_plan(self, plans, account):
        with pytest.raises(NoActiveSubscription):
            plans.schedule_downgrade(account.id, "entry")

    def test_cancel_downgrade_restores_active(self, plans, account, prime):
        plans.schedule_downgrade(account.id, "entry")

        transition = plans.cancel_downgrade(account.id)

        assert transition.previous_status == "pending_downgrade"
        assert transition.plan.status == "active"
        assert transition.plan.pending_plan is None

    def test_cancel_downgrade_when_none_pending(self, plans, account, prime):
        assert not plans.cancel_downgrade(account.id).changed


class TestSync:
    """Test syncing rows to processor state."""

    def test_sync_keeps_pending_downgrade(self, plans, account, prime):
        """An 'active' report does not erase a scheduled downgrade."""
        plans.schedule_downgrade(account.id, "entry")

        transition = plans.sync(prime, status=PlanStatus.ACTIVE, period_end=PERIOD_3)

        assert transition.plan.status == "pending_downgrade"
        assert transition.plan.current_period_end == PERIOD_3

    def test_sync_records_event_time(self, plans, prime):
        transition = plans.sync(prime, event_at=PERIOD_1 + 50)

        assert transition.changed
        assert transition.plan.last_event_at == PERIOD_1 + 50

    def test_illegal_transition_rejected(self, plans, account):
        plans.activate(account.id, "entry", "sub_9", PERIOD_1, PERIOD_2, status=PlanStatus.INCOMPLETE)
        row = plans.get(account.id, "entry")

        with pytest.raises(InvalidPlan):
            plans.sync(row, status=PlanStatus.PENDING_DOWNGRADE)

    def test_cancel_at_period_end_flag(self, plans, account, prime):
        transition = plans.set_cancel_at_period_end(account.id)

        assert transition.plan.cancel_at_period_end is True
        assert transition.plan.status == "active"
        assert not plans.set_cancel_at_period_end(account.id).changed


class TestCancelSubscription:
    """Test subscription deletion."""

    def test_cancels_every_row(self, plans, account, prime):
        plans.activate(account.id, "entry", "sub_1", PERIOD_2, PERIOD_3)

        transitions = plans.cancel_subscription("sub_1")

        assert {t.plan.name for t in transitions} == {"prime", "entry"}
        assert all(t.plan.status == "canceled" for t in transitions)
        assert plans.get_live(account.id) is None

    def test_cancel_is_idempotent(self, plans, prime):
        plans.cancel_subscription("sub_1")

        assert not any(t.changed for t in plans.cancel_subscription("sub_1"))

    def test_unknown_subscription(self, plans):
        assert plans.cancel_subscription("sub_missing") == []


class TestTransitionTable:
    """Test the transition table itself."""

    def test_canceled_can_only_restart(self):
        assert ALLOWED_TRANSITIONS[PlanStatus.CANCELED] == {PlanStatus.INCOMPLETE, PlanStatus.ACTIVE}

    def test_live_statuses(self):
        assert PlanStatus.ACTIVE.is_live
        assert PlanStatus.PENDING_DOWNGRADE.is_live
        assert not PlanStatus.INCOMPLETE.is_live
        assert not PlanStatus.CANCELED.is_live

    def test_module_compiles_without_warnings(self):
        """The state diagram in the module docstring holds no invalid escapes."""
        source = Path(plans_module.__file__).read_text(encoding="utf-8")

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, plans_module.__file__, "exec")

        assert "\\-" not in source
